"""Allow ``python -m rentpay``."""

from rentpay.cli import main

main()
