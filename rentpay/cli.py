"""
RentPay CLI -- tenant payment flow from the terminal.

Usage:
    python -m rentpay.cli login --tenant-id T1 --name "Jane Doe" --token <jwt>
    python -m rentpay.cli rental
    python -m rentpay.cli history --limit 5
    python -m rentpay.cli pay --method cash --amount 5000 --month 2025-11
    python -m rentpay.cli pay --method mpesa --amount 5000 --phone 0712345678 --wait
    python -m rentpay.cli status
    python -m rentpay.cli watch --timeout 300
    python -m rentpay.cli receipt
    python -m rentpay.cli reset
    python -m rentpay.cli stats

The session (token, profile, last payment) lives in the JSON store under
``RENTPAY_DATA_DIR``.  ``RENTPAY_TENANT_ID``, ``RENTPAY_TENANT_NAME`` and
``RENTPAY_TOKEN`` seed the session when the store holds none.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Optional

from rentpay.api_client import API_BASE_URL, RentalApiClient
from rentpay.errors import RentPayError, ResetNotAllowed, SubmissionRejected, ValidationError
from rentpay.models import format_amount
from rentpay.push_channel import PUSH_URL
from rentpay.receipt import build_receipt, render_receipt_text
from rentpay.reconciler import POLL_INTERVAL, ReconciliationEngine, ReconciliationState, UpdateSource
from rentpay.rental_loader import RentalLoader, next_payment_info
from rentpay.session import JsonFileStore, KeyValueStore, PaymentCache, SessionContext
from rentpay.submission import PaymentDraft, PaymentSubmitter

logger = logging.getLogger("cli")

DEFAULT_WATCH_TIMEOUT = 300.0


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def _load_session(store: KeyValueStore) -> SessionContext:
    session = SessionContext.from_store(store)
    if not session.tenant_id:
        session.tenant_id = os.getenv("RENTPAY_TENANT_ID") or None
        session.tenant_name = session.tenant_name or os.getenv("RENTPAY_TENANT_NAME", "")
    if not session.token:
        session.token = os.getenv("RENTPAY_TOKEN", "")
    return session


def _build_engine(
    store: KeyValueStore,
    session: SessionContext,
    args: argparse.Namespace,
    push: bool = False,
) -> ReconciliationEngine:
    api = RentalApiClient(session, base_url=args.api_url)
    return ReconciliationEngine(
        api,
        PaymentCache(store),
        push_url=args.push_url if push else None,
        poll_interval=args.poll_interval,
    )


def _print_state(engine: ReconciliationEngine) -> None:
    state = engine.state
    rental = state.rental
    if rental is None:
        print("  Rental:     none loaded")
    else:
        print(f"  Rental:     {rental.id} ({format_amount(rental.monthly_amount)} / month)")
    print(f"  Remaining:  {format_amount(state.remaining_balance)}")
    current = state.current
    if current is None:
        print("  Payment:    none")
    else:
        print(
            f"  Payment:    {current.id}  {current.method.value}  "
            f"{format_amount(current.amount)}  [{current.status.value}]"
        )
        if current.month:
            print(f"  Month:      {current.month}")
        if current.transaction_id:
            print(f"  Txn ID:     {current.transaction_id}")
    if engine.status_unknown:
        print("  Status unknown -- could not reach the server, please retry.")


async def _watch(engine: ReconciliationEngine, timeout: float) -> bool:
    """Block until the current payment is confirmed or timeout elapses."""
    done = asyncio.Event()

    def _on_change(state: ReconciliationState) -> None:
        current = state.current
        if current is not None:
            print(f"  ... payment {current.id} is {current.status.value}")
        if engine.receipt_record() is not None:
            done.set()

    engine.add_listener(_on_change)
    try:
        if engine.receipt_record() is not None:
            return True
        await asyncio.wait_for(done.wait(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        return False
    finally:
        engine.remove_listener(_on_change)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def _cmd_rental(store: KeyValueStore, session: SessionContext, args: argparse.Namespace) -> int:
    async with RentalApiClient(session, base_url=args.api_url) as api:
        loader = RentalLoader(api)
        rental = await loader.load(session)
    if loader.last_error:
        print(loader.last_error, file=sys.stderr)
        return 1
    if rental is None:
        print("No rental found.")
        return 0
    info = next_payment_info(rental)
    print(f"\n  Rental {rental.id}  {rental.house_name}".rstrip())
    print(f"  Monthly:    {format_amount(rental.monthly_amount)}")
    print(f"  Status:     {rental.rental_status.value} / {rental.payment_status.value}")
    print(f"  Next cycle: {info.label}")
    if info.sub:
        print(f"              {info.sub}")
    return 0


async def _cmd_history(store: KeyValueStore, session: SessionContext, args: argparse.Namespace) -> int:
    async with RentalApiClient(session, base_url=args.api_url) as api:
        payments = await api.list_my_payments()
    if not payments:
        print("No payments yet.")
        return 0
    print(f"\n  {'ID':<26} {'Month':<8} {'Method':<6} {'Amount':>12} {'Balance':>12}  Status")
    for p in payments[: args.limit]:
        print(
            f"  {str(p.id):<26} {p.month or '-':<8} {p.method.value:<6} "
            f"{format_amount(p.amount):>12} {format_amount(p.balance):>12}  {p.status.value}"
        )
    return 0


async def _with_engine(
    store: KeyValueStore,
    session: SessionContext,
    args: argparse.Namespace,
    push: bool,
    body,
) -> int:
    engine = _build_engine(store, session, args, push=push)
    try:
        await engine.mount(session)
        return await body(engine)
    finally:
        await engine.unmount()
        await engine.api.close()


async def _cmd_pay(store: KeyValueStore, session: SessionContext, args: argparse.Namespace) -> int:
    draft = PaymentDraft(
        method=args.method, amount=args.amount, month=args.month, phone_number=args.phone,
    )

    async def body(engine: ReconciliationEngine) -> int:
        submitter = PaymentSubmitter(engine.api, engine)
        try:
            record = await submitter.submit(draft)
        except ValidationError as exc:
            print(f"\n  Invalid {exc.field}: {exc.message}", file=sys.stderr)
            return 1
        except SubmissionRejected as exc:
            print(f"\n  {exc.message}", file=sys.stderr)
            return 1
        print(f"\n  Payment submitted ({record.status.value}).")
        _print_state(engine)
        if args.wait and not record.is_terminal:
            print("\n  Waiting for confirmation ...")
            confirmed = await _watch(engine, args.timeout)
            if not confirmed:
                print("  Still pending. Run `status` later to check again.")
        return 0

    return await _with_engine(store, session, args, args.wait, body)


async def _cmd_status(store: KeyValueStore, session: SessionContext, args: argparse.Namespace) -> int:
    async def body(engine: ReconciliationEngine) -> int:
        current = engine.current
        if current is not None and current.id and not current.is_terminal:
            try:
                engine.offer(await engine.api.get_payment(current.id), UpdateSource.POLL)
                await engine.drain()
            except RentPayError as exc:
                logger.debug("Status refresh failed: %s", exc)
        print()
        _print_state(engine)
        return 0

    return await _with_engine(store, session, args, False, body)


async def _cmd_watch(store: KeyValueStore, session: SessionContext, args: argparse.Namespace) -> int:
    async def body(engine: ReconciliationEngine) -> int:
        if engine.current is None:
            print("No payment to watch.")
            return 0
        print(f"\n  Watching payment {engine.current.id} ...")
        confirmed = await _watch(engine, args.timeout)
        _print_state(engine)
        return 0 if confirmed else 1

    return await _with_engine(store, session, args, True, body)


async def _cmd_receipt(store: KeyValueStore, session: SessionContext, args: argparse.Namespace) -> int:
    async def body(engine: ReconciliationEngine) -> int:
        record = engine.receipt_record()
        if record is None:
            print("No confirmed payment to print a receipt for.")
            return 1
        rental = engine.state.rental
        receipt = build_receipt(
            record,
            tenant_name=session.tenant_name,
            house_name=rental.house_name if rental else "",
        )
        if args.json:
            print(json.dumps(receipt.to_dict(), indent=2))
        else:
            print(render_receipt_text(receipt))
        return 0

    return await _with_engine(store, session, args, False, body)


async def _cmd_reset(store: KeyValueStore, session: SessionContext, args: argparse.Namespace) -> int:
    async def body(engine: ReconciliationEngine) -> int:
        try:
            engine.reset()
        except ResetNotAllowed as exc:
            print(f"  {exc.message}", file=sys.stderr)
            return 1
        print("\n  Payment cleared. You can submit a new payment.")
        _print_state(engine)
        return 0

    return await _with_engine(store, session, args, False, body)


async def _cmd_stats(store: KeyValueStore, session: SessionContext, args: argparse.Namespace) -> int:
    async def body(engine: ReconciliationEngine) -> int:
        print(json.dumps({"state": engine.snapshot(), "stats": engine.get_stats()}, indent=2))
        return 0

    return await _with_engine(store, session, args, False, body)


COMMANDS = {
    "rental": _cmd_rental,
    "history": _cmd_history,
    "pay": _cmd_pay,
    "status": _cmd_status,
    "watch": _cmd_watch,
    "receipt": _cmd_receipt,
    "reset": _cmd_reset,
    "stats": _cmd_stats,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rentpay",
        description="RentPay -- tenant rent payment CLI",
    )
    parser.add_argument("--api-url", default=API_BASE_URL, help="Backend API root")
    parser.add_argument("--push-url", default=PUSH_URL, help="WebSocket endpoint for payment events")
    parser.add_argument("--poll-interval", type=float, default=POLL_INTERVAL, help="Seconds between status polls")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", help="Available commands")

    p_login = sub.add_parser("login", help="Store the session credential")
    p_login.add_argument("--tenant-id", required=True, help="Tenant id")
    p_login.add_argument("--name", default="", help="Tenant display name")
    p_login.add_argument("--token", required=True, help="Bearer token")

    sub.add_parser("logout", help="Clear the stored session")
    sub.add_parser("rental", help="Show the active rental")

    p_hist = sub.add_parser("history", help="List past payments")
    p_hist.add_argument("--limit", type=int, default=10, help="Max results")

    p_pay = sub.add_parser("pay", help="Submit a payment")
    p_pay.add_argument("--method", required=True, help="cash or mpesa")
    p_pay.add_argument("--amount", required=True, help="Amount to pay")
    p_pay.add_argument("--month", default=None, help="Billing month (YYYY-MM)")
    p_pay.add_argument("--phone", default=None, help="M-Pesa phone number")
    p_pay.add_argument("--wait", action="store_true", help="Wait for confirmation")
    p_pay.add_argument("--timeout", type=float, default=DEFAULT_WATCH_TIMEOUT, help="Wait timeout (s)")

    sub.add_parser("status", help="Show the current payment")

    p_watch = sub.add_parser("watch", help="Wait for the current payment to be confirmed")
    p_watch.add_argument("--timeout", type=float, default=DEFAULT_WATCH_TIMEOUT, help="Timeout (s)")

    p_rcpt = sub.add_parser("receipt", help="Print the receipt for a confirmed payment")
    p_rcpt.add_argument("--json", action="store_true", help="Output JSON")

    sub.add_parser("reset", help="Clear the current payment and start over")
    sub.add_parser("stats", help="Engine state and counters")
    return parser


def _cli_main(argv: Optional[list] = None, store: Optional[KeyValueStore] = None) -> int:
    """CLI entry point: python -m rentpay.cli <command> [options]."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    store = store if store is not None else JsonFileStore()

    if args.command == "login":
        SessionContext(tenant_id=args.tenant_id, token=args.token, tenant_name=args.name).save_to(store)
        print(f"Logged in as {args.name or args.tenant_id}.")
        return 0
    if args.command == "logout":
        store.clear()
        print("Session cleared.")
        return 0

    session = _load_session(store)
    if not session.is_authenticated:
        print("Not logged in. Run `login` first or set RENTPAY_TENANT_ID and RENTPAY_TOKEN.", file=sys.stderr)
        return 1

    try:
        return asyncio.run(COMMANDS[args.command](store, session, args))
    except RentPayError as exc:
        print(f"\nError: {exc.message}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    except Exception as exc:
        logger.exception("Unexpected error")
        print(f"\nFatal: {exc}", file=sys.stderr)
        return 2


def main() -> None:
    """Module entry point."""
    sys.exit(_cli_main())


if __name__ == "__main__":
    main()
