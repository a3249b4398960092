"""
Rental Loader -- fetches the tenant's active rental once per session.

The loaded rental supplies the balance baseline the reconciliation engine
falls back to when no payment carries a balance.  Fetch failures are
recoverable: the error is recorded for the view and the previous snapshot is
kept.

Also hosts the dashboard helpers that summarize a tenant's rentals and
describe the next payment cycle.

Usage:
    from rentpay.rental_loader import RentalLoader, next_payment_info

    loader = RentalLoader(api)
    rental = await loader.load(session)
    info = next_payment_info(rental)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from rentpay.errors import RentPayError
from rentpay.models import RentalAgreement, RentalPaymentStatus, parse_date
from rentpay.session import SessionContext

logger = logging.getLogger("rental_loader")

LOAD_ERROR_MESSAGE = "Failed to load your rental data."


class RentalLoader:
    """Loads and holds the read-only rental snapshot for the current tenant."""

    def __init__(self, api: Any) -> None:
        self.api = api
        self.rental: Optional[RentalAgreement] = None
        self.last_error: Optional[str] = None
        self._loaded_for: Optional[str] = None

    async def load(self, session: SessionContext, force: bool = False) -> Optional[RentalAgreement]:
        """Fetch the tenant's rental.

        Returns the current snapshot, which is ``None`` when the tenant has no
        rental.  Without a tenant id this is a no-op.
        """
        tenant_id = session.tenant_id
        if not tenant_id:
            return self.rental
        if not force and self._loaded_for == tenant_id:
            return self.rental

        if self._loaded_for is not None and self._loaded_for != tenant_id:
            # Another tenant's snapshot must not leak into this session.
            self.rental = None

        try:
            rental = await self.api.get_tenant_rental(tenant_id)
        except RentPayError as exc:
            self.last_error = LOAD_ERROR_MESSAGE
            logger.warning("Error fetching rental for tenant %s: %s", tenant_id, exc)
            return self.rental

        self.rental = rental
        self.last_error = None
        self._loaded_for = tenant_id
        if rental is None:
            logger.info("No rental found for tenant %s", tenant_id)
        else:
            logger.info(
                "Loaded rental %s for tenant %s (monthly %s)",
                rental.id, tenant_id, rental.monthly_amount,
            )
        return rental


# ---------------------------------------------------------------------------
# Dashboard helpers
# ---------------------------------------------------------------------------

@dataclass
class NextPaymentInfo:
    """Human-readable description of where a rental stands this cycle."""
    label: str
    tone: str
    sub: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"label": self.label, "tone": self.tone, "sub": self.sub}


def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'s' if n > 1 else ''}"


def next_payment_info(rental: Optional[RentalAgreement], today: Optional[date] = None) -> NextPaymentInfo:
    """Describe the rental's next payment cycle relative to today."""
    if rental is None:
        return NextPaymentInfo("No payment info", "neutral")

    today = today or date.today()
    due = parse_date(rental.due_date)
    next_pay = parse_date(rental.next_payment_date)

    if rental.payment_status is RentalPaymentStatus.PAID:
        when = next_pay.isoformat() if next_pay else "the next cycle"
        return NextPaymentInfo(
            f"Paid. Next rent due on {when}", "success", "All payments are up to date",
        )

    if due is None:
        return NextPaymentInfo("No payment info", "neutral")

    days_left = (due - today).days

    if rental.payment_status is RentalPaymentStatus.PENDING:
        if days_left > 0:
            return NextPaymentInfo(
                f"Due in {_plural(days_left, 'day')} ({due.isoformat()})",
                "warning", "Please make payment soon.",
            )
        if days_left == 0:
            return NextPaymentInfo(
                f"Due today ({due.isoformat()})",
                "warning", "Please pay before the end of the day to avoid penalty.",
            )

    if rental.payment_status is RentalPaymentStatus.LATE or days_left < 0:
        overdue = max(1, -days_left)
        return NextPaymentInfo(
            f"Overdue by {_plural(overdue, 'day')} (was due {due.isoformat()})",
            "danger", "Your rent payment is late. Please pay immediately.",
        )

    return NextPaymentInfo("No payment info", "neutral")


def summarize_rentals(rentals: Iterable[RentalAgreement]) -> Dict[str, Any]:
    """Active-rental count and total monthly rent across the tenant's rentals."""
    items = list(rentals)
    total = sum((r.monthly_amount for r in items), Decimal("0"))
    return {
        "rental_count": len(items),
        "active_rentals": sum(1 for r in items if r.is_active),
        "total_monthly_rent": total,
    }
