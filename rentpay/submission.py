"""
Payment Submission Handler.

Validates a payment draft locally, then submits it and seeds the
reconciliation engine with the backend's immediate response.  Validation
failures never reach the network.

Usage:
    from rentpay.submission import PaymentDraft, PaymentSubmitter

    submitter = PaymentSubmitter(api, engine)
    record = await submitter.submit(
        PaymentDraft(method="mpesa", amount="5000", month="2025-11", phone_number="0712345678")
    )
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from rentpay.errors import (
    SubmissionInFlight,
    SubmissionRejected,
    TransportError,
    ValidationError,
)
from rentpay.models import (
    PaymentMethod,
    PaymentRecord,
    RentalAgreement,
    format_amount,
    is_valid_month,
    to_amount,
)
from rentpay.reconciler import UpdateSource

logger = logging.getLogger("submission")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TRANSACTION_PREFIX = "MP"
PHONE_PATTERN = re.compile(r"^\+?\d{9,13}$")
GENERIC_FAILURE_MESSAGE = "Payment failed. Try again."
INACTIVE_VIEW_MESSAGE = "Payment view is no longer active."


# ---------------------------------------------------------------------------
# Drafts
# ---------------------------------------------------------------------------

@dataclass
class PaymentDraft:
    """Raw payment form input, as typed by the tenant."""
    method: str
    amount: Any
    month: Optional[str] = None
    phone_number: Optional[str] = None


@dataclass
class ValidatedPayment:
    """A draft that passed local validation."""
    method: PaymentMethod
    amount: Decimal
    month: Optional[str] = None
    phone_number: Optional[str] = None


def validate_draft(
    draft: PaymentDraft,
    remaining_balance: Decimal,
    rental: Optional[RentalAgreement],
) -> ValidatedPayment:
    """Check a draft against the loaded rental and remaining balance.

    Raises ValidationError scoped to the first offending field.
    """
    if rental is None:
        raise ValidationError("rental", "No active rental is loaded.")

    try:
        amount = to_amount(draft.amount)
    except ValueError:
        raise ValidationError("amount", "Amount must be a number.") from None
    if amount <= 0:
        raise ValidationError("amount", "Amount must be greater than zero.")
    if amount > remaining_balance:
        raise ValidationError(
            "amount",
            f"Amount cannot exceed the remaining balance of {format_amount(remaining_balance)}.",
        )

    try:
        method = PaymentMethod.from_string(draft.method or "")
    except ValueError:
        raise ValidationError("method", "Select a payment method (cash or mpesa).") from None

    phone = None
    if method is PaymentMethod.MPESA:
        phone = re.sub(r"[\s-]", "", draft.phone_number or "")
        if not phone:
            raise ValidationError("phone_number", "Please enter your phone number for Mpesa payment.")
        if not PHONE_PATTERN.match(phone):
            raise ValidationError("phone_number", "Enter a valid phone number, e.g. 07XXXXXXXX.")

    month = (draft.month or "").strip() or None
    if month is not None and not is_valid_month(month):
        raise ValidationError("month", "Month must be in YYYY-MM format.")

    return ValidatedPayment(method=method, amount=amount, month=month, phone_number=phone)


def generate_transaction_id(now_ms: Optional[int] = None) -> str:
    """Client-side token for electronic payments: prefix, epoch millis, random suffix."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{TRANSACTION_PREFIX}{now_ms}{uuid.uuid4().hex[:6].upper()}"


def build_payload(
    payment: ValidatedPayment,
    rental: RentalAgreement,
    transaction_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Request body for ``POST /payment/add``."""
    payload: Dict[str, Any] = {
        "rentalId": rental.id,
        "amount": str(payment.amount),
        "method": payment.method.value,
    }
    if payment.month:
        payload["month"] = payment.month
    if payment.method.is_electronic:
        payload["transactionId"] = transaction_id
        payload["phoneNumber"] = payment.phone_number
    return payload


# ---------------------------------------------------------------------------
# Submitter
# ---------------------------------------------------------------------------

class PaymentSubmitter:
    """Submits validated payments and hands the response to the engine."""

    def __init__(
        self,
        api: Any,
        engine: Any,
        id_factory: Callable[[], str] = generate_transaction_id,
    ) -> None:
        self.api = api
        self.engine = engine
        self.id_factory = id_factory

    async def submit(self, draft: PaymentDraft) -> PaymentRecord:
        """Validate, submit, and seed the engine with the backend's record.

        Raises
        ------
        ValidationError
            Local validation failed; nothing was sent.
        ValidationError
            The engine is not mounted; nothing was sent.
        SubmissionInFlight
            Another submission is still outstanding.
        SubmissionRejected
            The backend refused the payment or could not be reached.
        """
        if not self.engine.mounted:
            raise ValidationError("form", INACTIVE_VIEW_MESSAGE)
        if self.engine.submission_in_flight:
            raise SubmissionInFlight()

        state = self.engine.state
        payment = validate_draft(draft, state.remaining_balance, state.rental)
        transaction_id = self.id_factory() if payment.method.is_electronic else None
        payload = build_payload(payment, state.rental, transaction_id)

        with self.engine.submission_guard():
            try:
                record = await self.api.add_payment(payload)
            except SubmissionRejected as exc:
                logger.warning("Payment rejected by backend: %s", exc.message)
                raise
            except TransportError as exc:
                logger.warning("Payment submission failed in transit: %s", exc)
                raise SubmissionRejected(GENERIC_FAILURE_MESSAGE) from exc

            self.engine.apply(record, UpdateSource.SUBMISSION)

        logger.info(
            "Submitted %s payment %s of %s (status %s)",
            record.method.value, record.id, format_amount(record.amount), record.status.value,
        )
        return record
