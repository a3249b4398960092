"""
Domain types for the RentPay client.

RentalAgreement and PaymentRecord mirror the backend JSON.  ``from_dict``
accepts the backend's camelCase keys (``_id``, ``rentalId``, populated
``rental``/``tenant`` objects) as well as snake_case; ``to_dict`` always
emits the camelCase wire shape with amounts as strings, which is also what
the persisted payment slot holds.

Amounts are ``Decimal`` quantized to cents.  ``balance`` on a payment is the
remaining rental balance after that payment.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CURRENCY_LABEL = "Ksh"
CENTS = Decimal("0.01")
MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class PaymentMethod(str, Enum):
    """Supported payment methods."""
    CASH = "cash"
    MPESA = "mpesa"

    @classmethod
    def from_string(cls, value: str) -> PaymentMethod:
        normalized = str(value).strip().lower().replace("-", "").replace(" ", "")
        for member in cls:
            if member.value == normalized or member.name.lower() == normalized:
                return member
        raise ValueError(
            f"Unknown payment method: {value!r}. "
            f"Valid: {', '.join(m.value for m in cls)}"
        )

    @property
    def is_electronic(self) -> bool:
        return self is PaymentMethod.MPESA


class PaymentStatus(str, Enum):
    """Lifecycle status of a payment, ordered pending < successful."""
    PENDING = "pending"
    SUCCESSFUL = "successful"

    @classmethod
    def from_string(cls, value: str) -> PaymentStatus:
        normalized = str(value).strip().lower()
        for member in cls:
            if member.value == normalized or member.name.lower() == normalized:
                return member
        raise ValueError(f"Unknown payment status: {value!r}")

    @property
    def rank(self) -> int:
        """Position in the monotonic status ordering."""
        return {
            PaymentStatus.PENDING: 0,
            PaymentStatus.SUCCESSFUL: 1,
        }[self]

    @property
    def is_terminal(self) -> bool:
        return self is PaymentStatus.SUCCESSFUL


class RentalPaymentStatus(str, Enum):
    """Payment standing of a rental for the current cycle."""
    PAID = "paid"
    PENDING = "pending"
    LATE = "late"

    @classmethod
    def from_string(cls, value: str) -> RentalPaymentStatus:
        normalized = str(value).strip().lower()
        for member in cls:
            if member.value == normalized or member.name.lower() == normalized:
                return member
        raise ValueError(f"Unknown rental payment status: {value!r}")


class RentalStatus(str, Enum):
    """Whether a rental agreement is in force."""
    ACTIVE = "active"
    INACTIVE = "inactive"

    @classmethod
    def from_string(cls, value: str) -> RentalStatus:
        normalized = str(value).strip().lower()
        for member in cls:
            if member.value == normalized or member.name.lower() == normalized:
                return member
        raise ValueError(f"Unknown rental status: {value!r}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def to_amount(value: Any) -> Decimal:
    """Parse a number or numeric string into a cent-quantized Decimal.

    Raises ValueError for booleans, blanks, non-numbers, NaN, infinity and
    magnitudes too large to carry cents.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Not an amount: {value!r}")
    if isinstance(value, Decimal):
        amount = value
    else:
        text = str(value).strip().replace(",", "")
        if not text:
            raise ValueError("Amount is empty")
        try:
            amount = Decimal(text)
        except InvalidOperation:
            raise ValueError(f"Not an amount: {value!r}") from None
    if not amount.is_finite():
        raise ValueError(f"Not an amount: {value!r}")
    try:
        return amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValueError(f"Amount out of range: {value!r}") from None


def format_amount(amount: Optional[Decimal], currency: str = CURRENCY_LABEL) -> str:
    """Format an amount the way receipts show it: ``Ksh 12,000`` or ``Ksh 12,000.50``."""
    if amount is None:
        return "N/A"
    if amount == amount.to_integral_value():
        return f"{currency} {int(amount):,}"
    return f"{currency} {amount:,.2f}"


def parse_date(value: Optional[str]) -> Optional[date]:
    """Parse the date part of an ISO date or datetime string."""
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def is_valid_month(value: str) -> bool:
    """Whether value is a billing period in ``YYYY-MM`` form."""
    return bool(MONTH_PATTERN.match(value or ""))


def _pick(data: Dict[str, Any], *keys: str) -> Any:
    """Return the first non-None value among keys."""
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _ref_id(value: Any) -> str:
    """Resolve a reference that may be a plain id or a populated object."""
    if isinstance(value, dict):
        return str(_pick(value, "_id", "id") or "")
    return str(value) if value is not None else ""


def _ref_name(value: Any) -> str:
    if isinstance(value, dict):
        return str(_pick(value, "name", "houseName", "title") or "")
    return ""


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass
class RentalAgreement:
    """Read-only snapshot of a tenant's lease."""
    id: str
    tenant_id: str
    monthly_amount: Decimal
    due_date: str = ""
    next_payment_date: str = ""
    payment_status: RentalPaymentStatus = RentalPaymentStatus.PENDING
    rental_status: RentalStatus = RentalStatus.ACTIVE
    house_name: str = ""

    @property
    def is_active(self) -> bool:
        return self.rental_status is RentalStatus.ACTIVE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> RentalAgreement:
        if not isinstance(data, dict):
            raise ValueError(f"Rental payload must be an object, got {type(data).__name__}")
        rental_id = _ref_id(_pick(data, "_id", "id"))
        if not rental_id:
            raise ValueError("Rental payload has no id")
        monthly = to_amount(_pick(data, "monthlyAmount", "monthly_amount", "amount"))
        if monthly <= 0:
            raise ValueError(f"Rental amount must be positive, got {monthly}")
        house = data.get("house")
        return cls(
            id=rental_id,
            tenant_id=_ref_id(_pick(data, "tenant", "tenantId", "tenant_id")),
            monthly_amount=monthly,
            due_date=str(_pick(data, "dueDate", "due_date") or ""),
            next_payment_date=str(_pick(data, "nextPaymentDate", "next_payment_date") or ""),
            payment_status=RentalPaymentStatus.from_string(
                _pick(data, "paymentStatus", "payment_status") or "pending"
            ),
            rental_status=RentalStatus.from_string(
                _pick(data, "rentalStatus", "rental_status") or "active"
            ),
            house_name=str(_pick(data, "houseName", "house_name") or _ref_name(house)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "monthlyAmount": str(self.monthly_amount),
            "dueDate": self.due_date,
            "nextPaymentDate": self.next_payment_date,
            "paymentStatus": self.payment_status.value,
            "rentalStatus": self.rental_status.value,
            "houseName": self.house_name,
        }


@dataclass
class PaymentRecord:
    """One payment attempt as last reported by some channel.

    Never mutated in place; an accepted update replaces the whole record.
    """
    id: Optional[str]
    rental_id: str
    tenant_id: str
    amount: Decimal
    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING
    month: Optional[str] = None
    transaction_id: Optional[str] = None
    balance: Optional[Decimal] = None
    created_at: str = ""
    phone_number: Optional[str] = None
    payment_date: str = ""
    tenant_name: str = ""
    house_name: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PaymentRecord:
        """Build a record from backend JSON or a cached slot.

        Raises ValueError when the payload is not a usable payment.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Payment payload must be an object, got {type(data).__name__}")

        amount = to_amount(data.get("amount"))
        if amount <= 0:
            raise ValueError(f"Payment amount must be positive, got {amount}")

        raw_balance = data.get("balance")
        balance = None
        if raw_balance is not None and raw_balance != "":
            balance = to_amount(raw_balance)
            if balance < 0:
                raise ValueError(f"Payment balance cannot be negative, got {balance}")

        raw_method = data.get("method", data.get("paymentMethod"))
        if raw_method is None:
            raise ValueError("Payment payload has no method")

        rental = _pick(data, "rental", "rentalId", "rental_id")
        tenant = _pick(data, "tenant", "tenantId", "tenant_id")
        payment_id = _ref_id(_pick(data, "_id", "id")) or None

        return cls(
            id=payment_id,
            rental_id=_ref_id(rental),
            tenant_id=_ref_id(tenant),
            amount=amount,
            method=PaymentMethod.from_string(raw_method),
            status=PaymentStatus.from_string(data.get("status") or "pending"),
            month=_pick(data, "month") or None,
            transaction_id=_pick(data, "transactionId", "transaction_id") or None,
            balance=balance,
            created_at=str(_pick(data, "createdAt", "created_at") or ""),
            phone_number=_pick(data, "phoneNumber", "phone_number") or None,
            payment_date=str(_pick(data, "paymentDate", "payment_date") or ""),
            tenant_name=str(_pick(data, "tenantName", "tenant_name") or _ref_name(tenant)),
            house_name=str(_pick(data, "houseName", "house_name") or _ref_name(rental)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rentalId": self.rental_id,
            "tenantId": self.tenant_id,
            "amount": str(self.amount),
            "method": self.method.value,
            "status": self.status.value,
            "month": self.month,
            "transactionId": self.transaction_id,
            "balance": str(self.balance) if self.balance is not None else None,
            "createdAt": self.created_at,
            "phoneNumber": self.phone_number,
            "paymentDate": self.payment_date,
            "tenantName": self.tenant_name,
            "houseName": self.house_name,
        }
