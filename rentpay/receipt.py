"""
Receipt data for confirmed payments.

A receipt is a pure function of one terminal payment record.  This module
builds the receipt fields and a plain-text rendering; document export is
left to the caller.

Usage:
    from rentpay.receipt import build_receipt, render_receipt_text

    record = engine.receipt_record()
    if record is not None:
        print(render_receipt_text(build_receipt(record, tenant_name="Jane")))
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from rentpay.models import PaymentMethod, PaymentRecord, format_amount, is_valid_month, parse_date

METHOD_LABELS = {
    PaymentMethod.CASH: "Cash",
    PaymentMethod.MPESA: "M-Pesa",
}


def format_month(month: Optional[str]) -> str:
    """``2025-11`` -> ``November 2025``; anything else -> ``N/A``."""
    if not month or not is_valid_month(month):
        return "N/A"
    year, mon = month.split("-")
    return date(int(year), int(mon), 1).strftime("%B %Y")


@dataclass
class Receipt:
    """Display-ready fields of a rent receipt."""
    payment_id: str
    receipt_date: str
    tenant_name: str
    house_name: str
    month: str
    method: str
    amount: str
    balance: str
    phone_number: Optional[str] = None
    transaction_id: Optional[str] = None
    lines: List[Tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_receipt(
    record: PaymentRecord,
    *,
    tenant_name: str = "",
    house_name: str = "",
) -> Receipt:
    """Build receipt fields from a successful payment.

    Raises ValueError for a record that has not reached a terminal status.
    """
    if not record.is_terminal:
        raise ValueError(
            f"Payment {record.id} is {record.status.value}; receipts need a successful payment"
        )

    issued = parse_date(record.payment_date) or parse_date(record.created_at)
    receipt = Receipt(
        payment_id=record.id or "",
        receipt_date=issued.isoformat() if issued else "N/A",
        tenant_name=record.tenant_name or tenant_name or "N/A",
        house_name=record.house_name or house_name or "N/A",
        month=format_month(record.month),
        method=METHOD_LABELS[record.method],
        amount=format_amount(record.amount),
        balance=format_amount(record.balance),
    )
    if record.method.is_electronic:
        receipt.phone_number = record.phone_number or "N/A"
        receipt.transaction_id = record.transaction_id

    receipt.lines = [
        ("Receipt Date", receipt.receipt_date),
        ("Tenant Name", receipt.tenant_name),
        ("House", receipt.house_name),
        ("Payment Month", receipt.month),
        ("Payment Method", receipt.method),
    ]
    if receipt.phone_number is not None:
        receipt.lines.append(("Phone Number", receipt.phone_number))
    if receipt.transaction_id:
        receipt.lines.append(("Transaction ID", receipt.transaction_id))
    receipt.lines.extend([
        ("Amount Paid", receipt.amount),
        ("Balance", receipt.balance),
    ])
    return receipt


def render_receipt_text(receipt: Receipt, width: int = 44) -> str:
    """Plain-text receipt."""
    rule = "-" * width
    out = [
        "Tenant Rent Receipt".center(width),
        "Official Payment Confirmation".center(width),
        rule,
    ]
    label_width = max(len(label) for label, _ in receipt.lines) + 2
    for label, value in receipt.lines:
        out.append(f"{label + ':':<{label_width}}{value}")
    out.append(rule)
    out.append(f"Payment ID: {receipt.payment_id}")
    return "\n".join(out)
