"""
Shared fixtures for the RentPay test suite.

Provides sample backend payloads, in-memory stores, and mock HTTP/API
objects so that all tests run WITHOUT a backend or network.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from rentpay.models import PaymentRecord, RentalAgreement
from rentpay.session import MemoryStore, PaymentCache, SessionContext


TENANT_ID = "tenant-1"
RENTAL_ID = "rental-1"


# ---------------------------------------------------------------------------
# Payload fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def rental_payload():
    """Backend JSON for a 12,000/month active rental."""
    return {
        "_id": RENTAL_ID,
        "tenant": {"_id": TENANT_ID, "name": "Jane Doe"},
        "house": {"_id": "house-1", "name": "Kilimani A4"},
        "monthlyAmount": 12000,
        "dueDate": "2025-11-05",
        "nextPaymentDate": "2025-12-05",
        "paymentStatus": "pending",
        "rentalStatus": "active",
    }


@pytest.fixture
def rental(rental_payload):
    return RentalAgreement.from_dict(rental_payload)


@pytest.fixture
def payment_payload():
    """Factory for backend payment JSON."""

    def _make(payment_id="pay-1", status="pending", amount=5000, balance=7000,
              method="cash", **extra):
        data = {
            "_id": payment_id,
            "rental": RENTAL_ID,
            "tenant": TENANT_ID,
            "amount": amount,
            "method": method,
            "status": status,
            "month": "2025-11",
            "balance": balance,
            "createdAt": "2025-11-02T08:30:00.000Z",
        }
        data.update(extra)
        return data

    return _make


@pytest.fixture
def make_record(payment_payload):
    """Factory for PaymentRecord objects."""

    def _make(**kwargs):
        return PaymentRecord.from_dict(payment_payload(**kwargs))

    return _make


# ---------------------------------------------------------------------------
# Session fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache(store):
    return PaymentCache(store)


@pytest.fixture
def session():
    return SessionContext(tenant_id=TENANT_ID, token="tok-123", tenant_name="Jane Doe")


@pytest.fixture
def fake_api(rental):
    """AsyncMock standing in for RentalApiClient."""
    api = MagicMock()
    api.get_tenant_rental = AsyncMock(return_value=rental)
    api.list_my_payments = AsyncMock(return_value=[])
    api.get_payment = AsyncMock()
    api.add_payment = AsyncMock()
    api.close = AsyncMock()
    api.__aenter__ = AsyncMock(return_value=api)
    api.__aexit__ = AsyncMock(return_value=False)
    return api


# ---------------------------------------------------------------------------
# HTTP mock fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_aiohttp_response():
    """Create a mock aiohttp response factory."""

    def _make(status=200, json_data=None, text=""):
        resp = AsyncMock()
        resp.status = status
        if json_data is None:
            resp.json = AsyncMock(side_effect=json.JSONDecodeError("no json", text or "", 0))
        else:
            resp.json = AsyncMock(return_value=json_data)
        resp.text = AsyncMock(return_value=text)
        resp.__aenter__ = AsyncMock(return_value=resp)
        resp.__aexit__ = AsyncMock(return_value=False)
        return resp

    return _make


@pytest.fixture
def mock_aiohttp_session():
    """Create a mock aiohttp ClientSession whose request() yields queued responses."""

    def _make(*responses):
        session = MagicMock()
        session.closed = False
        session.request = MagicMock(side_effect=list(responses))
        session.close = AsyncMock()
        return session

    return _make