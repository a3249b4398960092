"""
Tests for the rental backend REST client.

All HTTP calls are mocked at the aiohttp session level.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

try:
    import aiohttp

    from rentpay.api_client import RentalApiClient
    from rentpay.errors import (
        ApiError,
        AuthenticationError,
        SubmissionRejected,
        TransportError,
    )
    from rentpay.models import PaymentStatus
    HAS_API = True
except ImportError:
    HAS_API = False

pytestmark = pytest.mark.skipif(
    not HAS_API,
    reason="rentpay.api_client or aiohttp not available"
)

BASE_URL = "http://backend.test/api"


@pytest.fixture
def client(session):
    return RentalApiClient(session, base_url=BASE_URL + "/")


def _attach(client, http):
    client._http = http
    return http


# ===================================================================
# Request plumbing
# ===================================================================

class TestRequest:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sends_bearer_credential(self, client, mock_aiohttp_session, mock_aiohttp_response,
                                           payment_payload):
        http = _attach(client, mock_aiohttp_session(mock_aiohttp_response(200, payment_payload())))
        await client.get_payment("pay-1")
        args, kwargs = http.request.call_args
        assert args == ("GET", f"{BASE_URL}/payment/pay-1")
        assert kwargs["headers"]["Authorization"] == "Bearer tok-123"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_retries_on_5xx_then_succeeds(self, client, mock_aiohttp_session,
                                                    mock_aiohttp_response, payment_payload):
        http = _attach(client, mock_aiohttp_session(
            mock_aiohttp_response(503, {"message": "busy"}),
            mock_aiohttp_response(200, {"payments": [payment_payload()]}),
        ))
        with patch("rentpay.api_client.asyncio.sleep", new=AsyncMock()):
            records = await client.list_my_payments()
        assert http.request.call_count == 2
        assert [r.id for r in records] == ["pay-1"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_network_errors_exhaust_into_transport_error(self, client, mock_aiohttp_session):
        errors = [aiohttp.ClientConnectionError("refused") for _ in range(3)]
        http = _attach(client, mock_aiohttp_session(*errors))
        with patch("rentpay.api_client.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(TransportError):
                await client.list_my_payments()
        assert http.request.call_count == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_auth_failure_not_retried(self, client, mock_aiohttp_session, mock_aiohttp_response):
        http = _attach(client, mock_aiohttp_session(
            mock_aiohttp_response(401, {"message": "jwt expired"}),
        ))
        with pytest.raises(AuthenticationError) as exc_info:
            await client.list_my_payments()
        assert exc_info.value.message == "jwt expired"
        assert http.request.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_plain_text_error_body(self, client, mock_aiohttp_session, mock_aiohttp_response):
        _attach(client, mock_aiohttp_session(mock_aiohttp_response(422, None, text="Bad input")))
        with pytest.raises(ApiError) as exc_info:
            await client.get_payment("pay-1")
        assert exc_info.value.message == "Bad input"
        assert exc_info.value.status_code == 422


# ===================================================================
# Endpoints
# ===================================================================

class TestRentalEndpoint:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_single_object(self, client, mock_aiohttp_session, mock_aiohttp_response,
                                 rental_payload):
        _attach(client, mock_aiohttp_session(mock_aiohttp_response(200, rental_payload)))
        rental = await client.get_tenant_rental("tenant-1")
        assert rental.monthly_amount == Decimal("12000.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_takes_first(self, client, mock_aiohttp_session, mock_aiohttp_response,
                                    rental_payload):
        second = dict(rental_payload, _id="rental-2")
        _attach(client, mock_aiohttp_session(
            mock_aiohttp_response(200, {"rentals": [rental_payload, second]}),
        ))
        rental = await client.get_tenant_rental("tenant-1")
        assert rental.id == "rental-1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_list_and_404_mean_no_rental(self, client, mock_aiohttp_session,
                                                     mock_aiohttp_response):
        _attach(client, mock_aiohttp_session(
            mock_aiohttp_response(200, []),
            mock_aiohttp_response(404, {"message": "No rental"}),
        ))
        assert await client.get_tenant_rental("tenant-1") is None
        assert await client.get_tenant_rental("tenant-1") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_rental_is_transport_error(self, client, mock_aiohttp_session,
                                                       mock_aiohttp_response):
        _attach(client, mock_aiohttp_session(mock_aiohttp_response(200, {"_id": "r1"})))
        with pytest.raises(TransportError):
            await client.get_tenant_rental("tenant-1")


class TestPaymentEndpoints:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_add_payment_unwraps_envelope(self, client, mock_aiohttp_session,
                                                mock_aiohttp_response, payment_payload):
        http = _attach(client, mock_aiohttp_session(
            mock_aiohttp_response(201, {"message": "Payment recorded", "payment": payment_payload()}),
        ))
        payload = {"rentalId": "rental-1", "amount": "5000.00", "method": "cash"}
        record = await client.add_payment(payload)
        assert record.status is PaymentStatus.PENDING
        assert http.request.call_args.kwargs["json"] == payload

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_add_payment_rejection_carries_server_message(self, client, mock_aiohttp_session,
                                                                mock_aiohttp_response):
        _attach(client, mock_aiohttp_session(
            mock_aiohttp_response(400, {"message": "insufficient rental"}),
        ))
        with pytest.raises(SubmissionRejected) as exc_info:
            await client.add_payment({"rentalId": "rental-1"})
        assert exc_info.value.message == "insufficient rental"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_add_payment_never_retried(self, client, mock_aiohttp_session, mock_aiohttp_response):
        http = _attach(client, mock_aiohttp_session(
            mock_aiohttp_response(502, {"message": "bad gateway"}),
            mock_aiohttp_response(201, {}),
        ))
        with pytest.raises(TransportError):
            await client.add_payment({"rentalId": "rental-1"})
        assert http.request.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_history_skips_unreadable_entries(self, client, mock_aiohttp_session,
                                                    mock_aiohttp_response, payment_payload):
        _attach(client, mock_aiohttp_session(mock_aiohttp_response(200, {
            "payments": [payment_payload(), {"_id": "junk"}, payment_payload(payment_id="pay-0")],
        })))
        records = await client.list_my_payments()
        assert [r.id for r in records] == ["pay-1", "pay-0"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_history_skips_out_of_range_amounts(self, client, mock_aiohttp_session,
                                                      mock_aiohttp_response, payment_payload):
        _attach(client, mock_aiohttp_session(mock_aiohttp_response(200, {
            "payments": [payment_payload(payment_id="pay-big", amount="1e30"), payment_payload()],
        })))
        records = await client.list_my_payments()
        assert [r.id for r in records] == ["pay-1"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {"_id": "pay-1", "amount": "1e30", "method": "cash"},
        {"_id": "pay-1", "amount": 5000, "method": "cash", "status": "refunded"},
        ["pay-1"],
    ])
    async def test_malformed_payment_is_transport_error(self, client, mock_aiohttp_session,
                                                        mock_aiohttp_response, body):
        _attach(client, mock_aiohttp_session(mock_aiohttp_response(200, body)))
        with pytest.raises(TransportError):
            await client.get_payment("pay-1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_close_releases_session(self, client, mock_aiohttp_session):
        http = _attach(client, mock_aiohttp_session())
        await client.close()
        http.close.assert_awaited_once()
        assert client._http is None
