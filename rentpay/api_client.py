"""
Rental backend REST client.

Async aiohttp client for the four endpoints the payment flow needs:

    GET  /rental/tenant/{tenantId}   -- the tenant's rental (object or list)
    POST /payment/add                -- submit a payment intent
    GET  /payment/{id}               -- poll one payment
    GET  /payment/my                 -- the tenant's payments, newest first

Every request carries the session's bearer credential.  GET requests retry
with exponential backoff on network errors, 429 and 5xx; POST requests are
sent exactly once.

Usage:
    from rentpay.api_client import RentalApiClient

    async with RentalApiClient(session) as api:
        rental = await api.get_tenant_rental(session.tenant_id)
        record = await api.add_payment({"rentalId": rental.id, "amount": "5000", "method": "cash"})
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Dict, List, Optional

try:
    import aiohttp
except ImportError:
    aiohttp = None  # type: ignore[assignment]

from rentpay.errors import (
    ApiError,
    AuthenticationError,
    NotFoundError,
    SubmissionRejected,
    TransportError,
)
from rentpay.models import PaymentRecord, RentalAgreement
from rentpay.session import SessionContext

logger = logging.getLogger("api_client")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

API_BASE_URL = os.getenv("RENTPAY_API_URL", "http://localhost:4050/api")
REQUEST_TIMEOUT = int(os.getenv("RENTPAY_REQUEST_TIMEOUT", "15"))

# Retry configuration
MAX_RETRIES = 2
RETRY_BASE_DELAY = 0.5  # seconds, doubles on each retry
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


def _server_message(body: Any, status: int) -> str:
    """Extract the human-readable message a backend error carries."""
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if message:
            return str(message)
    if isinstance(body, str) and body.strip():
        return body.strip()
    return f"HTTP {status}"


class RentalApiClient:
    """
    Async client for the rental backend.

    Parameters
    ----------
    session : SessionContext
        Supplies the bearer credential; never modified.
    base_url : str
        API root, e.g. ``http://localhost:4050/api``.
    timeout : int
        Total request timeout in seconds.
    """

    def __init__(
        self,
        session: SessionContext,
        base_url: str = API_BASE_URL,
        timeout: int = REQUEST_TIMEOUT,
    ) -> None:
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http: Optional[aiohttp.ClientSession] = None

    # -- Session management -------------------------------------------------

    async def _get_http(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session."""
        if aiohttp is None:
            raise ImportError(
                "aiohttp is required for RentalApiClient. "
                "Install it with: pip install aiohttp"
            )
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(
                headers={"Accept": "application/json", "User-Agent": "RentPay-Client/1.0"},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._http

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        if self._http and not self._http.closed:
            await self._http.close()
        self._http = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.session.auth_header:
            headers["Authorization"] = self.session.auth_header
        return headers

    # -- Core HTTP with retry -----------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_data: Optional[Dict[str, Any]] = None,
        retries: int = MAX_RETRIES,
    ) -> Any:
        """
        Perform a request and return the parsed body of a 2xx response.

        Raises
        ------
        AuthenticationError
            On 401 or 403.
        NotFoundError
            On 404.
        ApiError
            On any other 4xx.
        TransportError
            On network errors, timeouts, or 429/5xx once retries run out.
        """
        http = await self._get_http()
        url = f"{self.base_url}/{path.lstrip('/')}"
        last_error = ""

        for attempt in range(retries + 1):
            try:
                logger.debug("API %s %s (attempt %d/%d)", method, url, attempt + 1, retries + 1)
                async with http.request(
                    method, url, headers=self._headers(), json=json_data,
                ) as resp:
                    status = resp.status
                    try:
                        body = await resp.json(content_type=None)
                    except (json.JSONDecodeError, ValueError):
                        body = await resp.text()

                    if 200 <= status < 300:
                        return body

                    message = _server_message(body, status)
                    if status in (401, 403):
                        raise AuthenticationError(message, status_code=status, response_body=str(body))
                    if status == 404:
                        raise NotFoundError(message, status_code=status, response_body=str(body))
                    if status not in RETRY_STATUS_CODES:
                        raise ApiError(message, status_code=status, response_body=str(body))

                    last_error = f"HTTP {status}: {message}"

            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                last_error = f"{type(exc).__name__}: {exc}"

            if attempt < retries:
                delay = RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "Request %s %s failed (attempt %d/%d): %s -- retrying in %.1fs",
                    method, url, attempt + 1, retries + 1, last_error, delay,
                )
                await asyncio.sleep(delay)

        raise TransportError(f"{method} {url} failed: {last_error}")

    # -- Endpoints ------------------------------------------------------------

    async def get_tenant_rental(self, tenant_id: str) -> Optional[RentalAgreement]:
        """Fetch the tenant's rental; a list response yields its first element."""
        try:
            body = await self._request("GET", f"rental/tenant/{tenant_id}")
        except NotFoundError:
            return None
        if isinstance(body, dict) and isinstance(body.get("rentals"), list):
            body = body["rentals"]
        if isinstance(body, list):
            if not body:
                return None
            body = body[0]
        try:
            return RentalAgreement.from_dict(body)
        except ValueError as exc:
            raise TransportError(f"Malformed rental response: {exc}") from exc

    async def add_payment(self, payload: Dict[str, Any]) -> PaymentRecord:
        """Submit a payment intent.  Not retried.

        Raises SubmissionRejected with the server's message on any 4xx.
        """
        try:
            body = await self._request("POST", "payment/add", json_data=payload, retries=0)
        except ApiError as exc:
            raise SubmissionRejected(
                exc.message, status_code=exc.status_code, response_body=exc.response_body,
            ) from exc
        return self._payment_from(body, "payment/add")

    async def get_payment(self, payment_id: str, retries: int = 0) -> PaymentRecord:
        """Fetch one payment by id.  Polls retry on the next tick, not here."""
        body = await self._request("GET", f"payment/{payment_id}", retries=retries)
        return self._payment_from(body, f"payment/{payment_id}")

    async def list_my_payments(self) -> List[PaymentRecord]:
        """Fetch the tenant's payments, most recent first.  Unreadable entries are skipped."""
        body = await self._request("GET", "payment/my")
        items = body.get("payments", []) if isinstance(body, dict) else body
        if not isinstance(items, list):
            raise TransportError("Malformed payment list response")
        records: List[PaymentRecord] = []
        for item in items:
            try:
                records.append(PaymentRecord.from_dict(item))
            except ValueError as exc:
                logger.warning("Skipping unreadable payment in history: %s", exc)
        return records

    @staticmethod
    def _payment_from(body: Any, endpoint: str) -> PaymentRecord:
        payload = body.get("payment", body) if isinstance(body, dict) else body
        try:
            return PaymentRecord.from_dict(payload)
        except ValueError as exc:
            raise TransportError(f"Malformed payment response from {endpoint}: {exc}") from exc
