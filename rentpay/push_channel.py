"""
Push channel -- real-time payment notifications over a WebSocket.

One persistent subscription per tenant.  After every connect (the first one
and each reconnect) the client re-sends its tenant registration; the server
then pushes a ``paymentApproved`` event carrying a full payment record
whenever an admin or the gateway confirms a payment for that tenant.

Wire format (JSON text frames):
    client -> server   {"event": "register", "data": {"tenantId": "..."}}
    server -> client   {"event": "paymentApproved", "data": {...payment...}}

Socket.IO-style frames (``["paymentApproved", {...}]``) are accepted too.

Disconnects are never fatal: the channel reconnects with capped exponential
backoff until closed.  Polling keeps the engine correct meanwhile.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Callable, Dict, Optional

try:
    import aiohttp
except ImportError:
    aiohttp = None  # type: ignore[assignment]

logger = logging.getLogger("push_channel")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

PUSH_URL = os.getenv("RENTPAY_PUSH_URL", "ws://localhost:4050/ws")
HEARTBEAT_SECONDS = 30.0
RECONNECT_BASE_DELAY = 1.0
RECONNECT_MAX_DELAY = 30.0

REGISTER_EVENT = "register"
PAYMENT_APPROVED_EVENT = "paymentApproved"


def _default_session_factory():
    if aiohttp is None:
        raise ImportError(
            "aiohttp is required for PushChannel. Install it with: pip install aiohttp"
        )
    return aiohttp.ClientSession()


class PushChannel:
    """
    Reconnecting WebSocket subscription scoped to one tenant.

    Parameters
    ----------
    url : str
        WebSocket endpoint.
    tenant_id : str
        Identity re-registered after every connect.
    on_payment : callable
        Receives the raw payment dict of each ``paymentApproved`` event.
    on_connection_change : callable, optional
        Receives ``True`` on connect and ``False`` on disconnect.
    """

    def __init__(
        self,
        url: str,
        tenant_id: str,
        on_payment: Callable[[Dict[str, Any]], None],
        on_connection_change: Optional[Callable[[bool], None]] = None,
        *,
        session_factory: Optional[Callable[[], Any]] = None,
        heartbeat: float = HEARTBEAT_SECONDS,
        reconnect_base_delay: float = RECONNECT_BASE_DELAY,
        reconnect_max_delay: float = RECONNECT_MAX_DELAY,
    ) -> None:
        self.url = url
        self.tenant_id = tenant_id
        self.on_payment = on_payment
        self.on_connection_change = on_connection_change
        self.heartbeat = heartbeat
        self.reconnect_base_delay = reconnect_base_delay
        self.reconnect_max_delay = reconnect_max_delay
        self._session_factory = session_factory or _default_session_factory

        self.connected = False
        self.connect_count = 0
        self.messages_received = 0
        self._closed = False
        self._task: Optional[asyncio.Task] = None

    # -- Lifecycle ------------------------------------------------------------

    def start(self) -> None:
        """Start the connection loop on the running event loop."""
        if self._task is None or self._task.done():
            self._closed = False
            self._task = asyncio.create_task(self._run(), name=f"push-{self.tenant_id}")

    async def close(self) -> None:
        """Stop reconnecting and close the socket.  Safe to call twice."""
        self._closed = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._set_connected(False)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # -- Connection loop ------------------------------------------------------

    async def _run(self) -> None:
        http = self._session_factory()
        attempt = 0
        try:
            while not self._closed:
                try:
                    async with http.ws_connect(self.url, heartbeat=self.heartbeat) as ws:
                        attempt = 0
                        self.connect_count += 1
                        await self._register(ws)
                        self._set_connected(True)
                        async for msg in ws:
                            if msg.type == aiohttp.WSMsgType.TEXT:
                                self._handle_text(msg.data)
                            elif msg.type == aiohttp.WSMsgType.ERROR:
                                logger.info("Push channel error frame: %s", ws.exception())
                                break
                except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                    logger.info("Push channel connection failed: %s", exc)
                except Exception:
                    logger.exception("Push channel dropped on unexpected error")
                finally:
                    self._set_connected(False)

                if self._closed:
                    break
                delay = min(self.reconnect_max_delay, self.reconnect_base_delay * (2 ** attempt))
                attempt += 1
                logger.debug("Push channel reconnecting in %.1fs", delay)
                await asyncio.sleep(delay)
        finally:
            await http.close()

    async def _register(self, ws: Any) -> None:
        await ws.send_json({"event": REGISTER_EVENT, "data": {"tenantId": self.tenant_id}})
        logger.info(
            "Push channel registered tenant %s (connection #%d)",
            self.tenant_id, self.connect_count,
        )

    def _set_connected(self, value: bool) -> None:
        if self.connected == value:
            return
        self.connected = value
        if self.on_connection_change is not None:
            try:
                self.on_connection_change(value)
            except Exception:
                logger.exception("Connection callback %r failed", self.on_connection_change)

    # -- Messages -------------------------------------------------------------

    def _handle_text(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring non-JSON push frame: %.80s", raw)
            return

        if isinstance(message, list) and message:
            event = message[0]
            data = message[1] if len(message) > 1 else None
        elif isinstance(message, dict):
            event = message.get("event") or message.get("type")
            data = message.get("data", message.get("payment"))
        else:
            logger.debug("Ignoring push frame of type %s", type(message).__name__)
            return

        if event != PAYMENT_APPROVED_EVENT:
            logger.debug("Ignoring push event %r", event)
            return
        if not isinstance(data, dict):
            logger.warning("Push %s event without a payment object", event)
            return

        self.messages_received += 1
        try:
            self.on_payment(data)
        except Exception:
            logger.exception("Payment callback %r failed", self.on_payment)
