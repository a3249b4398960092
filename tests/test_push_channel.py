"""
Tests for the reconnecting WebSocket push channel.

The aiohttp session is replaced by a scripted fake whose ``ws_connect``
hands out one fake socket per connection attempt.
"""

import asyncio
import json
from types import SimpleNamespace

import pytest

try:
    import aiohttp

    from rentpay.push_channel import PushChannel
    HAS_PUSH = True
except ImportError:
    HAS_PUSH = False

pytestmark = pytest.mark.skipif(
    not HAS_PUSH,
    reason="rentpay.push_channel or aiohttp not available"
)

WS_URL = "ws://backend.test/ws"


# ===================================================================
# Fakes
# ===================================================================

def _text(payload):
    return SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=json.dumps(payload))


class FakeWebSocket:
    """Yields scripted frames, then either ends (server hang-up) or blocks."""

    def __init__(self, frames=(), hold=False):
        self.frames = list(frames)
        self.hold = hold
        self.sent = []

    async def send_json(self, data):
        self.sent.append(data)

    def exception(self):
        return None

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for frame in self.frames:
            yield frame
        if self.hold:
            await asyncio.Event().wait()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeHttp:
    def __init__(self, *sockets):
        self.sockets = list(sockets)
        self.connects = 0
        self.closed = False

    def ws_connect(self, url, heartbeat=None):
        self.connects += 1
        item = self.sockets.pop(0) if self.sockets else FakeWebSocket(hold=True)
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True


async def _wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def _channel(http, payments, states=None):
    return PushChannel(
        WS_URL,
        "tenant-1",
        payments.append,
        states.append if states is not None else None,
        session_factory=lambda: http,
        reconnect_base_delay=0.01,
        reconnect_max_delay=0.02,
    )


# ===================================================================
# Connection loop
# ===================================================================

class TestPushChannelLoop:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_registers_and_delivers_payment(self, payment_payload):
        payment = payment_payload(status="successful", balance=0)
        sock = FakeWebSocket([_text({"event": "paymentApproved", "data": payment})], hold=True)
        http = FakeHttp(sock)
        payments, states = [], []
        channel = _channel(http, payments, states)

        channel.start()
        await _wait_for(lambda: payments)
        await channel.close()

        assert sock.sent == [{"event": "register", "data": {"tenantId": "tenant-1"}}]
        assert payments == [payment]
        assert states == [True, False]
        assert http.closed
        assert not channel.running

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reregisters_after_reconnect(self):
        first = FakeWebSocket()
        second = FakeWebSocket(hold=True)
        http = FakeHttp(first, second)
        states = []
        channel = _channel(http, [], states)

        channel.start()
        await _wait_for(lambda: channel.connect_count == 2 and channel.connected)
        await channel.close()

        assert first.sent and second.sent
        assert second.sent[0]["event"] == "register"
        assert states == [True, False, True, False]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self):
        http = FakeHttp(
            aiohttp.ClientConnectionError("refused"),
            OSError("unreachable"),
            FakeWebSocket(hold=True),
        )
        channel = _channel(http, [])

        channel.start()
        await _wait_for(lambda: channel.connected)
        await channel.close()

        assert http.connects == 3
        assert channel.connect_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failing_callback_keeps_channel_alive(self, payment_payload):
        delivered = []

        def on_payment(data):
            if data["amount"] == "1e30":
                raise ArithmeticError("cannot quantize")
            delivered.append(data)

        good = payment_payload(status="successful", balance=0)
        sock = FakeWebSocket([
            _text({"event": "paymentApproved", "data": payment_payload(amount="1e30")}),
            _text({"event": "paymentApproved", "data": good}),
        ], hold=True)
        channel = PushChannel(
            WS_URL, "tenant-1", on_payment,
            session_factory=lambda: FakeHttp(sock),
            reconnect_base_delay=0.01,
        )

        channel.start()
        await _wait_for(lambda: delivered)
        assert channel.connected
        assert channel.connect_count == 1
        await channel.close()

        assert delivered == [good]
        assert channel.messages_received == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failing_connection_callback_keeps_channel_alive(self):
        def on_connection_change(connected):
            raise RuntimeError("view gone")

        channel = PushChannel(
            WS_URL, "tenant-1", lambda data: None, on_connection_change,
            session_factory=lambda: FakeHttp(FakeWebSocket(hold=True)),
        )
        channel.start()
        await _wait_for(lambda: channel.connected)
        await channel.close()
        assert not channel.connected

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        channel = _channel(FakeHttp(), [])
        channel.start()
        await channel.close()
        await channel.close()
        assert not channel.running


# ===================================================================
# Frame handling
# ===================================================================

class TestFrameHandling:

    @pytest.fixture
    def payments(self):
        return []

    @pytest.fixture
    def channel(self, payments):
        return _channel(FakeHttp(), payments)

    @pytest.mark.unit
    def test_socketio_style_frame(self, channel, payments):
        channel._handle_text(json.dumps(["paymentApproved", {"_id": "pay-1"}]))
        assert payments == [{"_id": "pay-1"}]
        assert channel.messages_received == 1

    @pytest.mark.unit
    def test_type_and_payment_keys(self, channel, payments):
        channel._handle_text(json.dumps({"type": "paymentApproved", "payment": {"_id": "pay-2"}}))
        assert payments == [{"_id": "pay-2"}]

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", [
        "not json",
        json.dumps({"event": "chatMessage", "data": {"_id": "x"}}),
        json.dumps({"event": "paymentApproved", "data": "pay-1"}),
        json.dumps(42),
        json.dumps([]),
    ])
    def test_ignored_frames(self, channel, payments, raw):
        channel._handle_text(raw)
        assert payments == []
        assert channel.messages_received == 0
