"""
Reconciliation Engine -- one authoritative payment state from three channels.

The engine owns the in-flight payment record and the derived remaining
balance.  Updates arrive unordered, duplicated or stale from:

    CACHE       -- the persisted slot, once at mount
    SUBMISSION  -- the backend's response to a new payment
    PUSH        -- ``paymentApproved`` events on the tenant's WebSocket
    POLL        -- ``GET /payment/{id}`` while the record is non-terminal

Every candidate goes through one acceptance function, ``apply``:

    1. no current record              -> accept
    2. different id                   -> accept only from CACHE or SUBMISSION
    3. same id, lower status          -> discard (pending < successful)
    4. accepted                       -> replace wholesale, mirror to the cache
    5. remaining balance              -> candidate.balance, else the rental amount

Push and poll are producers on an asyncio queue drained by a single consumer
task; submission and hydration call ``apply`` directly.  ``apply`` never
awaits, so each application is atomic on the event loop.

Usage:
    from rentpay.reconciler import ReconciliationEngine

    engine = ReconciliationEngine(api, PaymentCache(store), push_url=PUSH_URL)
    await engine.mount(session)
    ...
    await engine.unmount()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

from rentpay.errors import RentPayError, ResetNotAllowed, StaleUpdateDiscarded, SubmissionInFlight
from rentpay.models import PaymentRecord, RentalAgreement
from rentpay.push_channel import PUSH_URL, PushChannel
from rentpay.rental_loader import RentalLoader
from rentpay.session import PaymentCache, SessionContext

logger = logging.getLogger("reconciler")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

POLL_INTERVAL = float(os.getenv("RENTPAY_POLL_INTERVAL", "5"))
STATUS_UNKNOWN_AFTER = float(os.getenv("RENTPAY_STATUS_UNKNOWN_AFTER", "120"))


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class UpdateSource(str, Enum):
    """Channel a candidate update arrived on."""
    CACHE = "cache"
    SUBMISSION = "submission"
    PUSH = "push"
    POLL = "poll"

    @property
    def may_introduce_id(self) -> bool:
        """Whether this channel may replace the current record with another id."""
        return self in (UpdateSource.CACHE, UpdateSource.SUBMISSION)


class UpdateOutcome(str, Enum):
    """Result of running a candidate through the acceptance rule."""
    ACCEPTED = "accepted"
    STALE = "stale"
    UNKNOWN_ID = "unknown_id"
    INVALID = "invalid"
    CLOSED = "closed"


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

@dataclass
class ReconciliationState:
    """Process-local view of the in-flight payment."""
    current: Optional[PaymentRecord] = None
    remaining_balance: Decimal = Decimal("0")
    rental: Optional[RentalAgreement] = None
    submission_in_flight: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current": self.current.to_dict() if self.current else None,
            "remaining_balance": str(self.remaining_balance),
            "rental": self.rental.to_dict() if self.rental else None,
            "submission_in_flight": self.submission_in_flight,
        }


@dataclass
class ChannelHealth:
    """Liveness of the push and poll channels.

    ``last_contact`` is the monotonic time of the last sign of life from any
    channel: a push connect or message, or a successful poll.
    """
    push_connected: bool = False
    last_contact: float = 0.0
    consecutive_poll_failures: int = 0

    def touch(self, now: float) -> None:
        self.last_contact = now

    def record_push_state(self, connected: bool, now: float) -> None:
        self.push_connected = connected
        if connected:
            self.touch(now)

    def record_poll_success(self, now: float) -> None:
        self.consecutive_poll_failures = 0
        self.touch(now)

    def record_poll_failure(self) -> None:
        self.consecutive_poll_failures += 1

    def all_channels_down(self, now: float, threshold: float) -> bool:
        return not self.push_connected and (now - self.last_contact) > threshold


@dataclass
class _QueuedUpdate:
    record: PaymentRecord
    source: UpdateSource
    queued_at: float = field(default_factory=time.monotonic)


# ===================================================================
# ReconciliationEngine
# ===================================================================

class ReconciliationEngine:
    """
    Single owner of the payment reconciliation state.

    Parameters
    ----------
    api : RentalApiClient-like
        Needs ``get_tenant_rental``, ``get_payment`` and ``list_my_payments``.
    cache : PaymentCache
        Passive mirror written on every accepted update.
    rental_loader : RentalLoader, optional
        Defaults to a loader over ``api``.
    push_url : str, optional
        WebSocket endpoint; ``None`` or empty disables the push channel.
    push_factory : callable, optional
        Builds the push channel; defaults to ``PushChannel``.
    poll_interval : float
        Seconds between polls while the current record is non-terminal.
    status_unknown_after : float
        Seconds of silence from every channel before ``status_unknown``.
    clock : callable
        Monotonic time source.
    """

    def __init__(
        self,
        api: Any,
        cache: PaymentCache,
        *,
        rental_loader: Optional[RentalLoader] = None,
        push_url: Optional[str] = PUSH_URL,
        push_factory: Callable[..., Any] = PushChannel,
        poll_interval: float = POLL_INTERVAL,
        status_unknown_after: float = STATUS_UNKNOWN_AFTER,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.api = api
        self.cache = cache
        self.rental_loader = rental_loader or RentalLoader(api)
        self.push_url = push_url
        self.push_factory = push_factory
        self.poll_interval = poll_interval
        self.status_unknown_after = status_unknown_after
        self.clock = clock

        self.state = ReconciliationState()
        self.health = ChannelHealth(last_contact=clock())
        self.session: Optional[SessionContext] = None

        self._mounted = False
        self._closed = False
        self._queue: Optional[asyncio.Queue] = None
        self._consumer_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._push: Optional[Any] = None
        self._listeners: List[Callable[[ReconciliationState], None]] = []
        self._stats: Dict[str, int] = {
            "accepted": 0,
            "discarded_stale": 0,
            "discarded_unknown_id": 0,
            "discarded_invalid": 0,
            "discarded_closed": 0,
            "polls": 0,
            "poll_failures": 0,
            "push_messages": 0,
        }

    # -------------------------------------------------------------------
    # Read-only views
    # -------------------------------------------------------------------

    @property
    def current(self) -> Optional[PaymentRecord]:
        return self.state.current

    @property
    def remaining_balance(self) -> Decimal:
        return self.state.remaining_balance

    @property
    def submission_in_flight(self) -> bool:
        return self.state.submission_in_flight

    @property
    def mounted(self) -> bool:
        return self._mounted

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def status_unknown(self) -> bool:
        """True when a pending payment has had no live channel for too long."""
        current = self.state.current
        if not self._mounted or current is None or current.is_terminal:
            return False
        return self.health.all_channels_down(self.clock(), self.status_unknown_after)

    def receipt_record(self) -> Optional[PaymentRecord]:
        """The most recently accepted record, only once it is terminal."""
        current = self.state.current
        if current is not None and current.is_terminal:
            return current
        return None

    def snapshot(self) -> Dict[str, Any]:
        """State plus channel flags, for the view layer."""
        data = self.state.to_dict()
        data.update({
            "mounted": self._mounted,
            "polling": self.polling,
            "push_connected": self.health.push_connected,
            "status_unknown": self.status_unknown,
            "receipt_ready": self.receipt_record() is not None,
        })
        return data

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def add_listener(self, callback: Callable[[ReconciliationState], None]) -> None:
        """Register a callable invoked with the state after every change."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[ReconciliationState], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    # -------------------------------------------------------------------
    # Acceptance
    # -------------------------------------------------------------------

    def _check_acceptance(self, candidate: PaymentRecord, source: UpdateSource) -> None:
        """Raise StaleUpdateDiscarded when candidate must not replace the current record."""
        current = self.state.current
        if current is None:
            return

        if candidate.id != current.id:
            if source.may_introduce_id:
                return
            raise StaleUpdateDiscarded(
                f"{source.value} update for unknown payment {candidate.id} "
                f"(tracking {current.id})",
                outcome=UpdateOutcome.UNKNOWN_ID.value,
            )

        if candidate.status.rank < current.status.rank:
            raise StaleUpdateDiscarded(
                f"{source.value} update moves payment {candidate.id} back from "
                f"{current.status.value} to {candidate.status.value}",
                outcome=UpdateOutcome.STALE.value,
            )

    def apply(self, candidate: PaymentRecord, source: UpdateSource) -> UpdateOutcome:
        """Run one candidate through the acceptance rule and apply it if accepted."""
        if self._closed:
            self._stats["discarded_closed"] += 1
            logger.debug("Dropping %s update for %s after teardown", source.value, candidate.id)
            return UpdateOutcome.CLOSED

        if not candidate.id and not source.may_introduce_id:
            self._stats["discarded_invalid"] += 1
            logger.info("Dropping %s update without a payment id", source.value)
            return UpdateOutcome.INVALID

        try:
            self._check_acceptance(candidate, source)
        except StaleUpdateDiscarded as exc:
            outcome = UpdateOutcome(exc.outcome)
            self._stats[f"discarded_{outcome.value}"] += 1
            if outcome is UpdateOutcome.STALE:
                logger.warning("Stale update discarded: %s", exc.message)
            else:
                logger.info("Update discarded: %s", exc.message)
            return outcome

        previous = self.state.current
        self.cache.save(candidate)
        self.state.current = candidate
        if candidate.balance is not None:
            self.state.remaining_balance = candidate.balance
        elif self.state.rental is not None:
            self.state.remaining_balance = self.state.rental.monthly_amount
        self._stats["accepted"] += 1

        logger.info(
            "Accepted %s update: payment %s %s (balance %s)",
            source.value, candidate.id, candidate.status.value, self.state.remaining_balance,
        )

        if candidate.is_terminal:
            self._stop_polling()
        elif previous is None or previous.id != candidate.id:
            self._start_polling(restart=True)
        else:
            self._start_polling()

        self._notify()
        return UpdateOutcome.ACCEPTED

    def offer(self, candidate: PaymentRecord, source: UpdateSource) -> None:
        """Queue a push/poll candidate for the consumer task."""
        if self._closed or self._queue is None:
            self._stats["discarded_closed"] += 1
            return
        self._queue.put_nowait(_QueuedUpdate(candidate, source))

    async def drain(self) -> None:
        """Wait until every queued update has been applied."""
        if self._queue is not None and self._consumer_task is not None:
            await self._queue.join()

    async def _consume(self, queue: asyncio.Queue) -> None:
        while True:
            update = await queue.get()
            try:
                self.apply(update.record, update.source)
            except Exception:
                logger.exception("Failed to apply %s update for %s", update.source.value, update.record.id)
            finally:
                queue.task_done()

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback(self.state)
            except Exception:
                logger.exception("State listener %r failed", callback)

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    async def mount(self, session: SessionContext) -> None:
        """Start a reconciliation session for the given tenant."""
        if self._mounted:
            if self.session is not None and self.session.tenant_id == session.tenant_id:
                return
            await self.unmount()

        self.session = session
        self.state = ReconciliationState()
        self.health = ChannelHealth(last_contact=self.clock())
        self._closed = False
        self._mounted = True
        self._queue = asyncio.Queue()

        rental = await self.rental_loader.load(session)
        if self._closed:
            return
        self.state.rental = rental
        self.state.remaining_balance = rental.monthly_amount if rental else Decimal("0")

        await self._hydrate(session)
        if self._closed:
            return

        self._consumer_task = asyncio.create_task(
            self._consume(self._queue), name="reconciler-consumer",
        )
        self._open_subscription(session)
        if self.state.current is not None and not self.state.current.is_terminal:
            self._start_polling()
        self._notify()
        logger.info(
            "Mounted for tenant %s (payment %s, balance %s)",
            session.tenant_id,
            self.state.current.id if self.state.current else None,
            self.state.remaining_balance,
        )

    async def unmount(self) -> None:
        """Close the subscription and cancel polling as one teardown."""
        self._closed = True
        self._mounted = False

        tasks = [t for t in (self._poll_task, self._consumer_task) if t is not None]
        self._poll_task = None
        self._consumer_task = None
        for task in tasks:
            task.cancel()

        push, self._push = self._push, None
        if push is not None:
            await push.close()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._queue = None
        self.health.push_connected = False
        logger.info("Unmounted reconciliation for tenant %s", self.session.tenant_id if self.session else None)

    async def switch_session(self, session: SessionContext) -> None:
        """Tenant change: tear down the old session and mount the new one."""
        if self._mounted:
            await self.unmount()
        await self.mount(session)

    async def _hydrate(self, session: SessionContext) -> None:
        cached = self.cache.load()
        if cached is not None:
            if session.tenant_id and cached.tenant_id and cached.tenant_id != session.tenant_id:
                logger.info("Clearing cached payment %s of another tenant", cached.id)
                self.cache.clear()
            else:
                self.apply(cached, UpdateSource.CACHE)
                return

        if not session.tenant_id:
            return
        try:
            payments = await self.api.list_my_payments()
        except RentPayError as exc:
            logger.info("Payment history unavailable at mount: %s", exc)
            return
        if self._closed:
            return

        rental = self.state.rental
        for record in payments:
            if rental is None or not record.rental_id or record.rental_id == rental.id:
                self.apply(record, UpdateSource.CACHE)
                return

    def _open_subscription(self, session: SessionContext) -> None:
        if not self.push_url or not session.tenant_id:
            return
        self._push = self.push_factory(
            self.push_url,
            session.tenant_id,
            self._on_push_payment,
            self._on_push_connection,
        )
        self._push.start()

    def _on_push_payment(self, data: Dict[str, Any]) -> None:
        if self._closed:
            self._stats["discarded_closed"] += 1
            return
        self._stats["push_messages"] += 1
        self.health.touch(self.clock())
        try:
            record = PaymentRecord.from_dict(data)
        except ValueError as exc:
            self._stats["discarded_invalid"] += 1
            logger.info("Ignoring unreadable push payment: %s", exc)
            return
        self.offer(record, UpdateSource.PUSH)

    def _on_push_connection(self, connected: bool) -> None:
        if self._closed:
            return
        self.health.record_push_state(connected, self.clock())
        logger.info("Push channel %s", "connected" if connected else "disconnected")

    # -------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------

    def _start_polling(self, restart: bool = False) -> None:
        if not self._mounted or self._closed:
            return
        if self.polling and not restart:
            return
        self._stop_polling()
        self._poll_task = asyncio.create_task(self._poll_loop(), name="reconciler-poll")

    def _stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _poll_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.poll_interval)
            current = self.state.current
            if self._closed or current is None or current.is_terminal or not current.id:
                return
            try:
                record = await self.api.get_payment(current.id)
            except RentPayError as exc:
                self._stats["poll_failures"] += 1
                self.health.record_poll_failure()
                logger.debug("Poll for %s failed, retrying next tick: %s", current.id, exc)
                continue
            except Exception:
                self._stats["poll_failures"] += 1
                self.health.record_poll_failure()
                logger.exception("Unexpected error polling %s, retrying next tick", current.id)
                continue
            self._stats["polls"] += 1
            self.health.record_poll_success(self.clock())
            self.offer(record, UpdateSource.POLL)

    # -------------------------------------------------------------------
    # Submission coordination and reset
    # -------------------------------------------------------------------

    @contextlib.contextmanager
    def submission_guard(self) -> Iterator[None]:
        """Mark a submission as outstanding for the duration of the block."""
        if self.state.submission_in_flight:
            raise SubmissionInFlight()
        self.state.submission_in_flight = True
        try:
            yield
        finally:
            self.state.submission_in_flight = False

    def reset(self) -> None:
        """Discard the current payment and restore the full rental balance."""
        if self._closed:
            raise ResetNotAllowed("Payment view is no longer active.")
        if self.state.submission_in_flight:
            raise ResetNotAllowed("Cannot reset while a payment is being submitted.")

        self._stop_polling()
        self.cache.clear()
        discarded = self.state.current
        self.state.current = None
        rental = self.state.rental
        self.state.remaining_balance = rental.monthly_amount if rental else Decimal("0")
        logger.info(
            "Reset payment state (discarded %s, balance %s)",
            discarded.id if discarded else None, self.state.remaining_balance,
        )
        self._notify()
