"""Delivery engine: drives notifications through their channels.

The engine owns no authoritative state. Every outcome is written through
``NotificationStore.apply_delivery_outcome``; the timers it keeps for
deferred deliveries and retries are rebuilt from the store on startup.
"""

import asyncio
import logging
import random
import time
from collections.abc import Callable, Coroutine, Mapping
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from notification_service.channels.base import ChannelAdapter, DispatchResult
from notification_service.delivery.metrics import DeliveryMetrics
from notification_service.delivery.scheduler import TimerScheduler
from notification_service.delivery.state import (
    BackoffPolicy,
    ChannelOutcome,
    channels_due,
    next_retry_at,
)
from notification_service.errors import (
    NotificationNotFound,
    ServiceError,
    StaleRecord,
)
from notification_service.models.enums import Channel, DispatchStatus, NotificationState
from notification_service.models.notification import Notification, as_utc, utcnow
from notification_service.services.store import NotificationStore

module_logger = logging.getLogger(__name__)


class DeliveryEngine:
    """Per-channel dispatch with bounded, jittered retries."""

    def __init__(
        self,
        store: NotificationStore,
        adapters: Mapping[Channel, ChannelAdapter],
        *,
        backoff: BackoffPolicy | None = None,
        max_attempts: Callable[[str], int] | None = None,
        metrics: DeliveryMetrics | None = None,
        scheduler: TimerScheduler | None = None,
        retention_grace: timedelta = timedelta(days=7),
        retention_interval: float = 3600.0,
        recovery_batch: int = 500,
        rng: random.Random | None = None,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.adapters = dict(adapters)
        self.backoff = backoff or BackoffPolicy()
        self.max_attempts = max_attempts or (lambda channel: 5)
        self.metrics = metrics or DeliveryMetrics()
        self.scheduler = scheduler or TimerScheduler()
        self.retention_grace = retention_grace
        self.retention_interval = retention_interval
        self.recovery_batch = recovery_batch
        self.rng = rng or random.Random()
        self.log = logger or module_logger

        self._tasks: set[asyncio.Task] = set()
        self._inflight: set[tuple[str, str]] = set()
        self._sweeper: asyncio.Task | None = None
        self._accepting = False

    # --- Lifecycle ---

    @property
    def accepting(self) -> bool:
        return self._accepting

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def start(self, *, recover: bool = True, sweep: bool = True) -> None:
        """Start timers, re-arm in-flight records and the retention sweep."""
        self._accepting = True
        self.scheduler.start(self._fire)
        if recover:
            await self.recover()
        if sweep and self._sweeper is None:
            self._sweeper = asyncio.create_task(self._retention_loop(), name="retention-sweep")
        self.log.info("Delivery engine started with channels %s", sorted(c.value for c in self.adapters))

    async def stop(self, grace: float = 30.0) -> None:
        """Stop accepting work, drain for up to ``grace`` seconds, then cancel."""
        self._accepting = False
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        await self.scheduler.stop()

        if not await self.drain(timeout=grace):
            remaining = list(self._tasks)
            self.log.warning("Cancelling %d delivery task(s) after %.0fs drain", len(remaining), grace)
            for task in remaining:
                task.cancel()
            await asyncio.gather(*remaining, return_exceptions=True)

        for adapter in self.adapters.values():
            await adapter.close()
        self.log.info("Delivery engine stopped")

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for every running delivery task; ``False`` if time ran out."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._tasks:
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            _, pending = await asyncio.wait(set(self._tasks), timeout=remaining)
            if pending and deadline is not None and time.monotonic() >= deadline:
                return False
        return True

    async def recover(self) -> int:
        """Re-arm every record with an outstanding dispatch; past-due work fires now."""
        recovered = 0
        after = None
        while True:
            try:
                records = await self.store.list_in_flight(self.recovery_batch, after=after)
            except ServiceError as exc:
                self.log.error("Delivery recovery stopped after %d record(s): %s", recovered, exc)
                break
            for record in records:
                self.submit(record)
            recovered += len(records)
            if len(records) < self.recovery_batch:
                break
            last = records[-1]
            after = (last.next_dispatch_at, last.id)
        if recovered:
            self.log.info("Recovered %d in-flight notification(s)", recovered)
        return recovered

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task | None:
        if not self._accepting:
            coro.close()
            return None
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.log.error("Delivery task failed", exc_info=exc)

    def _fire(self, job) -> None:
        self._spawn(job())

    # --- Delivery ---

    def submit(self, record: Notification) -> asyncio.Task | None:
        """Hand a freshly created (or recovered) record to the engine."""
        return self._spawn(self.deliver(record.id))

    async def deliver(self, notification_id: UUID | str) -> Notification | None:
        """Dispatch every channel of a record that is due now."""
        try:
            record = await self.store.get(notification_id, include_expired=True)
        except NotificationNotFound:
            return None

        if record.state in (NotificationState.READ, NotificationState.FAILED):
            return record

        now = utcnow()
        scheduled_for = as_utc(record.scheduled_for)
        if scheduled_for is not None and scheduled_for > now:
            self._schedule(f"{record.id}:deliver", scheduled_for, lambda: self.deliver(record.id))
            return record

        if not record.per_channel:
            record = await self.store.fail_without_channels(record.id)
            self.metrics.record_failed()
            self.log.warning("Notification %s has no channels; marked failed", record.id)
            return record

        for channel, due in channels_due(record.per_channel, now):
            if due > now:
                self._schedule_retry(record.id, channel, due)
                continue
            updated = await self._dispatch_channel(record, channel)
            if updated is None:
                return None
            record = updated
        return record

    async def _retry(self, notification_id: UUID, channel: Channel) -> None:
        try:
            record = await self.store.get(notification_id, include_expired=True)
        except NotificationNotFound:
            return
        if record.state in (NotificationState.READ, NotificationState.FAILED):
            return
        if channel not in {c for c, _ in channels_due(record.per_channel or {})}:
            return
        await self._dispatch_channel(record, channel)

    def _schedule(self, key: str, due: datetime, job) -> None:
        self.scheduler.schedule(key, due, job)

    def _schedule_retry(self, notification_id: UUID, channel: Channel, due: datetime) -> None:
        self._schedule(
            f"{notification_id}:{channel.value}",
            due,
            lambda: self._retry(notification_id, channel),
        )

    async def _call_adapter(self, record: Notification, channel: Channel) -> DispatchResult:
        adapter = self.adapters.get(channel)
        if adapter is None:
            return DispatchResult.permanent(f"no adapter for channel {channel.value}")
        async with adapter.semaphore:
            try:
                return await asyncio.wait_for(adapter.dispatch(record), timeout=adapter.deadline)
            except asyncio.TimeoutError:
                return DispatchResult.transient(f"{channel.value} deadline exceeded")
            except Exception as exc:
                self.log.exception("Adapter %s raised for notification %s", channel.value, record.id)
                return DispatchResult.transient(f"{channel.value} adapter error: {exc.__class__.__name__}")

    async def _dispatch_channel(
        self, record: Notification, channel: Channel
    ) -> Notification | None:
        """Dispatch one channel once and write its outcome."""
        key = (str(record.id), channel.value)
        if key in self._inflight:
            return record
        self._inflight.add(key)
        try:
            started = time.monotonic()
            result = await self._call_adapter(record, channel)
            self.metrics.record_dispatch(channel.value, result.status.value, time.monotonic() - started)

            now = utcnow()
            entry = (record.per_channel or {}).get(channel.value, {})
            attempts = entry.get("attempts", 0) + 1
            max_attempts = self.max_attempts(channel.value)
            retry_at = None
            if result.status is DispatchStatus.TRANSIENT and attempts < max_attempts:
                retry_at = next_retry_at(self.backoff, attempts, now, self.rng)
            outcome = ChannelOutcome(
                status=result.status,
                error=result.error,
                occurred_at=now,
                retry_at=retry_at,
                max_attempts=max_attempts,
            )

            try:
                updated = await self.store.apply_delivery_outcome(record.id, channel, outcome)
            except NotificationNotFound:
                return None
            except (StaleRecord, ServiceError) as exc:
                self.log.error(
                    "Could not record %s outcome for %s: %s", channel.value, record.id, exc
                )
                # Outcome not recorded; the channel is still due.
                fallback = now + timedelta(seconds=self.backoff.delay(attempts, self.rng))
                self._schedule_retry(record.id, channel, retry_at or fallback)
                return record
        finally:
            self._inflight.discard(key)

        self._after_outcome(record, updated, channel, result)
        return updated

    def _after_outcome(
        self,
        before: Notification,
        after: Notification,
        channel: Channel,
        result: DispatchResult,
    ) -> None:
        entry = (after.per_channel or {}).get(channel.value, {})
        if result.status is DispatchStatus.TRANSIENT:
            if entry.get("exhausted"):
                self.metrics.record_exhausted(channel.value)
                self.log.warning(
                    "Channel %s exhausted for %s after %d attempts: %s",
                    channel.value,
                    after.id,
                    entry.get("attempts", 0),
                    result.error,
                )
            elif entry.get("next_attempt_at"):
                self.metrics.record_retry(channel.value)
                self._schedule_retry(
                    after.id, channel, datetime.fromisoformat(entry["next_attempt_at"])
                )
        elif result.status is DispatchStatus.PERMANENT:
            self.log.info("Channel %s rejected %s permanently: %s", channel.value, after.id, result.error)

        if after.state is NotificationState.FAILED and before.state is not NotificationState.FAILED:
            self.metrics.record_failed()
            self.log.warning("Notification %s failed: %s", after.id, after.failure_reason)

    async def acknowledge(
        self,
        notification_id: UUID | str,
        channel: Channel | str,
        recipient: str | None = None,
    ) -> Notification:
        """Record that ``channel`` confirmed receipt of the notification."""
        channel = Channel(channel)
        if recipient is not None:
            await self.store.get(notification_id, recipient, include_expired=True)
        updated = await self.store.apply_delivery_outcome(
            notification_id,
            channel,
            ChannelOutcome(status=DispatchStatus.ACKNOWLEDGED),
        )
        self.scheduler.cancel(f"{updated.id}:{channel.value}")
        self.metrics.record_acknowledged(channel.value)
        return updated

    async def force_send(self, notification_id: UUID | str) -> Notification:
        """
        Dispatch every outstanding channel of a record now.

        Pending timers for the record are dropped first. Settled channels are
        not dispatched again.

        Raises:
            NotificationNotFound - no such record
            NotificationFinalized - the record is read or failed
        """
        record = await self.store.expedite_dispatch(notification_id)
        self.scheduler.cancel(f"{record.id}:deliver")
        for channel in record.per_channel or {}:
            self.scheduler.cancel(f"{record.id}:{channel}")
        self.log.info("Forced dispatch of notification %s", record.id)
        updated = await self.deliver(record.id)
        if updated is None:
            raise NotificationNotFound()
        return updated

    # --- Retention ---

    async def sweep_once(self) -> int:
        try:
            removed = await self.store.sweep_expired(utcnow(), self.retention_grace)
        except ServiceError as exc:
            self.log.error("Retention sweep failed: %s", exc)
            return 0
        if removed:
            self.metrics.record_swept(removed)
            self.log.info("Retention sweep deleted %d expired notification(s)", removed)
        return removed

    async def _retention_loop(self) -> None:
        while True:
            await self.sweep_once()
            await asyncio.sleep(self.retention_interval)
