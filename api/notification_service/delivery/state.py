"""Per-channel delivery state and the notification state machine.

Everything in this module is pure: the store calls these functions inside its
read-modify-write loop, so the same inputs always produce the same vector.
Entries are plain dicts (they live in a JSON column) with the keys:

    enabled, dispatched, dispatched_at, acknowledged, acknowledged_at,
    last_error, permanent, exhausted, attempts, next_attempt_at
"""

import copy
import random
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from notification_service.models.enums import (
    CHANNEL_ORDER,
    Channel,
    DispatchStatus,
    NotificationState,
)

_STATE_RANK = {
    NotificationState.PENDING: 0,
    NotificationState.SENT: 1,
    NotificationState.DELIVERED: 2,
    NotificationState.READ: 3,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class ChannelOutcome:
    """What happened to one dispatch of one channel."""

    status: DispatchStatus
    error: str | None = None
    occurred_at: datetime = field(default_factory=_now)
    retry_at: datetime | None = None
    max_attempts: int = 5


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with symmetric jitter."""

    initial: float = 1.0
    base: float = 2.0
    cap: float = 300.0
    jitter: float = 0.2

    def nominal(self, attempt: int) -> float:
        """Un-jittered delay before retry number ``attempt`` (1-based)."""
        exponent = max(attempt - 1, 0)
        return min(self.initial * (self.base**exponent), self.cap)

    def bounds(self, attempt: int) -> tuple[float, float]:
        nominal = self.nominal(attempt)
        return nominal * (1 - self.jitter), nominal * (1 + self.jitter)

    def delay(self, attempt: int, rng: random.Random | None = None) -> float:
        low, high = self.bounds(attempt)
        return (rng or random).uniform(low, high)


def new_channel_vector(channels: Iterable[Channel]) -> dict[str, dict[str, Any]]:
    """Fresh per-channel state for the requested channels, in dispatch order."""
    requested = {Channel(c) for c in channels}
    return {
        channel.value: {
            "enabled": True,
            "dispatched": False,
            "dispatched_at": None,
            "acknowledged": False,
            "acknowledged_at": None,
            "last_error": None,
            "permanent": False,
            "exhausted": False,
            "attempts": 0,
            "next_attempt_at": None,
        }
        for channel in CHANNEL_ORDER
        if channel in requested
    }


def is_terminal(entry: Mapping[str, Any]) -> bool:
    """A channel needs no further dispatch."""
    if not entry.get("enabled", True):
        return True
    return bool(entry.get("dispatched") or entry.get("permanent") or entry.get("exhausted"))


def is_failed(entry: Mapping[str, Any]) -> bool:
    """A channel gave up without ever being dispatched."""
    if entry.get("dispatched") or entry.get("acknowledged"):
        return False
    return bool(entry.get("permanent") or entry.get("exhausted"))


def apply_outcome(
    per_channel: Mapping[str, Mapping[str, Any]],
    channel: Channel | str,
    outcome: ChannelOutcome,
) -> dict[str, dict[str, Any]]:
    """Return a new vector with ``outcome`` merged into ``channel``'s entry.

    Replays are no-ops: an accepted channel stays accepted, and a terminal
    channel ignores further transient or permanent results.
    """
    key = Channel(channel).value
    if key not in per_channel:
        raise KeyError(f"channel {key!r} was not requested")

    vector = copy.deepcopy(dict(per_channel))
    entry = vector[key]
    at = outcome.occurred_at.isoformat()

    if outcome.status is DispatchStatus.ACKNOWLEDGED:
        if not entry.get("dispatched"):
            entry["dispatched"] = True
            entry["dispatched_at"] = at
        if not entry.get("acknowledged"):
            entry["acknowledged"] = True
            entry["acknowledged_at"] = at
        entry["next_attempt_at"] = None
        return vector

    if outcome.status is DispatchStatus.ACCEPTED:
        if entry.get("dispatched"):
            return vector
        entry["dispatched"] = True
        entry["dispatched_at"] = at
        entry["attempts"] = entry.get("attempts", 0) + 1
        entry["next_attempt_at"] = None
        return vector

    if is_terminal(entry):
        return vector

    entry["attempts"] = entry.get("attempts", 0) + 1
    entry["last_error"] = outcome.error or outcome.status.value

    if outcome.status is DispatchStatus.PERMANENT:
        entry["permanent"] = True
        entry["next_attempt_at"] = None
    elif entry["attempts"] >= outcome.max_attempts:
        entry["exhausted"] = True
        entry["next_attempt_at"] = None
    else:
        retry_at = outcome.retry_at or outcome.occurred_at
        entry["next_attempt_at"] = retry_at.isoformat()
    return vector


def derive_state(
    per_channel: Mapping[str, Mapping[str, Any]],
    read_flag: bool,
) -> NotificationState:
    """State implied by the read flag and the channel vector alone."""
    if read_flag:
        return NotificationState.READ
    entries = [e for e in per_channel.values() if e.get("enabled", True)]
    if any(e.get("acknowledged") for e in entries):
        return NotificationState.DELIVERED
    if any(e.get("dispatched") for e in entries):
        return NotificationState.SENT
    if not entries or all(is_failed(e) for e in entries):
        return NotificationState.FAILED
    return NotificationState.PENDING


def transition(
    current: NotificationState,
    per_channel: Mapping[str, Mapping[str, Any]],
    read_flag: bool,
) -> NotificationState:
    """Next state for a record, never moving backwards along the pipeline."""
    derived = derive_state(per_channel, read_flag)
    if derived is NotificationState.READ:
        return derived
    if current is NotificationState.READ:
        return current
    if current is NotificationState.FAILED:
        return current
    if derived is NotificationState.FAILED:
        if current in (NotificationState.PENDING, NotificationState.SENT):
            return derived
        return current
    return derived if _STATE_RANK[derived] > _STATE_RANK[current] else current


def channels_due(
    per_channel: Mapping[str, Mapping[str, Any]],
    now: datetime | None = None,
) -> list[tuple[Channel, datetime]]:
    """Non-terminal channels with the time each should next be dispatched."""
    now = now or _now()
    due = []
    for channel in CHANNEL_ORDER:
        entry = per_channel.get(channel.value)
        if entry is None or is_terminal(entry):
            continue
        at = _parse(entry.get("next_attempt_at")) or now
        due.append((channel, at))
    return due


def expedite(per_channel: Mapping[str, Mapping[str, Any]]) -> dict[str, dict[str, Any]]:
    """Return a new vector whose outstanding channels are all due immediately.

    Attempt counts are kept, so a forced dispatch still counts against the
    retry bound. Settled channels are left alone.
    """
    vector = copy.deepcopy(dict(per_channel))
    for entry in vector.values():
        if not is_terminal(entry):
            entry["next_attempt_at"] = None
    return vector


def dispatch_due_at(
    state: NotificationState,
    per_channel: Mapping[str, Mapping[str, Any]],
    scheduled_for: datetime | None,
    base: datetime,
) -> datetime | None:
    """
    When the delivery engine next has work on a record, or ``None``.

    Read and failed records are never dispatched again. A record without
    channels still needs one pass so the engine can fail it. Channels that
    were never tried are due at ``base`` (creation time), and nothing is due
    before ``scheduled_for``.
    """
    if state in (NotificationState.READ, NotificationState.FAILED):
        return None
    if not per_channel:
        return scheduled_for or base
    due = channels_due(per_channel, base)
    if not due:
        return None
    earliest = min(at for _, at in due)
    if scheduled_for is not None and scheduled_for > earliest:
        return scheduled_for
    return earliest


def check_invariants(
    state: NotificationState,
    read_flag: bool,
    per_channel: Mapping[str, Mapping[str, Any]],
) -> list[str]:
    """Describe every way the record breaks the state invariants."""
    problems = []
    if (state is NotificationState.READ) != bool(read_flag):
        problems.append("state=read must match read_flag")
    entries = list(per_channel.values())
    if state is NotificationState.SENT and not any(e.get("dispatched") for e in entries):
        problems.append("state=sent requires a dispatched channel")
    if state is NotificationState.DELIVERED and not any(e.get("acknowledged") for e in entries):
        problems.append("state=delivered requires an acknowledged channel")
    if state is NotificationState.FAILED and not all(is_failed(e) for e in entries):
        problems.append("state=failed requires every channel to have failed")
    return problems


def next_retry_at(
    policy: BackoffPolicy,
    attempts_made: int,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> datetime:
    """When to retry after ``attempts_made`` dispatches have been tried."""
    now = now or _now()
    return now + timedelta(seconds=policy.delay(attempts_made, rng))
