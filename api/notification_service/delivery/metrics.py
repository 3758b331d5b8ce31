"""In-process delivery metrics."""

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any


@dataclass
class LatencySummary:
    count: int = 0
    total: float = 0.0
    maximum: float = 0.0

    def observe(self, seconds: float) -> None:
        self.count += 1
        self.total += seconds
        self.maximum = max(self.maximum, seconds)

    def snapshot(self) -> dict[str, float]:
        return {
            "count": self.count,
            "avgMs": round(self.total / self.count * 1000, 2) if self.count else 0.0,
            "maxMs": round(self.maximum * 1000, 2),
        }


@dataclass
class DeliveryMetrics:
    """
    Counters for the delivery engine, keyed by channel and outcome.

    Values live in this worker only and reset on restart.
    """

    started_at: float = field(default_factory=time.time)
    created: Counter = field(default_factory=Counter)
    dispatches: Counter = field(default_factory=Counter)
    retries: Counter = field(default_factory=Counter)
    exhausted: Counter = field(default_factory=Counter)
    acknowledged: Counter = field(default_factory=Counter)
    failed_notifications: int = 0
    swept: int = 0
    latency: dict[str, LatencySummary] = field(default_factory=dict)

    def record_created(self, kind: str, priority: str) -> None:
        self.created[(kind, priority)] += 1

    def record_dispatch(self, channel: str, status: str, seconds: float) -> None:
        self.dispatches[(channel, status)] += 1
        self.latency.setdefault(channel, LatencySummary()).observe(seconds)

    def record_retry(self, channel: str) -> None:
        self.retries[channel] += 1

    def record_exhausted(self, channel: str) -> None:
        self.exhausted[channel] += 1

    def record_acknowledged(self, channel: str) -> None:
        self.acknowledged[channel] += 1

    def record_failed(self) -> None:
        self.failed_notifications += 1

    def record_swept(self, count: int) -> None:
        self.swept += count

    def snapshot(self) -> dict[str, Any]:
        return {
            "uptimeSeconds": round(time.time() - self.started_at, 1),
            "created": {f"{kind}:{priority}": n for (kind, priority), n in self.created.items()},
            "dispatches": {f"{channel}:{status}": n for (channel, status), n in self.dispatches.items()},
            "retries": dict(self.retries),
            "exhausted": dict(self.exhausted),
            "acknowledged": dict(self.acknowledged),
            "failedNotifications": self.failed_notifications,
            "sweptNotifications": self.swept,
            "latency": {channel: summary.snapshot() for channel, summary in self.latency.items()},
        }
