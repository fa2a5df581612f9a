"""Periodic counter diff reporting."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, Sequence

from models.records import CounterSnapshot, Counters
from services.scheduler import ScheduledTask, Scheduler

logger = logging.getLogger(__name__)


class MetricsSink(Protocol):
    def update_stats(self, now: datetime, measurement: str, field: str, value: int) -> None:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatsReporter:
    """Logs how much each counter moved since the previous report.

    ``fields`` picks which counters are reported and forwarded to the optional
    metrics sink, e.g. ``("processed",)`` on the consumer side.
    """

    def __init__(
        self,
        counters: Counters,
        label: str,
        fields: Sequence[str] = ("sent", "success", "failure", "processed"),
        metrics: Optional[MetricsSink] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.counters = counters
        self.label = label
        self.fields = tuple(fields)
        self._metrics = metrics
        self._clock = clock
        self._last = CounterSnapshot()
        self._task: Optional[ScheduledTask] = None

    def start(self, scheduler: Scheduler, interval: float = 1.0) -> None:
        if self._task is None:
            self._task = scheduler.call_every(interval, self.report)

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def report(self) -> CounterSnapshot:
        current = self.counters.snapshot()
        diff = current - self._last
        self._last = current
        now = self._clock()

        summary = " ".join(f"{name}={getattr(diff, name)}" for name in self.fields)
        logger.info("%s: %s", now.isoformat(), summary, extra={"label": self.label})

        if self._metrics is not None:
            for name in self.fields:
                try:
                    self._metrics.update_stats(now, self.label, f"{name}Count", getattr(diff, name))
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Failed to record metrics: %s", exc, extra={"label": self.label})
                    break
        return diff
