"""Background scheduler orchestration: probe, publish, repeat."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .errors import ProbeError, ProbeErrorKind
from .measurements.models import Measurement, ProbeReading
from .publisher import PublishOutcome

LOGGER = logging.getLogger(__name__)

JOB_ID = "probe-and-publish"

ProbeCapability = Callable[[], ProbeReading]
PublishCapability = Callable[[Measurement], PublishOutcome]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TickResult:
    measurement: Optional[Measurement] = None
    outcome: Optional[PublishOutcome] = None
    probe_error: Optional[ProbeError] = None

    @property
    def published(self) -> bool:
        return self.outcome is not None and self.outcome.success


class SchedulerService:
    """Runs the probe-and-publish cycle at a fixed period until stopped.

    The first tick fires immediately. Ticks run on a single worker thread so
    two probes never overlap; a tick that overruns the interval causes the
    next one to start as soon as it finishes.
    """

    def __init__(
        self,
        interval_seconds: float,
        probe: ProbeCapability,
        publish: PublishCapability,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval must be positive, got {interval_seconds}")
        self.interval_seconds = interval_seconds
        self.probe = probe
        self.publish = publish
        self.clock = clock
        self.scheduler = BackgroundScheduler(
            timezone="UTC",
            executors={"default": ThreadPoolExecutor(max_workers=1)},
            job_defaults={"coalesce": True, "max_instances": 2, "misfire_grace_time": None},
        )
        self.started = False
        self._stop_event = threading.Event()
        self._last_timestamp: Optional[datetime] = None

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def _next_timestamp(self) -> datetime:
        now = self.clock()
        if self._last_timestamp is not None and now < self._last_timestamp:
            now = self._last_timestamp
        self._last_timestamp = now
        return now

    def run_tick(self) -> TickResult:
        """One cycle: probe, build a measurement, publish it. Never raises."""
        if self.stopping:
            return TickResult()

        try:
            reading = self.probe()
            measurement = Measurement.from_reading(reading, self._next_timestamp())
        except ProbeError as exc:
            LOGGER.warning("Probe failed [%s]: %s", exc.kind.value, exc.detail or "no detail")
            return TickResult(probe_error=exc)
        except ValueError as exc:
            error = ProbeError(ProbeErrorKind.INVALID_READING, str(exc))
            LOGGER.warning("Probe failed [%s]: %s", error.kind.value, error.detail)
            return TickResult(probe_error=error)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Probe raised unexpectedly: %s", exc)
            return TickResult(probe_error=ProbeError(ProbeErrorKind.FAILED, repr(exc)))

        LOGGER.info(
            "Measured down %.2f Mbps / up %.2f Mbps / ping %.2f ms",
            measurement.download_mbps,
            measurement.upload_mbps,
            measurement.ping_ms,
        )

        try:
            outcome = self.publish(measurement)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Publish raised unexpectedly: %s", exc)
            return TickResult(measurement=measurement)

        if not outcome.success:
            LOGGER.error(
                "Publish failed [%s]: %s",
                outcome.error_kind.value if outcome.error_kind else "Unknown",
                outcome.error.detail if outcome.error else "no detail",
            )
        return TickResult(measurement=measurement, outcome=outcome)

    def start(self) -> None:
        if self.started:
            LOGGER.warning("Scheduler already started, ignoring duplicate start request")
            return

        self._stop_event.clear()
        trigger = IntervalTrigger(seconds=self.interval_seconds, timezone=timezone.utc)
        self.scheduler.add_job(
            self.run_tick,
            trigger=trigger,
            id=JOB_ID,
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True,
        )
        self.scheduler.start()
        self.started = True
        LOGGER.info("Scheduler started with interval %s seconds", self.interval_seconds)

    def stop(self) -> None:
        """Request cancellation; safe from signal handlers and from inside a tick."""
        self._stop_event.set()

    def shutdown(self) -> None:
        """Stop scheduling and wait for the in-flight tick to finish."""
        self._stop_event.set()
        if self.started:
            self.scheduler.shutdown(wait=True)
            self.started = False
            LOGGER.info("Scheduler stopped")

    def run(self) -> None:
        """Block until ``stop`` is called, then shut the scheduler down."""
        self.start()
        try:
            self._stop_event.wait()
        finally:
            self.shutdown()
