"""Service container owning the scheduler and its collaborators."""

import logging
from datetime import datetime, timedelta
from typing import Callable

from probewatch.config import ProbeConfig
from probewatch.models import AggregateStats, Measurement, ProbeType, utcnow
from probewatch.prober import Prober, build_probers
from probewatch.scheduler import ProbeScheduler
from probewatch.stats import TIME_RANGES, aggregate, build_data_points
from probewatch.store import MeasurementStore, TargetRegistry

logger = logging.getLogger(__name__)


class ProbeService:
    """Explicit lifecycle around one ProbeScheduler.

    Construct it, call ``init()`` once the Qt application exists, and
    ``shutdown()`` before exiting. API layers receive the service instance
    rather than reaching for module state.
    """

    def __init__(
        self,
        config: ProbeConfig,
        registry: TargetRegistry,
        store: MeasurementStore,
        probers: dict[ProbeType, Prober] | None = None,
        clock: Callable[[], int] | None = None,
    ):
        self.config = config
        self.registry = registry
        self.store = store
        self.probers = probers if probers is not None else build_probers(config)
        self._clock = clock
        self._scheduler: ProbeScheduler | None = None

    @property
    def scheduler(self) -> ProbeScheduler:
        if self._scheduler is None:
            raise RuntimeError("ProbeService.init() has not been called")
        return self._scheduler

    @property
    def initialized(self) -> bool:
        return self._scheduler is not None

    def init(self) -> ProbeScheduler:
        """Create and start the scheduler; repeated calls return the same one."""
        if self._scheduler is not None:
            logger.info("Service already initialized")
            return self._scheduler

        logger.info("Initializing probe service")
        self._scheduler = ProbeScheduler(
            registry=self.registry,
            store=self.store,
            probers=self.probers,
            config=self.config,
            clock=self._clock,
        )
        self._scheduler.start()
        logger.info("Probe service initialized")
        return self._scheduler

    def shutdown(self, timeout_ms: int = 30_000) -> None:
        """Stop scheduling and wait for in-flight probes."""
        if self._scheduler is None:
            return

        self._scheduler.stop()
        if not self._scheduler.wait_for_idle(timeout_ms):
            logger.warning("Probes still running after %dms, not waiting further", timeout_ms)

        for prober in self.probers.values():
            close = getattr(prober, "close", None)
            if close is not None:
                close()

        self._scheduler = None
        logger.info("Probe service shut down")

    def measurements(
        self, target_id: str, hours: float = 24, now: datetime | None = None
    ) -> list[Measurement]:
        end = now or utcnow()
        return self.store.query(target_id, end - timedelta(hours=hours), end)

    def statistics(
        self, target_id: str, time_range: str = "1h", now: datetime | None = None
    ) -> AggregateStats:
        """Aggregate a target's measurements over a named time range.

        Raises:
            ValueError: If ``time_range`` is not one of TIME_RANGES
        """
        if time_range not in TIME_RANGES:
            raise ValueError(f"unknown time range: {time_range}")

        hours, bucket_minutes = TIME_RANGES[time_range]
        end = now or utcnow()
        start = end - timedelta(hours=hours)
        rows = self.store.query(target_id, start, end)
        points = build_data_points(rows, start, end, bucket_minutes)
        return aggregate(
            points,
            now=end,
            recent_window_minutes=self.config.recent_window_minutes,
            recent_loss_threshold_pct=self.config.recent_loss_threshold_pct,
        )

    def purge(self, days_to_keep: int = 30, now: datetime | None = None) -> int:
        """Apply the retention window if the store supports purging."""
        purge = getattr(self.store, "purge_older_than", None)
        if purge is None:
            return 0
        cutoff = (now or utcnow()) - timedelta(days=days_to_keep)
        return purge(cutoff)
