"""Interval-driven probe scheduler with per-target mutual exclusion."""

import logging
import threading
from collections import deque
from typing import Callable

from PySide6.QtCore import QObject, QThreadPool, QTimer, Signal

from probewatch.config import ProbeConfig
from probewatch.errors import InvalidTargetConfiguration
from probewatch.models import (
    Measurement,
    ProbeType,
    SchedulerStatus,
    ScheduledTarget,
    TargetProbeStatus,
    now_ms,
)
from probewatch.prober import Prober, select_prober
from probewatch.store import MeasurementStore, TargetRegistry
from probewatch.workers import ProbeWorker

logger = logging.getLogger(__name__)

PENDING_WRITES_LIMIT = 1000


def plan_dispatch(
    due: list[ScheduledTarget], max_concurrent: int
) -> tuple[list[ScheduledTarget], list[ScheduledTarget]]:
    """Split due targets into a concurrent batch and a sequential run.

    When more than one echo target is due, up to ``max_concurrent`` of them
    form the fan-out batch. DNS targets, echo targets beyond the batch, and a
    lone echo target are probed one at a time.

    Returns:
        (batch, sequential)
    """
    echo = [t for t in due if t.probe_type is ProbeType.ECHO]
    batch = echo[:max_concurrent] if len(echo) > 1 else []
    batch_ids = {t.id for t in batch}
    sequential = [t for t in due if t.id not in batch_ids]
    return batch, sequential


class ProbeScheduler(QObject):
    """Probes each active target roughly every ``interval_seconds``.

    Key features:
    - A tick timer finds due targets (interval elapsed and not in flight)
    - Due echo targets fan out on the thread pool; DNS and overflow targets
      run sequentially in a single pool thread
    - ``is_probing`` is set before dispatch and cleared after every probe,
      whether it succeeded, failed or raised
    - A reload timer re-syncs the schedule with the target registry

    Flags are only touched under ``_lock``; probes run on pool threads and
    the signals below are emitted from there.
    """

    measurement_recorded = Signal(object)  # Measurement
    probe_failed = Signal(str, str)  # (target_id, error_msg)

    def __init__(
        self,
        registry: TargetRegistry,
        store: MeasurementStore,
        probers: dict[ProbeType, Prober],
        config: ProbeConfig | None = None,
        clock: Callable[[], int] | None = None,
        parent=None,
    ):
        """Initialize the scheduler.

        Args:
            registry: Source of active targets
            store: Destination for measurements
            probers: Prober for each probe type
            config: Timing options; defaults to ProbeConfig()
            clock: Returns "now" in epoch milliseconds
            parent: Qt parent object
        """
        super().__init__(parent)

        self.config = config if config is not None else ProbeConfig()
        self.registry = registry
        self.store = store
        self.probers = probers
        self._clock = clock or now_ms

        self._targets: dict[str, ScheduledTarget] = {}
        self._lock = threading.RLock()
        self._pending_writes: deque[Measurement] = deque(maxlen=PENDING_WRITES_LIMIT)

        # Batch slots plus one for the sequential runner
        self.thread_pool = QThreadPool(self)
        self.thread_pool.setMaxThreadCount(self.config.max_concurrent + 1)

        self.tick_timer = QTimer(self)
        self.tick_timer.setInterval(self.config.tick_interval_ms)
        self.tick_timer.timeout.connect(self.tick)

        self.reload_timer = QTimer(self)
        self.reload_timer.setInterval(self.config.target_reload_interval_ms)
        self.reload_timer.timeout.connect(self.reload_targets)

        self.is_running = False

    def start(self):
        """Load targets and start the tick and reload timers."""
        if self.is_running:
            logger.info("Scheduler already running")
            return

        self.is_running = True
        self.load_targets()
        self.tick_timer.start()
        self.reload_timer.start()
        # First tick as soon as the event loop runs
        QTimer.singleShot(0, self.tick)
        logger.info(
            "Scheduler started: %d targets, tick=%dms, reload=%dms",
            len(self._targets),
            self.config.tick_interval_ms,
            self.config.target_reload_interval_ms,
        )

    def stop(self):
        """Stop the timers. Probes already in flight run to completion."""
        if not self.is_running:
            return

        self.is_running = False
        self.tick_timer.stop()
        self.reload_timer.stop()
        logger.info("Scheduler stopped")

    def wait_for_idle(self, timeout_ms: int = -1) -> bool:
        """Block until no probe is running (or the timeout passes)."""
        return self.thread_pool.waitForDone(timeout_ms)

    def set_tick_interval(self, interval_ms: int):
        """Change the due-check cadence."""
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self.config.tick_interval_ms = interval_ms
        self.tick_timer.setInterval(interval_ms)
        logger.debug("Tick interval updated: %dms", interval_ms)

    def load_targets(self) -> int:
        """Synchronize the schedule with the registry's active targets.

        Targets that disappeared or were deactivated are dropped. Targets that
        remain keep their ``is_probing`` flag and ``last_probe_ms`` so a probe
        started just before the reload is neither lost nor dispatched twice.

        Returns:
            Number of scheduled targets after the reload
        """
        try:
            targets = self.registry.list_active_targets()
        except Exception:
            logger.exception("Error loading targets, keeping current schedule")
            return len(self._targets)

        active = {}
        for target in targets:
            if not target.is_active:
                continue
            try:
                probe_type = ProbeType.parse(target.probe_type)
            except InvalidTargetConfiguration as e:
                logger.error("Skipping target %s: %s", target.id, e)
                continue
            active[target.id] = (target, probe_type)

        with self._lock:
            for target_id in list(self._targets):
                if target_id not in active:
                    del self._targets[target_id]
                    logger.debug("Target unscheduled: %s", target_id)

            for target_id, (target, probe_type) in active.items():
                scheduled = self._targets.get(target_id)
                if scheduled is None:
                    self._targets[target_id] = ScheduledTarget.from_target(target, probe_type)
                    continue
                scheduled.name = target.name
                scheduled.host = target.host
                scheduled.probe_type = probe_type
                scheduled.interval_seconds = target.interval_seconds

            count = len(self._targets)

        logger.info("Loaded %d active targets", count)
        return count

    def reload_targets(self) -> int:
        """Re-sync with the registry, e.g. after a target was created or deleted."""
        return self.load_targets()

    def tick(self) -> list[str]:
        """Dispatch every due target.

        Returns:
            Ids of the targets dispatched by this tick
        """
        self._flush_pending_writes()

        now = self._clock()
        with self._lock:
            due = [t for t in self._targets.values() if t.is_due(now)]
            for target in due:
                self._begin(target, now)

        if not due:
            return []

        batch, sequential = plan_dispatch(due, self.config.max_concurrent)
        if batch:
            logger.info("Probing %d echo targets in parallel", len(batch))
            for target in batch:
                self.thread_pool.start(ProbeWorker(self._execute, [target]))
        if sequential:
            logger.debug("Probing %d targets sequentially", len(sequential))
            self.thread_pool.start(ProbeWorker(self._execute, sequential))

        return [t.id for t in batch + sequential]

    def force_probe(self, target_id: str) -> bool:
        """Probe a target now, regardless of its interval.

        Unknown ids are looked up in the registry and scheduled if active.

        Returns:
            False if the target is unknown or already being probed
        """
        with self._lock:
            target = self._targets.get(target_id)

        if target is None:
            found = self.registry.get_target(target_id)
            if found is None or not found.is_active:
                logger.warning("Target %s not found in scheduler", target_id)
                return False
            with self._lock:
                target = self._targets.setdefault(target_id, ScheduledTarget.from_target(found))

        with self._lock:
            if target.is_probing:
                logger.debug("Force probe skipped, already probing: %s", target_id)
                return False
            self._begin(target, self._clock())

        self.thread_pool.start(ProbeWorker(self._execute, [target]))
        return True

    def get_status(self) -> SchedulerStatus:
        """Report run state and per-target timing."""
        now = self._clock()
        with self._lock:
            targets = [
                TargetProbeStatus(
                    id=t.id,
                    name=t.name,
                    host=t.host,
                    probe_type=t.probe_type.value,
                    interval_seconds=t.interval_seconds,
                    last_probe_ms=t.last_probe_ms,
                    next_probe_in_ms=t.next_probe_in_ms(now),
                    is_probing=t.is_probing,
                )
                for t in self._targets.values()
            ]
        return SchedulerStatus(
            is_running=self.is_running, target_count=len(targets), targets=targets
        )

    @property
    def pending_write_count(self) -> int:
        with self._lock:
            return len(self._pending_writes)

    def _begin(self, target: ScheduledTarget, now: int):
        # Caller holds _lock
        target.is_probing = True
        target.last_probe_ms = now

    def _execute(self, target: ScheduledTarget):
        """Probe one target and store the result. Runs in a pool thread."""
        with self._lock:
            target.last_probe_ms = self._clock()

        try:
            prober = select_prober(self.probers, target.probe_type)
            logger.info(
                "Probing %s (%s) via %s", target.name, target.host, target.probe_type.value
            )
            measurement = prober.probe(target.host, target.id)
        except InvalidTargetConfiguration as e:
            logger.error("Invalid probe type for target %s: %s", target.id, e)
            self.probe_failed.emit(target.id, str(e))
            return
        except Exception as e:
            logger.exception("Error probing target %s", target.name)
            self.probe_failed.emit(target.id, str(e))
            return
        else:
            self._store(measurement)
            logger.info(
                "Probe complete for %s: %s (loss: %.0f%%)",
                target.name,
                f"{measurement.latency:.1f}ms" if measurement.success else "FAILED",
                measurement.packet_loss_pct,
            )
            self.measurement_recorded.emit(measurement)
        finally:
            with self._lock:
                target.is_probing = False

    def _store(self, measurement: Measurement) -> bool:
        """Insert with immediate retries, parking the measurement on failure."""
        attempts = self.config.store_write_retries + 1
        for attempt in range(attempts):
            try:
                self.store.insert(measurement)
                return True
            except Exception as e:
                logger.debug(
                    "Store write failed (%d/%d): target=%s, error=%s",
                    attempt + 1,
                    attempts,
                    measurement.target_id,
                    e,
                )

        with self._lock:
            if len(self._pending_writes) == self._pending_writes.maxlen:
                logger.warning("Pending write queue full, dropping oldest measurement")
            self._pending_writes.append(measurement)
        logger.warning(
            "Deferred measurement for %s after %d failed writes", measurement.target_id, attempts
        )
        return False

    def _flush_pending_writes(self) -> int:
        """Retry parked measurements in order; stops at the first failure."""
        flushed = 0
        while True:
            with self._lock:
                if not self._pending_writes:
                    break
                measurement = self._pending_writes.popleft()
            try:
                self.store.insert(measurement)
            except Exception as e:
                with self._lock:
                    self._pending_writes.appendleft(measurement)
                logger.warning(
                    "Store still failing, %d writes pending: %s", self.pending_write_count, e
                )
                break
            flushed += 1

        if flushed:
            logger.info("Flushed %d deferred measurements", flushed)
        return flushed
