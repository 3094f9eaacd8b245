"""Thread-pool workers that run probes off the scheduler thread."""

import logging
from typing import Callable

from PySide6.QtCore import QRunnable

from probewatch.models import ScheduledTarget

logger = logging.getLogger(__name__)


class ProbeWorker(QRunnable):
    """Runs ``job`` for each of its targets, one after another.

    A worker with one target is one member of a fan-out batch; a worker with
    several targets is the sequential runner for DNS and overflow targets.
    ``job`` is responsible for clearing each target's in-flight flag.
    """

    def __init__(self, job: Callable[[ScheduledTarget], None], targets: list[ScheduledTarget]):
        super().__init__()
        self.job = job
        self.targets = list(targets)

    def run(self):
        """Execute the probes in a pool thread."""
        logger.debug("Worker starting: targets=%s", [t.id for t in self.targets])

        for target in self.targets:
            try:
                self.job(target)
            except Exception:
                # Remaining targets still run
                logger.exception("Worker exception: target=%s", target.id)

        logger.debug("Worker completed: %d targets", len(self.targets))
