"""Entry point for the probewatch service."""

import argparse
import logging
import signal
import sys

from PySide6.QtCore import QCoreApplication, QTimer

from probewatch.config import ProbeConfig
from probewatch.logging_config import configure_logging
from probewatch.service import ProbeService
from probewatch.store import InMemoryMeasurementStore, InMemoryTargetRegistry, load_targets_file

logger = logging.getLogger(__name__)

EXIT_BAD_INPUT = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="probewatch",
        description="Periodically probe hosts via ICMP echo or DNS and log the results.",
    )
    parser.add_argument("targets", help="JSON file with the list of targets to probe")
    parser.add_argument(
        "--log-level",
        default=None,
        help="DEBUG, INFO, WARNING, ERROR or CRITICAL (default: $PROBEWATCH_LOG_LEVEL or INFO)",
    )
    return parser


def main(argv=None) -> int:
    """Main entry point for the probewatch service."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = ProbeConfig.from_env()
        registry = InMemoryTargetRegistry(load_targets_file(args.targets))
    except (OSError, ValueError) as e:
        logger.error("Cannot start: %s", e)
        return EXIT_BAD_INPUT

    app = QCoreApplication.instance() or QCoreApplication(sys.argv[:1])

    service = ProbeService(
        config=config,
        registry=registry,
        store=InMemoryMeasurementStore(),
    )

    def request_quit(signum, _frame):
        logger.info("Received signal %d, shutting down", signum)
        app.quit()

    signal.signal(signal.SIGINT, request_quit)
    signal.signal(signal.SIGTERM, request_quit)

    # Give the interpreter a chance to run signal handlers while Qt owns the loop
    wakeup = QTimer()
    wakeup.timeout.connect(lambda: None)
    wakeup.start(500)

    service.init()
    try:
        return app.exec()
    finally:
        wakeup.stop()
        service.shutdown()


if __name__ == "__main__":
    sys.exit(main())
