"""Logging configuration for probewatch."""

import logging
import os
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def resolve_log_level(name: str | None) -> int:
    """Map a level name to a logging constant, falling back to INFO."""
    return _LEVELS.get((name or "").strip().upper(), logging.INFO)


def configure_logging(level: str | None = None) -> int:
    """Configure process-wide logging for the probe service.

    The level comes from ``level`` when given (e.g. ``--log-level`` on the
    command line), otherwise from PROBEWATCH_LOG_LEVEL, otherwise INFO.
    Unknown names fall back to INFO.

    Examples:
        # Per-packet and per-query details
        $ PROBEWATCH_LOG_LEVEL=DEBUG python -m probewatch targets.json

        # Only failures
        $ python -m probewatch targets.json --log-level WARNING

    Returns:
        The numeric level that was applied
    """
    if level is None:
        level = os.environ.get("PROBEWATCH_LOG_LEVEL", "INFO")
    log_level = resolve_log_level(level)

    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
        force=True,  # Replace handlers installed by earlier imports
    )

    logging.getLogger(__name__).info(
        "Logging configured: level=%s", logging.getLevelName(log_level)
    )
    return log_level
