"""Runtime configuration for probewatch."""

import os
from dataclasses import dataclass, fields

DNS_RECORD_TYPES = ("A", "AAAA", "MX", "TXT", "NS", "CNAME")

# Environment variable for each option. Booleans accept 1/0, true/false, yes/no, on/off.
ENV_VARS = {
    "ping_count": "PROBEWATCH_PING_COUNT",
    "ping_timeout_ms": "PROBEWATCH_PING_TIMEOUT_MS",
    "ping_interval_ms": "PROBEWATCH_PING_INTERVAL_MS",
    "backoff_factor": "PROBEWATCH_BACKOFF_FACTOR",
    "retries": "PROBEWATCH_RETRIES",
    "early_stop_on_success": "PROBEWATCH_EARLY_STOP",
    "dns_query_count": "PROBEWATCH_DNS_QUERY_COUNT",
    "dns_timeout_ms": "PROBEWATCH_DNS_TIMEOUT_MS",
    "dns_record_type": "PROBEWATCH_DNS_RECORD_TYPE",
    "tick_interval_ms": "PROBEWATCH_TICK_INTERVAL_MS",
    "target_reload_interval_ms": "PROBEWATCH_RELOAD_INTERVAL_MS",
    "max_concurrent": "PROBEWATCH_MAX_CONCURRENT",
    "store_write_retries": "PROBEWATCH_STORE_RETRIES",
    "recent_window_minutes": "PROBEWATCH_RECENT_WINDOW_MINUTES",
    "recent_loss_threshold_pct": "PROBEWATCH_RECENT_LOSS_THRESHOLD",
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass
class ProbeConfig:
    """Probe, scheduler and aggregation options.

    Defaults follow fping's timing defaults for echo probes.
    """

    ping_count: int = 20
    ping_timeout_ms: int = 1000
    ping_interval_ms: int = 10
    backoff_factor: float = 1.5
    retries: int = 3
    early_stop_on_success: bool = False
    dns_query_count: int = 5
    dns_timeout_ms: int = 5000
    dns_record_type: str = "A"
    tick_interval_ms: int = 10_000
    target_reload_interval_ms: int = 300_000
    max_concurrent: int = 8
    store_write_retries: int = 2
    recent_window_minutes: float = 5.0
    recent_loss_threshold_pct: float = 20.0

    def __post_init__(self):
        positive = (
            "ping_count",
            "ping_timeout_ms",
            "dns_query_count",
            "dns_timeout_ms",
            "tick_interval_ms",
            "target_reload_interval_ms",
            "max_concurrent",
            "recent_window_minutes",
        )
        for name in positive:
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

        if self.ping_interval_ms < 0:
            raise ValueError("ping_interval_ms must not be negative")
        if self.retries < 0:
            raise ValueError("retries must not be negative")
        if self.store_write_retries < 0:
            raise ValueError("store_write_retries must not be negative")
        if self.backoff_factor < 1.0:
            raise ValueError("backoff_factor must be at least 1.0")
        if not 0 <= self.recent_loss_threshold_pct <= 100:
            raise ValueError("recent_loss_threshold_pct must be within 0-100")

        self.dns_record_type = self.dns_record_type.upper()
        if self.dns_record_type not in DNS_RECORD_TYPES:
            raise ValueError(f"unsupported dns_record_type: {self.dns_record_type}")

    @classmethod
    def from_env(cls, environ=None) -> "ProbeConfig":
        """Build a config from PROBEWATCH_* environment variables.

        Unset variables keep their defaults.

        Raises:
            ValueError: If a variable cannot be parsed or the result is invalid
        """
        if environ is None:
            environ = os.environ

        values = {}
        for f in fields(cls):
            var = ENV_VARS[f.name]
            raw = environ.get(var)
            if raw is None or raw.strip() == "":
                continue
            values[f.name] = _parse_value(var, raw.strip(), f.default)

        return cls(**values)


def _parse_value(var: str, raw: str, default):
    if isinstance(default, bool):
        lowered = raw.lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ValueError(f"{var}: expected a boolean, got {raw!r}")

    try:
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except ValueError:
        raise ValueError(f"{var}: expected a number, got {raw!r}") from None

    return raw
