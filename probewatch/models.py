"""Data models for probewatch targets, measurements and statistics."""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum

from probewatch.errors import InvalidTargetConfiguration


class ProbeType(str, Enum):
    """How a target is probed."""

    ECHO = "echo"
    DNS = "dns"

    @classmethod
    def parse(cls, value) -> "ProbeType":
        """Parse a registry value into a ProbeType.

        ``"ping"`` is accepted as an alias of ``echo``.

        Raises:
            InvalidTargetConfiguration: If the value names no known probe type
        """
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        if text == "ping":
            return cls.ECHO
        try:
            return cls(text)
        except ValueError:
            raise InvalidTargetConfiguration(f"unknown probe type: {value!r}") from None


class TargetStatus(str, Enum):
    """Lifecycle status of a target as owned by the registry."""

    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"


@dataclass
class Target:
    """A user-declared probe target (owned by the registry)."""

    id: str
    host: str
    probe_type: ProbeType
    interval_seconds: int
    status: TargetStatus = TargetStatus.ACTIVE
    name: str = ""
    group: str | None = None
    last_probe_ms: int = 0

    def __post_init__(self):
        self.probe_type = ProbeType.parse(self.probe_type)
        self.status = TargetStatus(self.status)
        if not self.name:
            self.name = self.host

    @property
    def is_active(self) -> bool:
        return self.status is TargetStatus.ACTIVE


@dataclass
class ScheduledTarget:
    """Scheduler runtime state for one active target."""

    id: str
    name: str
    host: str
    probe_type: ProbeType
    interval_seconds: int
    last_probe_ms: int = 0
    is_probing: bool = False

    @classmethod
    def from_target(cls, target: Target, probe_type: ProbeType | None = None) -> "ScheduledTarget":
        return cls(
            id=target.id,
            name=target.name,
            host=target.host,
            probe_type=target.probe_type if probe_type is None else probe_type,
            interval_seconds=target.interval_seconds,
            last_probe_ms=target.last_probe_ms,
        )

    @property
    def interval_ms(self) -> int:
        return int(self.interval_seconds * 1000)

    def is_due(self, now_ms: int) -> bool:
        """True when idle and never probed or an interval has passed since the last probe."""
        if self.is_probing:
            return False
        if self.last_probe_ms <= 0:
            return True
        return now_ms - self.last_probe_ms >= self.interval_ms

    def next_probe_in_ms(self, now_ms: int) -> int:
        if self.last_probe_ms <= 0:
            return 0
        return max(0, self.interval_ms - (now_ms - self.last_probe_ms))


@dataclass(frozen=True)
class Measurement:
    """One probe result built from several raw attempts.

    Invariants enforced on construction:
    - A failed measurement has 100% packet loss and no latency or jitter.
    - A successful measurement has a latency and less than 100% packet loss.
    """

    target_id: str
    timestamp: datetime
    latency: float | None
    packet_loss_pct: float
    success: bool
    jitter: float | None = None
    error_message: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        success = bool(self.success) and self.latency is not None
        if success:
            loss = min(max(float(self.packet_loss_pct), 0.0), 99.0)
            object.__setattr__(self, "packet_loss_pct", loss)
        else:
            object.__setattr__(self, "packet_loss_pct", 100.0)
            object.__setattr__(self, "latency", None)
            object.__setattr__(self, "jitter", None)
        object.__setattr__(self, "success", success)

    @classmethod
    def failure(cls, target_id: str, error_message: str, timestamp: datetime | None = None):
        """Build a 100%-loss measurement carrying an error message."""
        return cls(
            target_id=target_id,
            timestamp=timestamp or utcnow(),
            latency=None,
            packet_loss_pct=100.0,
            success=False,
            error_message=error_message,
        )


@dataclass
class DataPoint:
    """Read-side sample; ``is_online is None`` marks an interval without a sample."""

    timestamp: datetime
    latency: float | None = None
    packet_loss: float | None = None
    jitter: float | None = None
    is_online: bool | None = None

    @property
    def is_gap(self) -> bool:
        return self.is_online is None

    @classmethod
    def from_measurement(cls, measurement: Measurement, timestamp: datetime | None = None):
        return cls(
            timestamp=timestamp or measurement.timestamp,
            latency=measurement.latency,
            packet_loss=measurement.packet_loss_pct,
            jitter=measurement.jitter,
            is_online=measurement.success,
        )


@dataclass
class AggregateStats:
    """Summary indicators for one target over one window."""

    avg_latency: float = 0.0
    min_latency: float = 0.0
    max_latency: float = 0.0
    jitter_avg: float = 0.0
    jitter_min: float = 0.0
    jitter_max: float = 0.0
    packet_loss_decayed: float = 0.0
    uptime_pct: float = 0.0
    current_latency: float | None = None
    current_packet_loss: float | None = None
    current_jitter: float | None = None
    currently_online: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TargetProbeStatus:
    """Per-target entry of a scheduler status report."""

    id: str
    name: str
    host: str
    probe_type: str
    interval_seconds: int
    last_probe_ms: int
    next_probe_in_ms: int
    is_probing: bool


@dataclass
class SchedulerStatus:
    """Snapshot of scheduler state."""

    is_running: bool
    target_count: int
    targets: list[TargetProbeStatus] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(utcnow().timestamp() * 1000)
