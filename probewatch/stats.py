"""Jitter estimation, DataPoint projection and window aggregation."""

import math
from datetime import datetime, timedelta

from probewatch.models import AggregateStats, DataPoint, Measurement, utcnow

# exp(-20 * 0.23) ~= 1/100: a 20 minute old sample weighs ~100x less than a fresh one.
DECAY_PER_MINUTE = 0.23
MAX_BIAS_FACTOR = 0.9
ONLINE_LOOKBACK = timedelta(minutes=60)
MAX_POINTS = 288

# time range -> (hours covered, bucket width in minutes)
TIME_RANGES = {
    "1h": (1, 5),
    "3h": (3, 5),
    "6h": (6, 10),
    "24h": (24, 30),
    "7d": (168, 120),
    "30d": (720, 360),
}


def mean(values) -> float:
    values = list(values)
    return sum(values) / len(values)


def mean_absolute_deviation(samples) -> float | None:
    """Jitter as the mean absolute deviation of latency samples.

    Returns None for fewer than two samples.

    Examples:
        >>> round(mean_absolute_deviation([10, 12, 14]), 2)
        1.33
        >>> mean_absolute_deviation([10]) is None
        True
    """
    samples = [float(s) for s in samples]
    if len(samples) < 2:
        return None
    center = mean(samples)
    return mean(abs(s - center) for s in samples)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def loss_percent(sent: int, received: int) -> float:
    """Rounded packet loss; 100 when nothing was sent."""
    if sent <= 0:
        return 100.0
    return float(round_half_up((sent - received) / sent * 100))


def measurements_to_points(measurements) -> list[DataPoint]:
    """Project stored measurements to DataPoints one-to-one."""
    return [DataPoint.from_measurement(m) for m in measurements]


def build_data_points(
    measurements: list[Measurement],
    start: datetime,
    end: datetime,
    bucket_minutes: int,
) -> list[DataPoint]:
    """Lay a fixed bucket grid over ``start..end`` and fill it from measurements.

    The last bucket sits at ``end`` so the newest samples are always on the
    grid. Each bucket takes the first measurement within half a bucket of the
    bucket timestamp; buckets without one become gap points
    (``is_online is None``). The grid is capped at MAX_POINTS buckets.
    """
    if bucket_minutes <= 0:
        raise ValueError("bucket_minutes must be positive")

    bucket = timedelta(minutes=bucket_minutes)
    tolerance = bucket / 2
    total = int((end - start) / bucket)
    count = max(0, min(MAX_POINTS, total))

    ordered = sorted(measurements, key=lambda m: m.timestamp)
    points = []
    cursor = 0
    for i in range(count):
        slot = end - bucket * (count - 1 - i)
        # Skip measurements that are too old for this and every later slot
        while cursor < len(ordered) and ordered[cursor].timestamp <= slot - tolerance:
            cursor += 1
        if cursor < len(ordered) and abs(ordered[cursor].timestamp - slot) < tolerance:
            points.append(DataPoint.from_measurement(ordered[cursor], timestamp=slot))
        else:
            points.append(DataPoint(timestamp=slot))
    return points


def _known_loss(point: DataPoint) -> float | None:
    if point.packet_loss is not None:
        return float(point.packet_loss)
    if point.is_online is False:
        return 100.0
    return None


def decayed_packet_loss(
    points: list[DataPoint],
    now: datetime,
    recent_window_minutes: float = 5.0,
    recent_loss_threshold_pct: float = 20.0,
) -> float:
    """Time-decayed packet loss with a recency bias.

    Every sample with a known loss is weighted by
    ``exp(-age_minutes * DECAY_PER_MINUTE)``. If the plain mean loss over the
    last ``recent_window_minutes`` exceeds ``recent_loss_threshold_pct``, the
    result is raised to at least ``recent * min(0.9, recent / 100)``; the bias
    never lowers it.
    """
    weighted_sum = 0.0
    total_weight = 0.0
    recent = []
    for point in points:
        loss = _known_loss(point)
        if loss is None:
            continue
        age_minutes = (now - point.timestamp).total_seconds() / 60.0
        weight = math.exp(-age_minutes * DECAY_PER_MINUTE)
        weighted_sum += loss * weight
        total_weight += weight
        if age_minutes <= recent_window_minutes:
            recent.append(loss)

    if total_weight <= 0:
        return 0.0

    result = weighted_sum / total_weight

    if recent:
        recent_loss = mean(recent)
        if recent_loss > recent_loss_threshold_pct:
            bias = min(MAX_BIAS_FACTOR, recent_loss / 100.0)
            result = max(result, recent_loss * bias)

    return result


def aggregate(
    points: list[DataPoint],
    now: datetime | None = None,
    recent_window_minutes: float = 5.0,
    recent_loss_threshold_pct: float = 20.0,
) -> AggregateStats:
    """Summarize a window of DataPoints for one target.

    Gap points (``is_online is None``) count towards nothing except the grid;
    they are excluded from uptime, jitter averages and the current values.
    """
    if now is None:
        now = utcnow()

    stats = AggregateStats()
    present = [p for p in points if not p.is_gap]
    if not present:
        return stats

    latencies = [p.latency for p in present if p.latency is not None]
    if latencies:
        stats.avg_latency = mean(latencies)
        stats.min_latency = min(latencies)
        stats.max_latency = max(latencies)

    jitters = [p.jitter for p in present if p.jitter is not None]
    stats.jitter_avg = mean(p.jitter or 0.0 for p in present)
    if jitters:
        stats.jitter_min = min(jitters)
        stats.jitter_max = max(jitters)

    online = sum(1 for p in present if p.is_online)
    stats.uptime_pct = online / len(present) * 100.0

    stats.packet_loss_decayed = decayed_packet_loss(
        present,
        now,
        recent_window_minutes=recent_window_minutes,
        recent_loss_threshold_pct=recent_loss_threshold_pct,
    )

    latest = max(present, key=lambda p: p.timestamp)
    stats.current_latency = latest.latency
    stats.current_packet_loss = 100.0 if latest.is_online is False else latest.packet_loss
    stats.current_jitter = latest.jitter

    cutoff = now - ONLINE_LOOKBACK
    stats.currently_online = any(p.is_online is True and p.timestamp >= cutoff for p in present)
    return stats
