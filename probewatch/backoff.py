"""Retry/backoff policy for echo probes.

Splits a requested packet count into retry attempts and computes the
escalating per-attempt timeout, in the manner of fping's ``-r``/``-B``.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Attempt:
    """One retry attempt: how many packets to send and how long to wait for each."""

    index: int
    packets: int
    timeout_ms: float


def allocate_packets(count: int, retries: int) -> list[int]:
    """Distribute ``count`` packets across ``retries + 1`` attempts.

    Every attempt but the last gets ``max(1, count // (retries + 1))``
    packets; the last takes whatever remains. Attempts that would send
    nothing are dropped, so the sum is always exactly ``count``.

    Examples:
        >>> allocate_packets(20, 3)
        [5, 5, 5, 5]
        >>> allocate_packets(22, 3)
        [5, 5, 5, 7]
        >>> allocate_packets(2, 3)
        [1, 1]
    """
    if count < 0:
        raise ValueError("count must not be negative")
    if retries < 0:
        raise ValueError("retries must not be negative")

    per_attempt = max(1, count // (retries + 1))
    allocation = []
    sent = 0
    for attempt in range(retries + 1):
        remaining = count - sent
        if remaining <= 0:
            break
        packets = remaining if attempt == retries else min(per_attempt, remaining)
        allocation.append(packets)
        sent += packets
    return allocation


def escalate_timeout(timeout_ms: float, backoff_factor: float) -> float:
    """Timeout for the next attempt."""
    return timeout_ms * backoff_factor


def plan_attempts(
    count: int, retries: int, timeout_ms: float, backoff_factor: float
) -> list[Attempt]:
    """Build the full attempt plan for one echo probe.

    Attempt ``i`` waits ``timeout_ms * backoff_factor ** i`` per packet, which is
    the worst case where no earlier attempt got a reply.
    """
    plan = []
    timeout = float(timeout_ms)
    for index, packets in enumerate(allocate_packets(count, retries)):
        plan.append(Attempt(index=index, packets=packets, timeout_ms=timeout))
        timeout = escalate_timeout(timeout, backoff_factor)
    return plan


def worst_case_duration_ms(plan: list[Attempt], interval_ms: float) -> float:
    """Upper bound on the wall time of a plan (all packets time out)."""
    total = 0.0
    for attempt in plan:
        total += attempt.packets * attempt.timeout_ms
        total += max(0, attempt.packets - 1) * interval_ms
    return total
