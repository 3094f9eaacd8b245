"""ICMP echo prober using fping when installed, otherwise the system ping command."""

import logging
import platform
import re
import subprocess
import threading
import time
from dataclasses import dataclass, field
from math import ceil

from probewatch.backoff import (
    Attempt,
    allocate_packets,
    escalate_timeout,
    plan_attempts,
    worst_case_duration_ms,
)
from probewatch.errors import ProbeExecutionError, TransientProbeFailure
from probewatch.models import Measurement, utcnow
from probewatch.stats import loss_percent, mean, mean_absolute_deviation

logger = logging.getLogger(__name__)

_LESS_THAN_PATTERN = re.compile(r"time<(\d+)", re.IGNORECASE)
_LATENCY_PATTERN = re.compile(r"time\s*[=<]\s*(\d+(?:\.\d+)?)\s*ms", re.IGNORECASE)
_FPING_SUMMARY_PATTERN = re.compile(
    r"xmt/rcv/%loss\s*=\s*(\d+)/(\d+)/(\d+)%"
    r"(?:,\s*min/avg/max\s*=\s*([\d.]+)/([\d.]+)/([\d.]+))?"
)
_FPING_REPLY_PATTERN = re.compile(r":\s*\[\d+\],\s*\d+\s+bytes,\s*([\d.]+)\s*ms")

FPING_DETECT_TIMEOUT_S = 2.0


def parse_ping_latency_ms(output: str) -> float | None:
    """Parse latency value from single-packet ping output (pure function).

    Handles various ping output formats across platforms:
    - Linux/macOS: "time=12.3 ms"
    - Windows: "time=12ms" or "time<1ms"

    Windows "time<Nms" is interpreted as N/2 ms (midpoint estimate).

    Args:
        output: Raw ping command output

    Returns:
        Latency in milliseconds, or None if parsing failed

    Examples:
        >>> parse_ping_latency_ms("time=12.3 ms")
        12.3
        >>> parse_ping_latency_ms("time<1ms")
        0.5
        >>> parse_ping_latency_ms("Request timed out.") is None
        True
    """
    if not output:
        return None

    match = _LESS_THAN_PATTERN.search(output)
    if match:
        return float(match.group(1)) / 2.0

    match = _LATENCY_PATTERN.search(output)
    if match:
        return float(match.group(1))

    return None


@dataclass
class FpingSummary:
    """Aggregate result of one fping invocation for one host."""

    sent: int
    received: int
    avg_ms: float | None
    rtts: list[float] = field(default_factory=list)


def parse_fping_output(output: str, host: str) -> FpingSummary | None:
    """Parse combined fping ``-c`` output for ``host`` (pure function).

    Per-packet lines on stdout look like::

        8.8.8.8 : [0], 64 bytes, 12.3 ms (12.3 avg, 0% loss)

    and the summary on stderr like::

        8.8.8.8 : xmt/rcv/%loss = 20/19/5%, min/avg/max = 10.1/12.3/15.2

    Returns:
        FpingSummary, or None if no summary line for ``host`` was found
    """
    if not output:
        return None

    rtts = []
    summary = None
    for line in output.splitlines():
        line = line.strip()
        if not line.startswith(host) or not line[len(host):].lstrip().startswith(":"):
            continue
        reply = _FPING_REPLY_PATTERN.search(line)
        if reply:
            rtts.append(float(reply.group(1)))
            continue
        match = _FPING_SUMMARY_PATTERN.search(line)
        if match:
            summary = match

    if summary is None:
        return None

    sent = int(summary.group(1))
    received = int(summary.group(2))
    avg_ms = float(summary.group(5)) if summary.group(5) else None
    return FpingSummary(sent=sent, received=received, avg_ms=avg_ms, rtts=rtts)


class EchoProber:
    """Echo prober turning ``count`` ping packets into one Measurement.

    Packets are spread over ``retries + 1`` attempts. An attempt that gets no
    reply multiplies the per-packet timeout by ``backoff_factor``. With
    ``early_stop_on_success`` the probe ends after the first attempt that gets
    any reply; otherwise all ``count`` packets are sent.

    If fping is installed it sends the probe instead, in one invocation, or
    one invocation per attempt when stopping early. Its availability is
    checked once per prober and remembered.

    **Localization Limitation:**
    Per-packet parsing relies on the English keyword "time" in ping output.
    On non-English Windows systems replies are counted as losses.
    """

    def __init__(
        self,
        count: int = 20,
        timeout_ms: int = 1000,
        interval_ms: int = 10,
        backoff_factor: float = 1.5,
        retries: int = 3,
        early_stop_on_success: bool = False,
    ):
        if count <= 0:
            raise ValueError("count must be positive")
        if timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")
        if interval_ms < 0:
            raise ValueError("interval_ms must not be negative")
        if retries < 0:
            raise ValueError("retries must not be negative")
        if backoff_factor < 1.0:
            raise ValueError("backoff_factor must be at least 1.0")

        self.count = count
        self.timeout_ms = timeout_ms
        self.interval_ms = interval_ms
        self.backoff_factor = backoff_factor
        self.retries = retries
        self.early_stop_on_success = early_stop_on_success
        self.system = platform.system()

        self._fping_available: bool | None = None
        self._fping_lock = threading.Lock()

        logger.debug(
            "EchoProber initialized: count=%d, timeout_ms=%d, retries=%d, backoff=%.2f, "
            "early_stop=%s, system=%s",
            count,
            timeout_ms,
            retries,
            backoff_factor,
            early_stop_on_success,
            self.system,
        )

    def probe(self, host: str, target_id: str = "") -> Measurement:
        """Probe ``host`` and aggregate all replies into one Measurement.

        Raises:
            ProbeExecutionError: If the system ping command cannot be run
        """
        if not host or not host.strip():
            return Measurement.failure(target_id, "empty host")

        host = host.strip()
        timestamp = utcnow()

        if self.fping_available():
            summary = self._probe_fping(host)
            if summary is not None:
                return self._build_measurement(
                    target_id, timestamp, summary.sent, summary.rtts, summary.avg_ms,
                    summary.received,
                )
            logger.warning("fping probe failed for %s, falling back to ping", host)

        sent, rtts = self._probe_with_ping(host)
        return self._build_measurement(target_id, timestamp, sent, rtts)

    def fping_available(self) -> bool:
        """Whether fping can be used; detected on first call only."""
        with self._fping_lock:
            if self._fping_available is None:
                self._fping_available = self._detect_fping()
            return self._fping_available

    def plan(self) -> list[Attempt]:
        """Worst-case attempt plan, used to bound an fping run."""
        return plan_attempts(self.count, self.retries, self.timeout_ms, self.backoff_factor)

    def _detect_fping(self) -> bool:
        try:
            subprocess.run(
                ["fping", "--version"],
                capture_output=True,
                text=True,
                timeout=FPING_DETECT_TIMEOUT_S,
                check=True,
                shell=False,
            )
        except (OSError, subprocess.SubprocessError):
            logger.info("fping not available, using system ping")
            return False
        logger.info("fping detected and available")
        return True

    def _probe_fping(self, host: str) -> FpingSummary | None:
        """Run the probe through fping.

        An exhaustive probe is one invocation for all ``count`` packets. With
        ``early_stop_on_success`` every attempt is its own invocation and the
        probe ends after the first attempt that gets a reply.
        """
        if not self.early_stop_on_success:
            return self._run_fping(host, self._build_fping_command(host), self.plan())

        sent = 0
        received = 0
        rtts = []
        avg_ms = None
        timeout_ms = float(self.timeout_ms)
        for index, packets in enumerate(allocate_packets(self.count, self.retries)):
            attempt = Attempt(index=index, packets=packets, timeout_ms=timeout_ms)
            cmd = self._build_fping_command(host, count=packets, timeout_ms=timeout_ms, retries=0)
            summary = self._run_fping(host, cmd, [attempt])
            if summary is None:
                return None

            sent += summary.sent
            received += summary.received
            rtts.extend(summary.rtts)
            if summary.received:
                avg_ms = summary.avg_ms
                break
            timeout_ms = escalate_timeout(timeout_ms, self.backoff_factor)

        return FpingSummary(sent=sent, received=received, avg_ms=avg_ms, rtts=rtts)

    def _run_fping(self, host: str, cmd: list[str], plan: list[Attempt]) -> FpingSummary | None:
        budget_s = worst_case_duration_ms(plan, self.interval_ms) / 1000.0 + 5.0
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=budget_s, shell=False
            )
        except subprocess.TimeoutExpired:
            logger.debug("fping timeout: host=%s, budget=%.1fs", host, budget_s)
            return None
        except OSError as e:
            logger.warning("fping could not be executed: %s", e)
            return None

        # fping exits 1 when some packets were lost; >1 means it could not probe
        if result.returncode > 1:
            logger.debug("fping failed: host=%s, returncode=%d", host, result.returncode)
            return None

        summary = parse_fping_output(f"{result.stdout}\n{result.stderr}", host)
        if summary is not None:
            logger.debug(
                "fping stats: host=%s, sent=%d, received=%d",
                host,
                summary.sent,
                summary.received,
            )
        return summary

    def _build_fping_command(
        self,
        host: str,
        count: int | None = None,
        timeout_ms: float | None = None,
        retries: int | None = None,
    ) -> list[str]:
        count = self.count if count is None else count
        timeout_ms = self.timeout_ms if timeout_ms is None else timeout_ms
        retries = self.retries if retries is None else retries
        return [
            "fping",
            "-c", str(count),
            "-t", str(int(timeout_ms)),
            "-i", str(int(self.interval_ms)),
            "-B", str(self.backoff_factor),
            "-r", str(retries),
            host,
        ]

    def _probe_with_ping(self, host: str) -> tuple[int, list[float]]:
        """Send the packets attempt by attempt, one at a time.

        The timeout only grows after an attempt that got no reply at all.

        Returns:
            (packets sent, round-trip times of the replies)
        """
        sent = 0
        rtts = []
        timeout_ms = float(self.timeout_ms)
        allocation = allocate_packets(self.count, self.retries)
        for index, packets in enumerate(allocation):
            attempt = Attempt(index=index, packets=packets, timeout_ms=timeout_ms)
            logger.debug(
                "Attempt %d/%d for %s: %d packets, timeout=%.0fms",
                index + 1,
                len(allocation),
                host,
                packets,
                timeout_ms,
            )
            replies = self._run_attempt(host, attempt)
            sent += packets
            rtts.extend(replies)

            if not replies:
                timeout_ms = escalate_timeout(timeout_ms, self.backoff_factor)
            elif self.early_stop_on_success:
                break

        return sent, rtts

    def _run_attempt(self, host: str, attempt: Attempt) -> list[float]:
        replies = []
        for i in range(attempt.packets):
            try:
                replies.append(self._send_packet(host, attempt.timeout_ms))
            except TransientProbeFailure as e:
                logger.debug("Packet lost: host=%s, reason=%s", host, e)

            if i < attempt.packets - 1 and self.interval_ms > 0:
                time.sleep(self.interval_ms / 1000.0)
        return replies

    def _send_packet(self, host: str, timeout_ms: float) -> float:
        """Send one echo request and return its round-trip time.

        Raises:
            TransientProbeFailure: No reply within the timeout
            ProbeExecutionError: The ping command cannot be executed
        """
        cmd = self._build_ping_command(host, timeout_ms)
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout_ms / 1000.0 + 0.5,
                shell=False,
            )
        except subprocess.TimeoutExpired:
            raise TransientProbeFailure("timeout") from None
        except OSError as e:
            raise ProbeExecutionError(f"cannot execute ping: {e}") from e

        if result.returncode != 0:
            raise TransientProbeFailure(f"returncode={result.returncode}")

        latency = parse_ping_latency_ms(result.stdout)
        if latency is None:
            raise TransientProbeFailure("unparseable reply")
        return latency

    def _build_ping_command(self, host: str, timeout_ms: float) -> list[str]:
        """Build platform-specific single-packet ping command."""
        if self.system == "Windows":
            return ["ping", "-n", "1", "-w", str(int(timeout_ms)), host]

        if self.system == "Linux":
            timeout_secs = max(1, ceil(timeout_ms / 1000.0))
            return ["ping", "-c", "1", "-W", str(timeout_secs), host]

        # macOS/BSD: -W has different semantics, rely on the subprocess timeout
        return ["ping", "-c", "1", host]

    def _build_measurement(
        self,
        target_id: str,
        timestamp,
        sent: int,
        rtts: list[float],
        fallback_avg: float | None = None,
        received: int | None = None,
    ) -> Measurement:
        if received is None:
            received = len(rtts)

        if rtts:
            latency = mean(rtts)
        elif received > 0:
            latency = fallback_avg
        else:
            latency = None

        measurement = Measurement(
            target_id=target_id,
            timestamp=timestamp,
            latency=latency,
            packet_loss_pct=loss_percent(sent, received),
            jitter=mean_absolute_deviation(rtts),
            success=received > 0,
            error_message=None if received > 0 else "no reply",
        )
        logger.debug(
            "Echo result: target=%s, sent=%d, received=%d, loss=%.0f%%, latency=%s",
            target_id,
            sent,
            received,
            measurement.packet_loss_pct,
            latency,
        )
        return measurement
