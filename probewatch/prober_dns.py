"""DNS resolution prober built on dnspython."""

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime

import dns.exception
import dns.resolver

from probewatch.config import DNS_RECORD_TYPES
from probewatch.errors import TransientProbeFailure
from probewatch.models import Measurement, utcnow
from probewatch.stats import mean, mean_absolute_deviation

logger = logging.getLogger(__name__)

SETTLE_DELAY_MS = 50

_HOSTNAME_PATTERN = re.compile(
    r"^(?!://)([a-zA-Z0-9_-]+\.)*[a-zA-Z0-9][a-zA-Z0-9_-]+\.[a-zA-Z]{2,11}?$"
)


def is_valid_hostname(host: str) -> bool:
    """Basic syntactic check that ``host`` is a resolvable-looking domain name."""
    return bool(host) and _HOSTNAME_PATTERN.match(host) is not None


def build_dns_measurement(
    target_id: str,
    timestamp: datetime,
    elapsed_ms: list[float],
    last_error: str | None = None,
) -> Measurement:
    """Aggregate the elapsed times of successful queries into a Measurement.

    Packet loss has no meaning for name resolution: 0 when any query
    succeeded, otherwise the probe is a total failure.
    """
    if not elapsed_ms:
        return Measurement.failure(target_id, last_error or "all queries failed", timestamp)

    return Measurement(
        target_id=target_id,
        timestamp=timestamp,
        latency=mean(elapsed_ms),
        packet_loss_pct=0.0,
        jitter=mean_absolute_deviation(elapsed_ms),
        success=True,
    )


class DnsProber:
    """Issues ``query_count`` sequential lookups and aggregates the successes.

    Each lookup races against ``timeout_ms``: a lookup still running when the
    timer expires is abandoned and counted as failed. Failed lookups never
    abort the remaining ones.
    """

    def __init__(
        self,
        query_count: int = 5,
        timeout_ms: int = 5000,
        record_type: str = "A",
        resolver: dns.resolver.Resolver | None = None,
        settle_delay_ms: int = SETTLE_DELAY_MS,
    ):
        if query_count <= 0:
            raise ValueError("query_count must be positive")
        if timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")
        record_type = record_type.upper()
        if record_type not in DNS_RECORD_TYPES:
            raise ValueError(f"unsupported record type: {record_type}")

        self.query_count = query_count
        self.timeout_ms = timeout_ms
        self.record_type = record_type
        self.settle_delay_ms = settle_delay_ms

        if resolver is None:
            resolver = dns.resolver.Resolver()
            resolver.lifetime = timeout_ms / 1000.0
        self.resolver = resolver

        # Abandoned lookups keep their worker until the resolver gives up
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="dns-query")

    def probe(self, host: str, target_id: str = "") -> Measurement:
        """Resolve ``host`` ``query_count`` times and aggregate the results."""
        if not host or not host.strip():
            return Measurement.failure(target_id, "empty host")

        host = host.strip()
        timestamp = utcnow()
        if not is_valid_hostname(host.rstrip(".")):
            logger.warning("Not a valid DNS name: %r", host)
            return Measurement.failure(target_id, "invalid hostname", timestamp)

        elapsed = []
        last_error = None

        for i in range(self.query_count):
            try:
                elapsed.append(self._query(host))
            except TransientProbeFailure as e:
                last_error = str(e)
                logger.debug("DNS query %d/%d failed: host=%s, reason=%s",
                             i + 1, self.query_count, host, e)

            if i < self.query_count - 1 and self.settle_delay_ms > 0:
                time.sleep(self.settle_delay_ms / 1000.0)

        measurement = build_dns_measurement(target_id, timestamp, elapsed, last_error)
        logger.debug(
            "DNS result: host=%s, succeeded=%d/%d, latency=%s",
            host,
            len(elapsed),
            self.query_count,
            measurement.latency,
        )
        return measurement

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def _query(self, host: str) -> float:
        """Run one lookup raced against the timeout.

        Returns:
            Elapsed milliseconds of a successful lookup

        Raises:
            TransientProbeFailure: On timeout or any resolver error
        """
        start = time.perf_counter()
        future = self._executor.submit(self.resolver.resolve, host, self.record_type)
        done, _ = wait([future], timeout=self.timeout_ms / 1000.0)
        if not done:
            raise TransientProbeFailure("DNS query timed out")

        try:
            future.result()
        except dns.exception.DNSException as e:
            raise TransientProbeFailure(type(e).__name__) from e
        except OSError as e:
            raise TransientProbeFailure(str(e)) from e

        return (time.perf_counter() - start) * 1000.0
