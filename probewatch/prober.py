"""Prober abstraction and probe-type dispatch."""

from typing import Protocol

from probewatch.config import ProbeConfig
from probewatch.errors import InvalidTargetConfiguration
from probewatch.models import Measurement, ProbeType
from probewatch.prober_dns import DnsProber
from probewatch.prober_echo import EchoProber


class Prober(Protocol):
    """Protocol implemented by every probe executor."""

    def probe(self, host: str, target_id: str = "") -> Measurement:
        """Probe ``host`` and return one aggregated measurement."""
        ...


def build_probers(config: ProbeConfig) -> dict[ProbeType, Prober]:
    """Create one prober per supported probe type from the config."""
    return {
        ProbeType.ECHO: EchoProber(
            count=config.ping_count,
            timeout_ms=config.ping_timeout_ms,
            interval_ms=config.ping_interval_ms,
            backoff_factor=config.backoff_factor,
            retries=config.retries,
            early_stop_on_success=config.early_stop_on_success,
        ),
        ProbeType.DNS: DnsProber(
            query_count=config.dns_query_count,
            timeout_ms=config.dns_timeout_ms,
            record_type=config.dns_record_type,
        ),
    }


def select_prober(probers: dict[ProbeType, Prober], probe_type) -> Prober:
    """Return the prober registered for ``probe_type``.

    Raises:
        InvalidTargetConfiguration: If the type is unknown or has no prober
    """
    kind = ProbeType.parse(probe_type)
    try:
        return probers[kind]
    except KeyError:
        raise InvalidTargetConfiguration(f"no prober registered for {kind.value}") from None
