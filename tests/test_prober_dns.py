"""Unit tests for DnsProber with a fake resolver."""

import threading
from datetime import datetime, timezone

import dns.exception
import dns.resolver
import pytest

from probewatch.prober_dns import DnsProber, build_dns_measurement, is_valid_hostname


class FakeResolver:
    """Resolver stand-in returning or raising from a scripted list."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls = []

    def resolve(self, host, rdtype):
        self.calls.append((host, rdtype))
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome()
        return outcome


@pytest.fixture
def make_prober():
    probers = []

    def make(outcomes=None, **kwargs):
        kwargs.setdefault("settle_delay_ms", 0)
        resolver = FakeResolver(outcomes)
        prober = DnsProber(resolver=resolver, **kwargs)
        probers.append(prober)
        return prober, resolver

    yield make
    for prober in probers:
        prober.close()


class TestHostnameValidation:
    """Test the domain name check."""

    @pytest.mark.parametrize("host", ["example.com", "a.b.example.org", "my-host.co.uk"])
    def test_valid(self, host):
        assert is_valid_hostname(host)

    @pytest.mark.parametrize("host", ["", "localhost", "http://example.com", "bad host.com"])
    def test_invalid(self, host):
        assert not is_valid_hostname(host)


class TestBuildDnsMeasurement:
    """Test aggregation of query timings."""

    TS = datetime(2024, 5, 1, tzinfo=timezone.utc)

    def test_all_failed(self):
        m = build_dns_measurement("t1", self.TS, [], "NXDOMAIN")

        assert m.success is False
        assert m.packet_loss_pct == 100.0
        assert m.error_message == "NXDOMAIN"

    def test_default_error_message(self):
        assert build_dns_measurement("t1", self.TS, []).error_message == "all queries failed"

    def test_success_has_no_loss(self):
        m = build_dns_measurement("t1", self.TS, [10.0, 12.0, 14.0])

        assert m.success is True
        assert m.packet_loss_pct == 0.0
        assert m.latency == pytest.approx(12.0)
        assert m.jitter == pytest.approx(4 / 3)

    def test_single_success_has_no_jitter(self):
        m = build_dns_measurement("t1", self.TS, [9.0])
        assert m.jitter is None


class TestDnsProber:
    """Test the query loop."""

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            DnsProber(query_count=0, resolver=FakeResolver())
        with pytest.raises(ValueError):
            DnsProber(timeout_ms=0, resolver=FakeResolver())
        with pytest.raises(ValueError, match="unsupported record type"):
            DnsProber(record_type="SRVX", resolver=FakeResolver())

    def test_all_queries_succeed(self, make_prober):
        prober, resolver = make_prober(query_count=5, record_type="aaaa")

        measurement = prober.probe("example.com", target_id="t1")

        assert measurement.success is True
        assert measurement.packet_loss_pct == 0.0
        assert measurement.latency >= 0
        assert resolver.calls == [("example.com", "AAAA")] * 5

    def test_failures_do_not_abort_remaining_queries(self, make_prober):
        prober, resolver = make_prober(
            [dns.resolver.NXDOMAIN(), dns.exception.Timeout(), "ok", "ok", "ok"], query_count=5
        )

        measurement = prober.probe("example.com")

        assert len(resolver.calls) == 5
        assert measurement.success is True
        assert measurement.packet_loss_pct == 0.0

    def test_all_queries_fail(self, make_prober):
        prober, resolver = make_prober([dns.resolver.NXDOMAIN()] * 3, query_count=3)

        measurement = prober.probe("nonexistent.example", target_id="t1")

        assert measurement.success is False
        assert measurement.packet_loss_pct == 100.0
        assert measurement.error_message == "NXDOMAIN"

    def test_os_error_counted_as_failure(self, make_prober):
        prober, _ = make_prober([OSError("network unreachable")], query_count=1)

        measurement = prober.probe("example.com")

        assert measurement.success is False
        assert "network unreachable" in measurement.error_message

    def test_slow_query_abandoned_at_timeout(self, make_prober):
        """Test a lookup outliving timeout_ms counts as failed."""
        release = threading.Event()
        prober, _ = make_prober(
            [lambda: release.wait(5), "ok"], query_count=2, timeout_ms=50
        )

        try:
            measurement = prober.probe("example.com")
        finally:
            release.set()

        assert measurement.success is True
        assert measurement.latency < 50

    def test_timeout_message(self, make_prober):
        release = threading.Event()
        prober, _ = make_prober([lambda: release.wait(5)], query_count=1, timeout_ms=20)

        try:
            measurement = prober.probe("example.com")
        finally:
            release.set()

        assert measurement.success is False
        assert measurement.error_message == "DNS query timed out"

    def test_empty_and_invalid_host(self, make_prober):
        prober, resolver = make_prober()

        assert prober.probe("").error_message == "empty host"
        assert prober.probe("not a host").error_message == "invalid hostname"
        assert resolver.calls == []

    def test_trailing_dot_accepted(self, make_prober):
        prober, resolver = make_prober(query_count=1)

        assert prober.probe("example.com.").success is True
        assert resolver.calls == [("example.com.", "A")]
