"""Unit tests for EchoProber.

subprocess.run is replaced with fakes so no packets are sent.
"""

import subprocess

import pytest

from probewatch import prober_echo
from probewatch.errors import ProbeExecutionError, TransientProbeFailure
from probewatch.prober_echo import EchoProber


def completed(cmd, returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def no_fping():
    """Factory for probers that skip fping detection."""

    def make(**kwargs):
        kwargs.setdefault("interval_ms", 0)
        prober = EchoProber(**kwargs)
        prober._fping_available = False
        return prober

    return make


class TestEchoProberBuildCommand:
    """Test platform-specific command building."""

    def test_build_command_windows(self):
        prober = EchoProber()
        prober.system = "Windows"

        cmd = prober._build_ping_command("example.com", 1500)
        assert cmd == ["ping", "-n", "1", "-w", "1500", "example.com"]

    def test_build_command_linux(self):
        prober = EchoProber()
        prober.system = "Linux"

        assert prober._build_ping_command("example.com", 1000) == [
            "ping", "-c", "1", "-W", "1", "example.com",
        ]

    def test_build_command_linux_rounds_up(self):
        """Test a 2250ms escalated timeout becomes -W 3."""
        prober = EchoProber()
        prober.system = "Linux"

        cmd = prober._build_ping_command("example.com", 2250)
        assert cmd == ["ping", "-c", "1", "-W", "3", "example.com"]

    def test_build_command_macos(self):
        prober = EchoProber()
        prober.system = "Darwin"

        assert prober._build_ping_command("example.com", 1000) == ["ping", "-c", "1", "example.com"]

    def test_build_fping_command(self):
        prober = EchoProber(count=20, timeout_ms=1000, interval_ms=10, backoff_factor=1.5, retries=3)

        assert prober._build_fping_command("8.8.8.8") == [
            "fping", "-c", "20", "-t", "1000", "-i", "10", "-B", "1.5", "-r", "3", "8.8.8.8",
        ]


class TestEchoProberInitialization:
    """Test constructor validation."""

    def test_defaults(self):
        prober = EchoProber()

        assert prober.count == 20
        assert prober.timeout_ms == 1000
        assert prober.retries == 3
        assert prober.early_stop_on_success is False

    @pytest.mark.parametrize(
        "kwargs, message",
        [
            ({"count": 0}, "count must be positive"),
            ({"timeout_ms": 0}, "timeout_ms must be positive"),
            ({"interval_ms": -1}, "interval_ms must not be negative"),
            ({"retries": -1}, "retries must not be negative"),
            ({"backoff_factor": 0.5}, "backoff_factor must be at least 1.0"),
        ],
    )
    def test_invalid_arguments(self, kwargs, message):
        with pytest.raises(ValueError, match=message):
            EchoProber(**kwargs)


class TestEchoProberAttempts:
    """Test the retry loop with a fake packet sender."""

    def test_empty_host(self, no_fping, monkeypatch):
        prober = no_fping()
        monkeypatch.setattr(prober, "_send_packet", lambda host, timeout_ms: pytest.fail("sent"))

        measurement = prober.probe("   ", target_id="t1")

        assert measurement.success is False
        assert measurement.error_message == "empty host"
        assert measurement.target_id == "t1"

    def test_exhaustive_sends_every_packet(self, no_fping, monkeypatch):
        prober = no_fping(count=20, retries=3)
        calls = []

        def send(host, timeout_ms):
            calls.append(timeout_ms)
            return 10.0

        monkeypatch.setattr(prober, "_send_packet", send)
        measurement = prober.probe("example.com", target_id="t1")

        assert len(calls) == 20
        assert measurement.success is True
        assert measurement.latency == 10.0
        assert measurement.packet_loss_pct == 0.0
        assert measurement.jitter == 0.0

    def test_early_stop_after_first_successful_attempt(self, no_fping, monkeypatch):
        prober = no_fping(count=20, retries=3, early_stop_on_success=True)
        calls = []

        def send(host, timeout_ms):
            calls.append(timeout_ms)
            return 10.0

        monkeypatch.setattr(prober, "_send_packet", send)
        measurement = prober.probe("example.com")

        assert len(calls) == 5
        assert measurement.success is True
        assert measurement.packet_loss_pct == 0.0

    def test_early_stop_continues_while_nothing_answers(self, no_fping, monkeypatch):
        """Test the loop moves on to the next attempt when one gets no reply."""
        prober = no_fping(count=20, retries=3, early_stop_on_success=True)
        calls = []

        def send(host, timeout_ms):
            calls.append(timeout_ms)
            if len(calls) <= 5:
                raise TransientProbeFailure("timeout")
            return 20.0

        monkeypatch.setattr(prober, "_send_packet", send)
        measurement = prober.probe("example.com")

        assert len(calls) == 10
        assert measurement.success is True
        assert measurement.packet_loss_pct == 50.0

    def test_timeouts_escalate_per_attempt(self, no_fping, monkeypatch):
        prober = no_fping(count=8, retries=3, timeout_ms=1000, backoff_factor=2.0)
        calls = []

        def send(host, timeout_ms):
            calls.append(timeout_ms)
            raise TransientProbeFailure("timeout")

        monkeypatch.setattr(prober, "_send_packet", send)
        prober.probe("example.com")

        assert calls == [1000, 1000, 2000, 2000, 4000, 4000, 8000, 8000]

    def test_answered_attempt_keeps_timeout(self, no_fping, monkeypatch):
        prober = no_fping(count=6, retries=2, timeout_ms=1000, backoff_factor=2.0)
        calls = []

        def send(host, timeout_ms):
            calls.append(timeout_ms)
            # The whole second attempt goes unanswered
            if len(calls) in (3, 4):
                raise TransientProbeFailure("timeout")
            return 5.0

        monkeypatch.setattr(prober, "_send_packet", send)
        measurement = prober.probe("example.com")

        assert calls == [1000, 1000, 1000, 1000, 2000, 2000]
        assert measurement.packet_loss_pct == 33.0

    def test_all_packets_lost(self, no_fping, monkeypatch):
        prober = no_fping(count=4, retries=1)

        def send(host, timeout_ms):
            raise TransientProbeFailure("timeout")

        monkeypatch.setattr(prober, "_send_packet", send)
        measurement = prober.probe("192.0.2.1", target_id="t1")

        assert measurement.success is False
        assert measurement.packet_loss_pct == 100.0
        assert measurement.latency is None
        assert measurement.error_message == "no reply"

    def test_partial_loss_and_jitter(self, no_fping, monkeypatch):
        prober = no_fping(count=4, retries=0)
        replies = iter([10.0, None, 12.0, 14.0])

        def send(host, timeout_ms):
            value = next(replies)
            if value is None:
                raise TransientProbeFailure("timeout")
            return value

        monkeypatch.setattr(prober, "_send_packet", send)
        measurement = prober.probe("example.com")

        assert measurement.packet_loss_pct == 25.0
        assert measurement.latency == pytest.approx(12.0)
        assert measurement.jitter == pytest.approx(4 / 3)


class TestEchoProberSendPacket:
    """Test single-packet subprocess handling."""

    def test_reply_parsed(self, monkeypatch):
        prober = EchoProber()
        monkeypatch.setattr(
            prober_echo.subprocess,
            "run",
            lambda cmd, **kw: completed(cmd, 0, stdout="64 bytes from x: time=7.5 ms"),
        )

        assert prober._send_packet("example.com", 1000) == 7.5

    def test_nonzero_returncode_is_transient(self, monkeypatch):
        prober = EchoProber()
        monkeypatch.setattr(prober_echo.subprocess, "run", lambda cmd, **kw: completed(cmd, 1))

        with pytest.raises(TransientProbeFailure):
            prober._send_packet("example.com", 1000)

    def test_timeout_is_transient(self, monkeypatch):
        prober = EchoProber()

        def run(cmd, **kwargs):
            raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

        monkeypatch.setattr(prober_echo.subprocess, "run", run)

        with pytest.raises(TransientProbeFailure, match="timeout"):
            prober._send_packet("example.com", 1000)

    def test_unparseable_reply_is_transient(self, monkeypatch):
        prober = EchoProber()
        monkeypatch.setattr(
            prober_echo.subprocess,
            "run",
            lambda cmd, **kw: completed(cmd, 0, stdout="Antwort von 8.8.8.8: Zeit=15ms"),
        )

        with pytest.raises(TransientProbeFailure):
            prober._send_packet("8.8.8.8", 1000)

    def test_missing_ping_binary_propagates(self, no_fping, monkeypatch):
        prober = no_fping()

        def run(cmd, **kwargs):
            raise FileNotFoundError("ping")

        monkeypatch.setattr(prober_echo.subprocess, "run", run)

        with pytest.raises(ProbeExecutionError):
            prober.probe("example.com")


class TestEchoProberFping:
    """Test fping detection and the fping fast path."""

    FPING_OUTPUT = (
        "8.8.8.8 : [0], 64 bytes, 12.1 ms (12.1 avg, 0% loss)\n"
        "8.8.8.8 : [1], 64 bytes, 14.1 ms (13.1 avg, 0% loss)\n"
        "8.8.8.8 : [3], 64 bytes, 10.0 ms (12.0 avg, 25% loss)\n"
    )
    FPING_SUMMARY = "8.8.8.8 : xmt/rcv/%loss = 4/3/25%, min/avg/max = 10.0/12.0/14.1\n"

    def test_detection_runs_once(self, monkeypatch):
        prober = EchoProber()
        calls = []

        def run(cmd, **kwargs):
            calls.append(cmd)
            raise FileNotFoundError("fping")

        monkeypatch.setattr(prober_echo.subprocess, "run", run)

        assert prober.fping_available() is False
        assert prober.fping_available() is False
        assert calls == [["fping", "--version"]]

    def test_detection_success(self, monkeypatch):
        prober = EchoProber()
        monkeypatch.setattr(
            prober_echo.subprocess, "run", lambda cmd, **kw: completed(cmd, 0, stdout="fping: 5.1")
        )

        assert prober.fping_available() is True

    def test_fping_measurement(self, monkeypatch):
        prober = EchoProber(count=4, retries=0)
        prober._fping_available = True
        monkeypatch.setattr(
            prober_echo.subprocess,
            "run",
            lambda cmd, **kw: completed(
                cmd, 1, stdout=self.FPING_OUTPUT, stderr=self.FPING_SUMMARY
            ),
        )

        measurement = prober.probe("8.8.8.8", target_id="t1")

        assert measurement.success is True
        assert measurement.packet_loss_pct == 25.0
        assert measurement.latency == pytest.approx((12.1 + 14.1 + 10.0) / 3)
        assert measurement.jitter is not None

    def test_fping_failure_falls_back_to_ping(self, monkeypatch):
        prober = EchoProber(count=2, retries=0, interval_ms=0)
        prober._fping_available = True
        monkeypatch.setattr(
            prober_echo.subprocess,
            "run",
            lambda cmd, **kw: completed(cmd, 2, stderr="fping: can't create socket"),
        )
        monkeypatch.setattr(prober, "_send_packet", lambda host, timeout_ms: 3.0)

        measurement = prober.probe("8.8.8.8")

        assert measurement.success is True
        assert measurement.latency == 3.0

    def test_early_stop_runs_one_fping_per_attempt(self, monkeypatch):
        """Test an answered first attempt stops fping after its 5 packets."""
        prober = EchoProber(count=20, retries=3, early_stop_on_success=True)
        prober._fping_available = True
        commands = []

        def run(cmd, **kwargs):
            commands.append(cmd)
            replies = "".join(
                f"8.8.8.8 : [{i}], 64 bytes, 10.0 ms (10.0 avg, 0% loss)\n" for i in range(5)
            )
            summary = "8.8.8.8 : xmt/rcv/%loss = 5/5/0%, min/avg/max = 10.0/10.0/10.0\n"
            return completed(cmd, 0, stdout=replies, stderr=summary)

        monkeypatch.setattr(prober_echo.subprocess, "run", run)
        measurement = prober.probe("8.8.8.8")

        assert commands == [
            ["fping", "-c", "5", "-t", "1000", "-i", "10", "-B", "1.5", "-r", "0", "8.8.8.8"],
        ]
        assert measurement.success is True
        assert measurement.packet_loss_pct == 0.0
        assert measurement.latency == 10.0

    def test_early_stop_fping_escalates_after_silent_attempt(self, monkeypatch):
        prober = EchoProber(count=20, retries=3, early_stop_on_success=True)
        prober._fping_available = True
        commands = []

        def run(cmd, **kwargs):
            commands.append(cmd)
            if len(commands) == 1:
                return completed(cmd, 1, stderr="8.8.8.8 : xmt/rcv/%loss = 5/0/100%\n")
            return completed(
                cmd,
                0,
                stdout="8.8.8.8 : [0], 64 bytes, 20.0 ms (20.0 avg, 0% loss)\n",
                stderr="8.8.8.8 : xmt/rcv/%loss = 5/1/80%, min/avg/max = 20.0/20.0/20.0\n",
            )

        monkeypatch.setattr(prober_echo.subprocess, "run", run)
        measurement = prober.probe("8.8.8.8")

        assert [cmd[cmd.index("-t") + 1] for cmd in commands] == ["1000", "1500"]
        assert measurement.success is True
        # 10 sent, 1 received
        assert measurement.packet_loss_pct == 90.0
        assert measurement.latency == 20.0

    def test_exhaustive_fping_single_invocation(self, monkeypatch):
        prober = EchoProber(count=4, retries=0)
        prober._fping_available = True
        commands = []

        def run(cmd, **kwargs):
            commands.append(cmd)
            return completed(cmd, 1, stdout=self.FPING_OUTPUT, stderr=self.FPING_SUMMARY)

        monkeypatch.setattr(prober_echo.subprocess, "run", run)
        prober.probe("8.8.8.8")

        assert len(commands) == 1
        assert commands[0][1:3] == ["-c", "4"]
