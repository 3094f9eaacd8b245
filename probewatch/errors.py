"""Exception types raised by probewatch."""


class ProbewatchError(Exception):
    """Base class for all probewatch errors."""


class TransientProbeFailure(ProbewatchError):
    """A single packet or query got no answer.

    Always absorbed into loss statistics by the probers.
    """


class ProbeExecutionError(ProbewatchError):
    """A whole probe invocation failed, e.g. the ping binary is missing."""


class InvalidTargetConfiguration(ProbewatchError, ValueError):
    """A target cannot be probed as declared (unknown probe type)."""


class StoreWriteFailure(ProbewatchError):
    """The measurement store rejected an insert."""
