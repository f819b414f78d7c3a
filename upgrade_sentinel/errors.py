"""Exception hierarchy for Upgrade Sentinel."""


class SentinelError(Exception):
    """Base class for all Upgrade Sentinel errors."""


class ConfigError(SentinelError):
    """Bad arguments, missing binaries or unreachable endpoints at startup."""


class TransientNetworkError(SentinelError):
    """A chain or notification endpoint failed; retried on the next tick."""


class Unreachable(TransientNetworkError):
    """Endpoint did not answer in time or returned an unusable payload."""


class BlockNotFound(TransientNetworkError):
    """Requested height is outside the node's retained history."""


class GovernanceFailure(SentinelError):
    """The upgrade proposal was rejected or failed."""


class ServiceControlError(SentinelError):
    """A stop, copy or start step failed during the upgrade sequence."""

    def __init__(self, message: str, safe_to_retry: bool = True):
        super().__init__(message)
        self.safe_to_retry = safe_to_retry

    @property
    def manual_intervention(self) -> bool:
        return not self.safe_to_retry


class MonitorInterrupted(BaseException):
    """Process received a shutdown signal.

    Derives from BaseException, like KeyboardInterrupt: the `except Exception`
    handlers around notification delivery and health probes do not catch it.
    """
