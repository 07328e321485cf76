"""Error taxonomy for the acquisition-and-pool engine.

Configuration errors (``NoProxyAvailable``, ``NoTargetAvailable``) idle the
scheduler.  ``AcquisitionError`` subclasses are local to one session and are
converted into failed attempt records at the session boundary.
"""

from __future__ import annotations


class PoolError(Exception):
    """Base class for all pool engine errors."""


class NoProxyAvailable(PoolError):
    """Raised when no proxies are configured at all."""


class NoTargetAvailable(PoolError):
    """Raised when the target source has nothing to visit."""


class AttemptNotFound(PoolError):
    """Raised when an attempt is missing or no longer ``in_progress``."""


class ArtifactNotFound(PoolError):
    """Raised when feedback references an unknown artifact id."""


class AcquisitionError(PoolError):
    """Base class for failures local to one acquisition attempt.

    ``network`` is set when the failure signature points at the proxy or the
    network path rather than at the page itself.
    """

    kind = "acquisition"

    def __init__(self, message: str, *, network: bool = False) -> None:
        super().__init__(message)
        self.network = network


class AcquisitionTimeout(AcquisitionError):
    """The browser capability did not finish within the overall timeout."""

    kind = "timeout"

    def __init__(self, message: str) -> None:
        super().__init__(message, network=True)


class ValidationFailed(AcquisitionError):
    """The collected payload did not look like a real page load."""

    kind = "validation"


class CapabilityError(AcquisitionError):
    """Opaque failure reported by the browser capability."""

    kind = "capability"
