"""Custom exception hierarchy for CrateWarden.

Failures are isolated at the smallest unit (one file, one dependency), so
most of these are caught by the orchestrator and turned into labelled
findings. Only configuration and scan-target errors are fatal, and only
before scanning starts.
"""


class CrateWardenError(Exception):
    """Base exception for all CrateWarden errors.

    All custom exceptions inherit from this class so callers can catch
    every project-specific error with a single except clause.
    """
    pass


# =============================================================================
# Scanner Errors
# =============================================================================

class ScannerError(CrateWardenError):
    """Base exception for scanner-related errors."""
    pass


class ParseFailure(ScannerError):
    """A source file could not be decoded or parsed into a syntax tree."""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


class ScanTargetError(ScannerError):
    """The scan target is missing or unreadable."""
    pass


class LockfileError(ScannerError):
    """Cargo.lock is missing or malformed."""
    pass


# =============================================================================
# Client Errors (remote analysis service, registry)
# =============================================================================

class ClientError(CrateWardenError):
    """Base exception for outbound client errors."""
    pass


class AnalysisError(ClientError):
    """Base exception for failures of the remote analysis service."""
    pass


class TransportError(AnalysisError):
    """The remote call failed (HTTP error, timeout, connection problem).

    ``status`` is ``None`` when no HTTP response was received.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        retry_after: float | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after
        self.response_body = response_body

    @property
    def is_transient(self) -> bool:
        """Whether a retry may succeed (timeouts, overload, 5xx)."""
        if self.status is None:
            return True
        return self.status in (408, 429) or self.status >= 500


class AnalysisCancelledError(AnalysisError):
    """The scan was cancelled before the request was sent.

    Raised after a rate-limiter wait or before a retry, so no new request
    leaves the process once cancellation is requested.
    """
    pass


class QuotaExceededError(AnalysisError):
    """The analysis service quota is exhausted.

    Not retried by the gateway: waiting, skipping or aborting is a policy
    decision left to the caller.
    """

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class RegistryError(ClientError):
    """Error talking to the package registry."""
    pass


# =============================================================================
# Cache Errors
# =============================================================================

class CacheError(CrateWardenError):
    """Base exception for scan cache errors."""
    pass


class CacheUnavailableError(CacheError):
    """The backing store cannot be opened or written."""
    pass


class ExportError(CacheError):
    """Cache export failed."""
    pass


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(CrateWardenError):
    """Base exception for configuration errors."""
    pass


class InvalidConfigError(ConfigurationError):
    """Configuration file is invalid or malformed."""
    pass


class MissingConfigError(ConfigurationError):
    """Required configuration is missing."""
    pass
