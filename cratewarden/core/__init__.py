"""Core utilities for caching, rate limiting and error handling."""

from .cache import ScanCache, content_hash
from .exceptions import (
    AnalysisCancelledError,
    AnalysisError,
    CacheError,
    CacheUnavailableError,
    ClientError,
    ConfigurationError,
    CrateWardenError,
    ExportError,
    InvalidConfigError,
    LockfileError,
    MissingConfigError,
    ParseFailure,
    QuotaExceededError,
    RegistryError,
    ScannerError,
    ScanTargetError,
    TransportError,
)
from .rate_limiter import Clock, MonotonicClock, RateLimiter, VirtualClock

__all__ = [
    # Cache
    "ScanCache",
    "content_hash",
    # Rate limiting
    "Clock",
    "MonotonicClock",
    "RateLimiter",
    "VirtualClock",
    # Exceptions
    "CrateWardenError",
    "ScannerError",
    "ParseFailure",
    "ScanTargetError",
    "LockfileError",
    "ClientError",
    "AnalysisError",
    "TransportError",
    "AnalysisCancelledError",
    "QuotaExceededError",
    "RegistryError",
    "CacheError",
    "CacheUnavailableError",
    "ExportError",
    "ConfigurationError",
    "InvalidConfigError",
    "MissingConfigError",
]
