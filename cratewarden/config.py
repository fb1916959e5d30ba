"""Configuration models and TOML loading for CrateWarden."""

import logging
import os
from pathlib import Path
from typing import Literal

import toml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .constants import (
    CONFIG_FILE_NAME,
    CRATES_IO_API_URL,
    DEFAULT_ANALYSIS_ENDPOINT,
    DEFAULT_ANALYSIS_MODEL,
    DEFAULT_APP_DIR,
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BACKOFF_MAX_SECONDS,
    DEFAULT_CACHE_DB_PATH,
    DEFAULT_CACHE_MAX_AGE_DAYS,
    DEFAULT_CONCURRENT_WORKERS,
    DEFAULT_EXCLUDE_PATTERNS,
    DEFAULT_LOW_DOWNLOAD_THRESHOLD,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_CHUNK_CHARS,
    DEFAULT_MAX_FILE_SIZE,
    DEFAULT_MAX_OUTPUT_TOKENS,
    DEFAULT_MAX_QUOTA_WAIT_SECONDS,
    DEFAULT_MAX_REQUESTS_PER_MINUTE,
    DEFAULT_MIN_INTERVAL_SECONDS,
    DEFAULT_RECENT_PUBLICATION_DAYS,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_TEMPERATURE,
    DEFAULT_TYPOSQUAT_RATIO_THRESHOLD,
    REGISTRY_REQUESTS_PER_MINUTE,
)
from .core.exceptions import InvalidConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "CRATEWARDEN_CONFIG"
CREDENTIAL_ENV_VAR = "GEMINI_API_KEY"


class CacheConfig(BaseModel):
    enabled: bool = True
    database_path: Path = Field(
        default=DEFAULT_CACHE_DB_PATH, description="SQLite file holding cached analyses"
    )
    max_age_days: int = Field(default=DEFAULT_CACHE_MAX_AGE_DAYS, ge=1)
    auto_cleanup: bool = Field(
        default=True, description="Evict entries older than max_age_days at start-up"
    )


class RateLimitConfig(BaseModel):
    enabled: bool = True
    min_interval_seconds: float = Field(default=DEFAULT_MIN_INTERVAL_SECONDS, ge=0)
    max_requests_per_minute: int = Field(default=DEFAULT_MAX_REQUESTS_PER_MINUTE, ge=1)


class ScanningConfig(BaseModel):
    max_file_size: int = Field(default=DEFAULT_MAX_FILE_SIZE, ge=1)
    exclude_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS))
    concurrent_workers: int = Field(default=DEFAULT_CONCURRENT_WORKERS, ge=1, le=64)
    max_chunk_chars: int = Field(default=DEFAULT_MAX_CHUNK_CHARS, ge=500)
    remote_analysis: Literal["all", "flagged", "none"] = Field(
        default="all",
        description="Which chunks go to the remote service: every chunk, only "
        "statically flagged chunks, or none",
    )
    timeout_seconds: float | None = Field(
        default=None, gt=0, description="Overall scan deadline; partial results after it"
    )


class AnalysisServiceConfig(BaseModel):
    endpoint: str = DEFAULT_ANALYSIS_ENDPOINT
    model: str = DEFAULT_ANALYSIS_MODEL
    credential: str | None = Field(default=None, description="API key for the service")
    request_timeout_seconds: float = Field(default=DEFAULT_REQUEST_TIMEOUT, gt=0)
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1, le=10)
    backoff_base_seconds: float = Field(default=DEFAULT_BACKOFF_BASE_SECONDS, ge=0)
    backoff_max_seconds: float = Field(default=DEFAULT_BACKOFF_MAX_SECONDS, ge=0)
    on_quota_exceeded: Literal["skip", "wait", "abort"] = "skip"
    max_quota_wait_seconds: float = Field(default=DEFAULT_MAX_QUOTA_WAIT_SECONDS, ge=0)
    temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0, le=2)
    max_output_tokens: int = Field(default=DEFAULT_MAX_OUTPUT_TOKENS, ge=1)


class DependencyConfig(BaseModel):
    enabled: bool = True
    deep_analysis: Literal["none", "suspicious", "untrusted"] = "suspicious"
    typosquat_ratio_threshold: float = Field(
        default=DEFAULT_TYPOSQUAT_RATIO_THRESHOLD, ge=0, le=1
    )
    recent_publication_days: int = Field(default=DEFAULT_RECENT_PUBLICATION_DAYS, ge=0)
    low_download_threshold: int = Field(default=DEFAULT_LOW_DOWNLOAD_THRESHOLD, ge=0)
    registry_url: str = CRATES_IO_API_URL
    registry_requests_per_minute: int = Field(default=REGISTRY_REQUESTS_PER_MINUTE, ge=1)


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"
    file: Path | None = None
    json_format: bool = Field(default=False, alias="json")

    model_config = ConfigDict(populate_by_name=True)


class Settings(BaseModel):
    """Complete CrateWarden configuration."""

    cache: CacheConfig = Field(default_factory=CacheConfig)
    rate_limiting: RateLimitConfig = Field(default_factory=RateLimitConfig)
    scanning: ScanningConfig = Field(default_factory=ScanningConfig)
    analysis_service: AnalysisServiceConfig = Field(default_factory=AnalysisServiceConfig)
    dependencies: DependencyConfig = Field(default_factory=DependencyConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def remote_enabled(self) -> bool:
        return bool(self.analysis_service.credential)


def candidate_paths(explicit: Path | str | None = None) -> list[Path]:
    """Config file locations in lookup order."""
    if explicit:
        return [Path(explicit)]
    paths = []
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        paths.append(Path(env_path))
    paths.append(Path.cwd() / CONFIG_FILE_NAME)
    paths.append(DEFAULT_APP_DIR / CONFIG_FILE_NAME)
    return paths


def load_settings(path: Path | str | None = None) -> Settings:
    """Load settings from the first existing config file, or defaults.

    An explicitly given path must exist. The ``GEMINI_API_KEY`` environment
    variable fills in the credential when the file leaves it empty.

    Raises:
        InvalidConfigError: The file is unreadable, malformed, or has
            invalid values.
    """
    data: dict = {}
    source: Path | None = None

    for candidate in candidate_paths(path):
        if candidate.is_file():
            source = candidate
            break
        if path:
            raise InvalidConfigError(f"Config file not found: {candidate}")

    if source is not None:
        try:
            data = toml.load(source)
        except toml.TomlDecodeError as e:
            raise InvalidConfigError(f"Malformed config file {source}: {e}") from e
        except OSError as e:
            raise InvalidConfigError(f"Cannot read config file {source}: {e}") from e
        logger.debug(f"Loaded configuration from {source}")

    try:
        settings = Settings.model_validate(data)
    except ValidationError as e:
        where = f" in {source}" if source else ""
        raise InvalidConfigError(f"Invalid configuration{where}: {e}") from e

    if not settings.analysis_service.credential:
        credential = os.environ.get(CREDENTIAL_ENV_VAR)
        if credential:
            settings.analysis_service.credential = credential

    return settings


def write_default_config(path: Path | str, overwrite: bool = False) -> Path:
    """Write a config file populated with the defaults.

    Raises:
        InvalidConfigError: The file exists and ``overwrite`` is False, or
            it cannot be written.
    """
    path = Path(path)
    if path.exists() and not overwrite:
        raise InvalidConfigError(f"Config file already exists: {path}")

    data = Settings().model_dump(mode="json", by_alias=True, exclude_none=True)
    data["analysis_service"]["credential"] = ""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(toml.dumps(data), encoding="utf-8")
    except OSError as e:
        raise InvalidConfigError(f"Cannot write config file {path}: {e}") from e

    logger.info(f"Wrote default configuration to {path}")
    return path
