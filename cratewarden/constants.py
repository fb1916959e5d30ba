"""Constants and default configuration values for CrateWarden.

This module centralizes magic numbers and default settings that are used
across the codebase for easier maintenance.
"""

import os
from pathlib import Path

# =============================================================================
# Paths
# =============================================================================

APP_DIR_NAME = ".cratewarden"
CONFIG_FILE_NAME = "cratewarden.toml"
CACHE_DB_NAME = "scan_cache.db"

DEFAULT_APP_DIR = Path(os.environ.get("CRATEWARDEN_HOME", Path.home() / APP_DIR_NAME))
DEFAULT_CACHE_DB_PATH = DEFAULT_APP_DIR / CACHE_DB_NAME


# =============================================================================
# Scan Cache
# =============================================================================

# Keep cached analyses for 3 months
DEFAULT_CACHE_MAX_AGE_DAYS = 90

# Window used by cache statistics for "recent" entries
CACHE_STATS_WINDOW_DAYS = 7

# Number of identities listed as most frequently hit
CACHE_STATS_TOP_IDENTITIES = 5


# =============================================================================
# Rate Limiting
# =============================================================================

DEFAULT_MIN_INTERVAL_SECONDS = 2.0
DEFAULT_MAX_REQUESTS_PER_MINUTE = 20
RATE_LIMIT_WINDOW_SECONDS = 60.0

# crates.io asks crawlers for at most one request per second
REGISTRY_REQUESTS_PER_MINUTE = 60


# =============================================================================
# Remote Analysis Service
# =============================================================================

DEFAULT_ANALYSIS_ENDPOINT = "https://generativelanguage.googleapis.com"
DEFAULT_ANALYSIS_MODEL = "gemini-2.5-flash"

DEFAULT_REQUEST_TIMEOUT = float(os.environ.get("REQUEST_TIMEOUT", 45))
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_SECONDS = 2.0
DEFAULT_BACKOFF_MAX_SECONDS = 60.0
DEFAULT_MAX_QUOTA_WAIT_SECONDS = 120.0

DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_OUTPUT_TOKENS = 4096


# =============================================================================
# Scanning
# =============================================================================

# Files above this size are treated as generated code and skipped (500KB)
DEFAULT_MAX_FILE_SIZE = 500_000

# Chunk budget in characters, sized for the analysis model's context
DEFAULT_MAX_CHUNK_CHARS = 12_000

DEFAULT_CONCURRENT_WORKERS = 4

DEFAULT_EXCLUDE_PATTERNS = [
    "target/*",
    "*/target/*",
    ".git/*",
    "*/.git/*",
    "node_modules/*",
    "*/node_modules/*",
    "*bindgen.rs",
]


# =============================================================================
# Dependency Analysis
# =============================================================================

CRATES_IO_API_URL = "https://crates.io/api/v1"

# Normalized edit distance (distance / longer name length) at or below which
# a name counts as a lookalike of a reference crate
DEFAULT_TYPOSQUAT_RATIO_THRESHOLD = 0.2

DEFAULT_RECENT_PUBLICATION_DAYS = 7
DEFAULT_LOW_DOWNLOAD_THRESHOLD = 1000

USER_AGENT = "cratewarden (https://github.com/cratewarden/cratewarden)"
