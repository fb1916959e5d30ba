"""Pydantic models shared by the scanners, the cache and the report layer.

Findings and flags are immutable once produced. Dependencies and reports are
plain mutable models assembled by the orchestrator for a single scan.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Severity(str, Enum):
    """Severity of a finding, ordered Low < Medium < High < Critical."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: str) -> Severity:
        """Parse a severity label case-insensitively, defaulting to Low."""
        normalized = value.strip().capitalize()
        for member in cls:
            if member.value == normalized:
                return member
        return cls.LOW


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class FindingOrigin(str, Enum):
    STATIC = "Static"
    REMOTE_ANALYSIS = "RemoteAnalysis"


class Location(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    line: int = 0

    def __str__(self) -> str:
        return f"{self.path}:{self.line}" if self.line else self.path


class Finding(BaseModel):
    """A single reported issue.

    Attributes:
        severity: How serious the issue is.
        origin: Which stage produced the finding.
        location: File (or dependency identity) and 1-based line.
        description: Human-readable explanation.
        rule_id: Static pattern identifier, if any.
        code_snippet: Offending source fragment, if known.
    """

    model_config = ConfigDict(frozen=True)

    severity: Severity
    origin: FindingOrigin
    location: Location
    description: str
    rule_id: str | None = None
    code_snippet: str = ""

    def sort_key(self) -> tuple[str, int, int, str]:
        return (
            self.location.path,
            self.location.line,
            -self.severity.rank,
            self.description,
        )


class Chunk(BaseModel):
    """A bounded analysis unit cut from a source file."""

    path: str
    start_line: int
    end_line: int
    start_byte: int
    end_byte: int
    text: str
    kind: str = "items"
    name: str | None = None
    truncated: bool = False
    static_findings: list[Finding] = Field(default_factory=list)

    @property
    def label(self) -> str:
        name = f" {self.name}" if self.name else ""
        return f"{self.path}:{self.start_line}-{self.end_line} ({self.kind}{name})"


@dataclass
class SourceUnit:
    """A parsed source file, owned by one scan pass.

    Holds the tree-sitter tree, so it is a dataclass rather than a
    pydantic model. Discarded once its chunks have been extracted.
    """

    path: str
    raw: bytes
    tree: Any = None
    chunks: list[Chunk] = field(default_factory=list)


class FlagKind(str, Enum):
    TYPOSQUATTING = "Typosquatting"
    RECENT_PUBLICATION = "RecentPublication"
    LOW_DOWNLOADS = "LowDownloads"
    SUSPICIOUS_AUTHOR = "SuspiciousAuthor"
    NETWORK_CAPABILITY = "NetworkCapability"
    PROCESS_EXECUTION = "ProcessExecution"
    REMOTE_HIGH = "RemoteHigh"
    REMOTE_MEDIUM = "RemoteMedium"
    REMOTE_LOW = "RemoteLow"


class Flag(BaseModel):
    """A weighted signal feeding the dependency risk score."""

    model_config = ConfigDict(frozen=True)

    kind: FlagKind
    description: str = ""

    @property
    def weight(self) -> int:
        from .security.risk_scorer import FLAG_WEIGHTS

        return FLAG_WEIGHTS[self.kind]


class RiskLevel(str, Enum):
    CLEAN = "Clean"
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class AnalysisStatus(str, Enum):
    """How a file or dependency was analysed during a scan."""

    ANALYZED = "analyzed"
    CACHED = "cached"
    UNAVAILABLE = "unavailable"
    STATIC_ONLY = "static_only"
    SKIPPED = "skipped"
    PARSE_FAILED = "parse_failed"


class DependencySource(str, Enum):
    REGISTRY = "registry"
    GIT = "git"
    PATH = "path"
    UNKNOWN = "unknown"


class PackageMetadata(BaseModel):
    """Registry metadata for one published version of a crate."""

    publish_date: datetime | None = None
    download_count: int | None = None
    authors: list[str] = Field(default_factory=list)


class Dependency(BaseModel):
    """A resolved third-party dependency and its accumulated risk signals."""

    name: str
    version: str
    content_hash: str | None = None
    source: DependencySource = DependencySource.UNKNOWN
    source_url: str | None = None
    metadata: PackageMetadata | None = None
    dependencies: list[str] = Field(default_factory=list)
    flags: list[Flag] = Field(default_factory=list)
    risk_score: int = 0
    risk_level: RiskLevel = RiskLevel.CLEAN
    analysis_status: AnalysisStatus = AnalysisStatus.SKIPPED
    analysis: str | None = None
    findings: list[Finding] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.name}@{self.version}"

    def has_flag(self, kind: FlagKind) -> bool:
        return any(flag.kind == kind for flag in self.flags)


class CacheEntry(BaseModel):
    """A stored remote analysis, keyed by (identity, version, content hash)."""

    id: int
    package_name: str
    package_version: str
    content_hash: str
    analysis: str
    findings: list[Finding] = Field(default_factory=list)
    llm_model: str
    scan_date: datetime
    hit_count: int = 0


class CacheStats(BaseModel):
    total_entries: int = 0
    entries_in_last_window: int = 0
    window_days: int = 7
    most_frequently_hit_identities: list[tuple[str, int]] = Field(default_factory=list)


class AnalysisResult(BaseModel):
    """Outcome of one gateway call."""

    analysis: str
    findings: list[Finding] = Field(default_factory=list)
    model: str = ""
    cached: bool = False


class FileReport(BaseModel):
    path: str
    chunk_count: int = 0
    analysis_status: AnalysisStatus = AnalysisStatus.STATIC_ONLY
    analyses: list[str] = Field(default_factory=list)
    findings: list[Finding] = Field(default_factory=list)


class ScanSummary(BaseModel):
    files_scanned: int = 0
    chunks_analyzed: int = 0
    dependencies_scanned: int = 0
    cache_hits: int = 0
    remote_calls: int = 0
    unavailable_analyses: int = 0
    severity_counts: dict[str, int] = Field(default_factory=dict)
    dependency_risk_counts: dict[str, int] = Field(default_factory=dict)
    cancelled: bool = False
    duration_seconds: float = 0.0


class ScanResult(BaseModel):
    """Order-independent result set handed to the report renderer."""

    target: str
    crate_name: str
    started_at: datetime
    files: list[FileReport] = Field(default_factory=list)
    dependencies: list[Dependency] = Field(default_factory=list)
    summary: ScanSummary = Field(default_factory=ScanSummary)
