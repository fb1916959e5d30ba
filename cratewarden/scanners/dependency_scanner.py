"""
Dependency risk assessment for Rust projects.

Reads ``Cargo.lock``, classifies where each third-party crate comes from,
attaches risk flags (lookalike names, fresh or unpopular releases, flagged
publishers, network and process capabilities) and decides which crates
deserve a remote deep analysis.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Literal

import toml

from ..clients.crates_client import CratesIOClient
from ..constants import (
    DEFAULT_LOW_DOWNLOAD_THRESHOLD,
    DEFAULT_MAX_CHUNK_CHARS,
    DEFAULT_RECENT_PUBLICATION_DAYS,
    DEFAULT_TYPOSQUAT_RATIO_THRESHOLD,
)
from ..core.cache import content_hash
from ..core.exceptions import LockfileError
from ..models import (
    AnalysisResult,
    AnalysisStatus,
    Dependency,
    DependencySource,
    Finding,
    FindingOrigin,
    Flag,
    FlagKind,
    Location,
    Severity,
)
from ..security.analysis_gateway import AnalysisSubject, build_dependency_prompt
from ..security.risk_scorer import apply_score, flags_from_findings
from ..security.typosquatting import ReferenceTables, TyposquatDetector, normalize_name
from .static_scanner import StaticPatternScanner

logger = logging.getLogger(__name__)

DeepAnalysisMode = Literal["none", "suspicious", "untrusted"]

# Files read, in order, to build the source excerpt for deep analysis
_EXCERPT_FILES = ("build.rs", "src/lib.rs", "src/main.rs")

# Upper bound on bytes read per file during the local capability scan
_MAX_SOURCE_FILE_BYTES = 200_000


def classify_source(source: str | None) -> tuple[DependencySource, str | None]:
    """Map a Cargo.lock ``source`` string to a source kind and URL."""
    if not source:
        return DependencySource.PATH, None
    kind, _, url = source.partition("+")
    if kind in ("registry", "sparse"):
        return DependencySource.REGISTRY, url or source
    if kind == "git":
        return DependencySource.GIT, url
    if kind == "path":
        return DependencySource.PATH, url
    return DependencySource.UNKNOWN, source


def parse_lockfile(path: Path) -> list[Dependency]:
    """Third-party packages listed in a ``Cargo.lock``.

    Workspace members have no ``source`` and are skipped.

    Raises:
        LockfileError: The file cannot be read or is not valid TOML.
    """
    try:
        data = toml.load(path)
    except FileNotFoundError as e:
        raise LockfileError(f"Cargo.lock not found: {path}") from e
    except (toml.TomlDecodeError, OSError) as e:
        raise LockfileError(f"Failed to read {path}: {e}") from e

    dependencies = []
    for package in data.get("package", []):
        name = package.get("name")
        version = package.get("version")
        source = package.get("source")
        if not name or not version or not source:
            continue

        kind, url = classify_source(source)
        dependencies.append(
            Dependency(
                name=name,
                version=version,
                content_hash=package.get("checksum"),
                source=kind,
                source_url=url,
                # Entries look like "name", "name version" or "name version (source)"
                dependencies=[entry.split()[0] for entry in package.get("dependencies", [])],
            )
        )

    logger.info(f"Found {len(dependencies)} third-party packages in {path}")
    return dependencies


def cargo_home() -> Path:
    return Path(os.environ.get("CARGO_HOME", Path.home() / ".cargo"))


def locate_registry_source(name: str, version: str, home: Path | None = None) -> Path | None:
    """Unpacked crate source in the local cargo registry cache, if present."""
    src_root = (home or cargo_home()) / "registry" / "src"
    if not src_root.is_dir():
        return None
    for index_dir in sorted(src_root.iterdir()):
        candidate = index_dir / f"{name}-{version}"
        if candidate.is_dir():
            return candidate
    return None


def read_source_excerpt(source_dir: Path, max_chars: int = DEFAULT_MAX_CHUNK_CHARS) -> str | None:
    """Entry points of a crate, concatenated up to ``max_chars``."""
    parts: list[str] = []
    remaining = max_chars
    for relative in _EXCERPT_FILES:
        file_path = source_dir / relative
        if remaining <= 0 or not file_path.is_file():
            continue
        try:
            text = file_path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.debug(f"Cannot read {file_path}: {e}")
            continue
        part = f"// {relative}\n{text}"[:remaining]
        parts.append(part)
        remaining -= len(part)
    return "\n\n".join(parts) if parts else None


class DependencyScanner:
    """Flags, scores and selects dependencies for deep analysis."""

    def __init__(
        self,
        tables: ReferenceTables,
        static_scanner: StaticPatternScanner,
        crates_client: CratesIOClient | None = None,
        typosquat_ratio_threshold: float = DEFAULT_TYPOSQUAT_RATIO_THRESHOLD,
        deep_analysis: DeepAnalysisMode = "suspicious",
        recent_publication_days: int = DEFAULT_RECENT_PUBLICATION_DAYS,
        low_download_threshold: int = DEFAULT_LOW_DOWNLOAD_THRESHOLD,
        cargo_home_dir: Path | None = None,
        max_excerpt_chars: int = DEFAULT_MAX_CHUNK_CHARS,
    ):
        self.tables = tables
        self.static_scanner = static_scanner
        self.crates_client = crates_client
        self.detector = TyposquatDetector(tables, typosquat_ratio_threshold)
        self.deep_analysis = deep_analysis
        self.recent_publication_days = recent_publication_days
        self.low_download_threshold = low_download_threshold
        self.cargo_home_dir = cargo_home_dir
        self.max_excerpt_chars = max_excerpt_chars

        self._static_hits: set[str] = set()
        self._excerpts: dict[str, str | None] = {}

    # ------------------------------------------------------------------
    # Flags
    # ------------------------------------------------------------------

    def name_flags(self, dependency: Dependency) -> list[Flag]:
        matches = self.detector.check(dependency.name)
        if not matches:
            return []
        best = matches[0]
        return [
            Flag(
                kind=FlagKind.TYPOSQUATTING,
                description=(
                    f"name resembles popular crate '{best.popular_name}' "
                    f"(edit distance {best.distance}, normalized {best.ratio:.2f})"
                ),
            )
        ]

    def metadata_flags(self, dependency: Dependency, now: datetime | None = None) -> list[Flag]:
        metadata = dependency.metadata
        if metadata is None:
            return []
        now = now or datetime.now(timezone.utc)
        flags = []

        if metadata.publish_date is not None:
            published = metadata.publish_date
            if published.tzinfo is None:
                published = published.replace(tzinfo=timezone.utc)
            if now - published <= timedelta(days=self.recent_publication_days):
                flags.append(
                    Flag(
                        kind=FlagKind.RECENT_PUBLICATION,
                        description=f"published {published.date().isoformat()}",
                    )
                )

        if metadata.download_count is None:
            flags.append(Flag(kind=FlagKind.LOW_DOWNLOADS, description="download count unknown"))
        elif metadata.download_count < self.low_download_threshold:
            flags.append(
                Flag(
                    kind=FlagKind.LOW_DOWNLOADS,
                    description=f"only {metadata.download_count} downloads",
                )
            )

        flagged_authors = [
            author for author in metadata.authors
            if author.lower() in self.tables.suspicious_authors
        ]
        if flagged_authors:
            flags.append(
                Flag(
                    kind=FlagKind.SUSPICIOUS_AUTHOR,
                    description=f"published by {', '.join(flagged_authors)}",
                )
            )
        return flags

    def capability_flags(self, dependency: Dependency) -> list[Flag]:
        """Capabilities implied by what the crate depends on or contains."""
        deps = {normalize_name(name) for name in dependency.dependencies}
        network = sorted(deps & self.tables.network_crates)
        process = sorted(deps & self.tables.process_crates)

        categories = self._local_source_categories(dependency)
        flags = []
        if network or "network" in categories:
            reason = f"depends on {', '.join(network)}" if network else "raw network access in source"
            flags.append(Flag(kind=FlagKind.NETWORK_CAPABILITY, description=reason))
        if process or "process_execution" in categories:
            reason = f"depends on {', '.join(process)}" if process else "spawns processes in source"
            flags.append(Flag(kind=FlagKind.PROCESS_EXECUTION, description=reason))
        return flags

    def _local_source_categories(self, dependency: Dependency) -> set[str]:
        if self.tables.is_trusted(dependency.name):
            return set()
        source_dir = locate_registry_source(
            dependency.name, dependency.version, self.cargo_home_dir
        )
        if source_dir is None:
            return set()

        categories: set[str] = set()
        for file_path in sorted(source_dir.rglob("*.rs")):
            try:
                if file_path.stat().st_size > _MAX_SOURCE_FILE_BYTES:
                    continue
                text = file_path.read_text(encoding="utf-8", errors="replace")
            except OSError:
                continue
            categories |= self.static_scanner.categories_hit(text)
        if categories:
            self._static_hits.add(dependency.key)
            logger.debug(f"{dependency.key}: static hits in local source: {sorted(categories)}")
        return categories

    # ------------------------------------------------------------------
    # Assessment
    # ------------------------------------------------------------------

    async def assess(self, dependency: Dependency, now: datetime | None = None) -> Dependency:
        """Attach flags and an initial score. Never raises for registry errors."""
        if (
            self.crates_client is not None
            and dependency.source == DependencySource.REGISTRY
            and not self.tables.is_trusted(dependency.name)
        ):
            dependency.metadata = await self.crates_client.fetch_metadata(
                dependency.name, dependency.version
            )

        dependency.flags = [
            *self.name_flags(dependency),
            *self.metadata_flags(dependency, now),
            *self.capability_flags(dependency),
        ]

        if self.tables.is_known_malicious(dependency.name):
            dependency.findings.append(
                Finding(
                    severity=Severity.CRITICAL,
                    origin=FindingOrigin.STATIC,
                    location=Location(path=dependency.key),
                    description="crate is on the known-malicious list",
                )
            )

        dependency.analysis_status = AnalysisStatus.STATIC_ONLY
        apply_score(dependency)
        if dependency.flags:
            logger.info(
                f"{dependency.key}: risk {dependency.risk_score} ({dependency.risk_level.value})",
                extra={
                    "event": "dependency_flagged",
                    "crate": dependency.name,
                    "version": dependency.version,
                    "risk_level": dependency.risk_level.value,
                },
            )
        return dependency

    def wants_deep_analysis(self, dependency: Dependency) -> bool:
        """Whether this dependency should go to the remote service."""
        if self.deep_analysis == "none" or self.tables.is_trusted(dependency.name):
            return False
        if self.deep_analysis == "untrusted":
            return True
        return bool(
            dependency.flags
            or dependency.key in self._static_hits
            or self.tables.has_suspicious_keyword(dependency.name)
            or self.tables.is_known_malicious(dependency.name)
        )

    def analysis_subject(self, dependency: Dependency) -> tuple[AnalysisSubject, str]:
        """Gateway subject and cache hash for a dependency.

        The lockfile checksum identifies the published content; without one
        the prompt itself is hashed.
        """
        if dependency.key not in self._excerpts:
            source_dir = locate_registry_source(
                dependency.name, dependency.version, self.cargo_home_dir
            )
            self._excerpts[dependency.key] = (
                read_source_excerpt(source_dir, self.max_excerpt_chars) if source_dir else None
            )
        prompt = build_dependency_prompt(dependency, self._excerpts[dependency.key])
        subject = AnalysisSubject(
            identity=dependency.name,
            version=dependency.version,
            prompt=prompt,
            path=dependency.key,
        )
        return subject, dependency.content_hash or content_hash(prompt)

    @staticmethod
    def apply_result(dependency: Dependency, result: AnalysisResult) -> Dependency:
        """Fold a remote analysis into the dependency and rescore it."""
        dependency.analysis = result.analysis
        dependency.findings.extend(result.findings)
        dependency.flags.extend(flags_from_findings(result.findings))
        dependency.analysis_status = (
            AnalysisStatus.CACHED if result.cached else AnalysisStatus.ANALYZED
        )
        return apply_score(dependency)
