"""
Static pattern pre-filter for Rust source.

Patterns are loaded lazily from a TOML table (``data/static_patterns.toml`` by
default) and matched line by line against chunk text. Matching never touches
the network and never raises for any input text: a pattern that fails to
compile is logged and skipped at load time.
"""

import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

import toml

from ..models import Chunk, Finding, FindingOrigin, Location, Severity

logger = logging.getLogger(__name__)

DEFAULT_PATTERNS_FILE = Path(__file__).parent.parent / "data" / "static_patterns.toml"


@dataclass(frozen=True)
class StaticPattern:
    id: str
    category: str
    severity: Severity
    regex: re.Pattern[str]
    description: str


def _code_lines(text: str) -> Iterator[tuple[int, str]]:
    """(offset, line) for every line holding code.

    Skips ``//`` line comments and ``/* ... */`` blocks. A leading ``*`` only
    counts as comment text inside a block, so ``*out = ...`` is still scanned.
    """
    in_block = False
    for offset, line in enumerate(text.splitlines()):
        if in_block:
            end = line.find("*/")
            if end == -1:
                continue
            in_block = False
            line = line[end + 2:]

        stripped = line.strip()
        if stripped.startswith("/*"):
            end = stripped.find("*/", 2)
            if end == -1:
                in_block = True
                continue
            line = stripped[end + 2:]
            stripped = line.strip()

        if not stripped or stripped.startswith("//"):
            continue
        yield offset, line


class StaticPatternScanner:
    """Lazily loads static patterns and flags matching lines in chunks."""

    def __init__(self, patterns_file: Path | None = None):
        """
        Initialize the scanner.

        Args:
            patterns_file: TOML file with ``[[pattern]]`` entries. If None,
                uses the bundled table.
        """
        self.patterns_file = patterns_file or DEFAULT_PATTERNS_FILE
        self._patterns: list[StaticPattern] | None = None

    @property
    def patterns(self) -> list[StaticPattern]:
        if self._patterns is None:
            self._patterns = self._load_patterns()
        return self._patterns

    def _load_patterns(self) -> list[StaticPattern]:
        try:
            data = toml.load(self.patterns_file)
        except FileNotFoundError:
            logger.error(f"Static patterns file not found: {self.patterns_file}")
            return []
        except toml.TomlDecodeError as e:
            logger.error(f"Invalid static patterns file {self.patterns_file}: {e}")
            return []

        patterns: list[StaticPattern] = []
        for raw in data.get("pattern", []):
            pattern_id = raw.get("id", "?")
            try:
                patterns.append(
                    StaticPattern(
                        id=pattern_id,
                        category=raw.get("category", "other"),
                        severity=Severity.parse(raw.get("severity", "Low")),
                        regex=re.compile(raw["regex"]),
                        description=raw.get("description", pattern_id),
                    )
                )
            except KeyError:
                logger.warning(f"Static pattern {pattern_id} has no regex, skipping")
            except re.error as e:
                logger.error(f"Invalid regex in static pattern {pattern_id}: {e}")

        logger.info(f"Loaded {len(patterns)} static patterns from {self.patterns_file}")
        return patterns

    def scan_text(self, text: str, path: str, first_line: int = 1) -> list[Finding]:
        """
        Match every pattern against each non-comment line of *text*.

        Args:
            text: Source text to scan
            path: File path reported in finding locations
            first_line: Absolute line number of the first line of *text*

        Returns:
            At most one finding per line, carrying the highest matching
            severity, in line order.
        """
        findings: list[Finding] = []
        for offset, line in _code_lines(text):
            best: StaticPattern | None = None
            for pattern in self.patterns:
                if pattern.regex.search(line) is None:
                    continue
                if best is None or pattern.severity.rank > best.severity.rank:
                    best = pattern

            if best is not None:
                findings.append(
                    Finding(
                        severity=best.severity,
                        origin=FindingOrigin.STATIC,
                        location=Location(path=path, line=first_line + offset),
                        description=best.description,
                        rule_id=best.id,
                        code_snippet=line.strip()[:200],
                    )
                )
        return findings

    def scan(self, chunk: Chunk) -> list[Finding]:
        """Static findings for one chunk, with absolute file line numbers."""
        return self.scan_text(chunk.text, chunk.path, chunk.start_line)

    def categories_hit(self, text: str) -> set[str]:
        """Categories of every pattern that matches anywhere in *text*."""
        hits: set[str] = set()
        for _, line in _code_lines(text):
            for pattern in self.patterns:
                if pattern.category not in hits and pattern.regex.search(line):
                    hits.add(pattern.category)
        return hits


# Global instance for lazy loading
_scanner_instance: StaticPatternScanner | None = None


def get_static_scanner() -> StaticPatternScanner:
    """Get the shared scanner instance."""
    global _scanner_instance
    if _scanner_instance is None:
        _scanner_instance = StaticPatternScanner()
    return _scanner_instance
