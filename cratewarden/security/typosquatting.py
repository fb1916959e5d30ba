"""
Typosquatting detection for crate names.

A candidate is compared against a list of popular crate names. Names are
normalised first (lower case, ``_`` and ``-`` equivalent) and the edit
distance is divided by the length of the longer name, so short names need
proportionally closer matches. ``ring`` vs ``rand`` has an edit distance of 2
but a normalised distance of 0.5 and is not a lookalike.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import toml

from ..constants import DEFAULT_TYPOSQUAT_RATIO_THRESHOLD

logger = logging.getLogger(__name__)

DEFAULT_REFERENCE_FILE = Path(__file__).parent.parent / "data" / "reference_crates.toml"


def normalize_name(name: str) -> str:
    """Crates.io treats ``-`` and ``_`` as the same character."""
    return name.strip().lower().replace("_", "-")


def levenshtein_distance(s1: str, s2: str) -> int:
    """Compute the Levenshtein edit distance between two strings.

    Args:
        s1: First string.
        s2: Second string.

    Returns:
        The minimum number of single-character edits (insertions,
        deletions, substitutions) needed to transform s1 into s2.
    """
    if len(s1) < len(s2):
        return levenshtein_distance(s2, s1)

    if len(s2) == 0:
        return len(s1)

    previous_row = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1):
        current_row = [i + 1]
        for j, c2 in enumerate(s2):
            cost = 0 if c1 == c2 else 1
            current_row.append(
                min(
                    current_row[j] + 1,
                    previous_row[j + 1] + 1,
                    previous_row[j] + cost,
                )
            )
        previous_row = current_row

    return previous_row[-1]


def normalized_distance(a: str, b: str) -> float:
    """Edit distance divided by the longer length, in [0, 1]."""
    a, b = normalize_name(a), normalize_name(b)
    longest = max(len(a), len(b))
    if longest == 0:
        return 0.0
    return levenshtein_distance(a, b) / longest


@dataclass
class ReferenceTables:
    """Name lists driving dependency risk decisions."""

    popular: list[str] = field(default_factory=list)
    trusted: set[str] = field(default_factory=set)
    suspicious_keywords: list[str] = field(default_factory=list)
    known_malicious: set[str] = field(default_factory=set)
    suspicious_authors: set[str] = field(default_factory=set)
    network_crates: set[str] = field(default_factory=set)
    process_crates: set[str] = field(default_factory=set)

    @classmethod
    def load(cls, path: Path | None = None) -> "ReferenceTables":
        """Load the tables from TOML. A missing file yields empty tables."""
        path = path or DEFAULT_REFERENCE_FILE
        try:
            data = toml.load(path)
        except FileNotFoundError:
            logger.error(f"Reference crate tables not found: {path}")
            return cls()
        except toml.TomlDecodeError as e:
            logger.error(f"Invalid reference crate tables {path}: {e}")
            return cls()

        def names(key: str) -> list[str]:
            return [normalize_name(n) for n in data.get(key, [])]

        tables = cls(
            popular=names("popular"),
            trusted=set(names("trusted")),
            suspicious_keywords=[k.lower() for k in data.get("suspicious_keywords", [])],
            known_malicious=set(names("known_malicious")),
            suspicious_authors={a.lower() for a in data.get("suspicious_authors", [])},
            network_crates=set(names("network_crates")),
            process_crates=set(names("process_crates")),
        )
        logger.debug(
            f"Loaded reference tables: {len(tables.popular)} popular, "
            f"{len(tables.trusted)} trusted"
        )
        return tables

    def is_trusted(self, name: str) -> bool:
        return normalize_name(name) in self.trusted

    def is_known_malicious(self, name: str) -> bool:
        return normalize_name(name) in self.known_malicious

    def has_suspicious_keyword(self, name: str) -> bool:
        lowered = name.lower()
        return any(keyword in lowered for keyword in self.suspicious_keywords)


@dataclass(frozen=True)
class TyposquatMatch:
    popular_name: str
    distance: int
    ratio: float


class TyposquatDetector:
    """Flags names that look like, but are not, popular crates."""

    def __init__(
        self,
        tables: ReferenceTables,
        ratio_threshold: float = DEFAULT_TYPOSQUAT_RATIO_THRESHOLD,
    ):
        if not 0.0 <= ratio_threshold <= 1.0:
            raise ValueError("ratio_threshold must be between 0 and 1")
        self.tables = tables
        self.ratio_threshold = ratio_threshold

    def check(self, name: str) -> list[TyposquatMatch]:
        """Return the popular names *name* is suspiciously close to.

        Trusted names and exact matches (after normalisation) never match.
        """
        candidate = normalize_name(name)
        if not candidate or candidate in self.tables.trusted:
            return []

        matches: list[TyposquatMatch] = []
        for popular in self.tables.popular:
            if candidate == popular:
                continue
            distance = levenshtein_distance(candidate, popular)
            ratio = distance / max(len(candidate), len(popular))
            if 0 < distance and ratio <= self.ratio_threshold:
                matches.append(TyposquatMatch(popular, distance, ratio))

        matches.sort(key=lambda m: (m.ratio, m.popular_name))
        return matches

    def is_typosquat(self, name: str) -> bool:
        return bool(self.check(name))
