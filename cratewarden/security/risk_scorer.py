"""Weighted dependency risk scoring.

Each flag carries a fixed weight; the score is their sum and the level is a
threshold classification of that sum. Pure functions, no I/O.
"""

from collections.abc import Iterable

from ..models import Dependency, Finding, Flag, FlagKind, RiskLevel, Severity

FLAG_WEIGHTS: dict[FlagKind, int] = {
    FlagKind.TYPOSQUATTING: 50,
    FlagKind.SUSPICIOUS_AUTHOR: 40,
    FlagKind.PROCESS_EXECUTION: 30,
    FlagKind.REMOTE_HIGH: 30,
    FlagKind.NETWORK_CAPABILITY: 20,
    FlagKind.REMOTE_MEDIUM: 15,
    FlagKind.RECENT_PUBLICATION: 15,
    FlagKind.LOW_DOWNLOADS: 10,
    FlagKind.REMOTE_LOW: 5,
}

# (minimum score, level), highest first
LEVEL_THRESHOLDS: list[tuple[int, RiskLevel]] = [
    (80, RiskLevel.CRITICAL),
    (50, RiskLevel.HIGH),
    (25, RiskLevel.MEDIUM),
    (10, RiskLevel.LOW),
]

_REMOTE_FLAG_BY_SEVERITY = {
    Severity.CRITICAL: FlagKind.REMOTE_HIGH,
    Severity.HIGH: FlagKind.REMOTE_HIGH,
    Severity.MEDIUM: FlagKind.REMOTE_MEDIUM,
    Severity.LOW: FlagKind.REMOTE_LOW,
}


def classify(score: int) -> RiskLevel:
    for minimum, level in LEVEL_THRESHOLDS:
        if score >= minimum:
            return level
    return RiskLevel.CLEAN


def score(subject: Dependency | Iterable[Flag]) -> tuple[int, RiskLevel]:
    """Sum flag weights and classify the total.

    Accepts either a dependency (its ``flags`` are scored) or any iterable
    of flags.
    """
    flags = subject.flags if isinstance(subject, Dependency) else subject
    total = sum(FLAG_WEIGHTS[flag.kind] for flag in flags)
    return total, classify(total)


def flags_from_findings(findings: Iterable[Finding]) -> list[Flag]:
    """One remote-analysis flag per finding, weighted by its severity."""
    return [
        Flag(
            kind=_REMOTE_FLAG_BY_SEVERITY[finding.severity],
            description=f"{finding.severity.value}: {finding.description}",
        )
        for finding in findings
    ]


def apply_score(dependency: Dependency) -> Dependency:
    """Recompute ``risk_score`` and ``risk_level`` in place."""
    dependency.risk_score, dependency.risk_level = score(dependency)
    return dependency
