"""Tests for weighted dependency risk scoring."""

import pytest

from cratewarden.models import (
    Dependency,
    Finding,
    FindingOrigin,
    Flag,
    FlagKind,
    Location,
    RiskLevel,
    Severity,
)
from cratewarden.security.risk_scorer import (
    FLAG_WEIGHTS,
    apply_score,
    classify,
    flags_from_findings,
    score,
)


class TestClassify:
    @pytest.mark.parametrize(
        "value,level",
        [
            (0, RiskLevel.CLEAN),
            (9, RiskLevel.CLEAN),
            (10, RiskLevel.LOW),
            (24, RiskLevel.LOW),
            (25, RiskLevel.MEDIUM),
            (49, RiskLevel.MEDIUM),
            (50, RiskLevel.HIGH),
            (79, RiskLevel.HIGH),
            (80, RiskLevel.CRITICAL),
            (250, RiskLevel.CRITICAL),
        ],
    )
    def test_boundaries(self, value, level):
        assert classify(value) == level


class TestScore:
    def test_no_flags_is_clean(self):
        assert score([]) == (0, RiskLevel.CLEAN)

    def test_typosquat_alone_is_high(self):
        assert score([Flag(kind=FlagKind.TYPOSQUATTING)]) == (50, RiskLevel.HIGH)

    def test_weights_add_up(self):
        flags = [Flag(kind=FlagKind.TYPOSQUATTING), Flag(kind=FlagKind.SUSPICIOUS_AUTHOR)]
        assert score(flags) == (90, RiskLevel.CRITICAL)

        flags = [Flag(kind=FlagKind.NETWORK_CAPABILITY), Flag(kind=FlagKind.LOW_DOWNLOADS)]
        assert score(flags) == (30, RiskLevel.MEDIUM)

    def test_every_flag_kind_has_a_weight(self):
        assert set(FLAG_WEIGHTS) == set(FlagKind)
        assert Flag(kind=FlagKind.REMOTE_LOW).weight == 5

    def test_dependency_is_scored_in_place(self):
        dep = Dependency(
            name="evil",
            version="0.1.0",
            flags=[Flag(kind=FlagKind.PROCESS_EXECUTION), Flag(kind=FlagKind.RECENT_PUBLICATION)],
        )
        apply_score(dep)

        assert dep.risk_score == 45
        assert dep.risk_level == RiskLevel.MEDIUM


class TestFlagsFromFindings:
    def test_severity_mapping(self):
        def finding(severity):
            return Finding(
                severity=severity,
                origin=FindingOrigin.REMOTE_ANALYSIS,
                location=Location(path="evil@0.1.0"),
                description="x",
            )

        flags = flags_from_findings(
            [finding(s) for s in (Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW)]
        )

        assert [f.kind for f in flags] == [
            FlagKind.REMOTE_HIGH,
            FlagKind.REMOTE_HIGH,
            FlagKind.REMOTE_MEDIUM,
            FlagKind.REMOTE_LOW,
        ]
