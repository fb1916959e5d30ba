"""Tests for report rendering."""

import json
from datetime import datetime, timezone

import pytest

from cratewarden.models import (
    AnalysisStatus,
    Dependency,
    DependencySource,
    FileReport,
    Finding,
    FindingOrigin,
    Flag,
    FlagKind,
    Location,
    RiskLevel,
    ScanResult,
    ScanSummary,
    Severity,
)
from cratewarden.report import render, write_report


@pytest.fixture
def result():
    shell = Finding(
        severity=Severity.CRITICAL,
        origin=FindingOrigin.STATIC,
        location=Location(path="src/exec.rs", line=4),
        description="spawns a shell",
        rule_id="PROC-002",
        code_snippet='Command::new("sh")',
    )
    unavailable = Finding(
        severity=Severity.LOW,
        origin=FindingOrigin.REMOTE_ANALYSIS,
        location=Location(path="src/lib.rs", line=1),
        description="analysis unavailable (quota exceeded)",
        rule_id="ANALYSIS-UNAVAILABLE",
    )
    return ScanResult(
        target="/work/demo",
        crate_name="demo",
        started_at=datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc),
        files=[
            FileReport(
                path="src/exec.rs",
                chunk_count=1,
                analysis_status=AnalysisStatus.ANALYZED,
                analyses=["[lines 1-5] runs a shell"],
                findings=[shell],
            ),
            FileReport(
                path="src/lib.rs",
                chunk_count=1,
                analysis_status=AnalysisStatus.UNAVAILABLE,
                analyses=["[lines 1-9] analysis unavailable (quota exceeded)"],
                findings=[unavailable],
            ),
            FileReport(path="src/clean.rs", chunk_count=1, analysis_status=AnalysisStatus.CACHED),
        ],
        dependencies=[
            Dependency(
                name="reqwests",
                version="0.1.0",
                source=DependencySource.REGISTRY,
                flags=[Flag(kind=FlagKind.TYPOSQUATTING, description="resembles reqwest")],
                risk_score=50,
                risk_level=RiskLevel.HIGH,
                analysis_status=AnalysisStatus.STATIC_ONLY,
            ),
            Dependency(name="serde", version="1.0.200", analysis_status=AnalysisStatus.STATIC_ONLY),
        ],
        summary=ScanSummary(
            files_scanned=3,
            chunks_analyzed=3,
            dependencies_scanned=2,
            remote_calls=1,
            cache_hits=1,
            unavailable_analyses=1,
            severity_counts={"Low": 1, "Medium": 0, "High": 0, "Critical": 1},
            dependency_risk_counts={"High": 1, "Clean": 1},
            cancelled=True,
        ),
    )


class TestFormats:
    def test_json(self, result):
        data = json.loads(render(result, "json"))

        assert data["crate_name"] == "demo"
        assert data["files"][0]["findings"][0]["rule_id"] == "PROC-002"
        assert data["summary"]["cancelled"] is True

    def test_markdown(self, result):
        text = render(result, "markdown")

        assert text.startswith("# CrateWarden Scan Report: demo")
        assert "### reqwests 0.1.0" in text
        assert "Flag Typosquatting (+50): resembles reqwest" in text
        assert "### `src/clean.rs`" in text
        assert "analysis unavailable (quota exceeded)" in text
        assert "Partial result" in text

    def test_condensed_shows_issues_only(self, result):
        text = render(result, "condensed")

        assert "## High-Risk Dependencies" in text
        assert "- **reqwests** v0.1.0 (High, 50) - Flags: Typosquatting" in text
        assert "`src/exec.rs` [analyzed]: Critical (L4)" in text
        assert "`src/lib.rs` [unavailable]" in text
        assert "src/clean.rs" not in text

    def test_summary_is_one_line(self, result):
        text = render(result, "summary")

        assert text.count("\n") == 1
        assert text.startswith("demo | Files: 3 | Findings: 2")
        assert "Unavailable: 1" in text
        assert "PARTIAL" in text
        assert "Risky: reqwests:High" in text

    def test_unknown_format(self, result):
        with pytest.raises(ValueError):
            render(result, "html")

    def test_write_report(self, result, tmp_path):
        output = tmp_path / "reports" / "scan.md"

        text = write_report(result, "markdown", output)

        assert output.read_text() == text
