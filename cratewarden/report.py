"""Report rendering for scan results.

Formats:

* ``json``: the full ``ScanResult``.
* ``markdown``: every file and dependency with analyses and findings.
* ``condensed``: summary, high-risk dependencies, and only files with findings.
* ``summary``: one line.

Unavailable and partial analyses are always shown, never filtered out.
"""

import logging
from pathlib import Path
from typing import Literal

from .models import AnalysisStatus, Dependency, FileReport, Finding, RiskLevel, ScanResult

logger = logging.getLogger(__name__)

ReportFormat = Literal["json", "markdown", "condensed", "summary"]
REPORT_FORMATS: tuple[str, ...] = ("json", "markdown", "condensed", "summary")

_HIGH_RISK = (RiskLevel.CRITICAL, RiskLevel.HIGH)


def _finding_line(finding: Finding) -> str:
    rule = f" [{finding.rule_id}]" if finding.rule_id else ""
    line = f"- **{finding.severity.value}** ({finding.origin.value}{rule}) `{finding.location}`: {finding.description}"
    if finding.code_snippet:
        line += f"\n  `{finding.code_snippet}`"
    return line


def _high_risk(result: ScanResult) -> list[Dependency]:
    return [d for d in result.dependencies if d.risk_level in _HIGH_RISK]


def _files_with_issues(result: ScanResult) -> list[FileReport]:
    return [
        f for f in result.files
        if f.findings or f.analysis_status in (AnalysisStatus.UNAVAILABLE, AnalysisStatus.PARSE_FAILED)
    ]


def _summary_lines(result: ScanResult) -> list[str]:
    s = result.summary
    lines = [
        "## Summary",
        f"- **Files**: {s.files_scanned} | **Chunks**: {s.chunks_analyzed} | "
        f"**Dependencies**: {s.dependencies_scanned} | **High-Risk Deps**: {len(_high_risk(result))}",
        f"- **Remote calls**: {s.remote_calls} | **Cache hits**: {s.cache_hits} | "
        f"**Unavailable analyses**: {s.unavailable_analyses}",
    ]
    severities = [f"{k}: {v}" for k, v in s.severity_counts.items() if v]
    if severities:
        lines.append(f"- **Severity**: {' | '.join(severities)}")
    if s.dependency_risk_counts:
        risks = [f"{k}: {v}" for k, v in sorted(s.dependency_risk_counts.items())]
        lines.append(f"- **Dependency Risk**: {' | '.join(risks)}")
    if s.cancelled:
        lines.append("- **Partial result**: the scan was cancelled before every analysis completed")
    return lines


def _dependency_block(dep: Dependency) -> list[str]:
    lines = [
        f"### {dep.name} {dep.version}",
        f"- Risk: **{dep.risk_level.value}** (score {dep.risk_score}) | Source: {dep.source.value} "
        f"| Analysis: {dep.analysis_status.value}",
    ]
    for flag in dep.flags:
        lines.append(f"- Flag {flag.kind.value} (+{flag.weight}): {flag.description}")
    if dep.analysis:
        lines.append(f"\n**Analysis:** {dep.analysis}")
    lines.extend(_finding_line(f) for f in dep.findings)
    lines.append("")
    return lines


def _file_block(report: FileReport) -> list[str]:
    lines = [
        f"### `{report.path}`",
        f"- Chunks: {report.chunk_count} | Analysis: {report.analysis_status.value}",
    ]
    for analysis in report.analyses:
        lines.append(f"\n{analysis}")
    if report.findings:
        lines.append("")
        lines.extend(_finding_line(f) for f in report.findings)
    lines.append("")
    return lines


def render_markdown(result: ScanResult) -> str:
    lines = [
        f"# CrateWarden Scan Report: {result.crate_name}",
        f"*Scanned {result.target} at {result.started_at.isoformat()}*",
        "",
        *_summary_lines(result),
        "",
    ]
    if result.dependencies:
        lines.append("## Dependencies")
        for dep in result.dependencies:
            lines.extend(_dependency_block(dep))
    lines.append("## Source Files")
    if not result.files:
        lines.append("No Rust source files scanned.")
    for report in result.files:
        lines.extend(_file_block(report))
    return "\n".join(lines).rstrip() + "\n"


def render_condensed(result: ScanResult) -> str:
    lines = [
        f"# CrateWarden Scan Report: {result.crate_name}",
        "",
        *_summary_lines(result),
        "",
    ]

    high_risk = _high_risk(result)
    if high_risk:
        lines.append("## High-Risk Dependencies")
        for dep in high_risk:
            flags = ", ".join(flag.kind.value for flag in dep.flags)
            lines.append(
                f"- **{dep.name}** v{dep.version} ({dep.risk_level.value}, {dep.risk_score})"
                + (f" - Flags: {flags}" if flags else "")
            )
        lines.append("")

    unavailable = [d for d in result.dependencies if d.analysis_status == AnalysisStatus.UNAVAILABLE]
    if unavailable:
        lines.append("## Unavailable Dependency Analyses")
        lines.extend(f"- {d.name} v{d.version}: {d.analysis}" for d in unavailable)
        lines.append("")

    lines.append("## Code Findings")
    issues = _files_with_issues(result)
    if not issues:
        lines.append("No significant security concerns detected in code analysis.")
    for report in issues:
        patterns = ", ".join(
            f"{f.severity.value} (L{f.location.line})" for f in report.findings
        )
        lines.append(f"- `{report.path}` [{report.analysis_status.value}]: {patterns or 'no findings'}")

    if result.dependencies and not high_risk:
        lines.append("")
        lines.append(f"All {len(result.dependencies)} dependencies appear to be low-risk.")
    return "\n".join(lines).rstrip() + "\n"


def render_summary(result: ScanResult) -> str:
    s = result.summary
    findings = sum(s.severity_counts.values())
    parts = [
        result.crate_name,
        f"Files: {s.files_scanned}",
        f"Findings: {findings}",
        f"Deps: {s.dependencies_scanned}",
        f"High-Risk: {len(_high_risk(result))}",
    ]
    if s.unavailable_analyses:
        parts.append(f"Unavailable: {s.unavailable_analyses}")
    if s.cancelled:
        parts.append("PARTIAL")
    high_risk = _high_risk(result)
    if high_risk:
        parts.append("Risky: " + ", ".join(f"{d.name}:{d.risk_level.value}" for d in high_risk))
    issues = _files_with_issues(result)
    if issues:
        parts.append("Issues in: " + ", ".join(Path(f.path).name for f in issues))
    return " | ".join(parts) + "\n"


def render(result: ScanResult, fmt: ReportFormat = "markdown") -> str:
    """Render a scan result in the requested format."""
    if fmt == "json":
        return result.model_dump_json(indent=2) + "\n"
    if fmt == "markdown":
        return render_markdown(result)
    if fmt == "condensed":
        return render_condensed(result)
    if fmt == "summary":
        return render_summary(result)
    raise ValueError(f"Unknown report format: {fmt}")


def write_report(result: ScanResult, fmt: ReportFormat, output: Path | None) -> str:
    """Render and optionally write the report. Returns the rendered text."""
    text = render(result, fmt)
    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(text, encoding="utf-8")
        logger.info(f"Report written to {output}")
    return text
