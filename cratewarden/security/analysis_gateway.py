"""
Rate-limited, retrying, cache-first gateway to the remote analysis service.

Every remote analysis goes through ``AnalysisGateway.analyze``:

1. Look the content up in the scan cache. A hit never touches the network
   or the rate limiter.
2. Concurrent requests for the same key share one in-flight call.
3. On a miss, acquire a rate-limiter slot for every outbound attempt.
4. Retry transient failures with exponential backoff. Quota exhaustion is
   raised immediately so the caller can apply its quota policy.
5. Check the caller's stop signal after every rate-limiter wait and before
   every retry, so a cancelled scan sends nothing new.
6. Parse the response, store it, and return it.
"""

import asyncio
import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..clients.analysis_client import AnalysisTransport, is_quota_exhausted
from ..constants import (
    DEFAULT_ANALYSIS_MODEL,
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BACKOFF_MAX_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_REQUEST_TIMEOUT,
)
from ..core.cache import ScanCache
from ..core.exceptions import (
    AnalysisCancelledError,
    AnalysisError,
    QuotaExceededError,
    TransportError,
)
from ..core.rate_limiter import Clock, RateLimiter
from ..models import AnalysisResult, Chunk, Dependency, Finding, FindingOrigin, Location, Severity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisSubject:
    """What to analyse and how to key and locate the result.

    Attributes:
        identity: Cache identity (relative file path or crate name).
        version: Cache version (crate version).
        prompt: Full prompt sent to the service.
        path: Location reported on returned findings.
        line_offset: Absolute line of the first analysed line. ``None``
            keeps the reported line numbers as they are.
    """

    identity: str
    version: str
    prompt: str
    path: str
    line_offset: int | None = None


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_RESPONSE_FORMAT = """Respond with a single JSON object and nothing else:
{
  "analysis": "<short summary of the security posture>",
  "findings": [
    {"line": <line number>, "severity": "Critical|High|Medium|Low",
     "description": "<what is suspicious>", "code": "<offending code>"}
  ]
}
Use an empty findings list when nothing is suspicious."""


def build_chunk_prompt(chunk: Chunk) -> str:
    """Prompt for one source chunk. Line numbers are relative to the chunk."""
    numbered = "\n".join(
        f"{i:>4} | {line}" for i, line in enumerate(chunk.text.splitlines(), 1)
    )
    hints = ""
    if chunk.static_findings:
        hints = "\nA static pre-scan flagged:\n" + "\n".join(
            f"- line {f.location.line - chunk.start_line + 1}: {f.description}"
            for f in chunk.static_findings
        ) + "\n"
    truncated = "\nThis item was too large to split and is analysed whole.\n" if chunk.truncated else ""

    return (
        "You are a security auditor reviewing Rust code for supply-chain attacks.\n"
        "Look for malicious behaviour, backdoors, data exfiltration, unsafe memory use, "
        "process execution, unexpected network or filesystem access, obfuscation and "
        "build-time code loading.\n"
        f"\nFile: {chunk.path} ({chunk.kind}{' ' + chunk.name if chunk.name else ''})\n"
        f"{hints}{truncated}"
        f"\n```rust\n{numbered}\n```\n\n"
        f"{_RESPONSE_FORMAT}"
    )


def build_dependency_prompt(dependency: Dependency, source_excerpt: str | None = None) -> str:
    """Prompt for one third-party crate, with its source when available."""
    lines = [
        "You are a security auditor assessing a Rust crate for supply-chain risk.",
        f"\nCrate: {dependency.name} {dependency.version}",
        f"Source: {dependency.source.value}{' ' + dependency.source_url if dependency.source_url else ''}",
    ]
    if dependency.dependencies:
        lines.append(f"Depends on: {', '.join(sorted(dependency.dependencies))}")
    if dependency.flags:
        lines.append("Risk signals already detected:")
        lines.extend(f"- {flag.kind.value}: {flag.description}" for flag in dependency.flags)
    if source_excerpt:
        lines.append(f"\n```rust\n{source_excerpt}\n```")
    else:
        lines.append("\nSource code is not available locally; judge from the metadata.")
    lines.append(
        "\nAssess typosquatting, build script abuse, network and process capabilities, "
        "and code obfuscation.\n"
    )
    lines.append(_RESPONSE_FORMAT)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

_JSON_RE = re.compile(r"\{.*\}", re.DOTALL)
_PATTERN_LINE_RE = re.compile(
    r"^-?\s*Line:\s*(\d+),\s*Severity:\s*(Critical|High|Medium|Low),\s*"
    r"(?:Description|Issue):\s*(.+?)(?:,\s*Code:\s*(.*))?$",
    re.IGNORECASE,
)


def _absolute_line(line: Any, line_offset: int | None) -> int:
    try:
        relative = max(int(line), 0)
    except (TypeError, ValueError):
        relative = 0
    if line_offset is None:
        return relative
    return line_offset + max(relative, 1) - 1


def _finding(path: str, line: int, severity: str, description: str, code: str) -> Finding:
    return Finding(
        severity=Severity.parse(severity),
        origin=FindingOrigin.REMOTE_ANALYSIS,
        location=Location(path=path, line=line),
        description=description.strip() or "suspicious pattern",
        code_snippet=code.strip()[:200],
    )


def _parse_json(text: str, path: str, line_offset: int | None) -> tuple[str, list[Finding]] | None:
    match = _JSON_RE.search(text)
    if not match:
        return None
    try:
        data = json.loads(match.group())
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or "analysis" not in data:
        return None

    raw_findings = data.get("findings") or data.get("flagged_patterns") or []
    findings = []
    for item in raw_findings:
        if not isinstance(item, dict):
            continue
        findings.append(
            _finding(
                path,
                _absolute_line(item.get("line"), line_offset),
                str(item.get("severity", "Low")),
                str(item.get("description", "")),
                str(item.get("code") or item.get("code_snippet") or ""),
            )
        )
    return str(data["analysis"]).strip(), findings


def _parse_sections(text: str, path: str, line_offset: int | None) -> tuple[str, list[Finding]] | None:
    start = text.find("ANALYSIS:")
    if start == -1:
        return None
    body = text[start + len("ANALYSIS:"):]
    patterns_at = body.find("PATTERNS:")
    if patterns_at == -1:
        return body.strip(), []

    analysis = body[:patterns_at].strip()
    findings = []
    for line in body[patterns_at + len("PATTERNS:"):].splitlines():
        match = _PATTERN_LINE_RE.match(line.strip())
        if match:
            findings.append(
                _finding(
                    path,
                    _absolute_line(match.group(1), line_offset),
                    match.group(2),
                    match.group(3),
                    match.group(4) or "",
                )
            )
    return analysis, findings


def parse_analysis_response(
    text: str, path: str, line_offset: int | None = None
) -> tuple[str, list[Finding]]:
    """Extract the summary and findings from model output.

    Tries a JSON object first, then the ``ANALYSIS:`` / ``PATTERNS:`` line
    format. Unstructured text is kept as the analysis with no findings.
    """
    for parser in (_parse_json, _parse_sections):
        parsed = parser(text, path, line_offset)
        if parsed is not None:
            return parsed
    logger.debug(f"Unstructured analysis response for {path}")
    return text.strip(), []


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class AnalysisGateway:
    """The only component that talks to the remote analysis service."""

    def __init__(
        self,
        transport: AnalysisTransport,
        cache: ScanCache,
        rate_limiter: RateLimiter,
        model: str = DEFAULT_ANALYSIS_MODEL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE_SECONDS,
        backoff_max: float = DEFAULT_BACKOFF_MAX_SECONDS,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        clock: Clock | None = None,
    ):
        self.transport = transport
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.model = model
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.request_timeout = request_timeout
        self.clock: Clock = clock or rate_limiter.clock

        self._inflight: dict[tuple[str, str, str], asyncio.Future[AnalysisResult]] = {}

        self.cache_hits = 0
        self.cache_misses = 0
        self.remote_calls = 0

    def backoff_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = min(self.backoff_base * 2 ** (attempt - 1), self.backoff_max)
        if retry_after is not None and retry_after > delay:
            delay = retry_after
        return delay

    @staticmethod
    def _locate(findings: list[Finding], subject: AnalysisSubject) -> list[Finding]:
        """Map stored (subject-relative) lines to absolute file lines.

        Entries are cached with relative lines so moving an unchanged chunk
        within its file still reports the right location.
        """
        return [
            finding.model_copy(
                update={
                    "location": Location(
                        path=subject.path,
                        line=_absolute_line(finding.location.line, subject.line_offset),
                    )
                }
            )
            for finding in findings
        ]

    def cached(self, subject: AnalysisSubject, content_hash: str) -> AnalysisResult | None:
        """Cache-only lookup; never calls the service."""
        entry = self.cache.lookup(subject.identity, subject.version, content_hash)
        if entry is None:
            self.cache_misses += 1
            return None
        self.cache_hits += 1
        return AnalysisResult(
            analysis=entry.analysis,
            findings=self._locate(entry.findings, subject),
            model=entry.llm_model,
            cached=True,
        )

    async def analyze(
        self,
        subject: AnalysisSubject,
        content_hash: str,
        allow_remote: bool = True,
        should_stop: Callable[[], bool] | None = None,
    ) -> AnalysisResult:
        """Analyse a subject, preferring the cache.

        ``should_stop`` is polled before every attempt and again after every
        rate-limiter wait; once it returns True no further request is sent.

        Raises:
            QuotaExceededError: The service reported quota exhaustion.
            TransportError: Retries were exhausted or the error was not
                transient.
            AnalysisCancelledError: ``should_stop`` fired before a request
                went out.
            AnalysisError: ``allow_remote`` is False and nothing is cached.
        """
        result = self.cached(subject, content_hash)
        if result is not None:
            logger.debug(f"Cache hit for {subject.identity}@{subject.version}")
            return result
        if not allow_remote:
            raise AnalysisError(f"No cached analysis for {subject.identity} and remote calls are disabled")

        key = (subject.identity, subject.version, content_hash)
        pending = self._inflight.get(key)
        if pending is not None:
            logger.debug(f"Joining in-flight analysis for {subject.identity}")
            return await asyncio.shield(pending)

        future: asyncio.Future[AnalysisResult] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await self._call_remote(subject, content_hash, should_stop)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unjoined failure is not reported as unhandled
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            del self._inflight[key]

    async def _call_remote(
        self,
        subject: AnalysisSubject,
        content_hash: str,
        should_stop: Callable[[], bool] | None = None,
    ) -> AnalysisResult:
        last_error: TransportError | None = None

        def check_stop(stage: str) -> None:
            if should_stop is not None and should_stop():
                logger.info(
                    f"Not sending analysis of {subject.identity}: stopped {stage}",
                    extra={"event": "analysis_cancelled", "crate": subject.identity},
                )
                raise AnalysisCancelledError(f"Analysis of {subject.identity} cancelled {stage}")

        for attempt in range(1, self.max_attempts + 1):
            check_stop("before attempt" if attempt == 1 else "before retry")
            waited = await self.rate_limiter.acquire()
            if waited:
                logger.debug(f"Waited {waited:.1f}s for a rate-limit slot")
            check_stop("while waiting for a rate-limit slot")
            self.remote_calls += 1

            try:
                text = await asyncio.wait_for(
                    self.transport.send(subject.prompt, self.model),
                    timeout=self.request_timeout,
                )
            except asyncio.TimeoutError:
                last_error = TransportError(
                    f"Analysis request timed out after {self.request_timeout}s"
                )
            except QuotaExceededError:
                logger.warning(
                    f"Analysis quota exhausted while analysing {subject.identity}",
                    extra={"event": "quota_exceeded", "crate": subject.identity},
                )
                raise
            except TransportError as e:
                body = e.response_body or str(e)
                if e.status is not None and is_quota_exhausted(e.status, body):
                    raise QuotaExceededError(str(e), retry_after=e.retry_after) from e
                if not e.is_transient:
                    logger.error(
                        f"Analysis of {subject.identity} failed: {e}",
                        extra={"event": "analysis_failed", "crate": subject.identity, "status": e.status},
                    )
                    raise
                last_error = e
            else:
                analysis, findings = parse_analysis_response(text, subject.path)
                self.cache.store(
                    subject.identity,
                    subject.version,
                    content_hash,
                    analysis,
                    findings,
                    self.model,
                )
                logger.info(
                    f"Analysed {subject.identity}: {len(findings)} finding(s)",
                    extra={
                        "event": "analysis_complete",
                        "crate": subject.identity,
                        "version": subject.version,
                        "path": subject.path,
                    },
                )
                return AnalysisResult(
                    analysis=analysis,
                    findings=self._locate(findings, subject),
                    model=self.model,
                )

            if attempt < self.max_attempts:
                delay = self.backoff_delay(attempt, last_error.retry_after)
                logger.warning(
                    f"Analysis attempt {attempt}/{self.max_attempts} for {subject.identity} "
                    f"failed ({last_error}); retrying in {delay:.1f}s",
                    extra={
                        "event": "analysis_retry",
                        "crate": subject.identity,
                        "attempt": attempt,
                        "error": str(last_error),
                    },
                )
                await self.clock.sleep(delay)

        assert last_error is not None
        raise TransportError(
            f"Analysis of {subject.identity} failed after {self.max_attempts} attempts: {last_error}",
            status=last_error.status,
            retry_after=last_error.retry_after,
        ) from last_error
