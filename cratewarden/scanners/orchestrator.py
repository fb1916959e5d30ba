"""
Scan orchestration.

Walks a crate, chunks and statically scans its Rust sources, assesses its
locked dependencies, and feeds the resulting work items to a bounded pool of
asyncio workers that call the analysis gateway. Results are merged into
dicts keyed by file path and dependency key and sorted at the end, so the
order in which workers finish never changes the report.

A scan always completes with a best-effort result. Parse failures, transport
failures, quota exhaustion and cancellation are recorded per item and
labelled in the output.
"""

import asyncio
import fnmatch
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import toml

from ..clients.analysis_client import AnalysisTransport, GeminiTransport
from ..clients.crates_client import CratesIOClient
from ..config import Settings
from ..constants import RATE_LIMIT_WINDOW_SECONDS
from ..core.cache import ScanCache, content_hash
from ..core.exceptions import (
    AnalysisCancelledError,
    AnalysisError,
    LockfileError,
    ParseFailure,
    QuotaExceededError,
    ScanTargetError,
)
from ..core.rate_limiter import Clock, RateLimiter
from ..models import (
    AnalysisResult,
    AnalysisStatus,
    Chunk,
    Dependency,
    FileReport,
    Finding,
    FindingOrigin,
    Location,
    ScanResult,
    ScanSummary,
    Severity,
)
from ..security.analysis_gateway import AnalysisGateway, AnalysisSubject, build_chunk_prompt
from ..security.typosquatting import ReferenceTables
from .chunker import RustChunker
from .dependency_scanner import DependencyScanner, parse_lockfile
from .static_scanner import StaticPatternScanner

logger = logging.getLogger(__name__)

UNAVAILABLE_RULE_ID = "ANALYSIS-UNAVAILABLE"


@dataclass
class WorkItem:
    """One chunk or one dependency waiting for remote analysis."""

    subject: AnalysisSubject
    content_hash: str
    priority: int
    chunk: Chunk | None = None
    dependency: Dependency | None = None

    @property
    def key(self) -> str:
        if self.dependency is not None:
            return self.dependency.key
        assert self.chunk is not None
        return f"{self.chunk.path}:{self.chunk.start_line}"


@dataclass
class _ScanState:
    """Mutable per-scan aggregation, keyed so merges are order-independent."""

    files: dict[str, FileReport] = field(default_factory=dict)
    # path -> {start_line: status}
    chunk_status: dict[str, dict[int, AnalysisStatus]] = field(default_factory=dict)
    # path -> {start_line: analysis text}
    chunk_analyses: dict[str, dict[int, str]] = field(default_factory=dict)
    dependencies: dict[str, Dependency] = field(default_factory=dict)
    analyzed: int = 0
    cached: int = 0
    unavailable: int = 0


def _matches_any(relative: str, patterns: list[str]) -> bool:
    return any(fnmatch.fnmatch(relative, pattern) for pattern in patterns)


def find_crate_root(target: Path) -> Path:
    """Nearest directory at or above *target* holding a ``Cargo.toml``.

    Falls back to *target* itself (or its parent for a file) when no
    manifest is found.
    """
    start = target if target.is_dir() else target.parent
    start = start.resolve()
    for candidate in (start, *start.parents):
        if (candidate / "Cargo.toml").is_file():
            return candidate
    return start


def read_crate_identity(root: Path) -> tuple[str, str]:
    """Crate name and version from ``Cargo.toml``, falling back to the
    directory name and ``0.0.0``."""
    manifest = root / "Cargo.toml"
    name, version = root.resolve().name, "0.0.0"
    if manifest.is_file():
        try:
            package = toml.load(manifest).get("package", {})
        except (toml.TomlDecodeError, OSError) as e:
            logger.warning(f"Cannot read {manifest}: {e}")
            return name, version
        name = package.get("name", name)
        declared = package.get("version")
        # Workspace-inherited versions are tables, not strings
        if isinstance(declared, str):
            version = declared
    return name, version


class ScanOrchestrator:
    """Runs one scan at a time over a crate directory or a single file."""

    def __init__(
        self,
        settings: Settings,
        cache: ScanCache,
        gateway: AnalysisGateway | None = None,
        dependency_scanner: DependencyScanner | None = None,
        chunker: RustChunker | None = None,
        static_scanner: StaticPatternScanner | None = None,
    ):
        self.settings = settings
        self.cache = cache
        self.gateway = gateway
        self.static_scanner = static_scanner or StaticPatternScanner()
        self.chunker = chunker or RustChunker(settings.scanning.max_chunk_chars)
        self.dependency_scanner = dependency_scanner
        self._stop_reason: str | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: AnalysisTransport | None = None,
        clock: Clock | None = None,
        cache: ScanCache | None = None,
        crates_client: CratesIOClient | None = None,
    ) -> "ScanOrchestrator":
        """Wire every component from configuration.

        Without a transport or a credential the gateway is left out and the
        scan runs static analysis only.
        """
        if cache is None:
            cache = ScanCache(settings.cache.database_path, enabled=settings.cache.enabled)

        service = settings.analysis_service
        if transport is None and service.credential:
            transport = GeminiTransport(
                api_key=service.credential,
                endpoint=service.endpoint,
                timeout=service.request_timeout_seconds,
                temperature=service.temperature,
                max_output_tokens=service.max_output_tokens,
            )

        gateway = None
        if transport is not None:
            limiter = RateLimiter(
                min_interval=settings.rate_limiting.min_interval_seconds,
                max_per_window=settings.rate_limiting.max_requests_per_minute,
                clock=clock,
                enabled=settings.rate_limiting.enabled,
            )
            gateway = AnalysisGateway(
                transport=transport,
                cache=cache,
                rate_limiter=limiter,
                model=service.model,
                max_attempts=service.max_attempts,
                backoff_base=service.backoff_base_seconds,
                backoff_max=service.backoff_max_seconds,
                request_timeout=service.request_timeout_seconds,
            )
        else:
            logger.info("Remote analysis disabled - no credential configured, running static analysis only")

        static_scanner = StaticPatternScanner()
        dependency_scanner = None
        deps = settings.dependencies
        if deps.enabled:
            if crates_client is None:
                crates_client = CratesIOClient(
                    base_url=deps.registry_url,
                    rate_limiter=RateLimiter(
                        min_interval=RATE_LIMIT_WINDOW_SECONDS / deps.registry_requests_per_minute,
                        max_per_window=deps.registry_requests_per_minute,
                        clock=clock,
                    ),
                )
            dependency_scanner = DependencyScanner(
                tables=ReferenceTables.load(),
                static_scanner=static_scanner,
                crates_client=crates_client,
                typosquat_ratio_threshold=deps.typosquat_ratio_threshold,
                deep_analysis=deps.deep_analysis,
                recent_publication_days=deps.recent_publication_days,
                low_download_threshold=deps.low_download_threshold,
                max_excerpt_chars=settings.scanning.max_chunk_chars,
            )

        return cls(
            settings=settings,
            cache=cache,
            gateway=gateway,
            dependency_scanner=dependency_scanner,
            static_scanner=static_scanner,
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, reason: str = "cancelled") -> None:
        """Stop dispatching remote calls; requests already sent finish normally.

        Workers waiting for a rate-limit slot or a retry give up as soon as
        they wake, and remaining items are answered from the cache only.
        """
        if self._stop_reason is None:
            logger.warning(f"Scan {reason}: no new remote analyses will be started")
            self._stop_reason = reason

    @property
    def cancelled(self) -> bool:
        return self._stop_reason is not None

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def discover_files(self, target: Path) -> list[tuple[Path, str]]:
        """Rust files under *target* as (absolute path, relative posix path)."""
        if target.is_file():
            return [(target, target.name)]

        scanning = self.settings.scanning
        files = []
        for path in sorted(target.rglob("*.rs")):
            relative = path.relative_to(target).as_posix()
            if _matches_any(relative, scanning.exclude_patterns):
                continue
            try:
                size = path.stat().st_size
            except OSError as e:
                logger.warning(f"Cannot stat {relative}: {e}")
                continue
            if size > scanning.max_file_size:
                logger.info(f"Skipping {relative}: {size} bytes exceeds max_file_size")
                continue
            files.append((path, relative))
        return files

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------

    async def scan(self, target: Path | str, scan_dependencies: bool = True) -> ScanResult:
        """Scan a crate directory (or one ``.rs`` file).

        Raises:
            ScanTargetError: The target does not exist or is not readable.
        """
        target = Path(target)
        if not target.exists():
            raise ScanTargetError(f"Scan target does not exist: {target}")
        if target.is_file() and target.suffix != ".rs":
            raise ScanTargetError(f"Scan target is not a Rust source file: {target}")

        started = time.monotonic()
        started_at = datetime.now(timezone.utc)
        self._stop_reason = None
        hits_before = self.gateway.cache_hits if self.gateway else 0
        calls_before = self.gateway.remote_calls if self.gateway else 0

        if self.settings.cache.auto_cleanup:
            self.cache.evict(self.settings.cache.max_age_days)

        root = target if target.is_dir() else find_crate_root(target)
        crate_name, crate_version = read_crate_identity(root)
        logger.info(f"Scanning {crate_name} {crate_version} at {target}")

        state = _ScanState()
        items = self._prepare_files(target, crate_version, state)
        if scan_dependencies and target.is_dir():
            items.extend(await self._prepare_dependencies(root, state))

        timer = None
        timeout = self.settings.scanning.timeout_seconds
        if timeout:
            timer = asyncio.get_running_loop().call_later(
                timeout, self.cancel, f"timed out after {timeout}s"
            )
        try:
            await self._run_workers(items, state)
        finally:
            if timer is not None:
                timer.cancel()

        result = self._assemble(target, crate_name, started_at, state)
        result.summary.cache_hits = (self.gateway.cache_hits - hits_before) if self.gateway else 0
        result.summary.remote_calls = (self.gateway.remote_calls - calls_before) if self.gateway else 0
        result.summary.duration_seconds = round(time.monotonic() - started, 3)

        self.cache.record_session(
            total_packages=len(items),
            cache_hits=state.cached,
            new_scans=state.analyzed,
        )
        logger.info(
            f"Scan finished: {result.summary.files_scanned} files, "
            f"{result.summary.dependencies_scanned} dependencies, "
            f"{result.summary.remote_calls} remote calls, "
            f"{result.summary.unavailable_analyses} unavailable",
            extra={"event": "scan_finished", "crate": crate_name, "version": crate_version},
        )
        return result

    def _prepare_files(self, target: Path, version: str, state: _ScanState) -> list[WorkItem]:
        remote_mode = self.settings.scanning.remote_analysis
        items: list[WorkItem] = []

        for path, relative in self.discover_files(target):
            report = FileReport(path=relative)
            state.files[relative] = report
            try:
                source = path.read_bytes()
                chunks = self.chunker.parse_and_chunk(source, relative)
            except ParseFailure as e:
                logger.warning(
                    f"Parse failure: {e}",
                    extra={"event": "parse_failure", "path": relative},
                )
                report.analysis_status = AnalysisStatus.PARSE_FAILED
                report.findings.append(
                    Finding(
                        severity=Severity.LOW,
                        origin=FindingOrigin.STATIC,
                        location=Location(path=relative),
                        description="parse failure",
                        code_snippet=str(e)[:200],
                    )
                )
                continue
            except OSError as e:
                logger.warning(f"Cannot read {relative}: {e}")
                report.analysis_status = AnalysisStatus.SKIPPED
                report.analyses.append(f"file unreadable: {e}")
                continue

            report.chunk_count = len(chunks)
            state.chunk_status[relative] = {}
            for chunk in chunks:
                chunk.static_findings = self.static_scanner.scan(chunk)
                report.findings.extend(chunk.static_findings)

                wanted = remote_mode == "all" or (
                    remote_mode == "flagged" and bool(chunk.static_findings)
                )
                if self.gateway is None or not wanted:
                    state.chunk_status[relative][chunk.start_line] = AnalysisStatus.STATIC_ONLY
                    continue

                subject = AnalysisSubject(
                    identity=relative,
                    version=version,
                    prompt=build_chunk_prompt(chunk),
                    path=relative,
                    line_offset=chunk.start_line,
                )
                priority = max((f.severity.rank for f in chunk.static_findings), default=-1)
                items.append(
                    WorkItem(
                        subject=subject,
                        content_hash=content_hash(chunk.text),
                        priority=priority,
                        chunk=chunk,
                    )
                )
        return items

    async def _prepare_dependencies(self, root: Path, state: _ScanState) -> list[WorkItem]:
        scanner = self.dependency_scanner
        lockfile = root / "Cargo.lock"
        if scanner is None or not lockfile.is_file():
            if scanner is not None:
                logger.info(f"No Cargo.lock in {root}; skipping dependency analysis")
            return []

        try:
            dependencies = parse_lockfile(lockfile)
        except LockfileError as e:
            logger.warning(f"Dependency analysis skipped: {e}")
            return []

        assessed = await asyncio.gather(*(scanner.assess(dep) for dep in dependencies))
        items = []
        for dependency in assessed:
            state.dependencies[dependency.key] = dependency
            if self.gateway is None or not scanner.wants_deep_analysis(dependency):
                continue
            subject, hash_ = scanner.analysis_subject(dependency)
            items.append(
                WorkItem(
                    subject=subject,
                    content_hash=hash_,
                    priority=dependency.risk_score,
                    dependency=dependency,
                )
            )
        return items

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _run_workers(self, items: list[WorkItem], state: _ScanState) -> None:
        if not items:
            return
        assert self.gateway is not None

        queue: asyncio.Queue[WorkItem] = asyncio.Queue()
        # Statically flagged work first; key keeps the dispatch order stable
        for item in sorted(items, key=lambda i: (-i.priority, i.key)):
            queue.put_nowait(item)

        worker_count = min(self.settings.scanning.concurrent_workers, len(items))
        logger.debug(f"Dispatching {len(items)} analyses to {worker_count} workers")
        workers = [
            asyncio.create_task(self._worker(queue, state), name=f"scan-worker-{n}")
            for n in range(worker_count)
        ]
        await asyncio.gather(*workers)

    async def _worker(self, queue: "asyncio.Queue[WorkItem]", state: _ScanState) -> None:
        while True:
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await self._process(item, state)
            finally:
                queue.task_done()

    async def _process(self, item: WorkItem, state: _ScanState) -> None:
        gateway = self.gateway
        assert gateway is not None

        if self._stop_reason is not None:
            self._finish_stopped(item, state)
            return

        try:
            result = await gateway.analyze(
                item.subject, item.content_hash, should_stop=self._should_stop
            )
        except AnalysisCancelledError:
            self._finish_stopped(item, state)
            return
        except QuotaExceededError as e:
            result = await self._handle_quota(item, state, e)
            if result is None:
                return
        except AnalysisError as e:
            logger.warning(
                f"Analysis unavailable for {item.key}: {e}",
                extra={"event": "analysis_unavailable", "crate": item.key, "error": str(e)},
            )
            self._record_unavailable(item, state, "service error")
            return

        self._record_result(item, state, result)

    def _should_stop(self) -> bool:
        return self._stop_reason is not None

    def _finish_stopped(self, item: WorkItem, state: _ScanState) -> None:
        """Answer an item from the cache only, after cancellation."""
        assert self.gateway is not None and self._stop_reason is not None
        result = self.gateway.cached(item.subject, item.content_hash)
        if result is None:
            self._record_unavailable(item, state, self._stop_reason)
        else:
            self._record_result(item, state, result)

    async def _handle_quota(
        self, item: WorkItem, state: _ScanState, error: QuotaExceededError
    ) -> AnalysisResult | None:
        service = self.settings.analysis_service
        policy = service.on_quota_exceeded

        if policy == "wait" and self._stop_reason is None:
            assert self.gateway is not None
            delay = min(
                error.retry_after if error.retry_after is not None else service.backoff_max_seconds,
                service.max_quota_wait_seconds,
            )
            logger.warning(
                f"Quota exceeded for {item.key}; waiting {delay:.0f}s before one retry",
                extra={"event": "quota_wait", "crate": item.key},
            )
            await self.gateway.clock.sleep(delay)
            try:
                return await self.gateway.analyze(
                    item.subject, item.content_hash, should_stop=self._should_stop
                )
            except AnalysisCancelledError:
                self._finish_stopped(item, state)
                return None
            except AnalysisError as e:
                logger.warning(f"Retry after quota wait failed for {item.key}: {e}")
        elif policy == "abort":
            self.cancel("aborted: analysis quota exhausted")

        self._record_unavailable(item, state, "quota exceeded")
        return None

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def _record_result(self, item: WorkItem, state: _ScanState, result: AnalysisResult) -> None:
        status = AnalysisStatus.CACHED if result.cached else AnalysisStatus.ANALYZED
        if result.cached:
            state.cached += 1
        else:
            state.analyzed += 1

        if item.dependency is not None:
            DependencyScanner.apply_result(item.dependency, result)
            return

        chunk = item.chunk
        assert chunk is not None
        state.chunk_status[chunk.path][chunk.start_line] = status
        state.chunk_analyses.setdefault(chunk.path, {})[chunk.start_line] = (
            f"[lines {chunk.start_line}-{chunk.end_line}] {result.analysis}"
        )
        state.files[chunk.path].findings.extend(result.findings)

    def _record_unavailable(self, item: WorkItem, state: _ScanState, reason: str) -> None:
        state.unavailable += 1
        label = f"analysis unavailable ({reason})"

        if item.dependency is not None:
            dependency = item.dependency
            dependency.analysis_status = AnalysisStatus.UNAVAILABLE
            dependency.analysis = label
            dependency.findings.append(
                Finding(
                    severity=Severity.LOW,
                    origin=FindingOrigin.REMOTE_ANALYSIS,
                    location=Location(path=dependency.key),
                    description=label,
                    rule_id=UNAVAILABLE_RULE_ID,
                )
            )
            return

        chunk = item.chunk
        assert chunk is not None
        state.chunk_status[chunk.path][chunk.start_line] = AnalysisStatus.UNAVAILABLE
        state.chunk_analyses.setdefault(chunk.path, {})[chunk.start_line] = (
            f"[lines {chunk.start_line}-{chunk.end_line}] {label}"
        )
        state.files[chunk.path].findings.append(
            Finding(
                severity=Severity.LOW,
                origin=FindingOrigin.REMOTE_ANALYSIS,
                location=Location(path=chunk.path, line=chunk.start_line),
                description=label,
                rule_id=UNAVAILABLE_RULE_ID,
            )
        )

    @staticmethod
    def _file_status(statuses: dict[int, AnalysisStatus]) -> AnalysisStatus:
        values = set(statuses.values())
        if not values:
            return AnalysisStatus.STATIC_ONLY
        for status in (
            AnalysisStatus.UNAVAILABLE,
            AnalysisStatus.ANALYZED,
            AnalysisStatus.CACHED,
        ):
            if status in values:
                return status
        return AnalysisStatus.STATIC_ONLY

    def _assemble(
        self, target: Path, crate_name: str, started_at: datetime, state: _ScanState
    ) -> ScanResult:
        files = []
        for path in sorted(state.files):
            report = state.files[path]
            if path in state.chunk_status:
                report.analysis_status = self._file_status(state.chunk_status[path])
            analyses = state.chunk_analyses.get(path, {})
            report.analyses = [analyses[line] for line in sorted(analyses)]
            report.findings = sorted(set(report.findings), key=Finding.sort_key)
            files.append(report)

        dependencies = sorted(
            state.dependencies.values(), key=lambda d: (-d.risk_score, d.name, d.version)
        )
        for dependency in dependencies:
            dependency.findings = sorted(set(dependency.findings), key=Finding.sort_key)

        severity_counts: dict[str, int] = {s.value: 0 for s in Severity}
        for finding in [f for r in files for f in r.findings] + [
            f for d in dependencies for f in d.findings
        ]:
            severity_counts[finding.severity.value] += 1

        risk_counts: dict[str, int] = {}
        for dependency in dependencies:
            risk_counts[dependency.risk_level.value] = risk_counts.get(dependency.risk_level.value, 0) + 1

        summary = ScanSummary(
            files_scanned=len(files),
            chunks_analyzed=sum(r.chunk_count for r in files),
            dependencies_scanned=len(dependencies),
            unavailable_analyses=state.unavailable,
            severity_counts=severity_counts,
            dependency_risk_counts=risk_counts,
            cancelled=self._stop_reason is not None,
        )
        return ScanResult(
            target=str(target),
            crate_name=crate_name,
            started_at=started_at,
            files=files,
            dependencies=dependencies,
            summary=summary,
        )
