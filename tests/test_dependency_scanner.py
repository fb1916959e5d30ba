"""Tests for Cargo.lock parsing and dependency risk assessment."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from cratewarden.core.exceptions import LockfileError
from cratewarden.models import (
    AnalysisResult,
    AnalysisStatus,
    Dependency,
    DependencySource,
    Finding,
    FindingOrigin,
    FlagKind,
    Location,
    PackageMetadata,
    RiskLevel,
    Severity,
)
from cratewarden.scanners.dependency_scanner import (
    DependencyScanner,
    classify_source,
    locate_registry_source,
    parse_lockfile,
    read_source_excerpt,
)
from cratewarden.scanners.static_scanner import StaticPatternScanner
from cratewarden.security.typosquatting import ReferenceTables

REGISTRY = "registry+https://github.com/rust-lang/crates.io-index"

CARGO_LOCK = f"""
version = 3

[[package]]
name = "demo"
version = "0.1.0"
dependencies = [
 "reqwests",
 "serde",
]

[[package]]
name = "reqwests"
version = "0.1.0"
source = "{REGISTRY}"
checksum = "aaaa"
dependencies = [
 "reqwest 0.11.0 ({REGISTRY})",
]

[[package]]
name = "serde"
version = "1.0.200"
source = "{REGISTRY}"
checksum = "bbbb"

[[package]]
name = "forked"
version = "0.2.0"
source = "git+https://example.test/forked.git#abc123"
"""

NOW = datetime(2026, 10, 19, tzinfo=timezone.utc)


@pytest.fixture
def tables():
    return ReferenceTables(
        popular=["reqwest", "serde", "tokio"],
        trusted={"serde", "reqwest"},
        suspicious_keywords=["steal"],
        known_malicious={"rustdecimal"},
        suspicious_authors={"evil-publisher"},
        network_crates={"reqwest"},
        process_crates={"duct"},
    )


@pytest.fixture
def cargo_home(tmp_path):
    home = tmp_path / "cargo"
    (home / "registry" / "src").mkdir(parents=True)
    return home


@pytest.fixture
def scanner(tables, cargo_home):
    return DependencyScanner(tables, StaticPatternScanner(), cargo_home_dir=cargo_home)


def _unpack(home, name, version, files):
    root = home / "registry" / "src" / "index.crates.io-6f17d22bba15001f" / f"{name}-{version}"
    for relative, text in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
    return root


class TestLockfile:
    def test_parse(self, tmp_path):
        lockfile = tmp_path / "Cargo.lock"
        lockfile.write_text(CARGO_LOCK)

        deps = {d.name: d for d in parse_lockfile(lockfile)}

        assert set(deps) == {"reqwests", "serde", "forked"}
        assert deps["reqwests"].source == DependencySource.REGISTRY
        assert deps["reqwests"].content_hash == "aaaa"
        assert deps["reqwests"].dependencies == ["reqwest"]
        assert deps["forked"].source == DependencySource.GIT
        assert deps["forked"].content_hash is None

    def test_invalid_lockfile(self, tmp_path):
        lockfile = tmp_path / "Cargo.lock"
        lockfile.write_text('[[package]]\nname = "unterminated\n')

        with pytest.raises(LockfileError):
            parse_lockfile(lockfile)

    def test_missing_lockfile(self, tmp_path):
        with pytest.raises(LockfileError, match="not found"):
            parse_lockfile(tmp_path / "Cargo.lock")

    @pytest.mark.parametrize(
        "source,kind",
        [
            (REGISTRY, DependencySource.REGISTRY),
            ("sparse+https://index.crates.io/", DependencySource.REGISTRY),
            ("git+https://example.test/x.git", DependencySource.GIT),
            ("path+file:///src/x", DependencySource.PATH),
            (None, DependencySource.PATH),
            ("weird", DependencySource.UNKNOWN),
        ],
    )
    def test_classify_source(self, source, kind):
        assert classify_source(source)[0] == kind


class TestLocalSource:
    def test_locate_and_excerpt(self, cargo_home):
        root = _unpack(
            cargo_home,
            "foo",
            "1.0.0",
            {"build.rs": "fn main() {}\n", "src/lib.rs": "pub fn f() {}\n"},
        )

        assert locate_registry_source("foo", "1.0.0", cargo_home) == root
        assert locate_registry_source("foo", "2.0.0", cargo_home) is None

        excerpt = read_source_excerpt(root)
        assert excerpt.startswith("// build.rs\nfn main() {}")
        assert "// src/lib.rs\npub fn f() {}" in excerpt

    def test_excerpt_is_bounded(self, cargo_home):
        root = _unpack(cargo_home, "big", "1.0.0", {"src/lib.rs": "x" * 1000})
        assert len(read_source_excerpt(root, max_chars=100)) == 100


class TestAssess:
    """Flags and initial scores from name, metadata and capabilities."""

    @pytest.mark.asyncio
    async def test_lookalike_with_network_dependency(self, scanner):
        dep = Dependency(
            name="reqwests",
            version="0.1.0",
            source=DependencySource.REGISTRY,
            dependencies=["reqwest"],
        )

        await scanner.assess(dep, now=NOW)

        kinds = {f.kind for f in dep.flags}
        assert kinds == {FlagKind.TYPOSQUATTING, FlagKind.NETWORK_CAPABILITY}
        assert dep.risk_score == 70
        assert dep.risk_level == RiskLevel.HIGH
        assert dep.analysis_status == AnalysisStatus.STATIC_ONLY

    @pytest.mark.asyncio
    async def test_registry_metadata_flags(self, tables, cargo_home):
        crates_client = AsyncMock()
        crates_client.fetch_metadata.return_value = PackageMetadata(
            publish_date=NOW - timedelta(days=2),
            download_count=12,
            authors=["Evil-Publisher"],
        )
        scanner = DependencyScanner(
            tables, StaticPatternScanner(), crates_client=crates_client, cargo_home_dir=cargo_home
        )
        dep = Dependency(name="fresh-crate", version="0.0.1", source=DependencySource.REGISTRY)

        await scanner.assess(dep, now=NOW)

        crates_client.fetch_metadata.assert_awaited_once_with("fresh-crate", "0.0.1")
        assert {f.kind for f in dep.flags} == {
            FlagKind.RECENT_PUBLICATION,
            FlagKind.LOW_DOWNLOADS,
            FlagKind.SUSPICIOUS_AUTHOR,
        }
        assert dep.risk_score == 65

    @pytest.mark.asyncio
    async def test_trusted_crates_skip_the_registry(self, tables, cargo_home):
        crates_client = AsyncMock()
        scanner = DependencyScanner(
            tables, StaticPatternScanner(), crates_client=crates_client, cargo_home_dir=cargo_home
        )
        dep = Dependency(name="serde", version="1.0.200", source=DependencySource.REGISTRY)

        await scanner.assess(dep, now=NOW)

        crates_client.fetch_metadata.assert_not_awaited()
        assert dep.flags == []
        assert dep.risk_level == RiskLevel.CLEAN

    @pytest.mark.asyncio
    async def test_unknown_registry_crate_is_unscored_without_metadata(self, scanner):
        dep = Dependency(name="plain-crate", version="1.0.0", source=DependencySource.REGISTRY)

        await scanner.assess(dep, now=NOW)

        assert dep.flags == []
        assert dep.risk_score == 0

    def test_old_popular_release_is_not_flagged(self, scanner):
        dep = Dependency(
            name="plain-crate",
            version="1.0.0",
            metadata=PackageMetadata(
                publish_date=NOW - timedelta(days=400), download_count=5_000_000
            ),
        )
        assert scanner.metadata_flags(dep, now=NOW) == []

    @pytest.mark.asyncio
    async def test_process_execution_in_local_source(self, scanner, cargo_home):
        _unpack(
            cargo_home,
            "helper",
            "0.3.0",
            {"build.rs": 'fn main() { std::process::Command::new("curl").status().unwrap(); }\n'},
        )
        dep = Dependency(name="helper", version="0.3.0", source=DependencySource.REGISTRY)

        await scanner.assess(dep, now=NOW)

        assert [f.kind for f in dep.flags] == [FlagKind.PROCESS_EXECUTION]
        assert dep.risk_score == 30
        assert scanner.wants_deep_analysis(dep)

    @pytest.mark.asyncio
    async def test_known_malicious(self, scanner):
        dep = Dependency(name="rustdecimal", version="1.23.1", source=DependencySource.REGISTRY)

        await scanner.assess(dep, now=NOW)

        assert dep.findings[0].severity == Severity.CRITICAL
        assert "known-malicious" in dep.findings[0].description
        assert scanner.wants_deep_analysis(dep)


class TestDeepAnalysisSelection:
    def test_modes(self, tables, cargo_home):
        plain = Dependency(name="plain-crate", version="1.0.0")
        keyword = Dependency(name="steal-things", version="1.0.0")
        trusted = Dependency(name="serde", version="1.0.0")

        def scanner(mode):
            return DependencyScanner(
                tables, StaticPatternScanner(), deep_analysis=mode, cargo_home_dir=cargo_home
            )

        assert not scanner("none").wants_deep_analysis(keyword)
        assert scanner("suspicious").wants_deep_analysis(keyword)
        assert not scanner("suspicious").wants_deep_analysis(plain)
        assert scanner("untrusted").wants_deep_analysis(plain)
        assert not scanner("untrusted").wants_deep_analysis(trusted)

    def test_subject_uses_lockfile_checksum(self, scanner):
        dep = Dependency(name="plain-crate", version="1.0.0", content_hash="cafe")

        subject, hash_ = scanner.analysis_subject(dep)

        assert hash_ == "cafe"
        assert subject.identity == "plain-crate"
        assert subject.version == "1.0.0"
        assert subject.path == "plain-crate@1.0.0"
        assert subject.line_offset is None

    def test_subject_without_checksum_hashes_the_prompt(self, scanner):
        dep = Dependency(name="git-crate", version="0.1.0")

        first, hash_a = scanner.analysis_subject(dep)
        _, hash_b = scanner.analysis_subject(dep)

        assert hash_a == hash_b
        assert len(hash_a) == 64


class TestApplyResult:
    def test_remote_findings_raise_the_score(self):
        dep = Dependency(name="evil", version="0.1.0")
        result = AnalysisResult(
            analysis="exfiltrates env vars",
            findings=[
                Finding(
                    severity=Severity.HIGH,
                    origin=FindingOrigin.REMOTE_ANALYSIS,
                    location=Location(path="evil@0.1.0", line=4),
                    description="sends secrets over HTTP",
                )
            ],
        )

        DependencyScanner.apply_result(dep, result)

        assert dep.analysis == "exfiltrates env vars"
        assert dep.analysis_status == AnalysisStatus.ANALYZED
        assert [f.kind for f in dep.flags] == [FlagKind.REMOTE_HIGH]
        assert dep.risk_score == 30

    def test_cached_result_status(self):
        dep = Dependency(name="evil", version="0.1.0")
        DependencyScanner.apply_result(dep, AnalysisResult(analysis="ok", cached=True))
        assert dep.analysis_status == AnalysisStatus.CACHED
