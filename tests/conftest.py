"""Shared fixtures for CrateWarden tests."""

import json
import logging
from pathlib import Path

import pytest

from cratewarden.core.cache import ScanCache
from cratewarden.core.rate_limiter import RateLimiter, VirtualClock


class FakeTransport:
    """Scripted analysis transport.

    ``outcomes`` is consumed in order; the last outcome repeats. An outcome
    that is an exception is raised, a string is returned, and a callable is
    called with the prompt.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes) or [analysis_json("No issues found.")]
        self.prompts: list[str] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def send(self, prompt: str, model: str) -> str:
        self.prompts.append(prompt)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if callable(outcome) and not isinstance(outcome, Exception):
            outcome = outcome(prompt)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def analysis_json(analysis: str, findings: list[dict] | None = None) -> str:
    return json.dumps({"analysis": analysis, "findings": findings or []})


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Undo configure_logging() so caplog sees package records in every test."""
    yield
    package_logger = logging.getLogger("cratewarden")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(logging.NOTSET)
    package_logger.propagate = True


@pytest.fixture
def cache():
    store = ScanCache(":memory:")
    yield store
    store.close()


@pytest.fixture
def clock():
    return VirtualClock()


@pytest.fixture
def limiter(clock):
    """Limiter that never blocks, on a virtual clock."""
    return RateLimiter(min_interval=0.0, max_per_window=1000, clock=clock)


@pytest.fixture
def rust_crate(tmp_path: Path) -> Path:
    """A small crate with a clean file, a flagged file, a broken file and
    an excluded build artefact."""
    root = tmp_path / "demo"
    (root / "src").mkdir(parents=True)
    (root / "target" / "debug").mkdir(parents=True)

    (root / "Cargo.toml").write_text(
        '[package]\nname = "demo"\nversion = "0.1.0"\nedition = "2021"\n'
    )
    (root / "src" / "lib.rs").write_text(
        "/// Adds two numbers.\n"
        "pub fn add(a: u32, b: u32) -> u32 {\n"
        "    a + b\n"
        "}\n"
        "\n"
        "pub struct Point {\n"
        "    pub x: i32,\n"
        "    pub y: i32,\n"
        "}\n"
    )
    (root / "src" / "exec.rs").write_text(
        "use std::process::Command;\n"
        "\n"
        "pub fn run() {\n"
        '    let _ = Command::new("sh").arg("-c").arg("id").output();\n'
        "}\n"
    )
    (root / "src" / "broken.rs").write_text("fn broken( {\n")
    (root / "target" / "debug" / "generated.rs").write_text("fn generated() {}\n")
    return root
