"""Tests for the command-line interface."""

import json

import pytest
from click.testing import CliRunner

from cratewarden import __version__
from cratewarden.cli import EXIT_SETUP_ERROR, EXIT_TARGET_ERROR, main
from cratewarden.config import CONFIG_ENV_VAR, CREDENTIAL_ENV_VAR


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """Static-only configuration with the cache inside tmp_path."""
    monkeypatch.delenv(CREDENTIAL_ENV_VAR, raising=False)
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    path = tmp_path / "cratewarden.toml"
    path.write_text(
        "[cache]\n"
        f"database_path = {json.dumps(str(tmp_path / 'cache.db'))}\n"
        "\n"
        "[dependencies]\n"
        "enabled = false\n"
        "\n"
        "[logging]\n"
        'level = "ERROR"\n'
    )
    return path


class TestScanCommand:
    def test_summary_report(self, runner, config_file, rust_crate):
        result = runner.invoke(
            main, ["scan", str(rust_crate), "--format", "summary", "--config", str(config_file)]
        )

        assert result.exit_code == 0, result.output
        assert "demo | Files: 3" in result.output
        assert "Issues in: broken.rs, exec.rs" in result.output

    def test_report_to_file(self, runner, config_file, rust_crate, tmp_path):
        output = tmp_path / "report.json"
        result = runner.invoke(
            main,
            ["scan", str(rust_crate), "--format", "json", "-o", str(output), "--config", str(config_file)],
        )

        assert result.exit_code == 0, result.output
        data = json.loads(output.read_text())
        assert data["crate_name"] == "demo"
        assert f"Report written to {output}" in result.output

    def test_missing_target(self, runner, config_file, tmp_path):
        result = runner.invoke(
            main, ["scan", str(tmp_path / "nowhere"), "--config", str(config_file)]
        )

        assert result.exit_code == EXIT_TARGET_ERROR
        assert "does not exist" in result.output

    def test_invalid_config(self, runner, rust_crate, tmp_path):
        bad = tmp_path / "bad.toml"
        bad.write_text("[scanning]\nconcurrent_workers = 0\n")

        result = runner.invoke(main, ["scan", str(rust_crate), "--config", str(bad)])

        assert result.exit_code == EXIT_SETUP_ERROR
        assert "Configuration error" in result.output


class TestCacheCommand:
    def test_stats_and_export(self, runner, config_file, tmp_path):
        export = tmp_path / "export.json"
        result = runner.invoke(
            main, ["cache", "--stats", "--export", str(export), "--config", str(config_file)]
        )

        assert result.exit_code == 0, result.output
        assert "Exported 0 entries" in result.output
        assert "Total entries: 0" in result.output
        assert json.loads(export.read_text()) == []

    def test_clear(self, runner, config_file):
        result = runner.invoke(main, ["cache", "--clear", "--config", str(config_file)])

        assert result.exit_code == 0, result.output
        assert "Removed 0 cached analyses" in result.output


class TestInitCommand:
    def test_writes_config_once(self, runner, tmp_path):
        path = tmp_path / "conf" / "cratewarden.toml"

        first = runner.invoke(main, ["init", "--path", str(path)])
        second = runner.invoke(main, ["init", "--path", str(path)])
        forced = runner.invoke(main, ["init", "--path", str(path), "--force"])

        assert first.exit_code == 0
        assert path.is_file()
        assert second.exit_code == EXIT_SETUP_ERROR
        assert forced.exit_code == 0


class TestMisc:
    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert __version__ in result.output

    def test_connection_without_credential(self, runner, config_file):
        result = runner.invoke(main, ["test-connection", "--config", str(config_file)])

        assert result.exit_code == EXIT_SETUP_ERROR
        assert "No credential configured" in result.output
