"""Tests for configuration loading."""

import pytest

from cratewarden.config import (
    CONFIG_ENV_VAR,
    CREDENTIAL_ENV_VAR,
    Settings,
    load_settings,
    write_default_config,
)
from cratewarden.constants import DEFAULT_MAX_REQUESTS_PER_MINUTE, DEFAULT_MIN_INTERVAL_SECONDS
from cratewarden.core.exceptions import InvalidConfigError


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """No config file or credential leaks in from the developer machine."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    monkeypatch.delenv(CREDENTIAL_ENV_VAR, raising=False)
    monkeypatch.setattr("cratewarden.config.DEFAULT_APP_DIR", tmp_path / "app")


class TestDefaults:
    def test_defaults(self):
        settings = Settings()

        assert settings.rate_limiting.min_interval_seconds == DEFAULT_MIN_INTERVAL_SECONDS
        assert settings.rate_limiting.max_requests_per_minute == DEFAULT_MAX_REQUESTS_PER_MINUTE
        assert settings.scanning.remote_analysis == "all"
        assert settings.analysis_service.on_quota_exceeded == "skip"
        assert settings.remote_enabled is False

    def test_no_file_gives_defaults(self):
        assert load_settings() == Settings()


class TestLoadSettings:
    def test_explicit_file(self, tmp_path):
        path = tmp_path / "custom.toml"
        path.write_text(
            "[rate_limiting]\n"
            "min_interval_seconds = 0.5\n"
            "\n"
            "[scanning]\n"
            'remote_analysis = "flagged"\n'
            "concurrent_workers = 8\n"
            "\n"
            "[logging]\n"
            "json = true\n"
        )

        settings = load_settings(path)

        assert settings.rate_limiting.min_interval_seconds == 0.5
        assert settings.scanning.remote_analysis == "flagged"
        assert settings.scanning.concurrent_workers == 8
        assert settings.logging.json_format is True

    def test_lookup_order(self, tmp_path, monkeypatch):
        (tmp_path / "cratewarden.toml").write_text("[scanning]\nconcurrent_workers = 2\n")
        assert load_settings().scanning.concurrent_workers == 2

        env_file = tmp_path / "env.toml"
        env_file.write_text("[scanning]\nconcurrent_workers = 3\n")
        monkeypatch.setenv(CONFIG_ENV_VAR, str(env_file))
        assert load_settings().scanning.concurrent_workers == 3

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(InvalidConfigError, match="not found"):
            load_settings(tmp_path / "nope.toml")

    def test_malformed_toml(self, tmp_path):
        path = tmp_path / "bad.toml"
        path.write_text('[scanning\nremote_analysis = "all"\n')

        with pytest.raises(InvalidConfigError):
            load_settings(path)

    @pytest.mark.parametrize(
        "body",
        [
            "[scanning]\nconcurrent_workers = 0\n",
            '[scanning]\nremote_analysis = "sometimes"\n',
            '[analysis_service]\non_quota_exceeded = "panic"\n',
            "[rate_limiting]\nmax_requests_per_minute = 0\n",
        ],
    )
    def test_invalid_values(self, tmp_path, body):
        path = tmp_path / "invalid.toml"
        path.write_text(body)

        with pytest.raises(InvalidConfigError, match="Invalid configuration"):
            load_settings(path)

    def test_credential_from_environment(self, monkeypatch):
        monkeypatch.setenv(CREDENTIAL_ENV_VAR, "env-key")

        settings = load_settings()

        assert settings.analysis_service.credential == "env-key"
        assert settings.remote_enabled

    def test_file_credential_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv(CREDENTIAL_ENV_VAR, "env-key")
        path = tmp_path / "c.toml"
        path.write_text('[analysis_service]\ncredential = "file-key"\n')

        assert load_settings(path).analysis_service.credential == "file-key"


class TestWriteDefaultConfig:
    def test_round_trip(self, tmp_path):
        path = write_default_config(tmp_path / "nested" / "cratewarden.toml")

        settings = load_settings(path)

        assert settings.scanning == Settings().scanning
        assert settings.rate_limiting == Settings().rate_limiting
        assert settings.analysis_service.credential == ""
        assert "[analysis_service]" in path.read_text()

    def test_refuses_to_overwrite(self, tmp_path):
        path = write_default_config(tmp_path / "cratewarden.toml")

        with pytest.raises(InvalidConfigError, match="already exists"):
            write_default_config(path)
        assert write_default_config(path, overwrite=True) == path
