"""Unit tests for config.py."""

from __future__ import annotations

import pytest

from lspmux.config import EvictionPolicy, LspSettings, load_settings
from lspmux.errors import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "LSPMUX_REQUEST_TIMEOUT",
        "LSPMUX_INITIALIZE_TIMEOUT",
        "LSPMUX_SHUTDOWN_TIMEOUT",
        "LSPMUX_SPAWN_CHECK_DELAY",
        "LSPMUX_DIAGNOSTICS_TIMEOUT",
        "LSPMUX_IDLE_FILE_TIMEOUT",
        "LSPMUX_MAX_OPEN_FILES",
        "LSPMUX_STDERR_LINES",
        "LSPMUX_CONFIG",
    ):
        monkeypatch.delenv(name, raising=False)


class TestDefaults:
    @pytest.mark.unit
    def test_defaults(self):
        settings = LspSettings()

        assert settings.request_timeout == 10.0
        assert settings.initialize_timeout == 30.0
        assert settings.disabled_servers == frozenset()
        assert settings.framing == {}

    @pytest.mark.unit
    def test_eviction_disabled_by_default(self):
        assert LspSettings().eviction == EvictionPolicy()
        assert not EvictionPolicy().enabled
        assert EvictionPolicy(max_open_files=10).enabled


class TestFromEnv:
    @pytest.mark.unit
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("LSPMUX_REQUEST_TIMEOUT", "2.5")
        monkeypatch.setenv("LSPMUX_MAX_OPEN_FILES", "50")
        monkeypatch.setenv("LSPMUX_IDLE_FILE_TIMEOUT", "600")

        settings = LspSettings.from_env()

        assert settings.request_timeout == 2.5
        assert settings.eviction == EvictionPolicy(idle_timeout=600.0, max_open_files=50)

    @pytest.mark.unit
    def test_empty_value_uses_default(self, monkeypatch):
        monkeypatch.setenv("LSPMUX_REQUEST_TIMEOUT", "")

        assert LspSettings.from_env().request_timeout == 10.0

    @pytest.mark.unit
    def test_invalid_number(self, monkeypatch):
        monkeypatch.setenv("LSPMUX_REQUEST_TIMEOUT", "soon")

        with pytest.raises(ConfigurationError, match="LSPMUX_REQUEST_TIMEOUT"):
            LspSettings.from_env()

    @pytest.mark.unit
    def test_invalid_integer(self, monkeypatch):
        monkeypatch.setenv("LSPMUX_MAX_OPEN_FILES", "1.5")

        with pytest.raises(ConfigurationError):
            LspSettings.from_env()


class TestYamlFile:
    @pytest.mark.unit
    def test_missing_file_returns_env_settings(self, tmp_path):
        assert load_settings(tmp_path / "missing.yaml") == LspSettings()

    @pytest.mark.unit
    def test_file_overrides(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "request_timeout: 3\n"
            "max_open_files: 20\n"
            "disabled_servers:\n  - pyright\n"
            "framing:\n  typescript: content-length\n"
        )

        settings = load_settings(path)

        assert settings.request_timeout == 3.0
        assert settings.max_open_files == 20
        assert settings.disabled_servers == frozenset({"pyright"})
        assert settings.framing == {"typescript": "content-length"}

    @pytest.mark.unit
    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yaml"
        path.write_text("shutdown_timeout: 1\n")
        monkeypatch.setenv("LSPMUX_CONFIG", str(path))

        assert load_settings().shutdown_timeout == 1.0

    @pytest.mark.unit
    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert load_settings(path) == LspSettings()

    @pytest.mark.unit
    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("request_timeout: [unclosed\n")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_settings(path)

    @pytest.mark.unit
    def test_non_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError, match="mapping"):
            load_settings(path)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "body, message",
        [
            ("colour: blue\n", "Unknown settings"),
            ("request_timeout: fast\n", "must be a number"),
            ("max_open_files: many\n", "must be an integer"),
            ("disabled_servers: pyright\n", "must be a list"),
            ("framing: newline\n", "must be a mapping"),
        ],
    )
    def test_bad_values(self, tmp_path, body, message):
        path = tmp_path / "config.yaml"
        path.write_text(body)

        with pytest.raises(ConfigurationError, match=message):
            load_settings(path)
