"""Tests for cally.config loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from cally.config import (
    DEFAULT_CALENDAR_PAGE_SIZE,
    GOOGLE_OAUTH_TOKEN_URL,
    JIRA_OAUTH_TOKEN_URL,
    ConfigError,
    load_config,
    parse_config,
    resolve_env_vars,
)

pytestmark = pytest.mark.unit


def _write(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "cally.toml"
    path.write_text(body)
    return path


class TestLoadConfig:
    def test_defaults_for_empty_document(self, tmp_path: Path):
        config = load_config(_write(tmp_path, ""))

        assert config.name == "cally"
        assert config.db_name == "cally"
        assert config.logging.level == "INFO"
        assert config.google.token_url == GOOGLE_OAUTH_TOKEN_URL
        assert config.jira.token_url == JIRA_OAUTH_TOKEN_URL
        assert config.google.refresh_lead_seconds == 300
        assert config.sync.page_size == DEFAULT_CALENDAR_PAGE_SIZE
        assert config.time_manager.overrun_threshold_minutes == 60
        assert config.time_manager.suggestion_limit == 5

    def test_full_document(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "from-env")
        path = _write(
            tmp_path,
            """
[cally]
name = "planner"

[cally.db]
name = "planner_db"

[cally.logging]
level = "debug"
format = "JSON"
log_root = "/var/log/planner"

[providers.google]
client_id = "google-client"
client_secret = "${GOOGLE_CLIENT_SECRET}"
redirect_uri = "https://planner.example.com/oauth/google"

[providers.jira]
client_id = "jira-client"
refresh_lead_seconds = 120

[sync]
page_size = 9000
issue_page_size = 25

[time_manager]
overrun_threshold_minutes = 30
default_estimated_minutes = 45
""",
        )

        config = load_config(path)

        assert config.name == "planner"
        assert config.db_name == "planner_db"
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"
        assert config.logging.log_root == "/var/log/planner"
        assert config.google.client_secret == "from-env"
        assert config.google.redirect_uri == "https://planner.example.com/oauth/google"
        assert config.jira.refresh_lead_seconds == 120
        assert config.sync.page_size == DEFAULT_CALENDAR_PAGE_SIZE
        assert config.sync.issue_page_size == 25
        assert config.time_manager.overrun_threshold_minutes == 30
        assert config.time_manager.default_estimated_minutes == 45

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "absent.toml")

    def test_invalid_toml(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(_write(tmp_path, "[cally\nname ="))


class TestValidation:
    @pytest.mark.parametrize(
        "raw",
        [
            {"cally": {"name": "  "}},
            {"cally": {"logging": {"format": "xml"}}},
            {"cally": {"db": "not-a-table"}},
            {"providers": {"google": {"refresh_lead_seconds": 0}}},
            {"sync": {"page_size": True}},
            {"time_manager": {"overrun_threshold_minutes": -1}},
            {"time_manager": {"suggestion_limit": "5"}},
        ],
    )
    def test_rejects_invalid_values(self, raw):
        with pytest.raises(ConfigError):
            parse_config(raw)


class TestResolveEnvVars:
    def test_nested_values(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("CALLY_A", "alpha")
        resolved = resolve_env_vars({"x": ["${CALLY_A}-1", 3], "y": {"z": "${CALLY_A}"}})
        assert resolved == {"x": ["alpha-1", 3], "y": {"z": "alpha"}}

    def test_reports_every_missing_variable(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("CALLY_MISSING_ONE", raising=False)
        monkeypatch.delenv("CALLY_MISSING_TWO", raising=False)
        with pytest.raises(ConfigError, match="CALLY_MISSING_ONE, CALLY_MISSING_TWO"):
            resolve_env_vars("${CALLY_MISSING_ONE}:${CALLY_MISSING_TWO}")
