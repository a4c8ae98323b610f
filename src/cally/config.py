"""Cally configuration loading and validation.

Reads ``cally.toml``, resolves ``${VAR}`` environment references, and
returns a validated :class:`CallyConfig` dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# Matches ${VAR_NAME} with alphanumeric and underscore names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
JIRA_OAUTH_TOKEN_URL = "https://auth.atlassian.com/oauth/token"

DEFAULT_REFRESH_LEAD_SECONDS = 300
DEFAULT_CALENDAR_PAGE_SIZE = 2500
DEFAULT_ISSUE_PAGE_SIZE = 50
DEFAULT_OVERRUN_THRESHOLD_MINUTES = 60
DEFAULT_ESTIMATED_MINUTES = 60
DEFAULT_SUGGESTION_LIMIT = 5

_LOG_FORMATS = ("text", "json")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [cally.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class OAuthProviderConfig:
    """OAuth client registration for one provider ([providers.<name>])."""

    token_url: str
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str | None = None
    refresh_lead_seconds: int = DEFAULT_REFRESH_LEAD_SECONDS


@dataclass
class SyncConfig:
    """Reconciliation limits from [sync]."""

    page_size: int = DEFAULT_CALENDAR_PAGE_SIZE
    issue_page_size: int = DEFAULT_ISSUE_PAGE_SIZE


@dataclass
class TimeManagerConfig:
    """Task session defaults from [time_manager]."""

    overrun_threshold_minutes: int = DEFAULT_OVERRUN_THRESHOLD_MINUTES
    default_estimated_minutes: int = DEFAULT_ESTIMATED_MINUTES
    suggestion_limit: int = DEFAULT_SUGGESTION_LIMIT


def _default_google() -> OAuthProviderConfig:
    return OAuthProviderConfig(token_url=GOOGLE_OAUTH_TOKEN_URL)


def _default_jira() -> OAuthProviderConfig:
    return OAuthProviderConfig(token_url=JIRA_OAUTH_TOKEN_URL)


@dataclass
class CallyConfig:
    """Fully parsed configuration."""

    name: str = "cally"
    db_name: str = "cally"
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    google: OAuthProviderConfig = field(default_factory=_default_google)
    jira: OAuthProviderConfig = field(default_factory=_default_jira)
    sync: SyncConfig = field(default_factory=SyncConfig)
    time_manager: TimeManagerConfig = field(default_factory=TimeManagerConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If any referenced variable is not set in the environment.
    """
    if isinstance(value, dict):
        return {key: resolve_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]
    if isinstance(value, str):
        return _resolve_string(value)
    return value


def _resolve_string(s: str) -> str:
    """Replace every ``${VAR_NAME}`` in *s*, reporting all missing names at once."""
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)
    if missing:
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)}"
        )
    return result


def _require_table(parent: dict[str, Any], key: str, label: str) -> dict[str, Any]:
    value = parent.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{label}] must be a table")
    return value


def _positive_int(section: dict[str, Any], key: str, default: int, label: str) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"{label}.{key} must be a positive integer, got {value!r}")
    return value


def _parse_logging(cally_section: dict[str, Any]) -> LoggingConfig:
    section = _require_table(cally_section, "logging", "cally.logging")
    fmt = str(section.get("format", "text")).lower()
    if fmt not in _LOG_FORMATS:
        raise ConfigError(f"cally.logging.format must be one of {_LOG_FORMATS}, got {fmt!r}")
    log_root = section.get("log_root")
    return LoggingConfig(
        level=str(section.get("level", "INFO")).upper(),
        format=fmt,
        log_root=str(log_root) if log_root else None,
    )


def _parse_provider(
    providers_section: dict[str, Any], name: str, default_token_url: str
) -> OAuthProviderConfig:
    section = _require_table(providers_section, name, f"providers.{name}")
    redirect_uri = section.get("redirect_uri")
    return OAuthProviderConfig(
        token_url=str(section.get("token_url", default_token_url)),
        client_id=str(section.get("client_id", "")),
        client_secret=str(section.get("client_secret", "")),
        redirect_uri=str(redirect_uri) if redirect_uri else None,
        refresh_lead_seconds=_positive_int(
            section, "refresh_lead_seconds", DEFAULT_REFRESH_LEAD_SECONDS, f"providers.{name}"
        ),
    )


def parse_config(raw: dict[str, Any]) -> CallyConfig:
    """Validate an already-parsed TOML document into a :class:`CallyConfig`."""
    data = resolve_env_vars(raw)

    cally_section = _require_table(data, "cally", "cally")
    db_section = _require_table(cally_section, "db", "cally.db")
    providers_section = _require_table(data, "providers", "providers")
    sync_section = _require_table(data, "sync", "sync")
    tm_section = _require_table(data, "time_manager", "time_manager")

    name = str(cally_section.get("name", "cally")).strip()
    if not name:
        raise ConfigError("cally.name must be a non-empty string")

    return CallyConfig(
        name=name,
        db_name=str(db_section.get("name", name)),
        logging=_parse_logging(cally_section),
        google=_parse_provider(providers_section, "google", GOOGLE_OAUTH_TOKEN_URL),
        jira=_parse_provider(providers_section, "jira", JIRA_OAUTH_TOKEN_URL),
        sync=SyncConfig(
            page_size=min(
                _positive_int(sync_section, "page_size", DEFAULT_CALENDAR_PAGE_SIZE, "sync"),
                DEFAULT_CALENDAR_PAGE_SIZE,
            ),
            issue_page_size=_positive_int(
                sync_section, "issue_page_size", DEFAULT_ISSUE_PAGE_SIZE, "sync"
            ),
        ),
        time_manager=TimeManagerConfig(
            overrun_threshold_minutes=_positive_int(
                tm_section,
                "overrun_threshold_minutes",
                DEFAULT_OVERRUN_THRESHOLD_MINUTES,
                "time_manager",
            ),
            default_estimated_minutes=_positive_int(
                tm_section, "default_estimated_minutes", DEFAULT_ESTIMATED_MINUTES, "time_manager"
            ),
            suggestion_limit=_positive_int(
                tm_section, "suggestion_limit", DEFAULT_SUGGESTION_LIMIT, "time_manager"
            ),
        ),
    )


def load_config(path: Path | str) -> CallyConfig:
    """Load and validate configuration from a TOML file.

    Raises
    ------
    ConfigError
        If the file is missing, is not valid TOML, or fails validation.
    """
    config_path = Path(path)
    if not config_path.is_file():
        raise ConfigError(f"Config file not found: {config_path}")
    try:
        with config_path.open("rb") as fh:
            raw = tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc
    return parse_config(raw)
