"""Application configuration models and loader utilities."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, cast

from dotenv import dotenv_values
from pydantic import BaseModel, Field

from .models import Account

DEFAULT_TRASH_FOLDERS = ("Trash", "[Gmail]/Trash", "Deleted Items", "Deleted")


class SessionSettings(BaseModel):
    """Settings controlling mail server connections and pooling."""

    connect_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Connect, greeting and socket timeout"
    )
    sweep_interval_seconds: float = Field(
        default=60.0, gt=0, description="Interval of the stale session sweep"
    )
    probe_before_reuse: bool = Field(
        default=False, description="Send NOOP before handing out a pooled session"
    )
    force_ipv4: bool = Field(
        default=True, description="Resolve server hosts to IPv4 addresses only"
    )
    search_result_cap: int = Field(
        default=200, ge=1, description="Most recent search hits fetched in detail"
    )
    trash_folders: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TRASH_FOLDERS),
        description="Folders tried, in order, when moving a message to trash",
    )


class OAuthSettings(BaseModel):
    """Settings for the OAuth2 authorization code flow."""

    provider: str = Field(default="microsoft", description="Provider preset name")
    client_id: str | None = Field(
        default=None, description="Override for the provider's public client id"
    )
    client_secret: str | None = Field(
        default=None, description="Client secret for confidential registrations"
    )
    authorize_endpoint: str | None = Field(
        default=None, description="Override for the authorization endpoint"
    )
    token_endpoint: str | None = Field(
        default=None, description="Override for the token endpoint"
    )
    scopes: list[str] | None = Field(
        default=None, description="Override for the requested scopes"
    )
    callback_host: str = Field(default="127.0.0.1", description="Listener address")
    callback_port: int = Field(default=19876, description="Listener port")
    callback_path: str = Field(default="/callback", description="Redirect path")
    pending_timeout_seconds: float = Field(
        default=300.0, gt=0, description="Lifetime of an unanswered authorization"
    )
    http_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Timeout for token endpoint requests"
    )

    @property
    def redirect_uri(self) -> str:
        """Redirect URI registered with the provider."""
        host = "localhost" if self.callback_host == "127.0.0.1" else self.callback_host
        return f"http://{host}:{self.callback_port}{self.callback_path}"


class CacheQueueSettings(BaseModel):
    """Settings for the background cache warmer."""

    delay_seconds: float = Field(
        default=0.5, ge=0, description="Pause between two fetched messages"
    )
    pause_poll_seconds: float = Field(
        default=1.0, gt=0, description="Poll interval while the queue is paused"
    )


class LoggingSettings(BaseModel):
    """Logging preferences."""

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Toggle JSON structured logging"
    )


class AppSettings(BaseModel):
    """Aggregated application configuration."""

    session: SessionSettings = Field(default_factory=SessionSettings)
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    cache: CacheQueueSettings = Field(default_factory=CacheQueueSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    account: Account | None = Field(
        default=None, description="Account used by the command line tool"
    )


ENV_PREFIX = "INBOX_SESSION_"


def _normalize_key(raw_key: str) -> list[str]:
    """Convert an environment variable key into a nested attribute path."""
    trimmed = raw_key.removeprefix(ENV_PREFIX)
    return [segment.lower() for segment in trimmed.split("__") if segment]


def _merge_into_tree(tree: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a value to a nested dictionary given a path."""
    cursor = tree
    for segment in path[:-1]:
        next_node = cursor.setdefault(segment, {})
        cursor = cast(dict[str, Any], next_node)
    cursor[path[-1]] = value


_LIST_FIELDS = frozenset({"scopes", "trash_folders"})


def _normalize_value(field_name: str, value: Any) -> Any:
    if isinstance(value, str) and value in ("", "undefined"):
        return None
    if isinstance(value, str):
        lowercase_value = value.lower()
        if lowercase_value == "true":
            return True
        if lowercase_value == "false":
            return False
        if field_name in _LIST_FIELDS:
            return [item.strip() for item in value.split(",") if item.strip()]
    return value


def _collect_env_values(
    env_file: Path | str | None, *, include_environment: bool = True
) -> dict[str, Any]:
    """Load configuration values from environment variables and optional file."""
    collected: dict[str, Any] = {}

    file_values: dict[str, str | None] = {}
    if env_file:
        env_path = Path(env_file)
        if env_path.is_file():
            file_values = dict(dotenv_values(env_path))

    env_values: dict[str, str | None] = (
        dict(os.environ.items()) if include_environment else {}
    )
    combined: dict[str, Any] = {**file_values, **env_values}

    for key, value in combined.items():
        if not key.startswith(ENV_PREFIX):
            continue
        path = _normalize_key(key)
        if not path:
            continue
        _merge_into_tree(collected, path, _normalize_value(path[-1], value))

    return collected


@lru_cache(maxsize=1)
def load_app_settings(
    env_file: Path | str | None = None,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Load application settings, applying env files and overrides."""
    collected = _collect_env_values(env_file, include_environment=include_environment)
    if overrides:
        collected.update(overrides)
    return AppSettings.model_validate(collected)


__all__ = [
    "AppSettings",
    "CacheQueueSettings",
    "DEFAULT_TRASH_FOLDERS",
    "LoggingSettings",
    "OAuthSettings",
    "SessionSettings",
    "load_app_settings",
]
