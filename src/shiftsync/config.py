"""Runtime configuration loaded from environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict

from shiftsync.connectors.cursor import CURSOR_KINDS, CursorKind

_TRUE_VALUES = ("true", "1", "yes")
_FALSE_VALUES = ("false", "0", "no", "")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_LOG_FORMATS = ("text", "json")


def _require(env: Mapping[str, str], name: str) -> str:
    value = env.get(name, "").strip()
    if not value:
        raise ValueError(f"{name} is required")
    return value


def _int(env: Mapping[str, str], name: str, default: str) -> int:
    raw = env.get(name, default)
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw}") from exc


def _optional_int(env: Mapping[str, str], name: str) -> int | None:
    if not env.get(name, "").strip():
        return None
    return _int(env, name, "")


def _float(env: Mapping[str, str], name: str, default: str) -> float:
    raw = env.get(name, default)
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw}") from exc
    if value < 0:
        raise ValueError(f"{name} must not be negative, got: {raw}")
    return value


def _bool(env: Mapping[str, str], name: str, default: str) -> bool:
    raw = env.get(name, default).strip().lower()
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got: {raw}")


class ShiftSyncConfig(BaseModel):
    """Configuration for the inbox watcher."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    # IMAP
    email_host: str
    email_port: int = 993
    email_username: str
    email_password: str
    email_mailbox: str = "INBOX"
    email_socket_timeout_s: float = 35.0

    # Message selection
    target_sender: str
    debug_mode: bool = False
    debug_sender: str | None = None
    target_name: str

    # Google Calendar
    calendar_id: str
    calendar_timezone: str = "Europe/Amsterdam"
    event_summary_prefix: str = "Kwalitaria"
    calendar_replace_week: bool = True
    google_client_id: str
    google_client_secret: str
    google_refresh_token: str

    # Runtime controls
    cursor_kind: CursorKind = "uid"
    cursor_path: Path | None = None
    reconnect_backoff_s: float = 5.0
    logout_timeout_s: float = 1.0
    poll_interval_s: float = 30.0
    metrics_port: int | None = None
    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> ShiftSyncConfig:
        """Build the config from ``env`` (defaults to ``os.environ``).

        Raises ``ValueError`` naming the offending variable.
        """
        env = os.environ if env is None else env

        cursor_kind = env.get("CURSOR_KIND", "uid").strip().lower()
        if cursor_kind not in CURSOR_KINDS:
            raise ValueError(f"CURSOR_KIND must be one of {CURSOR_KINDS}, got: {cursor_kind}")

        timezone = env.get("CALENDAR_TIMEZONE", "Europe/Amsterdam").strip()
        try:
            ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"CALENDAR_TIMEZONE is not a known time zone: {timezone}") from exc

        log_level = env.get("LOG_LEVEL", "INFO").strip().upper()
        if log_level not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {_LOG_LEVELS}, got: {log_level}")
        log_format = env.get("LOG_FORMAT", "text").strip().lower()
        if log_format not in _LOG_FORMATS:
            raise ValueError(f"LOG_FORMAT must be one of {_LOG_FORMATS}, got: {log_format}")

        debug_mode = _bool(env, "DEBUG_MODE", "false")
        debug_sender = env.get("DEBUG_SENDER", "").strip() or None
        if debug_mode and debug_sender is None:
            raise ValueError("DEBUG_SENDER is required when DEBUG_MODE=true")

        cursor_path = env.get("CURSOR_PATH", "").strip()

        return cls(
            email_host=_require(env, "EMAIL_HOST"),
            email_port=_int(env, "EMAIL_PORT", "993"),
            email_username=_require(env, "EMAIL_USERNAME"),
            email_password=_require(env, "EMAIL_PASSWORD"),
            email_mailbox=env.get("EMAIL_MAILBOX", "INBOX").strip() or "INBOX",
            email_socket_timeout_s=_float(env, "EMAIL_SOCKET_TIMEOUT_S", "35"),
            target_sender=_require(env, "TARGET_SENDER"),
            debug_mode=debug_mode,
            debug_sender=debug_sender,
            target_name=_require(env, "TARGET_NAME"),
            calendar_id=_require(env, "CALENDAR_ID"),
            calendar_timezone=timezone,
            event_summary_prefix=env.get("EVENT_SUMMARY_PREFIX", "Kwalitaria").strip()
            or "Kwalitaria",
            calendar_replace_week=_bool(env, "CALENDAR_REPLACE_WEEK", "true"),
            google_client_id=_require(env, "GOOGLE_CLIENT_ID"),
            google_client_secret=_require(env, "GOOGLE_CLIENT_SECRET"),
            google_refresh_token=_require(env, "GOOGLE_REFRESH_TOKEN"),
            cursor_kind=cursor_kind,
            cursor_path=Path(cursor_path) if cursor_path else None,
            reconnect_backoff_s=_float(env, "RECONNECT_BACKOFF_S", "5"),
            logout_timeout_s=_float(env, "LOGOUT_TIMEOUT_S", "1"),
            poll_interval_s=_float(env, "POLL_INTERVAL_S", "30"),
            metrics_port=_optional_int(env, "METRICS_PORT"),
            log_level=log_level,
            log_format=log_format,
        )
