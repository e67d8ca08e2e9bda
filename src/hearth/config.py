"""Hearth configuration loading and validation.

Reads hearth.toml from a config directory, parses all sections, and returns
a validated HearthConfig dataclass.
"""

from __future__ import annotations

import enum
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from hearth.core.retry import RetryPolicy

CONFIG_FILENAME = "hearth.toml"

# Used when neither the event, its metadata nor the provider calendar has a zone.
DEFAULT_TIMEZONE = "America/New_York"

# Matches ${VAR_NAME} with alphanumeric and underscore names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DB_SCHEMA_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    """Raised when hearth configuration is missing, malformed, or invalid."""


class SendUpdatesPolicy(enum.StrEnum):
    """Provider-side attendee notification policy (``sendUpdates``)."""

    ALL = "all"
    EXTERNAL_ONLY = "externalOnly"
    NONE = "none"


class IcsFallbackPolicy(enum.StrEnum):
    """Which recipients receive the ICS email fallback."""

    OFF = "off"
    EXTERNAL_ONLY = "external_only"
    ALL = "all"


@dataclass
class LoggingConfig:
    """Logging configuration from [hearth.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class ApiConfig:
    """HTTP surface from [hearth.api] section."""

    host: str = "127.0.0.1"
    port: int = 40400


@dataclass
class ProviderConfig:
    """Google Calendar API client settings from [provider] section."""

    base_url: str = "https://www.googleapis.com/calendar/v3"
    timeout_s: float = 30.0
    page_size: int = 100


@dataclass
class PullConfig:
    """Incremental pull tuning from [pull] section."""

    backfill_days_back: int = 30
    backfill_days_forward: int = 365
    max_parallel_calendars: int = 4
    poll_interval_s: int = 300
    sync_log_retention_days: int = 7


@dataclass
class PushConfig:
    """Push synchronizer settings from [push] section."""

    default_timezone: str = DEFAULT_TIMEZONE
    send_updates: SendUpdatesPolicy = SendUpdatesPolicy.ALL
    include_all_with_email: bool = False
    retry: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass
class SmtpConfig:
    """Outbound mail server from [ics.smtp] section."""

    host: str = "localhost"
    port: int = 587
    username: str | None = None
    password: str | None = None
    use_tls: bool = True
    from_address: str | None = None


@dataclass
class IcsConfig:
    """ICS fallback inviter settings from [ics] section."""

    policy: IcsFallbackPolicy = IcsFallbackPolicy.EXTERNAL_ONLY
    uid_domain: str | None = None
    smtp: SmtpConfig = field(default_factory=SmtpConfig)


@dataclass
class DispatcherConfig:
    """Realtime change dispatcher settings from [dispatcher] section."""

    dedup_window_s: float = 5.0
    debounce_s: float = 0.5
    broadcast_key: str = "hearth:dispatcher:refresh"
    broadcast_poll_s: float = 2.0


@dataclass
class WatchConfig:
    """Provider push-notification channels from [watch] section.

    Channels are only registered when ``webhook_url`` is set; otherwise the
    worker relies on polling alone.
    """

    webhook_url: str | None = None
    ttl_s: int = 30 * 24 * 3600
    renew_margin_s: int = 24 * 3600
    renew_interval_s: int = 3600


@dataclass
class WorkerConfig:
    """Background worker pool settings from [worker] section."""

    worker_count: int = 2
    queue_capacity: int = 200
    max_attempts: int = 3
    retry_base_delay_s: float = 1.0
    retry_max_delay_s: float = 30.0
    drain_timeout_s: float = 10.0


@dataclass
class HearthConfig:
    """Parsed and validated hearth configuration."""

    name: str = "hearth"
    db_name: str = "hearth"
    db_schema: str | None = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    pull: PullConfig = field(default_factory=PullConfig)
    push: PushConfig = field(default_factory=PushConfig)
    ics: IcsConfig = field(default_factory=IcsConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
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
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


# ---------------------------------------------------------------------------
# Section parsers
# ---------------------------------------------------------------------------


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    raw = data.get(name, {})
    if not isinstance(raw, dict):
        raise ConfigError(f"[{name}] must be a table")
    return raw


def _positive_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    try:
        value = int(section.get(key, default))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {section.get(key)!r}") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be a positive integer.")
    return value


def _non_negative_float(section: dict[str, Any], key: str, default: float, path: str) -> float:
    try:
        value = float(section.get(key, default))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {section.get(key)!r}") from exc
    if value < 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must not be negative.")
    return value


E = TypeVar("E", bound=enum.StrEnum)


def _enum_value(enum_cls: type[E], raw: Any, path: str) -> E:
    try:
        return enum_cls(str(raw))
    except ValueError as exc:
        allowed = ", ".join(repr(m.value) for m in enum_cls)
        raise ConfigError(f"Invalid {path}: {raw!r}. Expected one of {allowed}.") from exc


def _validate_timezone(raw: Any, path: str) -> str:
    try:
        ZoneInfo(str(raw))
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}: {raw!r} is not a known IANA time zone") from exc
    return str(raw)


def _parse_logging(hearth_section: dict[str, Any]) -> LoggingConfig:
    logging_section = hearth_section.get("logging", {})
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid hearth.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    return LoggingConfig(
        level=log_level, format=log_format, log_root=logging_section.get("log_root")
    )


def _parse_pull(section: dict[str, Any]) -> PullConfig:
    return PullConfig(
        backfill_days_back=_positive_int(section, "backfill_days_back", 30, "pull"),
        backfill_days_forward=_positive_int(section, "backfill_days_forward", 365, "pull"),
        max_parallel_calendars=_positive_int(section, "max_parallel_calendars", 4, "pull"),
        poll_interval_s=_positive_int(section, "poll_interval_s", 300, "pull"),
        sync_log_retention_days=_positive_int(section, "sync_log_retention_days", 7, "pull"),
    )


def _parse_push(section: dict[str, Any]) -> PushConfig:
    retry_section = section.get("retry", {})
    retry = RetryPolicy.from_config(retry_section)
    if retry.max_attempts <= 0:
        raise ConfigError("push.retry.max_attempts must be a positive integer")
    return PushConfig(
        default_timezone=_validate_timezone(
            section.get("default_timezone", DEFAULT_TIMEZONE), "push.default_timezone"
        ),
        send_updates=_enum_value(
            SendUpdatesPolicy, section.get("send_updates", "all"), "push.send_updates"
        ),
        include_all_with_email=bool(section.get("include_all_with_email", False)),
        retry=retry,
    )


def _parse_ics(section: dict[str, Any]) -> IcsConfig:
    smtp_section = section.get("smtp", {})
    smtp = SmtpConfig(
        host=str(smtp_section.get("host", "localhost")),
        port=_positive_int(smtp_section, "port", 587, "ics.smtp"),
        username=smtp_section.get("username"),
        password=smtp_section.get("password"),
        use_tls=bool(smtp_section.get("use_tls", True)),
        from_address=smtp_section.get("from_address"),
    )
    return IcsConfig(
        policy=_enum_value(IcsFallbackPolicy, section.get("policy", "external_only"), "ics.policy"),
        uid_domain=section.get("uid_domain") or os.environ.get("ICS_UID_DOMAIN"),
        smtp=smtp,
    )


def _parse_dispatcher(section: dict[str, Any]) -> DispatcherConfig:
    return DispatcherConfig(
        dedup_window_s=_non_negative_float(section, "dedup_window_s", 5.0, "dispatcher"),
        debounce_s=_non_negative_float(section, "debounce_s", 0.5, "dispatcher"),
        broadcast_key=str(section.get("broadcast_key", "hearth:dispatcher:refresh")),
        broadcast_poll_s=_non_negative_float(section, "broadcast_poll_s", 2.0, "dispatcher"),
    )


def _parse_worker(section: dict[str, Any]) -> WorkerConfig:
    return WorkerConfig(
        worker_count=_positive_int(section, "worker_count", 2, "worker"),
        queue_capacity=_positive_int(section, "queue_capacity", 200, "worker"),
        max_attempts=_positive_int(section, "max_attempts", 3, "worker"),
        retry_base_delay_s=_non_negative_float(section, "retry_base_delay_s", 1.0, "worker"),
        retry_max_delay_s=_non_negative_float(section, "retry_max_delay_s", 30.0, "worker"),
        drain_timeout_s=_non_negative_float(section, "drain_timeout_s", 10.0, "worker"),
    )


def _parse_watch(section: dict[str, Any]) -> WatchConfig:
    webhook_url = section.get("webhook_url")
    if webhook_url is not None:
        webhook_url = str(webhook_url).strip()
        if not webhook_url.startswith("https://"):
            raise ConfigError(f"Invalid watch.webhook_url: {webhook_url!r}. Must be https.")
    return WatchConfig(
        webhook_url=webhook_url or None,
        ttl_s=_positive_int(section, "ttl_s", WatchConfig.ttl_s, "watch"),
        renew_margin_s=_positive_int(
            section, "renew_margin_s", WatchConfig.renew_margin_s, "watch"
        ),
        renew_interval_s=_positive_int(
            section, "renew_interval_s", WatchConfig.renew_interval_s, "watch"
        ),
    )


# ---------------------------------------------------------------------------
# load_config()
# ---------------------------------------------------------------------------


def load_config(config_dir: Path) -> HearthConfig:
    """Load and validate a hearth.toml from *config_dir*.

    Every section is optional; missing sections fall back to defaults.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid values.
    """
    toml_path = config_dir / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    raw_bytes = toml_path.read_bytes()
    try:
        data = tomllib.loads(raw_bytes.decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    data = resolve_env_vars(data)

    # --- [hearth] section ---
    hearth_section = _section(data, "hearth")
    name = str(hearth_section.get("name", "hearth")).strip()
    if not name:
        raise ConfigError("hearth.name must be a non-empty string")

    db_section = hearth_section.get("db", {})
    db_name = str(db_section.get("name", "hearth")).strip()
    if not db_name:
        raise ConfigError("hearth.db.name must be a non-empty string")

    db_schema_raw = db_section.get("schema")
    db_schema: str | None = None
    if db_schema_raw is not None:
        normalized_schema = str(db_schema_raw).strip()
        if _DB_SCHEMA_PATTERN.fullmatch(normalized_schema) is None:
            raise ConfigError(
                f"Invalid hearth.db.schema: {db_schema_raw!r}. "
                "Expected a valid SQL identifier-style value."
            )
        db_schema = normalized_schema

    api_section = hearth_section.get("api", {})
    api = ApiConfig(
        host=str(api_section.get("host", "127.0.0.1")),
        port=_positive_int(api_section, "port", 40400, "hearth.api"),
    )

    provider_section = _section(data, "provider")
    provider = ProviderConfig(
        base_url=str(provider_section.get("base_url", ProviderConfig.base_url)).rstrip("/"),
        timeout_s=_non_negative_float(provider_section, "timeout_s", 30.0, "provider"),
        page_size=_positive_int(provider_section, "page_size", 100, "provider"),
    )

    return HearthConfig(
        name=name,
        db_name=db_name,
        db_schema=db_schema,
        logging=_parse_logging(hearth_section),
        api=api,
        provider=provider,
        pull=_parse_pull(_section(data, "pull")),
        push=_parse_push(_section(data, "push")),
        ics=_parse_ics(_section(data, "ics")),
        dispatcher=_parse_dispatcher(_section(data, "dispatcher")),
        worker=_parse_worker(_section(data, "worker")),
        watch=_parse_watch(_section(data, "watch")),
    )


def resolve_config(config_dir: str | Path | None = None) -> HearthConfig:
    """Load hearth.toml from *config_dir*, else ``HEARTH_CONFIG_DIR``, else defaults."""
    resolved = config_dir or os.environ.get("HEARTH_CONFIG_DIR")
    if resolved is None:
        return HearthConfig()
    return load_config(Path(resolved))
