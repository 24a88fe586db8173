"""weekcal configuration loading and validation.

Reads ``weekcal.toml``, resolves ``${VAR}`` environment references, parses
all sections, and returns a validated :class:`WeekcalConfig`.  The
``[[template]]`` array is turned into immutable
:class:`~weekcal.core.templates.Template` values here, so the
reconciliation core only ever sees fully built templates.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationError

from weekcal.core.reconciler import IdentityKeying
from weekcal.core.templates import (
    DEFAULT_EMAIL_OFFSET_MINUTES,
    DEFAULT_RECURRENCE,
    ReminderOverride,
    ReminderPolicy,
    Template,
    parse_weekdays,
)
from weekcal.errors import ConfigError

__all__ = [
    "COLOR_IDS",
    "ConfigError",
    "CredentialsConfig",
    "LoggingConfig",
    "WeekcalConfig",
    "load_config",
    "parse_duration",
    "resolve_env_vars",
]

DEFAULT_CONFIG_FILENAME = "weekcal.toml"
DEFAULT_SETTLE_SECONDS = 2.0

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DURATION_PATTERN = re.compile(r"^(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?$", re.IGNORECASE)

# Google Calendar event palette.
COLOR_IDS: dict[str, str] = {
    "lavender": "1",
    "sage": "2",
    "grape": "3",
    "flamingo": "4",
    "banana": "5",
    "tangerine": "6",
    "peacock": "7",
    "graphite": "8",
    "blueberry": "9",
    "basil": "10",
    "tomato": "11",
}


@dataclass
class LoggingConfig:
    """Logging configuration from [weekcal.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: Path | None = None


@dataclass
class CredentialsConfig:
    """OAuth file locations from [weekcal.credentials] section."""

    client_secrets_file: Path = Path("credentials.json")
    token_file: Path = Path("token.json")


@dataclass
class WeekcalConfig:
    """Parsed and validated weekcal configuration."""

    timezone: str
    calendar_id: str = "primary"
    state_file: Path = Path("event_ids.json")
    identity_keying: IdentityKeying = IdentityKeying.TITLE
    settle_seconds: float = DEFAULT_SETTLE_SECONDS
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    reminder_policy: ReminderPolicy = field(default_factory=ReminderPolicy)
    templates: list[Template] = field(default_factory=list)
    source: Path | None = None


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float) are returned unchanged.

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


def parse_duration(value: Any) -> timedelta:
    """Parse a duration given as integer minutes or as ``"1h30m"`` / ``"45m"`` / ``"2h"``."""
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, int):
        minutes = value
    elif isinstance(value, str):
        match = _DURATION_PATTERN.fullmatch(value.strip())
        if match is None or not value.strip():
            raise ConfigError(f"Invalid duration: {value!r}. Expected minutes or e.g. '1h30m'.")
        minutes = int(match.group(1) or 0) * 60 + int(match.group(2) or 0)
    else:
        raise ConfigError(f"Invalid duration: {value!r}")
    if minutes < 0:
        raise ConfigError(f"Duration must be non-negative, got {value!r}")
    return timedelta(minutes=minutes)


def _resolve_color(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise ConfigError(f"Invalid color: {value!r}")
    normalized = str(value).strip()
    if not normalized:
        return None
    return COLOR_IDS.get(normalized.lower(), normalized)


def _table(section: dict[str, Any], name: str) -> dict[str, Any]:
    value = section.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[weekcal.{name}] must be a table")
    return value


def _resolve_path(base_dir: Path, value: Any, field_name: str) -> Path:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{field_name} must be a non-empty string")
    path = Path(value.strip()).expanduser()
    return path if path.is_absolute() else base_dir / path


def _parse_reminder_policy(section: Any) -> ReminderPolicy:
    if not isinstance(section, dict):
        raise ConfigError("[weekcal.reminders] must be a table")
    offset = section.get("email_offset_minutes", DEFAULT_EMAIL_OFFSET_MINUTES)
    if offset is False:
        return ReminderPolicy(email_offset_minutes=None)
    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
        raise ConfigError(
            "weekcal.reminders.email_offset_minutes must be a non-negative integer or false"
        )
    return ReminderPolicy(email_offset_minutes=offset)


def _parse_reminders(
    entry: dict[str, Any],
    label: str,
    policy: ReminderPolicy,
) -> tuple[ReminderOverride, ...]:
    explicit = entry.get("reminders")
    if explicit is not None:
        if not isinstance(explicit, list):
            raise ConfigError(f"{label}.reminders must be an array of tables")
        try:
            return tuple(ReminderOverride.model_validate(item) for item in explicit)
        except ValidationError as exc:
            raise ConfigError(f"Invalid {label}.reminders: {exc}") from exc

    lead = entry.get("reminder_minutes", 10)
    if isinstance(lead, bool) or not isinstance(lead, int) or lead < 0:
        raise ConfigError(f"{label}.reminder_minutes must be a non-negative integer")
    return policy.overrides(lead)


def _parse_template(entry: Any, index: int, policy: ReminderPolicy) -> Template:
    """Parse and validate one ``[[template]]`` entry."""
    label = f"template[{index}]"
    if not isinstance(entry, dict):
        raise ConfigError(f"{label} must be a table")

    title = entry.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ConfigError(f"Missing required field: {label}.title")
    label = f"template {title.strip()!r}"

    start = entry.get("start")
    if not isinstance(start, str):
        raise ConfigError(f"Missing required field: {label}.start")

    if "duration" not in entry:
        raise ConfigError(f"Missing required field: {label}.duration")
    duration = parse_duration(entry["duration"])

    days = entry.get("days")
    if days is None:
        raise ConfigError(f"Missing required field: {label}.days")
    try:
        weekdays = parse_weekdays(days)
    except ValueError as exc:
        raise ConfigError(f"Invalid {label}.days: {exc}") from exc
    if not weekdays:
        raise ConfigError(f"{label}.days must list at least one day")

    description = entry.get("description", "")
    if not isinstance(description, str):
        raise ConfigError(f"{label}.description must be a string")

    recurrence = entry.get("recurrence", DEFAULT_RECURRENCE)
    if not isinstance(recurrence, str):
        raise ConfigError(f"{label}.recurrence must be a string")

    try:
        return Template(
            title=title,
            body=description,
            start_time=start,
            duration=duration,
            weekdays=weekdays,
            reminders=_parse_reminders(entry, label, policy),
            color_id=_resolve_color(entry.get("color")),
            recurrence=recurrence.strip(),
        )
    except ValidationError as exc:
        raise ConfigError(f"Invalid {label}: {exc}") from exc


def load_config(path: Path) -> WeekcalConfig:
    """Load and validate a weekcal TOML file.

    *path* may be the file itself or a directory containing ``weekcal.toml``.
    Relative file paths inside the config resolve against the config file's
    directory.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    path = Path(path)
    toml_path = path / DEFAULT_CONFIG_FILENAME if path.is_dir() else path
    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    data = resolve_env_vars(data)
    base_dir = toml_path.parent

    # --- [weekcal] section (required) ---
    section = data.get("weekcal")
    if not isinstance(section, dict):
        raise ConfigError("Missing [weekcal] section in config")

    timezone = section.get("timezone")
    if not isinstance(timezone, str) or not timezone.strip():
        raise ConfigError("Missing required field: weekcal.timezone")
    timezone = timezone.strip()
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown time zone: {timezone!r}") from exc

    calendar_id = str(section.get("calendar_id", "primary")).strip()
    if not calendar_id:
        raise ConfigError("weekcal.calendar_id must be a non-empty string")

    state_file = _resolve_path(base_dir, section.get("state_file", "event_ids.json"), "state_file")

    try:
        identity_keying = IdentityKeying(str(section.get("identity_keying", "title")).lower())
    except ValueError as exc:
        raise ConfigError(
            f"Invalid weekcal.identity_keying: {section.get('identity_keying')!r}. "
            "Expected 'title' or 'occurrence'."
        ) from exc

    raw_settle = section.get("settle_seconds", DEFAULT_SETTLE_SECONDS)
    if isinstance(raw_settle, bool) or not isinstance(raw_settle, (int, float)) or raw_settle < 0:
        raise ConfigError("weekcal.settle_seconds must be a non-negative number")

    # --- [weekcal.credentials] sub-section ---
    credentials_section = _table(section, "credentials")
    credentials = CredentialsConfig(
        client_secrets_file=_resolve_path(
            base_dir,
            credentials_section.get("client_secrets_file", "credentials.json"),
            "credentials.client_secrets_file",
        ),
        token_file=_resolve_path(
            base_dir,
            credentials_section.get("token_file", "token.json"),
            "credentials.token_file",
        ),
    )

    # --- [weekcal.logging] sub-section ---
    logging_section = _table(section, "logging")
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid weekcal.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    log_root = logging_section.get("log_root")
    logging_config = LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=_resolve_path(base_dir, log_root, "logging.log_root") if log_root else None,
    )

    # --- [weekcal.reminders] sub-section ---
    policy = _parse_reminder_policy(section.get("reminders", {}))

    # --- [[template]] array ---
    raw_templates = data.get("template", [])
    if not isinstance(raw_templates, list):
        raise ConfigError("[[template]] must be an array of tables")
    templates = [_parse_template(entry, i, policy) for i, entry in enumerate(raw_templates)]

    seen: set[str] = set()
    for template in templates:
        if template.title in seen:
            raise ConfigError(f"Duplicate template title: {template.title!r}")
        seen.add(template.title)

    return WeekcalConfig(
        timezone=timezone,
        calendar_id=calendar_id,
        state_file=state_file,
        identity_keying=identity_keying,
        settle_seconds=float(raw_settle),
        credentials=credentials,
        logging=logging_config,
        reminder_policy=policy,
        templates=templates,
        source=toml_path,
    )
