"""opsmirror configuration loading and validation.

Reads opsmirror.toml from a config directory, parses all sections, and returns
a validated OpsMirrorConfig dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from opsmirror.providers.beeper import DEFAULT_BEEPER_API_URL
from opsmirror.providers.dex import DEFAULT_DEX_API_URL

CONFIG_FILENAME = "opsmirror.toml"

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DB_SCHEMA_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [opsmirror.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class SyncConfig:
    """Sync cadence and paging from [opsmirror.sync].

    Intervals drive the background pollers. ``protection_window_seconds`` is
    how long a local edit shields a contact from feed overwrites, and
    ``lock_timeout_seconds`` is the age at which a chat sync lock is treated
    as abandoned.
    """

    chat_interval_seconds: int = 300
    contact_interval_seconds: int = 3600
    protection_window_seconds: int = 300
    lock_timeout_seconds: int = 600
    message_window_size: int = 30
    page_size: int = 50
    contact_page_size: int = 100
    backfill_max_pages_per_chat: int = 20


@dataclass
class BeeperSourceConfig:
    base_url: str = DEFAULT_BEEPER_API_URL
    token: str | None = None


@dataclass
class DexSourceConfig:
    base_url: str = DEFAULT_DEX_API_URL
    api_key: str | None = None


@dataclass
class OpsMirrorConfig:
    """Parsed and validated opsmirror configuration."""

    name: str = "opsmirror"
    db_name: str = "opsmirror"
    db_schema: str | None = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    beeper: BeeperSourceConfig = field(default_factory=BeeperSourceConfig)
    dex: DexSourceConfig = field(default_factory=DexSourceConfig)


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


def _section(data: dict[str, Any], key: str, *, where: str) -> dict[str, Any]:
    value = data.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{where}] must be a table")
    return value


def _positive_int(section: dict[str, Any], key: str, default: int, *, where: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {where}.{key}: {raw!r}. Expected an integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {where}.{key}: {value!r}. Must be a positive integer.")
    return value


def _optional_str(section: dict[str, Any], key: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def _parse_sync(section: dict[str, Any]) -> SyncConfig:
    defaults = SyncConfig()
    return SyncConfig(
        **{
            name: _positive_int(section, name, getattr(defaults, name), where="opsmirror.sync")
            for name in SyncConfig.__dataclass_fields__
        }
    )


def load_config(config_dir: Path) -> OpsMirrorConfig:
    """Load and validate an opsmirror.toml from *config_dir*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or holds invalid values.
    """
    toml_path = config_dir / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    raw_bytes = toml_path.read_bytes()
    try:
        data = tomllib.loads(raw_bytes.decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    # --- Resolve env var references before any validation ---
    data = resolve_env_vars(data)

    # --- [opsmirror] section ---
    main = _section(data, "opsmirror", where="opsmirror")
    name = str(main.get("name", "opsmirror")).strip()
    if not name:
        raise ConfigError("opsmirror.name must be a non-empty string")

    # --- [opsmirror.db] ---
    db_section = _section(main, "db", where="opsmirror.db")
    db_name = str(db_section.get("name", name)).strip()
    if not db_name:
        raise ConfigError("opsmirror.db.name must be a non-empty string")
    db_schema = _optional_str(db_section, "schema")
    if db_schema is not None and _DB_SCHEMA_PATTERN.fullmatch(db_schema) is None:
        raise ConfigError(
            f"Invalid opsmirror.db.schema: {db_schema!r}. "
            "Expected a valid SQL identifier-style value."
        )

    # --- [opsmirror.logging] ---
    logging_section = _section(main, "logging", where="opsmirror.logging")
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid opsmirror.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    logging_config = LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=_optional_str(logging_section, "log_root"),
    )

    # --- [opsmirror.sync] ---
    sync_config = _parse_sync(_section(main, "sync", where="opsmirror.sync"))

    # --- [sources.*] ---
    sources = _section(data, "sources", where="sources")
    beeper_section = _section(sources, "beeper", where="sources.beeper")
    dex_section = _section(sources, "dex", where="sources.dex")

    return OpsMirrorConfig(
        name=name,
        db_name=db_name,
        db_schema=db_schema,
        logging=logging_config,
        sync=sync_config,
        beeper=BeeperSourceConfig(
            base_url=_optional_str(beeper_section, "base_url") or DEFAULT_BEEPER_API_URL,
            token=_optional_str(beeper_section, "token"),
        ),
        dex=DexSourceConfig(
            base_url=_optional_str(dex_section, "base_url") or DEFAULT_DEX_API_URL,
            api_key=_optional_str(dex_section, "api_key"),
        ),
    )
