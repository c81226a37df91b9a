"""Engine configuration loading and validation.

Reads opencalendly.toml from a config directory, parses all sections, and
returns a validated EngineConfig dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from opencalendly.calendar.crypto import MIN_SECRET_LENGTH
from opencalendly.calendar.sync import DEFAULT_SYNC_WINDOW_DAYS, MAX_SYNC_WINDOW_DAYS
from opencalendly.calendar.writeback import DEFAULT_MAX_ATTEMPTS
from opencalendly.scheduling.availability import InvalidParameterError, resolve_timezone

CONFIG_FILENAME = "opencalendly.toml"
DEFAULT_SERVICE_NAME = "opencalendly"

# Matches ${VAR_NAME}; names are letters, digits and underscores.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_SUPPORTED_PROVIDERS = ("google", "microsoft")


class ConfigError(Exception):
    """Raised when engine configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [engine.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class SchedulingConfig:
    """Availability query bounds from [engine.scheduling].

    ``default_days`` is used when a caller omits the day count; requests for
    more than ``max_days`` are rejected.
    """

    default_days: int = 7
    max_days: int = 30
    default_timezone: str = "UTC"

    def resolve_days(self, days: int | None) -> int:
        if days is None:
            return self.default_days
        if days < 0 or days > self.max_days:
            raise InvalidParameterError(f"days must be between 0 and {self.max_days}.")
        return days


@dataclass
class SyncConfig:
    """Busy-window sync bounds from [engine.sync]."""

    default_days: int = DEFAULT_SYNC_WINDOW_DAYS
    max_days: int = MAX_SYNC_WINDOW_DAYS


@dataclass
class WritebackConfig:
    """Writeback retry policy from [engine.writeback]."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS


@dataclass
class ProviderCredentialsConfig:
    """OAuth client credentials for one provider from [providers.<name>]."""

    provider: str
    client_id: str
    client_secret: str = field(repr=False)
    redirect_uri: str | None = None


@dataclass
class EngineConfig:
    """Fully parsed opencalendly.toml."""

    encryption_secret: str = field(repr=False)
    oauth_state_secret: str = field(repr=False)
    service_name: str = DEFAULT_SERVICE_NAME
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    writeback: WritebackConfig = field(default_factory=WritebackConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    providers: dict[str, ProviderCredentialsConfig] = field(default_factory=dict)

    def provider_credentials(self, provider: str) -> ProviderCredentialsConfig:
        try:
            return self.providers[provider]
        except KeyError:
            raise ConfigError(f"No credentials configured for provider {provider!r}") from None


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references against ``os.environ``.

    Raises ConfigError listing every unresolved variable in a string value.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
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
        # The raw value is never echoed: it may hold a partially inlined secret.
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _positive_int(section: dict, key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    # TOML floats and booleans are rejected rather than truncated.
    if isinstance(raw, bool) or not isinstance(raw, int) or raw <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.")
    return raw


def _required_secret(section: dict, key: str) -> str:
    value = section.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"Missing required field: engine.{key}")
    if len(value.strip()) < MIN_SECRET_LENGTH:
        raise ConfigError(f"engine.{key} must be at least {MIN_SECRET_LENGTH} characters")
    return value


def _parse_scheduling(engine_section: dict) -> SchedulingConfig:
    section = engine_section.get("scheduling", {})
    default_days = _positive_int(section, "default_days", 7, "engine.scheduling")
    max_days = _positive_int(section, "max_days", 30, "engine.scheduling")
    if default_days > max_days:
        raise ConfigError(
            "engine.scheduling.default_days must not exceed engine.scheduling.max_days"
        )
    default_timezone = str(section.get("default_timezone", "UTC"))
    try:
        resolve_timezone(default_timezone)
    except InvalidParameterError as exc:
        raise ConfigError(f"Invalid engine.scheduling.default_timezone: {exc}") from exc
    return SchedulingConfig(
        default_days=default_days, max_days=max_days, default_timezone=default_timezone
    )


def _parse_sync(engine_section: dict) -> SyncConfig:
    section = engine_section.get("sync", {})
    default_days = _positive_int(section, "default_days", DEFAULT_SYNC_WINDOW_DAYS, "engine.sync")
    max_days = _positive_int(section, "max_days", MAX_SYNC_WINDOW_DAYS, "engine.sync")
    if default_days > max_days:
        raise ConfigError("engine.sync.default_days must not exceed engine.sync.max_days")
    return SyncConfig(default_days=default_days, max_days=max_days)


def _parse_logging(engine_section: dict) -> LoggingConfig:
    section = engine_section.get("logging", {})
    level = str(section.get("level", "INFO")).upper()
    fmt = str(section.get("format", "text")).lower()
    if fmt not in ("text", "json"):
        raise ConfigError(f"Invalid engine.logging.format: {fmt!r}. Must be 'text' or 'json'.")
    log_root = section.get("log_root")
    return LoggingConfig(level=level, format=fmt, log_root=str(log_root) if log_root else None)


def _parse_providers(data: dict) -> dict[str, ProviderCredentialsConfig]:
    providers_section = data.get("providers", {})
    if not isinstance(providers_section, dict):
        raise ConfigError("[providers] must be a table")

    providers: dict[str, ProviderCredentialsConfig] = {}
    for name, section in providers_section.items():
        if name not in _SUPPORTED_PROVIDERS:
            raise ConfigError(
                f"Unsupported calendar provider {name!r}. "
                f"Expected one of: {', '.join(_SUPPORTED_PROVIDERS)}"
            )
        if not isinstance(section, dict):
            raise ConfigError(f"[providers.{name}] must be a table")
        client_id = section.get("client_id")
        client_secret = section.get("client_secret")
        if not client_id:
            raise ConfigError(f"Missing required field: providers.{name}.client_id")
        if not client_secret:
            raise ConfigError(f"Missing required field: providers.{name}.client_secret")
        providers[name] = ProviderCredentialsConfig(
            provider=name,
            client_id=str(client_id),
            client_secret=str(client_secret),
            redirect_uri=section.get("redirect_uri"),
        )
    return providers


def load_config(config_dir: Path) -> EngineConfig:
    """Load and validate an opencalendly.toml from *config_dir*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    toml_path = Path(config_dir) / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    data = resolve_env_vars(data)

    engine_section = data.get("engine")
    if not isinstance(engine_section, dict):
        raise ConfigError("Missing [engine] section in config")

    writeback_section = engine_section.get("writeback", {})
    return EngineConfig(
        encryption_secret=_required_secret(engine_section, "encryption_secret"),
        oauth_state_secret=_required_secret(engine_section, "oauth_state_secret"),
        service_name=str(engine_section.get("service_name", DEFAULT_SERVICE_NAME)),
        scheduling=_parse_scheduling(engine_section),
        sync=_parse_sync(engine_section),
        writeback=WritebackConfig(
            max_attempts=_positive_int(
                writeback_section, "max_attempts", DEFAULT_MAX_ATTEMPTS, "engine.writeback"
            )
        ),
        logging=_parse_logging(engine_section),
        providers=_parse_providers(data),
    )
