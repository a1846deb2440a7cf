"""Planner configuration loading and validation.

Reads ``studyplan.toml``, resolves ``${VAR}`` references against the
environment, and returns a validated :class:`PlannerConfig`. Every section is
optional; a missing file is an error only when a path was given explicitly.

Example::

    [planner]
    default_model = "gemini-2.5-flash"
    max_iterations = 20
    agent_threshold = 50

    [planner.tiers]
    free = "gemini-2.5-flash"
    pro = "claude-sonnet-4-5"

    [planner.providers.claude]
    base_url = "https://api.anthropic.com/v1"

    [planner.db]
    name = "studyplan"

    [planner.logging]
    level = "INFO"
    format = "json"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from studyplan.core.pricing import PricingConfig
from studyplan.providers.base import ProviderKind

DEFAULT_CONFIG_FILE = "studyplan.toml"
DEFAULT_MODEL = "gemini-2.5-flash"

# Pattern matching ${VAR_NAME}: alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

# Environment variables consulted, in order, for each provider's API key.
API_KEY_ENV_VARS: dict[ProviderKind, tuple[str, ...]] = {
    ProviderKind.CLAUDE: ("ANTHROPIC_API_KEY",),
    ProviderKind.GEMINI: ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    ProviderKind.OPENAI: ("OPENAI_API_KEY",),
}


class ConfigError(Exception):
    """Raised when planner configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [planner.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """Database configuration from [planner.db] section.

    Connection parameters (host, credentials) come from the environment; see
    :meth:`studyplan.db.DatabaseSettings.from_env`.
    """

    name: str = "studyplan"
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class ProviderConfig:
    """Per-provider overrides from [planner.providers.<kind>]."""

    kind: ProviderKind
    base_url: str | None = None
    api_key: str | None = None
    max_output_tokens: int = 4096


@dataclass
class ProviderSettings:
    """Everything needed to construct an adapter for one model."""

    kind: ProviderKind
    model: str
    api_key: str
    base_url: str | None = None
    max_output_tokens: int = 4096


@dataclass
class PlannerConfig:
    """Parsed and validated planner configuration."""

    default_model: str = DEFAULT_MODEL
    tiers: dict[str, str] = field(default_factory=dict)
    max_iterations: int = 20
    provider_timeout_s: float = 60.0
    tool_timeout_s: float = 15.0
    agent_threshold: int = 50
    pricing_path: Path | None = None
    providers: dict[ProviderKind, ProviderConfig] = field(default_factory=dict)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)

    def model_for_tier(self, tier: str | None) -> str:
        """Return the model ID for a subscription tier, or the default model."""
        if tier is None:
            return self.default_model
        return self.tiers.get(tier, self.default_model)

    def provider_config(self, kind: ProviderKind) -> ProviderConfig:
        return self.providers.get(kind) or ProviderConfig(kind=kind)


# ---------------------------------------------------------------------------
# Environment interpolation
# ---------------------------------------------------------------------------


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values are returned
    unchanged.

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


def _section(parent: dict[str, Any], key: str, path: str) -> dict[str, Any]:
    value = parent.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{path}] must be a TOML table")
    return value


def _positive_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int) or raw <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.")
    return raw


def _positive_float(section: dict[str, Any], key: str, default: float, path: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int | float) or raw <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive number.")
    return float(raw)


def _parse_logging(planner: dict[str, Any]) -> LoggingConfig:
    section = _section(planner, "logging", "planner.logging")
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid planner.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    return LoggingConfig(
        level=str(section.get("level", "INFO")).upper(),
        format=log_format,
        log_root=section.get("log_root"),
    )


def _parse_database(planner: dict[str, Any]) -> DatabaseConfig:
    section = _section(planner, "db", "planner.db")
    name = str(section.get("name", "studyplan")).strip()
    if not name:
        raise ConfigError("planner.db.name must be a non-empty string")
    min_size = _positive_int(section, "min_pool_size", 2, "planner.db")
    max_size = _positive_int(section, "max_pool_size", 10, "planner.db")
    if min_size > max_size:
        raise ConfigError(
            f"planner.db.min_pool_size ({min_size}) exceeds max_pool_size ({max_size})"
        )
    return DatabaseConfig(name=name, min_pool_size=min_size, max_pool_size=max_size)


def _parse_providers(planner: dict[str, Any]) -> dict[ProviderKind, ProviderConfig]:
    section = _section(planner, "providers", "planner.providers")
    providers: dict[ProviderKind, ProviderConfig] = {}
    for raw_kind, values in section.items():
        try:
            kind = ProviderKind(raw_kind)
        except ValueError as exc:
            known = ", ".join(ProviderKind)
            raise ConfigError(
                f"Unknown provider [planner.providers.{raw_kind}]; expected one of: {known}"
            ) from exc
        if not isinstance(values, dict):
            raise ConfigError(f"[planner.providers.{raw_kind}] must be a TOML table")
        providers[kind] = ProviderConfig(
            kind=kind,
            base_url=values.get("base_url"),
            api_key=values.get("api_key") or None,
            max_output_tokens=_positive_int(
                values, "max_output_tokens", 4096, f"planner.providers.{raw_kind}"
            ),
        )
    return providers


def _parse_tiers(planner: dict[str, Any]) -> dict[str, str]:
    section = _section(planner, "tiers", "planner.tiers")
    tiers: dict[str, str] = {}
    for tier, model in section.items():
        if not isinstance(model, str) or not model.strip():
            raise ConfigError(f"planner.tiers.{tier} must be a non-empty model ID")
        tiers[tier] = model.strip()
    return tiers


def parse_config(data: dict[str, Any], base_dir: Path | None = None) -> PlannerConfig:
    """Build a :class:`PlannerConfig` from already-parsed TOML data.

    Relative ``pricing_path`` values are resolved against *base_dir*.
    """
    data = resolve_env_vars(data)
    planner = _section(data, "planner", "planner")

    default_model = planner.get("default_model", DEFAULT_MODEL)
    if not isinstance(default_model, str) or not default_model.strip():
        raise ConfigError("planner.default_model must be a non-empty model ID")

    pricing_path: Path | None = None
    if planner.get("pricing_path"):
        pricing_path = Path(str(planner["pricing_path"]))
        if not pricing_path.is_absolute() and base_dir is not None:
            pricing_path = base_dir / pricing_path

    timeouts = _section(planner, "timeouts", "planner.timeouts")

    return PlannerConfig(
        default_model=default_model.strip(),
        tiers=_parse_tiers(planner),
        max_iterations=_positive_int(planner, "max_iterations", 20, "planner"),
        provider_timeout_s=_positive_float(timeouts, "provider_s", 60.0, "planner.timeouts"),
        tool_timeout_s=_positive_float(timeouts, "tool_s", 15.0, "planner.timeouts"),
        agent_threshold=_positive_int(planner, "agent_threshold", 50, "planner"),
        pricing_path=pricing_path,
        providers=_parse_providers(planner),
        logging=_parse_logging(planner),
        database=_parse_database(planner),
    )


def load_config(path: Path | None = None) -> PlannerConfig:
    """Load and validate ``studyplan.toml``.

    Parameters
    ----------
    path:
        Config file to read. When ``None``, ``./studyplan.toml`` is used if it
        exists, otherwise the built-in defaults.

    Raises
    ------
    ConfigError
        If an explicit file is missing, contains invalid TOML, or holds
        invalid values.
    """
    if path is None:
        path = Path.cwd() / DEFAULT_CONFIG_FILE
        if not path.exists():
            return PlannerConfig()
    elif not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_config(data, base_dir=path.parent)


# ---------------------------------------------------------------------------
# Provider resolution
# ---------------------------------------------------------------------------


def api_key_from_env(kind: ProviderKind) -> str | None:
    """Return the first non-empty API key environment variable for *kind*."""
    for name in API_KEY_ENV_VARS[kind]:
        value = os.environ.get(name)
        if value:
            return value
    return None


def resolve_provider(
    config: PlannerConfig, pricing: PricingConfig, model: str
) -> ProviderSettings:
    """Work out which provider serves *model* and with what credentials.

    The provider comes from the pricing table; the key from
    ``[planner.providers.<kind>].api_key`` or the provider's environment
    variable.

    Raises
    ------
    ConfigError
        If the model is not priced, names an unknown provider, or has no key.
    """
    raw_kind = pricing.provider_for(model)
    if raw_kind is None:
        raise ConfigError(f"Model {model!r} has no provider in the pricing table")
    try:
        kind = ProviderKind(raw_kind)
    except ValueError as exc:
        raise ConfigError(f"Model {model!r} names unknown provider {raw_kind!r}") from exc

    provider = config.provider_config(kind)
    api_key = provider.api_key or api_key_from_env(kind)
    if not api_key:
        names = " or ".join(API_KEY_ENV_VARS[kind])
        raise ConfigError(f"No API key for provider {kind}: set {names}")

    return ProviderSettings(
        kind=kind,
        model=model,
        api_key=api_key,
        base_url=provider.base_url,
        max_output_tokens=provider.max_output_tokens,
    )
