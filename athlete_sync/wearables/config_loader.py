"""Load, validate, and hot-reload the wearable sync configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk after an edit — no restart required.

Usage::

    from athlete_sync.wearables.config_loader import get_sync_config

    config = get_sync_config()
    rules = config.normalization_for("cloud_fitness")
    config.history_capacity   # 30
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger("athlete_sync.wearables.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"

_CANONICAL_FIELDS = {
    "heart_rate",
    "steps",
    "calories",
    "sleep_hours",
    "hydration_percent",
    "stress_percent",
    "distance_km",
    "active_minutes",
}

_REDUCERS = {"last", "sum"}


# ---------------------------------------------------------------------------
# Unit conversions referenced by name from the YAML tables
# ---------------------------------------------------------------------------


def _round(value: float) -> int:
    return int(round(value))


CONVERSIONS: dict[str, Callable[[float], float]] = {
    "identity": lambda v: v,
    "round": _round,
    "int": lambda v: int(v),
    "meters_to_km": lambda v: v / 1000.0,
    "seconds_to_minutes": lambda v: v / 60.0,
    "millis_to_hours": lambda v: v / 3_600_000.0,
}


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class FieldRule:
    """How one raw key maps onto a canonical field."""

    raw_key: str
    field: str
    convert: str = "identity"
    reduce: str = "last"

    def apply(self, value: float) -> float:
        return CONVERSIONS[self.convert](value)


@dataclass
class ProviderConfig:
    """Static per-provider endpoints and OAuth parameters."""

    provider_id: str
    display_name: str
    api_base: str | None = None
    auth_url: str | None = None
    token_url: str | None = None
    scopes: list[str] = field(default_factory=list)
    scope_separator: str = " "
    extra_auth_params: dict[str, str] = field(default_factory=dict)
    service_filter: str | None = None
    poll_interval_seconds: float | None = None

    @property
    def scope(self) -> str:
        return self.scope_separator.join(self.scopes)


@dataclass
class SyntheticConfig:
    """Bounds for the placeholder random-sample generator."""

    fields: dict[str, tuple[int, int]]
    activities: list[str]


@dataclass
class SyncConfig:
    """Complete, validated sync configuration.

    Attributes:
        version:               Config schema version string.
        history_capacity:      Rolling history size.
        bucket_millis:         Cloud fitness bucket width.
        window_hours:          Trailing window fetched per sample.
        default_poll_interval_seconds: Poll cadence when a provider has no override.
        providers:             provider id → ProviderConfig.
        normalization:         provider id → raw key → FieldRule.
        synthetic:             Placeholder generator bounds.
    """

    version: str
    history_capacity: int
    bucket_millis: int
    window_hours: int
    default_poll_interval_seconds: float
    providers: dict[str, ProviderConfig]
    normalization: dict[str, dict[str, FieldRule]]
    synthetic: SyntheticConfig
    _raw: dict = field(default_factory=dict, repr=False)

    def provider(self, provider_id: str) -> ProviderConfig:
        """Return the ProviderConfig for a provider id.

        Raises:
            KeyError: If the provider is not configured.
        """
        return self.providers[provider_id]

    def normalization_for(self, provider_id: str) -> dict[str, FieldRule]:
        """Return the raw-key table for a provider (empty if none configured)."""
        return self.normalization.get(provider_id, {})

    def poll_interval(self, provider_id: str) -> float:
        cfg = self.providers.get(provider_id)
        if cfg is not None and cfg.poll_interval_seconds:
            return cfg.poll_interval_seconds
        return self.default_poll_interval_seconds


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    import yaml

    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Collects every problem before failing so one edit can fix them all.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    def _positive_int(key: str, default: int) -> int:
        value = raw.get(key, default)
        try:
            number = int(value)
        except (TypeError, ValueError):
            errors.append(f"{key} must be an integer, got {value!r}")
            return default
        if number <= 0:
            errors.append(f"{key} must be positive, got {number}")
        return number

    version = str(raw.get("version", "1.0"))
    history_capacity = _positive_int("history_capacity", 30)
    bucket_millis = _positive_int("bucket_millis", 300000)
    window_hours = _positive_int("window_hours", 24)
    default_interval = float(raw.get("default_poll_interval_seconds", 5))

    # ── Providers ──
    providers_raw = raw.get("providers", {}) or {}
    if not providers_raw:
        errors.append("'providers' section is missing or empty")

    providers: dict[str, ProviderConfig] = {}
    for provider_id, cfg in providers_raw.items():
        if not isinstance(cfg, dict):
            errors.append(f"providers.{provider_id} must be a mapping")
            continue
        providers[provider_id] = ProviderConfig(
            provider_id=provider_id,
            display_name=cfg.get("display_name", provider_id),
            api_base=cfg.get("api_base"),
            auth_url=cfg.get("auth_url"),
            token_url=cfg.get("token_url"),
            scopes=list(cfg.get("scopes", []) or []),
            scope_separator=cfg.get("scope_separator", " "),
            extra_auth_params=dict(cfg.get("extra_auth_params", {}) or {}),
            service_filter=cfg.get("service_filter"),
            poll_interval_seconds=cfg.get("poll_interval_seconds"),
        )
        if bool(cfg.get("auth_url")) != bool(cfg.get("token_url")):
            errors.append(
                f"providers.{provider_id} needs both auth_url and token_url, or neither"
            )

    # ── Normalization tables ──
    normalization: dict[str, dict[str, FieldRule]] = {}
    for provider_id, table in (raw.get("normalization", {}) or {}).items():
        if provider_id not in providers:
            errors.append(f"normalization.{provider_id} has no matching provider")
        if not isinstance(table, dict):
            errors.append(f"normalization.{provider_id} must be a mapping of raw key→rule")
            continue
        normalization[provider_id] = {}
        for raw_key, rule in table.items():
            if not isinstance(rule, dict):
                errors.append(f"normalization.{provider_id}.{raw_key} must be a mapping")
                continue
            target = rule.get("field")
            convert = rule.get("convert", "identity")
            reduce = rule.get("reduce", "last")
            if target not in _CANONICAL_FIELDS:
                errors.append(
                    f"normalization.{provider_id}.{raw_key}.field = {target!r} is not a canonical field"
                )
            if convert not in CONVERSIONS:
                errors.append(
                    f"normalization.{provider_id}.{raw_key}.convert = {convert!r} is not a known conversion"
                )
            if reduce not in _REDUCERS:
                errors.append(
                    f"normalization.{provider_id}.{raw_key}.reduce must be 'last' or 'sum', got {reduce!r}"
                )
            normalization[provider_id][raw_key] = FieldRule(
                raw_key=raw_key, field=target, convert=convert, reduce=reduce
            )

    # ── Synthetic generator ──
    syn_raw = raw.get("synthetic", {}) or {}
    syn_fields: dict[str, tuple[int, int]] = {}
    for key, bounds in (syn_raw.get("fields", {}) or {}).items():
        try:
            low, high = (int(b) for b in bounds)
        except (TypeError, ValueError):
            errors.append(f"synthetic.fields.{key} must be a [low, high] pair, got {bounds!r}")
            continue
        if low < 0 or high <= low:
            errors.append(f"synthetic.fields.{key} = [{low}, {high}] is not a valid range")
        syn_fields[key] = (low, high)
    synthetic = SyntheticConfig(
        fields=syn_fields,
        activities=list(syn_raw.get("activities", []) or []),
    )

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        history_capacity=history_capacity,
        bucket_millis=bucket_millis,
        window_hours=window_hours,
        default_poll_interval_seconds=default_interval,
        providers=providers,
        normalization=normalization,
        synthetic=synthetic,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
