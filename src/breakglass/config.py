"""Configuration system for breakglass. YAML-based with env var expansion and env var overlay."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# --- Config Models ---


class GrantsConfig(BaseModel):
    duration_limit: int = 5_184_000  # 60 days
    bootstrap_delay: float = 30.0
    index_name: str = "breakglass"
    search_page_size: int = 1000


class IndexCredential(BaseModel):
    user: str
    password: str


class IndexConfig(BaseModel):
    """Elasticsearch connection. Two credentials in practice, tried in order."""
    enabled: bool = True
    url: str = ""
    credentials: list[IndexCredential] = Field(default_factory=list)
    timeout: float = 30.0
    bulk_flush_interval: float = 300.0
    bulk_workers: int = 1
    bulk_flush_docs: int = 100
    bulk_max_buffer: int = 1000
    max_result_window: int = 10_000  # must match the index setting of the same name
    secret_env: str = "SECRETCREDENTIALS_es_key"


class EncryptionConfig(BaseModel):
    master_key_env: str = "BGCACHE_MASTER_KEY"


class PolicyConfig(BaseModel):
    """ServiceNow resource authorization."""
    base_url: str = ""
    token: str = ""
    timeout: float = 30.0
    max_retries: int = 3
    positive_ttl: int = 1800
    negative_ttl: int = 300
    user_type_ttl: int = 1800
    service_type_ttl: int = 3600
    sweep_interval: float = 180.0
    max_size: int = 10_000
    bypass: bool = False


class IamConfig(BaseModel):
    url: str = "https://iam.cloud.ibm.com"
    token_ttl: int = 2700  # 45 minutes
    timeout: float = 30.0


class LoggingConfig(BaseModel):
    """Logging configuration."""
    format: str = "text"   # "text" or "json"
    level: str = "WARNING"


class TelemetryConfig(BaseModel):
    enabled: bool = False
    service_name: str = "breakglass"
    otlp_endpoint: str = ""


class Config(BaseModel):
    grants: GrantsConfig = Field(default_factory=GrantsConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
    encryption: EncryptionConfig = Field(default_factory=EncryptionConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    iam: IamConfig = Field(default_factory=IamConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)


# --- Helpers ---

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def get_config_dir() -> Path:
    """Get or create breakglass config directory."""
    config_dir = Path.home() / ".breakglass"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_config_path() -> Path:
    return get_config_dir() / "config.yaml"


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR} in strings."""
    if isinstance(data, str):
        return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), m.group(0)), data)
    if isinstance(data, dict):
        return {k: _expand_env_vars(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_expand_env_vars(v) for v in data]
    return data


# Mapping of BREAKGLASS_* env var suffixes to (section, field) tuples.
# Extend this table when adding new config fields.
_ENV_VAR_MAP: dict[str, tuple[str, str]] = {
    "GRANTS_DURATION_LIMIT": ("grants", "duration_limit"),
    "GRANTS_BOOTSTRAP_DELAY": ("grants", "bootstrap_delay"),
    "GRANTS_INDEX_NAME": ("grants", "index_name"),
    "INDEX_ENABLED": ("index", "enabled"),
    "INDEX_URL": ("index", "url"),
    "INDEX_BULK_FLUSH_INTERVAL": ("index", "bulk_flush_interval"),
    "INDEX_BULK_WORKERS": ("index", "bulk_workers"),
    "INDEX_BULK_MAX_BUFFER": ("index", "bulk_max_buffer"),
    "INDEX_MAX_RESULT_WINDOW": ("index", "max_result_window"),
    "POLICY_BASE_URL": ("policy", "base_url"),
    "POLICY_TOKEN": ("policy", "token"),
    "POLICY_POSITIVE_TTL": ("policy", "positive_ttl"),
    "POLICY_NEGATIVE_TTL": ("policy", "negative_ttl"),
    "POLICY_SWEEP_INTERVAL": ("policy", "sweep_interval"),
    "POLICY_MAX_SIZE": ("policy", "max_size"),
    "POLICY_BYPASS": ("policy", "bypass"),
    "IAM_URL": ("iam", "url"),
    "LOG_FORMAT": ("logging", "format"),
    "LOG_LEVEL": ("logging", "level"),
    "TELEMETRY_ENABLED": ("telemetry", "enabled"),
    "TELEMETRY_OTLP_ENDPOINT": ("telemetry", "otlp_endpoint"),
}

# Unprefixed variables honoured for compatibility with existing deployments.
_LEGACY_ENV_MAP: dict[str, tuple[str, str]] = {
    "IAM_URL": ("iam", "url"),
    "SNOW_BYPASS_FLAG": ("policy", "bypass"),
}


def _get_section_models() -> dict[str, type[BaseModel]]:
    """Lazily build section model map after all classes are defined."""
    return {
        "grants": GrantsConfig,
        "index": IndexConfig,
        "encryption": EncryptionConfig,
        "policy": PolicyConfig,
        "iam": IamConfig,
        "logging": LoggingConfig,
        "telemetry": TelemetryConfig,
    }


def _cast_env_value(section: str, field: str, raw_val: str) -> Any:
    """Convert a raw env string to the type annotated on the Pydantic field."""
    model_cls = _get_section_models().get(section)
    target_type: type = str
    if model_cls is not None:
        field_info = model_cls.model_fields.get(field)
        if field_info is not None:
            ann = field_info.annotation
            if ann in (int, bool, float):
                target_type = ann

    try:
        if target_type is bool:
            return raw_val.lower() in ("1", "true", "yes")
        return target_type(raw_val)
    except (ValueError, TypeError):
        return raw_val  # fall back to string; Pydantic will validate


def _apply_env_overlay(data: dict[str, Any]) -> dict[str, Any]:
    """Apply legacy and BREAKGLASS_* environment variables on top of YAML data dict.

    Prefixed variables win over the legacy unprefixed ones. Secret fields
    (tokens) are applied but never logged.
    """
    overlays = [(name, target) for name, target in _LEGACY_ENV_MAP.items()]
    overlays += [(f"BREAKGLASS_{suffix}", target) for suffix, target in _ENV_VAR_MAP.items()]

    for env_key, (section, field) in overlays:
        raw_val = os.environ.get(env_key)
        if raw_val is None:
            continue
        if section not in data or not isinstance(data[section], dict):
            data[section] = {}
        data[section][field] = _cast_env_value(section, field, raw_val)

    return data


def load_config(path: Path | None = None) -> Config:
    """Load config from YAML, expanding env vars, then applying the env overlay."""
    config_path = path or get_config_path()
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        data = _expand_env_vars(raw)
    else:
        data = {}
    data = _apply_env_overlay(data)
    return Config(**data)


def save_config(config: Config, path: Path | None = None) -> None:
    """Save config to YAML."""
    config_path = path or get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump()
    with open(config_path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def get_config_value(config: Config, key_path: str) -> Any:
    """Get nested config value via dot notation (e.g. 'policy.positive_ttl')."""
    obj: Any = config
    for part in key_path.split("."):
        if isinstance(obj, BaseModel):
            obj = getattr(obj, part, None)
        elif isinstance(obj, dict):
            obj = obj.get(part)
        else:
            return None
    return obj


def set_config_value(key_path: str, value: str) -> Config:
    """Set config value via dot notation, save, and return updated config."""
    config_path = get_config_path()
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    else:
        raw = {}

    parts = key_path.split(".")
    obj = raw
    for part in parts[:-1]:
        if part not in obj or not isinstance(obj[part], dict):
            obj[part] = {}
        obj = obj[part]
    obj[parts[-1]] = value

    with open(config_path, "w") as f:
        yaml.dump(raw, f, default_flow_style=False, sort_keys=False)

    return load_config(config_path)
