from __future__ import annotations

import os
import tomllib
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Callable

from .config import ProxyConfig
from .logging_utils import resolve_level

CONFIG_FILE_ENV = "NIM_PROXY_CONFIG_FILE"
ENV_PREFIX = "NIM_PROXY_"
DEFAULT_CONFIG_PATH = Path("configs/nim_proxy.toml")

_SECTION_MAP: dict[str, list[str]] = {
    "server": ["host", "port", "environment", "allowed_origins"],
    "upstream": ["base_url", "api_key", "default_model"],
    "generation": ["default_temperature", "default_max_tokens"],
    "timeouts": [
        "backend_timeout_ms",
        "models_timeout_ms",
        "stream_idle_timeout_ms",
    ],
    "limits": ["max_body_bytes", "stream_buffer_chunks"],
    "logging": ["log_dir", "log_level", "log_path", "max_log_bytes"],
}

# Unprefixed names used by existing container deployments.
_ENV_ALIASES: dict[str, str] = {
    "port": "PORT",
    "api_key": "NVIDIA_API_KEY",
    "base_url": "NVIDIA_BASE_URL",
    "environment": "NODE_ENV",
}


class ConfigurationError(RuntimeError):
    """Raised when the proxy cannot start with the resolved configuration."""

    err_type = "configuration_error"


def _field_types() -> dict[str, Any]:
    return {f.name: f.type for f in fields(ProxyConfig)}


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _coerce_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return int(str(value).strip())


def _coerce_float(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    return float(str(value).strip())


def _coerce_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _coerce_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        parts = [item.strip() for item in value.split(",")]
    else:
        parts = [str(item).strip() for item in value]
    return tuple(item for item in parts if item)


def _coerce_optional(value: Any, caster: Callable[[Any], Any]) -> Any:
    if value in ("", None):
        return None
    return caster(value)


_CASTERS: dict[str, Callable[[Any], Any]] = {
    "bool": _coerce_bool,
    "int": _coerce_int,
    "float": _coerce_float,
    "str": _coerce_str,
}


def _coerce_value(field_type: str, value: Any) -> Any:
    # Dataclass field types are strings under postponed annotations.
    if field_type.startswith("Tuple["):
        return _coerce_tuple(value)
    if field_type.startswith("Optional["):
        caster = _CASTERS.get(field_type[len("Optional[") : -1])
        return _coerce_optional(value, caster) if caster else value
    caster = _CASTERS.get(field_type)
    return caster(value) if caster else value


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("rb") as fh:
        try:
            data = tomllib.load(fh)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigurationError(f"Invalid config file {path}: {exc}") from exc

    out: dict[str, Any] = {}
    for section, keys in _SECTION_MAP.items():
        section_values = data.get(section, {})
        if not isinstance(section_values, dict):
            continue
        for key in keys:
            if key in section_values:
                out[key] = section_values[key]
    return out


def _env_value(key: str) -> str | None:
    value = os.environ.get(f"{ENV_PREFIX}{key.upper()}")
    if value is not None:
        return value
    alias = _ENV_ALIASES.get(key)
    if alias:
        return os.environ.get(alias)
    return None


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    for key in _default_config_dict():
        raw = _env_value(key)
        if raw is None:
            continue
        config[key] = raw
    return config


def _default_config_dict() -> dict[str, Any]:
    data = asdict(ProxyConfig())
    data.pop("config_file_path", None)
    return data


def _normalize(config: dict[str, Any]) -> dict[str, Any]:
    field_types = _field_types()
    normalized = {}
    for key, default_value in _default_config_dict().items():
        value = config.get(key, default_value)
        try:
            normalized[key] = _coerce_value(field_types.get(key), value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(
                f"Invalid value for '{key}': {value!r} ({exc})"
            ) from exc
    normalized["api_key"] = normalized["api_key"].strip()
    normalized["base_url"] = normalized["base_url"].rstrip("/")
    normalized["log_level"] = normalized["log_level"].strip().upper()
    return normalized


def config_file_path() -> Path:
    return Path(os.environ.get(CONFIG_FILE_ENV, DEFAULT_CONFIG_PATH)).expanduser()


def load_proxy_config(*, require_api_key: bool = True) -> ProxyConfig:
    """Resolve defaults, then the TOML file, then environment variables."""

    path = config_file_path()
    values = _default_config_dict()
    values.update(_read_config_file(path))
    values = _apply_env_overrides(values)
    normalized = _normalize(values)
    if require_api_key and not normalized["api_key"]:
        raise ConfigurationError(
            "Upstream API key is not set "
            f"(set {ENV_PREFIX}API_KEY or {_ENV_ALIASES['api_key']})"
        )
    if normalized["backend_timeout_ms"] <= 0:
        raise ConfigurationError("backend_timeout_ms must be positive")
    if normalized["stream_buffer_chunks"] <= 0:
        raise ConfigurationError("stream_buffer_chunks must be positive")
    try:
        resolve_level(normalized["log_level"])
    except ValueError as exc:
        raise ConfigurationError(f"Invalid value for 'log_level': {exc}") from exc
    return ProxyConfig(**normalized, config_file_path=str(path))


def redacted_config_dict(cfg: ProxyConfig) -> dict[str, Any]:
    data = asdict(cfg)
    data["allowed_origins"] = list(cfg.allowed_origins)
    if data.get("api_key"):
        data["api_key"] = f"***{data['api_key'][-4:]}" if len(cfg.api_key) > 8 else "***"
    return data


def list_env_overrides() -> dict[str, str]:
    out = {
        key: value for key, value in os.environ.items() if key.startswith(ENV_PREFIX)
    }
    for alias in _ENV_ALIASES.values():
        if alias in os.environ:
            out[alias] = os.environ[alias]
    for key in list(out):
        if key.endswith("API_KEY"):
            out[key] = "***"
    return out
