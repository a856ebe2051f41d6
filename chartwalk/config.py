"""Configuration loading for chartwalk (.chartwalk.yml + CLI flags)."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

INFINITE_DEPTH = -1
CONFIG_FILENAME = ".chartwalk.yml"


class ConfigError(RuntimeError):
    """Raised when the configuration file cannot be parsed."""


@dataclass(frozen=True)
class WalkConfig:
    """Effective settings for a single chartwalk run."""

    root: str = "bootstrap"
    workdir: str = "."
    output: str = ".zz.auto-generated"
    max_depth: int = INFINITE_DEPTH
    hash_store: str = "sumfile"
    hash_strategy: str = "readwrite"
    ignore_suffix: str = "-ignore"
    skip_render_key: str = "do-not-render"
    ignore_value_file: str = "overrides-to-ignore"
    post_renderer: Optional[str] = None
    log_file: Optional[str] = None
    concurrency: int = 10


_INT_FIELDS = {"max_depth", "concurrency"}
# null leaves these unset.
_OPTIONAL_FIELDS = {"post_renderer", "log_file"}


def load_config(config_path: Path) -> WalkConfig:
    """Load settings from ``.chartwalk.yml``; missing files yield the defaults."""
    config_file = _resolve_config_path(config_path)
    if not config_file.exists():
        return WalkConfig()

    data = _read_config(config_file)
    if not isinstance(data, dict):
        raise ConfigError(f"{CONFIG_FILENAME} must contain a mapping at the root")

    known = {item.name for item in fields(WalkConfig)}
    values: Dict[str, Any] = {}
    for raw_key, raw_value in data.items():
        key = str(raw_key).replace("-", "_")
        if key not in known:
            raise ConfigError(f"Unknown setting in {config_file.name}: {raw_key}")
        if key in _INT_FIELDS:
            parsed = _as_int(raw_value)
            if parsed is None:
                raise ConfigError(f"Setting {raw_key} must be an integer")
            values[key] = parsed
        elif raw_value is None and key in _OPTIONAL_FIELDS:
            values[key] = None
        else:
            parsed_str = _as_str(raw_value)
            if parsed_str is None:
                raise ConfigError(f"Setting {raw_key} must be a string")
            values[key] = parsed_str

    return _validated(replace(WalkConfig(), **values))


def merge_cli_overrides(config: WalkConfig, overrides: Mapping[str, Any]) -> WalkConfig:
    """Return ``config`` with every non-``None`` override applied."""
    values = {key: value for key, value in overrides.items() if value is not None}
    if not values:
        return _validated(config)
    return _validated(replace(config, **values))


def _validated(config: WalkConfig) -> WalkConfig:
    if config.max_depth < INFINITE_DEPTH:
        raise ConfigError(f"max_depth must be >= {INFINITE_DEPTH}, got {config.max_depth}")
    if config.concurrency < 1:
        raise ConfigError(f"concurrency must be positive, got {config.concurrency}")
    return config


def _resolve_config_path(config_path: Path) -> Path:
    config_path = config_path.expanduser()
    if config_path.is_dir():
        return (config_path / CONFIG_FILENAME).resolve()
    return config_path.resolve()


def _read_config(path: Path) -> Any:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to read {path}: {exc}") from exc
    if not text.strip():
        return {}
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {path.name}: {exc}") from exc
    return loaded if loaded is not None else {}


def _as_str(value: Any) -> Optional[str]:
    return str(value) if isinstance(value, (str, int, float, bool)) else None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


__all__ = [
    "CONFIG_FILENAME",
    "ConfigError",
    "INFINITE_DEPTH",
    "WalkConfig",
    "load_config",
    "merge_cli_overrides",
]
