"""
User configuration: which runtime serves which platform, and where data lives.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from bass.bass_errors import ConfigError
from bass.bass_thunk import Platform, LINUX
from bass.bass_trace import DEFAULT_CAPACITY


@dataclass
class RuntimeConfig:
    """Associates a platform with the name of a driver and its settings."""
    platform: Platform
    runtime: str
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Config:
    runtimes: List[RuntimeConfig] = field(default_factory=list)
    data: str = "~/.local/share/bass"
    trace_capacity: int = DEFAULT_CAPACITY

    @property
    def data_dir(self) -> Path:
        return Path(os.path.expanduser(self.data))


def default_config() -> Config:
    return Config(runtimes=[RuntimeConfig(LINUX, "docker")])


def config_path() -> Path:
    explicit = os.environ.get("BASS_CONFIG")
    if explicit:
        return Path(explicit)
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "bass" / "config.yml"
    return Path.home() / ".config" / "bass" / "config.yml"


def load_config(path: Optional[Path] = None) -> Config:
    """Loads the config file, falling back to defaults when it does not exist."""
    path = path or config_path()
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        config = default_config()
    else:
        try:
            raw = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(f"malformed config {path}: {e}") from e
        config = parse_config(raw, str(path))
    data = os.environ.get("BASS_DATA")
    if data:
        config.data = data
    return config


def parse_config(raw: Any, source: str = "config") -> Config:
    if raw is None:
        return default_config()
    if not isinstance(raw, dict):
        raise ConfigError(f"{source}: expected a mapping, got {type(raw).__name__}")

    config = default_config()
    if "runtimes" in raw:
        if not isinstance(raw["runtimes"], (list, type(None))):
            raise ConfigError(f"{source}: runtimes must be a list")
        config.runtimes = [_runtime_config(entry, source) for entry in raw["runtimes"] or []]
    if "data" in raw:
        if not isinstance(raw["data"], str):
            raise ConfigError(f"{source}: data must be a string")
        config.data = raw["data"]
    if "trace_capacity" in raw:
        capacity = raw["trace_capacity"]
        if not isinstance(capacity, int) or isinstance(capacity, bool) or capacity < 1:
            raise ConfigError(f"{source}: trace_capacity must be a positive integer")
        config.trace_capacity = capacity
    return config


def _runtime_config(entry: Any, source: str) -> RuntimeConfig:
    if not isinstance(entry, dict) or "runtime" not in entry:
        raise ConfigError(f"{source}: each runtime needs a 'runtime' name")
    plat = entry.get("platform") or {}
    if not isinstance(plat, dict) or "os" not in plat:
        raise ConfigError(f"{source}: runtime {entry['runtime']!r} needs a platform with an 'os'")
    settings = entry.get("config") or {}
    if not isinstance(settings, dict):
        raise ConfigError(f"{source}: config for runtime {entry['runtime']!r} must be a mapping")
    return RuntimeConfig(
        platform=Platform(str(plat["os"]), str(plat.get("arch") or "")),
        runtime=str(entry["runtime"]),
        config=settings,
    )
