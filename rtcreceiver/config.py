"""
Receiver configuration.

Defaults describe a local signaling server and a 1080p stream.  Named
profiles in ``configs/profiles.yaml`` override any subset of the fields.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

LOG = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).resolve().parent / "configs"
PROFILES_PATH = CONFIG_DIR / "profiles.yaml"


class ConfigError(ValueError):
    """Raised when a profile cannot be loaded or contains invalid values."""


@dataclass(frozen=True)
class ReceiverConfig:
    signaling_url: str = "ws://localhost:8080/ws"
    connect_timeout: float = 5.0
    acquisition_interval: float = 0.1
    acquisition_max_attempts: int = 100
    # Target frame size; a hint for the display, never enforced.
    video_width: int = 1920
    video_height: int = 1080
    ice_servers: List[str] = field(default_factory=list)
    tick_interval: float = 1.0 / 60.0
    required_codec: Optional[str] = None
    lenient_sdp_type: bool = False
    debug_logs: bool = False
    status_host: str = "127.0.0.1"
    status_port: int = 0

    def __post_init__(self) -> None:
        if self.connect_timeout <= 0:
            raise ConfigError("connect_timeout must be positive")
        if self.acquisition_interval < 0:
            raise ConfigError("acquisition_interval must be non-negative")
        if self.acquisition_max_attempts < 1:
            raise ConfigError("acquisition_max_attempts must be at least 1")
        if self.tick_interval <= 0:
            raise ConfigError("tick_interval must be positive")

    @property
    def acquisition_budget(self) -> float:
        return self.acquisition_max_attempts * self.acquisition_interval

    def with_overrides(self, overrides: Mapping[str, Any]) -> "ReceiverConfig":
        """
        Return a copy with ``overrides`` applied; ``None`` values are skipped.
        """

        known = {item.name for item in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ConfigError(f"unknown configuration keys: {', '.join(unknown)}")
        values = {key: value for key, value in overrides.items() if value is not None}
        if "ice_servers" in values:
            values["ice_servers"] = [str(url) for url in values["ice_servers"] or []]
        return replace(self, **values)

    def to_dict(self) -> Dict[str, Any]:
        return {item.name: getattr(self, item.name) for item in fields(self)}


def read_profiles(path: Path = PROFILES_PATH) -> Dict[str, Dict[str, Any]]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            profiles = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        LOG.warning("Profile file %s not found; using built-in defaults", path)
        return {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid profile file {path}: {exc}") from exc
    if not isinstance(profiles, dict):
        raise ConfigError(f"profile file {path} must contain a mapping")
    return profiles


def load_config(
    profile: str = "default",
    path: Path = PROFILES_PATH,
    overrides: Optional[Mapping[str, Any]] = None,
) -> ReceiverConfig:
    """
    Build a :class:`ReceiverConfig` from a named profile plus overrides.
    """

    profiles = read_profiles(path)
    config = ReceiverConfig()
    if profiles:
        if profile not in profiles:
            raise ConfigError(f"profile '{profile}' not found in {path}")
        config = config.with_overrides(profiles.get(profile) or {})
    elif profile != "default":
        raise ConfigError(f"profile '{profile}' requested but no profiles are available")
    if overrides:
        config = config.with_overrides(overrides)
    LOG.debug("Loaded receiver profile '%s': %s", profile, config.to_dict())
    return config


__all__ = ["ConfigError", "PROFILES_PATH", "ReceiverConfig", "load_config", "read_profiles"]
