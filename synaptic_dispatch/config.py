#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Configuration for the dispatch service.

Settings are grouped in dataclasses and can be loaded from a JSON or YAML
file, e.g.

    router:
      provider: mapbox
      timeout_s: 5
    scheduler:
      tick_interval_s: 3
      service_time_s: 600
    api:
      port: 8000
"""

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError
from .matcher import MatcherConfig

logger = logging.getLogger("DispatchConfig")

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
ROUTING_PROVIDERS = ("straight_line", "mapbox", "road_network")


@dataclass
class RouterConfig:
    provider: str = "straight_line"
    timeout_s: float = 5.0
    max_attempts: int = 3
    cache_precision: int = 5
    cache_ttl_s: Optional[float] = 300.0
    max_concurrency: int = 8
    speed_kmh: float = 60.0
    mapbox_token: Optional[str] = None
    mapbox_profile: str = "driving"
    road_network_file: Optional[str] = None
    road_network_place: Optional[str] = None

    def __post_init__(self):
        if self.provider not in ROUTING_PROVIDERS:
            raise ConfigError(f"router.provider must be one of {ROUTING_PROVIDERS}, "
                              f"got {self.provider!r}")
        if self.max_attempts < 1:
            raise ConfigError("router.max_attempts must be at least 1")
        if self.timeout_s <= 0:
            raise ConfigError("router.timeout_s must be positive")
        if self.provider == "mapbox" and not self.mapbox_token:
            self.mapbox_token = os.environ.get("MAPBOX_ACCESS_TOKEN")
            if not self.mapbox_token:
                raise ConfigError("Mapbox provider needs router.mapbox_token "
                                  "or MAPBOX_ACCESS_TOKEN")


@dataclass
class SchedulerConfig:
    tick_interval_s: float = 3.0  # the map client polls every 3 seconds
    service_time_s: Optional[float] = 600.0  # None keeps emergencies open until resolved
    pending_timeout_s: Optional[float] = None
    move_tolerance_m: float = 50.0
    clock: str = "monotonic"  # or "logical"
    clock_speed: float = 1.0

    def __post_init__(self):
        if self.clock not in ("monotonic", "logical"):
            raise ConfigError(f"scheduler.clock must be 'monotonic' or 'logical', got {self.clock!r}")
        if self.tick_interval_s <= 0:
            raise ConfigError("scheduler.tick_interval_s must be positive")

    @property
    def service_time_ms(self) -> Optional[int]:
        return None if self.service_time_s is None else int(self.service_time_s * 1000)

    @property
    def pending_timeout_ms(self) -> Optional[int]:
        return None if self.pending_timeout_s is None else int(self.pending_timeout_s * 1000)


@dataclass
class ApiConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    autorun: bool = False  # run the scheduler loop in the background


@dataclass
class DispatchConfig:
    matcher: MatcherConfig = field(default_factory=MatcherConfig)
    router: RouterConfig = field(default_factory=RouterConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DispatchConfig":
        """Build a config from nested dicts; unknown keys are logged and ignored."""
        data = dict(data or {})
        sections = {"matcher": MatcherConfig, "router": RouterConfig,
                    "scheduler": SchedulerConfig, "api": ApiConfig}

        kwargs: Dict[str, Any] = {}
        for name, section_cls in sections.items():
            section = data.pop(name, None) or {}
            if not isinstance(section, dict):
                raise ConfigError(f"Config section '{name}' must be a mapping")
            kwargs[name] = _build_section(name, section_cls, section)

        for key in ("log_level", "log_file"):
            if key in data:
                kwargs[key] = data.pop(key)

        for key in data:
            logger.warning(f"Ignoring unknown config key '{key}'")

        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def _build_section(name: str, section_cls, values: Dict[str, Any]):
    known = {f.name for f in dataclasses.fields(section_cls)}
    for key in values:
        if key not in known:
            logger.warning(f"Ignoring unknown config key '{name}.{key}'")
    try:
        return section_cls(**{k: v for k, v in values.items() if k in known})
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid '{name}' config: {e}") from e


def load_config(config_file: Optional[str] = None) -> DispatchConfig:
    """
    Load configuration from file.

    Args:
        config_file: Path to a .json, .yaml or .yml file; None for defaults

    Returns:
        DispatchConfig

    Raises:
        ConfigError: if the file is missing, unreadable or has an unknown format
    """
    if config_file is None:
        return DispatchConfig.from_dict({})

    try:
        with open(config_file, 'r') as f:
            if config_file.endswith('.json'):
                data = json.load(f)
            elif config_file.endswith('.yaml') or config_file.endswith('.yml'):
                data = yaml.safe_load(f)
            else:
                raise ConfigError(f"Unknown config format: {config_file}")
    except OSError as e:
        raise ConfigError(f"Cannot read config {config_file}: {e}") from e
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot parse config {config_file}: {e}") from e

    if data is not None and not isinstance(data, dict):
        raise ConfigError(f"Config {config_file} must contain a mapping")

    config = DispatchConfig.from_dict(data)
    logger.info(f"Loaded configuration from {config_file}")
    return config


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Install the service's log format on the root logger."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
