"""
Configuration loading.

Settings come from an optional YAML file and can be overridden by
environment variables named ``FILTER_DSL_<SECTION>_<KEY>``, for example
``FILTER_DSL_RATE_LIMIT_MAX_RETRY_DELAY=10``. Example file::

    rate_limit:
      initial_retry_delay: 1.0
      max_retry_delay: 30.0
      retry_multiplier: 2.0
    search:
      default_timeframe: today
      default_num_results: 1000
      max_results: 50000
      max_retries: 3
      index_pattern: "detections-*"
      large_result_limit: 10000
      scroll_batch_size: 1000
      scroll_timeout: 5m
    opensearch:
      host: localhost
      port: 9200
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .models import ConfigError
from .ratelimit import RateLimitConfig
from .timeframe import parse_timeframe, validate_timeframe

logger = logging.getLogger(__name__)

ENV_PREFIX = "FILTER_DSL_"


@dataclass
class RateLimitSettings:
    initial_retry_delay: float = 1.0
    max_retry_delay: float = 30.0
    retry_multiplier: float = 2.0

    def to_rate_limit_config(self) -> RateLimitConfig:
        return RateLimitConfig(
            initial_delay=self.initial_retry_delay,
            max_delay=self.max_retry_delay,
            retry_multiplier=self.retry_multiplier,
        )


@dataclass
class SearchSettings:
    default_timeframe: str = "today"
    default_num_results: int = 1000
    max_results: int = 50000
    max_retries: int = 3
    index_pattern: str = "*"
    large_result_limit: int = 10000
    scroll_batch_size: int = 1000
    scroll_timeout: str = "5m"

    def should_use_scroll(self, num_results: int) -> bool:
        """Sizes above the large result limit are fetched with the scroll API."""
        return num_results > self.large_result_limit


@dataclass
class OpenSearchSettings:
    host: str = "localhost"
    port: int = 9200
    use_ssl: bool = False
    verify_certs: bool = False
    username: str = ""
    password: str = ""


@dataclass
class AppConfig:
    """Complete application configuration.

    Attributes:
        rate_limit: Backoff settings for search requests
        search: Query defaults and retry policy
        opensearch: Connection settings for the search backend
    """
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    search: SearchSettings = field(default_factory=SearchSettings)
    opensearch: OpenSearchSettings = field(default_factory=OpenSearchSettings)

    def validate(self) -> None:
        """Check value ranges and cross-field constraints.

        Raises:
            ConfigError: If any setting is out of range
        """
        self.rate_limit.to_rate_limit_config()

        search = self.search
        if search.default_num_results < 1:
            raise ConfigError(
                f"search.default_num_results must be >= 1, got {search.default_num_results}"
            )
        if search.max_results < search.default_num_results:
            raise ConfigError(
                f"search.max_results ({search.max_results}) must be >= "
                f"default_num_results ({search.default_num_results})"
            )
        if search.max_retries < 1:
            raise ConfigError(f"search.max_retries must be >= 1, got {search.max_retries}")
        if search.large_result_limit < 1:
            raise ConfigError(
                f"search.large_result_limit must be >= 1, got {search.large_result_limit}"
            )
        if search.scroll_batch_size < 1:
            raise ConfigError(
                f"search.scroll_batch_size must be >= 1, got {search.scroll_batch_size}"
            )
        if not search.scroll_timeout:
            raise ConfigError("search.scroll_timeout cannot be empty")
        if search.default_timeframe:
            try:
                validate_timeframe(search.default_timeframe)
                parse_timeframe(search.default_timeframe)
            except ValueError as e:
                raise ConfigError(f"search.default_timeframe: {e}") from e

        if not 0 < self.opensearch.port < 65536:
            raise ConfigError(f"opensearch.port out of range: {self.opensearch.port}")


def _coerce(value: Any, target: type, key: str) -> Any:
    """Convert a raw YAML or environment value to the field's type."""
    if isinstance(value, target) and not (target is int and isinstance(value, bool)):
        return value
    try:
        if target is bool:
            if isinstance(value, str):
                lowered = value.strip().lower()
                if lowered in ("1", "true", "yes", "on"):
                    return True
                if lowered in ("0", "false", "no", "off"):
                    return False
                raise ValueError(value)
            return bool(value)
        if target is int:
            return int(value)
        if target is float:
            return float(value)
        return str(value)
    except (TypeError, ValueError):
        raise ConfigError(f"invalid value for {key}: {value!r}")


def _apply_section(section: Any, values: Mapping[str, Any], name: str) -> None:
    known = {f.name: f for f in fields(section)}
    for key, value in values.items():
        if key not in known:
            raise ConfigError(f"unknown setting {name}.{key}")
        setattr(section, key, _coerce(value, type(getattr(section, key)), f"{name}.{key}"))


def load_config(
    path: Optional[str | Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> AppConfig:
    """Load configuration from a YAML file and the environment.

    Args:
        path: Optional YAML file; missing sections keep their defaults
        env: Environment mapping, defaults to os.environ

    Returns:
        Validated AppConfig

    Raises:
        ConfigError: If the file cannot be read or a value is invalid
    """
    config = AppConfig()
    sections = {f.name: getattr(config, f.name) for f in fields(config)}

    if path is not None:
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"failed to load config {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"config {path} must contain a mapping")

        for name, values in data.items():
            if name not in sections:
                raise ConfigError(f"unknown config section: {name}")
            if not isinstance(values, dict):
                raise ConfigError(f"config section {name} must be a mapping")
            _apply_section(sections[name], values, name)

        logger.info("Loaded configuration from %s", path)

    environ = os.environ if env is None else env
    for name, section in sections.items():
        for f in fields(section):
            var = f"{ENV_PREFIX}{name}_{f.name}".upper()
            if var in environ:
                _apply_section(section, {f.name: environ[var]}, name)
                logger.debug("Setting %s.%s from %s", name, f.name, var)

    config.validate()
    return config
