"""
Collector configuration loader.

This module centralizes reading and validating collector settings from
`config/collectors.yml`. The CLI, the plugins and the tests should all use
this helper to keep configuration handling consistent.
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .rate_limiter import RateLimiter
from .retry import RetryPolicy

load_dotenv()

logger = logging.getLogger(__name__)

KNOWN_PLUGINS = frozenset({"jsearch", "github_prs", "mock"})

# (field, accepted types, may be null)
_SETTING_TYPES = (
    ("page_size", (int,), False),
    ("concurrency", (int,), False),
    ("rate_limit", (int,), True),
    ("rate_interval_seconds", (int, float), False),
    ("max_retries", (int,), False),
    ("initial_retry_delay", (int, float), False),
    ("backoff_factor", (int, float), False),
    ("max_retry_delay", (int, float), False),
    ("request_timeout_seconds", (int, float), True),
    ("run_timeout_seconds", (int, float), True),
)


@dataclass(frozen=True)
class CollectorSettings:
    """Tuning knobs shared by every collector run of a source."""

    page_size: int = 100
    concurrency: int = 4
    rate_limit: int | None = 10
    rate_interval_seconds: float = 1.0
    max_retries: int = 3
    initial_retry_delay: float = 1.0
    backoff_factor: float = 2.0
    max_retry_delay: float = 60.0
    request_timeout_seconds: float | None = 30
    run_timeout_seconds: float | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None, base: CollectorSettings | None = None) -> CollectorSettings:
        """Overlay ``data`` on ``base`` (or the defaults), validating keys and values."""
        base = base or cls()
        if not data:
            return base
        if not isinstance(data, Mapping):
            raise ValueError("collector settings must be a mapping")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown collector settings: {', '.join(unknown)}")

        settings = replace(base, **dict(data))
        settings.validate()
        return settings

    def validate(self) -> None:
        for name, kinds, optional in _SETTING_TYPES:
            value = getattr(self, name)
            if value is None and optional:
                continue
            if isinstance(value, bool) or not isinstance(value, kinds):
                expected = "an integer" if kinds == (int,) else "a number"
                raise ValueError(f"{name} must be {expected}, got {value!r}")

        if self.page_size <= 0:
            raise ValueError(f"page_size must be positive, got {self.page_size}")
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {self.concurrency}")
        if self.rate_interval_seconds <= 0:
            raise ValueError(f"rate_interval_seconds must be positive, got {self.rate_interval_seconds}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must not be negative, got {self.max_retries}")
        if self.run_timeout_seconds is not None and self.run_timeout_seconds <= 0:
            raise ValueError(f"run_timeout_seconds must be positive, got {self.run_timeout_seconds}")

    def rate_limiter(self) -> RateLimiter:
        return RateLimiter(rate=self.rate_limit, interval=self.rate_interval_seconds)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            initial_delay=self.initial_retry_delay,
            backoff_factor=self.backoff_factor,
            max_delay=self.max_retry_delay,
        )

    def engine_args(self, cancel_event: threading.Event | None = None) -> dict[str, Any]:
        """Keyword arguments for ``ApiCollector`` / ``GraphqlCollector``."""
        return {
            "page_size": self.page_size,
            "concurrency": self.concurrency,
            "rate_limiter": self.rate_limiter(),
            "retry_policy": self.retry_policy(),
            "request_timeout": self.request_timeout_seconds,
            "run_timeout": self.run_timeout_seconds,
            "cancel_event": cancel_event,
        }


@dataclass
class SourceConfig:
    """Configuration for a single collection source."""

    name: str
    plugin: str
    enabled: bool = True
    incremental: bool = True
    created_date_after: datetime | None = None
    base_url: str | None = None
    token_env: str | None = None
    params: dict[str, Any] = field(default_factory=dict)
    settings: CollectorSettings = field(default_factory=CollectorSettings)

    def token(self) -> str | None:
        """Credential read from the environment variable named by ``token_env``."""
        if not self.token_env:
            return None
        return os.getenv(self.token_env)


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse a cutoff from YAML into an aware datetime.

    YAML hands back unquoted timestamps as datetime objects and quoted ones
    as strings; naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError(f"Invalid timestamp {value!r}: {exc}") from exc
    else:
        raise ValueError(f"Invalid timestamp {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _project_root() -> Path:
    """Return the project root path based on this file's location."""
    return Path(__file__).resolve().parent.parent.parent


def _parse_source(name: str, data: Mapping[str, Any], defaults: CollectorSettings) -> SourceConfig:
    if not isinstance(data, Mapping):
        raise ValueError(f"Invalid source configuration for '{name}'")

    plugin = data.get("plugin")
    if not isinstance(plugin, str) or not plugin.strip():
        raise ValueError(f"Source '{name}' must define a non-empty `plugin` string")
    if plugin not in KNOWN_PLUGINS:
        raise ValueError(f"Source '{name}' uses unknown plugin '{plugin}'")

    params = data.get("params") or {}
    if not isinstance(params, Mapping):
        raise ValueError(f"`params` for source '{name}' must be a mapping")

    try:
        settings = CollectorSettings.from_mapping(data.get("settings"), base=defaults)
        created_date_after = parse_timestamp(data.get("created_date_after"))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid configuration for source '{name}': {exc}") from exc

    return SourceConfig(
        name=name,
        plugin=plugin,
        enabled=bool(data.get("enabled", True)),
        incremental=bool(data.get("incremental", True)),
        created_date_after=created_date_after,
        base_url=data.get("base_url"),
        token_env=data.get("token_env"),
        params=dict(params),
        settings=settings,
    )


def load_collectors_config(config_path: str | None = None) -> dict[str, SourceConfig]:
    """
    Load source configuration from YAML file.

    Args:
        config_path: Optional override for the config file path. When omitted,
            the function reads `config/collectors.yml` relative to the project root.

    Returns:
        Dictionary mapping source names to `SourceConfig` objects.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        ValueError: If the YAML file cannot be parsed or has invalid structure.
    """
    path = Path(config_path) if config_path else _project_root() / "config" / "collectors.yml"
    if not path.exists():
        logger.error("Collectors configuration file not found: %s", path)
        raise FileNotFoundError(f"Collectors configuration file not found: {path}")

    try:
        with path.open("r", encoding="utf-8") as handle:
            raw_config: Mapping[str, Any] | None = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        logger.error("Failed to parse collectors configuration: %s", exc)
        raise ValueError(f"Invalid YAML in collectors configuration: {exc}") from exc

    if not raw_config:
        logger.warning("Collectors configuration file is empty: %s", path)
        return {}
    if not isinstance(raw_config, Mapping):
        raise ValueError("Collectors configuration must be a mapping")

    try:
        defaults = CollectorSettings.from_mapping(raw_config.get("defaults"))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid `defaults` in collectors configuration: {exc}") from exc

    sources_section = raw_config.get("sources")
    if not isinstance(sources_section, Mapping):
        raise ValueError("`sources` section is missing or invalid in collectors configuration")

    sources = {name: _parse_source(name, data, defaults) for name, data in sources_section.items()}

    logger.info(
        "Loaded collectors configuration",
        extra={
            "sources_count": len(sources),
            "enabled_sources": [name for name, cfg in sources.items() if cfg.enabled],
        },
    )
    return sources


__all__ = [
    "CollectorSettings",
    "SourceConfig",
    "load_collectors_config",
    "parse_timestamp",
]
