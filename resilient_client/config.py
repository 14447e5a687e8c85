"""
Configuration for the resilient client.

Values come from defaults, environment variables (``RESILIENT_CLIENT_*``) or
a YAML file with a ``resilience`` section:

```yaml
resilience:
  base_url: "https://api.example.com/api"
  request_timeout_seconds: 15
  probe_interval_seconds: 30
  storage_dir: "~/.resilient_client"
```
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

ENV_PREFIX = "RESILIENT_CLIENT_"


def _default_storage_dir() -> Path:
    return Path.home() / ".resilient_client"


@dataclass
class ResilienceConfig:
    """Configuration for transport, connectivity, caching and retry policy."""

    base_url: str = "http://localhost:8000/api"
    request_timeout_seconds: float = 15.0
    probe_timeout_seconds: float = 5.0
    probe_interval_seconds: float = 30.0
    health_path: str = "/health"
    refresh_path: str = "/auth/refresh"

    # Durable storage
    storage_dir: Path = field(default_factory=_default_storage_dir)
    cache_slot: str = "offline_cache"
    queue_slot: str = "request_queue"
    download_dir: Path | None = None

    # Retry policy
    default_max_retries: int = 3
    backoff_base_ms: int = 1000
    backoff_cap_ms: int = 30000

    # Cache
    default_cache_expiration_minutes: float = 30.0
    cache_sweep_interval_seconds: float = 300.0

    error_log_size: int = 100
    initial_online: bool = True

    def __post_init__(self) -> None:
        self.storage_dir = Path(self.storage_dir).expanduser()
        if self.download_dir is not None:
            self.download_dir = Path(self.download_dir).expanduser()
        self.validate()

    def validate(self) -> None:
        """Raise ValueError for settings the client cannot run with."""
        if self.request_timeout_seconds <= 0:
            raise ValueError(
                f"request_timeout_seconds must be > 0, got {self.request_timeout_seconds}"
            )
        if self.probe_interval_seconds <= 0:
            raise ValueError(
                f"probe_interval_seconds must be > 0, got {self.probe_interval_seconds}"
            )
        if self.cache_sweep_interval_seconds <= 0:
            raise ValueError(
                f"cache_sweep_interval_seconds must be > 0, got {self.cache_sweep_interval_seconds}"
            )
        if self.default_max_retries < 1:
            raise ValueError(f"default_max_retries must be >= 1, got {self.default_max_retries}")
        if self.backoff_base_ms < 0 or self.backoff_cap_ms < self.backoff_base_ms:
            raise ValueError(
                "backoff_base_ms must be >= 0 and <= backoff_cap_ms, "
                f"got base={self.backoff_base_ms} cap={self.backoff_cap_ms}"
            )
        if self.error_log_size < 1:
            raise ValueError(f"error_log_size must be >= 1, got {self.error_log_size}")
        if self.cache_slot == self.queue_slot:
            raise ValueError("cache_slot and queue_slot must be different")

    @classmethod
    def from_mapping(cls, values: dict[str, Any]) -> ResilienceConfig:
        """Build a config from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in known})

    @classmethod
    def from_env(cls) -> ResilienceConfig:
        """Create config from environment variables."""
        values: dict[str, Any] = {}
        for f in fields(cls):
            raw = os.environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is None:
                continue
            values[f.name] = _coerce(f.name, raw)
        return cls.from_mapping(values)

    @classmethod
    def from_yaml(cls, path: Path | str) -> ResilienceConfig:
        """Create config from the ``resilience`` section of a YAML file.

        A missing file or section yields the defaults.
        """
        path = Path(path)
        if not path.exists():
            return cls()

        loaded = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        section = loaded.get("resilience", {}) if isinstance(loaded, dict) else {}
        if not isinstance(section, dict):
            raise ValueError(f"'resilience' section in {path} must be a mapping")
        return cls.from_mapping(section)


_BOOL_FIELDS = {"initial_online"}
_INT_FIELDS = {"default_max_retries", "backoff_base_ms", "backoff_cap_ms", "error_log_size"}
_FLOAT_FIELDS = {
    "request_timeout_seconds",
    "probe_timeout_seconds",
    "probe_interval_seconds",
    "default_cache_expiration_minutes",
    "cache_sweep_interval_seconds",
}


def _coerce(name: str, raw: str) -> Any:
    if name in _BOOL_FIELDS:
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    if name in _INT_FIELDS:
        return int(raw)
    if name in _FLOAT_FIELDS:
        return float(raw)
    return raw
