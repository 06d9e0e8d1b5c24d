"""
Configuration management for the log shipper.

Uses Pydantic Settings for environment variable handling and validation.
A config.yaml provides defaults, environment variables override it.
"""

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


def load_config_file(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from YAML file."""
    if config_path is None:
        possible_paths = [
            "config.yaml",
            "shiplog.yaml",
        ]

        for path in possible_paths:
            if os.path.exists(path):
                config_path = path
                break
        else:
            return {}

    if os.path.exists(config_path):
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}
            return config_data
    return {}


class ShipperSettings(BaseSettings):
    """Buffer, flush and retry configuration. Immutable once built."""

    flush_interval_ms: int = Field(default=120000, gt=0, description="Milliseconds between flush cycles")
    max_retry: int = Field(default=5, ge=0, description="Maximum retry attempts per batch")
    first_retry_interval_ms: int = Field(default=1000, ge=0, description="Base backoff unit in milliseconds")
    overlap_policy: Literal["skip", "coalesce"] = Field(
        default="skip",
        description="What a tick does while a flush cycle is still running"
    )
    stop_policy: Literal["drain", "abort"] = Field(
        default="drain",
        description="Whether stop() waits for or cancels an in-flight flush cycle"
    )
    abandoned_retry_interval_ms: int = Field(
        default=0,
        ge=0,
        description="Re-buffer abandoned batches after this long (0 disables)"
    )

    @property
    def flush_interval_seconds(self) -> float:
        return self.flush_interval_ms / 1000

    class Config:
        env_prefix = "SHIPLOG_SHIPPER_"
        frozen = True


class QueueSettings(BaseSettings):
    """Durable file queue configuration."""

    root_path: Path = Field(default=Path("./shiplog_queue"), description="Directory holding the queue journal")
    journal_name: str = Field(default="queue.wal", description="Journal file name inside root_path")
    compact_threshold_bytes: int = Field(default=1048576, gt=0, description="Rewrite the journal above this size (1MB)")
    fsync: bool = Field(default=True, description="fsync after every journal append")

    @property
    def journal_path(self) -> Path:
        return self.root_path / self.journal_name

    class Config:
        env_prefix = "SHIPLOG_QUEUE_"


class HttpOutputSettings(BaseSettings):
    """HTTP output configuration."""

    url: str = Field(default="http://localhost:3100/loki/api/v1/push", description="Endpoint receiving batches")
    timeout_seconds: int = Field(default=30, gt=0, description="Request timeout")
    headers: Dict[str, str] = Field(default_factory=dict, description="Extra request headers")

    @field_validator("headers", mode="before")
    def parse_headers(cls, v: Any) -> Dict[str, str]:
        """Parse headers from JSON string if needed."""
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
            except json.JSONDecodeError:
                return {}
            return parsed if isinstance(parsed, dict) else {}
        return v or {}

    class Config:
        env_prefix = "SHIPLOG_HTTP_"


class MaskingSettings(BaseSettings):
    """Data masking configuration."""

    mask_keys: List[str] = Field(
        default=["password", "token", "authorization", "api_key", "secret", "card_number"],
        description="Keys whose values are masked"
    )
    partial_rules: Dict[str, Dict[str, Any]] = Field(
        default={"authorization": {"keep_prefix": 5}},
        description="Partial masking rules for specific keys"
    )

    class Config:
        env_prefix = "SHIPLOG_MASKING_"


class Settings(BaseSettings):
    """Main settings."""

    log_level: str = Field(default="INFO", description="Log level")
    json_logs: bool = Field(default=False, description="Render logs as JSON")

    shipper: ShipperSettings = Field(default_factory=ShipperSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    http: HttpOutputSettings = Field(default_factory=HttpOutputSettings)
    masking: MaskingSettings = Field(default_factory=MaskingSettings)

    class Config:
        env_prefix = "SHIPLOG_"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance with config file and env support."""
    config_data = load_config_file()

    # Config file provides defaults, env vars override
    if config_data:
        _set_env_from_config(config_data)

    return Settings()


_ENV_MAPPINGS = {
    ("logging", "level"): "SHIPLOG_LOG_LEVEL",
    ("logging", "json"): "SHIPLOG_JSON_LOGS",
    ("shipper", "flush_interval_ms"): "SHIPLOG_SHIPPER_FLUSH_INTERVAL_MS",
    ("shipper", "max_retry"): "SHIPLOG_SHIPPER_MAX_RETRY",
    ("shipper", "first_retry_interval_ms"): "SHIPLOG_SHIPPER_FIRST_RETRY_INTERVAL_MS",
    ("shipper", "overlap_policy"): "SHIPLOG_SHIPPER_OVERLAP_POLICY",
    ("shipper", "stop_policy"): "SHIPLOG_SHIPPER_STOP_POLICY",
    ("shipper", "abandoned_retry_interval_ms"): "SHIPLOG_SHIPPER_ABANDONED_RETRY_INTERVAL_MS",
    ("queue", "root_path"): "SHIPLOG_QUEUE_ROOT_PATH",
    ("queue", "journal_name"): "SHIPLOG_QUEUE_JOURNAL_NAME",
    ("queue", "compact_threshold_bytes"): "SHIPLOG_QUEUE_COMPACT_THRESHOLD_BYTES",
    ("queue", "fsync"): "SHIPLOG_QUEUE_FSYNC",
    ("http", "url"): "SHIPLOG_HTTP_URL",
    ("http", "timeout_seconds"): "SHIPLOG_HTTP_TIMEOUT_SECONDS",
}

# Collection values travel through the environment as JSON
_JSON_ENV_MAPPINGS = {
    ("http", "headers"): "SHIPLOG_HTTP_HEADERS",
    ("masking", "mask_keys"): "SHIPLOG_MASKING_MASK_KEYS",
    ("masking", "partial_rules"): "SHIPLOG_MASKING_PARTIAL_RULES",
}


def _set_env_from_config(config_data: Dict[str, Any]) -> None:
    """Set environment variables from config file if not already set."""
    for (section, key), env_var in _ENV_MAPPINGS.items():
        if env_var not in os.environ:
            value = (config_data.get(section) or {}).get(key)
            if value is not None:
                os.environ[env_var] = str(value)

    for (section, key), env_var in _JSON_ENV_MAPPINGS.items():
        if env_var not in os.environ:
            value = (config_data.get(section) or {}).get(key)
            if value:
                os.environ[env_var] = json.dumps(value)


def reload_settings() -> Settings:
    """Reload settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
