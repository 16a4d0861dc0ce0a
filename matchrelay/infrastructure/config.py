"""
Configuration loader with Pydantic validation.

Supports:
- YAML file loading
- Environment variable overrides
- Secrets from environment
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


PRODUCTION_TRANSPORT_ATTEMPTS = 5


class RetryConfig(BaseModel):
    """Backoff parameters for one dependency."""

    max_attempts: int = 3
    initial_delay_ms: float = 500.0
    backoff_factor: float = 2.0
    max_delay_ms: float = 5000.0

    @field_validator("max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_attempts must be at least 1")
        return v

    @field_validator("initial_delay_ms")
    @classmethod
    def validate_initial_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("initial_delay_ms must be non-negative")
        return v

    @field_validator("backoff_factor")
    @classmethod
    def validate_factor(cls, v: float) -> float:
        if v < 1:
            raise ValueError("backoff_factor must be >= 1")
        return v

    @model_validator(mode="after")
    def validate_cap(self) -> "RetryConfig":
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError("max_delay_ms must be >= initial_delay_ms")
        return self


class BreakerConfig(BaseModel):
    """Circuit breaker thresholds."""

    max_failures: int = 3
    reset_timeout_ms: float = 30000.0

    @field_validator("max_failures")
    @classmethod
    def validate_failures(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_failures must be at least 1")
        return v

    @field_validator("reset_timeout_ms")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v < 0:
            raise ValueError("reset_timeout_ms must be non-negative")
        return v


class CacheConfig(BaseModel):
    """Idempotency cache parameters."""

    default_ttl_seconds: float = 300.0
    sweep_interval_ms: float = 60000.0

    @field_validator("default_ttl_seconds", "sweep_interval_ms")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class DeliveryConfig(BaseModel):
    """Resilience settings for the publish path."""

    transport_retry: RetryConfig = Field(default_factory=RetryConfig)
    fallback_retry: RetryConfig = Field(
        default_factory=lambda: RetryConfig(initial_delay_ms=100.0, max_delay_ms=10000.0)
    )
    breaker: BreakerConfig = Field(default_factory=BreakerConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)


class TransportConfig(BaseModel):
    """Primary event bus endpoint."""

    event_bus_url: str = "http://localhost:4566/events"
    event_bus_name: str = "football-serverless-dev-match-event-bus"
    event_source: str = "football.matches.live"
    timeout_seconds: float = 10.0


class FallbackConfig(BaseModel):
    """Durable sinks used when the event bus cannot take an event."""

    queue_path: str = "data/dlq/events.jsonl"
    object_store_path: str = "data/errors"
    object_key_prefix: str = "failed-events"


class ObservabilityConfig(BaseModel):
    """Logging and metrics configuration."""

    log_level: str = "INFO"
    log_format: str = "json"  # json, text or compact
    metrics_enabled: bool = False
    metrics_port: int = 9090

    @field_validator("log_format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v not in ("json", "text", "compact"):
            raise ValueError("log_format must be 'json', 'text' or 'compact'")
        return v


class APIConfig(BaseModel):
    """Health probe server."""

    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8080


class SecretsConfig(BaseSettings):
    """
    Secrets loaded exclusively from environment variables.
    Never logged or persisted.
    """

    model_config = SettingsConfigDict(env_prefix="MATCHRELAY_", case_sensitive=False)

    event_bus_api_key: str = ""


class AppConfig(BaseModel):
    """Complete application configuration."""

    environment: str = "local"

    transport: TransportConfig = Field(default_factory=TransportConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    fallback: FallbackConfig = Field(default_factory=FallbackConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def diff_from_defaults(self) -> dict[str, Any]:
        """
        Get configuration differences from defaults.

        Useful for logging what's been customized.
        """
        return diff_dict(self.model_dump(), AppConfig().model_dump())


def diff_dict(d1: dict, d2: dict, path: str = "") -> dict:
    differences = {}
    for key in set(d1.keys()) | set(d2.keys()):
        full_key = f"{path}.{key}" if path else key
        v1 = d1.get(key)
        v2 = d2.get(key)

        if isinstance(v1, dict) and isinstance(v2, dict):
            nested = diff_dict(v1, v2, full_key)
            if nested:
                differences.update(nested)
        elif v1 != v2:
            differences[full_key] = {"current": v1, "default": v2}

    return differences


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Load configuration from YAML file."""
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def build_config(config_dict: dict[str, Any]) -> AppConfig:
    """
    Build an AppConfig from a raw mapping.

    Production deployments get more transport attempts unless the file
    pins max_attempts explicitly.
    """
    if config_dict.get("environment") == "production":
        delivery = config_dict.get("delivery") or {}
        pinned = (delivery.get("transport_retry") or {}).get("max_attempts")
        if pinned is None:
            config_dict = deep_merge(
                config_dict,
                {"delivery": {"transport_retry": {"max_attempts": PRODUCTION_TRANSPORT_ATTEMPTS}}},
            )
    return AppConfig(**config_dict)


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """
    Load configuration from YAML file.

    Priority (highest to lowest):
    1. Specified config file
    2. Environment-dependent defaults
    3. Defaults
    """
    config_dict: dict[str, Any] = {}

    if config_path:
        config_dict = load_yaml_config(Path(config_path))

    return build_config(config_dict)


def load_secrets() -> SecretsConfig:
    """Load secrets from environment variables."""
    return SecretsConfig()
