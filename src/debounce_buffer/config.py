"""Configuration module — loads and validates buffer options and environment."""

import logging
import os
from functools import lru_cache
from typing import Any, Literal

from pydantic import BaseModel, ValidationError, field_validator, model_validator

from debounce_buffer.errors import ConfigurationInvalid

BufferPattern = Literal["collect_send", "throttle", "batch", "priority"]


class BufferConfig(BaseModel):
    pattern: BufferPattern = "collect_send"
    max_size: int = 100
    debounce_window_seconds: float = 30.0
    priority_levels: int = 3
    enable_audit_log: bool = True
    audit_log_max_length: int = 10000
    flush_log_max_length: int = 1000
    key_namespace: str = "buffer"
    poll_interval_seconds: float = 1.0
    retention_seconds: float = 3600.0
    leader_lease_seconds: float = 10.0
    flush_on_threshold: bool = False
    store_max_retries: int = 3
    store_backoff_base: float = 0.2
    store_backoff_max: float = 5.0

    model_config = {"frozen": True}

    @field_validator(
        "max_size", "audit_log_max_length", "flush_log_max_length"
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"must be > 0, got {v}")
        return v

    @field_validator(
        "debounce_window_seconds",
        "poll_interval_seconds",
        "retention_seconds",
        "leader_lease_seconds",
    )
    @classmethod
    def validate_positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"must be > 0, got {v}")
        return v

    @field_validator("priority_levels")
    @classmethod
    def validate_priority_levels(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v

    @field_validator("store_max_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"must be >= 0, got {v}")
        return v

    @field_validator("key_namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        v = v.strip().rstrip(":")
        if not v:
            raise ValueError("key namespace must not be empty")
        return v

    @model_validator(mode="after")
    def validate_timing(self) -> "BufferConfig":
        if self.store_backoff_base < 0 or self.store_backoff_max < self.store_backoff_base:
            raise ValueError("store backoff must satisfy 0 <= base <= max")
        # A polling master renews its lease once per interval
        if self.leader_lease_seconds <= self.poll_interval_seconds:
            raise ValueError("leader_lease_seconds must exceed poll_interval_seconds")
        return self

    @classmethod
    def from_options(cls, **options: Any) -> "BufferConfig":
        """Build a config, raising ConfigurationInvalid instead of ValidationError."""
        try:
            return cls(**options)
        except ValidationError as exc:
            raise ConfigurationInvalid(str(exc)) from exc

    def merged(self, **changes: Any) -> "BufferConfig":
        return type(self).from_options(**{**self.model_dump(), **changes})


class Settings(BaseModel):
    redis_url: str = "redis://localhost:6379/0"
    log_level: str = "INFO"

    # Buffer defaults, overridable per coordinator
    pattern: BufferPattern = "collect_send"
    max_size: int = 100
    debounce_window_seconds: float = 30.0
    priority_levels: int = 3
    enable_audit_log: bool = True
    audit_log_max_length: int = 10000
    key_namespace: str = "buffer"
    poll_interval_seconds: float = 1.0
    retention_seconds: float = 3600.0

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        numeric = getattr(logging, v.upper(), None)
        if not isinstance(numeric, int):
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: str) -> str:
        if not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError(f"Unsupported Redis URL scheme: {v}")
        return v

    def buffer_config(self) -> BufferConfig:
        """Project the buffer-related settings onto a validated BufferConfig."""
        fields = {
            name: getattr(self, name)
            for name in BufferConfig.model_fields
            if name in type(self).model_fields
        }
        return BufferConfig.from_options(**fields)


def _load_from_env() -> Settings:
    """Build Settings from environment variables."""
    env = {}
    for field_name in Settings.model_fields:
        env_key = field_name.upper()
        val = os.environ.get(env_key)
        if val is not None:
            env[field_name] = val
    return Settings(**env)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton Settings instance."""
    return _load_from_env()
