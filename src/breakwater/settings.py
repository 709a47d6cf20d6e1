from __future__ import annotations

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from breakwater.circuit_breaker.breaker import CircuitBreakerConfig
from breakwater.executor import (
    DEFAULT_RETRY_COUNT,
    DEFAULT_TIMEOUT_MS,
    ExecutionPolicy,
)
from breakwater.logging import configure_structlog, get_log_level_value


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class BreakerSettings(BaseSettings):
    """Environment-driven settings for one circuit breaker instance."""

    model_config = prefixed_settings_config("BREAKWATER_")

    fail_rate: int = Field(ge=0, le=100)
    cache_lifetime_seconds: float = Field(gt=0)
    switch_to_half_open_in_ms: int = Field(ge=0)
    timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)
    retry_count: int = Field(default=DEFAULT_RETRY_COUNT, ge=0)
    log_level: str = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if not isinstance(value, str):
            return value
        get_log_level_value(value)
        return value.strip().upper()

    def execution_policy(self) -> ExecutionPolicy:
        """Build the default per-call execution policy."""
        return ExecutionPolicy(timeout_ms=self.timeout_ms, retry_count=self.retry_count)

    def to_breaker_config(self) -> CircuitBreakerConfig:
        """Build a ``CircuitBreakerConfig`` from these settings."""
        return CircuitBreakerConfig(
            fail_rate=self.fail_rate,
            cache_lifetime_seconds=self.cache_lifetime_seconds,
            switch_to_half_open_in_ms=self.switch_to_half_open_in_ms,
            execution=self.execution_policy(),
        )

    def configure_logging(self) -> structlog.stdlib.BoundLogger:
        """Configure structlog at ``log_level`` and return the package logger."""
        return configure_structlog(log_level=self.log_level)
