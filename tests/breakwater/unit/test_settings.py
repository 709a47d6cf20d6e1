from __future__ import annotations

import logging
import sys
from typing import Any, cast

import pytest
from pydantic import ValidationError

from breakwater.executor import ExecutionPolicy
from breakwater.settings import BreakerSettings


def _build_settings(**overrides: object) -> BreakerSettings:
    values: dict[str, object] = {
        "fail_rate": 75,
        "cache_lifetime_seconds": 3600,
        "switch_to_half_open_in_ms": 10,
    }
    values.update(overrides)
    return BreakerSettings(**cast(Any, values))


def test_breaker_settings_apply_executor_defaults() -> None:
    settings = _build_settings()

    assert settings.timeout_ms == 5000
    assert settings.retry_count == 5
    assert settings.log_level == "INFO"
    assert settings.execution_policy() == ExecutionPolicy(5000, 5)


def test_breaker_settings_build_breaker_config() -> None:
    config = _build_settings(timeout_ms=250, retry_count=1).to_breaker_config()

    assert config.fail_rate == 75
    assert config.cache_lifetime_seconds == 3600
    assert config.switch_to_half_open_in_ms == 10
    assert config.execution == ExecutionPolicy(timeout_ms=250, retry_count=1)


def test_breaker_settings_read_prefixed_environment(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("BREAKWATER_FAIL_RATE", "60")
    monkeypatch.setenv("BREAKWATER_CACHE_LIFETIME_SECONDS", "30")
    monkeypatch.setenv("breakwater_switch_to_half_open_in_ms", "500")
    monkeypatch.setenv("BREAKWATER_LOG_LEVEL", " debug ")

    settings = BreakerSettings()  # type: ignore[call-arg]

    assert settings.fail_rate == 60
    assert settings.cache_lifetime_seconds == 30
    assert settings.switch_to_half_open_in_ms == 500
    assert settings.log_level == "DEBUG"


def test_breaker_settings_require_circuit_values(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.delenv("BREAKWATER_FAIL_RATE", raising=False)

    with pytest.raises(ValidationError):
        BreakerSettings(cache_lifetime_seconds=1, switch_to_half_open_in_ms=1)  # type: ignore[call-arg]


@pytest.mark.parametrize(
    "overrides",
    [
        {"fail_rate": 101},
        {"fail_rate": -1},
        {"cache_lifetime_seconds": 0},
        {"switch_to_half_open_in_ms": -1},
        {"timeout_ms": 0},
        {"retry_count": -1},
        {"log_level": "TRACE"},
    ],
)
def test_breaker_settings_reject_invalid_values(overrides: dict[str, object]) -> None:
    with pytest.raises(ValidationError):
        _build_settings(**overrides)


def test_breaker_settings_configure_logging_at_log_level(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(sys.stderr, "isatty", lambda: False, raising=False)

    logger = _build_settings(log_level="warning").configure_logging()

    assert logger is not None
    assert logging.getLogger().level == logging.WARNING
    assert len(logging.getLogger().handlers) == 1
