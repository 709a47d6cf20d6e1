from __future__ import annotations

from datetime import timedelta

import pytest

from breakwater.circuit_breaker import (
    BreakerStatus,
    CacheRecord,
    CircuitState,
    Counters,
)
from tests.breakwater.support.fakes import FakeClock


def test_empty_counters_report_zero_fail_rate() -> None:
    counters = Counters()

    assert counters.total == 0
    assert counters.fail_rate == 0


@pytest.mark.parametrize(
    ("success", "fail", "expected_rate"),
    [
        (2, 6, 75),
        (2, 2, 50),
        (0, 3, 100),
        (2, 1, 33.33),
        (1, 2, 66.67),
        (5, 0, 0),
    ],
)
def test_fail_rate_is_derived_with_two_decimals(
    success: int, fail: int, expected_rate: float
) -> None:
    counters = Counters(success=success, fail=fail)

    assert counters.total == success + fail
    assert counters.fail_rate == expected_rate


def test_increments_keep_total_in_sync() -> None:
    counters = Counters()
    for outcome in [True, False, False, True, False]:
        counters = counters.with_success() if outcome else counters.with_failure()

    assert counters.to_dict() == {
        "total": 5,
        "success": 2,
        "fail": 3,
        "fail_rate": 60,
    }


def test_counters_reject_negative_values() -> None:
    with pytest.raises(ValueError, match="counters must be >= 0"):
        Counters(fail=-1)


def test_empty_record_is_closed_and_expires_after_lifetime(
    fake_clock: FakeClock,
) -> None:
    record = CacheRecord.empty(30)

    assert record.state == BreakerStatus(CircuitState.CLOSED, is_recovering=False)
    assert record.counters == Counters()
    assert record.expires_at == fake_clock.now() + timedelta(seconds=30)
    assert record.is_expired() is False
    fake_clock.advance(30)
    assert record.is_expired() is True


def test_record_rewrites_refresh_expiry_and_keep_state(fake_clock: FakeClock) -> None:
    record = CacheRecord.empty(30).with_status(
        30, CircuitState.HALF_OPEN, is_recovering=False
    )
    fake_clock.advance(20)

    failed = record.with_failure(30)

    assert failed.state.status == CircuitState.HALF_OPEN
    assert failed.counters.fail == 1
    assert failed.expires_at == fake_clock.now() + timedelta(seconds=30)
    assert record.counters.fail == 0


def test_record_to_dict_exposes_diagnostic_view(fake_clock: FakeClock) -> None:
    record = (
        CacheRecord.empty(60)
        .with_failure(60)
        .with_status(60, CircuitState.OPEN, is_recovering=True)
    )

    assert record.to_dict() == {
        "expires_at": "2020-01-01T00:01:00+00:00",
        "counters": {"total": 1, "success": 0, "fail": 1, "fail_rate": 100},
        "state": {"status": "Open", "is_recovering": True},
    }
