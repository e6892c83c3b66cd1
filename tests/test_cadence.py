from datetime import datetime, timedelta, timezone

import pytest

from claims_engine.domain.cadence import (
    ONE_TIME_PERIOD,
    is_redeemable,
    next_window_opens_at,
    period_label,
    window_for,
)
from claims_engine.models.reward import RewardCadence


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_daily_windows_roll_over_at_midnight() -> None:
    first = _utc(2024, 1, 1, 23, 59)
    second = _utc(2024, 1, 2, 0, 1)
    third = _utc(2024, 1, 2, 0, 2)

    assert is_redeemable("daily", last_redeemed_at=None, redemption_count=0, now=first)
    assert is_redeemable("daily", last_redeemed_at=first, redemption_count=1, now=second)
    assert not is_redeemable("daily", last_redeemed_at=second, redemption_count=2, now=third)
    assert next_window_opens_at("daily", last_redeemed_at=second, redemption_count=2, now=third) == _utc(2024, 1, 3)


@pytest.mark.parametrize(
    ("cadence", "moment", "label", "start", "end"),
    [
        ("daily", _utc(2024, 2, 29, 12), "2024-02-29", _utc(2024, 2, 29), _utc(2024, 3, 1)),
        ("monthly", _utc(2024, 12, 31, 23), "2024-12", _utc(2024, 12, 1), _utc(2025, 1, 1)),
        ("quarterly", _utc(2024, 5, 15), "2024-Q2", _utc(2024, 4, 1), _utc(2024, 7, 1)),
        ("quarterly", _utc(2024, 11, 2), "2024-Q4", _utc(2024, 10, 1), _utc(2025, 1, 1)),
        ("annual", _utc(2024, 7, 4), "2024", _utc(2024, 1, 1), _utc(2025, 1, 1)),
    ],
)
def test_window_boundaries(cadence, moment, label, start, end) -> None:
    window = window_for(cadence, moment, "UTC")

    assert window.label == label
    assert window.start == start
    assert window.end == end
    assert window.contains(moment)
    assert not window.contains(end)


def test_windows_follow_configured_zone() -> None:
    moment = _utc(2024, 1, 2, 3, 0)

    window = window_for(RewardCadence.DAILY, moment, "America/New_York")

    assert window.label == "2024-01-01"
    assert window.end == _utc(2024, 1, 2, 5, 0)
    assert period_label(RewardCadence.DAILY, moment, "UTC") == "2024-01-02"


def test_one_time_cadence_is_redeemable_once() -> None:
    now = _utc(2024, 3, 1)

    assert window_for(None, now).label == ONE_TIME_PERIOD
    assert is_redeemable(None, last_redeemed_at=None, redemption_count=0, now=now)
    assert not is_redeemable("one_time", last_redeemed_at=now, redemption_count=1, now=now + timedelta(days=400))
    assert next_window_opens_at("one_time", last_redeemed_at=now, redemption_count=1, now=now) is None


def test_naive_timestamps_are_read_as_utc() -> None:
    last = datetime(2024, 6, 30, 23, 0)

    assert not is_redeemable("monthly", last_redeemed_at=last, redemption_count=1, now=_utc(2024, 6, 30, 23, 30))
    assert is_redeemable("monthly", last_redeemed_at=last, redemption_count=1, now=_utc(2024, 7, 1, 0, 0))


def test_next_window_is_now_when_already_open() -> None:
    now = _utc(2024, 4, 10)

    assert next_window_opens_at("quarterly", last_redeemed_at=None, redemption_count=0, now=now) == now


def test_unknown_cadence_is_rejected() -> None:
    with pytest.raises(ValueError):
        window_for("weekly", _utc(2024, 1, 1))
