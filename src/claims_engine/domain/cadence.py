"""Calendar redemption windows for slotted rewards.

Windows are computed in one configured zone (``settings.cadence_timezone``)
so every caller agrees on when a day, month, quarter or year rolls over.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from zoneinfo import ZoneInfo

from claims_engine.core.clock import as_utc
from claims_engine.core.settings import settings
from claims_engine.models.reward import RewardCadence

ONE_TIME_PERIOD = "one_time"


@dataclass(frozen=True, slots=True)
class CadenceWindow:
    """Half-open ``[start, end)`` window in UTC with its period label."""

    cadence: RewardCadence
    start: datetime | None
    end: datetime | None
    label: str

    def contains(self, moment: datetime) -> bool:
        if self.start is None or self.end is None:
            return True
        moment = as_utc(moment)
        return self.start <= moment < self.end


def cadence_zone(zone: tzinfo | str | None = None) -> tzinfo:
    if zone is None:
        return ZoneInfo(settings.cadence_timezone)
    if isinstance(zone, str):
        return ZoneInfo(zone)
    return zone


def coerce_cadence(value: RewardCadence | str | None) -> RewardCadence:
    """Missing cadence behaves as one-time."""

    if value is None:
        return RewardCadence.ONE_TIME
    return RewardCadence(value)


def window_for(
    cadence: RewardCadence | str | None,
    moment: datetime,
    zone: tzinfo | str | None = None,
) -> CadenceWindow:
    cadence = coerce_cadence(cadence)
    tz = cadence_zone(zone)
    local = as_utc(moment).astimezone(tz)

    if cadence is RewardCadence.ONE_TIME:
        return CadenceWindow(cadence=cadence, start=None, end=None, label=ONE_TIME_PERIOD)

    if cadence is RewardCadence.DAILY:
        start = datetime(local.year, local.month, local.day, tzinfo=tz)
        following = start.date() + timedelta(days=1)
        end = datetime(following.year, following.month, following.day, tzinfo=tz)
        label = start.strftime("%Y-%m-%d")
    elif cadence is RewardCadence.MONTHLY:
        start = datetime(local.year, local.month, 1, tzinfo=tz)
        end = _add_months(start, 1)
        label = start.strftime("%Y-%m")
    elif cadence is RewardCadence.QUARTERLY:
        quarter = (local.month - 1) // 3
        start = datetime(local.year, quarter * 3 + 1, 1, tzinfo=tz)
        end = _add_months(start, 3)
        label = f"{local.year}-Q{quarter + 1}"
    else:
        start = datetime(local.year, 1, 1, tzinfo=tz)
        end = datetime(local.year + 1, 1, 1, tzinfo=tz)
        label = str(local.year)

    return CadenceWindow(cadence=cadence, start=as_utc(start), end=as_utc(end), label=label)


def _add_months(start: datetime, months: int) -> datetime:
    index = start.month - 1 + months
    return start.replace(year=start.year + index // 12, month=index % 12 + 1)


def period_label(cadence: RewardCadence | str | None, moment: datetime, zone: tzinfo | str | None = None) -> str:
    return window_for(cadence, moment, zone).label


def is_redeemable(
    cadence: RewardCadence | str | None,
    *,
    last_redeemed_at: datetime | None,
    redemption_count: int,
    now: datetime,
    zone: tzinfo | str | None = None,
) -> bool:
    cadence = coerce_cadence(cadence)
    if cadence is RewardCadence.ONE_TIME:
        return redemption_count == 0
    if last_redeemed_at is None:
        return True
    return not window_for(cadence, now, zone).contains(last_redeemed_at)


def next_window_opens_at(
    cadence: RewardCadence | str | None,
    *,
    last_redeemed_at: datetime | None,
    redemption_count: int,
    now: datetime,
    zone: tzinfo | str | None = None,
) -> datetime | None:
    """Return when the selection next becomes redeemable.

    ``now`` is returned when it already is, ``None`` when it never will be.
    """

    cadence = coerce_cadence(cadence)
    if is_redeemable(cadence, last_redeemed_at=last_redeemed_at, redemption_count=redemption_count, now=now, zone=zone):
        return as_utc(now)
    if cadence is RewardCadence.ONE_TIME:
        return None
    return window_for(cadence, now, zone).end


__all__ = [
    "CadenceWindow",
    "ONE_TIME_PERIOD",
    "cadence_zone",
    "coerce_cadence",
    "is_redeemable",
    "next_window_opens_at",
    "period_label",
    "window_for",
]
