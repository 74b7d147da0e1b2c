"""Tiered buy windows.

Every session opens for buying on a fixed schedule relative to its date:

* general members at 09:30, ``buy_day_minimum`` days before the session date,
* preferred members one calendar day earlier, also at 09:30,
* preferred-plus members five minutes before the preferred window (09:25).

The session's own time of day is ignored. All values are naive datetimes in
the league's local time zone.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Optional

from .models import Member, Session

WINDOW_OPEN_TIME = time(9, 30)
PREFERRED_LEAD = timedelta(days=1)
PREFERRED_PLUS_LEAD = timedelta(minutes=5)


@dataclass(frozen=True)
class BuyWindows:
    general: datetime
    preferred: datetime
    preferred_plus: datetime


@dataclass(frozen=True)
class WindowCheck:
    allowed: bool
    opens_at: datetime
    tier: str
    reason: Optional[str] = None
    time_until_allowed: Optional[timedelta] = None


def buy_windows(session_date: datetime, buy_day_minimum: int) -> BuyWindows:
    general_day = session_date.date() - timedelta(days=buy_day_minimum)
    general = datetime.combine(general_day, WINDOW_OPEN_TIME)
    preferred = general - PREFERRED_LEAD
    return BuyWindows(
        general=general,
        preferred=preferred,
        preferred_plus=preferred - PREFERRED_PLUS_LEAD,
    )


def window_tier(member: Member) -> str:
    if member.preferred_plus:
        return "Preferred Plus"
    if member.preferred:
        return "Preferred"
    return "Regular"


def effective_open_time(windows: BuyWindows, member: Member) -> datetime:
    """Pick the window that applies to ``member``'s membership tier."""

    if member.preferred_plus:
        return windows.preferred_plus
    if member.preferred:
        return windows.preferred
    return windows.general


def can_transact(session: Session, member: Member, now: datetime) -> WindowCheck:
    """Check whether ``now`` falls inside ``member``'s buy window for ``session``."""

    windows = buy_windows(session.session_date, session.buy_day_minimum)
    opens_at = effective_open_time(windows, member)
    tier = window_tier(member)
    if now >= opens_at:
        return WindowCheck(allowed=True, opens_at=opens_at, tier=tier)
    return WindowCheck(
        allowed=False,
        opens_at=opens_at,
        tier=tier,
        reason=f"{tier} buy window opens at {opens_at:%Y-%m-%d %H:%M}",
        time_until_allowed=opens_at - now,
    )


__all__ = [
    "BuyWindows",
    "WindowCheck",
    "buy_windows",
    "can_transact",
    "effective_open_time",
    "window_tier",
]
