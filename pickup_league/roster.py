"""Player status resolution and the LockerRoom13 view.

Both functions work on plain collections loaded by the repository.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List

from .models import (
    BuySell,
    LockerRoomPlayer,
    LockerRoomSession,
    Member,
    PlayerStatus,
    Session,
    SessionRoster,
)


def classify_player(
    user_id: str,
    roster_rows: Iterable[SessionRoster],
    buy_sells: Iterable[BuySell],
) -> PlayerStatus:
    """Classify ``user_id`` for the session the given rows belong to.

    A playing roster row wins over any buy order, so a regular who also has a
    buy request queued is still reported as ``REGULAR``.
    """

    for row in roster_rows:
        if row.user_id == user_id and row.is_playing:
            return PlayerStatus.REGULAR if row.is_regular else PlayerStatus.SUBSTITUTE

    if any(buy_sell.buyer_user_id == user_id for buy_sell in buy_sells):
        return PlayerStatus.IN_QUEUE

    return PlayerStatus.NOT_PLAYING


def build_locker_room_view(
    sessions: Iterable[Session],
    members: Iterable[Member],
    rosters: Iterable[SessionRoster],
    buy_sells: Iterable[BuySell],
    now: datetime,
) -> List[LockerRoomSession]:
    upcoming = sorted(
        (s for s in sessions if s.session_date > now and not s.is_cancelled),
        key=lambda s: s.session_date,
    )
    lr13_members = sorted(
        (m for m in members if m.locker_room13),
        key=lambda m: (m.last_name, m.first_name),
    )

    rosters_by_session: Dict[int, List[SessionRoster]] = defaultdict(list)
    for row in rosters:
        rosters_by_session[row.session_id].append(row)
    buy_sells_by_session: Dict[int, List[BuySell]] = defaultdict(list)
    for buy_sell in buy_sells:
        buy_sells_by_session[buy_sell.session_id].append(buy_sell)

    view: List[LockerRoomSession] = []
    for session in upcoming:
        session_rosters = rosters_by_session.get(session.id, [])
        session_buy_sells = buy_sells_by_session.get(session.id, [])
        players = [
            LockerRoomPlayer(
                id=member.id,
                first_name=member.first_name,
                last_name=member.last_name,
                email=member.email,
                active=member.active,
                preferred=member.preferred,
                preferred_plus=member.preferred_plus,
                player_status=classify_player(member.id, session_rosters, session_buy_sells),
            )
            for member in lr13_members
        ]
        view.append(
            LockerRoomSession(
                session_id=session.id,
                session_date=session.session_date,
                players=players,
            )
        )
    return view


__all__ = ["build_locker_room_view", "classify_player"]
