"""SQLite repository for the pickup_league domain models."""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Iterator, List, Optional

from .models import (
    ActivityLog,
    BuySell,
    LockerRoomSession,
    Member,
    PaymentMethod,
    PositionPreference,
    Session,
    SessionRoster,
    TeamAssignment,
)
from .results import ConcurrencyConflictError
from .roster import build_locker_room_view

logger = logging.getLogger(__name__)


def _to_bool(value: int) -> bool:
    return bool(value)


def _iso_datetime(value: datetime) -> str:
    # Fixed width so that TEXT ordering matches chronological ordering.
    return value.isoformat(sep=" ", timespec="microseconds")


def _is_busy(exc: sqlite3.OperationalError) -> bool:
    return "locked" in str(exc) or "busy" in str(exc)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _decimal_text(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _parse_decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _row_to_member(row: sqlite3.Row) -> Member:
    return Member(
        id=row["id"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        email=row["email"],
        active=_to_bool(row["active"]),
        preferred=_to_bool(row["preferred"]),
        preferred_plus=_to_bool(row["preferred_plus"]),
        locker_room13=_to_bool(row["locker_room13"]),
        is_admin=_to_bool(row["is_admin"]),
    )


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        session_date=_parse_datetime(row["session_date"]),
        buy_day_minimum=row["buy_day_minimum"],
        note=row["note"],
        cost=_parse_decimal(row["cost"]),
        created_at=_parse_datetime(row["created_at"]),
        updated_at=_parse_datetime(row["updated_at"]),
    )


def _row_to_roster(row: sqlite3.Row) -> SessionRoster:
    return SessionRoster(
        session_id=row["session_id"],
        user_id=row["user_id"],
        is_regular=_to_bool(row["is_regular"]),
        is_playing=_to_bool(row["is_playing"]),
        team_assignment=TeamAssignment(row["team_assignment"]),
        position=PositionPreference(row["position"]),
        joined_at=_parse_datetime(row["joined_at"]),
        left_at=_parse_datetime(row["left_at"]),
        last_buy_sell_id=row["last_buy_sell_id"],
    )


def _row_to_buy_sell(row: sqlite3.Row) -> BuySell:
    return BuySell(
        id=row["id"],
        session_id=row["session_id"],
        buyer_user_id=row["buyer_user_id"],
        seller_user_id=row["seller_user_id"],
        price=_parse_decimal(row["price"]),
        payment_method=PaymentMethod(row["payment_method"]) if row["payment_method"] else None,
        payment_sent=_to_bool(row["payment_sent"]),
        payment_received=_to_bool(row["payment_received"]),
        buyer_note=row["buyer_note"],
        seller_note=row["seller_note"],
        buyer_note_flagged=_to_bool(row["buyer_note_flagged"]),
        seller_note_flagged=_to_bool(row["seller_note_flagged"]),
        team_assignment=TeamAssignment(row["team_assignment"]) if row["team_assignment"] else None,
        created_at=_parse_datetime(row["created_at"]),
        updated_at=_parse_datetime(row["updated_at"]),
        created_by_user_id=row["created_by_user_id"],
        updated_by_user_id=row["updated_by_user_id"],
    )


def _row_to_activity(row: sqlite3.Row) -> ActivityLog:
    return ActivityLog(
        id=row["id"],
        session_id=row["session_id"],
        user_id=row["user_id"],
        activity=row["activity"],
        created_at=_parse_datetime(row["created_at"]),
    )


def _buy_sell_params(buy_sell: BuySell) -> tuple:
    return (
        buy_sell.session_id,
        buy_sell.buyer_user_id,
        buy_sell.seller_user_id,
        _decimal_text(buy_sell.price),
        buy_sell.payment_method.value if buy_sell.payment_method else None,
        int(buy_sell.payment_sent),
        int(buy_sell.payment_received),
        buy_sell.buyer_note,
        buy_sell.seller_note,
        int(buy_sell.buyer_note_flagged),
        int(buy_sell.seller_note_flagged),
        buy_sell.team_assignment.value if buy_sell.team_assignment else None,
        _iso_datetime(buy_sell.created_at),
        _iso_datetime(buy_sell.updated_at),
        buy_sell.created_by_user_id,
        buy_sell.updated_by_user_id,
    )


_UNMATCHED_SELL = "seller_user_id IS NOT NULL AND buyer_user_id IS NULL"
_UNMATCHED_BUY = "buyer_user_id IS NOT NULL AND seller_user_id IS NULL"


class LeagueRepository:
    """Persistence layer backed by SQLite.

    Each method opens its own connection unless it runs inside
    :meth:`transaction`, in which case it joins the transaction's connection.
    """

    def __init__(self, path: str, *, lock_timeout: float = 5.0) -> None:
        self._path = path
        self._lock_timeout = lock_timeout
        self._local = threading.local()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        active = getattr(self._local, "conn", None)
        if active is not None:
            yield active
            return

        conn = sqlite3.connect(self._path, timeout=self._lock_timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator["LeagueRepository"]:
        """Run the enclosed repository calls in one write-locked transaction.

        ``BEGIN IMMEDIATE`` takes the database write lock up front, so two
        concurrent submits for the same session cannot both read the same
        oldest counter-offer. A lock that cannot be acquired within the
        configured timeout, either at ``BEGIN`` or at ``COMMIT`` while a reader
        still holds its shared lock, is reported as
        :class:`ConcurrencyConflictError` after the transaction is rolled back.
        Nested calls join the outer transaction.
        """

        if getattr(self._local, "conn", None) is not None:
            yield self
            return

        conn = sqlite3.connect(self._path, timeout=self._lock_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                if _is_busy(exc):
                    raise ConcurrencyConflictError(f"Ledger is busy: {exc}") from exc
                raise

            self._local.conn = conn
            try:
                yield self
            except BaseException:
                logger.warning("Rolling back ledger transaction", exc_info=True)
                conn.execute("ROLLBACK")
                raise
            finally:
                self._local.conn = None

            try:
                conn.execute("COMMIT")
            except sqlite3.OperationalError as exc:
                # A reader still holding its shared lock blocks the commit.
                logger.warning("Commit failed, rolling back ledger transaction: %s", exc)
                conn.execute("ROLLBACK")
                if _is_busy(exc):
                    raise ConcurrencyConflictError(f"Ledger is busy at commit: {exc}") from exc
                raise
        finally:
            conn.close()

    def initialize_schema(self) -> None:
        """Create tables if they do not already exist."""

        with self._connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS members (
                    id TEXT PRIMARY KEY,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL,
                    email TEXT,
                    active INTEGER NOT NULL DEFAULT 1,
                    preferred INTEGER NOT NULL DEFAULT 0,
                    preferred_plus INTEGER NOT NULL DEFAULT 0,
                    locker_room13 INTEGER NOT NULL DEFAULT 0,
                    is_admin INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_date TEXT NOT NULL,
                    buy_day_minimum INTEGER NOT NULL DEFAULT 6,
                    note TEXT,
                    cost TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS session_rosters (
                    session_id INTEGER NOT NULL,
                    user_id TEXT NOT NULL,
                    is_regular INTEGER NOT NULL,
                    is_playing INTEGER NOT NULL,
                    team_assignment TEXT NOT NULL,
                    position TEXT NOT NULL,
                    joined_at TEXT NOT NULL,
                    left_at TEXT,
                    last_buy_sell_id INTEGER,
                    PRIMARY KEY (session_id, user_id),
                    FOREIGN KEY (session_id) REFERENCES sessions (id) ON DELETE CASCADE,
                    FOREIGN KEY (user_id) REFERENCES members (id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS buy_sells (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id INTEGER NOT NULL,
                    buyer_user_id TEXT,
                    seller_user_id TEXT,
                    price TEXT,
                    payment_method TEXT,
                    payment_sent INTEGER NOT NULL DEFAULT 0,
                    payment_received INTEGER NOT NULL DEFAULT 0,
                    buyer_note TEXT,
                    seller_note TEXT,
                    buyer_note_flagged INTEGER NOT NULL DEFAULT 0,
                    seller_note_flagged INTEGER NOT NULL DEFAULT 0,
                    team_assignment TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    created_by_user_id TEXT,
                    updated_by_user_id TEXT,
                    CHECK (buyer_user_id IS NOT NULL OR seller_user_id IS NOT NULL),
                    FOREIGN KEY (session_id) REFERENCES sessions (id) ON DELETE CASCADE,
                    FOREIGN KEY (buyer_user_id) REFERENCES members (id),
                    FOREIGN KEY (seller_user_id) REFERENCES members (id)
                );

                CREATE INDEX IF NOT EXISTS ix_buy_sells_session_created
                    ON buy_sells (session_id, created_at, id);

                CREATE TABLE IF NOT EXISTS activity_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id INTEGER NOT NULL,
                    user_id TEXT,
                    activity TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (session_id) REFERENCES sessions (id) ON DELETE CASCADE
                );
                """
            )

    # Member operations -------------------------------------------------
    def add_member(self, member: Member) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO members (
                    id, first_name, last_name, email, active,
                    preferred, preferred_plus, locker_room13, is_admin
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    member.id,
                    member.first_name,
                    member.last_name,
                    member.email,
                    int(member.active),
                    int(member.preferred),
                    int(member.preferred_plus),
                    int(member.locker_room13),
                    int(member.is_admin),
                ),
            )

    def get_member(self, member_id: str) -> Optional[Member]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM members WHERE id = ?", (member_id,)).fetchone()
        return _row_to_member(row) if row is not None else None

    def list_members(self, *, locker_room13_only: bool = False) -> List[Member]:
        query = "SELECT * FROM members"
        if locker_room13_only:
            query += " WHERE locker_room13 = 1"
        query += " ORDER BY last_name, first_name"
        with self._connection() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_member(row) for row in rows]

    # Session operations ------------------------------------------------
    def create_session(
        self,
        session_date: datetime,
        *,
        buy_day_minimum: int = 6,
        note: Optional[str] = None,
        cost: Optional[Decimal] = None,
    ) -> Session:
        now = datetime.utcnow()
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sessions (session_date, buy_day_minimum, note, cost, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    _iso_datetime(session_date),
                    buy_day_minimum,
                    note,
                    _decimal_text(cost),
                    _iso_datetime(now),
                    _iso_datetime(now),
                ),
            )
        return Session(
            id=cursor.lastrowid,
            session_date=session_date,
            buy_day_minimum=buy_day_minimum,
            note=note,
            cost=cost,
            created_at=now,
            updated_at=now,
        )

    def get_session(self, session_id: int) -> Optional[Session]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_sessions(self) -> List[Session]:
        with self._connection() as conn:
            rows = conn.execute("SELECT * FROM sessions ORDER BY session_date DESC").fetchall()
        return [_row_to_session(row) for row in rows]

    def list_future_sessions(self, now: datetime) -> List[Session]:
        """Sessions after ``now`` whose note does not mark them cancelled."""

        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sessions
                WHERE session_date > ?
                  AND LOWER(COALESCE(note, '')) NOT LIKE '%cancelled%'
                ORDER BY session_date
                """,
                (_iso_datetime(now),),
            ).fetchall()
        return [_row_to_session(row) for row in rows]

    # Roster operations -------------------------------------------------
    def upsert_roster_entry(self, entry: SessionRoster) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO session_rosters (
                    session_id, user_id, is_regular, is_playing, team_assignment,
                    position, joined_at, left_at, last_buy_sell_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.session_id,
                    entry.user_id,
                    int(entry.is_regular),
                    int(entry.is_playing),
                    entry.team_assignment.value,
                    entry.position.value,
                    _iso_datetime(entry.joined_at),
                    _iso_datetime(entry.left_at) if entry.left_at else None,
                    entry.last_buy_sell_id,
                ),
            )

    def get_roster_entry(self, session_id: int, user_id: str) -> Optional[SessionRoster]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM session_rosters WHERE session_id = ? AND user_id = ?",
                (session_id, user_id),
            ).fetchone()
        return _row_to_roster(row) if row is not None else None

    def list_roster(self, session_id: int) -> List[SessionRoster]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM session_rosters
                WHERE session_id = ?
                ORDER BY is_regular DESC, joined_at
                """,
                (session_id,),
            ).fetchall()
        return [_row_to_roster(row) for row in rows]

    def list_rosters_for_sessions(self, session_ids: Iterable[int]) -> List[SessionRoster]:
        ids = list(session_ids)
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        query = f"SELECT * FROM session_rosters WHERE session_id IN ({placeholders})"
        with self._connection() as conn:
            rows = conn.execute(query, ids).fetchall()
        return [_row_to_roster(row) for row in rows]

    # Buy/Sell operations -----------------------------------------------
    def add_buy_sell(self, buy_sell: BuySell) -> BuySell:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO buy_sells (
                    session_id, buyer_user_id, seller_user_id, price, payment_method,
                    payment_sent, payment_received, buyer_note, seller_note,
                    buyer_note_flagged, seller_note_flagged, team_assignment,
                    created_at, updated_at, created_by_user_id, updated_by_user_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                _buy_sell_params(buy_sell),
            )
        return replace(buy_sell, id=cursor.lastrowid)

    def get_buy_sell(self, buy_sell_id: int) -> Optional[BuySell]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM buy_sells WHERE id = ?", (buy_sell_id,)).fetchone()
        return _row_to_buy_sell(row) if row is not None else None

    def update_buy_sell(self, buy_sell: BuySell) -> Optional[BuySell]:
        return self._update_buy_sell(buy_sell, condition="")

    def complete_match(self, buy_sell: BuySell) -> BuySell:
        """Store ``buy_sell`` as a matched pair, provided it is still single-sided.

        This is the compare-and-swap step of matching: if another request has
        already filled the missing side (or deleted the record) nothing is
        written and :class:`ConcurrencyConflictError` is raised.
        """

        saved = self._update_buy_sell(
            buy_sell,
            condition=" AND (buyer_user_id IS NULL OR seller_user_id IS NULL)",
        )
        if saved is None:
            raise ConcurrencyConflictError(
                f"BuySell {buy_sell.id} was matched or removed by another request",
                buy_sell_id=buy_sell.id,
            )
        return saved

    def _update_buy_sell(self, buy_sell: BuySell, *, condition: str) -> Optional[BuySell]:
        params = _buy_sell_params(buy_sell)
        with self._connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE buy_sells
                SET session_id = ?, buyer_user_id = ?, seller_user_id = ?, price = ?,
                    payment_method = ?, payment_sent = ?, payment_received = ?,
                    buyer_note = ?, seller_note = ?, buyer_note_flagged = ?,
                    seller_note_flagged = ?, team_assignment = ?, created_at = ?,
                    updated_at = ?, created_by_user_id = ?, updated_by_user_id = ?
                WHERE id = ?{condition}
                """,
                params + (buy_sell.id,),
            )

        if cursor.rowcount == 0:
            return None
        return buy_sell

    def delete_buy_sell(self, buy_sell_id: int) -> bool:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM buy_sells WHERE id = ?", (buy_sell_id,))
        return cursor.rowcount > 0

    def list_buy_sells(self, session_id: int) -> List[BuySell]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM buy_sells WHERE session_id = ? ORDER BY created_at DESC, id DESC",
                (session_id,),
            ).fetchall()
        return [_row_to_buy_sell(row) for row in rows]

    def list_buy_sells_for_sessions(self, session_ids: Iterable[int]) -> List[BuySell]:
        ids = list(session_ids)
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        query = f"SELECT * FROM buy_sells WHERE session_id IN ({placeholders})"
        with self._connection() as conn:
            rows = conn.execute(query, ids).fetchall()
        return [_row_to_buy_sell(row) for row in rows]

    def list_member_buy_sells(
        self, user_id: str, *, session_id: Optional[int] = None
    ) -> List[BuySell]:
        query = "SELECT * FROM buy_sells WHERE (buyer_user_id = ? OR seller_user_id = ?)"
        params: tuple = (user_id, user_id)
        if session_id is not None:
            query += " AND session_id = ?"
            params += (session_id,)
        query += " ORDER BY created_at DESC, id DESC"
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_buy_sell(row) for row in rows]

    def find_oldest_unmatched_sell(self, session_id: int) -> Optional[BuySell]:
        return self._find_oldest(session_id, _UNMATCHED_SELL)

    def find_oldest_unmatched_buy(self, session_id: int) -> Optional[BuySell]:
        return self._find_oldest(session_id, _UNMATCHED_BUY)

    def _find_oldest(self, session_id: int, side: str) -> Optional[BuySell]:
        with self._connection() as conn:
            row = conn.execute(
                f"""
                SELECT * FROM buy_sells
                WHERE session_id = ? AND {side}
                ORDER BY created_at, id
                LIMIT 1
                """,
                (session_id,),
            ).fetchone()
        return _row_to_buy_sell(row) if row is not None else None

    def queue_position(self, buy_sell_id: int) -> Optional[int]:
        """1-based rank among unmatched orders on the same side of the same session."""

        buy_sell = self.get_buy_sell(buy_sell_id)
        if buy_sell is None or buy_sell.is_matched:
            return None
        side = _UNMATCHED_BUY if buy_sell.is_buy_only else _UNMATCHED_SELL
        created_at = _iso_datetime(buy_sell.created_at)
        with self._connection() as conn:
            row = conn.execute(
                f"""
                SELECT COUNT(*) FROM buy_sells
                WHERE session_id = ? AND {side}
                  AND (created_at < ? OR (created_at = ? AND id <= ?))
                """,
                (buy_sell.session_id, created_at, created_at, buy_sell.id),
            ).fetchone()
        return row[0]

    # Activity log ------------------------------------------------------
    def add_activity(
        self,
        session_id: int,
        activity: str,
        *,
        user_id: Optional[str] = None,
    ) -> ActivityLog:
        now = datetime.utcnow()
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO activity_logs (session_id, user_id, activity, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (session_id, user_id, activity, _iso_datetime(now)),
            )
        return ActivityLog(
            id=cursor.lastrowid,
            session_id=session_id,
            user_id=user_id,
            activity=activity,
            created_at=now,
        )

    def list_activities(self, session_id: int) -> List[ActivityLog]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM activity_logs WHERE session_id = ? ORDER BY created_at DESC, id DESC",
                (session_id,),
            ).fetchall()
        return [_row_to_activity(row) for row in rows]

    # Reporting helpers -------------------------------------------------
    def locker_room13_view(self, now: datetime) -> List[LockerRoomSession]:
        sessions = self.list_future_sessions(now)
        session_ids = [session.id for session in sessions]
        return build_locker_room_view(
            sessions,
            self.list_members(locker_room13_only=True),
            self.list_rosters_for_sessions(session_ids),
            self.list_buy_sells_for_sessions(session_ids),
            now,
        )


__all__ = ["LeagueRepository"]
