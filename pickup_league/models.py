"""Domain models for the pickup_league project.

These dataclasses capture sessions, rosters and the Buy/Sell marketplace. They
are persisted in a SQLite database by :mod:`pickup_league.repository`, but they
stay storage-agnostic so the pure resolver functions can work on plain
collections.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import List, Optional


class TeamAssignment(Enum):
    """Jersey colour a rostered player is assigned to."""

    TBD = "TBD"
    LIGHT = "Light"
    DARK = "Dark"


class PositionPreference(Enum):
    TBD = "TBD"
    FORWARD = "Forward"
    DEFENSE = "Defense"
    GOALIE = "Goalie"


class PaymentMethod(Enum):
    """How a buyer paid a seller. Only recorded, never processed."""

    UNKNOWN = "Unknown"
    PAYPAL = "PayPal"
    VENMO = "Venmo"
    CASHAPP = "CashApp"
    ZELLE = "Zelle"
    BANK_TRANSFER = "Bank Transfer"
    CASH = "Cash"


class TransactionStatus(Enum):
    """Derived state of a :class:`BuySell`; see :func:`pickup_league.transactions.classify`."""

    AVAILABLE_TO_BUY = "Available to Buy"
    LOOKING_TO_BUY = "Looking to Buy"
    PAYMENT_PENDING = "Payment Pending"
    PAYMENT_SENT = "Payment Sent"
    COMPLETE = "Complete"
    UNKNOWN = "Unknown"


class PlayerStatus(Enum):
    """A member's participation in one session."""

    REGULAR = "Regular"
    SUBSTITUTE = "Substitute"
    IN_QUEUE = "In Queue"
    NOT_PLAYING = "Not Playing"


@dataclass(frozen=True)
class Member:
    """The slice of a user profile the marketplace cares about."""

    id: str
    first_name: str
    last_name: str
    email: Optional[str] = None
    active: bool = True
    preferred: bool = False
    preferred_plus: bool = False
    locker_room13: bool = False
    is_admin: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


@dataclass(frozen=True)
class Session:
    """A single pickup game."""

    id: int
    session_date: datetime
    buy_day_minimum: int = 6
    note: Optional[str] = None
    cost: Optional[Decimal] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_cancelled(self) -> bool:
        return "cancelled" in (self.note or "").lower()


@dataclass(frozen=True)
class SessionRoster:
    """A player's placement for one session."""

    session_id: int
    user_id: str
    is_regular: bool
    is_playing: bool
    team_assignment: TeamAssignment = TeamAssignment.TBD
    position: PositionPreference = PositionPreference.TBD
    joined_at: datetime = field(default_factory=datetime.utcnow)
    left_at: Optional[datetime] = None
    last_buy_sell_id: Optional[int] = None


@dataclass
class BuySell:
    """One marketplace order: a buy intent, a sell intent, or a matched pair.

    ``id`` is ``None`` until the record has been stored. The transaction
    status is always derived from the buyer/seller ids and the two payment
    flags, so it cannot drift from them.
    """

    session_id: int
    id: Optional[int] = None
    buyer_user_id: Optional[str] = None
    seller_user_id: Optional[str] = None
    price: Optional[Decimal] = None
    payment_method: Optional[PaymentMethod] = None
    payment_sent: bool = False
    payment_received: bool = False
    buyer_note: Optional[str] = None
    seller_note: Optional[str] = None
    buyer_note_flagged: bool = False
    seller_note_flagged: bool = False
    team_assignment: Optional[TeamAssignment] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    created_by_user_id: Optional[str] = None
    updated_by_user_id: Optional[str] = None

    @property
    def is_matched(self) -> bool:
        return self.buyer_user_id is not None and self.seller_user_id is not None

    @property
    def is_buy_only(self) -> bool:
        return self.buyer_user_id is not None and self.seller_user_id is None

    @property
    def is_sell_only(self) -> bool:
        return self.seller_user_id is not None and self.buyer_user_id is None

    @property
    def transaction_status(self) -> TransactionStatus:
        from .transactions import classify

        return classify(self)


@dataclass(frozen=True)
class ActivityLog:
    """A line in a session's activity feed."""

    id: int
    session_id: int
    activity: str
    user_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(frozen=True)
class BuySellStatus:
    """Answer to "may this member buy/sell for this session right now"."""

    is_allowed: bool
    reason: str
    time_until_allowed: Optional[timedelta] = None


@dataclass(frozen=True)
class BuySellView:
    """A stored order together with its derived status and queue rank."""

    buy_sell: BuySell
    transaction_status: TransactionStatus
    queue_position: Optional[int]


@dataclass(frozen=True)
class LockerRoomPlayer:
    id: str
    first_name: str
    last_name: str
    email: Optional[str]
    active: bool
    preferred: bool
    preferred_plus: bool
    player_status: PlayerStatus


@dataclass
class LockerRoomSession:
    """Upcoming session with the LockerRoom13 members' statuses."""

    session_id: int
    session_date: datetime
    players: List[LockerRoomPlayer] = field(default_factory=list)


__all__ = [
    "ActivityLog",
    "BuySell",
    "BuySellStatus",
    "BuySellView",
    "LockerRoomPlayer",
    "LockerRoomSession",
    "Member",
    "PaymentMethod",
    "PlayerStatus",
    "PositionPreference",
    "Session",
    "SessionRoster",
    "TeamAssignment",
    "TransactionStatus",
]
