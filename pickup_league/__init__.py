"""pickup_league package exposing the Buy/Sell marketplace and roster engine."""

from .marketplace import MarketplaceService
from .models import (
    ActivityLog,
    BuySell,
    BuySellStatus,
    BuySellView,
    LockerRoomPlayer,
    LockerRoomSession,
    Member,
    PaymentMethod,
    PlayerStatus,
    PositionPreference,
    Session,
    SessionRoster,
    TeamAssignment,
    TransactionStatus,
)
from .repository import LeagueRepository
from .results import ConcurrencyConflictError, Failure, FailureKind, ServiceResult
from .roster import build_locker_room_view, classify_player
from .transactions import classify
from .windows import BuyWindows, buy_windows, can_transact

__all__ = [
    "ActivityLog",
    "BuySell",
    "BuySellStatus",
    "BuySellView",
    "BuyWindows",
    "ConcurrencyConflictError",
    "Failure",
    "FailureKind",
    "LeagueRepository",
    "LockerRoomPlayer",
    "LockerRoomSession",
    "MarketplaceService",
    "Member",
    "PaymentMethod",
    "PlayerStatus",
    "PositionPreference",
    "ServiceResult",
    "Session",
    "SessionRoster",
    "TeamAssignment",
    "TransactionStatus",
    "build_locker_room_view",
    "buy_windows",
    "can_transact",
    "classify",
    "classify_player",
]
