"""FastAPI application exposing the Buy/Sell marketplace."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, status
from pydantic import BaseModel, Field

from .config import configure_logging, get_settings
from .marketplace import MarketplaceService
from .models import (
    ActivityLog,
    BuySellStatus,
    BuySellView,
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
from .results import Failure, FailureKind, ServiceResult

logger = logging.getLogger(__name__)

settings = get_settings()

_repository = LeagueRepository(settings.database_path, lock_timeout=settings.lock_timeout_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    _repository.initialize_schema()
    logger.info("Ledger ready at %s", settings.database_path)
    yield


app = FastAPI(title="Pickup League API", lifespan=lifespan)


def get_repository() -> LeagueRepository:
    """Provide the repository instance for FastAPI dependencies."""

    return _repository


def get_marketplace(
    repository: LeagueRepository = Depends(get_repository),
) -> MarketplaceService:
    return MarketplaceService(repository)


class MemberCreate(BaseModel):
    id: str = Field(..., min_length=1)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: Optional[str] = None
    active: bool = True
    preferred: bool = False
    preferred_plus: bool = False
    locker_room13: bool = False
    is_admin: bool = False


class MemberResponse(MemberCreate):
    pass


class SessionCreate(BaseModel):
    session_date: datetime
    buy_day_minimum: Optional[int] = Field(None, ge=0)
    note: Optional[str] = None
    cost: Optional[Decimal] = None


class SessionResponse(BaseModel):
    id: int
    session_date: datetime
    buy_day_minimum: int
    note: Optional[str]
    cost: Optional[Decimal]
    is_cancelled: bool
    created_at: datetime
    updated_at: datetime


class RosterEntryUpdate(BaseModel):
    is_regular: bool
    is_playing: bool = True
    team_assignment: TeamAssignment = TeamAssignment.TBD
    position: PositionPreference = PositionPreference.TBD


class RosterEntryResponse(BaseModel):
    session_id: int
    user_id: str
    is_regular: bool
    is_playing: bool
    team_assignment: TeamAssignment
    position: PositionPreference
    joined_at: datetime
    left_at: Optional[datetime]
    last_buy_sell_id: Optional[int]


class BuyRequest(BaseModel):
    session_id: int
    note: Optional[str] = None


class SellRequest(BaseModel):
    session_id: int
    note: Optional[str] = None


class PaymentSentRequest(BaseModel):
    payment_method: PaymentMethod


class BuySellResponse(BaseModel):
    id: int
    session_id: int
    buyer_user_id: Optional[str]
    seller_user_id: Optional[str]
    price: Optional[Decimal]
    payment_method: Optional[PaymentMethod]
    payment_sent: bool
    payment_received: bool
    buyer_note: Optional[str]
    seller_note: Optional[str]
    team_assignment: Optional[TeamAssignment]
    transaction_status: TransactionStatus
    queue_position: Optional[int]
    created_at: datetime
    updated_at: datetime


class MarketplaceResponse(BaseModel):
    buy_sell: BuySellResponse
    message: Optional[str]


class BuySellStatusResponse(BaseModel):
    is_allowed: bool
    reason: str
    time_until_allowed_seconds: Optional[float] = None


class ActivityResponse(BaseModel):
    id: int
    session_id: int
    user_id: Optional[str]
    activity: str
    created_at: datetime


class LockerRoomPlayerResponse(BaseModel):
    id: str
    first_name: str
    last_name: str
    email: Optional[str]
    active: bool
    preferred: bool
    preferred_plus: bool
    player_status: PlayerStatus


class LockerRoomSessionResponse(BaseModel):
    session_id: int
    session_date: datetime
    players: List[LockerRoomPlayerResponse]


_FAILURE_STATUS = {
    FailureKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    FailureKind.INVALID_STATE: status.HTTP_409_CONFLICT,
    FailureKind.WINDOW_CLOSED: status.HTTP_403_FORBIDDEN,
    FailureKind.NOT_AUTHORIZED: status.HTTP_403_FORBIDDEN,
    FailureKind.CONCURRENCY_CONFLICT: status.HTTP_409_CONFLICT,
}


def _raise_failure(failure: Failure) -> None:
    detail = {"kind": failure.kind.value, "message": failure.message}
    if failure.reason is not None:
        detail["reason"] = failure.reason
    if failure.time_until_allowed is not None:
        detail["time_until_allowed_seconds"] = failure.time_until_allowed.total_seconds()
    raise HTTPException(status_code=_FAILURE_STATUS[failure.kind], detail=detail)


def _unwrap(result: ServiceResult):
    if not result.ok:
        _raise_failure(result.failure)
    return result.data


def _member_to_response(member: Member) -> MemberResponse:
    return MemberResponse(
        id=member.id,
        first_name=member.first_name,
        last_name=member.last_name,
        email=member.email,
        active=member.active,
        preferred=member.preferred,
        preferred_plus=member.preferred_plus,
        locker_room13=member.locker_room13,
        is_admin=member.is_admin,
    )


def _session_to_response(session: Session) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        session_date=session.session_date,
        buy_day_minimum=session.buy_day_minimum,
        note=session.note,
        cost=session.cost,
        is_cancelled=session.is_cancelled,
        created_at=session.created_at,
        updated_at=session.updated_at,
    )


def _roster_to_response(entry: SessionRoster) -> RosterEntryResponse:
    return RosterEntryResponse(
        session_id=entry.session_id,
        user_id=entry.user_id,
        is_regular=entry.is_regular,
        is_playing=entry.is_playing,
        team_assignment=entry.team_assignment,
        position=entry.position,
        joined_at=entry.joined_at,
        left_at=entry.left_at,
        last_buy_sell_id=entry.last_buy_sell_id,
    )


def _view_to_response(view: BuySellView) -> BuySellResponse:
    buy_sell = view.buy_sell
    return BuySellResponse(
        id=buy_sell.id,
        session_id=buy_sell.session_id,
        buyer_user_id=buy_sell.buyer_user_id,
        seller_user_id=buy_sell.seller_user_id,
        price=buy_sell.price,
        payment_method=buy_sell.payment_method,
        payment_sent=buy_sell.payment_sent,
        payment_received=buy_sell.payment_received,
        buyer_note=buy_sell.buyer_note,
        seller_note=buy_sell.seller_note,
        team_assignment=buy_sell.team_assignment,
        transaction_status=view.transaction_status,
        queue_position=view.queue_position,
        created_at=buy_sell.created_at,
        updated_at=buy_sell.updated_at,
    )


def _marketplace_response(result: ServiceResult) -> MarketplaceResponse:
    view = _unwrap(result)
    return MarketplaceResponse(buy_sell=_view_to_response(view), message=result.message)


def _status_to_response(buy_sell_status: BuySellStatus) -> BuySellStatusResponse:
    until = buy_sell_status.time_until_allowed
    return BuySellStatusResponse(
        is_allowed=buy_sell_status.is_allowed,
        reason=buy_sell_status.reason,
        time_until_allowed_seconds=until.total_seconds() if until is not None else None,
    )


def _activity_to_response(activity: ActivityLog) -> ActivityResponse:
    return ActivityResponse(
        id=activity.id,
        session_id=activity.session_id,
        user_id=activity.user_id,
        activity=activity.activity,
        created_at=activity.created_at,
    )


def _locker_room_to_response(entry: LockerRoomSession) -> LockerRoomSessionResponse:
    return LockerRoomSessionResponse(
        session_id=entry.session_id,
        session_date=entry.session_date,
        players=[
            LockerRoomPlayerResponse(
                id=player.id,
                first_name=player.first_name,
                last_name=player.last_name,
                email=player.email,
                active=player.active,
                preferred=player.preferred,
                preferred_plus=player.preferred_plus,
                player_status=player.player_status,
            )
            for player in entry.players
        ],
    )


def _require_session(repository: LeagueRepository, session_id: int) -> Session:
    session = repository.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return session


# Members --------------------------------------------------------------
@app.post("/members", response_model=MemberResponse, status_code=status.HTTP_201_CREATED)
def create_member(
    payload: MemberCreate,
    repository: LeagueRepository = Depends(get_repository),
) -> MemberResponse:
    if repository.get_member(payload.id) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Member already exists")
    member = Member(**payload.model_dump())
    repository.add_member(member)
    return _member_to_response(member)


@app.get("/members/{member_id}", response_model=MemberResponse)
def get_member(
    member_id: str,
    repository: LeagueRepository = Depends(get_repository),
) -> MemberResponse:
    member = repository.get_member(member_id)
    if member is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Member not found")
    return _member_to_response(member)


@app.get("/members/{member_id}/buy-sells", response_model=List[BuySellResponse])
def list_member_buy_sells(
    member_id: str,
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> List[BuySellResponse]:
    return [_view_to_response(view) for view in _unwrap(marketplace.member_buy_sells(member_id))]


# Sessions -------------------------------------------------------------
@app.get("/sessions", response_model=List[SessionResponse])
def list_sessions(
    repository: LeagueRepository = Depends(get_repository),
) -> List[SessionResponse]:
    return [_session_to_response(session) for session in repository.list_sessions()]


@app.post("/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
def create_session(
    payload: SessionCreate,
    repository: LeagueRepository = Depends(get_repository),
) -> SessionResponse:
    buy_day_minimum = payload.buy_day_minimum
    if buy_day_minimum is None:
        buy_day_minimum = settings.default_buy_day_minimum
    session = repository.create_session(
        payload.session_date.replace(tzinfo=None),
        buy_day_minimum=buy_day_minimum,
        note=payload.note,
        cost=payload.cost,
    )
    return _session_to_response(session)


@app.get("/sessions/{session_id}", response_model=SessionResponse)
def get_session(
    session_id: int,
    repository: LeagueRepository = Depends(get_repository),
) -> SessionResponse:
    return _session_to_response(_require_session(repository, session_id))


@app.put("/sessions/{session_id}/roster/{user_id}", response_model=RosterEntryResponse)
def put_roster_entry(
    session_id: int,
    user_id: str,
    payload: RosterEntryUpdate,
    repository: LeagueRepository = Depends(get_repository),
) -> RosterEntryResponse:
    _require_session(repository, session_id)
    if repository.get_member(user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Member not found")

    existing = repository.get_roster_entry(session_id, user_id)
    entry = SessionRoster(
        session_id=session_id,
        user_id=user_id,
        is_regular=payload.is_regular,
        is_playing=payload.is_playing,
        team_assignment=payload.team_assignment,
        position=payload.position,
    )
    if existing is not None:
        entry = replace(
            entry,
            joined_at=existing.joined_at,
            left_at=existing.left_at,
            last_buy_sell_id=existing.last_buy_sell_id,
        )
    repository.upsert_roster_entry(entry)
    return _roster_to_response(entry)


@app.get("/sessions/{session_id}/roster", response_model=List[RosterEntryResponse])
def list_roster(
    session_id: int,
    repository: LeagueRepository = Depends(get_repository),
) -> List[RosterEntryResponse]:
    _require_session(repository, session_id)
    return [_roster_to_response(entry) for entry in repository.list_roster(session_id)]


@app.get("/sessions/{session_id}/activities", response_model=List[ActivityResponse])
def list_activities(
    session_id: int,
    repository: LeagueRepository = Depends(get_repository),
) -> List[ActivityResponse]:
    _require_session(repository, session_id)
    return [_activity_to_response(a) for a in repository.list_activities(session_id)]


@app.get("/sessions/{session_id}/buy-sells", response_model=List[BuySellResponse])
def list_session_buy_sells(
    session_id: int,
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> List[BuySellResponse]:
    return [_view_to_response(view) for view in _unwrap(marketplace.session_buy_sells(session_id))]


@app.get("/sessions/{session_id}/can-buy", response_model=BuySellStatusResponse)
def can_buy(
    session_id: int,
    x_user_id: str = Header(...),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> BuySellStatusResponse:
    return _status_to_response(_unwrap(marketplace.can_buy(x_user_id, session_id)))


@app.get("/sessions/{session_id}/can-sell", response_model=BuySellStatusResponse)
def can_sell(
    session_id: int,
    x_user_id: str = Header(...),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> BuySellStatusResponse:
    return _status_to_response(_unwrap(marketplace.can_sell(x_user_id, session_id)))


# Buy/Sell -------------------------------------------------------------
@app.post("/buy-sells/buy", response_model=MarketplaceResponse, status_code=status.HTTP_201_CREATED)
def submit_buy(
    payload: BuyRequest,
    x_user_id: str = Header(...),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> MarketplaceResponse:
    return _marketplace_response(marketplace.submit_buy(payload.session_id, x_user_id, payload.note))


@app.post("/buy-sells/sell", response_model=MarketplaceResponse, status_code=status.HTTP_201_CREATED)
def submit_sell(
    payload: SellRequest,
    x_user_id: str = Header(...),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> MarketplaceResponse:
    return _marketplace_response(marketplace.submit_sell(payload.session_id, x_user_id, payload.note))


@app.get("/buy-sells/{buy_sell_id}", response_model=BuySellResponse)
def get_buy_sell(
    buy_sell_id: int,
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> BuySellResponse:
    return _view_to_response(_unwrap(marketplace.get_buy_sell(buy_sell_id)))


@app.put("/buy-sells/{buy_sell_id}/payment-sent", response_model=MarketplaceResponse)
def confirm_payment_sent(
    buy_sell_id: int,
    payload: PaymentSentRequest,
    x_user_id: str = Header(...),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> MarketplaceResponse:
    return _marketplace_response(
        marketplace.confirm_payment_sent(x_user_id, buy_sell_id, payload.payment_method)
    )


@app.delete("/buy-sells/{buy_sell_id}/payment-sent", response_model=MarketplaceResponse)
def unconfirm_payment_sent(
    buy_sell_id: int,
    x_user_id: str = Header(...),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> MarketplaceResponse:
    return _marketplace_response(marketplace.unconfirm_payment_sent(x_user_id, buy_sell_id))


@app.put("/buy-sells/{buy_sell_id}/payment-received", response_model=MarketplaceResponse)
def confirm_payment_received(
    buy_sell_id: int,
    x_user_id: str = Header(...),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> MarketplaceResponse:
    return _marketplace_response(marketplace.confirm_payment_received(x_user_id, buy_sell_id))


@app.delete("/buy-sells/{buy_sell_id}/payment-received", response_model=MarketplaceResponse)
def unconfirm_payment_received(
    buy_sell_id: int,
    x_user_id: str = Header(...),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> MarketplaceResponse:
    return _marketplace_response(marketplace.unconfirm_payment_received(x_user_id, buy_sell_id))


@app.delete("/buy-sells/{buy_sell_id}/buy", status_code=status.HTTP_204_NO_CONTENT)
def cancel_buy(
    buy_sell_id: int,
    x_user_id: str = Header(...),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> None:
    _unwrap(marketplace.cancel_buy(x_user_id, buy_sell_id))


@app.delete("/buy-sells/{buy_sell_id}/sell", status_code=status.HTTP_204_NO_CONTENT)
def cancel_sell(
    buy_sell_id: int,
    x_user_id: str = Header(...),
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> None:
    _unwrap(marketplace.cancel_sell(x_user_id, buy_sell_id))


@app.get("/locker-room13", response_model=List[LockerRoomSessionResponse])
def locker_room13(
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> List[LockerRoomSessionResponse]:
    return [_locker_room_to_response(entry) for entry in marketplace.locker_room13_view()]
