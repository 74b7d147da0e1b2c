"""Buy/Sell marketplace service.

Matches members who want to sell their spot in a session against members who
want to buy one. Every submit runs inside a single ledger transaction so that
the oldest counter-offer is read and claimed atomically; matching is strictly
first-in, first-out by creation time.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from functools import wraps
from typing import Callable, List, Optional, Tuple

from .config import league_now
from .models import (
    BuySell,
    BuySellStatus,
    BuySellView,
    LockerRoomSession,
    Member,
    PaymentMethod,
    Session,
    SessionRoster,
    TeamAssignment,
)
from .repository import LeagueRepository
from .results import ConcurrencyConflictError, FailureKind, ServiceResult
from .transactions import classify
from .windows import can_transact

logger = logging.getLogger(__name__)

_Eligibility = Tuple[BuySellStatus, Optional[FailureKind]]


def _denied(
    kind: FailureKind, reason: str, time_until_allowed: Optional[timedelta] = None
) -> _Eligibility:
    return BuySellStatus(False, reason, time_until_allowed), kind


def _has_unmatched_buy(user_id: str, buy_sells: List[BuySell]) -> bool:
    return any(b.buyer_user_id == user_id and b.seller_user_id is None for b in buy_sells)


def _has_unmatched_sell(user_id: str, buy_sells: List[BuySell]) -> bool:
    return any(b.seller_user_id == user_id and b.buyer_user_id is None for b in buy_sells)


def _is_playing(roster_entry: Optional[SessionRoster]) -> bool:
    return roster_entry is not None and roster_entry.is_playing


def conflicts_as_failure(func: Callable[..., ServiceResult]) -> Callable[..., ServiceResult]:
    """Turn a lost race on the ledger into a ``CONCURRENCY_CONFLICT`` result.

    The transaction has already been rolled back when the error reaches this
    wrapper; the caller may retry the operation once.
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ConcurrencyConflictError as exc:
            logger.warning("%s lost a race on the ledger: %s", func.__name__, exc)
            return ServiceResult.fail(
                FailureKind.CONCURRENCY_CONFLICT,
                f"Request conflicted with another update; retry ({exc})",
            )

    return wrapper


class MarketplaceService:
    """Buy/Sell operations over a :class:`LeagueRepository`.

    Operations return :class:`ServiceResult` values. On success ``message``
    holds the activity text, which is also written to the session's activity
    log in the same transaction.

    ``clock`` gives league-local wall-clock time and only drives the buy
    window and session-started checks. ``stamp_clock`` gives naive UTC and is
    used for every stored timestamp, including the ``created_at`` that FIFO
    matching orders by.
    """

    def __init__(
        self,
        repository: LeagueRepository,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        stamp_clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or league_now
        self._stamp_clock = stamp_clock or datetime.utcnow

    # Eligibility -------------------------------------------------------
    def _buy_eligibility(
        self,
        session: Session,
        member: Member,
        now: datetime,
    ) -> _Eligibility:
        if not member.active:
            return _denied(FailureKind.NOT_AUTHORIZED, "User is not active")
        if session.session_date <= now:
            return _denied(FailureKind.WINDOW_CLOSED, "Cannot buy for a session that has already started")

        roster_entry = self._repository.get_roster_entry(session.id, member.id)
        if _is_playing(roster_entry):
            return _denied(FailureKind.INVALID_STATE, "You are already on the roster for this session")

        buy_sells = self._repository.list_member_buy_sells(member.id, session_id=session.id)
        if _has_unmatched_buy(member.id, buy_sells):
            return _denied(FailureKind.INVALID_STATE, "You already have an active Buy for this session")
        if _has_unmatched_sell(member.id, buy_sells):
            return _denied(FailureKind.INVALID_STATE, "You have an active Sell for this session")

        if member.is_admin:
            return BuySellStatus(True, "Admins can buy spots regardless of time window"), None

        window = can_transact(session, member, now)
        if not window.allowed:
            return _denied(FailureKind.WINDOW_CLOSED, window.reason, window.time_until_allowed)

        return BuySellStatus(True, "You can buy a spot for this session"), None

    def _sell_eligibility(
        self,
        session: Session,
        member: Member,
        now: datetime,
    ) -> _Eligibility:
        if not member.active:
            return _denied(FailureKind.NOT_AUTHORIZED, "User is not active")
        if session.session_date <= now:
            return _denied(FailureKind.WINDOW_CLOSED, "Cannot sell for a session that has already started")

        buy_sells = self._repository.list_member_buy_sells(member.id, session_id=session.id)
        if _has_unmatched_buy(member.id, buy_sells):
            return _denied(FailureKind.INVALID_STATE, "You have an active Buy for this session")
        if _has_unmatched_sell(member.id, buy_sells):
            return _denied(FailureKind.INVALID_STATE, "You already have an active Sell for this session")

        roster_entry = self._repository.get_roster_entry(session.id, member.id)
        if not _is_playing(roster_entry):
            return _denied(FailureKind.INVALID_STATE, "You must be on the roster to sell your spot")

        return BuySellStatus(True, "You can sell your spot for this session"), None

    def _load_parties(
        self, user_id: str, session_id: int
    ) -> Tuple[Optional[Session], Optional[Member], Optional[ServiceResult]]:
        session = self._repository.get_session(session_id)
        if session is None:
            return None, None, ServiceResult.fail(FailureKind.NOT_FOUND, "Session not found")
        member = self._repository.get_member(user_id)
        if member is None:
            return None, None, ServiceResult.fail(FailureKind.NOT_FOUND, "User not found")
        return session, member, None

    def can_buy(
        self, user_id: str, session_id: int, now: Optional[datetime] = None
    ) -> ServiceResult[BuySellStatus]:
        session, member, missing = self._load_parties(user_id, session_id)
        if missing is not None:
            return missing
        status, _ = self._buy_eligibility(session, member, now or self._clock())
        return ServiceResult.success(status)

    def can_sell(
        self, user_id: str, session_id: int, now: Optional[datetime] = None
    ) -> ServiceResult[BuySellStatus]:
        session, member, missing = self._load_parties(user_id, session_id)
        if missing is not None:
            return missing
        status, _ = self._sell_eligibility(session, member, now or self._clock())
        return ServiceResult.success(status)

    # Matching ----------------------------------------------------------
    @conflicts_as_failure
    def submit_buy(
        self,
        session_id: int,
        buyer_user_id: str,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult[BuySellView]:
        now = now or self._clock()
        stamp = self._stamp_clock()
        with self._repository.transaction():
            session, buyer, missing = self._load_parties(buyer_user_id, session_id)
            if missing is not None:
                return missing
            status, kind = self._buy_eligibility(session, buyer, now)
            if kind is not None:
                return ServiceResult.fail(
                    kind,
                    status.reason,
                    reason=status.reason,
                    time_until_allowed=status.time_until_allowed,
                )

            matching_sell = self._repository.find_oldest_unmatched_sell(session_id)
            if matching_sell is not None:
                seller = self._repository.get_member(matching_sell.seller_user_id)
                seller_roster = self._repository.get_roster_entry(
                    session_id, matching_sell.seller_user_id
                )
                saved = self._repository.complete_match(
                    replace(
                        matching_sell,
                        buyer_user_id=buyer.id,
                        buyer_note=note,
                        updated_at=stamp,
                        updated_by_user_id=buyer.id,
                    )
                )
                self._move_spot(saved, seller_roster, stamp)
                team = (saved.team_assignment or TeamAssignment.TBD).value
                message = (
                    f"{buyer.full_name} BOUGHT spot from seller: "
                    f"{_name_of(seller, saved.seller_user_id)}. Team Assignment: {team}"
                )
                logger.info(
                    "Matched buyer %s with sell %s in session %s",
                    buyer.id,
                    saved.id,
                    session_id,
                )
            else:
                saved = self._repository.add_buy_sell(
                    BuySell(
                        session_id=session_id,
                        buyer_user_id=buyer.id,
                        price=session.cost,
                        buyer_note=note,
                        team_assignment=TeamAssignment.TBD,
                        created_at=stamp,
                        updated_at=stamp,
                        created_by_user_id=buyer.id,
                        updated_by_user_id=buyer.id,
                    )
                )
                message = f"{buyer.full_name} added to BUYING queue"
                logger.info("Buyer %s queued in session %s as %s", buyer.id, session_id, saved.id)

            self._repository.add_activity(session_id, message, user_id=buyer.id)
            return ServiceResult.success(self._view(saved), message)

    @conflicts_as_failure
    def submit_sell(
        self,
        session_id: int,
        seller_user_id: str,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult[BuySellView]:
        now = now or self._clock()
        stamp = self._stamp_clock()
        with self._repository.transaction():
            session, seller, missing = self._load_parties(seller_user_id, session_id)
            if missing is not None:
                return missing
            status, kind = self._sell_eligibility(session, seller, now)
            if kind is not None:
                return ServiceResult.fail(kind, status.reason, reason=status.reason)

            seller_roster = self._repository.get_roster_entry(session_id, seller.id)
            matching_buy = self._repository.find_oldest_unmatched_buy(session_id)
            if matching_buy is not None:
                buyer = self._repository.get_member(matching_buy.buyer_user_id)
                saved = self._repository.complete_match(
                    replace(
                        matching_buy,
                        seller_user_id=seller.id,
                        seller_note=note,
                        team_assignment=seller_roster.team_assignment,
                        updated_at=stamp,
                        updated_by_user_id=seller.id,
                    )
                )
                self._move_spot(saved, seller_roster, stamp)
                message = (
                    f"{seller.full_name} SOLD spot to buyer: "
                    f"{_name_of(buyer, saved.buyer_user_id)}. "
                    f"Team Assignment: {seller_roster.team_assignment.value}"
                )
                logger.info(
                    "Matched seller %s with buy %s in session %s",
                    seller.id,
                    saved.id,
                    session_id,
                )
            else:
                saved = self._repository.add_buy_sell(
                    BuySell(
                        session_id=session_id,
                        seller_user_id=seller.id,
                        price=session.cost,
                        seller_note=note,
                        team_assignment=seller_roster.team_assignment,
                        created_at=stamp,
                        updated_at=stamp,
                        created_by_user_id=seller.id,
                        updated_by_user_id=seller.id,
                    )
                )
                message = f"{seller.full_name} added to SELLING queue"
                logger.info("Seller %s queued in session %s as %s", seller.id, session_id, saved.id)

            self._repository.add_activity(session_id, message, user_id=seller.id)
            return ServiceResult.success(self._view(saved), message)

    def _move_spot(
        self,
        buy_sell: BuySell,
        seller_roster: Optional[SessionRoster],
        stamp: datetime,
    ) -> None:
        """Hand the seller's roster spot to the buyer once a pair is matched."""

        if seller_roster is not None:
            self._repository.upsert_roster_entry(
                replace(
                    seller_roster,
                    is_playing=False,
                    left_at=stamp,
                    last_buy_sell_id=buy_sell.id,
                )
            )

        existing = self._repository.get_roster_entry(buy_sell.session_id, buy_sell.buyer_user_id)
        team = buy_sell.team_assignment or (
            seller_roster.team_assignment if seller_roster else TeamAssignment.TBD
        )
        entry = SessionRoster(
            session_id=buy_sell.session_id,
            user_id=buy_sell.buyer_user_id,
            is_regular=existing.is_regular if existing else False,
            is_playing=True,
            team_assignment=team,
            joined_at=stamp,
            last_buy_sell_id=buy_sell.id,
        )
        if seller_roster is not None:
            entry = replace(entry, position=seller_roster.position)
        self._repository.upsert_roster_entry(entry)

    # Payment confirmation ----------------------------------------------
    def confirm_payment_sent(
        self,
        user_id: str,
        buy_sell_id: int,
        payment_method: PaymentMethod,
    ) -> ServiceResult[BuySellView]:
        return self._update_payment(
            user_id,
            buy_sell_id,
            party="buyer",
            changes={"payment_sent": True, "payment_method": payment_method},
            action="confirmed PAYMENT sent",
        )

    def unconfirm_payment_sent(
        self, user_id: str, buy_sell_id: int
    ) -> ServiceResult[BuySellView]:
        return self._update_payment(
            user_id,
            buy_sell_id,
            party="buyer",
            changes={"payment_sent": False, "payment_method": None},
            action="unconfirmed PAYMENT sent",
        )

    def confirm_payment_received(
        self, user_id: str, buy_sell_id: int
    ) -> ServiceResult[BuySellView]:
        return self._update_payment(
            user_id,
            buy_sell_id,
            party="seller",
            changes={"payment_received": True},
            action="confirmed PAYMENT received",
        )

    def unconfirm_payment_received(
        self, user_id: str, buy_sell_id: int
    ) -> ServiceResult[BuySellView]:
        return self._update_payment(
            user_id,
            buy_sell_id,
            party="seller",
            changes={"payment_received": False},
            action="unconfirmed PAYMENT received",
        )

    @conflicts_as_failure
    def _update_payment(
        self,
        user_id: str,
        buy_sell_id: int,
        *,
        party: str,
        changes: dict,
        action: str,
    ) -> ServiceResult[BuySellView]:
        stamp = self._stamp_clock()
        with self._repository.transaction():
            buy_sell = self._repository.get_buy_sell(buy_sell_id)
            if buy_sell is None:
                return ServiceResult.fail(FailureKind.NOT_FOUND, "BuySell not found")
            if not buy_sell.is_matched:
                return ServiceResult.fail(
                    FailureKind.INVALID_STATE,
                    f"BuySell {buy_sell_id} has no {'seller' if party == 'buyer' else 'buyer'} yet",
                )
            party_id = buy_sell.buyer_user_id if party == "buyer" else buy_sell.seller_user_id
            if party_id != user_id:
                return ServiceResult.fail(
                    FailureKind.NOT_AUTHORIZED,
                    f"Not authorized to update payment for BuySell {buy_sell_id}",
                )

            updated = replace(buy_sell, updated_at=stamp, updated_by_user_id=user_id, **changes)
            self._repository.update_buy_sell(updated)

            message = f"{_name_of(self._repository.get_member(user_id), user_id)} {action}"
            self._repository.add_activity(buy_sell.session_id, message, user_id=user_id)
            return ServiceResult.success(self._view(updated), message)

    # Cancellation ------------------------------------------------------
    def cancel_buy(self, user_id: str, buy_sell_id: int) -> ServiceResult[bool]:
        return self._cancel(user_id, buy_sell_id, party="buyer")

    def cancel_sell(self, user_id: str, buy_sell_id: int) -> ServiceResult[bool]:
        return self._cancel(user_id, buy_sell_id, party="seller")

    @conflicts_as_failure
    def _cancel(self, user_id: str, buy_sell_id: int, *, party: str) -> ServiceResult[bool]:
        with self._repository.transaction():
            buy_sell = self._repository.get_buy_sell(buy_sell_id)
            if buy_sell is None:
                return ServiceResult.fail(FailureKind.NOT_FOUND, "BuySell not found")

            party_id = buy_sell.buyer_user_id if party == "buyer" else buy_sell.seller_user_id
            if party_id != user_id:
                return ServiceResult.fail(
                    FailureKind.NOT_AUTHORIZED, "Not authorized to cancel this BuySell"
                )
            if buy_sell.is_matched:
                verb = "bought" if party == "buyer" else "sold"
                return ServiceResult.fail(
                    FailureKind.INVALID_STATE, f"Cannot cancel spot that is already {verb}"
                )

            self._repository.delete_buy_sell(buy_sell_id)
            name = _name_of(self._repository.get_member(user_id), user_id)
            message = f"{party.capitalize()}: {name} cancelled BuySell"
            self._repository.add_activity(buy_sell.session_id, message, user_id=user_id)
            logger.info("%s %s cancelled BuySell %s", party.capitalize(), user_id, buy_sell_id)
            return ServiceResult.success(True, message)

    # Reads -------------------------------------------------------------
    def queue_position(self, buy_sell_id: int) -> Optional[int]:
        return self._repository.queue_position(buy_sell_id)

    def get_buy_sell(self, buy_sell_id: int) -> ServiceResult[BuySellView]:
        buy_sell = self._repository.get_buy_sell(buy_sell_id)
        if buy_sell is None:
            return ServiceResult.fail(FailureKind.NOT_FOUND, "BuySell not found")
        return ServiceResult.success(self._view(buy_sell))

    def session_buy_sells(self, session_id: int) -> ServiceResult[List[BuySellView]]:
        if self._repository.get_session(session_id) is None:
            return ServiceResult.fail(FailureKind.NOT_FOUND, "Session not found")
        return ServiceResult.success(
            [self._view(b) for b in self._repository.list_buy_sells(session_id)]
        )

    def member_buy_sells(self, user_id: str) -> ServiceResult[List[BuySellView]]:
        if self._repository.get_member(user_id) is None:
            return ServiceResult.fail(FailureKind.NOT_FOUND, "User not found")
        return ServiceResult.success(
            [self._view(b) for b in self._repository.list_member_buy_sells(user_id)]
        )

    def locker_room13_view(self, now: Optional[datetime] = None) -> List[LockerRoomSession]:
        return self._repository.locker_room13_view(now or self._clock())

    def _view(self, buy_sell: BuySell) -> BuySellView:
        return BuySellView(
            buy_sell=buy_sell,
            transaction_status=classify(buy_sell),
            queue_position=self._repository.queue_position(buy_sell.id),
        )


def _name_of(member: Optional[Member], fallback: Optional[str]) -> str:
    return member.full_name if member is not None else (fallback or "Unknown")


__all__ = ["MarketplaceService"]
