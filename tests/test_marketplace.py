import sqlite3
import threading
from dataclasses import replace
from datetime import datetime, timedelta

from pickup_league.config import to_league_time
from pickup_league.marketplace import MarketplaceService
from pickup_league.models import (
    PaymentMethod,
    PositionPreference,
    SessionRoster,
    TeamAssignment,
    TransactionStatus,
)
from pickup_league.repository import LeagueRepository
from pickup_league.results import FailureKind

from .conftest import NOW, SESSION_DATE


def _minutes(n):
    return NOW + timedelta(minutes=n)


def test_buy_without_sellers_joins_queue(service, repository, session):
    result = service.submit_buy(session.id, "b1", note="any team", now=NOW)

    assert result.ok
    view = result.data
    assert view.transaction_status is TransactionStatus.LOOKING_TO_BUY
    assert view.queue_position == 1
    assert view.buy_sell.price == session.cost
    assert view.buy_sell.team_assignment is TeamAssignment.TBD
    assert result.message == "Jane Doe added to BUYING queue"
    assert [a.activity for a in repository.list_activities(session.id)] == [result.message]


def test_sell_without_buyers_joins_queue(service, session):
    result = service.submit_sell(session.id, "s2", now=NOW)

    assert result.ok
    assert result.data.transaction_status is TransactionStatus.AVAILABLE_TO_BUY
    assert result.data.buy_sell.team_assignment is TeamAssignment.DARK
    assert result.message == "Sue Smith added to SELLING queue"


def test_buyer_matches_oldest_sell_first(service, session):
    # League clock readings run backwards; submission order still decides.
    first = service.submit_sell(session.id, "s1", now=_minutes(3)).data.buy_sell
    second = service.submit_sell(session.id, "s2", now=_minutes(1)).data.buy_sell
    third = service.submit_sell(session.id, "s3", now=_minutes(2)).data.buy_sell

    matched = [service.submit_buy(session.id, buyer, now=_minutes(10)).data.buy_sell for buyer in ("b1", "b2", "b3")]

    assert [b.id for b in matched] == [first.id, second.id, third.id]
    assert [b.buyer_user_id for b in matched] == ["b1", "b2", "b3"]


def test_seller_matches_oldest_buy_first(service, session):
    oldest = service.submit_buy(session.id, "b2", now=_minutes(2)).data.buy_sell
    service.submit_buy(session.id, "b1", now=_minutes(1))

    result = service.submit_sell(session.id, "s1", note="light jersey", now=_minutes(5))

    assert result.ok
    saved = result.data.buy_sell
    assert saved.id == oldest.id
    assert saved.seller_user_id == "s1"
    assert saved.seller_note == "light jersey"
    assert saved.team_assignment is TeamAssignment.LIGHT
    assert result.data.transaction_status is TransactionStatus.PAYMENT_PENDING
    assert result.data.queue_position is None
    assert result.message == "Sam Seller SOLD spot to buyer: John Buyer. Team Assignment: Light"


def test_fifo_order_survives_daylight_saving_fall_back(repository, session):
    fall_session = repository.create_session(datetime(2025, 11, 4, 7, 30), buy_day_minimum=6)
    for user_id in ("s1", "s2"):
        repository.upsert_roster_entry(
            SessionRoster(session_id=fall_session.id, user_id=user_id, is_regular=True, is_playing=True)
        )
    # 08:30Z is 01:30 PDT; 09:10Z, forty minutes later, is 01:10 PST.
    instants = [datetime(2025, 11, 2, 8, 30), datetime(2025, 11, 2, 9, 10), datetime(2025, 11, 2, 9, 20)]
    current = {}
    service = MarketplaceService(
        repository,
        clock=lambda: to_league_time(current["utc"], "America/Los_Angeles"),
        stamp_clock=lambda: current["utc"],
    )

    current["utc"] = instants[0]
    older = service.submit_sell(fall_session.id, "s1").data.buy_sell
    current["utc"] = instants[1]
    newer = service.submit_sell(fall_session.id, "s2").data.buy_sell
    current["utc"] = instants[2]
    matched = service.submit_buy(fall_session.id, "admin").data.buy_sell

    local = [to_league_time(instant, "America/Los_Angeles") for instant in instants]
    assert local[1] < local[0]
    assert older.created_at < newer.created_at
    assert matched.id == older.id
    assert service.queue_position(newer.id) == 1


def test_match_hands_roster_spot_to_buyer(service, repository, session):
    sell = service.submit_sell(session.id, "s1", now=_minutes(1)).data.buy_sell
    result = service.submit_buy(session.id, "b1", now=_minutes(2))
    matched_at = result.data.buy_sell.updated_at

    assert result.message == "Jane Doe BOUGHT spot from seller: Sam Seller. Team Assignment: Light"

    seller_row = repository.get_roster_entry(session.id, "s1")
    assert not seller_row.is_playing
    assert seller_row.left_at == matched_at
    assert seller_row.last_buy_sell_id == sell.id

    buyer_row = repository.get_roster_entry(session.id, "b1")
    assert buyer_row.is_playing
    assert buyer_row.joined_at == matched_at
    assert not buyer_row.is_regular
    assert buyer_row.team_assignment is TeamAssignment.LIGHT
    assert buyer_row.position is PositionPreference.FORWARD
    assert buyer_row.last_buy_sell_id == sell.id


def test_seller_can_buy_back_in_after_selling(service, repository, session):
    service.submit_sell(session.id, "s1", now=_minutes(1))
    service.submit_buy(session.id, "b1", now=_minutes(2))
    service.submit_sell(session.id, "s2", now=_minutes(3))

    result = service.submit_buy(session.id, "s1", now=_minutes(4))

    assert result.ok
    row = repository.get_roster_entry(session.id, "s1")
    assert row.is_playing
    assert row.is_regular
    assert row.team_assignment is TeamAssignment.DARK


def test_stale_claim_reports_conflict_and_rolls_back(service, repository, session, monkeypatch):
    stale = service.submit_sell(session.id, "s1", now=_minutes(1)).data.buy_sell
    service.submit_buy(session.id, "b1", now=_minutes(2))
    monkeypatch.setattr(repository, "find_oldest_unmatched_sell", lambda session_id: stale)

    result = service.submit_buy(session.id, "b2", now=_minutes(3))

    assert not result.ok
    assert result.failure.kind is FailureKind.CONCURRENCY_CONFLICT
    assert repository.get_buy_sell(stale.id).buyer_user_id == "b1"
    assert repository.list_member_buy_sells("b2") == []
    assert repository.get_roster_entry(session.id, "b2") is None


def test_busy_ledger_reports_conflict(tmp_path, service, session):
    other = LeagueRepository(str(tmp_path / "league.db"), lock_timeout=0.05)

    with other.transaction():
        result = service.submit_buy(session.id, "b1", now=NOW)

    assert result.failure.kind is FailureKind.CONCURRENCY_CONFLICT


def test_open_reader_at_commit_reports_conflict(tmp_path, service, repository, session):
    reader = sqlite3.connect(str(tmp_path / "league.db"), isolation_level=None)
    try:
        reader.execute("BEGIN")
        reader.execute("SELECT COUNT(*) FROM buy_sells").fetchall()

        result = service.submit_buy(session.id, "b1", now=NOW)
    finally:
        reader.close()

    assert result.failure.kind is FailureKind.CONCURRENCY_CONFLICT
    assert repository.list_member_buy_sells("b1") == []
    assert repository.list_activities(session.id) == []


def test_concurrent_buyers_claim_a_sell_once(tmp_path, session):
    repository = LeagueRepository(str(tmp_path / "league.db"), lock_timeout=2.0)
    service = MarketplaceService(repository, clock=lambda: NOW)
    sell = service.submit_sell(session.id, "s1").data.buy_sell
    start = threading.Barrier(2)
    results = {}

    def buy(user_id):
        start.wait()
        results[user_id] = service.submit_buy(session.id, user_id)

    threads = [threading.Thread(target=buy, args=(user_id,)) for user_id in ("b1", "b2")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winner = repository.get_buy_sell(sell.id).buyer_user_id
    loser = "b2" if winner == "b1" else "b1"
    assert winner in ("b1", "b2")
    assert results[winner].data.transaction_status is TransactionStatus.PAYMENT_PENDING
    lost = results[loser]
    if lost.ok:
        assert lost.data.transaction_status is TransactionStatus.LOOKING_TO_BUY
    else:
        assert lost.failure.kind is FailureKind.CONCURRENCY_CONFLICT
    matched = [b for b in repository.list_buy_sells(session.id) if b.is_matched]
    assert [b.id for b in matched] == [sell.id]


def test_unknown_session_and_member(service, session):
    assert service.submit_buy(999, "b1", now=NOW).failure.kind is FailureKind.NOT_FOUND
    assert service.submit_sell(session.id, "nobody", now=NOW).failure.kind is FailureKind.NOT_FOUND
    assert service.can_buy("b1", 999).failure.message == "Session not found"


def test_buy_before_window_is_rejected_with_wait(service, session):
    now = datetime(2025, 2, 18, 9, 27)

    result = service.submit_buy(session.id, "b1", now=now)

    assert result.failure.kind is FailureKind.WINDOW_CLOSED
    assert result.failure.time_until_allowed == timedelta(days=1, minutes=3)
    assert result.failure.reason == "Regular buy window opens at 2025-02-19 09:30"
    assert service.submit_buy(session.id, "plus", now=now).ok
    assert service.submit_buy(session.id, "pref", now=now).failure.kind is FailureKind.WINDOW_CLOSED


def test_admin_bypasses_buy_window(service, session):
    status = service.can_buy("admin", session.id, now=datetime(2025, 2, 1, 8, 0)).data

    assert status.is_allowed
    assert status.time_until_allowed is None


def test_started_session_closes_market(service, session):
    result = service.submit_buy(session.id, "admin", now=SESSION_DATE)

    assert result.failure.kind is FailureKind.WINDOW_CLOSED
    assert service.submit_sell(session.id, "s1", now=SESSION_DATE).failure.kind is FailureKind.WINDOW_CLOSED


def test_eligibility_rules(service, session):
    assert service.can_buy("gone", session.id).data.reason == "User is not active"
    assert service.submit_buy(session.id, "gone", now=NOW).failure.kind is FailureKind.NOT_AUTHORIZED

    on_roster = service.submit_buy(session.id, "s1", now=NOW)
    assert on_roster.failure.kind is FailureKind.INVALID_STATE

    not_on_roster = service.submit_sell(session.id, "b1", now=NOW)
    assert not_on_roster.failure.kind is FailureKind.INVALID_STATE
    assert not_on_roster.failure.reason == "You must be on the roster to sell your spot"

    service.submit_buy(session.id, "b1", now=NOW)
    assert service.submit_buy(session.id, "b1", now=NOW).failure.reason == (
        "You already have an active Buy for this session"
    )

    service.submit_sell(session.id, "s1", now=NOW)
    assert not service.can_sell("s1", session.id).data.is_allowed


def test_can_sell_reports_allowed(service, session):
    status = service.can_sell("s1", session.id).data

    assert status.is_allowed
    assert status.reason == "You can sell your spot for this session"


def test_payment_confirmations_drive_status(service, repository, session):
    service.submit_sell(session.id, "s1", now=_minutes(1))
    buy_sell_id = service.submit_buy(session.id, "b1", now=_minutes(2)).data.buy_sell.id

    wrong_party = service.confirm_payment_sent("s1", buy_sell_id, PaymentMethod.VENMO)
    assert wrong_party.failure.kind is FailureKind.NOT_AUTHORIZED

    sent = service.confirm_payment_sent("b1", buy_sell_id, PaymentMethod.VENMO)
    assert sent.data.transaction_status is TransactionStatus.PAYMENT_SENT
    assert sent.data.buy_sell.payment_method is PaymentMethod.VENMO
    assert sent.message == "Jane Doe confirmed PAYMENT sent"

    received = service.confirm_payment_received("s1", buy_sell_id)
    assert received.data.transaction_status is TransactionStatus.COMPLETE
    assert received.message == "Sam Seller confirmed PAYMENT received"

    undone = service.unconfirm_payment_sent("b1", buy_sell_id)
    assert undone.data.transaction_status is TransactionStatus.PAYMENT_PENDING
    assert repository.get_buy_sell(buy_sell_id).payment_method is None

    reverted = service.unconfirm_payment_received("s1", buy_sell_id)
    assert reverted.message == "Sam Seller unconfirmed PAYMENT received"
    assert not repository.get_buy_sell(buy_sell_id).payment_received


def test_payment_requires_matched_record(service, session):
    buy_sell_id = service.submit_buy(session.id, "b1", now=NOW).data.buy_sell.id

    result = service.confirm_payment_sent("b1", buy_sell_id, PaymentMethod.CASH)

    assert result.failure.kind is FailureKind.INVALID_STATE
    assert service.confirm_payment_received("s1", 999).failure.kind is FailureKind.NOT_FOUND


def test_cancel_unmatched_buy(service, repository, session):
    buy_sell_id = service.submit_buy(session.id, "b2", now=NOW).data.buy_sell.id

    assert service.cancel_buy("b1", buy_sell_id).failure.kind is FailureKind.NOT_AUTHORIZED

    result = service.cancel_buy("b2", buy_sell_id)

    assert result.ok
    assert result.message == "Buyer: John Buyer cancelled BuySell"
    assert service.get_buy_sell(buy_sell_id).failure.kind is FailureKind.NOT_FOUND
    assert repository.list_activities(session.id)[0].activity == result.message


def test_cancel_matched_record_is_refused(service, repository, session):
    service.submit_sell(session.id, "s1", now=_minutes(1))
    matched = service.submit_buy(session.id, "b1", now=_minutes(2)).data.buy_sell

    as_buyer = service.cancel_buy("b1", matched.id)
    as_seller = service.cancel_sell("s1", matched.id)

    assert as_buyer.failure.kind is FailureKind.INVALID_STATE
    assert as_buyer.failure.message == "Cannot cancel spot that is already bought"
    assert as_seller.failure.message == "Cannot cancel spot that is already sold"
    assert repository.get_buy_sell(matched.id) == matched


def test_cancelled_sell_frees_the_queue(service, session):
    first = service.submit_sell(session.id, "s1", now=_minutes(1)).data.buy_sell
    second = service.submit_sell(session.id, "s2", now=_minutes(2)).data.buy_sell
    assert service.queue_position(second.id) == 2

    service.cancel_sell("s1", first.id)

    assert service.queue_position(second.id) == 1
    assert service.queue_position(first.id) is None
    assert service.submit_buy(session.id, "b1", now=_minutes(3)).data.buy_sell.id == second.id


def test_session_and_member_listings(service, session):
    service.submit_sell(session.id, "s1", now=_minutes(1))
    service.submit_buy(session.id, "b1", now=_minutes(2))
    service.submit_buy(session.id, "b2", now=_minutes(3))

    views = service.session_buy_sells(session.id).data
    assert [v.transaction_status for v in views] == [
        TransactionStatus.LOOKING_TO_BUY,
        TransactionStatus.PAYMENT_PENDING,
    ]
    assert [v.buy_sell.buyer_user_id for v in service.member_buy_sells("b1").data] == ["b1"]
    assert service.member_buy_sells("nobody").failure.kind is FailureKind.NOT_FOUND
    assert service.session_buy_sells(999).failure.kind is FailureKind.NOT_FOUND


def test_stored_timestamps_come_from_stamp_clock(service, repository, session, stamps):
    sell = service.submit_sell(session.id, "s1", now=_minutes(1)).data.buy_sell
    assert sell.created_at == stamps.current

    service.submit_buy(session.id, "b1", now=_minutes(2))
    matched_at = stamps.current

    stored = repository.get_buy_sell(sell.id)

    assert stored.created_at == sell.created_at
    assert stored.updated_at == matched_at > sell.created_at
    assert stored == replace(sell, buyer_user_id="b1", updated_at=matched_at, updated_by_user_id="b1")

    sent = service.confirm_payment_sent("b1", sell.id, PaymentMethod.PAYPAL)
    assert sent.data.buy_sell.updated_at == stamps.current > matched_at
