"""
Pytest fixtures shared by the marketplace tests.

Provides:
- A SQLite-backed LeagueRepository in a temporary directory
- A seeded session with three rostered regulars
- A ticking UTC stamp clock for stored timestamps
- A MarketplaceService pinned to a fixed league clock and the stamp clock
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from pickup_league.marketplace import MarketplaceService
from pickup_league.models import Member, PositionPreference, SessionRoster, TeamAssignment
from pickup_league.repository import LeagueRepository

# Session on Tuesday 2025-02-25 07:30 with a 6 day buy minimum:
# general window 2025-02-19 09:30, preferred 2025-02-18 09:30, preferred plus 09:25.
SESSION_DATE = datetime(2025, 2, 25, 7, 30)
NOW = datetime(2025, 2, 20, 12, 0)
STAMP_START = datetime(2025, 2, 20, 20, 0)

MEMBERS = [
    Member(id="s1", first_name="Sam", last_name="Seller"),
    Member(id="s2", first_name="Sue", last_name="Smith"),
    Member(id="s3", first_name="Sid", last_name="Stone"),
    Member(id="b1", first_name="Jane", last_name="Doe"),
    Member(id="b2", first_name="John", last_name="Buyer"),
    Member(id="b3", first_name="Bea", last_name="Bishop"),
    Member(id="pref", first_name="Pat", last_name="Preferred", preferred=True),
    Member(id="plus", first_name="Pia", last_name="Plus", preferred=True, preferred_plus=True),
    Member(id="admin", first_name="Ada", last_name="Admin", is_admin=True),
    Member(id="gone", first_name="Ian", last_name="Active", active=False),
]

ROSTER = [
    ("s1", TeamAssignment.LIGHT, PositionPreference.FORWARD),
    ("s2", TeamAssignment.DARK, PositionPreference.DEFENSE),
    ("s3", TeamAssignment.LIGHT, PositionPreference.GOALIE),
]


@pytest.fixture
def repository(tmp_path):
    repo = LeagueRepository(str(tmp_path / "league.db"), lock_timeout=0.1)
    repo.initialize_schema()
    return repo


@pytest.fixture
def session(repository):
    for member in MEMBERS:
        repository.add_member(member)

    created = repository.create_session(SESSION_DATE, buy_day_minimum=6, cost=Decimal("20.00"))
    for user_id, team, position in ROSTER:
        repository.upsert_roster_entry(
            SessionRoster(
                session_id=created.id,
                user_id=user_id,
                is_regular=True,
                is_playing=True,
                team_assignment=team,
                position=position,
                joined_at=datetime(2025, 2, 1, 12, 0),
            )
        )
    return created


class TickingClock:
    """Naive UTC source that moves one second forward on every reading."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


@pytest.fixture
def stamps():
    return TickingClock(STAMP_START)


@pytest.fixture
def service(repository, stamps):
    return MarketplaceService(repository, clock=lambda: NOW, stamp_clock=stamps)
