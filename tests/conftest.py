"""
Shared pytest fixtures for the league engine tests.

Every test gets its own SQLite file so database state never leaks between tests.
"""

import random

import pytest
import pytest_asyncio

from cueleague.database.database import Database
from cueleague.database.models import RatingType
from cueleague.events import (
    EventBus, PlayerAddedToLeague, PlayerConfirmed, MatchCompleted, GameCompleted
)
from cueleague.services.rating import RatingService

WINNERS_RULES = [
    {'range': [0, 50], 'strong': 25, 'weak': 25},
    {'range': [51, 100], 'strong': 20, 'weak': 30},
    {'range': [101, 200], 'strong': 15, 'weak': 35},
    {'range': [201, 1000000], 'strong': 10, 'weak': 40},
]

LOSERS_RULES = [
    {'range': rule['range'], 'strong': -rule['strong'], 'weak': -rule['weak']}
    for rule in WINNERS_RULES
]

@pytest.fixture
def winners_rules():
    return [dict(rule) for rule in WINNERS_RULES]

@pytest.fixture
def losers_rules():
    return [dict(rule) for rule in LOSERS_RULES]

@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await database.initialize()
    yield database
    await database.close()

@pytest.fixture
def event_bus():
    return EventBus()

@pytest.fixture
def recorded_events(event_bus):
    """Every event published on the bus, in order"""
    events = []
    for event_type in (PlayerAddedToLeague, PlayerConfirmed, MatchCompleted, GameCompleted):
        event_bus.subscribe(event_type, events.append)
    return events

@pytest.fixture
def rating_service(db, event_bus):
    return RatingService(db.session_factory, event_bus)

@pytest.fixture
def rng():
    return random.Random(42)

@pytest_asyncio.fixture
async def make_users(db):
    async def _make_users(count, home_club_id=None):
        return [
            await db.create_user(f"Player{i}", "Test", home_club_id=home_club_id)
            for i in range(1, count + 1)
        ]
    return _make_users

@pytest_asyncio.fixture
async def elo_league(db):
    return await db.create_league(
        "Elo League",
        rating_type=RatingType.ELO,
        start_rating=1000,
        rating_change_for_winners_rule=[dict(rule) for rule in WINNERS_RULES],
        rating_change_for_losers_rule=[dict(rule) for rule in LOSERS_RULES],
    )

@pytest_asyncio.fixture
async def killer_pool_league(db):
    return await db.create_league("Killer Pool League", rating_type=RatingType.KILLER_POOL, start_rating=0)

@pytest_asyncio.fixture
async def confirmed_members(rating_service):
    """Add and confirm users in a league"""
    async def _confirmed_members(league, users):
        for user in users:
            assert await rating_service.add_player(league.id, user.id)
            assert await rating_service.confirm_player(league.id, user.id)
        return users
    return _confirmed_members
