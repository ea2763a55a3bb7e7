"""Tests for pairwise league challenges"""

from datetime import timedelta

import pytest
import pytest_asyncio

from cueleague.database.models import GameStatus, MatchGame
from cueleague.events import MatchCompleted
from cueleague.operations.match_operations import MatchGameOperations
from cueleague.utils.exceptions import NoMatchingRule

@pytest_asyncio.fixture
async def players(elo_league, confirmed_members, make_users):
    return await confirmed_members(elo_league, await make_users(3))

@pytest.fixture
def operations(db, rating_service, event_bus):
    return MatchGameOperations(db, rating_service, event_bus)

async def set_rating(db, league_id, user_id, value):
    async with db.transaction() as session:
        rating = await db.get_rating(league_id, user_id)
        rating = await session.merge(rating)
        rating.rating = value

async def test_send_creates_pending_invitation(elo_league, players, operations):
    challenger, opponent, _ = players

    match = await operations.send(elo_league.id, challenger.id, opponent.id, details="Friday 7pm")

    assert match.status == GameStatus.PENDING
    assert match.first_rating_before_game == 1000
    assert match.invitation_available_till - match.invitation_sent_at == timedelta(days=2)

async def test_send_rejects_busy_or_invalid_players(elo_league, players, operations, make_users):
    challenger, opponent, third = players
    outsider, = await make_users(1)

    assert await operations.send(elo_league.id, challenger.id, challenger.id) is None
    assert await operations.send(elo_league.id, challenger.id, outsider.id) is None

    assert await operations.send(elo_league.id, challenger.id, opponent.id) is not None
    assert await operations.send(elo_league.id, third.id, opponent.id) is None
    assert await operations.send(elo_league.id, challenger.id, third.id) is None

async def test_upset_result_applies_weak_rule(db, elo_league, players, operations, recorded_events):
    underdog, favourite, _ = players
    await set_rating(db, elo_league.id, favourite.id, 1200)

    match = await operations.send(elo_league.id, underdog.id, favourite.id)
    assert await operations.accept(favourite.id, match.id)
    assert await operations.send_result(underdog.id, match.id, 7, 5)

    stored = await operations.get_match(match.id)
    assert stored.status == GameStatus.COMPLETED
    assert stored.rating_change_for_winner == 35
    assert stored.rating_change_for_loser == -35
    assert (await db.get_rating(elo_league.id, underdog.id)).rating == 1035
    assert (await db.get_rating(elo_league.id, favourite.id)).rating == 1165

    completed = [e for e in recorded_events if isinstance(e, MatchCompleted)]
    assert len(completed) == 1
    assert completed[0].winner_user_id == underdog.id

async def test_result_is_recorded_once(db, elo_league, players, operations):
    first, second, _ = players
    match = await operations.send(elo_league.id, first.id, second.id)
    await operations.accept(second.id, match.id)

    assert await operations.send_result(second.id, match.id, 3, 7)
    assert not await operations.send_result(first.id, match.id, 7, 3)

    assert (await db.get_rating(elo_league.id, second.id)).rating == 1025
    assert (await db.get_rating(elo_league.id, first.id)).rating == 975

async def test_level_scores_rejected(elo_league, players, operations):
    first, second, _ = players
    match = await operations.send(elo_league.id, first.id, second.id)
    await operations.accept(second.id, match.id)

    assert not await operations.send_result(first.id, match.id, 4, 4)
    assert (await operations.get_match(match.id)).status == GameStatus.IN_PROGRESS

async def test_scores_clamped_to_max_score(elo_league, players, operations):
    first, second, _ = players
    match = await operations.send(elo_league.id, first.id, second.id)
    await operations.accept(second.id, match.id)

    assert await operations.send_result(first.id, match.id, 11, 2)

    stored = await operations.get_match(match.id)
    assert (stored.first_user_score, stored.second_user_score) == (7, 2)

async def test_scores_level_after_clamping_rejected(elo_league, players, operations):
    first, second, _ = players
    match = await operations.send(elo_league.id, first.id, second.id)
    await operations.accept(second.id, match.id)

    assert not await operations.send_result(first.id, match.id, 9, 8)

    stored = await operations.get_match(match.id)
    assert stored.status == GameStatus.IN_PROGRESS
    assert stored.winner_rating_id is None

async def test_challenger_cannot_accept_own_invitation(elo_league, players, operations):
    first, second, third = players
    match = await operations.send(elo_league.id, first.id, second.id)

    assert not await operations.accept(first.id, match.id)
    assert not await operations.accept(third.id, match.id)
    assert await operations.accept(second.id, match.id)

async def test_decline_forfeits_to_challenger(db, elo_league, players, operations):
    first, second, _ = players
    match = await operations.send(elo_league.id, first.id, second.id)

    assert await operations.decline(second.id, match.id)

    stored = await operations.get_match(match.id)
    assert stored.status == GameStatus.COMPLETED
    assert (stored.first_user_score, stored.second_user_score) == (7, 0)
    assert (await db.get_rating(elo_league.id, first.id)).rating == 1025

async def test_expired_invitation_cannot_be_accepted(db, elo_league, players, operations):
    first, second, _ = players
    match = await operations.send(elo_league.id, first.id, second.id)
    async with db.transaction() as session:
        stored = await session.get(MatchGame, match.id)
        stored.invitation_available_till = stored.invitation_sent_at - timedelta(minutes=1)

    assert not await operations.accept(second.id, match.id)
    assert not await operations.decline(second.id, match.id)

async def test_cancel_only_pending(elo_league, players, operations):
    first, second, third = players
    pending = await operations.send(elo_league.id, first.id, second.id)

    assert await operations.cancel(pending.id)
    assert not await operations.cancel(pending.id)
    assert (await operations.get_match(pending.id)).status == GameStatus.CANCELLED

    # Cancelled matches free both players
    assert await operations.send(elo_league.id, second.id, third.id) is not None

async def test_uncovered_rating_gap_rolls_back(db, players, operations, rating_service, confirmed_members):
    league = await db.create_league(
        "Narrow Rules",
        rating_change_for_winners_rule=[{'range': [0, 50], 'strong': 25, 'weak': 25}],
        rating_change_for_losers_rule=[{'range': [0, 50], 'strong': -25, 'weak': -25}],
    )
    first, second, _ = await confirmed_members(league, players)
    await set_rating(db, league.id, second.id, 1500)

    match = await operations.send(league.id, first.id, second.id)
    await operations.accept(second.id, match.id)
    with pytest.raises(NoMatchingRule):
        await operations.send_result(first.id, match.id, 7, 1)

    assert (await operations.get_match(match.id)).status == GameStatus.IN_PROGRESS
    assert (await db.get_rating(league.id, first.id)).rating == 1000
