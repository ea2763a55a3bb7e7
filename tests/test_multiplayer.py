"""Tests for multiplayer elimination games"""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from cueleague.constants import LogActions, MultiplayerConstants
from cueleague.database.models import MultiplayerGameStatus, utcnow
from cueleague.events import GameCompleted
from cueleague.services.multiplayer import (
    MultiplayerGameService, division_for_position, initial_cards, initial_lives_for
)
from cueleague.utils.exceptions import CardError, GameStateError, PermissionDenied, RatingTypeMismatch

@pytest.fixture
def service(db, event_bus, rating_service, rng):
    return MultiplayerGameService(db.session_factory, event_bus, rating_service, rng)

@pytest_asyncio.fixture
async def members(killer_pool_league, confirmed_members, make_users):
    return await confirmed_members(killer_pool_league, await make_users(6))

@pytest_asyncio.fixture
async def started_game(service, killer_pool_league, members):
    """A started three-player game and its players by user id"""
    async def _started_game(count=3, **options):
        game = await service.create(killer_pool_league.id, "Friday Killer", **options)
        for user in members[:count]:
            await service.join(game.id, user.id)
        assert await service.start(game.id)
        game = await service.get_game(game.id)
        return game, {p.user_id: p for p in game.players}
    return _started_game

async def eliminate(service, game_id, user_id):
    player = None
    while player is None or player.lives > 0:
        player = await service.decrement_lives(game_id, user_id)
    return player

# ============================================================================
# Setup
# ============================================================================

@pytest.mark.parametrize("players,lives", [(2, 6), (5, 6), (6, 5), (10, 5), (11, 4), (14, 4), (15, 3), (40, 3)])
def test_initial_lives_tiers(players, lives):
    assert initial_lives_for(players) == lives

async def test_create_uses_default_split_for_invalid_percents(service, killer_pool_league):
    game = await service.create(
        killer_pool_league.id, "Bad Split",
        first_place_percent=70, second_place_percent=20, grand_final_percent=20
    )

    assert (game.first_place_percent, game.second_place_percent, game.grand_final_percent) == (60, 20, 20)
    assert game.status == MultiplayerGameStatus.REGISTRATION

async def test_join_requires_confirmed_membership(db, service, killer_pool_league, rating_service, make_users):
    game = await service.create(killer_pool_league.id, "Members Only")
    outsider, pending = await make_users(2)
    await rating_service.add_player(killer_pool_league.id, pending.id)

    with pytest.raises(GameStateError):
        await service.join(game.id, outsider.id)
    with pytest.raises(GameStateError):
        await service.join(game.id, pending.id)

async def test_join_and_leave_track_prize_pool(service, killer_pool_league, members):
    game = await service.create(killer_pool_league.id, "Pool", entrance_fee=200, max_players=2)

    await service.join(game.id, members[0].id)
    await service.join(game.id, members[1].id)
    assert not await service.can_join(game.id, members[2].id)
    with pytest.raises(GameStateError):
        await service.join(game.id, members[0].id)

    assert (await service.get_game(game.id)).current_prize_pool == 400

    assert await service.leave(game.id, members[1].id)
    assert not await service.leave(game.id, members[1].id)
    assert (await service.get_game(game.id)).current_prize_pool == 200
    assert await service.can_join(game.id, members[2].id)

async def test_registration_deadline(service, killer_pool_league, members):
    game = await service.create(
        killer_pool_league.id, "Closed", registration_ends_at=utcnow() - timedelta(hours=1)
    )

    assert not await service.can_join(game.id, members[0].id)

async def test_cancel_only_during_registration(service, killer_pool_league, members, started_game):
    game = await service.create(killer_pool_league.id, "Rained Off")
    assert await service.cancel(game.id)
    assert (await service.get_game(game.id)).status == MultiplayerGameStatus.CANCELLED
    assert not await service.can_join(game.id, members[0].id)

    running, _ = await started_game()
    assert not await service.cancel(running.id)

async def test_start_needs_two_players(service, killer_pool_league, members):
    game = await service.create(killer_pool_league.id, "Lonely")
    await service.join(game.id, members[0].id)

    assert not await service.start(game.id)
    assert (await service.get_game(game.id)).status == MultiplayerGameStatus.REGISTRATION

async def test_start_deals_turn_orders_lives_and_cards(service, started_game):
    game, players = await started_game(count=3)

    assert game.status == MultiplayerGameStatus.IN_PROGRESS
    assert game.initial_lives == 6
    assert sorted(p.turn_order for p in players.values()) == [1, 2, 3]
    assert all(p.lives == 6 for p in players.values())
    assert all(p.cards == {'skip_turn': True, 'pass_turn': True, 'hand_shot': True} for p in players.values())

    first = next(p for p in players.values() if p.turn_order == 1)
    assert game.current_player_user_id == first.user_id
    assert game.moderator_user_id == first.user_id
    assert game.next_turn_order == 2
    assert not await service.start(game.id)

    logs = await service.get_logs(game.id)
    assert logs[0].action_type == LogActions.START

# ============================================================================
# Turns and cards
# ============================================================================

def user_at(players, turn_order):
    return next(p.user_id for p in players.values() if p.turn_order == turn_order)

async def test_record_turn_rotates(service, started_game):
    game, players = await started_game(count=3)

    with pytest.raises(GameStateError):
        await service.record_turn(game.id, user_at(players, 2))

    assert await service.record_turn(game.id, user_at(players, 1)) == user_at(players, 2)
    assert await service.record_turn(game.id, user_at(players, 2)) == user_at(players, 3)
    assert await service.record_turn(game.id, user_at(players, 3)) == user_at(players, 1)

async def test_turn_skips_eliminated_player(service, started_game):
    game, players = await started_game(count=3)
    await eliminate(service, game.id, user_at(players, 2))

    assert await service.record_turn(game.id, user_at(players, 1)) == user_at(players, 3)

async def test_cards_are_single_use(service, started_game):
    game, players = await started_game(count=3)
    first = user_at(players, 1)

    assert await service.use_card(game.id, first, "hand_shot")
    assert not await service.use_card(game.id, first, "hand_shot")
    assert (await service.get_game(game.id)).current_player_user_id == first

    assert await service.use_card(game.id, first, "skip_turn")
    assert (await service.get_game(game.id)).current_player_user_id == user_at(players, 2)
    with pytest.raises(GameStateError):
        await service.use_card(game.id, first, "pass_turn", target_user_id=user_at(players, 3))

    with pytest.raises(CardError):
        await service.use_card(game.id, first, "double_shot")

async def test_pass_turn_to_target(service, started_game):
    game, players = await started_game(count=3)
    first, third = user_at(players, 1), user_at(players, 3)

    with pytest.raises(CardError):
        await service.use_card(game.id, first, "pass_turn")

    assert await service.use_card(game.id, first, "pass_turn", target_user_id=third)
    updated = await service.get_game(game.id)
    assert updated.current_player_user_id == third
    stats = {p.user_id: p.game_stats for p in updated.players}
    assert stats[first]['cards_used'] == 1

@pytest.mark.parametrize("position,division", [
    (None, ""), (0, ""), (1, "Elite"), (8, "Elite"), (9, "S"), (24, "A"), (25, "B"), (64, "B"), (65, "C")
])
def test_division_for_position(position, division):
    assert division_for_position(position) == division

def test_handicap_card_only_for_lower_divisions():
    assert "handicap" not in initial_cards("A")
    assert "handicap" not in initial_cards()
    assert initial_cards("C") == {'skip_turn': True, 'pass_turn': True, 'hand_shot': True, 'handicap': True}

async def test_lower_division_players_get_handicap(monkeypatch, service, started_game, members):
    monkeypatch.setattr(MultiplayerConstants, "DIVISION_TIERS", ((1, "Elite"), (2, "A"), (3, "B")))
    game, players = await started_game(count=3)

    assert not players[members[0].id].has_card("handicap")
    assert not players[members[1].id].has_card("handicap")
    assert players[members[2].id].has_card("handicap")

@pytest.fixture
def everyone_handicapped(monkeypatch):
    monkeypatch.setattr(MultiplayerConstants, "DIVISION_TIERS", ())

async def test_handicap_take_life(service, started_game, everyone_handicapped):
    game, players = await started_game(count=3)
    first, third = user_at(players, 1), user_at(players, 3)

    with pytest.raises(CardError):
        await service.use_card(game.id, first, "handicap")
    with pytest.raises(CardError):
        await service.use_card(game.id, first, "handicap", handicap_action="take_life")

    assert await service.use_card(game.id, first, "handicap", target_user_id=third, handicap_action="take_life")

    updated = await service.get_game(game.id)
    by_user = {p.user_id: p for p in updated.players}
    assert by_user[third].lives == 5
    assert by_user[third].game_stats['lives_lost'] == 1
    assert not by_user[first].has_card("handicap")
    assert updated.current_player_user_id == first
    logs = [log.action_type for log in await service.get_logs(game.id)]
    assert LogActions.TAKE_LIFE in logs

async def test_handicap_take_life_needs_three_lives(service, started_game, everyone_handicapped):
    game, players = await started_game(count=3)
    first, second = user_at(players, 1), user_at(players, 2)
    for _ in range(4):
        await service.decrement_lives(game.id, second)

    with pytest.raises(CardError):
        await service.use_card(game.id, first, "handicap", target_user_id=second, handicap_action="take_life")

    updated = await service.get_game(game.id)
    by_user = {p.user_id: p for p in updated.players}
    assert by_user[second].lives == 2
    assert by_user[first].has_card("handicap")

async def test_handicap_skip_turn(service, started_game, everyone_handicapped):
    game, players = await started_game(count=3)
    first = user_at(players, 1)

    assert await service.use_card(game.id, first, "handicap", handicap_action="skip_turn")

    updated = await service.get_game(game.id)
    assert updated.current_player_user_id == user_at(players, 2)
    assert {p.user_id: p for p in updated.players}[first].has_card("skip_turn")

# ============================================================================
# Moderation
# ============================================================================

async def test_moderator_sets_turn(service, started_game):
    game, players = await started_game(count=3)
    first, second, third = (user_at(players, turn) for turn in (1, 2, 3))

    with pytest.raises(PermissionDenied):
        await service.set_turn(game.id, third, acting_user_id=second)

    assert await service.set_turn(game.id, third, acting_user_id=first) == third
    assert (await service.get_game(game.id)).next_turn_order == 1
    assert await service.record_turn(game.id, third) == first

    logs = [log.action_type for log in await service.get_logs(game.id)]
    assert LogActions.SET_TURN in logs

async def test_moderator_acts_for_other_players(service, started_game):
    game, players = await started_game(count=3)
    first, second, third = (user_at(players, turn) for turn in (1, 2, 3))

    with pytest.raises(GameStateError):
        await service.record_turn(game.id, second, acting_user_id=third)
    with pytest.raises(PermissionDenied):
        await service.decrement_lives(game.id, third, acting_user_id=second)

    assert (await service.decrement_lives(game.id, third, acting_user_id=first)).lives == 5
    assert (await service.increment_lives(game.id, third, acting_user_id=first)).lives == 6

async def test_admin_can_moderate_any_game(db, service, started_game):
    game, players = await started_game(count=3)
    admin = await db.create_user("League", "Admin", is_admin=True)

    assert await service.set_turn(game.id, user_at(players, 2), acting_user_id=admin.id) == user_at(players, 2)
    await service.set_moderator(game.id, admin.id, acting_user_id=admin.id)
    assert (await service.get_game(game.id)).moderator_user_id == admin.id

async def test_set_moderator(service, started_game, members):
    game, players = await started_game(count=3)
    first, second = user_at(players, 1), user_at(players, 2)

    with pytest.raises(PermissionDenied):
        await service.set_moderator(game.id, second, acting_user_id=second)
    with pytest.raises(GameStateError):
        await service.set_moderator(game.id, members[5].id, acting_user_id=first)

    await service.set_moderator(game.id, second, acting_user_id=first)
    assert (await service.get_game(game.id)).moderator_user_id == second
    with pytest.raises(PermissionDenied):
        await service.set_turn(game.id, second, acting_user_id=first)

async def test_increment_and_decrement_lives(service, started_game):
    game, players = await started_game(count=3)
    second = user_at(players, 2)

    assert (await service.increment_lives(game.id, second)).lives == 7
    assert (await service.decrement_lives(game.id, second)).lives == 6

    logs = [log.action_type for log in await service.get_logs(game.id)]
    assert LogActions.INCREMENT_LIVES in logs
    assert LogActions.DECREMENT_LIVES in logs

# ============================================================================
# Elimination and completion
# ============================================================================

async def test_six_player_game_to_completion(service, started_game, recorded_events):
    game, players = await started_game(count=6, entrance_fee=300)
    assert game.initial_lives == 5
    order = sorted(players, key=lambda user_id: players[user_id].turn_order)

    for expected_position, user_id in zip(range(6, 1, -1), order[:5]):
        eliminated = await eliminate(service, game.id, user_id)
        assert eliminated.finish_position == expected_position

    finished = await service.get_game(game.id)
    assert finished.status == MultiplayerGameStatus.COMPLETED
    positions = {p.user_id: p.finish_position for p in finished.players}
    assert sorted(positions.values()) == [1, 2, 3, 4, 5, 6]
    assert positions[order[5]] == 1
    assert positions[order[4]] == 2

    assert finished.prize_pool == {
        'total': 1800, 'first_place': 1080, 'second_place': 360, 'grand_final_fund': 360, 'players_count': 6
    }
    prizes = {p.user_id: p.prize_amount for p in finished.players}
    assert prizes[order[5]] == 1080
    assert prizes[order[4]] == 360
    assert sum(prizes.values()) == 1440

    points = {p.user_id: p.rating_points for p in finished.players}
    assert points[order[5]] == 6
    assert points[order[0]] == 1

    completed = [e for e in recorded_events if isinstance(e, GameCompleted)]
    assert len(completed) == 1
    assert completed[0].winner_user_id == order[5]

    with pytest.raises(GameStateError):
        await service.decrement_lives(game.id, order[5])

async def test_eliminated_player_cannot_lose_more_lives(service, started_game):
    game, players = await started_game(count=3)
    target = user_at(players, 3)
    await eliminate(service, game.id, target)

    with pytest.raises(GameStateError):
        await service.decrement_lives(game.id, target)

async def test_simultaneous_last_lives_crown_one_winner(service, started_game, recorded_events):
    game, players = await started_game(count=3)
    first, second, third = (user_at(players, turn) for turn in (1, 2, 3))
    await eliminate(service, game.id, first)
    for user_id in (second, third):
        while (await service.decrement_lives(game.id, user_id)).lives > 1:
            pass

    results = await asyncio.gather(
        service.decrement_lives(game.id, second),
        service.decrement_lives(game.id, third),
        return_exceptions=True
    )

    assert sum(isinstance(result, GameStateError) for result in results) == 1
    finished = await service.get_game(game.id)
    assert finished.status == MultiplayerGameStatus.COMPLETED
    active = [p for p in finished.players if p.is_active]
    assert len(active) == 1
    assert active[0].lives == 1
    assert active[0].finish_position == 1
    assert sorted(p.finish_position for p in finished.players) == [1, 2, 3]

    assert len([e for e in recorded_events if isinstance(e, GameCompleted)]) == 1
    logs = [log.action_type for log in await service.get_logs(game.id)]
    assert logs.count(LogActions.GAME_COMPLETED) == 1

async def test_lives_frozen_once_game_completed(service, started_game):
    game, players = await started_game(count=2)
    loser, winner = user_at(players, 1), user_at(players, 2)
    await eliminate(service, game.id, loser)

    with pytest.raises(GameStateError):
        await service.increment_lives(game.id, winner)
    with pytest.raises(GameStateError):
        await service.decrement_lives(game.id, winner)

    finished = await service.get_game(game.id)
    assert {p.user_id: p.lives for p in finished.players}[winner] == 6

async def test_finish_game_requires_moderator(service, started_game):
    game, players = await started_game(count=2)
    first, second = user_at(players, 1), user_at(players, 2)
    await eliminate(service, game.id, second)

    with pytest.raises(PermissionDenied):
        await service.finish_game(game.id, acting_user_id=second)
    assert await service.finish_game(game.id, acting_user_id=first)

async def test_finish_game_applies_rating_points(db, service, started_game, killer_pool_league):
    game, players = await started_game(count=3)
    order = sorted(players, key=lambda user_id: players[user_id].turn_order)

    with pytest.raises(GameStateError):
        await service.finish_game(game.id)

    await eliminate(service, game.id, order[0])
    await eliminate(service, game.id, order[1])

    new_ratings = await service.finish_game(game.id)

    assert len(new_ratings) == 3
    assert (await db.get_rating(killer_pool_league.id, order[2])).rating == 3
    assert (await db.get_rating(killer_pool_league.id, order[1])).rating == 2
    assert (await db.get_rating(killer_pool_league.id, order[0])).rating == 1
    assert (await service.get_game(game.id)).status == MultiplayerGameStatus.FINISHED
    with pytest.raises(GameStateError):
        await service.finish_game(game.id)

async def test_finish_game_rejects_elo_league(db, service, elo_league, confirmed_members, make_users):
    users = await confirmed_members(elo_league, await make_users(2))
    game = await service.create(elo_league.id, "Wrong League")
    for user in users:
        await service.join(game.id, user.id)
    await service.start(game.id)
    await eliminate(service, game.id, users[0].id)

    with pytest.raises(RatingTypeMismatch):
        await service.finish_game(game.id)
    assert (await service.get_game(game.id)).status == MultiplayerGameStatus.COMPLETED

# ============================================================================
# Rebuys and late entries
# ============================================================================

async def test_rebuy_restores_player_and_grows_pool(service, started_game, members):
    game, players = await started_game(count=3, allow_rebuy=True, rebuy_rounds=1, lives_per_new_player=1)
    first, second, third = (user_at(players, turn) for turn in (1, 2, 3))
    await eliminate(service, game.id, first)

    player = await service.add_player_during_game(game.id, first, fee=300, is_new_player=False)

    assert player.lives == 6
    assert player.rebuy_count == 1
    assert player.total_paid == 600
    assert player.eliminated_at is None and player.finish_position is None

    updated = await service.get_game(game.id)
    lives = {p.user_id: p.lives for p in updated.players}
    assert lives[second] == 7 and lives[third] == 7
    assert updated.current_prize_pool == 1200
    assert updated.rebuy_history[0]['type'] == 'rebuy'
    assert len({p.turn_order for p in updated.players}) == 3

    await eliminate(service, game.id, first)
    with pytest.raises(GameStateError):
        await service.add_player_during_game(game.id, first, fee=300, is_new_player=False)

async def test_new_player_joins_running_game(service, started_game, members):
    game, players = await started_game(count=3, allow_rebuy=True, rebuy_rounds=1)
    newcomer = members[4].id

    player = await service.add_player_during_game(game.id, newcomer, fee=300, is_new_player=True)

    assert player.lives == 6
    updated = await service.get_game(game.id)
    assert len(updated.players) == 4
    assert len({p.turn_order for p in updated.players}) == 4
    assert updated.current_prize_pool == 1200

    with pytest.raises(GameStateError):
        await service.add_player_during_game(game.id, newcomer, fee=300, is_new_player=True)

async def test_rebuys_disabled(service, started_game, members):
    game, players = await started_game(count=3)

    with pytest.raises(GameStateError):
        await service.add_player_during_game(game.id, members[4].id, fee=300, is_new_player=True)

# ============================================================================
# Summaries
# ============================================================================

async def test_summaries_after_completion(service, started_game):
    game, players = await started_game(
        count=2, entrance_fee=300, enable_penalties=True, penalty_rounds_threshold=4, rebuy_rounds=1
    )
    with pytest.raises(GameStateError):
        await service.get_financial_summary(game.id)

    loser, winner = (user_at(players, turn) for turn in (1, 2))
    await eliminate(service, game.id, loser)

    financial = await service.get_financial_summary(game.id)
    assert financial['total_prize_pool'] == 600
    assert financial['first_place_prize'] == 360
    assert financial['second_place_prize'] == 120
    assert financial['grand_final_fund'] == 120
    assert financial['penalty_players_count'] == 2
    assert financial['time_fund_total'] == 100
    assert financial['total_rebuy_amount'] == 0

    rating = await service.get_rating_summary(game.id)
    assert rating['total_players'] == 2
    assert [entry['user']['id'] for entry in rating['players']] == [winner, loser]
    assert [entry['rating_points'] for entry in rating['players']] == [2, 1]
