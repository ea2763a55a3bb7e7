"""
Multiplayer (last man standing) game service.

A game collects players during registration, then runs as a turn-based
elimination: every player starts with the same number of lives and a set
of single-use cards, loses a life on a miss, and is out at zero. The last
player standing wins. Entrance fees and rebuys form the prize pool, which
is split between first place, second place and the grand final fund.
Finish positions turn into league rating points once an admin finishes
the game.

Status machine:

    REGISTRATION -> IN_PROGRESS -> COMPLETED -> FINISHED
    REGISTRATION -> CANCELLED

The move to COMPLETED is a compare-and-swap on the game row, so exactly one
elimination crowns the winner even when several race for the last life.
"""

import logging
import math
import random
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cueleague.config import Config
from cueleague.constants import MultiplayerConstants, LogActions
from cueleague.database.models import (
    League, Rating, MultiplayerGame, MultiplayerGamePlayer, MultiplayerGameLog,
    MultiplayerGameStatus, User, utcnow
)
from cueleague.events import GameCompleted
from cueleague.services.base import BaseService
from cueleague.services.rating import RatingService
from cueleague.utils.exceptions import GameStateError, CardError, PermissionDenied
from cueleague.utils.prizes import PrizeSplit

logger = logging.getLogger(__name__)

def initial_lives_for(player_count: int) -> int:
    """Lives per player for a field of the given size"""
    for max_players, lives in MultiplayerConstants.LIVES_TIERS:
        if player_count <= max_players:
            return lives
    return MultiplayerConstants.FALLBACK_LIVES

def division_for_position(position: Optional[int]) -> str:
    """League division for a standings position, empty when unranked"""
    if not position or position < 1:
        return ""
    for max_position, division in MultiplayerConstants.DIVISION_TIERS:
        if position <= max_position:
            return division
    return MultiplayerConstants.FALLBACK_DIVISION

def initial_cards(division: str = "") -> Dict[str, bool]:
    cards = {card: True for card in MultiplayerConstants.INITIAL_CARDS}
    if division in MultiplayerConstants.HANDICAP_DIVISIONS:
        cards[MultiplayerConstants.HANDICAP_CARD] = True
    return cards

class MultiplayerGameService(BaseService):
    """Service for the lifecycle of multiplayer elimination games."""

    def __init__(self, session_factory, event_bus=None, rating_service: RatingService = None,
                 rng: random.Random = None):
        super().__init__(session_factory, event_bus)
        self.rating_service = rating_service or RatingService(session_factory, event_bus)
        self.rng = rng or random.Random()

    # ============================================================================
    # Loading helpers
    # ============================================================================

    async def _get_game(self, s: AsyncSession, game_id: int, lock: bool = True) -> MultiplayerGame:
        query = select(MultiplayerGame).where(MultiplayerGame.id == game_id)
        if lock:
            query = query.with_for_update()
        result = await s.execute(query)
        game = result.scalar_one_or_none()
        if game is None:
            raise ValueError(f"Game {game_id} not found")
        return game

    async def _get_players(self, s: AsyncSession, game_id: int, active_only: bool = False,
                           lock: bool = False) -> List[MultiplayerGamePlayer]:
        query = select(MultiplayerGamePlayer).where(MultiplayerGamePlayer.game_id == game_id)
        if active_only:
            query = query.where(MultiplayerGamePlayer.eliminated_at.is_(None))
        if lock:
            query = query.with_for_update()
        result = await s.execute(query.order_by(MultiplayerGamePlayer.turn_order, MultiplayerGamePlayer.id))
        return list(result.scalars().all())

    async def _get_player(self, s: AsyncSession, game_id: int, user_id: int) -> Optional[MultiplayerGamePlayer]:
        result = await s.execute(
            select(MultiplayerGamePlayer).where(
                MultiplayerGamePlayer.game_id == game_id,
                MultiplayerGamePlayer.user_id == user_id
            )
        )
        return result.scalar_one_or_none()

    async def _require_in_progress(self, s: AsyncSession, game_id: int) -> MultiplayerGame:
        game = await self._get_game(s, game_id)
        if game.status != MultiplayerGameStatus.IN_PROGRESS:
            raise GameStateError(f"Game {game_id} is {game.status.value}", "Game is not in progress.")
        return game

    async def _require_active_player(self, s: AsyncSession, game_id: int, user_id: int) -> MultiplayerGamePlayer:
        player = await self._get_player(s, game_id, user_id)
        if player is None or not player.is_active:
            raise GameStateError(f"User {user_id} is not an active player of game {game_id}",
                                 "Player not found or eliminated.")
        return player

    async def _divisions(self, s: AsyncSession, game: MultiplayerGame, user_ids: List[int]) -> Dict[int, str]:
        """League division of each user, from their standings position"""
        result = await s.execute(
            select(Rating.user_id, Rating.position).where(
                Rating.league_id == game.league_id,
                Rating.user_id.in_(user_ids),
                Rating.is_active == True
            )
        )
        return {user_id: division_for_position(position) for user_id, position in result.all()}

    async def _can_moderate(self, s: AsyncSession, game: MultiplayerGame, acting_user_id: Optional[int]) -> bool:
        if acting_user_id is None:
            return False
        if acting_user_id == game.moderator_user_id:
            return True
        user = await s.get(User, acting_user_id)
        return bool(user and user.is_admin)

    async def _require_moderator(self, s: AsyncSession, game: MultiplayerGame,
                                 acting_user_id: Optional[int], action: str):
        if not await self._can_moderate(s, game, acting_user_id):
            raise PermissionDenied(acting_user_id, action)

    async def _require_turn(self, s: AsyncSession, game: MultiplayerGame, user_id: int,
                            acting_user_id: Optional[int]):
        """Players act on their own turn; a moderator or admin may act for anyone"""
        if game.current_player_user_id == user_id or await self._can_moderate(s, game, acting_user_id):
            return
        raise GameStateError(f"It is not user {user_id}'s turn in game {game.id}", "It is not your turn.")

    @staticmethod
    def _game_in_progress(game_id: int):
        return (
            select(MultiplayerGame.id)
            .where(MultiplayerGame.id == game_id, MultiplayerGame.status == MultiplayerGameStatus.IN_PROGRESS)
            .exists()
        )

    async def _change_lives(self, s: AsyncSession, game: MultiplayerGame, player: MultiplayerGamePlayer,
                            amount: int, min_lives_before: int = 1) -> bool:
        """
        Atomically add amount to a player's lives.

        The row only changes while the player is standing and the game row
        is still IN_PROGRESS, so a life change queued behind the transaction
        that completed the game cannot touch the winner. A decrement also
        needs the player to hold at least min_lives_before lives.

        Returns:
            False when the player no longer qualifies

        Raises:
            GameStateError: The game left IN_PROGRESS in another transaction
        """
        query = (
            update(MultiplayerGamePlayer)
            .where(
                MultiplayerGamePlayer.id == player.id,
                MultiplayerGamePlayer.eliminated_at.is_(None),
                self._game_in_progress(game.id)
            )
            .values(lives=MultiplayerGamePlayer.lives + amount)
            .execution_options(synchronize_session=False)
        )
        if amount < 0:
            query = query.where(MultiplayerGamePlayer.lives >= max(min_lives_before, -amount))

        result = await s.execute(query)
        if result.rowcount != 1:
            await s.refresh(game)
            if game.status != MultiplayerGameStatus.IN_PROGRESS:
                raise GameStateError(f"Game {game.id} is {game.status.value}", "Game is not in progress.")
            return False
        await s.refresh(player)
        return True

    def _log(self, s: AsyncSession, game_id: int, user_id: Optional[int], action_type: str,
             action_data: Dict[str, Any] = None):
        s.add(MultiplayerGameLog(
            game_id=game_id,
            user_id=user_id,
            action_type=action_type,
            action_data=action_data,
            created_at=utcnow()
        ))

    @staticmethod
    def _bump_stat(player: MultiplayerGamePlayer, stat: str, amount: int = 1):
        stats = dict(player.game_stats or MultiplayerConstants.EMPTY_GAME_STATS)
        stats[stat] = stats.get(stat, 0) + amount
        player.game_stats = stats

    async def _update_prize_pool(self, s: AsyncSession, game: MultiplayerGame):
        await s.flush()
        result = await s.execute(
            select(func.coalesce(func.sum(MultiplayerGamePlayer.total_paid), 0))
            .where(MultiplayerGamePlayer.game_id == game.id)
        )
        game.current_prize_pool = result.scalar()

    # ============================================================================
    # Registration
    # ============================================================================

    async def create(self, league_id: int, name: str, session: Optional[AsyncSession] = None,
                     **options) -> MultiplayerGame:
        """
        Create a game open for registration.

        Options mirror the game columns (max_players, registration_ends_at,
        entrance_fee, the three prize percents, penalty_fee, allow_rebuy,
        rebuy_rounds, lives_per_new_player, enable_penalties,
        penalty_rounds_threshold). A prize split that does not sum to 100 is
        replaced by the default split.
        """
        split = PrizeSplit.from_percents(
            options.pop('first_place_percent', Config.DEFAULT_FIRST_PLACE_PERCENT),
            options.pop('second_place_percent', Config.DEFAULT_SECOND_PLACE_PERCENT),
            options.pop('grand_final_percent', Config.DEFAULT_GRAND_FINAL_PERCENT),
        )

        async with self._get_session_context(session) as s:
            league = await s.get(League, league_id)
            if league is None:
                raise ValueError(f"League {league_id} not found")

            game = MultiplayerGame(
                league_id=league_id,
                name=name,
                status=MultiplayerGameStatus.REGISTRATION,
                entrance_fee=options.pop('entrance_fee', Config.DEFAULT_ENTRANCE_FEE),
                penalty_fee=options.pop('penalty_fee', Config.DEFAULT_PENALTY_FEE),
                first_place_percent=split.first_place_percent,
                second_place_percent=split.second_place_percent,
                grand_final_percent=split.grand_final_percent,
                current_prize_pool=0,
                **options
            )
            s.add(game)
            await s.flush()

        logger.info(f"Created multiplayer game {game.id} '{name}' in league {league_id}")
        return game

    async def can_join(self, game_id: int, user_id: int, session: Optional[AsyncSession] = None) -> bool:
        """Open registration, deadline not passed, a free seat, and not already in"""
        async with self._get_session_context(session) as s:
            game = await self._get_game(s, game_id, lock=False)
            return await self._can_join(s, game, user_id)

    async def _can_join(self, s: AsyncSession, game: MultiplayerGame, user_id: int) -> bool:
        if game.status != MultiplayerGameStatus.REGISTRATION:
            return False
        if game.registration_ends_at is not None and utcnow() > game.registration_ends_at:
            return False

        result = await s.execute(
            select(func.count(MultiplayerGamePlayer.id)).where(MultiplayerGamePlayer.game_id == game.id)
        )
        if game.max_players and result.scalar() >= game.max_players:
            return False

        return await self._get_player(s, game.id, user_id) is None

    async def join(self, game_id: int, user_id: int,
                   session: Optional[AsyncSession] = None) -> MultiplayerGamePlayer:
        """
        Register a confirmed league member for a game.

        Raises:
            GameStateError: Registration is closed, full, the user is already
                in, or the user is not a confirmed member of the league
        """
        async with self._get_session_context(session) as s:
            game = await self._get_game(s, game_id)
            if not await self._can_join(s, game, user_id):
                raise GameStateError(f"User {user_id} cannot join game {game_id}", "Cannot join this game.")

            result = await s.execute(
                select(Rating.id).where(
                    Rating.league_id == game.league_id,
                    Rating.user_id == user_id,
                    Rating.is_active == True,
                    Rating.is_confirmed == True
                )
            )
            if result.first() is None:
                raise GameStateError(
                    f"User {user_id} is not a confirmed member of league {game.league_id}",
                    "You must be an active player in this league to join."
                )

            player = MultiplayerGamePlayer(
                game_id=game_id,
                user_id=user_id,
                joined_at=utcnow(),
                total_paid=game.entrance_fee
            )
            s.add(player)
            await self._update_prize_pool(s, game)

        logger.info(f"User {user_id} joined game {game_id}")
        return player

    async def leave(self, game_id: int, user_id: int, session: Optional[AsyncSession] = None) -> bool:
        async with self._get_session_context(session) as s:
            game = await self._get_game(s, game_id)
            if game.status != MultiplayerGameStatus.REGISTRATION:
                raise GameStateError(f"Game {game_id} is {game.status.value}",
                                     "Cannot leave a game that has already started.")
            player = await self._get_player(s, game_id, user_id)
            if player is None:
                return False
            await s.delete(player)
            await self._update_prize_pool(s, game)

        logger.info(f"User {user_id} left game {game_id}")
        return True

    async def cancel(self, game_id: int, session: Optional[AsyncSession] = None) -> bool:
        """Cancel a game that has not started. Returns False once it is under way."""
        async with self._get_session_context(session) as s:
            game = await self._get_game(s, game_id)
            if game.status != MultiplayerGameStatus.REGISTRATION:
                return False
            game.status = MultiplayerGameStatus.CANCELLED
            await s.flush()

        logger.info(f"Cancelled game {game_id}")
        return True

    # ============================================================================
    # Start and turns
    # ============================================================================

    async def start(self, game_id: int, session: Optional[AsyncSession] = None) -> bool:
        """
        Start a game from registration.

        Turn orders are a random permutation of 1..N, every player gets the
        lives of the field's tier and a fresh set of cards (plus the handicap
        card in the lower divisions), and the player with turn order 1 shoots
        first. That player also moderates the game unless a moderator is set.

        Returns:
            False when the game is not in registration or has fewer than two players
        """
        async with self._get_session_context(session) as s:
            game = await self._get_game(s, game_id)
            if game.status != MultiplayerGameStatus.REGISTRATION:
                return False

            players = await self._get_players(s, game_id, lock=True)
            player_count = len(players)
            if player_count < MultiplayerConstants.MIN_PLAYERS_TO_START:
                return False

            turn_orders = list(range(1, player_count + 1))
            self.rng.shuffle(turn_orders)
            lives = initial_lives_for(player_count)
            divisions = await self._divisions(s, game, [p.user_id for p in players])

            for player, turn_order in zip(players, turn_orders):
                player.turn_order = turn_order
                player.lives = lives
                player.eliminated_at = None
                player.finish_position = None
                player.total_paid = game.entrance_fee
                player.cards = initial_cards(divisions.get(player.user_id, ""))
                player.rounds_played = 1
                player.game_stats = dict(MultiplayerConstants.EMPTY_GAME_STATS)

            by_turn = sorted(players, key=lambda p: p.turn_order)
            game.status = MultiplayerGameStatus.IN_PROGRESS
            game.started_at = utcnow()
            game.initial_lives = lives
            if game.moderator_user_id is None:
                game.moderator_user_id = by_turn[0].user_id
            game.current_player_user_id = by_turn[0].user_id
            game.next_turn_order = by_turn[1].turn_order
            await self._update_prize_pool(s, game)
            self._log(s, game_id, None, LogActions.START, {'players': player_count, 'initial_lives': lives})

        logger.info(f"Started game {game_id} with {player_count} players and {lives} lives each")
        return True

    async def _move_to_next_player(self, s: AsyncSession, game: MultiplayerGame):
        """Hand the turn to the queued player and queue the one after them"""
        active = await self._get_players(s, game.id, active_only=True)
        if not active:
            return

        # The queued player may have been eliminated meanwhile; the next one up takes over
        queued = game.next_turn_order or 0
        next_index = next((i for i, p in enumerate(active) if p.turn_order >= queued), 0)
        game.current_player_user_id = active[next_index].user_id
        game.next_turn_order = active[(next_index + 1) % len(active)].turn_order

    async def record_turn(self, game_id: int, user_id: int, acting_user_id: int = None,
                          session: Optional[AsyncSession] = None):
        """End the current player's turn without a change in lives"""
        async with self._get_session_context(session) as s:
            game = await self._require_in_progress(s, game_id)
            player = await self._require_active_player(s, game_id, user_id)
            await self._require_turn(s, game, user_id, acting_user_id)

            self._bump_stat(player, 'turns_played')
            self._bump_stat(player, 'shots_taken')
            self._log(s, game_id, user_id, LogActions.TURN)
            await self._move_to_next_player(s, game)
            await s.flush()

        return game.current_player_user_id

    async def set_turn(self, game_id: int, target_user_id: int, acting_user_id: int,
                       session: Optional[AsyncSession] = None) -> int:
        """
        Hand the turn to any active player and queue the one after them.

        Raises:
            PermissionDenied: The acting user is neither an admin nor the moderator
            GameStateError: The game is not running or the target is out
        """
        async with self._get_session_context(session) as s:
            game = await self._require_in_progress(s, game_id)
            await self._require_moderator(s, game, acting_user_id, "set the turn")
            target = await self._require_active_player(s, game_id, target_user_id)

            active = await self._get_players(s, game_id, active_only=True)
            index = next(i for i, p in enumerate(active) if p.id == target.id)
            game.current_player_user_id = target.user_id
            game.next_turn_order = active[(index + 1) % len(active)].turn_order
            self._log(s, game_id, acting_user_id, LogActions.SET_TURN, {'target_user_id': target_user_id})
            await s.flush()

        logger.info(f"User {acting_user_id} gave the turn in game {game_id} to user {target_user_id}")
        return game.current_player_user_id

    async def set_moderator(self, game_id: int, user_id: int, acting_user_id: int,
                            session: Optional[AsyncSession] = None) -> MultiplayerGame:
        """
        Make a user the game moderator.

        Only an admin or the current moderator may change it, and only an
        admin may pick someone who does not play in the game.
        """
        async with self._get_session_context(session) as s:
            game = await self._get_game(s, game_id)
            await self._require_moderator(s, game, acting_user_id, "change the moderator")

            if await self._get_player(s, game_id, user_id) is None:
                acting_user = await s.get(User, acting_user_id)
                if not (acting_user and acting_user.is_admin):
                    raise GameStateError(f"User {user_id} does not play game {game_id}",
                                         "The moderator must be a player in the game.")

            game.moderator_user_id = user_id
            await s.flush()

        logger.info(f"User {user_id} now moderates game {game_id}")
        return game

    # ============================================================================
    # Lives
    # ============================================================================

    async def _require_lives_access(self, s: AsyncSession, game: MultiplayerGame, user_id: int,
                                    acting_user_id: Optional[int]):
        """Players change their own lives; a moderator or admin may change anyone's"""
        if acting_user_id is not None and acting_user_id != user_id:
            await self._require_moderator(s, game, acting_user_id, f"change the lives of user {user_id}")

    async def increment_lives(self, game_id: int, user_id: int, acting_user_id: int = None,
                              session: Optional[AsyncSession] = None) -> MultiplayerGamePlayer:
        """Give a player one more life"""
        async def _increment_lives():
            async with self._get_session_context(session) as s:
                game = await self._require_in_progress(s, game_id)
                await self._require_lives_access(s, game, user_id, acting_user_id)
                player = await self._require_active_player(s, game_id, user_id)

                if not await self._change_lives(s, game, player, 1):
                    raise GameStateError(f"User {user_id} is not an active player of game {game_id}",
                                         "Player not found or eliminated.")

                self._bump_stat(player, 'lives_gained')
                self._log(s, game_id, acting_user_id or user_id, LogActions.INCREMENT_LIVES,
                          {'target_user_id': user_id, 'new_lives': player.lives})
                if game.current_player_user_id == user_id:
                    await self._move_to_next_player(s, game)
                await s.flush()
            return player

        if session is not None:
            return await _increment_lives()
        return await self.execute_with_retry(_increment_lives)

    async def decrement_lives(self, game_id: int, user_id: int, acting_user_id: int = None,
                              session: Optional[AsyncSession] = None) -> MultiplayerGamePlayer:
        """
        Take a life from a player, eliminating them at zero.

        An eliminated player's finish position is one below the players still
        standing. When the elimination leaves a single player, that player
        wins, the game completes and prizes and rating points are computed.

        Raises:
            GameStateError: The game is not in progress or the player is out
            PermissionDenied: Someone other than the player, an admin or the
                moderator is taking the life
        """
        async def _decrement_lives() -> Tuple[MultiplayerGamePlayer, Optional[GameCompleted]]:
            completed = None
            async with self._get_session_context(session) as s:
                game = await self._require_in_progress(s, game_id)
                await self._require_lives_access(s, game, user_id, acting_user_id)
                player = await self._require_active_player(s, game_id, user_id)
                old_lives = player.lives

                if not await self._change_lives(s, game, player, -1):
                    raise GameStateError(f"User {user_id} has no lives left in game {game_id}",
                                         "Player not found or eliminated.")

                self._bump_stat(player, 'lives_lost')
                if acting_user_id is None or acting_user_id == user_id:
                    self._bump_stat(player, 'shots_taken')

                eliminated = player.lives <= 0
                self._log(s, game_id, acting_user_id or user_id, LogActions.DECREMENT_LIVES, {
                    'target_user_id': user_id,
                    'old_lives': old_lives,
                    'new_lives': player.lives,
                    'eliminated': eliminated,
                })

                if eliminated:
                    completed = await self._eliminate(s, game, player)
                if game.status == MultiplayerGameStatus.IN_PROGRESS and game.current_player_user_id == user_id:
                    await self._move_to_next_player(s, game)
                await s.flush()
            return player, completed

        if session is not None:
            player, completed = await _decrement_lives()
        else:
            player, completed = await self.execute_with_retry(_decrement_lives)

        if completed is not None:
            await self.publish(completed, session)
        return player

    async def _eliminate(self, s: AsyncSession, game: MultiplayerGame,
                         player: MultiplayerGamePlayer) -> Optional[GameCompleted]:
        result = await s.execute(
            select(func.count(MultiplayerGamePlayer.id)).where(
                MultiplayerGamePlayer.game_id == game.id,
                MultiplayerGamePlayer.eliminated_at.is_(None)
            )
        )
        active_before = result.scalar()

        player.eliminated_at = utcnow()
        # Provisional place; completion re-ranks everyone by elimination time
        player.finish_position = active_before
        self._log(s, game.id, player.user_id, LogActions.ELIMINATED, {'finish_position': player.finish_position})
        await s.flush()
        logger.info(f"User {player.user_id} eliminated from game {game.id} in position {player.finish_position}")

        if active_before - 1 != 1:
            return None
        return await self._complete(s, game)

    async def _complete(self, s: AsyncSession, game: MultiplayerGame) -> GameCompleted:
        """Crown the last player standing, once"""
        result = await s.execute(
            update(MultiplayerGame)
            .where(MultiplayerGame.id == game.id, MultiplayerGame.status == MultiplayerGameStatus.IN_PROGRESS)
            .values(status=MultiplayerGameStatus.COMPLETED)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Roll back this elimination; the other transaction already crowned a winner
            logger.warning(f"Game {game.id} was completed concurrently")
            raise GameStateError(f"Game {game.id} was completed concurrently", "Game is not in progress.")

        game.status = MultiplayerGameStatus.COMPLETED
        game.completed_at = utcnow()
        game.current_player_user_id = None
        game.next_turn_order = None

        players = await self._get_players(s, game.id)
        winner = next(p for p in players if p.is_active)
        winner.finish_position = 1

        # Rebuys can reshuffle positions handed out on elimination
        eliminated = sorted(
            (p for p in players if not p.is_active),
            key=lambda p: (p.eliminated_at, -(p.finish_position or 0)),
            reverse=True
        )
        for position, player in enumerate(eliminated, start=2):
            player.finish_position = position
        await s.flush()

        await self.calculate_prizes(game.id, session=s)
        await self.calculate_rating_points(game.id, session=s)
        await self._apply_penalties(s, game, players)
        self._log(s, game.id, winner.user_id, LogActions.GAME_COMPLETED, {'winner_user_id': winner.user_id})
        await s.flush()

        logger.info(f"Game {game.id} completed, winner user {winner.user_id}")
        return GameCompleted(
            game_id=game.id,
            league_id=game.league_id,
            winner_user_id=winner.user_id,
            finish_positions=tuple(sorted(
                ((p.user_id, p.finish_position) for p in players), key=lambda entry: entry[1]
            ))
        )

    async def _apply_penalties(self, s: AsyncSession, game: MultiplayerGame,
                               players: List[MultiplayerGamePlayer]):
        """Flag players who played too few rounds and did not use up their rebuys"""
        if not game.enable_penalties or not game.penalty_rounds_threshold:
            return
        min_rounds = math.ceil(game.penalty_rounds_threshold / 2)
        for player in players:
            if (player.rounds_played or 0) < min_rounds and (player.rebuy_count or 0) < (game.rebuy_rounds or 0):
                player.penalty_paid = True

    # ============================================================================
    # Cards
    # ============================================================================

    async def use_card(self, game_id: int, user_id: int, card_type: str, target_user_id: int = None,
                       handicap_action: str = None, acting_user_id: int = None,
                       session: Optional[AsyncSession] = None) -> bool:
        """
        Play one of a player's single-use cards on their turn.

        skip_turn ends the turn, pass_turn hands the turn to a chosen active
        player, hand_shot has no effect on the turn order. The handicap card
        of lower-division players comes with an action: skip_turn ends the
        turn, take_life takes a life from a target holding at least three.

        Returns:
            False if the player has already used this card

        Raises:
            CardError: Unknown card or handicap action, or a missing or
                invalid target
            GameStateError: It is not the player's turn and the acting user
                cannot moderate
        """
        if card_type not in MultiplayerConstants.INITIAL_CARDS + (MultiplayerConstants.HANDICAP_CARD,):
            raise CardError(f"Unknown card type {card_type}", "Invalid card type.")
        if card_type != MultiplayerConstants.HANDICAP_CARD:
            handicap_action = None
        elif handicap_action not in MultiplayerConstants.HANDICAP_ACTIONS:
            raise CardError(f"Unknown handicap action {handicap_action}", "Invalid handicap action.")

        async with self._get_session_context(session) as s:
            game = await self._require_in_progress(s, game_id)
            player = await self._require_active_player(s, game_id, user_id)
            await self._require_turn(s, game, user_id, acting_user_id)

            if not player.has_card(card_type):
                return False

            target = None
            if card_type == "pass_turn" or handicap_action == "take_life":
                target = await self._get_player(s, game_id, target_user_id) if target_user_id else None
                if target is None or not target.is_active:
                    raise CardError(f"Invalid {handicap_action or card_type} target {target_user_id}",
                                    "Target player not found or eliminated.")

            if handicap_action == "take_life":
                min_lives = MultiplayerConstants.HANDICAP_MIN_TARGET_LIVES
                if not await self._change_lives(s, game, target, -1, min_lives_before=min_lives):
                    raise CardError(f"User {target_user_id} has fewer than {min_lives} lives",
                                    f"Target player must have at least {min_lives} lives to take a life.")
                self._bump_stat(target, 'lives_lost')
                self._log(s, game_id, user_id, LogActions.TAKE_LIFE,
                          {'target_user_id': target.user_id, 'new_lives': target.lives})

            cards = dict(player.cards or {})
            cards[card_type] = False
            player.cards = cards
            self._bump_stat(player, 'cards_used')
            log_data = {'card_type': card_type, 'target_user_id': target_user_id}
            if handicap_action:
                log_data['handicap_action'] = handicap_action
            self._log(s, game_id, user_id, LogActions.USE_CARD, log_data)

            if card_type == "pass_turn":
                game.current_player_user_id = target.user_id
                game.next_turn_order = player.turn_order
                self._log(s, game_id, target.user_id, LogActions.TURN, {'received_turn': True})
            elif handicap_action:
                self._log(s, game_id, user_id, LogActions.TURN, {f'handicap_{handicap_action}': True})
                if handicap_action == "skip_turn":
                    await self._move_to_next_player(s, game)
            else:
                self._log(s, game_id, user_id, LogActions.TURN, {'card_used': card_type})
                if card_type == "skip_turn":
                    await self._move_to_next_player(s, game)
            await s.flush()

        logger.debug(f"User {user_id} used {card_type} in game {game_id}")
        return True

    # ============================================================================
    # Late entries and rebuys
    # ============================================================================

    def _current_round(self, game: MultiplayerGame) -> int:
        rounds = {entry.get('round') for entry in (game.rebuy_history or [])}
        return max(1, len(rounds))

    async def _assign_random_turn_order(self, s: AsyncSession, game: MultiplayerGame,
                                        player: MultiplayerGamePlayer):
        """Slot a player into the running turn order at a random place"""
        others = [p for p in await self._get_players(s, game.id, active_only=True) if p.id != player.id]
        if not others:
            player.turn_order = 1
            return

        orders = [p.turn_order for p in others]
        position = self.rng.randint(min(orders), max(orders) + 1)
        for other in others:
            if other.turn_order >= position:
                other.turn_order += 1
        if game.next_turn_order is not None and game.next_turn_order >= position:
            game.next_turn_order += 1
        player.turn_order = position

    async def add_player_during_game(self, game_id: int, user_id: int, fee: int, is_new_player: bool,
                                     acting_user_id: int = None,
                                     session: Optional[AsyncSession] = None) -> MultiplayerGamePlayer:
        """
        Bring a player into a running game, either as a late entry or as a
        rebuy of an eliminated player.

        Everyone else still standing receives the game's lives_per_new_player bonus.

        Raises:
            GameStateError: Rebuys are off, the game is not running, the rebuy
                limit is reached, or the player is in the wrong state
        """
        async with self._get_session_context(session) as s:
            game = await self._get_game(s, game_id)
            if not game.allow_rebuy:
                raise GameStateError(f"Game {game_id} does not allow rebuys",
                                     "This game does not allow players to join during play.")
            if game.status != MultiplayerGameStatus.IN_PROGRESS:
                raise GameStateError(f"Game {game_id} is {game.status.value}",
                                     "Players can only be added during active games.")

            existing = await self._get_player(s, game_id, user_id)
            user = await s.get(User, user_id)
            if user is None:
                raise ValueError(f"User {user_id} not found")
            history = list(game.rebuy_history or [])

            if existing is not None and not is_new_player:
                if (existing.rebuy_count or 0) >= (game.rebuy_rounds or 0):
                    raise GameStateError(f"User {user_id} reached the rebuy limit of game {game_id}",
                                         "Maximum rebuy limit reached for this player.")
                if existing.is_active:
                    raise GameStateError(f"User {user_id} is still active in game {game_id}",
                                         "Player is still active in the game.")

                player = existing
                player.lives = game.initial_lives
                player.eliminated_at = None
                player.finish_position = None
                player.rebuy_count = (player.rebuy_count or 0) + 1
                player.total_paid = (player.total_paid or 0) + fee
                player.last_rebuy_at = utcnow()
                divisions = await self._divisions(s, game, [user_id])
                player.cards = initial_cards(divisions.get(user_id, ""))
                await s.flush()
                await self._assign_random_turn_order(s, game, player)
                history.append(self._history_entry(user, fee, player.rebuy_count, 'rebuy'))
                game.rebuy_history = history
                player.rounds_played = self._current_round(game)
            else:
                if existing is not None:
                    raise GameStateError(f"User {user_id} already plays game {game_id}",
                                         "Player already exists in this game. Mark as rebuy instead.")

                player = MultiplayerGamePlayer(
                    game_id=game_id,
                    user_id=user_id,
                    lives=game.initial_lives,
                    joined_at=utcnow(),
                    total_paid=fee,
                    rebuy_count=0,
                    rounds_played=self._current_round(game),
                    cards=initial_cards(),
                    game_stats=dict(MultiplayerConstants.EMPTY_GAME_STATS)
                )
                s.add(player)
                await s.flush()
                await self._assign_random_turn_order(s, game, player)
                history.append(self._history_entry(user, fee, 0, 'new_player'))
                game.rebuy_history = history

            if game.lives_per_new_player:
                await s.execute(
                    update(MultiplayerGamePlayer)
                    .where(
                        MultiplayerGamePlayer.game_id == game_id,
                        MultiplayerGamePlayer.eliminated_at.is_(None),
                        MultiplayerGamePlayer.user_id != user_id
                    )
                    .values(lives=MultiplayerGamePlayer.lives + game.lives_per_new_player)
                    .execution_options(synchronize_session='fetch')
                )
                self._log(s, game_id, user_id, LogActions.LIVES_ADDED_TO_ALL,
                          {'lives_added': game.lives_per_new_player, 'reason': 'new_player_joined'})

            await self._update_prize_pool(s, game)
            self._log(s, game_id, acting_user_id, LogActions.ADD_NEW_PLAYER if is_new_player else LogActions.REBUY_PLAYER, {
                'target_user_id': user_id,
                'fee': fee,
                'lives_per_new_player': game.lives_per_new_player,
                'is_new_player': is_new_player,
            })
            await s.flush()

        logger.info(f"User {user_id} {'joined' if is_new_player else 'rebought into'} game {game_id} for {fee}")
        return player

    @staticmethod
    def _history_entry(user: User, amount: int, round_number: int, entry_type: str) -> Dict[str, Any]:
        return {
            'user_id': user.id,
            'user_name': user.full_name,
            'amount': amount,
            'timestamp': utcnow().isoformat(),
            'round': round_number,
            'type': entry_type,
        }

    # ============================================================================
    # Prizes and rating points
    # ============================================================================

    async def calculate_prizes(self, game_id: int, session: Optional[AsyncSession] = None) -> Dict[str, int]:
        """
        Split the prize pool and pay first and second place.

        The pool is everything players have paid in, or entrance fee times
        the field when nothing has been recorded.
        """
        async with self._get_session_context(session) as s:
            game = await self._get_game(s, game_id)
            players = await self._get_players(s, game_id)
            if len(players) < MultiplayerConstants.MIN_PLAYERS_TO_START:
                return {}

            total = game.current_prize_pool or (game.entrance_fee * len(players))
            split = PrizeSplit.from_percents(
                game.first_place_percent, game.second_place_percent, game.grand_final_percent
            )
            prize_pool = split.split(total)
            prize_pool['players_count'] = len(players)
            game.prize_pool = prize_pool

            for player in players:
                if player.finish_position == 1:
                    player.prize_amount = prize_pool['first_place']
                elif player.finish_position == 2:
                    player.prize_amount = prize_pool['second_place']
                else:
                    player.prize_amount = 0
            await s.flush()

        logger.debug(f"Prizes for game {game_id}: {prize_pool}")
        return prize_pool

    async def calculate_rating_points(self, game_id: int,
                                      session: Optional[AsyncSession] = None) -> Dict[int, int]:
        """
        Last place earns 1 point and every place above earns one more.
        Players without a finish position earn nothing.
        """
        async with self._get_session_context(session) as s:
            players = await self._get_players(s, game_id)
            positions = [p.finish_position for p in players if p.finish_position]
            max_position = max(positions) if positions else len(players)

            points = {}
            for player in players:
                player.rating_points = max_position - player.finish_position + 1 if player.finish_position else 0
                points[player.user_id] = player.rating_points
            await s.flush()

        return points

    async def finish_game(self, game_id: int, acting_user_id: int = None,
                          session: Optional[AsyncSession] = None) -> Dict[int, int]:
        """
        Apply a completed game's rating points to the league and close it.

        An acting_user_id, when given, must be an admin or the game moderator.

        Raises:
            GameStateError: The game is not completed
            PermissionDenied: The acting user may not finish the game
            RatingTypeMismatch: The league is not a killer pool league
        """
        async with self._get_session_context(session) as s:
            game = await self._get_game(s, game_id)
            if acting_user_id is not None:
                await self._require_moderator(s, game, acting_user_id, "finish the game")
            if game.status != MultiplayerGameStatus.COMPLETED:
                raise GameStateError(f"Game {game_id} is {game.status.value}",
                                     "Game must be completed to finish it.")

            new_ratings = await self.rating_service.apply_rating_points_for_multiplayer_game(game_id, session=s)
            self._log(s, game_id, acting_user_id, LogActions.FINISH_GAME)
            game.status = MultiplayerGameStatus.FINISHED
            await s.flush()

        logger.info(f"Finished game {game_id}, {len(new_ratings)} league ratings updated")
        return new_ratings

    # ============================================================================
    # Read-only projections
    # ============================================================================

    async def _require_completed(self, s: AsyncSession, game_id: int) -> MultiplayerGame:
        game = await self._get_game(s, game_id, lock=False)
        if game.status not in (MultiplayerGameStatus.COMPLETED, MultiplayerGameStatus.FINISHED):
            raise GameStateError(f"Game {game_id} is {game.status.value}",
                                 "Summaries are only available for completed games.")
        return game

    async def get_financial_summary(self, game_id: int) -> Dict[str, Any]:
        async with self.session_factory() as s:
            game = await self._require_completed(s, game_id)
            players = await self._get_players(s, game_id)
            prize_pool = game.prize_pool or {}
            history = game.rebuy_history or []
            penalty_players = sum(1 for p in players if p.penalty_paid)

            return {
                'entrance_fee': game.entrance_fee,
                'total_players': len(players),
                'total_prize_pool': game.current_prize_pool,
                'first_place_prize': prize_pool.get('first_place', 0),
                'second_place_prize': prize_pool.get('second_place', 0),
                'grand_final_fund': prize_pool.get('grand_final_fund', 0),
                'penalty_fee': game.penalty_fee,
                'penalty_players_count': penalty_players,
                'time_fund_total': penalty_players * game.penalty_fee,
                'rebuy_history': history,
                'total_rebuy_amount': sum(entry.get('amount', 0) for entry in history),
            }

    async def get_rating_summary(self, game_id: int) -> Dict[str, Any]:
        async with self.session_factory() as s:
            await self._require_completed(s, game_id)
            result = await s.execute(
                select(MultiplayerGamePlayer)
                .where(MultiplayerGamePlayer.game_id == game_id)
                .options(selectinload(MultiplayerGamePlayer.user))
                .order_by(MultiplayerGamePlayer.finish_position)
            )
            players = list(result.scalars().all())

            return {
                'players': [
                    {
                        'player_id': p.id,
                        'user': {'id': p.user.id, 'firstname': p.user.firstname, 'lastname': p.user.lastname},
                        'finish_position': p.finish_position,
                        'rating_points': p.rating_points,
                        'game_stats': p.game_stats,
                        'rebuy_count': p.rebuy_count,
                        'total_paid': p.total_paid,
                    }
                    for p in players if p.finish_position is not None
                ],
                'total_players': len(players),
            }

    async def get_game(self, game_id: int) -> Optional[MultiplayerGame]:
        async with self.session_factory() as s:
            result = await s.execute(
                select(MultiplayerGame)
                .where(MultiplayerGame.id == game_id)
                .options(selectinload(MultiplayerGame.players))
            )
            return result.scalar_one_or_none()

    async def get_logs(self, game_id: int) -> List[MultiplayerGameLog]:
        async with self.session_factory() as s:
            result = await s.execute(
                select(MultiplayerGameLog)
                .where(MultiplayerGameLog.game_id == game_id)
                .order_by(MultiplayerGameLog.id)
            )
            return list(result.scalars().all())
