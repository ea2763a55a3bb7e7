"""
League rating service.

Owns league membership (add, confirm, disable), applies rating strategies
to finished games, and keeps the `position` column a dense 1..N ranking of
active ratings ordered by rating.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cueleague.database.models import (
    League, Rating, RatingType, MatchGame, GameStatus, MultiplayerGame
)
from cueleague.events import PlayerAddedToLeague, PlayerConfirmed
from cueleague.services.base import BaseService
from cueleague.utils.exceptions import RatingTypeMismatch
from cueleague.utils.rating_strategies import RatingStrategyFactory, RatingSnapshot

logger = logging.getLogger(__name__)

class RatingService(BaseService):
    """Service for league standings and rating changes."""

    async def _get_league(self, session: AsyncSession, league_id: int) -> League:
        league = await session.get(League, league_id)
        if league is None:
            raise ValueError(f"League {league_id} not found")
        return league

    async def _get_rating(self, session: AsyncSession, league_id: int, user_id: int,
                          lock: bool = False) -> Optional[Rating]:
        query = select(Rating).where(Rating.league_id == league_id, Rating.user_id == user_id)
        if lock:
            query = query.with_for_update()
        result = await session.execute(query)
        return result.scalar_one_or_none()

    # ============================================================================
    # Membership
    # ============================================================================

    async def add_player(self, league_id: int, user_id: int,
                         session: Optional[AsyncSession] = None) -> bool:
        """
        Add a user to a league at the league's start rating.

        The new rating is active but unconfirmed until an admin confirms it.
        A previously disabled member is reactivated with their old rating.

        Returns:
            False when the user already has an active rating or the league is
            full (counting confirmed members only), True otherwise
        """
        event = None
        async with self._get_session_context(session) as s:
            league = await self._get_league(s, league_id)

            if league.max_players:
                result = await s.execute(
                    select(func.count(Rating.id)).where(
                        Rating.league_id == league_id,
                        Rating.is_active == True,
                        Rating.is_confirmed == True
                    )
                )
                if result.scalar() >= league.max_players:
                    logger.info(f"League {league_id} is full ({league.max_players} players), user {user_id} not added")
                    return False

            rating = await self._get_rating(s, league_id, user_id, lock=True)
            if rating is not None and rating.is_active:
                logger.debug(f"User {user_id} already in league {league_id}")
                return False

            if rating is not None:
                rating.is_active = True
                logger.info(f"Reactivated user {user_id} in league {league_id}")
            else:
                rating = Rating(
                    league_id=league_id,
                    user_id=user_id,
                    rating=league.start_rating,
                    position=0,
                    is_active=True,
                    is_confirmed=False
                )
                s.add(rating)
                logger.info(f"Added user {user_id} to league {league_id} at {league.start_rating}")

            await s.flush()
            await self.rearrange_positions(league_id, session=s)
            event = PlayerAddedToLeague(league_id=league_id, user_id=user_id, rating_id=rating.id)

        await self.publish(event, session)
        return True

    async def confirm_player(self, league_id: int, user_id: int,
                             session: Optional[AsyncSession] = None) -> bool:
        """Confirm a pending member. Returns False if there is nothing to confirm."""
        async with self._get_session_context(session) as s:
            rating = await self._get_rating(s, league_id, user_id, lock=True)
            if rating is None or not rating.is_active or rating.is_confirmed:
                return False
            rating.is_confirmed = True
            await s.flush()

        logger.info(f"Confirmed user {user_id} in league {league_id}")
        await self.publish(PlayerConfirmed(league_id=league_id, user_id=user_id), session)
        return True

    async def disable_player(self, league_id: int, user_id: int,
                             session: Optional[AsyncSession] = None) -> bool:
        """Deactivate a member and close the gap in the standings"""
        async with self._get_session_context(session) as s:
            rating = await self._get_rating(s, league_id, user_id, lock=True)
            if rating is None or not rating.is_active:
                return False
            rating.is_active = False
            await s.flush()
            await self.rearrange_positions(league_id, session=s)

        logger.info(f"Disabled user {user_id} in league {league_id}")
        return True

    async def get_active_rating_for_user_league(self, user_id: int, league_id: int,
                                                session: Optional[AsyncSession] = None) -> Optional[Rating]:
        async with self._get_session_context(session) as s:
            result = await s.execute(
                select(Rating).where(
                    Rating.league_id == league_id,
                    Rating.user_id == user_id,
                    Rating.is_active == True
                )
            )
            return result.scalar_one_or_none()

    async def get_ratings(self, league_id: int, session: Optional[AsyncSession] = None) -> List[Rating]:
        """Active ratings of a league in standings order"""
        async with self._get_session_context(session) as s:
            result = await s.execute(
                select(Rating)
                .where(Rating.league_id == league_id, Rating.is_active == True)
                .options(selectinload(Rating.user))
                .order_by(Rating.position, Rating.id)
            )
            return list(result.scalars().all())

    # ============================================================================
    # Standings
    # ============================================================================

    async def rearrange_positions(self, league_id: int, session: Optional[AsyncSession] = None):
        """
        Recompute dense positions 1..N over the active ratings of a league.

        Order: rating desc, then completed-match wins desc, frame difference
        desc, frames won desc, matches played desc, frames lost asc, and
        finally rating id (join order).
        """
        async with self._get_session_context(session) as s:
            result = await s.execute(
                select(Rating)
                .where(Rating.league_id == league_id, Rating.is_active == True)
                .order_by(Rating.id)
                .with_for_update()
            )
            ratings = list(result.scalars().all())
            if not ratings:
                return

            stats = await self._get_match_stats(s, league_id)

            def sort_key(rating: Rating):
                wins, won, lost, played = stats.get(rating.id, (0, 0, 0, 0))
                return (-rating.rating, -wins, -(won - lost), -won, -played, lost, rating.id)

            for position, rating in enumerate(sorted(ratings, key=sort_key), start=1):
                rating.position = position
            await s.flush()

        logger.debug(f"Rearranged {len(ratings)} positions in league {league_id}")

    async def _get_match_stats(self, session: AsyncSession, league_id: int) -> Dict[int, tuple]:
        """(wins, frames won, frames lost, matches) per rating id over completed matches"""
        stats: Dict[int, list] = {}
        result = await session.execute(
            select(
                MatchGame.first_rating_id, MatchGame.second_rating_id, MatchGame.winner_rating_id,
                MatchGame.first_user_score, MatchGame.second_user_score
            ).where(MatchGame.league_id == league_id, MatchGame.status == GameStatus.COMPLETED)
        )
        for first_id, second_id, winner_id, first_score, second_score in result.all():
            for rating_id, own, other in ((first_id, first_score, second_score),
                                          (second_id, second_score, first_score)):
                entry = stats.setdefault(rating_id, [0, 0, 0, 0])
                entry[0] += 1 if winner_id == rating_id else 0
                entry[1] += own or 0
                entry[2] += other or 0
                entry[3] += 1
        return {rating_id: tuple(entry) for rating_id, entry in stats.items()}

    # ============================================================================
    # Rating changes
    # ============================================================================

    async def update_ratings(self, match_id: int, winner_user_id: int,
                             session: Optional[AsyncSession] = None) -> Dict[int, int]:
        """
        Apply the league's rating strategy to a finished pairwise match.

        Returns:
            Dictionary mapping rating id to the new rating value

        Raises:
            NoMatchingRule: The league's rules do not cover the rating gap
        """
        async with self._get_session_context(session) as s:
            match = await s.get(MatchGame, match_id)
            if match is None:
                raise ValueError(f"Match {match_id} not found")
            league = await self._get_league(s, match.league_id)

            result = await s.execute(
                select(Rating)
                .where(Rating.id.in_([match.first_rating_id, match.second_rating_id]))
                .with_for_update()
            )
            by_id = {rating.id: rating for rating in result.scalars().all()}
            ratings = [by_id[match.first_rating_id], by_id[match.second_rating_id]]

            strategy = RatingStrategyFactory.create(league.rating_type)
            new_ratings = strategy.calculate(
                [RatingSnapshot(r.id, r.user_id, r.rating) for r in ratings],
                winner_user_id,
                league.rating_change_for_winners_rule or [],
                league.rating_change_for_losers_rule or [],
            )

            for rating in ratings:
                rating.rating = new_ratings[rating.id]
            await s.flush()
            await self.rearrange_positions(league.id, session=s)

        logger.info(f"Updated ratings for match {match_id} in league {league.id}: {new_ratings}")
        return new_ratings

    async def apply_rating_points_for_multiplayer_game(self, game_id: int,
                                                       session: Optional[AsyncSession] = None) -> Dict[int, int]:
        """
        Add each player's earned rating points to their league rating.

        Raises:
            RatingTypeMismatch: The game's league is not a killer pool league
        """
        async with self._get_session_context(session) as s:
            result = await s.execute(
                select(MultiplayerGame)
                .where(MultiplayerGame.id == game_id)
                .options(selectinload(MultiplayerGame.players), selectinload(MultiplayerGame.league))
            )
            game = result.scalar_one_or_none()
            if game is None:
                raise ValueError(f"Game {game_id} not found")

            league = game.league
            if league.rating_type != RatingType.KILLER_POOL:
                raise RatingTypeMismatch(RatingType.KILLER_POOL, league.rating_type)

            points = {player.user_id: player.rating_points or 0 for player in game.players}
            result = await s.execute(
                select(Rating)
                .where(Rating.league_id == league.id, Rating.user_id.in_(list(points)))
                .order_by(Rating.id)
                .with_for_update()
            )
            ratings = list(result.scalars().all())

            strategy = RatingStrategyFactory.create(league.rating_type)
            new_ratings = strategy.calculate(
                [RatingSnapshot(r.id, r.user_id, r.rating) for r in ratings], 0, points, []
            )

            for rating in ratings:
                rating.rating = new_ratings[rating.id]
            await s.flush()
            await self.rearrange_positions(league.id, session=s)

        logger.info(f"Applied rating points of game {game_id} to {len(new_ratings)} ratings in league {league.id}")
        return new_ratings
