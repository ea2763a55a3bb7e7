"""
Match Operations Module - pairwise league challenges

Lifecycle of a league match between two ratings:

    send -> PENDING -> accept -> IN_PROGRESS -> send_result -> COMPLETED
                    -> decline -> COMPLETED (forfeit, challenger wins)
                    -> cancel  -> CANCELLED

Completing a match is the only place a pairwise result changes ratings.
The status transition to COMPLETED is a compare-and-swap, so ratings are
updated exactly once per match even when results race.
"""

from datetime import timedelta
from typing import Optional
from contextlib import asynccontextmanager
from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from cueleague.database.models import MatchGame, GameStatus, League, Rating, utcnow
from cueleague.events import MatchCompleted, defer_event
from cueleague.services.rating import RatingService
from cueleague.utils.logger import setup_logger

class MatchGameOperations:
    """Invitation and result workflow for pairwise league matches"""

    def __init__(self, database, rating_service: RatingService = None, event_bus=None):
        self.db = database
        self.event_bus = event_bus
        self.rating_service = rating_service or RatingService(database.session_factory, event_bus)
        self.logger = setup_logger(__name__)

    @asynccontextmanager
    async def _get_session_context(self, session: Optional[AsyncSession] = None):
        """
        Provides a session context. Uses the provided session if available,
        otherwise opens a transaction that commits on exit.
        """
        if session:
            yield session
        else:
            async with self.db.transaction() as new_session:
                yield new_session

    async def _is_available(self, session: AsyncSession, rating: Rating, league_id: int) -> bool:
        """True when the rating has no open match in the league"""
        result = await session.execute(
            select(MatchGame.id).where(
                or_(MatchGame.first_rating_id == rating.id, MatchGame.second_rating_id == rating.id),
                MatchGame.league_id == league_id,
                MatchGame.status.in_(GameStatus.not_allowed_to_invite())
            ).limit(1)
        )
        return result.first() is None

    async def _has_access(self, session: AsyncSession, user_id: int, match: MatchGame) -> bool:
        """The user plays in the match with an active rating and the invitation is still open"""
        rating = await self.rating_service.get_active_rating_for_user_league(
            user_id, match.league_id, session=session
        )
        if rating is None or rating.id not in (match.first_rating_id, match.second_rating_id):
            return False
        if match.status == GameStatus.PENDING and match.invitation_available_till is not None:
            return utcnow() <= match.invitation_available_till
        return True

    async def send(self, league_id: int, sender_user_id: int, receiver_user_id: int,
                   details: str = None, session: Optional[AsyncSession] = None) -> Optional[MatchGame]:
        """
        Challenge another league member.

        Returns:
            The new pending match, or None when either player is not an active
            member, both are the same player, or either has an open match
        """
        async with self._get_session_context(session) as s:
            league = await s.get(League, league_id)
            if league is None:
                raise ValueError(f"League {league_id} not found")

            sender = await self.rating_service.get_active_rating_for_user_league(sender_user_id, league_id, session=s)
            receiver = await self.rating_service.get_active_rating_for_user_league(receiver_user_id, league_id, session=s)

            if sender is None or receiver is None or sender.id == receiver.id:
                return None
            if not await self._is_available(s, receiver, league_id) or not await self._is_available(s, sender, league_id):
                return None

            now = utcnow()
            match = MatchGame(
                league_id=league_id,
                first_rating_id=sender.id,
                second_rating_id=receiver.id,
                first_rating_before_game=sender.rating,
                second_rating_before_game=receiver.rating,
                details=details,
                status=GameStatus.PENDING,
                invitation_sent_at=now,
                invitation_available_till=now + timedelta(days=league.invite_days_expire or 0),
            )
            s.add(match)
            await s.flush()

        self.logger.info(f"User {sender_user_id} challenged user {receiver_user_id} in league {league_id} (match {match.id})")
        return match

    async def _load_for_response(self, s: AsyncSession, user_id: int, match_id: int) -> Optional[MatchGame]:
        """Load a pending match the user may answer as the challenged player"""
        match = await s.get(MatchGame, match_id, with_for_update=True)
        if match is None or match.status != GameStatus.PENDING:
            return None
        first_rating = await s.get(Rating, match.first_rating_id)
        if first_rating.user_id == user_id:
            return None
        if not await self._has_access(s, user_id, match):
            return None
        return match

    async def accept(self, user_id: int, match_id: int, session: Optional[AsyncSession] = None) -> bool:
        async with self._get_session_context(session) as s:
            match = await self._load_for_response(s, user_id, match_id)
            if match is None:
                return False
            match.status = GameStatus.IN_PROGRESS
            match.invitation_accepted_at = utcnow()
            await s.flush()

        self.logger.info(f"Match {match_id} accepted by user {user_id}")
        return True

    async def decline(self, user_id: int, match_id: int, session: Optional[AsyncSession] = None) -> bool:
        """Decline an invitation. The challenger wins by forfeit at the league's max score."""
        async with self._get_session_context(session) as s:
            match = await self._load_for_response(s, user_id, match_id)
            if match is None:
                return False
            league = await s.get(League, match.league_id)
            first_rating = await s.get(Rating, match.first_rating_id)
            second_rating = await s.get(Rating, match.second_rating_id)

            event = await self._complete(
                s, match, league,
                winner=first_rating, loser=second_rating,
                first_score=league.max_score, second_score=0
            )
            if event is None:
                return False

        self.logger.info(f"Match {match_id} declined by user {user_id}, forfeit to user {first_rating.user_id}")
        await self._publish(event, session)
        return True

    async def send_result(self, user_id: int, match_id: int, first_score: int, second_score: int,
                          session: Optional[AsyncSession] = None) -> bool:
        """
        Record the score of an accepted match and apply rating changes.

        Returns:
            False when the match is not in progress, the scores are level once
            capped at the league max score, or the user does not play in the match
        """
        async with self._get_session_context(session) as s:
            match = await s.get(MatchGame, match_id, with_for_update=True)
            if match is None or match.status != GameStatus.IN_PROGRESS:
                return False
            if not await self._has_access(s, user_id, match):
                return False

            league = await s.get(League, match.league_id)
            if league.max_score:
                first_score = min(first_score, league.max_score)
                second_score = min(second_score, league.max_score)
            if first_score == second_score:
                return False

            first_rating = await s.get(Rating, match.first_rating_id)
            second_rating = await s.get(Rating, match.second_rating_id)
            if first_score > second_score:
                winner, loser = first_rating, second_rating
            else:
                winner, loser = second_rating, first_rating

            event = await self._complete(
                s, match, league, winner=winner, loser=loser,
                first_score=first_score, second_score=second_score
            )
            if event is None:
                return False

        self.logger.info(f"Result {first_score}:{second_score} recorded for match {match_id}")
        await self._publish(event, session)
        return True

    async def _complete(self, s: AsyncSession, match: MatchGame, league: League,
                        winner: Rating, loser: Rating,
                        first_score: int, second_score: int) -> Optional[MatchCompleted]:
        """Move the match to COMPLETED once, then apply and store the rating changes"""
        from_status = match.status
        result = await s.execute(
            update(MatchGame)
            .where(MatchGame.id == match.id, MatchGame.status == from_status)
            .values(status=GameStatus.COMPLETED)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.logger.warning(f"Match {match.id} left {from_status.value} concurrently, result ignored")
            return None

        winner_before = winner.rating
        loser_before = loser.rating
        new_ratings = await self.rating_service.update_ratings(match.id, winner.user_id, session=s)

        match.status = GameStatus.COMPLETED
        match.first_user_score = first_score
        match.second_user_score = second_score
        match.finished_at = utcnow()
        match.winner_rating_id = winner.id
        match.loser_rating_id = loser.id
        match.rating_change_for_winner = new_ratings[winner.id] - winner_before
        match.rating_change_for_loser = new_ratings[loser.id] - loser_before
        await s.flush()

        # Standings tie-breaks read completed scores
        await self.rating_service.rearrange_positions(league.id, session=s)

        return MatchCompleted(
            league_id=league.id,
            match_id=match.id,
            winner_user_id=winner.user_id,
            rating_changes=dict(new_ratings)
        )

    async def cancel(self, match_id: int, session: Optional[AsyncSession] = None) -> bool:
        """Withdraw an unanswered invitation"""
        async with self._get_session_context(session) as s:
            result = await s.execute(
                update(MatchGame)
                .where(MatchGame.id == match_id, MatchGame.status == GameStatus.PENDING)
                .values(status=GameStatus.CANCELLED)
                .execution_options(synchronize_session=False)
            )
            cancelled = result.rowcount == 1

        if cancelled:
            self.logger.info(f"Match {match_id} cancelled")
        return cancelled

    async def get_match(self, match_id: int) -> Optional[MatchGame]:
        async with self.db.get_session() as session:
            return await session.get(MatchGame, match_id)

    async def _publish(self, event, session: Optional[AsyncSession] = None):
        if session is not None:
            defer_event(session, event)
        elif self.event_bus is not None:
            await self.event_bus.publish(event)
