from typing import Optional, List
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy import select
from contextlib import asynccontextmanager

from cueleague.config import Config
from cueleague.database.models import (
    Base, User, Club, Team, League, Rating, RatingType,
    OfficialTournament, OfficialStage, OfficialParticipant
)
from cueleague.utils.logger import setup_logger

class Database:
    def __init__(self, database_url: str = None):
        self.logger = setup_logger(__name__)
        self.database_url = database_url
        self.engine = None
        self.async_session = None

    async def initialize(self):
        """Initialize the database connection and create tables"""
        self.logger.info("Initializing database...")

        database_url = self.database_url or Config.get_async_database_url()
        if database_url.startswith('sqlite:///'):
            database_url = database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        self.engine = create_async_engine(
            database_url,
            echo=Config.DEBUG,
            future=True
        )

        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        # Create all tables
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.logger.info("Database initialized successfully")

    @property
    def session_factory(self):
        """Session factory handed to services"""
        return self.async_session

    @asynccontextmanager
    async def get_session(self):
        """Get a database session"""
        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    @asynccontextmanager
    async def transaction(self):
        """
        Create a transaction boundary for atomic operations.

        All operations within the context are committed together on success,
        or rolled back together on failure.

        Usage:
            async with db.transaction() as session:
                await rating_service.add_player(league_id, user_id, session=session)
                await rating_service.confirm_player(league_id, user_id, session=session)

        The caller passes the yielded session to every participating operation.
        Exceptions must propagate out of the context for rollback to occur.
        Events raised inside the transaction wait on the session; publish them
        with `event_bus.publish_deferred(session)` after the block exits.
        """
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def close(self):
        """Close the database connection"""
        if self.engine:
            await self.engine.dispose()
            self.logger.info("Database connection closed")

    # Directory operations
    async def create_club(self, name: str) -> Club:
        async with self.transaction() as session:
            club = Club(name=name)
            session.add(club)
            await session.flush()
            return club

    async def create_user(self, firstname: str, lastname: str,
                          home_club_id: Optional[int] = None, is_admin: bool = False) -> User:
        """Create a new user"""
        async with self.transaction() as session:
            user = User(firstname=firstname, lastname=lastname, home_club_id=home_club_id, is_admin=is_admin)
            session.add(user)
            await session.flush()
            return user

    async def create_team(self, name: str, club_id: Optional[int] = None) -> Team:
        async with self.transaction() as session:
            team = Team(name=name, club_id=club_id)
            session.add(team)
            await session.flush()
            return team

    async def get_user(self, user_id: int) -> Optional[User]:
        async with self.get_session() as session:
            return await session.get(User, user_id)

    # League operations
    async def create_league(self, name: str, rating_type: RatingType = RatingType.ELO,
                            start_rating: int = None, **kwargs) -> League:
        """Create a new league with the given rating configuration"""
        async with self.transaction() as session:
            league = League(
                name=name,
                rating_type=rating_type,
                start_rating=start_rating if start_rating is not None else Config.DEFAULT_START_RATING,
                max_score=kwargs.pop('max_score', Config.DEFAULT_MAX_SCORE),
                invite_days_expire=kwargs.pop('invite_days_expire', Config.DEFAULT_INVITE_DAYS_EXPIRE),
                **kwargs
            )
            session.add(league)
            await session.flush()
            self.logger.info(f"Created league {league.id} '{name}' ({rating_type.value})")
            return league

    async def get_league(self, league_id: int) -> Optional[League]:
        async with self.get_session() as session:
            return await session.get(League, league_id)

    async def get_rating(self, league_id: int, user_id: int) -> Optional[Rating]:
        async with self.get_session() as session:
            result = await session.execute(
                select(Rating).where(Rating.league_id == league_id, Rating.user_id == user_id)
            )
            return result.scalar_one_or_none()

    # Tournament operations
    async def create_tournament(self, name: str) -> OfficialTournament:
        async with self.transaction() as session:
            tournament = OfficialTournament(name=name)
            session.add(tournament)
            await session.flush()
            return tournament

    async def create_stage(self, tournament_id: int, name: str = "Main") -> OfficialStage:
        async with self.transaction() as session:
            stage = OfficialStage(tournament_id=tournament_id, name=name)
            session.add(stage)
            await session.flush()
            return stage

    async def add_participant(self, stage_id: int, user_id: Optional[int] = None,
                              team_id: Optional[int] = None, rating_snapshot: int = 0,
                              seed: Optional[int] = None) -> OfficialParticipant:
        """Register a user or a team in a tournament stage"""
        if (user_id is None) == (team_id is None):
            raise ValueError("A participant is either a user or a team")

        async with self.transaction() as session:
            participant = OfficialParticipant(
                stage_id=stage_id,
                user_id=user_id,
                team_id=team_id,
                rating_snapshot=rating_snapshot,
                seed=seed
            )
            session.add(participant)
            await session.flush()
            return participant

    async def get_participants(self, stage_id: int) -> List[OfficialParticipant]:
        async with self.get_session() as session:
            result = await session.execute(
                select(OfficialParticipant)
                .where(OfficialParticipant.stage_id == stage_id)
                .order_by(OfficialParticipant.id)
            )
            return list(result.scalars().all())
