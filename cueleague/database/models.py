from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text, JSON,
    ForeignKey, Enum as SQLEnum, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
from datetime import datetime, timezone
from enum import Enum
from typing import List

from cueleague.constants import SeedingConstants

Base = declarative_base()

def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

class RatingType(Enum):
    ELO = "elo"
    KILLER_POOL = "killer_pool"

class GameStatus(Enum):
    """Status of a pairwise league match"""
    PENDING = "pending"                      # Invitation sent
    IN_PROGRESS = "in_progress"              # Invitation accepted
    MUST_BE_CONFIRMED = "must_be_confirmed"  # Result submitted, awaiting confirmation
    COMPLETED = "completed"                  # Result recorded, ratings applied
    CANCELLED = "cancelled"

    @classmethod
    def not_allowed_to_invite(cls) -> List['GameStatus']:
        """Statuses that block a rating from receiving a new invitation"""
        return [cls.PENDING, cls.IN_PROGRESS, cls.MUST_BE_CONFIRMED]

class MultiplayerGameStatus(Enum):
    REGISTRATION = "registration"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FINISHED = "finished"      # Completed and rating points applied to the league
    CANCELLED = "cancelled"

class SeedingStatus(Enum):
    UNSEEDED = "unseeded"
    SEEDED = "seeded"
    BRACKET_GENERATED = "bracket_generated"

class OfficialMatchStatus(Enum):
    PENDING = "pending"
    WALKOVER = "walkover"      # Decided by a BYE
    COMPLETED = "completed"

# ============================================================================
# Core entities
# ============================================================================

class Club(Base):
    __tablename__ = 'clubs'

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)

    def __repr__(self):
        return f"<Club(id={self.id}, name='{self.name}')>"

class User(Base):
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True)
    firstname = Column(String(100), nullable=False)
    lastname = Column(String(100), nullable=False)
    home_club_id = Column(Integer, ForeignKey('clubs.id'), nullable=True)
    is_admin = Column(Boolean, default=False)

    created_at = Column(DateTime, default=func.now())

    home_club = relationship("Club")

    @property
    def full_name(self) -> str:
        return f"{self.firstname} {self.lastname}"

    def __repr__(self):
        return f"<User(id={self.id}, name='{self.full_name}')>"

class Team(Base):
    __tablename__ = 'teams'

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    club_id = Column(Integer, ForeignKey('clubs.id'), nullable=True)

    club = relationship("Club")

    def __repr__(self):
        return f"<Team(id={self.id}, name='{self.name}')>"

# ============================================================================
# Leagues and ratings
# ============================================================================

class League(Base):
    __tablename__ = 'leagues'

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)

    # Rating configuration
    rating_type = Column(SQLEnum(RatingType), nullable=False, default=RatingType.ELO)
    start_rating = Column(Integer, nullable=False, default=1000)
    rating_change_for_winners_rule = Column(JSON, nullable=False, default=list)
    rating_change_for_losers_rule = Column(JSON, nullable=False, default=list)

    # Match configuration
    max_players = Column(Integer, default=0)  # 0 = unlimited
    max_score = Column(Integer, default=7)
    invite_days_expire = Column(Integer, default=2)

    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)

    ratings = relationship("Rating", back_populates="league", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<League(id={self.id}, name='{self.name}', type={self.rating_type.value})>"

class Rating(Base):
    __tablename__ = 'ratings'

    id = Column(Integer, primary_key=True)
    league_id = Column(Integer, ForeignKey('leagues.id'), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    rating = Column(Integer, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True)
    is_confirmed = Column(Boolean, default=False)

    created_at = Column(DateTime, default=func.now())

    league = relationship("League", back_populates="ratings")
    user = relationship("User")

    __table_args__ = (UniqueConstraint('league_id', 'user_id', name='unique_user_per_league'),)

    def __repr__(self):
        return f"<Rating(id={self.id}, user_id={self.user_id}, rating={self.rating}, position={self.position})>"

class MatchGame(Base):
    """Pairwise league match between two ratings."""
    __tablename__ = 'match_games'

    id = Column(Integer, primary_key=True)
    league_id = Column(Integer, ForeignKey('leagues.id'), nullable=False, index=True)
    first_rating_id = Column(Integer, ForeignKey('ratings.id'), nullable=False)
    second_rating_id = Column(Integer, ForeignKey('ratings.id'), nullable=False)

    status = Column(SQLEnum(GameStatus), nullable=False, default=GameStatus.PENDING)

    # Scores
    first_user_score = Column(Integer, default=0)
    second_user_score = Column(Integer, default=0)

    # Result
    winner_rating_id = Column(Integer, ForeignKey('ratings.id'), nullable=True)
    loser_rating_id = Column(Integer, ForeignKey('ratings.id'), nullable=True)
    rating_change_for_winner = Column(Integer, nullable=True)
    rating_change_for_loser = Column(Integer, nullable=True)

    # Pre-match snapshots
    first_rating_before_game = Column(Integer, nullable=False)
    second_rating_before_game = Column(Integer, nullable=False)

    details = Column(Text)

    # Timing
    invitation_sent_at = Column(DateTime, default=utcnow)
    invitation_available_till = Column(DateTime, nullable=True)
    invitation_accepted_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)

    league = relationship("League")
    first_rating = relationship("Rating", foreign_keys=[first_rating_id])
    second_rating = relationship("Rating", foreign_keys=[second_rating_id])

    def __repr__(self):
        return f"<MatchGame(id={self.id}, status={self.status.value})>"

# ============================================================================
# Official tournaments: stages, participants, bracket matches
# ============================================================================

class OfficialTournament(Base):
    __tablename__ = 'official_tournaments'

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    created_at = Column(DateTime, default=func.now())

    stages = relationship("OfficialStage", back_populates="tournament", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<OfficialTournament(id={self.id}, name='{self.name}')>"

class OfficialStage(Base):
    __tablename__ = 'official_stages'

    id = Column(Integer, primary_key=True)
    tournament_id = Column(Integer, ForeignKey('official_tournaments.id'), nullable=False, index=True)
    name = Column(String(200), nullable=False, default="Main")
    seeding_status = Column(SQLEnum(SeedingStatus), nullable=False, default=SeedingStatus.UNSEEDED)
    bracket_size = Column(Integer, nullable=True)

    tournament = relationship("OfficialTournament", back_populates="stages")
    participants = relationship("OfficialParticipant", back_populates="stage", cascade="all, delete-orphan")
    matches = relationship("OfficialMatch", back_populates="stage", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<OfficialStage(id={self.id}, status={self.seeding_status.value})>"

class OfficialParticipant(Base):
    __tablename__ = 'official_participants'

    id = Column(Integer, primary_key=True)
    stage_id = Column(Integer, ForeignKey('official_stages.id'), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    team_id = Column(Integer, ForeignKey('teams.id'), nullable=True)

    rating_snapshot = Column(Integer, default=0)
    seed = Column(Integer, nullable=True)
    bracket_position = Column(Integer, nullable=True)
    finish_position = Column(Integer, nullable=True)

    stage = relationship("OfficialStage", back_populates="participants")
    user = relationship("User")
    team = relationship("Team")

    @property
    def club_key(self) -> str:
        """Affiliation bucket used to keep same-club participants apart"""
        if self.team_id:
            club_id = self.team.club_id if self.team else None
            return f"team_{club_id if club_id is not None else SeedingConstants.NO_CLUB_KEY}"
        home_club_id = self.user.home_club_id if self.user else None
        return f"user_{home_club_id if home_club_id is not None else SeedingConstants.NO_CLUB_KEY}"

    def __repr__(self):
        return f"<OfficialParticipant(id={self.id}, seed={self.seed}, rating={self.rating_snapshot})>"

class OfficialMatch(Base):
    """Single-elimination bracket match."""
    __tablename__ = 'official_matches'

    id = Column(Integer, primary_key=True)
    stage_id = Column(Integer, ForeignKey('official_stages.id'), nullable=False, index=True)

    round = Column(Integer, nullable=False)
    match_number = Column(Integer, nullable=False)
    position_in_round = Column(Integer, nullable=False)
    next_match_number = Column(Integer, nullable=True)  # Null for the final

    participant1_id = Column(Integer, ForeignKey('official_participants.id'), nullable=True)
    participant2_id = Column(Integer, ForeignKey('official_participants.id'), nullable=True)
    winner_id = Column(Integer, ForeignKey('official_participants.id'), nullable=True)

    status = Column(SQLEnum(OfficialMatchStatus), nullable=False, default=OfficialMatchStatus.PENDING)

    stage = relationship("OfficialStage", back_populates="matches")

    __table_args__ = (UniqueConstraint('stage_id', 'match_number', name='unique_match_number_per_stage'),)

    @property
    def is_final(self) -> bool:
        return self.next_match_number is None

    def __repr__(self):
        return f"<OfficialMatch(number={self.match_number}, round={self.round}, status={self.status.value})>"

# ============================================================================
# Multiplayer (last man standing) games
# ============================================================================

class MultiplayerGame(Base):
    __tablename__ = 'multiplayer_games'

    id = Column(Integer, primary_key=True)
    league_id = Column(Integer, ForeignKey('leagues.id'), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    status = Column(SQLEnum(MultiplayerGameStatus), nullable=False, default=MultiplayerGameStatus.REGISTRATION)

    # Registration
    max_players = Column(Integer, nullable=True)
    registration_ends_at = Column(DateTime, nullable=True)

    # Progress
    initial_lives = Column(Integer, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    current_player_user_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    next_turn_order = Column(Integer, nullable=True)
    moderator_user_id = Column(Integer, ForeignKey('users.id'), nullable=True)

    # Finances
    entrance_fee = Column(Integer, nullable=False, default=300)
    first_place_percent = Column(Integer, nullable=False, default=60)
    second_place_percent = Column(Integer, nullable=False, default=20)
    grand_final_percent = Column(Integer, nullable=False, default=20)
    penalty_fee = Column(Integer, nullable=False, default=50)
    prize_pool = Column(JSON, nullable=True)
    current_prize_pool = Column(Integer, default=0)

    # Rebuys and penalties
    allow_rebuy = Column(Boolean, default=False)
    rebuy_rounds = Column(Integer, nullable=True)
    lives_per_new_player = Column(Integer, default=0)
    enable_penalties = Column(Boolean, default=False)
    penalty_rounds_threshold = Column(Integer, nullable=True)
    rebuy_history = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=func.now())
    version = Column(Integer, nullable=False, default=1)

    league = relationship("League")
    players = relationship("MultiplayerGamePlayer", back_populates="game", cascade="all, delete-orphan")
    logs = relationship("MultiplayerGameLog", back_populates="game", cascade="all, delete-orphan")

    # ORM flushes of a stale game row raise StaleDataError
    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<MultiplayerGame(id={self.id}, name='{self.name}', status={self.status.value})>"

class MultiplayerGamePlayer(Base):
    __tablename__ = 'multiplayer_game_players'

    id = Column(Integer, primary_key=True)
    game_id = Column(Integer, ForeignKey('multiplayer_games.id'), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)

    lives = Column(Integer, default=0)
    turn_order = Column(Integer, nullable=True)
    cards = Column(JSON, nullable=True)
    game_stats = Column(JSON, nullable=True)

    joined_at = Column(DateTime, default=utcnow)
    eliminated_at = Column(DateTime, nullable=True)
    finish_position = Column(Integer, nullable=True)

    rating_points = Column(Integer, default=0)
    prize_amount = Column(Integer, default=0)
    penalty_paid = Column(Boolean, default=False)

    rebuy_count = Column(Integer, default=0)
    rounds_played = Column(Integer, default=0)
    total_paid = Column(Integer, default=0)
    last_rebuy_at = Column(DateTime, nullable=True)

    game = relationship("MultiplayerGame", back_populates="players")
    user = relationship("User")

    __table_args__ = (
        UniqueConstraint('game_id', 'user_id', name='unique_user_per_game'),
        CheckConstraint('lives >= 0', name='non_negative_lives_check'),
    )

    @property
    def is_active(self) -> bool:
        return self.eliminated_at is None

    def has_card(self, card_type: str) -> bool:
        return bool((self.cards or {}).get(card_type))

    def __repr__(self):
        return f"<MultiplayerGamePlayer(user_id={self.user_id}, lives={self.lives}, finish={self.finish_position})>"

class MultiplayerGameLog(Base):
    __tablename__ = 'multiplayer_game_logs'

    id = Column(Integer, primary_key=True)
    game_id = Column(Integer, ForeignKey('multiplayer_games.id'), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    action_type = Column(String(50), nullable=False)
    action_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    game = relationship("MultiplayerGame", back_populates="logs")

    def __repr__(self):
        return f"<MultiplayerGameLog(game_id={self.game_id}, action='{self.action_type}')>"
