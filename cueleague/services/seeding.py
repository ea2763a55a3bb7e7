"""
Seeding service for official tournament stages.

Assigns seeds 1..N to the participants of a stage using one of four methods:

- Manual: an explicit participant -> seed mapping, applied verbatim
- Random: uniform shuffle, or round-robin across clubs with local shuffling
  so that players from the same club are spread through the draw
- Rating: snake distribution of rating ranks across virtual groups
- Previous results: finishing positions in an earlier tournament

Every method writes all seeds in one transaction and moves the stage to
`seeded`. Stages whose bracket has been generated are locked.
"""

import logging
import random
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cueleague.config import Config
from cueleague.constants import SeedingConstants
from cueleague.database.models import (
    OfficialParticipant, OfficialStage, SeedingStatus, Team
)
from cueleague.services.base import BaseService
from cueleague.utils.exceptions import DuplicateSeed, NonSequentialSeeds, SeedingLocked

logger = logging.getLogger(__name__)

# ============================================================================
# Pure distribution helpers
# ============================================================================

def snake_distribute(items: Sequence, group_count: int) -> List[List]:
    """
    Zigzag items across groups: 0, 1, ..., g-1, g-1, ..., 1, 0, 0, 1, ...

    With items in rank order this balances the rank sum of every group.
    """
    if group_count < 1:
        raise ValueError(f"group_count must be at least 1, got {group_count}")

    groups: List[List] = [[] for _ in range(group_count)]
    direction = 1
    current = 0
    for item in items:
        groups[current].append(item)
        current += direction
        if current >= group_count:
            current = group_count - 1
            direction = -1
        elif current < 0:
            current = 0
            direction = 1
    return groups

def interleave(groups: Iterable[Sequence]) -> List:
    """Take one item from each group per round, in group order"""
    groups = [list(group) for group in groups]
    longest = max((len(group) for group in groups), default=0)
    flattened = []
    for round_index in range(longest):
        for group in groups:
            if round_index < len(group):
                flattened.append(group[round_index])
    return flattened

def distribute_by_club(items: Sequence, key: Callable[[Any], str],
                       rng: random.Random = None, chunk_size: int = None) -> List:
    """
    Spread same-club items apart, then shuffle locally.

    Items are bucketed by club key (buckets keep first-seen order), dealt
    round-robin across buckets, and the dealt order is shuffled only within
    consecutive chunks.
    """
    rng = rng or random.Random()
    chunk_size = chunk_size or Config.SEED_SHUFFLE_CHUNK

    buckets: Dict[str, List] = {}
    for item in items:
        buckets.setdefault(key(item), []).append(item)

    dealt = interleave(buckets.values())

    shuffled = []
    for start in range(0, len(dealt), chunk_size):
        chunk = dealt[start:start + chunk_size]
        rng.shuffle(chunk)
        shuffled.extend(chunk)
    return shuffled

def group_name(index: int) -> str:
    return f"{SeedingConstants.GROUP_NAME_PREFIX}{chr(ord('A') + index)}"

# ============================================================================
# Service
# ============================================================================

class SeedingService(BaseService):
    """Seeds tournament stages and previews group splits."""

    def __init__(self, session_factory, event_bus=None, rng: random.Random = None):
        super().__init__(session_factory, event_bus)
        self.rng = rng or random.Random()

    async def _load_stage(self, session: AsyncSession, stage_id: int) -> OfficialStage:
        result = await session.execute(
            select(OfficialStage).where(OfficialStage.id == stage_id).with_for_update()
        )
        stage = result.scalar_one_or_none()
        if stage is None:
            raise ValueError(f"Stage {stage_id} not found")
        if stage.seeding_status == SeedingStatus.BRACKET_GENERATED:
            raise SeedingLocked(stage_id)
        return stage

    async def _load_participants(self, session: AsyncSession, stage_id: int) -> List[OfficialParticipant]:
        result = await session.execute(
            select(OfficialParticipant)
            .where(OfficialParticipant.stage_id == stage_id)
            .options(
                selectinload(OfficialParticipant.user),
                selectinload(OfficialParticipant.team).selectinload(Team.club),
            )
            .order_by(OfficialParticipant.id)
        )
        return list(result.scalars().all())

    @staticmethod
    def _assign_sequential(ordered: Sequence[OfficialParticipant]):
        for seed, participant in enumerate(ordered, start=1):
            participant.seed = seed

    async def apply_manual(self, seed_map: Dict[int, int],
                           session: Optional[AsyncSession] = None) -> List[OfficialParticipant]:
        """
        Apply an explicit participant id -> seed mapping verbatim.

        The mapping is not validated here; `validate` runs before bracket
        generation. Unknown participant ids abort the whole mapping.
        """
        if not seed_map:
            return []

        async with self._get_session_context(session) as s:
            result = await s.execute(
                select(OfficialParticipant)
                .where(OfficialParticipant.id.in_(list(seed_map)))
                .with_for_update()
            )
            participants = list(result.scalars().all())
            missing = set(seed_map) - {p.id for p in participants}
            if missing:
                raise ValueError(f"Unknown participants: {sorted(missing)}")

            for stage_id in sorted({p.stage_id for p in participants}):
                stage = await self._load_stage(s, stage_id)
                stage.seeding_status = SeedingStatus.SEEDED

            for participant in participants:
                participant.seed = seed_map[participant.id]
            await s.flush()

        logger.info(f"Applied manual seeding to {len(participants)} participants")
        return sorted(participants, key=lambda p: (p.seed is None, p.seed))

    async def apply_random(self, stage_id: int, avoid_same_club: bool = True,
                           session: Optional[AsyncSession] = None) -> List[OfficialParticipant]:
        """Random seeding, optionally keeping same-club participants apart"""
        async with self._get_session_context(session) as s:
            stage = await self._load_stage(s, stage_id)
            participants = await self._load_participants(s, stage_id)

            if avoid_same_club:
                ordered = distribute_by_club(participants, lambda p: p.club_key, self.rng)
            else:
                ordered = list(participants)
                self.rng.shuffle(ordered)

            self._assign_sequential(ordered)
            stage.seeding_status = SeedingStatus.SEEDED
            await s.flush()

        logger.info(
            f"Applied random seeding to stage {stage_id} "
            f"({len(ordered)} participants, club separation {'on' if avoid_same_club else 'off'})"
        )
        return ordered

    async def apply_by_rating(self, stage_id: int, group_count: int = None,
                              session: Optional[AsyncSession] = None) -> List[OfficialParticipant]:
        """
        Rating-based snake seeding.

        Participants are ranked by rating snapshot (highest first), snaked
        across `group_count` groups and read back one per group per round:

            Group 1: 1, 8, 9, 16
            Group 2: 2, 7, 10, 15
            Group 3: 3, 6, 11, 14
            Group 4: 4, 5, 12, 13
        """
        group_count = group_count or Config.DEFAULT_GROUP_COUNT

        async with self._get_session_context(session) as s:
            stage = await self._load_stage(s, stage_id)
            participants = await self._load_participants(s, stage_id)

            ranked = sorted(participants, key=lambda p: -(p.rating_snapshot or 0))
            ordered = interleave(snake_distribute(ranked, group_count))

            self._assign_sequential(ordered)
            stage.seeding_status = SeedingStatus.SEEDED
            await s.flush()

        logger.info(f"Applied rating seeding to stage {stage_id} ({len(ordered)} participants, {group_count} groups)")
        return ordered

    async def apply_by_previous_results(self, stage_id: int, previous_tournament_id: int,
                                        session: Optional[AsyncSession] = None) -> List[OfficialParticipant]:
        """
        Seed by results in an earlier tournament.

        A participant's previous rank is their best finish position across
        that tournament's stages, falling back to their seed there. Players
        who did not take part get the sentinel rank. Ties go to the higher
        rating snapshot.
        """
        sentinel = Config.PREVIOUS_RESULT_SENTINEL

        async with self._get_session_context(session) as s:
            stage = await self._load_stage(s, stage_id)
            participants = await self._load_participants(s, stage_id)

            user_ids = [p.user_id for p in participants if p.user_id is not None]
            previous_ranks: Dict[int, int] = {}
            if user_ids:
                result = await s.execute(
                    select(OfficialParticipant.user_id, OfficialParticipant.finish_position, OfficialParticipant.seed)
                    .join(OfficialStage, OfficialParticipant.stage_id == OfficialStage.id)
                    .where(
                        OfficialStage.tournament_id == previous_tournament_id,
                        OfficialParticipant.user_id.in_(user_ids)
                    )
                )
                for user_id, finish_position, seed in result.all():
                    rank = finish_position if finish_position is not None else seed
                    if rank is None:
                        continue
                    previous_ranks[user_id] = min(rank, previous_ranks.get(user_id, rank))

            ordered = sorted(
                participants,
                key=lambda p: (previous_ranks.get(p.user_id, sentinel), -(p.rating_snapshot or 0))
            )

            self._assign_sequential(ordered)
            stage.seeding_status = SeedingStatus.SEEDED
            await s.flush()

        logger.info(
            f"Applied previous-results seeding to stage {stage_id} from tournament {previous_tournament_id} "
            f"({len(previous_ranks)} of {len(ordered)} participants ranked)"
        )
        return ordered

    @staticmethod
    def preview_groups(participants: Sequence, group_count: int = None) -> List[Dict[str, Any]]:
        """Split seeded participants into named snake groups without saving anything"""
        group_count = group_count or Config.DEFAULT_GROUP_COUNT
        by_seed = sorted(participants, key=lambda p: (p.seed is None, p.seed or 0))
        return [
            {'name': group_name(index), 'participants': members}
            for index, members in enumerate(snake_distribute(by_seed, group_count))
        ]

    @staticmethod
    def validate(participants: Sequence):
        """
        Check that seeds are exactly 1..N.

        Raises:
            DuplicateSeed: A seed value appears more than once
            NonSequentialSeeds: Seeds are missing or have gaps
        """
        seeds = [p.seed for p in participants]
        present = [seed for seed in seeds if seed is not None]

        duplicates = {seed for seed in present if present.count(seed) > 1}
        if duplicates:
            raise DuplicateSeed(duplicates)

        if len(present) != len(seeds) or sorted(present) != list(range(1, len(seeds) + 1)):
            raise NonSequentialSeeds(present, len(seeds))
