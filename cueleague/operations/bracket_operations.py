"""
Bracket Operations Module - single-elimination draws for official stages

Turns a seeded stage into a full single-elimination bracket:

- the bracket is sized to the next power of two above the field
- seeds are placed so the top seeds meet as late as possible
- every match of every round is created up front and linked to the match
  its winner advances to
- first-round byes are resolved immediately as walkovers

Once generated, the stage's seeding is locked.
"""

from typing import List, Optional
from contextlib import asynccontextmanager
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cueleague.config import Config
from cueleague.constants import SeedingConstants
from cueleague.database.models import (
    OfficialStage, OfficialParticipant, OfficialMatch, OfficialMatchStatus, SeedingStatus
)
from cueleague.services.seeding import SeedingService
from cueleague.utils.bracket import next_power_of_two, reorder_for_bracket
from cueleague.utils.exceptions import GameStateError, SeedingLocked
from cueleague.utils.logger import setup_logger

class BracketOperations:
    """Generation and progression of single-elimination brackets"""

    def __init__(self, database):
        self.db = database
        self.logger = setup_logger(__name__)

    @asynccontextmanager
    async def _get_session_context(self, session: Optional[AsyncSession] = None):
        if session:
            yield session
        else:
            async with self.db.transaction() as new_session:
                yield new_session

    @staticmethod
    def _round_offsets(bracket_size: int) -> List[int]:
        """Match number offset of each round; offsets[r - 1] precedes round r"""
        offsets = [0]
        matches_in_round = bracket_size // 2
        while matches_in_round > 1:
            offsets.append(offsets[-1] + matches_in_round)
            matches_in_round //= 2
        return offsets

    async def generate_bracket(self, stage_id: int,
                               session: Optional[AsyncSession] = None) -> List[OfficialMatch]:
        """
        Generate the bracket of a seeded stage.

        Raises:
            SeedingLocked: The stage already has a bracket
            DuplicateSeed, NonSequentialSeeds: Seeds are not exactly 1..N
            GameStateError: The stage has too few or too many participants
        """
        async with self._get_session_context(session) as s:
            result = await s.execute(
                select(OfficialStage).where(OfficialStage.id == stage_id).with_for_update()
            )
            stage = result.scalar_one_or_none()
            if stage is None:
                raise ValueError(f"Stage {stage_id} not found")
            if stage.seeding_status == SeedingStatus.BRACKET_GENERATED:
                raise SeedingLocked(stage_id)

            result = await s.execute(
                select(OfficialParticipant)
                .where(OfficialParticipant.stage_id == stage_id)
                .order_by(OfficialParticipant.id)
            )
            participants = list(result.scalars().all())

            count = len(participants)
            if count < SeedingConstants.MIN_BRACKET_PARTICIPANTS:
                raise GameStateError(
                    f"Stage {stage_id} has {count} participants",
                    f"A bracket needs at least {SeedingConstants.MIN_BRACKET_PARTICIPANTS} participants."
                )
            if count > Config.MAX_BRACKET_PARTICIPANTS:
                raise GameStateError(
                    f"Stage {stage_id} has {count} participants",
                    f"A bracket holds at most {Config.MAX_BRACKET_PARTICIPANTS} participants."
                )

            SeedingService.validate(participants)

            bracket_size = next_power_of_two(count)
            slots = reorder_for_bracket(participants, bracket_size)
            for position, participant in enumerate(slots, start=1):
                if participant is not None:
                    participant.bracket_position = position

            offsets = self._round_offsets(bracket_size)
            total_rounds = len(offsets)
            matches = {}
            matches_in_round = bracket_size // 2
            for round_number in range(1, total_rounds + 1):
                for position_in_round in range(1, matches_in_round + 1):
                    match_number = offsets[round_number - 1] + position_in_round
                    next_match_number = None
                    if round_number < total_rounds:
                        next_match_number = offsets[round_number] + (position_in_round + 1) // 2
                    match = OfficialMatch(
                        stage_id=stage_id,
                        round=round_number,
                        match_number=match_number,
                        position_in_round=position_in_round,
                        next_match_number=next_match_number,
                        status=OfficialMatchStatus.PENDING
                    )
                    if round_number == 1:
                        first = slots[2 * position_in_round - 2]
                        second = slots[2 * position_in_round - 1]
                        match.participant1_id = first.id if first is not None else None
                        match.participant2_id = second.id if second is not None else None
                    matches[match_number] = match
                    s.add(match)
                matches_in_round //= 2

            # Byes
            byes = 0
            for match in sorted(matches.values(), key=lambda m: m.match_number):
                if match.round != 1:
                    break
                if match.participant1_id is None or match.participant2_id is None:
                    match.status = OfficialMatchStatus.WALKOVER
                    match.winner_id = match.participant1_id or match.participant2_id
                    self._advance(match, matches.get(match.next_match_number))
                    byes += 1

            stage.bracket_size = bracket_size
            stage.seeding_status = SeedingStatus.BRACKET_GENERATED
            await s.flush()

        self.logger.info(
            f"Generated bracket for stage {stage_id}: {count} participants, "
            f"size {bracket_size}, {len(matches)} matches, {byes} byes"
        )
        return sorted(matches.values(), key=lambda m: m.match_number)

    @staticmethod
    def _advance(match: OfficialMatch, next_match: Optional[OfficialMatch]):
        """Seat the match winner in its next match (odd positions feed slot 1)"""
        if next_match is None:
            return
        if match.position_in_round % 2 == 1:
            next_match.participant1_id = match.winner_id
        else:
            next_match.participant2_id = match.winner_id

    async def record_result(self, match_id: int, winner_participant_id: int,
                            session: Optional[AsyncSession] = None) -> OfficialMatch:
        """
        Complete a bracket match and advance its winner.

        The loser's finish position is the first place below the round's
        survivors; the final also places the winner first.

        Raises:
            GameStateError: The match is decided, not ready, or the winner
                does not play in it
        """
        async with self._get_session_context(session) as s:
            match = await s.get(OfficialMatch, match_id, with_for_update=True)
            if match is None:
                raise ValueError(f"Match {match_id} not found")
            if match.status != OfficialMatchStatus.PENDING:
                raise GameStateError(f"Match {match_id} is already {match.status.value}",
                                     "This match already has a result.")
            if match.participant1_id is None or match.participant2_id is None:
                raise GameStateError(f"Match {match_id} is waiting for participants",
                                     "Both players must be known before recording a result.")
            if winner_participant_id not in (match.participant1_id, match.participant2_id):
                raise GameStateError(f"Participant {winner_participant_id} does not play match {match_id}",
                                     "The winner must be one of the two players.")

            result = await s.execute(
                update(OfficialMatch)
                .where(OfficialMatch.id == match_id, OfficialMatch.status == OfficialMatchStatus.PENDING)
                .values(status=OfficialMatchStatus.COMPLETED, winner_id=winner_participant_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise GameStateError(f"Match {match_id} was decided concurrently",
                                     "This match already has a result.")
            match.status = OfficialMatchStatus.COMPLETED
            match.winner_id = winner_participant_id

            loser_id = match.participant2_id if winner_participant_id == match.participant1_id else match.participant1_id
            stage = await s.get(OfficialStage, match.stage_id)
            matches_in_round = stage.bracket_size // (2 ** match.round)
            loser = await s.get(OfficialParticipant, loser_id)
            loser.finish_position = matches_in_round + 1

            if match.is_final:
                winner = await s.get(OfficialParticipant, winner_participant_id)
                winner.finish_position = 1
            else:
                result = await s.execute(
                    select(OfficialMatch)
                    .where(
                        OfficialMatch.stage_id == match.stage_id,
                        OfficialMatch.match_number == match.next_match_number
                    )
                    .with_for_update()
                )
                self._advance(match, result.scalar_one())
            await s.flush()

        self.logger.info(f"Match {match.match_number} of stage {match.stage_id} won by participant {winner_participant_id}")
        return match

    async def get_bracket(self, stage_id: int) -> List[OfficialMatch]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(OfficialMatch)
                .where(OfficialMatch.stage_id == stage_id)
                .order_by(OfficialMatch.match_number)
            )
            return list(result.scalars().all())
