"""
Rating Strategy Pattern for league rating calculations

Each league names a rating type; the factory resolves it to a strategy that
turns the current ratings of a finished game into new ratings.

- Elo: two players, rating change looked up in delta rule tables
- Killer Pool: any number of players, each gains the points earned in a game
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Mapping, Sequence, Tuple
import logging

from cueleague.database.models import RatingType
from cueleague.utils.exceptions import NoMatchingRule, InvalidRuleSet

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class DeltaRule:
    """Rating change for a range of rating differences (bounds inclusive)"""
    min_delta: int
    max_delta: int
    strong: int  # Applied when the winner is rated at least as high as the loser
    weak: int    # Applied on an upset

    @classmethod
    def from_dict(cls, data: Mapping) -> 'DeltaRule':
        """Parse the stored `{"range": [min, max], "strong": x, "weak": y}` form"""
        try:
            low, high = data['range']
            return cls(int(low), int(high), int(data['strong']), int(data['weak']))
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidRuleSet(f"malformed rule {data!r}") from e

    def to_dict(self) -> Dict:
        return {'range': [self.min_delta, self.max_delta], 'strong': self.strong, 'weak': self.weak}

    def matches(self, delta: int) -> bool:
        return self.min_delta <= delta <= self.max_delta

@dataclass(frozen=True)
class RatingSnapshot:
    """A rating as seen by a strategy"""
    id: int
    user_id: int
    rating: int

def parse_rules(rules: Sequence) -> Tuple[DeltaRule, ...]:
    return tuple(rule if isinstance(rule, DeltaRule) else DeltaRule.from_dict(rule) for rule in rules)

def validate_rule_set(rules: Sequence) -> Tuple[DeltaRule, ...]:
    """
    Check a delta rule set when it is authored.

    Ranges must start at 0, be well formed, and follow each other without
    gaps or overlaps, so every non-negative delta up to the last bound has
    exactly one rule.

    Raises:
        InvalidRuleSet: the rule set is empty, malformed, overlapping or has a gap
    """
    parsed = parse_rules(rules)
    if not parsed:
        raise InvalidRuleSet("rule set is empty")

    ordered = sorted(parsed, key=lambda r: r.min_delta)
    if ordered[0].min_delta != 0:
        raise InvalidRuleSet(f"first range must start at 0, starts at {ordered[0].min_delta}")

    previous = None
    for rule in ordered:
        if rule.min_delta > rule.max_delta:
            raise InvalidRuleSet(f"range [{rule.min_delta}, {rule.max_delta}] is inverted")
        if previous is not None:
            if rule.min_delta <= previous.max_delta:
                raise InvalidRuleSet(
                    f"ranges [{previous.min_delta}, {previous.max_delta}] and "
                    f"[{rule.min_delta}, {rule.max_delta}] overlap"
                )
            if rule.min_delta != previous.max_delta + 1:
                raise InvalidRuleSet(f"gap between {previous.max_delta} and {rule.min_delta}")
        previous = rule
    return parsed

class RatingStrategy(ABC):
    """
    Abstract base class for rating strategies.

    A strategy is pure: it reads the given ratings and returns the new value
    for each rating id without touching storage.
    """

    @abstractmethod
    def calculate(self, ratings: Sequence, winner_id: int = 0,
                  winners_rules=(), losers_rules=()) -> Dict[int, int]:
        """
        Calculate new ratings.

        Args:
            ratings: Objects exposing id, user_id and rating
            winner_id: User id of the winner (pairwise strategies)
            winners_rules: Strategy-specific rule input for winners
            losers_rules: Strategy-specific rule input for losers

        Returns:
            Dictionary mapping rating id to the new rating value
        """
        pass

    @abstractmethod
    def get_strategy_name(self) -> str:
        """Get human-readable name of this strategy"""
        pass

class EloRatingStrategy(RatingStrategy):
    """
    Delta-table Elo for a pair of ratings.

    The absolute rating gap selects one rule from each table. A winner rated
    at least as high as the loser takes the `strong` values, an upset takes
    the `weak` values. Losers' tables carry negative numbers.
    """

    def calculate(self, ratings: Sequence, winner_id: int = 0,
                  winners_rules=(), losers_rules=()) -> Dict[int, int]:
        if len(ratings) != 2:
            raise ValueError(f"Elo strategy requires exactly 2 ratings, got {len(ratings)}")

        first, second = ratings
        delta = abs(first.rating - second.rating)
        first_won = winner_id == first.user_id
        winner, loser = (first, second) if first_won else (second, first)
        winner_is_stronger = winner.rating >= loser.rating

        winner_rule = self._get_rule_by_delta(parse_rules(winners_rules), delta, 'winners')
        loser_rule = self._get_rule_by_delta(parse_rules(losers_rules), delta, 'losers')

        winner_delta = winner_rule.strong if winner_is_stronger else winner_rule.weak
        loser_delta = loser_rule.strong if winner_is_stronger else loser_rule.weak

        logger.debug(
            f"Elo calculation: delta {delta}, winner rating {winner.id} "
            f"{'stronger' if winner_is_stronger else 'weaker'}: {winner_delta:+d}/{loser_delta:+d}"
        )

        return {
            winner.id: winner.rating + winner_delta,
            loser.id: loser.rating + loser_delta,
        }

    @staticmethod
    def _get_rule_by_delta(rules: Sequence[DeltaRule], delta: int, side: str) -> DeltaRule:
        for rule in rules:
            if rule.matches(delta):
                return rule
        raise NoMatchingRule(delta, side)

    def get_strategy_name(self) -> str:
        return "Elo"

class KillerPoolRatingStrategy(RatingStrategy):
    """
    Points-based rating for multiplayer games.

    `winners_rules` is a mapping of user id to points earned; each rating
    moves by its user's points. Users without an entry keep their rating.
    """

    def calculate(self, ratings: Sequence, winner_id: int = 0,
                  winners_rules=None, losers_rules=()) -> Dict[int, int]:
        points = winners_rules or {}
        results = {}
        for rating in ratings:
            results[rating.id] = rating.rating + int(points.get(rating.user_id, 0) or 0)

        logger.debug(f"Killer pool calculation: {len(results)} ratings, {len(points)} point entries")
        return results

    def get_strategy_name(self) -> str:
        return "Killer Pool"

class RatingStrategyFactory:
    """Factory for resolving a league's rating type to its strategy"""

    _strategies = {
        RatingType.ELO: EloRatingStrategy,
        RatingType.KILLER_POOL: KillerPoolRatingStrategy,
    }

    @classmethod
    def create(cls, rating_type) -> RatingStrategy:
        """
        Create the strategy for a rating type.

        Args:
            rating_type: RatingType member or its string value

        Raises:
            ValueError: Unknown rating type
        """
        if not isinstance(rating_type, RatingType):
            try:
                rating_type = RatingType(str(rating_type).lower())
            except ValueError:
                raise ValueError(f"Unknown rating type: {rating_type}") from None
        return cls._strategies[rating_type]()

    @classmethod
    def get_available_strategies(cls) -> List[str]:
        return [rating_type.value for rating_type in cls._strategies]
