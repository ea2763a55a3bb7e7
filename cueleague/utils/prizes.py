from dataclasses import dataclass
from typing import Dict
import logging

from cueleague.config import Config

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class PrizeSplit:
    """Percentages of a multiplayer prize pool; the grand final fund takes the remainder"""
    first_place_percent: int
    second_place_percent: int
    grand_final_percent: int

    @classmethod
    def default(cls) -> 'PrizeSplit':
        return cls(
            Config.DEFAULT_FIRST_PLACE_PERCENT,
            Config.DEFAULT_SECOND_PLACE_PERCENT,
            Config.DEFAULT_GRAND_FINAL_PERCENT
        )

    @classmethod
    def from_percents(cls, first_place_percent=None, second_place_percent=None,
                      grand_final_percent=None) -> 'PrizeSplit':
        """Build a split, substituting the default one unless the three parts sum to 100"""
        parts = (first_place_percent, second_place_percent, grand_final_percent)
        if any(part is None or part < 0 for part in parts) or sum(parts) != 100:
            logger.warning(f"Prize split {parts} does not sum to 100, using the default split")
            return cls.default()
        return cls(*(int(part) for part in parts))

    def split(self, total: int) -> Dict[str, int]:
        """Integer prizes for a pool; rounding leftovers go to the grand final fund"""
        first_place = total * self.first_place_percent // 100
        second_place = total * self.second_place_percent // 100
        return {
            'total': total,
            'first_place': first_place,
            'second_place': second_place,
            'grand_final_fund': total - first_place - second_place,
        }
