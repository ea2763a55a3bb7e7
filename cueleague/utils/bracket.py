"""
Bracket math for single-elimination draws.

Seeds are mapped onto bracket slots so that the strongest seeds are spread
as far apart as possible: seed 1 opens the bracket, seed 2 closes it, and
every pair of adjacent seeds meets no earlier than the round in which they
must.
"""

from typing import Dict, List, Optional, Sequence, TypeVar

from cueleague.utils.exceptions import InvalidBracketSize

T = TypeVar('T')

def is_power_of_two(n: int) -> bool:
    return n > 0 and (n & (n - 1)) == 0

def next_power_of_two(n: int) -> int:
    """Smallest power of two that is >= n"""
    if n < 1:
        raise ValueError(f"Cannot size a bracket for {n} participants")
    size = 1
    while size < n:
        size <<= 1
    return size

def seed_order(bracket_size: int) -> List[int]:
    """
    Seeds listed in bracket slot order.

    Each doubling replaces every seed s with the pair (s, size + 1 - s),
    alternating which one comes first so that the top half and the bottom
    half stay balanced:

        2 -> [1, 2]
        4 -> [1, 4, 3, 2]
        8 -> [1, 8, 5, 4, 3, 6, 7, 2]
    """
    if not is_power_of_two(bracket_size):
        raise InvalidBracketSize(bracket_size)
    if bracket_size == 1:
        return [1]

    order = [1, 2]
    size = 2
    while size < bracket_size:
        size *= 2
        expanded = []
        for index, seed in enumerate(order):
            pair = size + 1 - seed
            expanded.extend([seed, pair] if index % 2 == 0 else [pair, seed])
        order = expanded
    return order

def get_bracket_positions(bracket_size: int) -> Dict[int, int]:
    """
    Map each seed to its 1-based bracket position.

    Raises:
        InvalidBracketSize: bracket_size is not a positive power of two
    """
    return {seed: position for position, seed in enumerate(seed_order(bracket_size), start=1)}

def reorder_for_bracket(seeded: Sequence[T], bracket_size: int,
                        seed_of=lambda participant: participant.seed) -> List[Optional[T]]:
    """
    Lay participants out in bracket slot order.

    Participants whose seed maps to a position take that slot. The rest
    (unseeded, or seeded beyond the bracket) fill the empty slots in arrival
    order. Whatever is still empty is a BYE (None).
    """
    positions = get_bracket_positions(bracket_size)
    if len(seeded) > bracket_size:
        raise ValueError(f"{len(seeded)} participants do not fit a bracket of {bracket_size}")

    slots: List[Optional[T]] = [None] * bracket_size
    leftovers = []
    for participant in seeded:
        seed = seed_of(participant)
        position = positions.get(seed) if seed is not None else None
        if position is not None and slots[position - 1] is None:
            slots[position - 1] = participant
        else:
            leftovers.append(participant)

    empty = (i for i, slot in enumerate(slots) if slot is None)
    for participant, index in zip(leftovers, empty):
        slots[index] = participant
    return slots
