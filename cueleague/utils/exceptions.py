"""
Custom exceptions for the seeding, rating and multiplayer engines.

Each exception carries a user-facing message alongside the detailed one, so
the calling layer can report configuration problems without exposing internals.
"""

class CueLeagueError(Exception):
    """Base exception for league engine errors."""
    retryable = False

    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message

class InvalidBracketSize(CueLeagueError):
    """Raised when a bracket size is not a positive power of two."""
    def __init__(self, bracket_size: int):
        super().__init__(
            f"Bracket size {bracket_size} is not a positive power of two",
            f"Bracket size must be a power of 2 (got {bracket_size})."
        )
        self.bracket_size = bracket_size

class NoMatchingRule(CueLeagueError):
    """Raised when no configured delta rule covers the observed rating gap."""
    def __init__(self, delta: int, side: str = None):
        side_text = f" in {side} rules" if side else ""
        super().__init__(
            f"No rule matched for delta {delta}{side_text}",
            f"League rating rules do not cover a rating difference of {delta}. "
            f"Please fix the league configuration."
        )
        self.delta = delta
        self.side = side

class InvalidRuleSet(CueLeagueError):
    """Raised when an authored delta rule set is malformed, overlapping or has gaps."""
    def __init__(self, reason: str):
        super().__init__(
            f"Invalid rating rule set: {reason}",
            f"Rating rules are invalid: {reason}"
        )
        self.reason = reason

class SeedingValidationError(CueLeagueError):
    """Base class for seed validation failures."""
    pass

class DuplicateSeed(SeedingValidationError):
    """Raised when the same seed value is assigned more than once."""
    def __init__(self, seeds):
        super().__init__(
            f"Duplicate seeds found: {sorted(seeds)}",
            "Each participant must have a unique seed."
        )
        self.seeds = sorted(seeds)

class NonSequentialSeeds(SeedingValidationError):
    """Raised when seeds are not exactly 1..N."""
    def __init__(self, seeds, expected_count: int):
        super().__init__(
            f"Seeds must be sequential starting from 1 (expected 1..{expected_count}, got {sorted(seeds)})",
            "Seeds must be numbered 1, 2, 3, ... without gaps."
        )
        self.seeds = sorted(seeds)
        self.expected_count = expected_count

class SeedingLocked(CueLeagueError):
    """Raised when a stage's seeding is changed after its bracket was generated."""
    def __init__(self, stage_id: int):
        super().__init__(
            f"Stage {stage_id} already has a generated bracket",
            "Seeding cannot be changed after the bracket has been generated."
        )
        self.stage_id = stage_id

class RatingTypeMismatch(CueLeagueError):
    """Raised when an operation requires a different league rating type."""
    def __init__(self, expected, actual):
        super().__init__(
            f"League rating type must be {expected.value}, got {actual.value}",
            f"This league does not use {expected.value} rating."
        )

class GameStateError(CueLeagueError):
    """Raised when a game or match is in an invalid state for the operation."""
    pass

class CardError(CueLeagueError):
    """Raised when a card cannot be played."""
    pass

class TransientDatabaseError(CueLeagueError):
    """Raised when a concurrency conflict persists after all retries."""
    retryable = True

    def __init__(self, operation: str, attempts: int):
        super().__init__(
            f"Transaction failed for {operation} after {attempts} attempts",
            "The request conflicted with another update. Please try again."
        )
        self.operation = operation
        self.attempts = attempts

class PermissionDenied(CueLeagueError):
    """Raised when the acting user may not perform a moderator action."""
    def __init__(self, user_id: int, action: str):
        super().__init__(
            f"User {user_id} is not allowed to {action}",
            "Only admins or the game moderator can do this."
        )
        self.user_id = user_id
        self.action = action
