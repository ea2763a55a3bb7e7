"""
Engine-wide constants for the Cue League engine.

This module contains the magic numbers and fixed vocabularies used throughout
the codebase: lives tiers, card names, seeding group names and log actions.
"""

class SeedingConstants:
    """Constants related to seeding and bracket placement."""
    
    # Club bucket used for players without a home club
    NO_CLUB_KEY = "no_club"
    
    # Group names for previews: Group A, Group B, ...
    GROUP_NAME_PREFIX = "Group "
    
    # Single-elimination limits
    MIN_BRACKET_PARTICIPANTS = 2

class MultiplayerConstants:
    """Constants for last-man-standing multiplayer games."""
    
    MIN_PLAYERS_TO_START = 2
    
    # (max player count, initial lives) tiers, checked in order
    LIVES_TIERS = (
        (5, 6),
        (10, 5),
        (14, 4),
    )
    FALLBACK_LIVES = 3
    
    # Every player gets one of each card at the start
    INITIAL_CARDS = ("skip_turn", "pass_turn", "hand_shot")
    
    # Extra card for players from the lower league divisions
    HANDICAP_CARD = "handicap"
    HANDICAP_DIVISIONS = ("B", "C")
    HANDICAP_ACTIONS = ("skip_turn", "take_life")
    HANDICAP_MIN_TARGET_LIVES = 3
    
    # (max standings position, division) tiers, checked in order
    DIVISION_TIERS = (
        (8, "Elite"),
        (16, "S"),
        (24, "A"),
        (64, "B"),
    )
    FALLBACK_DIVISION = "C"
    
    EMPTY_GAME_STATS = {
        'shots_taken': 0,
        'balls_potted': 0,
        'lives_gained': 0,
        'lives_lost': 0,
        'cards_used': 0,
        'turns_played': 0,
    }

class LogActions:
    """Action types written to the multiplayer game log."""
    
    START = "start_game"
    INCREMENT_LIVES = "increment_lives"
    DECREMENT_LIVES = "decrement_lives"
    ELIMINATED = "eliminated"
    USE_CARD = "use_card"
    TURN = "turn"
    SET_TURN = "set_turn"
    TAKE_LIFE = "take_life"
    ADD_NEW_PLAYER = "add_new_player"
    REBUY_PLAYER = "rebuy_player"
    LIVES_ADDED_TO_ALL = "lives_added_to_all"
    GAME_COMPLETED = "game_completed"
    FINISH_GAME = "finish_game"
