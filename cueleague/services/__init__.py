"""
Services package for the Cue League engine.

Seeding, league rating and multiplayer game services share the session
handling and retry logic of BaseService.
"""

from .base import BaseService
from .seeding import SeedingService
from .rating import RatingService
from .multiplayer import MultiplayerGameService

__all__ = ['BaseService', 'SeedingService', 'RatingService', 'MultiplayerGameService']
