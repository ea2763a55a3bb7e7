"""
Operations Layer

Workflows that compose database access and services into multi-step
transactions with their own validation and business rules.

Each operations module focuses on a specific workflow:
- MatchGameOperations: Pairwise league challenges, results and forfeits
- BracketOperations: Single-elimination bracket generation and progression
"""

from .match_operations import MatchGameOperations
from .bracket_operations import BracketOperations

__all__ = ['MatchGameOperations', 'BracketOperations']
