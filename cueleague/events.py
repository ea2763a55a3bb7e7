"""
Domain events published by the league services, and the in-process bus
that delivers them.

Events are immutable and are published after the transaction that produced
them has committed. Handlers may be plain functions or coroutines. A service
working inside a caller-owned session cannot know when that session commits,
so it queues its events on the session instead; the caller publishes them
with `EventBus.publish_deferred` once it has committed.
"""

import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Tuple, Type

logger = logging.getLogger(__name__)

# Key in AsyncSession.info holding events queued until the session commits
DEFERRED_EVENTS_KEY = "cueleague_deferred_events"

def defer_event(session, event):
    session.info.setdefault(DEFERRED_EVENTS_KEY, []).append(event)

def pop_deferred_events(session) -> list:
    """Take the queued events off a session, e.g. to drop them after a rollback"""
    return session.info.pop(DEFERRED_EVENTS_KEY, [])

@dataclass(frozen=True)
class PlayerAddedToLeague:
    league_id: int
    user_id: int
    rating_id: int
    timestamp: datetime = field(default_factory=datetime.now)

@dataclass(frozen=True)
class PlayerConfirmed:
    league_id: int
    user_id: int
    timestamp: datetime = field(default_factory=datetime.now)

@dataclass(frozen=True)
class MatchCompleted:
    """A pairwise league match has its result and new ratings applied"""
    league_id: int
    match_id: int
    winner_user_id: int
    rating_changes: Dict[int, int]  # rating id -> new rating
    timestamp: datetime = field(default_factory=datetime.now)

@dataclass(frozen=True)
class GameCompleted:
    """A multiplayer game has a winner and its prizes and points computed"""
    game_id: int
    league_id: int
    winner_user_id: int
    finish_positions: Tuple[Tuple[int, int], ...]  # (user id, finish position)
    timestamp: datetime = field(default_factory=datetime.now)

class EventBus:
    """In-process publish/subscribe keyed by event class"""

    def __init__(self):
        self._handlers: Dict[Type, List[Callable]] = defaultdict(list)

    def subscribe(self, event_type: Type, handler: Callable):
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: Type, handler: Callable):
        if handler in self._handlers.get(event_type, []):
            self._handlers[event_type].remove(handler)

    async def publish(self, event):
        handlers = list(self._handlers.get(type(event), []))
        logger.debug(f"Publishing {type(event).__name__} to {len(handlers)} handler(s)")
        for handler in handlers:
            result = handler(event)
            if inspect.isawaitable(result):
                await result

    async def publish_deferred(self, session) -> int:
        """Publish the events queued on a session. Call after committing it."""
        events = pop_deferred_events(session)
        for event in events:
            await self.publish(event)
        return len(events)
