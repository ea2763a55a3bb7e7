"""
Base service class for the Cue League engine.

Provides async database session management and retry logic for all
service layer operations.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable, Any, Optional
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from cueleague.config import Config
from cueleague.events import defer_event
from cueleague.utils.exceptions import TransientDatabaseError

logger = logging.getLogger(__name__)

class BaseService:
    """Base class for all services with async database session management."""
    
    def __init__(self, session_factory, event_bus=None):
        """
        Initialize base service with session factory.
        
        Args:
            session_factory: Async session factory from Database class
            event_bus: Optional EventBus receiving domain events
        """
        self.session_factory = session_factory
        self.event_bus = event_bus
    
    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide a transactional scope for async database operations."""
        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
    
    @asynccontextmanager
    async def _get_session_context(self, session: Optional[AsyncSession] = None):
        """
        Provides a session context. Uses the provided session if available,
        otherwise creates and manages a new transactional session.
        """
        if session:
            # The caller owns the transaction
            yield session
        else:
            async with self.get_session() as new_session:
                yield new_session
    
    async def publish(self, event, session: Optional[AsyncSession] = None):
        """
        Publish an event once its transaction has committed.

        Pass the caller-owned session, if any: the event then waits on it
        until the caller commits and calls EventBus.publish_deferred.
        """
        if session is not None:
            defer_event(session, event)
        elif self.event_bus is not None:
            await self.event_bus.publish(event)
    
    async def execute_with_retry(self, func: Callable, max_retries: int = None) -> Any:
        """
        Execute a function with automatic retry on concurrency conflicts.
        
        Only lock/serialization failures are retried. Anything else
        propagates on the first attempt.
        
        Raises:
            TransientDatabaseError: Conflicts persisted through every attempt
        """
        max_retries = max_retries or Config.DB_MAX_RETRIES
        name = getattr(func, '__name__', repr(func))
        for attempt in range(max_retries):
            try:
                return await func()
            except (OperationalError, StaleDataError) as e:
                if attempt == max_retries - 1:
                    raise TransientDatabaseError(name, max_retries) from e
                logger.warning(f"Retry attempt {attempt + 1} for {name}: {e}")
                await asyncio.sleep(0.1 * (2 ** attempt))  # Exponential backoff
