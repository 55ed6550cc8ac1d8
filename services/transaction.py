from contextlib import asynccontextmanager
from typing import AsyncIterator

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.exceptions import PersistenceError


@asynccontextmanager
async def transaction(session_factory: async_sessionmaker) -> AsyncIterator[AsyncSession]:
    """
    Open a session and a transaction around a booking operation.

    The transaction commits when the block exits normally. Any exception
    rolls it back; database failures surface as PersistenceError, business
    errors propagate unchanged.
    """
    async with session_factory() as session:
        try:
            async with session.begin():
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Transaction rolled back: {e}")
            raise PersistenceError(f"Transaction failed: {e}") from e
