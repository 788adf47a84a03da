"""Request scoped database session dependency."""
from __future__ import annotations

from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession

from .base import create_session


async def get_session() -> AsyncIterator[AsyncSession]:
    """Yield an :class:`AsyncSession` and roll back anything left uncommitted."""

    session = create_session()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


__all__ = ["get_session"]
