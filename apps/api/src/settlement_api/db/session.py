"""Engine and session wiring shared by the API, workers and jobs."""

from __future__ import annotations

from typing import AsyncIterator, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from settlement_api.core.settings import settings

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]

engine = create_async_engine(settings.database_url, echo=settings.database_echo, future=True)

async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding a request-scoped session."""

    async with async_session() as session:
        yield session


async def ensure_session(session_factory: SessionFactory) -> AsyncSession:
    """Resolve a factory that may return a session or an awaitable of one."""

    maybe_session = session_factory()
    if isinstance(maybe_session, AsyncSession):
        return maybe_session
    return await maybe_session


__all__ = ["SessionFactory", "async_session", "engine", "ensure_session", "get_session"]
