from typing import AsyncGenerator
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import async_session
from app.integrations.setup import MarketplaceRegistry, build_registry


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async database sessions."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


def get_session_factory():
    """Session factory for operations that span several transactions (drain sessions)."""
    return async_session


def get_registry(request: Request) -> MarketplaceRegistry:
    """Marketplace clients built at startup, or from settings when running without the lifespan."""
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        registry = build_registry()
        request.app.state.registry = registry
    return registry


def get_supervisor(request: Request):
    return getattr(request.app.state, "auto_drain", None)
