"""FastAPI dependencies for PolyEdge."""

from collections.abc import AsyncGenerator

import redis.asyncio as redis
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from polyedge.services.engine import TradingEngine


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with request.app.state.session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def get_redis(request: Request) -> redis.Redis:
    """Get the shared Redis client."""
    return request.app.state.redis


async def get_trading_engine(request: Request) -> TradingEngine:
    """Get the engine built at startup."""
    return request.app.state.engine
