"""PolyEdge FastAPI application.

Operational API over the paper-trading decision core: health, model
stats, learning insights and version management.
"""

from contextlib import asynccontextmanager

import redis.asyncio as redis
import structlog
from fastapi import FastAPI

from polyedge import __version__
from polyedge.api.routes import health, models
from polyedge.config import get_settings
from polyedge.config.logging import configure_logging
from polyedge.models.base import get_engine, get_session_factory
from polyedge.repositories.sql import build_sql_repositories
from polyedge.repositories.state import RedisStateStore
from polyedge.services.engine import build_trading_engine

settings = get_settings()
configure_logging(settings.log_level)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build one connection pool, Redis client and engine per process."""
    logger.info("starting_polyedge", version=__version__)
    db_engine = get_engine()
    app.state.session_factory = get_session_factory(db_engine)
    app.state.redis = redis.from_url(settings.redis_url, decode_responses=True)
    repos = build_sql_repositories(
        app.state.session_factory,
        RedisStateStore(app.state.redis, settings.state_key_prefix),
    )
    app.state.engine = build_trading_engine(repos, settings=settings)
    try:
        yield
    finally:
        await app.state.redis.aclose()
        await db_engine.dispose()
        logger.info("shutting_down_polyedge")


app = FastAPI(
    title="PolyEdge",
    description="Self-improving paper-trading decision core",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(models.router)
