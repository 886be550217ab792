"""Periodic trading tasks.

PAPER TRADING only - no real money is ever at risk.

Each task opens its own SQL engine and Redis client for the duration of
one ``asyncio.run`` call and returns a JSON-serializable summary.
"""

import asyncio
from typing import Any

import structlog
from celery import shared_task

from polyedge.services.engine import open_trading_engine

logger = structlog.get_logger(__name__)


async def run_sweep() -> dict[str, Any]:
    async with open_trading_engine() as engine:
        return await engine.run_sweep()


async def analyze_patterns() -> dict[str, Any]:
    async with open_trading_engine() as engine:
        patterns = await engine.patterns.run_analysis()
    return {
        "hourly_buckets": len(patterns["hourly"]),
        "ev_buckets": len(patterns["odds_ev"]),
        "markets": len(patterns["market_vig"]),
        "updated_at": patterns["updated_at"],
    }


async def run_improvement_cycle() -> dict[str, Any]:
    async with open_trading_engine() as engine:
        results = await engine.improver.run_improvement_cycle()
    return {
        "models": len(results),
        "learned": sum(1 for r in results if r.get("skipped") is False),
        "skipped": sum(1 for r in results if r.get("skipped")),
        "errors": sum(1 for r in results if "error" in r),
    }


async def analyze_pending_trades() -> dict[str, Any]:
    async with open_trading_engine() as engine:
        analyses = await engine.analyzer.analyze_all_pending()
    verdicts: dict[str, int] = {}
    for analysis in analyses:
        verdicts[analysis.verdict] = verdicts.get(analysis.verdict, 0) + 1
    return {"analyzed": len(analyses), "verdicts": verdicts}


# =============================================================================
# Celery Tasks
# =============================================================================


@shared_task(name="polyedge.tasks.trading.run_sweep_task")
def run_sweep_task() -> dict[str, Any]:
    """Settle trades and run aggregation for every active model."""
    logger.info("sweep_task_started")
    return asyncio.run(run_sweep())


@shared_task(name="polyedge.tasks.trading.analyze_patterns_task")
def analyze_patterns_task() -> dict[str, Any]:
    """Recompute pattern memory from trade history."""
    return asyncio.run(analyze_patterns())


@shared_task(name="polyedge.tasks.trading.run_improvement_cycle_task")
def run_improvement_cycle_task() -> dict[str, Any]:
    """Hourly learning cycle for all active models."""
    return asyncio.run(run_improvement_cycle())


@shared_task(name="polyedge.tasks.trading.analyze_pending_trades_task")
def analyze_pending_trades_task() -> dict[str, Any]:
    """Analyze settled trades that have no analysis yet."""
    return asyncio.run(analyze_pending_trades())
