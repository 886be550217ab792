"""Trading model API endpoints: stats, insights and versions."""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict

from polyedge.api.dependencies import get_trading_engine
from polyedge.services.engine import TradingEngine

router = APIRouter(prefix="/api/models", tags=["models"])


class ModelItem(BaseModel):
    """Active trading model."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    signal_weights: dict[str, float]
    thresholds: dict[str, float]
    consecutive_losses: int
    blackout_until: Optional[datetime] = None
    version: int
    total_learning_cycles: int


class InsightItem(BaseModel):
    """One entry of the learning rationale log."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    timestamp: datetime
    insight_text: str
    action_taken: Optional[dict[str, Any]] = None


class VersionItem(BaseModel):
    """A version merged with its performance stats."""

    id: int
    version_num: int
    parent_version_id: Optional[int] = None
    created_at: datetime
    mutation_reason: str
    weights: dict[str, float]
    thresholds: dict[str, float]
    is_prod_synced: bool
    total_trades: int
    wins: int
    losses: int
    win_rate: float
    total_pnl: float
    roi_pct: float
    avg_pnl: float
    max_drawdown: float
    sharpe_ratio: Optional[float] = None
    consecutive_wins: int
    consecutive_losses: int
    balance: Optional[float] = None


class PromoteResponse(BaseModel):
    """Result of promoting a version."""

    promoted_version_id: int
    new_version_id: int
    new_version_num: int


async def _require_model(engine: TradingEngine, model_id: int):
    model = await engine.repos.models.get(model_id)
    if model is None:
        raise HTTPException(status_code=404, detail="Model not found")
    return model


@router.get("", response_model=list[ModelItem])
async def list_models(engine: TradingEngine = Depends(get_trading_engine)):
    """List active models with their live configuration."""
    return await engine.repos.models.list_active()


@router.get("/{model_id}/stats")
async def model_stats(
    model_id: int, engine: TradingEngine = Depends(get_trading_engine)
) -> dict[str, Any]:
    """Paper account performance for one model."""
    await _require_model(engine, model_id)
    return await engine.ledger.get_model_stats(model_id)


@router.get("/{model_id}/insights", response_model=list[InsightItem])
async def model_insights(
    model_id: int,
    engine: TradingEngine = Depends(get_trading_engine),
    limit: int = Query(50, ge=1, le=500),
):
    """Most recent learning insights first."""
    await _require_model(engine, model_id)
    return await engine.repos.insights.list_for_model(model_id, limit)


@router.get("/{model_id}/versions", response_model=list[VersionItem])
async def model_versions(
    model_id: int, engine: TradingEngine = Depends(get_trading_engine)
):
    """Version history, oldest first."""
    await _require_model(engine, model_id)
    return await engine.versions.get_version_history(model_id)


@router.get("/{model_id}/versions/best", response_model=Optional[VersionItem])
async def best_version(
    model_id: int, engine: TradingEngine = Depends(get_trading_engine)
):
    """Best risk-adjusted version, or null until one has enough trades."""
    await _require_model(engine, model_id)
    return await engine.versions.get_best_version(model_id)


@router.post("/versions/{version_id}/promote", response_model=PromoteResponse)
async def promote_version(
    version_id: int, engine: TradingEngine = Depends(get_trading_engine)
):
    """Restore a version's weights and thresholds onto its model."""
    promoted = await engine.versions.promote_to_prod(version_id)
    if promoted is None:
        raise HTTPException(status_code=404, detail="Version not found")
    return PromoteResponse(
        promoted_version_id=version_id,
        new_version_id=promoted.id,
        new_version_num=promoted.version_num,
    )
