"""Database models for PolyEdge."""

from polyedge.models.base import Base, get_session_factory, get_task_session
from polyedge.models.domain import (
    BtcPrice,
    MarketSnapshot,
    ModelInsight,
    ModelVersion,
    PaperAccount,
    Signal,
    SignalRun,
    Trade,
    TradeAnalysis,
    TradingModel,
)

__all__ = [
    # Base
    "Base",
    "get_session_factory",
    "get_task_session",
    # Domain models
    "TradingModel",
    "PaperAccount",
    "Signal",
    "SignalRun",
    "MarketSnapshot",
    "BtcPrice",
    "Trade",
    "TradeAnalysis",
    "ModelInsight",
    "ModelVersion",
]
