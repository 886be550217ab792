"""Domain models for PolyEdge.

This module defines all database models for the paper-trading decision core.
Numeric columns are read back as floats; every JSONB column is replaced
wholesale on update, never mutated in place.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from polyedge.models.base import Base, CreatedAtMixin


def _money(**kwargs):
    return mapped_column(Numeric(14, 4, asdecimal=False), **kwargs)


def _ratio(**kwargs):
    return mapped_column(Numeric(10, 6, asdecimal=False), **kwargs)


class TradingModel(Base, CreatedAtMixin):
    """
    One trading strategy instance.

    signal_weights maps source -> weight and always sums to 1.0.
    thresholds holds bet_threshold (clamped to [0.5, 0.9]) and max_bet.
    Mutated only by the learning loop and by version promotion.
    """

    __tablename__ = "models"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    signal_weights: Mapped[dict[str, float]] = mapped_column(JSONB, nullable=False)
    thresholds: Mapped[dict[str, float]] = mapped_column(JSONB, nullable=False)

    # Circuit breaker
    consecutive_losses: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    blackout_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    total_learning_cycles: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )

    @property
    def bet_threshold(self) -> float:
        return float(self.thresholds.get("bet_threshold", 0.65))

    @property
    def max_bet(self) -> float:
        return float(self.thresholds.get("max_bet", 10.0))

    def __repr__(self) -> str:
        return f"<TradingModel {self.name} v{self.version}>"


class PaperAccount(Base):
    """Simulated USDC balance for one model."""

    __tablename__ = "paper_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    model_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("models.id"), unique=True, nullable=False
    )
    balance_usdc: Mapped[float] = _money(nullable=False)
    starting_balance: Mapped[float] = _money(nullable=False, default=100.0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<PaperAccount model={self.model_id} {self.balance_usdc:.2f}>"


class Signal(Base):
    """
    A timestamped signal reading produced by an external collector.

    normalized is in [-1, 1]; positive values point up. Append-only.
    """

    __tablename__ = "signals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    model_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("models.id"), nullable=False
    )
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    normalized: Mapped[float] = _ratio(nullable=False)
    raw_value: Mapped[float | None] = mapped_column(
        Numeric(20, 6, asdecimal=False), nullable=True
    )
    signal_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSONB, nullable=True
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (
        Index("idx_signals_model_source_ts", "model_id", "source", "timestamp"),
    )


class SignalRun(Base):
    """One aggregation run, kept so trades can be attributed to signals."""

    __tablename__ = "signal_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    model_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("models.id"), nullable=False
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    aggregated_score: Mapped[float] = _ratio(nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    confidence: Mapped[str] = mapped_column(String(10), nullable=False)
    reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    sources_used: Mapped[list[str]] = mapped_column(JSONB, nullable=False)
    action_taken: Mapped[str] = mapped_column(String(10), nullable=False)
    oracle_decision: Mapped[dict[str, Any] | None] = mapped_column(
        JSONB, nullable=True
    )
    oracle_reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_signal_runs_model_ts", "model_id", "timestamp"),
    )


class MarketSnapshot(Base):
    """
    Point-in-time odds for an up/down market.

    up_odds and down_odds are implied probabilities; their excess over
    1.0 is the vig.
    """

    __tablename__ = "market_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    market_id: Mapped[str] = mapped_column(String(100), nullable=False)
    market_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    up_odds: Mapped[float] = _ratio(nullable=False)
    down_odds: Mapped[float] = _ratio(nullable=False)
    volume: Mapped[float | None] = _money(nullable=True)
    time_remaining: Mapped[int | None] = mapped_column(
        Integer, nullable=True, doc="Seconds until resolution"
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (
        Index("idx_market_snapshots_market_ts", "market_id", "timestamp"),
    )


class BtcPrice(Base):
    """BTC spot reading with trailing percentage changes."""

    __tablename__ = "btc_prices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    price: Mapped[float] = _money(nullable=False)
    change_1h: Mapped[float | None] = _ratio(nullable=True)
    change_24h: Mapped[float | None] = _ratio(nullable=True)
    volume_24h: Mapped[float | None] = mapped_column(
        Numeric(24, 2, asdecimal=False), nullable=True
    )


class Trade(Base):
    """
    A paper trade. Created open, settled exactly once, never re-opened.

    entry_odds is the market odds recorded for the side taken at entry;
    settlement prices a down bet at 1 - entry_odds.
    exit_odds is the up-side resolution odds at settlement.
    """

    __tablename__ = "trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    model_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("models.id"), nullable=False
    )
    market_id: Mapped[str] = mapped_column(String(100), nullable=False)
    market_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    amount_usdc: Mapped[float] = _money(nullable=False)
    entry_odds: Mapped[float] = _ratio(nullable=False)
    exit_odds: Mapped[float | None] = _ratio(nullable=True)
    status: Mapped[str] = mapped_column(String(10), nullable=False, default="open")
    pnl: Mapped[float | None] = _money(nullable=True)
    opened_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    closed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_trades_model_status", "model_id", "status"),
        Index("idx_trades_model_opened", "model_id", "opened_at"),
    )

    @property
    def is_open(self) -> bool:
        return self.status == "open"

    @property
    def is_win(self) -> bool:
        return (self.pnl or 0) > 0

    def __repr__(self) -> str:
        return f"<Trade {self.id} {self.direction} {self.amount_usdc} {self.status}>"


class TradeAnalysis(Base):
    """Post-mortem of one settled trade. At most one per trade."""

    __tablename__ = "trade_analyses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    trade_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("trades.id"), unique=True, nullable=False
    )
    model_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("models.id"), nullable=False
    )
    verdict: Mapped[str] = mapped_column(String(20), nullable=False)
    signal_contributions: Mapped[dict[str, float]] = mapped_column(
        JSONB, nullable=False
    )
    adjustment_suggestions: Mapped[dict[str, float]] = mapped_column(
        JSONB, nullable=False
    )
    market_conditions: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    analyzed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )


class ModelInsight(Base):
    """Append-only learning rationale for a model."""

    __tablename__ = "model_insights"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    model_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("models.id"), nullable=False
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    insight_text: Mapped[str] = mapped_column(Text, nullable=False)
    action_taken: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)

    __table_args__ = (
        Index("idx_model_insights_model_ts", "model_id", "timestamp"),
    )


class ModelVersion(Base):
    """
    Immutable snapshot of a model's weights and thresholds.

    A version is active from its created_at until the next version's
    created_at. Only is_prod_synced may change after insert.
    """

    __tablename__ = "versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    model_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("models.id"), nullable=False
    )
    version_num: Mapped[int] = mapped_column(Integer, nullable=False)
    parent_version_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("versions.id"), nullable=True
    )
    mutation_reason: Mapped[str] = mapped_column(String(200), nullable=False)
    signal_weights: Mapped[dict[str, float]] = mapped_column(JSONB, nullable=False)
    thresholds: Mapped[dict[str, float]] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    is_prod_synced: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("model_id", "version_num", name="uq_versions_model_num"),
    )

    def __repr__(self) -> str:
        return f"<ModelVersion model={self.model_id} v{self.version_num}>"
