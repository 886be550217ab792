"""Repository interfaces.

Every service talks to storage through these protocols. The SQLAlchemy
implementations live in ``sql.py``; ``memory.py`` provides in-process
doubles with the same semantics for tests and dry runs.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, TypeVar

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

T = TypeVar("T")

BLACKOUT_KEY = "blackout"
PATTERNS_KEY = "patterns"


class ModelRepository(Protocol):
    async def get(self, model_id: int) -> TradingModel | None: ...

    async def get_by_name(self, name: str) -> TradingModel | None: ...

    async def list_active(self) -> list[TradingModel]: ...

    async def add(self, model: TradingModel) -> TradingModel: ...

    async def update(
        self, model_id: int, mutate: Callable[[TradingModel], T]
    ) -> T | None:
        """
        Atomic read-modify-write of one model row.

        ``mutate`` receives the freshly locked row and may change it in
        place; its return value is passed back. Returns None when the
        model does not exist.
        """
        ...


class TradeRepository(Protocol):
    async def get(self, trade_id: int) -> Trade | None: ...

    async def get_account(self, model_id: int) -> PaperAccount | None: ...

    async def create_account(
        self, model_id: int, starting_balance: float
    ) -> PaperAccount:
        """Create the model's paper account, or return the existing one."""
        ...

    async def open_trade(
        self, trade: Trade, resolve_amount: Callable[[float], float]
    ) -> Trade | None:
        """
        Debit the account and insert an open trade in one unit.

        ``resolve_amount`` maps the locked balance to the stake to use;
        a non-positive stake declines the bet and returns None.
        """
        ...

    async def settle_trade(
        self,
        trade_id: int,
        *,
        status: str,
        exit_odds: float | None,
        pnl: float,
        credit: float,
        closed_at: datetime,
        note: str | None = None,
    ) -> Trade | None:
        """
        Settle an open trade and credit the account in one unit.

        Returns None when the trade is missing or already settled.
        """
        ...

    async def list_open(self, model_id: int | None = None) -> list[Trade]: ...

    async def recent_settled(
        self, model_id: int, limit: int | None = None
    ) -> list[Trade]:
        """Settled trades, most recently closed first."""
        ...

    async def all_settled(self) -> list[Trade]:
        """Every settled trade ordered by (opened_at, id)."""
        ...

    async def settled_opened_between(
        self, model_id: int, start: datetime, end: datetime | None
    ) -> list[Trade]:
        """Settled trades with start <= opened_at < end, in closing order."""
        ...

    async def count_settled(self, model_id: int) -> int: ...


class SignalRepository(Protocol):
    async def add(self, signal: Signal) -> Signal: ...

    async def latest(
        self, model_id: int, source: str, since: datetime, until: datetime
    ) -> Signal | None:
        """Most recent reading with since <= timestamp <= until."""
        ...

    async def list_between(
        self, model_id: int, source: str, start: datetime, end: datetime
    ) -> list[Signal]:
        """Readings with start <= timestamp <= end, oldest first."""
        ...

    async def record_run(self, run: SignalRun) -> SignalRun: ...

    async def latest_run(self, model_id: int, until: datetime) -> SignalRun | None: ...

    async def recent_runs(self, model_id: int, limit: int) -> list[SignalRun]: ...


class MarketRepository(Protocol):
    async def add_snapshot(self, snapshot: MarketSnapshot) -> MarketSnapshot: ...

    async def latest_snapshot(
        self,
        *,
        market_id: str | None = None,
        since: datetime | None = None,
        exclude_market_id: str | None = None,
    ) -> MarketSnapshot | None: ...

    async def vig_by_market(self) -> dict[str, tuple[float, int]]:
        """market_id -> (average up+down odds, sample count)."""
        ...

    async def add_btc_price(self, price: BtcPrice) -> BtcPrice: ...

    async def latest_btc(self) -> BtcPrice | None: ...

    async def btc_prices_between(
        self, start: datetime, end: datetime
    ) -> list[BtcPrice]: ...


class AnalysisRepository(Protocol):
    async def get_for_trade(self, trade_id: int) -> TradeAnalysis | None: ...

    async def add(self, analysis: TradeAnalysis) -> TradeAnalysis:
        """Insert, or return the stored analysis when the trade already has one."""
        ...

    async def for_trades(self, trade_ids: list[int]) -> dict[int, TradeAnalysis]: ...

    async def unanalyzed_trade_ids(self, model_id: int | None = None) -> list[int]: ...


class InsightRepository(Protocol):
    async def add(self, insight: ModelInsight) -> ModelInsight | None: ...

    async def list_for_model(self, model_id: int, limit: int = 50) -> list[ModelInsight]: ...


class VersionRepository(Protocol):
    async def get(self, version_id: int) -> ModelVersion | None: ...

    async def list_for_model(self, model_id: int) -> list[ModelVersion]: ...

    async def latest(self, model_id: int) -> ModelVersion | None: ...

    async def append(
        self,
        model_id: int,
        *,
        reason: str,
        signal_weights: dict[str, float],
        thresholds: dict[str, float],
        created_at: datetime,
    ) -> ModelVersion | None:
        """Append the next version (num = latest + 1, parent = latest)."""
        ...

    async def mark_prod_synced(self, version_id: int) -> None: ...


class StateStore(Protocol):
    """Persisted JSON documents for derived state."""

    async def load(self, key: str) -> dict[str, Any] | None: ...

    async def save(self, key: str, document: dict[str, Any]) -> None: ...

    async def update(
        self, key: str, mutate: Callable[[dict[str, Any]], None]
    ) -> dict[str, Any]:
        """Atomic read-modify-write of one document; returns the new document."""
        ...


@dataclass
class Repositories:
    """Bundle of repositories injected into services."""

    models: ModelRepository
    trades: TradeRepository
    signals: SignalRepository
    markets: MarketRepository
    analyses: AnalysisRepository
    insights: InsightRepository
    versions: VersionRepository
    state: StateStore
