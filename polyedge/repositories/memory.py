"""In-memory repository implementations.

Same contracts as the SQL repositories, backed by lists and dicts. Every
read-modify-write runs under an asyncio.Lock so concurrent coroutines
cannot lose updates.
"""

import asyncio
import itertools
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime
from typing import TypeVar

from polyedge.config.trading import TradeStatus
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
from polyedge.repositories.base import Repositories
from polyedge.repositories.state import InMemoryStateStore

T = TypeVar("T")


def _is_settled(trade: Trade) -> bool:
    return trade.status != TradeStatus.OPEN.value and trade.pnl is not None


class InMemoryModelRepository:
    def __init__(self):
        self._rows: dict[int, TradingModel] = {}
        self._ids = itertools.count(1)
        self._locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get(self, model_id: int) -> TradingModel | None:
        return self._rows.get(model_id)

    async def get_by_name(self, name: str) -> TradingModel | None:
        return next((m for m in self._rows.values() if m.name == name), None)

    async def list_active(self) -> list[TradingModel]:
        return sorted(
            (m for m in self._rows.values() if m.is_active), key=lambda m: m.id
        )

    async def add(self, model: TradingModel) -> TradingModel:
        if model.id is None:
            model.id = next(self._ids)
        self._rows[model.id] = model
        return model

    async def update(
        self, model_id: int, mutate: Callable[[TradingModel], T]
    ) -> T | None:
        async with self._locks[model_id]:
            model = self._rows.get(model_id)
            if model is None:
                return None
            return mutate(model)


class InMemoryTradeRepository:
    def __init__(self):
        self._trades: dict[int, Trade] = {}
        self._accounts: dict[int, PaperAccount] = {}
        self._trade_ids = itertools.count(1)
        self._account_ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def get(self, trade_id: int) -> Trade | None:
        return self._trades.get(trade_id)

    async def get_account(self, model_id: int) -> PaperAccount | None:
        return self._accounts.get(model_id)

    async def create_account(
        self, model_id: int, starting_balance: float
    ) -> PaperAccount:
        async with self._lock:
            account = self._accounts.get(model_id)
            if account is None:
                account = PaperAccount(
                    id=next(self._account_ids),
                    model_id=model_id,
                    balance_usdc=starting_balance,
                    starting_balance=starting_balance,
                )
                self._accounts[model_id] = account
            return account

    async def open_trade(
        self, trade: Trade, resolve_amount: Callable[[float], float]
    ) -> Trade | None:
        async with self._lock:
            account = self._accounts.get(trade.model_id)
            if account is None:
                return None
            amount = resolve_amount(account.balance_usdc)
            if amount <= 0 or amount > account.balance_usdc:
                return None
            account.balance_usdc = round(account.balance_usdc - amount, 4)
            trade.amount_usdc = amount
            trade.id = next(self._trade_ids)
            self._trades[trade.id] = trade
            return trade

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
        async with self._lock:
            trade = self._trades.get(trade_id)
            if trade is None or trade.status != TradeStatus.OPEN.value:
                return None
            trade.status = status
            trade.exit_odds = exit_odds
            trade.pnl = pnl
            trade.closed_at = closed_at
            if note:
                trade.notes = f"{trade.notes} {note}".strip() if trade.notes else note
            account = self._accounts.get(trade.model_id)
            if account is not None and credit > 0:
                account.balance_usdc = round(account.balance_usdc + credit, 4)
            return trade

    async def list_open(self, model_id: int | None = None) -> list[Trade]:
        return sorted(
            (
                t
                for t in self._trades.values()
                if t.status == TradeStatus.OPEN.value
                and (model_id is None or t.model_id == model_id)
            ),
            key=lambda t: (t.opened_at, t.id),
        )

    async def recent_settled(
        self, model_id: int, limit: int | None = None
    ) -> list[Trade]:
        trades = sorted(
            (t for t in self._trades.values() if t.model_id == model_id and _is_settled(t)),
            key=lambda t: (t.closed_at, t.id),
            reverse=True,
        )
        return trades[:limit] if limit is not None else trades

    async def all_settled(self) -> list[Trade]:
        return sorted(
            (t for t in self._trades.values() if _is_settled(t)),
            key=lambda t: (t.opened_at, t.id),
        )

    async def settled_opened_between(
        self, model_id: int, start: datetime, end: datetime | None
    ) -> list[Trade]:
        return sorted(
            (
                t
                for t in self._trades.values()
                if t.model_id == model_id
                and _is_settled(t)
                and t.opened_at >= start
                and (end is None or t.opened_at < end)
            ),
            key=lambda t: (t.closed_at, t.id),
        )

    async def count_settled(self, model_id: int) -> int:
        return sum(
            1 for t in self._trades.values() if t.model_id == model_id and _is_settled(t)
        )


class InMemorySignalRepository:
    def __init__(self):
        self._signals: list[Signal] = []
        self._runs: list[SignalRun] = []
        self._signal_ids = itertools.count(1)
        self._run_ids = itertools.count(1)

    async def add(self, signal: Signal) -> Signal:
        signal.id = next(self._signal_ids)
        self._signals.append(signal)
        return signal

    async def latest(
        self, model_id: int, source: str, since: datetime, until: datetime
    ) -> Signal | None:
        matches = [
            s
            for s in self._signals
            if s.model_id == model_id
            and s.source == source
            and since <= s.timestamp <= until
        ]
        return max(matches, key=lambda s: (s.timestamp, s.id), default=None)

    async def list_between(
        self, model_id: int, source: str, start: datetime, end: datetime
    ) -> list[Signal]:
        return sorted(
            (
                s
                for s in self._signals
                if s.model_id == model_id
                and s.source == source
                and start <= s.timestamp <= end
            ),
            key=lambda s: (s.timestamp, s.id),
        )

    async def record_run(self, run: SignalRun) -> SignalRun:
        run.id = next(self._run_ids)
        self._runs.append(run)
        return run

    async def latest_run(self, model_id: int, until: datetime) -> SignalRun | None:
        matches = [
            r for r in self._runs if r.model_id == model_id and r.timestamp <= until
        ]
        return max(matches, key=lambda r: (r.timestamp, r.id), default=None)

    async def recent_runs(self, model_id: int, limit: int) -> list[SignalRun]:
        runs = sorted(
            (r for r in self._runs if r.model_id == model_id),
            key=lambda r: (r.timestamp, r.id),
            reverse=True,
        )
        return runs[:limit]


class InMemoryMarketRepository:
    def __init__(self):
        self._snapshots: list[MarketSnapshot] = []
        self._btc: list[BtcPrice] = []
        self._snapshot_ids = itertools.count(1)
        self._btc_ids = itertools.count(1)

    async def add_snapshot(self, snapshot: MarketSnapshot) -> MarketSnapshot:
        snapshot.id = next(self._snapshot_ids)
        self._snapshots.append(snapshot)
        return snapshot

    async def latest_snapshot(
        self,
        *,
        market_id: str | None = None,
        since: datetime | None = None,
        exclude_market_id: str | None = None,
    ) -> MarketSnapshot | None:
        matches = [
            s
            for s in self._snapshots
            if (market_id is None or s.market_id == market_id)
            and (since is None or s.timestamp >= since)
            and (exclude_market_id is None or s.market_id != exclude_market_id)
        ]
        return max(matches, key=lambda s: (s.timestamp, s.id), default=None)

    async def vig_by_market(self) -> dict[str, tuple[float, int]]:
        totals: dict[str, list[float]] = defaultdict(list)
        for s in self._snapshots:
            if s.up_odds > 0 and s.down_odds > 0:
                totals[s.market_id].append(s.up_odds + s.down_odds)
        return {
            market_id: (sum(values) / len(values), len(values))
            for market_id, values in totals.items()
        }

    async def add_btc_price(self, price: BtcPrice) -> BtcPrice:
        price.id = next(self._btc_ids)
        self._btc.append(price)
        return price

    async def latest_btc(self) -> BtcPrice | None:
        return max(self._btc, key=lambda p: (p.timestamp, p.id), default=None)

    async def btc_prices_between(
        self, start: datetime, end: datetime
    ) -> list[BtcPrice]:
        return sorted(
            (p for p in self._btc if start <= p.timestamp <= end),
            key=lambda p: (p.timestamp, p.id),
        )


class InMemoryAnalysisRepository:
    def __init__(self, trades: InMemoryTradeRepository):
        self._trades = trades
        self._rows: dict[int, TradeAnalysis] = {}
        self._ids = itertools.count(1)

    async def get_for_trade(self, trade_id: int) -> TradeAnalysis | None:
        return self._rows.get(trade_id)

    async def add(self, analysis: TradeAnalysis) -> TradeAnalysis:
        existing = self._rows.get(analysis.trade_id)
        if existing is not None:
            return existing
        analysis.id = next(self._ids)
        self._rows[analysis.trade_id] = analysis
        return analysis

    async def for_trades(self, trade_ids: list[int]) -> dict[int, TradeAnalysis]:
        return {tid: self._rows[tid] for tid in trade_ids if tid in self._rows}

    async def unanalyzed_trade_ids(self, model_id: int | None = None) -> list[int]:
        settled = await self._trades.all_settled()
        return [
            t.id
            for t in settled
            if t.id not in self._rows and (model_id is None or t.model_id == model_id)
        ]


class InMemoryInsightRepository:
    def __init__(self):
        self._rows: list[ModelInsight] = []
        self._ids = itertools.count(1)

    async def add(self, insight: ModelInsight) -> ModelInsight | None:
        insight.id = next(self._ids)
        self._rows.append(insight)
        return insight

    async def list_for_model(self, model_id: int, limit: int = 50) -> list[ModelInsight]:
        rows = sorted(
            (i for i in self._rows if i.model_id == model_id),
            key=lambda i: (i.timestamp, i.id),
            reverse=True,
        )
        return rows[:limit]


class InMemoryVersionRepository:
    def __init__(self):
        self._rows: dict[int, ModelVersion] = {}
        self._ids = itertools.count(1)
        self._locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get(self, version_id: int) -> ModelVersion | None:
        return self._rows.get(version_id)

    async def list_for_model(self, model_id: int) -> list[ModelVersion]:
        return sorted(
            (v for v in self._rows.values() if v.model_id == model_id),
            key=lambda v: v.version_num,
        )

    async def latest(self, model_id: int) -> ModelVersion | None:
        versions = await self.list_for_model(model_id)
        return versions[-1] if versions else None

    async def append(
        self,
        model_id: int,
        *,
        reason: str,
        signal_weights: dict[str, float],
        thresholds: dict[str, float],
        created_at: datetime,
    ) -> ModelVersion | None:
        async with self._locks[model_id]:
            parent = await self.latest(model_id)
            version = ModelVersion(
                id=next(self._ids),
                model_id=model_id,
                version_num=parent.version_num + 1 if parent else 1,
                parent_version_id=parent.id if parent else None,
                mutation_reason=reason,
                signal_weights=dict(signal_weights),
                thresholds=dict(thresholds),
                created_at=created_at,
                is_prod_synced=False,
            )
            self._rows[version.id] = version
            return version

    async def mark_prod_synced(self, version_id: int) -> None:
        version = self._rows.get(version_id)
        if version is not None:
            version.is_prod_synced = True


def build_memory_repositories() -> Repositories:
    """Wire a complete in-memory repository bundle."""
    trades = InMemoryTradeRepository()
    return Repositories(
        models=InMemoryModelRepository(),
        trades=trades,
        signals=InMemorySignalRepository(),
        markets=InMemoryMarketRepository(),
        analyses=InMemoryAnalysisRepository(trades),
        insights=InMemoryInsightRepository(),
        versions=InMemoryVersionRepository(),
        state=InMemoryStateStore(),
    )
