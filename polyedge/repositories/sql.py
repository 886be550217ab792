"""SQLAlchemy repository implementations.

Each operation opens its own short session from the factory so that
atomic units map one-to-one onto database transactions. Row locks
(SELECT ... FOR UPDATE) serialize read-modify-write cycles on models and
paper accounts.

The learning-loop tables (trade_analyses, model_insights, versions) may
lag behind in a partially migrated database: a ProgrammingError there is
logged and the feature degrades instead of failing the sweep.
"""

from collections.abc import Callable
from datetime import datetime
from typing import TypeVar

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

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
from polyedge.repositories.base import Repositories, StateStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SessionFactory = async_sessionmaker[AsyncSession]

SETTLED_STATUSES = (TradeStatus.CLOSED.value, TradeStatus.EXPIRED.value)


def _settled_clause():
    return (Trade.status.in_(SETTLED_STATUSES), Trade.pnl.is_not(None))


class SqlModelRepository:
    def __init__(self, sessions: SessionFactory):
        self.sessions = sessions

    async def get(self, model_id: int) -> TradingModel | None:
        async with self.sessions() as session:
            return await session.get(TradingModel, model_id)

    async def get_by_name(self, name: str) -> TradingModel | None:
        async with self.sessions() as session:
            result = await session.execute(
                select(TradingModel).where(TradingModel.name == name)
            )
            return result.scalar_one_or_none()

    async def list_active(self) -> list[TradingModel]:
        async with self.sessions() as session:
            result = await session.execute(
                select(TradingModel)
                .where(TradingModel.is_active.is_(True))
                .order_by(TradingModel.id)
            )
            return list(result.scalars().all())

    async def add(self, model: TradingModel) -> TradingModel:
        async with self.sessions() as session, session.begin():
            session.add(model)
        return model

    async def update(
        self, model_id: int, mutate: Callable[[TradingModel], T]
    ) -> T | None:
        async with self.sessions() as session, session.begin():
            result = await session.execute(
                select(TradingModel).where(TradingModel.id == model_id).with_for_update()
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return mutate(model)


class SqlTradeRepository:
    def __init__(self, sessions: SessionFactory):
        self.sessions = sessions

    async def get(self, trade_id: int) -> Trade | None:
        async with self.sessions() as session:
            return await session.get(Trade, trade_id)

    async def get_account(self, model_id: int) -> PaperAccount | None:
        async with self.sessions() as session:
            result = await session.execute(
                select(PaperAccount).where(PaperAccount.model_id == model_id)
            )
            return result.scalar_one_or_none()

    async def create_account(
        self, model_id: int, starting_balance: float
    ) -> PaperAccount:
        existing = await self.get_account(model_id)
        if existing is not None:
            return existing
        account = PaperAccount(
            model_id=model_id,
            balance_usdc=starting_balance,
            starting_balance=starting_balance,
        )
        try:
            async with self.sessions() as session, session.begin():
                session.add(account)
        except IntegrityError:
            # Created concurrently by another worker
            return await self.get_account(model_id)
        return account

    async def _locked_account(
        self, session: AsyncSession, model_id: int
    ) -> PaperAccount | None:
        result = await session.execute(
            select(PaperAccount)
            .where(PaperAccount.model_id == model_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def open_trade(
        self, trade: Trade, resolve_amount: Callable[[float], float]
    ) -> Trade | None:
        async with self.sessions() as session, session.begin():
            account = await self._locked_account(session, trade.model_id)
            if account is None:
                return None
            amount = resolve_amount(account.balance_usdc)
            if amount <= 0 or amount > account.balance_usdc:
                return None
            account.balance_usdc = round(account.balance_usdc - amount, 4)
            trade.amount_usdc = amount
            session.add(trade)
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
        async with self.sessions() as session, session.begin():
            result = await session.execute(
                select(Trade).where(Trade.id == trade_id).with_for_update()
            )
            trade = result.scalar_one_or_none()
            if trade is None or trade.status != TradeStatus.OPEN.value:
                return None
            trade.status = status
            trade.exit_odds = exit_odds
            trade.pnl = pnl
            trade.closed_at = closed_at
            if note:
                trade.notes = f"{trade.notes} {note}".strip() if trade.notes else note
            if credit > 0:
                account = await self._locked_account(session, trade.model_id)
                if account is not None:
                    account.balance_usdc = round(account.balance_usdc + credit, 4)
        return trade

    async def list_open(self, model_id: int | None = None) -> list[Trade]:
        query = select(Trade).where(Trade.status == TradeStatus.OPEN.value)
        if model_id is not None:
            query = query.where(Trade.model_id == model_id)
        async with self.sessions() as session:
            result = await session.execute(query.order_by(Trade.opened_at, Trade.id))
            return list(result.scalars().all())

    async def recent_settled(
        self, model_id: int, limit: int | None = None
    ) -> list[Trade]:
        query = (
            select(Trade)
            .where(Trade.model_id == model_id, *_settled_clause())
            .order_by(Trade.closed_at.desc(), Trade.id.desc())
        )
        if limit is not None:
            query = query.limit(limit)
        async with self.sessions() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def all_settled(self) -> list[Trade]:
        async with self.sessions() as session:
            result = await session.execute(
                select(Trade)
                .where(*_settled_clause())
                .order_by(Trade.opened_at, Trade.id)
            )
            return list(result.scalars().all())

    async def settled_opened_between(
        self, model_id: int, start: datetime, end: datetime | None
    ) -> list[Trade]:
        query = select(Trade).where(
            Trade.model_id == model_id,
            *_settled_clause(),
            Trade.opened_at >= start,
        )
        if end is not None:
            query = query.where(Trade.opened_at < end)
        async with self.sessions() as session:
            result = await session.execute(query.order_by(Trade.closed_at, Trade.id))
            return list(result.scalars().all())

    async def count_settled(self, model_id: int) -> int:
        async with self.sessions() as session:
            result = await session.execute(
                select(func.count(Trade.id)).where(
                    Trade.model_id == model_id, *_settled_clause()
                )
            )
            return result.scalar_one()


class SqlSignalRepository:
    def __init__(self, sessions: SessionFactory):
        self.sessions = sessions

    async def add(self, signal: Signal) -> Signal:
        async with self.sessions() as session, session.begin():
            session.add(signal)
        return signal

    async def latest(
        self, model_id: int, source: str, since: datetime, until: datetime
    ) -> Signal | None:
        async with self.sessions() as session:
            result = await session.execute(
                select(Signal)
                .where(
                    Signal.model_id == model_id,
                    Signal.source == source,
                    Signal.timestamp >= since,
                    Signal.timestamp <= until,
                )
                .order_by(Signal.timestamp.desc(), Signal.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def list_between(
        self, model_id: int, source: str, start: datetime, end: datetime
    ) -> list[Signal]:
        async with self.sessions() as session:
            result = await session.execute(
                select(Signal)
                .where(
                    Signal.model_id == model_id,
                    Signal.source == source,
                    Signal.timestamp >= start,
                    Signal.timestamp <= end,
                )
                .order_by(Signal.timestamp, Signal.id)
            )
            return list(result.scalars().all())

    async def record_run(self, run: SignalRun) -> SignalRun:
        try:
            async with self.sessions() as session, session.begin():
                session.add(run)
        except ProgrammingError as e:
            logger.warning("signal_runs_unavailable", model_id=run.model_id, error=str(e))
        return run

    async def latest_run(self, model_id: int, until: datetime) -> SignalRun | None:
        async with self.sessions() as session:
            result = await session.execute(
                select(SignalRun)
                .where(SignalRun.model_id == model_id, SignalRun.timestamp <= until)
                .order_by(SignalRun.timestamp.desc(), SignalRun.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def recent_runs(self, model_id: int, limit: int) -> list[SignalRun]:
        async with self.sessions() as session:
            result = await session.execute(
                select(SignalRun)
                .where(SignalRun.model_id == model_id)
                .order_by(SignalRun.timestamp.desc(), SignalRun.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())


class SqlMarketRepository:
    def __init__(self, sessions: SessionFactory):
        self.sessions = sessions

    async def add_snapshot(self, snapshot: MarketSnapshot) -> MarketSnapshot:
        async with self.sessions() as session, session.begin():
            session.add(snapshot)
        return snapshot

    async def latest_snapshot(
        self,
        *,
        market_id: str | None = None,
        since: datetime | None = None,
        exclude_market_id: str | None = None,
    ) -> MarketSnapshot | None:
        query = select(MarketSnapshot)
        if market_id is not None:
            query = query.where(MarketSnapshot.market_id == market_id)
        if since is not None:
            query = query.where(MarketSnapshot.timestamp >= since)
        if exclude_market_id is not None:
            query = query.where(MarketSnapshot.market_id != exclude_market_id)
        query = query.order_by(
            MarketSnapshot.timestamp.desc(), MarketSnapshot.id.desc()
        ).limit(1)
        async with self.sessions() as session:
            result = await session.execute(query)
            return result.scalar_one_or_none()

    async def vig_by_market(self) -> dict[str, tuple[float, int]]:
        async with self.sessions() as session:
            result = await session.execute(
                select(
                    MarketSnapshot.market_id,
                    func.avg(MarketSnapshot.up_odds + MarketSnapshot.down_odds),
                    func.count(MarketSnapshot.id),
                )
                .where(MarketSnapshot.up_odds > 0, MarketSnapshot.down_odds > 0)
                .group_by(MarketSnapshot.market_id)
            )
            return {
                market_id: (float(avg_total), int(samples))
                for market_id, avg_total, samples in result.all()
            }

    async def add_btc_price(self, price: BtcPrice) -> BtcPrice:
        async with self.sessions() as session, session.begin():
            session.add(price)
        return price

    async def latest_btc(self) -> BtcPrice | None:
        async with self.sessions() as session:
            result = await session.execute(
                select(BtcPrice)
                .order_by(BtcPrice.timestamp.desc(), BtcPrice.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def btc_prices_between(
        self, start: datetime, end: datetime
    ) -> list[BtcPrice]:
        async with self.sessions() as session:
            result = await session.execute(
                select(BtcPrice)
                .where(BtcPrice.timestamp >= start, BtcPrice.timestamp <= end)
                .order_by(BtcPrice.timestamp, BtcPrice.id)
            )
            return list(result.scalars().all())


class SqlAnalysisRepository:
    def __init__(self, sessions: SessionFactory):
        self.sessions = sessions

    async def get_for_trade(self, trade_id: int) -> TradeAnalysis | None:
        try:
            async with self.sessions() as session:
                result = await session.execute(
                    select(TradeAnalysis).where(TradeAnalysis.trade_id == trade_id)
                )
                return result.scalar_one_or_none()
        except ProgrammingError as e:
            logger.warning("trade_analyses_unavailable", error=str(e))
            return None

    async def add(self, analysis: TradeAnalysis) -> TradeAnalysis:
        try:
            async with self.sessions() as session, session.begin():
                session.add(analysis)
        except IntegrityError:
            existing = await self.get_for_trade(analysis.trade_id)
            if existing is not None:
                return existing
            raise
        except ProgrammingError as e:
            logger.warning(
                "trade_analysis_not_stored", trade_id=analysis.trade_id, error=str(e)
            )
        return analysis

    async def for_trades(self, trade_ids: list[int]) -> dict[int, TradeAnalysis]:
        if not trade_ids:
            return {}
        try:
            async with self.sessions() as session:
                result = await session.execute(
                    select(TradeAnalysis).where(TradeAnalysis.trade_id.in_(trade_ids))
                )
                return {a.trade_id: a for a in result.scalars().all()}
        except ProgrammingError as e:
            logger.warning("trade_analyses_unavailable", error=str(e))
            return {}

    async def unanalyzed_trade_ids(self, model_id: int | None = None) -> list[int]:
        query = (
            select(Trade.id)
            .outerjoin(TradeAnalysis, TradeAnalysis.trade_id == Trade.id)
            .where(*_settled_clause(), TradeAnalysis.id.is_(None))
            .order_by(Trade.opened_at, Trade.id)
        )
        if model_id is not None:
            query = query.where(Trade.model_id == model_id)
        try:
            async with self.sessions() as session:
                result = await session.execute(query)
                return list(result.scalars().all())
        except ProgrammingError as e:
            logger.warning("trade_analyses_unavailable", error=str(e))
            return []


class SqlInsightRepository:
    def __init__(self, sessions: SessionFactory):
        self.sessions = sessions

    async def add(self, insight: ModelInsight) -> ModelInsight | None:
        try:
            async with self.sessions() as session, session.begin():
                session.add(insight)
        except ProgrammingError as e:
            logger.warning(
                "model_insights_unavailable", model_id=insight.model_id, error=str(e)
            )
            return None
        return insight

    async def list_for_model(self, model_id: int, limit: int = 50) -> list[ModelInsight]:
        try:
            async with self.sessions() as session:
                result = await session.execute(
                    select(ModelInsight)
                    .where(ModelInsight.model_id == model_id)
                    .order_by(ModelInsight.timestamp.desc(), ModelInsight.id.desc())
                    .limit(limit)
                )
                return list(result.scalars().all())
        except ProgrammingError as e:
            logger.warning("model_insights_unavailable", model_id=model_id, error=str(e))
            return []


class SqlVersionRepository:
    def __init__(self, sessions: SessionFactory):
        self.sessions = sessions

    async def get(self, version_id: int) -> ModelVersion | None:
        try:
            async with self.sessions() as session:
                return await session.get(ModelVersion, version_id)
        except ProgrammingError as e:
            logger.warning("versions_unavailable", error=str(e))
            return None

    async def list_for_model(self, model_id: int) -> list[ModelVersion]:
        try:
            async with self.sessions() as session:
                result = await session.execute(
                    select(ModelVersion)
                    .where(ModelVersion.model_id == model_id)
                    .order_by(ModelVersion.version_num)
                )
                return list(result.scalars().all())
        except ProgrammingError as e:
            logger.warning("versions_unavailable", model_id=model_id, error=str(e))
            return []

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
        try:
            async with self.sessions() as session, session.begin():
                # Serialize version numbering per model on the model row
                await session.execute(
                    select(TradingModel.id)
                    .where(TradingModel.id == model_id)
                    .with_for_update()
                )
                result = await session.execute(
                    select(ModelVersion)
                    .where(ModelVersion.model_id == model_id)
                    .order_by(ModelVersion.version_num.desc())
                    .limit(1)
                )
                parent = result.scalar_one_or_none()
                version = ModelVersion(
                    model_id=model_id,
                    version_num=parent.version_num + 1 if parent else 1,
                    parent_version_id=parent.id if parent else None,
                    mutation_reason=reason,
                    signal_weights=dict(signal_weights),
                    thresholds=dict(thresholds),
                    created_at=created_at,
                    is_prod_synced=False,
                )
                session.add(version)
        except ProgrammingError as e:
            logger.warning("version_not_stored", model_id=model_id, error=str(e))
            return None
        return version

    async def mark_prod_synced(self, version_id: int) -> None:
        try:
            async with self.sessions() as session, session.begin():
                version = await session.get(ModelVersion, version_id, with_for_update=True)
                if version is not None:
                    version.is_prod_synced = True
        except ProgrammingError as e:
            logger.warning("versions_unavailable", version_id=version_id, error=str(e))


def build_sql_repositories(sessions: SessionFactory, state: StateStore) -> Repositories:
    """Wire a complete SQL-backed repository bundle."""
    return Repositories(
        models=SqlModelRepository(sessions),
        trades=SqlTradeRepository(sessions),
        signals=SqlSignalRepository(sessions),
        markets=SqlMarketRepository(sessions),
        analyses=SqlAnalysisRepository(sessions),
        insights=SqlInsightRepository(sessions),
        versions=SqlVersionRepository(sessions),
        state=state,
    )
