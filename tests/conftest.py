"""Pytest configuration and fixtures for PolyEdge tests."""

from datetime import datetime, timedelta, timezone

import pytest

from polyedge.config.trading import TradeStatus
from polyedge.models.domain import (
    BtcPrice,
    MarketSnapshot,
    Signal,
    Trade,
    TradingModel,
)
from polyedge.repositories.memory import build_memory_repositories
from polyedge.services.engine import build_trading_engine
from polyedge.services.oracle import NullOracle

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)

BALANCED_WEIGHTS = {
    "price_momentum": 0.25,
    "x_sentiment": 0.20,
    "news_sentiment": 0.20,
    "fear_greed": 0.15,
    "volume": 0.10,
    "poly_odds": 0.10,
}


class RecordingNotifier:
    """Keeps every message instead of delivering it."""

    def __init__(self):
        self.messages: list[str] = []

    async def send(self, text: str) -> bool:
        self.messages.append(text)
        return True


@pytest.fixture
def now():
    """Fixed reference time (UTC)."""
    return NOW


@pytest.fixture
def repos():
    """Fresh in-memory repository bundle."""
    return build_memory_repositories()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(repos, notifier):
    """Fully wired engine over in-memory storage with no oracle."""
    return build_trading_engine(repos, notifier=notifier, oracle=NullOracle())


@pytest.fixture
def make_model(repos):
    """Factory: add a model with a funded paper account."""

    async def _make(
        name="Balanced",
        weights=None,
        bet_threshold=0.65,
        max_bet=10.0,
        balance=100.0,
        created_at=NOW - timedelta(days=1),
        **fields,
    ) -> TradingModel:
        model = TradingModel(
            name=name,
            description=fields.pop("description", None),
            is_active=fields.pop("is_active", True),
            signal_weights=dict(weights or BALANCED_WEIGHTS),
            thresholds={"bet_threshold": bet_threshold, "max_bet": max_bet},
            consecutive_losses=fields.pop("consecutive_losses", 0),
            blackout_until=fields.pop("blackout_until", None),
            version=fields.pop("version", 1),
            total_learning_cycles=fields.pop("total_learning_cycles", 0),
            created_at=created_at,
        )
        model = await repos.models.add(model)
        await repos.trades.create_account(model.id, balance)
        return model

    return _make


@pytest.fixture
def add_signal(repos):
    """Factory: record a normalized signal reading."""

    async def _add(model_id, source, normalized, at=None) -> Signal:
        return await repos.signals.add(
            Signal(
                model_id=model_id,
                source=source,
                normalized=normalized,
                raw_value=None,
                signal_metadata=None,
                timestamp=at or NOW - timedelta(minutes=1),
            )
        )

    return _add


@pytest.fixture
def add_snapshot(repos):
    """Factory: record a market snapshot."""

    async def _add(
        market_id="btc-updown-5m",
        up_odds=0.45,
        down_odds=0.57,
        time_remaining=240,
        at=None,
    ) -> MarketSnapshot:
        return await repos.markets.add_snapshot(
            MarketSnapshot(
                market_id=market_id,
                market_name=f"BTC Up or Down ({market_id})",
                up_odds=up_odds,
                down_odds=down_odds,
                volume=5000.0,
                time_remaining=time_remaining,
                timestamp=at or NOW,
            )
        )

    return _add


@pytest.fixture
def add_btc(repos):
    """Factory: record a BTC price reading."""

    async def _add(change_1h, at=None, price=65000.0, change_24h=None) -> BtcPrice:
        return await repos.markets.add_btc_price(
            BtcPrice(
                timestamp=at or NOW,
                price=price,
                change_1h=change_1h,
                change_24h=change_24h,
                volume_24h=None,
            )
        )

    return _add


@pytest.fixture
def add_settled_trade(repos):
    """Factory: open and settle a trade through the repository contract."""

    async def _add(
        model_id,
        pnl,
        direction="up",
        amount=5.0,
        entry_odds=0.5,
        opened_at=None,
        closed_at=None,
        exit_odds=None,
        market_id="btc-updown-5m",
    ) -> Trade:
        opened_at = opened_at or NOW - timedelta(minutes=30)
        trade = await repos.trades.open_trade(
            Trade(
                model_id=model_id,
                market_id=market_id,
                market_name=None,
                direction=direction,
                amount_usdc=amount,
                entry_odds=entry_odds,
                exit_odds=None,
                status=TradeStatus.OPEN.value,
                pnl=None,
                opened_at=opened_at,
                closed_at=None,
                notes=None,
            ),
            lambda balance: amount,
        )
        if exit_odds is None:
            exit_odds = 0.9 if (pnl > 0) == (direction == "up") else 0.1
        return await repos.trades.settle_trade(
            trade.id,
            status=TradeStatus.CLOSED.value,
            exit_odds=exit_odds,
            pnl=pnl,
            credit=amount + pnl,
            closed_at=closed_at or opened_at + timedelta(minutes=5),
        )

    return _add
