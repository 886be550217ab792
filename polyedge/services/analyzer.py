"""Post-trade analysis.

Attributes a settled trade's P&L to the signals that were live when it
was opened, classifies the outcome with a fixed rule cascade and derives
small advisory weight adjustments. One analysis is stored per trade;
asking again returns the stored row.
"""

from datetime import datetime, timedelta
from typing import Any

import structlog

from polyedge.config.trading import (
    ALL_SOURCES,
    AggregatorConfig,
    AnalyzerConfig,
    Direction,
    Verdict,
    get_trading_config,
)
from polyedge.models.domain import BtcPrice, Signal, Trade, TradeAnalysis
from polyedge.repositories.base import Repositories

logger = structlog.get_logger(__name__)


def score_signal_contributions(
    signals: list[Signal], direction: str, won: bool
) -> dict[str, float]:
    """
    Signed contribution per source: normalized * direction * outcome.

    Positive means the signal agreed with a winning side or disagreed
    with a losing one. Only the first reading per source is used, so
    callers pass signals newest first.
    """
    dir_mult = 1 if direction == Direction.UP.value else -1
    out_mult = 1 if won else -1
    contributions: dict[str, float] = {}
    for signal in signals:
        if signal.source in contributions:
            continue
        contributions[signal.source] = round(
            (signal.normalized or 0.0) * dir_mult * out_mult, 4
        )
    return contributions


def determine_verdict(
    trade: Trade,
    btc_change_1h: float | None,
    contributions: dict[str, float],
    config: AnalyzerConfig | None = None,
) -> Verdict:
    """Rule cascade: first matching rule wins."""
    config = config or get_trading_config().analyzer
    pnl = trade.pnl or 0.0
    won = pnl > 0

    # Small wins fall through to good_trade as well
    if won:
        return Verdict.GOOD_TRADE

    entry = trade.entry_odds if trade.entry_odds is not None else 0.5
    if (trade.direction == Direction.UP.value and entry < config.bad_up_odds) or (
        trade.direction == Direction.DOWN.value and entry > config.bad_down_odds
    ):
        return Verdict.BAD_EDGE

    change = btc_change_1h or 0.0
    if (trade.direction == Direction.UP.value and change < -config.reversal_pct) or (
        trade.direction == Direction.DOWN.value and change > config.reversal_pct
    ):
        return Verdict.MARKET_REVERSAL

    if contributions:
        mean = sum(contributions.values()) / len(contributions)
        if mean > config.timing_alignment:
            return Verdict.TIMING
    return Verdict.SIGNAL_FAILURE


def build_adjustment_suggestions(
    contributions: dict[str, float], config: AnalyzerConfig | None = None
) -> dict[str, float]:
    config = config or get_trading_config().analyzer
    suggestions = {}
    for source, contribution in contributions.items():
        delta = round(contribution * config.suggestion_scale, 4)
        if abs(delta) >= config.min_suggestion:
            suggestions[source] = delta
    return suggestions


def btc_regime(change_1h: float | None, config: AnalyzerConfig | None = None) -> str:
    config = config or get_trading_config().analyzer
    if change_1h is None:
        return "unknown"
    if change_1h > config.bullish_pct:
        return "bullish"
    if change_1h < config.bearish_pct:
        return "bearish"
    return "sideways"


class TradeAnalyzer:
    """Writes one TradeAnalysis per settled trade."""

    def __init__(
        self,
        repos: Repositories,
        config: AnalyzerConfig | None = None,
        aggregator_config: AggregatorConfig | None = None,
    ):
        self.repos = repos
        self.config = config or get_trading_config().analyzer
        self.aggregator_config = aggregator_config or get_trading_config().aggregator

    async def _signals_at(self, trade: Trade, model_weights: dict[str, float]) -> list[Signal]:
        """Latest reading per source the aggregator could have seen for this trade."""
        run = await self.repos.signals.latest_run(trade.model_id, trade.opened_at)
        anchor = run.timestamp if run is not None else trade.opened_at
        sources = list(model_weights) or list(ALL_SOURCES)
        signals = []
        for source in sources:
            window = timedelta(minutes=self.aggregator_config.window_for(source))
            signal = await self.repos.signals.latest(
                trade.model_id, source, anchor - window, anchor
            )
            if signal is not None:
                signals.append(signal)
        signals.sort(key=lambda s: s.timestamp, reverse=True)
        return signals

    async def _btc_near(self, ts: datetime) -> BtcPrice | None:
        tolerance = timedelta(minutes=self.config.btc_tolerance_minutes)
        prices = await self.repos.markets.btc_prices_between(ts - tolerance, ts + tolerance)
        return min(prices, key=lambda p: abs(p.timestamp - ts), default=None)

    async def _fear_greed_near(self, trade: Trade) -> float | None:
        readings = await self.repos.signals.list_between(
            trade.model_id,
            "fear_greed",
            trade.opened_at - timedelta(minutes=30),
            trade.opened_at + timedelta(minutes=5),
        )
        nearest = min(
            readings, key=lambda s: abs(s.timestamp - trade.opened_at), default=None
        )
        return nearest.normalized if nearest else None

    async def _news_mean(self, trade: Trade) -> float | None:
        readings = await self.repos.signals.list_between(
            trade.model_id,
            "news_sentiment",
            trade.opened_at - timedelta(minutes=30),
            trade.opened_at + timedelta(minutes=5),
        )
        if not readings:
            return None
        return round(sum(s.normalized for s in readings) / len(readings), 4)

    async def analyze_trade(
        self, trade_id: int, now: datetime | None = None
    ) -> TradeAnalysis | None:
        """Analyze a settled trade, or return its stored analysis."""
        trade = await self.repos.trades.get(trade_id)
        if trade is None:
            logger.error("analysis_trade_not_found", trade_id=trade_id)
            return None
        if trade.is_open:
            logger.warning("analysis_trade_still_open", trade_id=trade_id)
            return None

        existing = await self.repos.analyses.get_for_trade(trade_id)
        if existing is not None:
            return existing

        model = await self.repos.models.get(trade.model_id)
        weights = model.signal_weights if model else {}

        pnl = trade.pnl or 0.0
        won = pnl > 0
        signals = await self._signals_at(trade, weights)
        btc = await self._btc_near(trade.opened_at)
        change_1h = btc.change_1h if btc else None

        contributions = score_signal_contributions(signals, trade.direction, won)
        verdict = determine_verdict(trade, change_1h, contributions, self.config)
        suggestions = build_adjustment_suggestions(contributions, self.config)

        conditions: dict[str, Any] = {
            "btc_price": btc.price if btc else None,
            "btc_change_1h": change_1h,
            "btc_change_24h": btc.change_24h if btc else None,
            "btc_regime": btc_regime(change_1h, self.config),
            "fear_greed": await self._fear_greed_near(trade),
            "news_sentiment": await self._news_mean(trade),
            "entry_odds": trade.entry_odds,
            "exit_odds": trade.exit_odds,
            "pnl": pnl,
            "outcome": "win" if won else "loss",
            "signals_active": [s.source for s in signals],
        }

        analysis = TradeAnalysis(
            trade_id=trade.id,
            model_id=trade.model_id,
            verdict=verdict.value,
            signal_contributions=contributions,
            adjustment_suggestions=suggestions,
            market_conditions=conditions,
            analyzed_at=now or trade.closed_at or trade.opened_at,
        )
        stored = await self.repos.analyses.add(analysis)

        logger.info(
            "trade_analyzed",
            trade_id=trade.id,
            model_id=trade.model_id,
            verdict=stored.verdict,
            pnl=pnl,
            sources=len(contributions),
        )
        return stored

    async def analyze_all_pending(self, model_id: int | None = None) -> list[TradeAnalysis]:
        """Analyze every settled trade that has no analysis yet."""
        results = []
        for trade_id in await self.repos.analyses.unanalyzed_trade_ids(model_id):
            try:
                analysis = await self.analyze_trade(trade_id)
            except Exception as e:
                logger.error("trade_analysis_failed", trade_id=trade_id, error=str(e))
                continue
            if analysis is not None:
                results.append(analysis)
        logger.info("pending_trades_analyzed", model_id=model_id, count=len(results))
        return results
