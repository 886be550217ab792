"""Signal aggregation.

Combines each model's freshest per-source signals into a weighted score,
maps it onto a direction, a confidence tier and an action, and carries a
bet through the skip gate to the ledger. Above the pre-score gate the
optional decision oracle is consulted; its answer can only veto a bet or,
with high confidence, place one inside the Kelly cap.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog

from polyedge.config.trading import (
    ALL_SOURCES,
    Action,
    AggregatorConfig,
    Confidence,
    Direction,
    get_trading_config,
)
from polyedge.models.domain import MarketSnapshot, SignalRun, Trade, TradingModel
from polyedge.repositories.base import BLACKOUT_KEY, Repositories
from polyedge.services.bet_sizer import BetSizer, score_to_win_probability
from polyedge.services.ledger import PaperLedger
from polyedge.services.notifier import LogNotifier, Notifier, notify_safely
from polyedge.services.oracle import (
    BetDecision,
    DecisionOracle,
    HoldDecision,
    NullOracle,
    OracleBrief,
    OracleDecision,
    OracleError,
)
from polyedge.services.pattern_memory import PatternMemory

logger = structlog.get_logger(__name__)


def classify_direction(score: float, config: AggregatorConfig | None = None) -> Direction:
    config = config or get_trading_config().aggregator
    if score > config.direction_threshold:
        return Direction.UP
    if score < -config.direction_threshold:
        return Direction.DOWN
    return Direction.HOLD


def classify_confidence(score: float, config: AggregatorConfig | None = None) -> Confidence:
    config = config or get_trading_config().aggregator
    magnitude = abs(score)
    if magnitude > config.high_confidence:
        return Confidence.HIGH
    if magnitude > config.medium_confidence:
        return Confidence.MEDIUM
    return Confidence.LOW


def choose_action(
    score: float, direction: Direction, confidence: Confidence, bet_threshold: float
) -> Action:
    """bet iff the score clears the model threshold with a real direction."""
    if (
        abs(score) > bet_threshold
        and confidence != Confidence.LOW
        and direction != Direction.HOLD
    ):
        return Action.BET
    if confidence == Confidence.HIGH:
        return Action.ALERT
    return Action.SKIP


@dataclass
class SignalContribution:
    source: str
    value: float
    weight: float

    @property
    def contribution(self) -> float:
        return self.value * self.weight


def build_reasoning(
    score: float,
    direction: Direction,
    confidence: Confidence,
    details: list[SignalContribution],
    top_n: int = 3,
) -> str:
    top = sorted(details, key=lambda d: abs(d.contribution), reverse=True)[:top_n]
    listed = ", ".join(f"{d.source}={d.value:.2f}(w:{d.weight:g})" for d in top)
    return (
        f"Score: {score:.3f}. Top signals: [{listed}]. "
        f"{direction.value.upper()} bias with {confidence.value} confidence."
    )


@dataclass
class AggregationResult:
    """What one aggregation run decided and did."""

    model_id: int
    action: Action
    score: float = 0.0
    direction: Direction = Direction.HOLD
    confidence: Confidence = Confidence.LOW
    reasoning: str = ""
    sources_used: list[str] = field(default_factory=list)
    run_id: Optional[int] = None
    trade: Optional[Trade] = None
    skip_reason: Optional[str] = None
    oracle: Optional[dict[str, Any]] = None


class SignalAggregator:
    """Per-model aggregation and bet execution."""

    def __init__(
        self,
        repos: Repositories,
        ledger: PaperLedger,
        bet_sizer: BetSizer,
        patterns: PatternMemory,
        oracle: DecisionOracle | None = None,
        notifier: Notifier | None = None,
        config: AggregatorConfig | None = None,
        oracle_timeout: float = 8.0,
        notify_timeout: float = 5.0,
    ):
        self.repos = repos
        self.ledger = ledger
        self.bet_sizer = bet_sizer
        self.patterns = patterns
        self.oracle = oracle or NullOracle()
        self.notifier = notifier or LogNotifier()
        self.config = config or get_trading_config().aggregator
        self.oracle_timeout = oracle_timeout
        self.notify_timeout = notify_timeout
        self.volatility_multiplier = get_trading_config().learning.volatility_multiplier

    # =========================================================================
    # Scoring
    # =========================================================================

    @staticmethod
    def _ordered_sources(weights: dict[str, float]) -> list[str]:
        known = [s for s in ALL_SOURCES if s in weights]
        extra = sorted(s for s in weights if s not in ALL_SOURCES)
        return known + extra

    async def collect(
        self, model: TradingModel, now: datetime
    ) -> list[SignalContribution]:
        """Freshest reading per weighted source inside its window."""
        details = []
        weights = model.signal_weights or {}
        for source in self._ordered_sources(weights):
            weight = float(weights.get(source) or 0.0)
            if weight <= 0:
                continue
            window = timedelta(minutes=self.config.window_for(source))
            signal = await self.repos.signals.latest(model.id, source, now - window, now)
            if signal is None:
                continue
            details.append(SignalContribution(source, signal.normalized, weight))
        return details

    @staticmethod
    def score(details: list[SignalContribution]) -> float | None:
        total_weight = sum(d.weight for d in details)
        if total_weight <= 0:
            return None
        weighted = sum(d.contribution for d in details)
        return max(-1.0, min(1.0, weighted / total_weight))

    # =========================================================================
    # Execution
    # =========================================================================

    async def _active_market(self, now: datetime) -> MarketSnapshot | None:
        return await self.repos.markets.latest_snapshot(
            since=now - timedelta(minutes=self.config.market_max_age_minutes),
            exclude_market_id=self.config.placeholder_market_id,
        )

    async def _btc_volatility(self) -> float | None:
        latest = await self.repos.markets.latest_btc()
        if latest is None or latest.change_1h is None:
            return None
        return abs(latest.change_1h)

    async def _gate(
        self,
        model: TradingModel,
        direction: Direction,
        score: float,
        market: MarketSnapshot,
        now: datetime,
    ):
        """Skip gate for a bet on ``market``; returns (decision, entry_odds)."""
        entry_odds = market.up_odds if direction == Direction.UP else market.down_odds
        account = await self.repos.trades.get_account(model.id)
        balance = account.balance_usdc if account else 0.0
        edge = await self.patterns.get_market_edge(
            direction.value, entry_odds, now.hour, await self._btc_volatility()
        )
        decision = await self.bet_sizer.should_skip_trade(
            model,
            entry_odds,
            direction.value,
            balance=balance,
            win_probability=score_to_win_probability(score),
            max_bet=model.max_bet,
            edge_score=edge,
            now=now,
        )
        return decision, entry_odds

    async def _consult_oracle(
        self,
        model: TradingModel,
        score: float,
        direction: Direction,
        confidence: Confidence,
        details: list[SignalContribution],
        market: MarketSnapshot | None,
    ) -> tuple[OracleDecision | None, str | None]:
        """Ask the oracle with a hard timeout; (decision, failure reason)."""
        stats = await self.ledger.get_model_stats(model.id)
        brief = OracleBrief(
            model_id=model.id,
            model_name=model.name,
            signal_weights=dict(model.signal_weights),
            signals={d.source: d.value for d in details},
            score=round(score, 4),
            direction=direction.value,
            confidence=confidence.value,
            market=(
                {
                    "market_id": market.market_id,
                    "market_name": market.market_name,
                    "up_odds": market.up_odds,
                    "down_odds": market.down_odds,
                    "time_remaining": market.time_remaining,
                }
                if market
                else {}
            ),
            performance={
                k: stats[k]
                for k in ("balance", "total_trades", "win_rate", "current_streak", "streak_type")
            },
            kelly_cap=model.max_bet,
        )
        try:
            decision = await asyncio.wait_for(
                self.oracle.decide(brief), timeout=self.oracle_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("oracle_timeout", model_id=model.id, timeout=self.oracle_timeout)
            return None, "oracle timeout"
        except OracleError as e:
            logger.warning("oracle_failed", model_id=model.id, error=str(e))
            return None, str(e)
        except Exception as e:
            logger.error("oracle_unexpected_error", model_id=model.id, error=str(e))
            return None, str(e)
        return decision, None

    async def run_for_model(
        self, model_id: int, now: datetime | None = None
    ) -> AggregationResult | None:
        now = now or datetime.now(timezone.utc)
        model = await self.repos.models.get(model_id)
        if model is None:
            logger.error("aggregator_model_not_found", model_id=model_id)
            return None

        details = await self.collect(model, now)
        score = self.score(details)
        if score is None:
            logger.info("no_signals_available", model_id=model_id)
            return AggregationResult(
                model_id=model_id, action=Action.SKIP, skip_reason="no_signals"
            )

        throttles = (await self.repos.state.load(BLACKOUT_KEY) or {}).get("global") or {}
        if throttles.get("high_volatility"):
            score *= self.volatility_multiplier

        direction = classify_direction(score, self.config)
        confidence = classify_confidence(score, self.config)
        action = choose_action(score, direction, confidence, model.bet_threshold)
        reasoning = build_reasoning(
            score, direction, confidence, details, self.config.reasoning_top_n
        )
        result = AggregationResult(
            model_id=model_id,
            action=action,
            score=score,
            direction=direction,
            confidence=confidence,
            reasoning=reasoning,
            sources_used=[d.source for d in details],
        )

        market = await self._active_market(now)
        bet_direction = direction if action == Action.BET else None
        requested: float | None = None
        oracle_reasoning = None

        if abs(score) > self.config.oracle_gate:
            decision, failure = await self._consult_oracle(
                model, score, direction, confidence, details, market
            )
            result.oracle = {"consulted": True, "applied": False}
            if decision is None:
                result.oracle["skipped"] = True
                result.oracle["reason"] = failure
            else:
                result.oracle.update(decision.model_dump())
                oracle_reasoning = decision.reasoning
                # Low confidence leaves the aggregator's own call in place
                if isinstance(decision, HoldDecision) and decision.confidence != "low":
                    result.oracle["applied"] = True
                    bet_direction = None
                    result.action = Action.SKIP
                    result.skip_reason = "oracle hold"
                elif isinstance(decision, BetDecision) and decision.confidence == "high":
                    result.oracle["applied"] = True
                    bet_direction = Direction(decision.direction)
                    requested = decision.amount
                    result.action = Action.BET

        if bet_direction is not None:
            blocked = (bet_direction == Direction.UP and throttles.get("skip_up_bets")) or (
                bet_direction == Direction.DOWN and throttles.get("skip_down_bets")
            )
            if blocked:
                result.action = Action.SKIP
                result.skip_reason = f"{bet_direction.value} bets paused by fear/greed"
            elif market is None:
                logger.info("no_active_market", model_id=model_id)
                result.action = Action.ALERT
                result.skip_reason = "no active market"
            else:
                gate, entry_odds = await self._gate(model, bet_direction, score, market, now)
                if gate.skip:
                    result.action = Action.SKIP
                    result.skip_reason = gate.reason
                else:
                    amount = requested if requested is not None else gate.suggested_bet
                    result.trade = await self.ledger.place_bet(
                        model_id,
                        market.market_id,
                        bet_direction.value,
                        amount,
                        entry_odds,
                        cap=gate.suggested_bet,
                        market_name=market.market_name,
                        now=now,
                    )
                    if result.trade is None:
                        result.action = Action.SKIP
                        result.skip_reason = "bet declined by ledger"

        try:
            run = await self.repos.signals.record_run(
                SignalRun(
                    model_id=model_id,
                    timestamp=now,
                    aggregated_score=round(score, 6),
                    direction=result.direction.value,
                    confidence=result.confidence.value,
                    reasoning=reasoning,
                    sources_used=result.sources_used,
                    action_taken=result.action.value,
                    oracle_decision=result.oracle,
                    oracle_reasoning=oracle_reasoning,
                )
            )
            result.run_id = run.id
        except Exception as e:
            # A placed trade stands even when its run row is lost
            logger.error("signal_run_not_recorded", model_id=model_id, error=str(e))

        logger.info(
            "aggregation_complete",
            model_id=model_id,
            score=round(score, 3),
            direction=result.direction.value,
            confidence=result.confidence.value,
            action=result.action.value,
            skip_reason=result.skip_reason,
        )

        if result.confidence == Confidence.HIGH and result.trade is None:
            await notify_safely(
                self.notifier,
                f"Signal alert - {model.name}: {result.direction.value.upper()} "
                f"({result.confidence.value}) score {score:.3f}, "
                f"threshold {model.bet_threshold}. {reasoning}",
                self.notify_timeout,
            )
        return result
