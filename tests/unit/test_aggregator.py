"""Unit tests for signal aggregation and bet execution.

CRITICAL TESTS:
- A strong signal with a live market places a Kelly-sized paper bet
- Every gate (blackout, throttles, missing market) turns a bet into a skip or alert
- The decision oracle can veto, but any amount it asks for is clamped to the Kelly cap
"""

import asyncio
from datetime import timedelta

import pytest

from polyedge.config.trading import ALL_SOURCES, Action, Confidence, Direction
from polyedge.repositories.base import BLACKOUT_KEY
from polyedge.services.aggregator import (
    SignalAggregator,
    SignalContribution,
    build_reasoning,
    choose_action,
    classify_confidence,
    classify_direction,
)
from polyedge.services.bet_sizer import BetSizer
from polyedge.services.ledger import PaperLedger
from polyedge.services.oracle import BetDecision, HoldDecision, OracleError
from polyedge.services.pattern_memory import PatternMemory

SOURCES = (
    "price_momentum",
    "x_sentiment",
    "news_sentiment",
    "fear_greed",
    "volume",
    "poly_odds",
)


class StubOracle:
    """Returns a canned decision, raises, or stalls."""

    def __init__(self, decision=None, error=None, delay=0.0):
        self.decision = decision
        self.error = error
        self.delay = delay
        self.briefs = []

    async def decide(self, brief):
        self.briefs.append(brief)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.decision


class TestClassification:
    """Test score tiers and the action rule."""

    def test_direction(self):
        assert classify_direction(0.2) == Direction.UP
        assert classify_direction(-0.2) == Direction.DOWN
        assert classify_direction(0.05) == Direction.HOLD
        assert classify_direction(0.1) == Direction.HOLD

    def test_confidence(self):
        assert classify_confidence(0.8) == Confidence.HIGH
        assert classify_confidence(-0.8) == Confidence.HIGH
        assert classify_confidence(0.7) == Confidence.MEDIUM
        assert classify_confidence(0.5) == Confidence.MEDIUM
        assert classify_confidence(0.3) == Confidence.LOW

    def test_action(self):
        assert choose_action(0.8, Direction.UP, Confidence.HIGH, 0.65) == Action.BET
        assert choose_action(0.6, Direction.UP, Confidence.MEDIUM, 0.65) == Action.SKIP
        assert choose_action(0.75, Direction.UP, Confidence.HIGH, 0.8) == Action.ALERT
        assert choose_action(0.3, Direction.UP, Confidence.LOW, 0.2) == Action.SKIP

    def test_reasoning_lists_top_contributors(self):
        details = [
            SignalContribution("price_momentum", 0.8, 0.25),
            SignalContribution("x_sentiment", -0.5, 0.2),
            SignalContribution("volume", 0.1, 0.1),
            SignalContribution("fear_greed", 0.9, 0.15),
        ]
        text = build_reasoning(0.5, Direction.UP, Confidence.MEDIUM, details)
        assert text == (
            "Score: 0.500. Top signals: [price_momentum=0.80(w:0.25), "
            "fear_greed=0.90(w:0.15), x_sentiment=-0.50(w:0.2)]. "
            "UP bias with medium confidence."
        )

    def test_weighted_score(self):
        details = [
            SignalContribution("a", 1.0, 0.75),
            SignalContribution("b", -1.0, 0.25),
        ]
        assert SignalAggregator.score(details) == pytest.approx(0.5)
        assert SignalAggregator.score([]) is None


class TestSignalAggregator:
    """Test run_for_model against in-memory storage."""

    @pytest.fixture(autouse=True)
    def _setup(self, repos, notifier, now):
        self.repos = repos
        self.notifier = notifier
        self.now = now

    def _aggregator(self, oracle=None, **kwargs):
        return SignalAggregator(
            self.repos,
            PaperLedger(self.repos, self.notifier),
            BetSizer(self.repos.state),
            PatternMemory(self.repos),
            oracle=oracle,
            notifier=self.notifier,
            **kwargs,
        )

    async def _signals(self, add_signal, model_id, value):
        for source in SOURCES:
            await add_signal(model_id, source, value, at=self.now - timedelta(minutes=1))

    async def _runs(self, model_id):
        return await self.repos.signals.recent_runs(model_id, 10)

    @pytest.mark.asyncio
    async def test_strong_signal_places_bet(self, make_model, add_signal, add_snapshot):
        model = await make_model()
        await self._signals(add_signal, model.id, 0.8)
        await add_snapshot()

        result = await self._aggregator().run_for_model(model.id, self.now)

        assert result.action == Action.BET
        assert result.score == pytest.approx(0.8)
        assert result.direction == Direction.UP
        assert result.confidence == Confidence.HIGH
        assert result.sources_used == list(ALL_SOURCES)
        assert result.trade.direction == "up"
        assert result.trade.entry_odds == 0.45
        assert result.trade.amount_usdc == 10.0
        account = await self.repos.trades.get_account(model.id)
        assert account.balance_usdc == 90.0

        runs = await self._runs(model.id)
        assert len(runs) == 1
        assert runs[0].id == result.run_id
        assert runs[0].action_taken == "bet"
        assert runs[0].timestamp == self.now
        assert runs[0].oracle_decision["consulted"] is True
        assert runs[0].oracle_decision["applied"] is False

    @pytest.mark.asyncio
    async def test_lost_run_row_still_reports_trade(
        self, make_model, add_signal, add_snapshot, monkeypatch
    ):
        model = await make_model()
        await self._signals(add_signal, model.id, 0.8)
        await add_snapshot()

        async def record_run(run):
            raise RuntimeError("db write failed")

        monkeypatch.setattr(self.repos.signals, "record_run", record_run)

        result = await self._aggregator().run_for_model(model.id, self.now)

        assert result.action == Action.BET
        assert result.run_id is None
        assert result.trade.amount_usdc == 10.0
        account = await self.repos.trades.get_account(model.id)
        assert account.balance_usdc == 90.0

    @pytest.mark.asyncio
    async def test_bearish_signal_bets_down_at_down_odds(
        self, make_model, add_signal, add_snapshot
    ):
        model = await make_model()
        await self._signals(add_signal, model.id, -0.8)
        await add_snapshot(up_odds=0.45, down_odds=0.57)

        result = await self._aggregator().run_for_model(model.id, self.now)

        assert result.direction == Direction.DOWN
        assert result.trade.direction == "down"
        assert result.trade.entry_odds == 0.57

    @pytest.mark.asyncio
    async def test_no_signals_skips_without_recording(self, make_model):
        model = await make_model()

        result = await self._aggregator().run_for_model(model.id, self.now)

        assert result.action == Action.SKIP
        assert result.skip_reason == "no_signals"
        assert await self._runs(model.id) == []

    @pytest.mark.asyncio
    async def test_stale_signals_are_ignored(self, make_model, add_signal, add_snapshot):
        model = await make_model()
        await add_signal(model.id, "price_momentum", 0.9, at=self.now - timedelta(minutes=45))
        await add_signal(model.id, "news_sentiment", 0.9, at=self.now - timedelta(minutes=45))

        result = await self._aggregator().run_for_model(model.id, self.now)

        assert result.sources_used == ["news_sentiment"]

    @pytest.mark.asyncio
    async def test_weak_signal_skips_without_oracle(self, make_model, add_signal, add_snapshot):
        model = await make_model()
        oracle = StubOracle(HoldDecision(confidence="high", reasoning="no"))
        await self._signals(add_signal, model.id, 0.3)
        await add_snapshot()

        result = await self._aggregator(oracle).run_for_model(model.id, self.now)

        assert result.action == Action.SKIP
        assert result.trade is None
        assert result.oracle is None
        assert oracle.briefs == []
        assert (await self._runs(model.id))[0].action_taken == "skip"

    @pytest.mark.asyncio
    async def test_no_active_market_alerts(self, make_model, add_signal):
        model = await make_model()
        await self._signals(add_signal, model.id, 0.8)

        result = await self._aggregator().run_for_model(model.id, self.now)

        assert result.action == Action.ALERT
        assert result.skip_reason == "no active market"
        assert any("Signal alert - Balanced" in m for m in self.notifier.messages)

    @pytest.mark.asyncio
    async def test_placeholder_and_stale_markets_ignored(
        self, make_model, add_signal, add_snapshot
    ):
        model = await make_model()
        await self._signals(add_signal, model.id, 0.8)
        await add_snapshot(market_id="btc-5min-placeholder")
        await add_snapshot(market_id="old", at=self.now - timedelta(minutes=10))

        result = await self._aggregator().run_for_model(model.id, self.now)

        assert result.action == Action.ALERT

    @pytest.mark.asyncio
    async def test_blackout_skips(self, make_model, add_signal, add_snapshot):
        model = await make_model(blackout_until=self.now + timedelta(minutes=15))
        await self._signals(add_signal, model.id, 0.8)
        await add_snapshot()

        result = await self._aggregator().run_for_model(model.id, self.now)

        assert result.action == Action.SKIP
        assert "blackout" in result.skip_reason
        assert result.trade is None
        assert len(self.notifier.messages) == 1

    @pytest.mark.asyncio
    async def test_high_volatility_dampens_score(self, make_model, add_signal, add_snapshot):
        model = await make_model()
        await self.repos.state.save(BLACKOUT_KEY, {"global": {"high_volatility": True}})
        await self._signals(add_signal, model.id, 0.8)
        await add_snapshot()

        result = await self._aggregator().run_for_model(model.id, self.now)

        assert result.score == pytest.approx(0.56)
        assert result.confidence == Confidence.MEDIUM
        assert result.action == Action.SKIP

    @pytest.mark.asyncio
    async def test_fear_greed_throttle_blocks_direction(
        self, make_model, add_signal, add_snapshot
    ):
        model = await make_model()
        await self.repos.state.save(BLACKOUT_KEY, {"global": {"skip_up_bets": True}})
        await self._signals(add_signal, model.id, 0.8)
        await add_snapshot()

        result = await self._aggregator().run_for_model(model.id, self.now)

        assert result.action == Action.SKIP
        assert result.skip_reason == "up bets paused by fear/greed"

    @pytest.mark.asyncio
    async def test_oracle_hold_vetoes_bet(self, make_model, add_signal, add_snapshot):
        model = await make_model()
        oracle = StubOracle(HoldDecision(confidence="medium", reasoning="choppy tape"))
        await self._signals(add_signal, model.id, 0.8)
        await add_snapshot()

        result = await self._aggregator(oracle).run_for_model(model.id, self.now)

        assert result.action == Action.SKIP
        assert result.skip_reason == "oracle hold"
        assert result.oracle["applied"] is True
        assert oracle.briefs[0].kelly_cap == 10.0
        run = (await self._runs(model.id))[0]
        assert run.oracle_reasoning == "choppy tape"
        assert run.action_taken == "skip"

    @pytest.mark.asyncio
    async def test_oracle_amount_clamped_to_kelly_cap(
        self, make_model, add_signal, add_snapshot
    ):
        model = await make_model()
        oracle = StubOracle(
            BetDecision(direction="up", amount=50.0, confidence="high", reasoning="all in")
        )
        await self._signals(add_signal, model.id, 0.8)
        await add_snapshot()

        result = await self._aggregator(oracle).run_for_model(model.id, self.now)

        assert result.action == Action.BET
        assert result.trade.amount_usdc == 10.0

    @pytest.mark.asyncio
    async def test_oracle_high_confidence_sets_direction_and_amount(
        self, make_model, add_signal, add_snapshot
    ):
        model = await make_model()
        oracle = StubOracle(
            BetDecision(direction="down", amount=3.0, confidence="high", reasoning="fade")
        )
        await self._signals(add_signal, model.id, 0.8)
        await add_snapshot()

        result = await self._aggregator(oracle).run_for_model(model.id, self.now)

        assert result.trade.direction == "down"
        assert result.trade.entry_odds == 0.57
        assert result.trade.amount_usdc == 3.0

    @pytest.mark.asyncio
    async def test_oracle_medium_bet_keeps_own_call(
        self, make_model, add_signal, add_snapshot
    ):
        model = await make_model()
        oracle = StubOracle(
            BetDecision(direction="down", amount=3.0, confidence="medium", reasoning="maybe")
        )
        await self._signals(add_signal, model.id, 0.8)
        await add_snapshot()

        result = await self._aggregator(oracle).run_for_model(model.id, self.now)

        assert result.trade.direction == "up"
        assert result.trade.amount_usdc == 10.0
        assert result.oracle["applied"] is False

    @pytest.mark.asyncio
    async def test_oracle_failure_falls_back(self, make_model, add_signal, add_snapshot):
        model = await make_model()
        oracle = StubOracle(error=OracleError("oracle API error (500): boom"))
        await self._signals(add_signal, model.id, 0.8)
        await add_snapshot()

        result = await self._aggregator(oracle).run_for_model(model.id, self.now)

        assert result.action == Action.BET
        assert result.oracle["skipped"] is True
        assert result.oracle["reason"] == "oracle API error (500): boom"

    @pytest.mark.asyncio
    async def test_oracle_timeout_falls_back(self, make_model, add_signal, add_snapshot):
        model = await make_model()
        oracle = StubOracle(
            HoldDecision(confidence="high", reasoning="late"), delay=1.0
        )
        await self._signals(add_signal, model.id, 0.8)
        await add_snapshot()

        result = await self._aggregator(oracle, oracle_timeout=0.01).run_for_model(
            model.id, self.now
        )

        assert result.action == Action.BET
        assert result.oracle["reason"] == "oracle timeout"

    @pytest.mark.asyncio
    async def test_unknown_model(self):
        assert await self._aggregator().run_for_model(999, self.now) is None
