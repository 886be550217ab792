"""Unit tests for pattern memory."""

from datetime import timedelta

import pytest

from polyedge.repositories.base import PATTERNS_KEY
from polyedge.services.pattern_memory import (
    PatternMemory,
    btc_momentum_key,
    compute_market_edge,
    empty_patterns,
    implied_prob_for_key,
    odds_range_key,
)


class TestBuckets:
    """Test bucket key helpers."""

    def test_odds_range_keys(self):
        assert odds_range_key("up", 0.40) == "up_35_45"
        assert odds_range_key("down", 0.50) == "down_45_55"
        assert odds_range_key("up", 0.25) == "up_25_35"

    def test_untracked_odds(self):
        assert odds_range_key("up", 0.60) is None
        assert odds_range_key("up", 0.10) is None

    def test_implied_probability_is_bucket_midpoint(self):
        assert implied_prob_for_key("up_35_45") == 0.40
        assert implied_prob_for_key("down_25_35") == 0.30

    def test_btc_momentum_keys(self):
        assert btc_momentum_key(3.0) == "high_up"
        assert btc_momentum_key(-3.0) == "high_down"
        assert btc_momentum_key(1.0) == "low"
        assert btc_momentum_key(None) == "low"


class TestMarketEdge:
    """Test compute_market_edge scoring."""

    def setup_method(self):
        """Set up test fixtures."""
        self.patterns = empty_patterns()

    def test_neutral_without_history(self):
        assert compute_market_edge(self.patterns, "up", 0.45, 12, None) == 0.5

    def test_volatility_penalties(self):
        assert compute_market_edge(self.patterns, "up", 0.45, 12, 6.0) == 0.25
        assert compute_market_edge(self.patterns, "up", 0.45, 12, 3.0) == 0.4
        assert compute_market_edge(self.patterns, "up", 0.45, 12, 1.0) == 0.5

    def test_weak_hour_is_penalized(self):
        self.patterns["hourly"]["12"] = {
            "wins": 2, "total": 10, "win_rate": 0.2, "is_weak": True,
        }
        assert compute_market_edge(self.patterns, "up", 0.45, 12, None) == 0.05

    def test_under_sampled_hour_ignored(self):
        self.patterns["hourly"]["12"] = {
            "wins": 0, "total": 4, "win_rate": 0.0, "is_weak": False,
        }
        assert compute_market_edge(self.patterns, "up", 0.45, 12, None) == 0.5

    def test_ev_term_is_clamped(self):
        self.patterns["odds_ev"]["up_35_45"] = {
            "wins": 5, "total": 5, "implied_prob": 0.4, "actual_win_rate": 1.0, "ev": 0.6,
        }
        assert compute_market_edge(self.patterns, "up", 0.40, 12, None) == 0.8

    def test_score_clamped_to_unit_interval(self):
        self.patterns["hourly"]["12"] = {
            "wins": 0, "total": 10, "win_rate": 0.0, "is_weak": True,
        }
        assert compute_market_edge(self.patterns, "up", 0.45, 12, 6.0) == 0.0


class TestPatternMemory:
    """Test recomputation from trade history."""

    @pytest.fixture(autouse=True)
    def _memory(self, repos):
        self.repos = repos
        self.memory = PatternMemory(repos)

    async def _seed_history(self, make_model, add_settled_trade, add_btc, add_snapshot, now):
        model = await make_model()
        base = now.replace(hour=3)
        for i in range(10):
            await add_settled_trade(
                model.id,
                4.0 if i < 3 else -5.0,
                entry_odds=0.40,
                opened_at=base + timedelta(minutes=i),
            )
        await add_btc(3.0, at=base + timedelta(minutes=5))
        await add_snapshot(market_id="m", up_odds=0.52, down_odds=0.50, at=base)
        return model

    @pytest.mark.asyncio
    async def test_compute_buckets(self, make_model, add_settled_trade, add_btc, add_snapshot, now):
        await self._seed_history(make_model, add_settled_trade, add_btc, add_snapshot, now)

        patterns = await self.memory.compute()

        hour = patterns["hourly"]["3"]
        assert hour["total"] == 10
        assert hour["wins"] == 3
        assert hour["win_rate"] == pytest.approx(0.3)
        assert hour["is_weak"] is True

        assert patterns["btc_momentum"]["high_up"]["total"] == 10
        assert patterns["btc_momentum"]["low"]["win_rate"] is None

        bucket = patterns["odds_ev"]["up_35_45"]
        assert bucket["implied_prob"] == 0.4
        assert bucket["ev"] == pytest.approx(-0.1)

        vig = patterns["market_vig"]["m"]
        assert vig["avg_vig"] == pytest.approx(2.0)
        assert vig["samples"] == 1

    @pytest.mark.asyncio
    async def test_run_analysis_is_idempotent(
        self, make_model, add_settled_trade, add_btc, add_snapshot, now
    ):
        await self._seed_history(make_model, add_settled_trade, add_btc, add_snapshot, now)

        await self.memory.run_analysis(now)
        first = self.repos.state.raw[PATTERNS_KEY]
        await self.memory.run_analysis(now)

        assert self.repos.state.raw[PATTERNS_KEY] == first

    @pytest.mark.asyncio
    async def test_lookups_use_persisted_document(
        self, make_model, add_settled_trade, add_btc, add_snapshot, now
    ):
        await self._seed_history(make_model, add_settled_trade, add_btc, add_snapshot, now)
        await self.memory.run_analysis(now)

        assert await self.memory.is_weak_period(3) is True
        assert await self.memory.is_weak_period(4) is False
        assert await self.memory.get_odds_ev("up", 0.40) == pytest.approx(-0.1)
        assert await self.memory.get_odds_ev("up", 0.70) is None
        assert await self.memory.get_market_vig("m") == pytest.approx(0.02)
        assert await self.memory.get_market_vig("unknown") is None

    @pytest.mark.asyncio
    async def test_weak_history_lowers_edge(
        self, make_model, add_settled_trade, add_btc, add_snapshot, now
    ):
        await self._seed_history(make_model, add_settled_trade, add_btc, add_snapshot, now)
        await self.memory.run_analysis(now)

        edge = await self.memory.get_market_edge("up", 0.40, 3, None)

        # 0.5 + (0.3 - 0.5) - 0.15 weak penalty - 0.1 ev
        assert edge == pytest.approx(0.05)

    @pytest.mark.asyncio
    async def test_missing_document_is_regenerated(self):
        patterns = await self.memory.load()
        assert patterns["hourly"] == {}
        assert PATTERNS_KEY in self.repos.state.raw
