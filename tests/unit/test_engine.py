"""Unit tests for engine wiring, seeding and the sweep."""

from datetime import timedelta

import pytest

from polyedge.services.engine import seed_default_models

SOURCES = (
    "price_momentum",
    "x_sentiment",
    "news_sentiment",
    "fear_greed",
    "volume",
    "poly_odds",
)


class TestSeedDefaultModels:
    """Test onboarding from defaults.yaml."""

    @pytest.mark.asyncio
    async def test_seeds_bundled_models(self, engine, repos, now):
        created = await seed_default_models(engine, now=now)

        assert [m.name for m in created] == ["Conservative", "Balanced", "Aggressive"]
        for model in created:
            account = await repos.trades.get_account(model.id)
            assert account.balance_usdc == 100.0
            versions = await repos.versions.list_for_model(model.id)
            assert [v.version_num for v in versions] == [1]
            assert versions[0].signal_weights == model.signal_weights
        assert sum(created[0].signal_weights.values()) == pytest.approx(1.0)
        assert created[2].bet_threshold == 0.55
        assert created[2].max_bet == 20.0

    @pytest.mark.asyncio
    async def test_existing_models_untouched(self, engine, repos, now):
        defaults = {
            "starting_balance": 50.0,
            "models": [
                {
                    "name": "Solo",
                    "signal_weights": {"price_momentum": 1.0},
                    "thresholds": {"bet_threshold": 0.6, "max_bet": 5},
                }
            ],
        }

        first = await seed_default_models(engine, defaults, now)
        second = await seed_default_models(engine, defaults, now)

        assert len(first) == 1
        assert second == []
        account = await repos.trades.get_account(first[0].id)
        assert account.balance_usdc == 50.0
        assert first[0].max_bet == 5.0


class TestRunSweep:
    """Test one pass over all active models."""

    @pytest.mark.asyncio
    async def test_sweep_counts_actions(self, engine, repos, make_model, add_signal, add_snapshot, now):
        trader = await make_model()
        quiet = await make_model(name="Quiet")
        await make_model(name="Retired", is_active=False)
        for source in SOURCES:
            await add_signal(trader.id, source, 0.8)
        await add_snapshot()

        stats = await engine.run_sweep(now)

        assert stats["models"] == 2
        assert stats["bets"] == 1
        assert stats["skips"] == 1
        assert stats["alerts"] == 0
        assert stats["errors"] == 0
        assert stats["settlement"] == {"expired": 0, "stuck": 0, "errors": 0}
        assert len(await repos.versions.list_for_model(quiet.id)) == 1
        assert len(await repos.trades.list_open(trader.id)) == 1

    @pytest.mark.asyncio
    async def test_one_model_failing_does_not_stop_sweep(
        self, engine, make_model, monkeypatch, now
    ):
        broken = await make_model(name="Broken")
        await make_model(name="Fine")
        original = engine.aggregator.run_for_model

        async def run_for_model(model_id, when=None):
            if model_id == broken.id:
                raise RuntimeError("boom")
            return await original(model_id, when)

        monkeypatch.setattr(engine.aggregator, "run_for_model", run_for_model)

        stats = await engine.run_sweep(now)

        assert stats["errors"] == 1
        assert stats["skips"] == 1

    @pytest.mark.asyncio
    async def test_resolved_trade_settles_and_is_analyzed(
        self, engine, repos, make_model, add_snapshot, now
    ):
        model = await make_model()
        trade = await engine.ledger.place_bet(
            model.id, "btc-updown-5m", "up", 5.0, 0.45, now=now - timedelta(minutes=10)
        )
        await add_snapshot(up_odds=0.97, down_odds=0.03, time_remaining=0)

        stats = await engine.run_sweep(now)

        assert stats["settlement"]["expired"] == 1
        settled = await repos.trades.get(trade.id)
        assert settled.status == "expired"
        assert settled.pnl > 0
        analysis = await repos.analyses.get_for_trade(trade.id)
        assert analysis.verdict == "good_trade"


class TestSettlementHooks:
    """Test that settlement drives analysis and learning."""

    @pytest.mark.asyncio
    async def test_fifth_settlement_runs_learning_cycle(self, engine, repos, make_model, now):
        model = await make_model()
        trade_ids = []
        for i in range(5):
            trade = await engine.ledger.place_bet(
                model.id, "btc-updown-5m", "up", 5.0, 0.5,
                now=now - timedelta(minutes=50 - 10 * i),
            )
            trade_ids.append(trade.id)

        for i, trade_id in enumerate(trade_ids[:4]):
            await engine.ledger.close_trade(trade_id, 0.9, now - timedelta(minutes=45 - 10 * i))
        assert (await repos.models.get(model.id)).total_learning_cycles == 0

        await engine.ledger.close_trade(trade_ids[4], 0.9, now)

        assert (await repos.models.get(model.id)).total_learning_cycles == 1
        assert await repos.analyses.unanalyzed_trade_ids(model.id) == []
