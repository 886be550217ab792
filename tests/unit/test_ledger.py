"""Unit tests for the paper-trading ledger.

CRITICAL TESTS:
- Balance is debited on placement and credited on settlement
- A trade settles exactly once
- Stuck trades expire at breakeven with the stake returned
"""

from datetime import timedelta

import pytest

from polyedge.services.ledger import PaperLedger, calculate_pnl


class TestCalculatePnl:
    """Test binary-market settlement arithmetic."""

    def test_up_bet_wins_above_half(self):
        assert calculate_pnl("up", 10, 0.5, 0.6) == pytest.approx(10.0)

    def test_up_bet_loses_below_half(self):
        assert calculate_pnl("up", 10, 0.5, 0.4) == -10

    def test_up_bet_wins_at_exactly_half(self):
        assert calculate_pnl("up", 10, 0.5, 0.5) > 0

    def test_unresolved_is_push(self):
        assert calculate_pnl("up", 10, 0.5, None) == 0

    def test_down_bet_uses_complement_probability(self):
        """Down at entry 0.4 is priced at p = 0.6."""
        assert calculate_pnl("down", 10, 0.4, 0.3) == pytest.approx(10 * 0.4 / 0.6)

    def test_down_bet_loses_at_half(self):
        assert calculate_pnl("down", 10, 0.4, 0.5) == -10

    def test_longshot_pays_more(self):
        assert calculate_pnl("up", 10, 0.25, 0.9) == pytest.approx(30.0)

    def test_degenerate_entry_odds_is_push(self):
        assert calculate_pnl("up", 10, 0.0, 0.9) == 0


class TestPlacement:
    """Test bet placement and balance debits."""

    @pytest.fixture(autouse=True)
    def _ledger(self, repos, notifier):
        self.repos = repos
        self.notifier = notifier
        self.ledger = PaperLedger(repos, notifier)

    async def _balance(self, model_id):
        return (await self.repos.trades.get_account(model_id)).balance_usdc

    @pytest.mark.asyncio
    async def test_place_bet_debits_balance(self, make_model, now):
        model = await make_model()
        trade = await self.ledger.place_bet(
            model.id, "m1", "up", 10.0, 0.45, market_name="BTC", now=now
        )
        assert trade is not None
        assert trade.status == "open"
        assert trade.amount_usdc == 10.0
        assert trade.opened_at == now
        assert await self._balance(model.id) == 90.0
        assert self.notifier.messages[0].startswith(f"Paper bet #{trade.id}: $10.00 UP")

    @pytest.mark.asyncio
    async def test_amount_clamped_to_cap(self, make_model):
        model = await make_model()
        trade = await self.ledger.place_bet(
            model.id, "m1", "down", 25.0, 0.55, cap=7.5, market_name="BTC"
        )
        assert trade.amount_usdc == 7.5

    @pytest.mark.asyncio
    async def test_below_min_bet_declined(self, make_model):
        model = await make_model()
        trade = await self.ledger.place_bet(model.id, "m1", "up", 0.5, 0.45, market_name="BTC")
        assert trade is None
        assert await self._balance(model.id) == 100.0

    @pytest.mark.asyncio
    async def test_insufficient_balance_falls_back_to_half(self, make_model):
        model = await make_model(balance=8.0)
        trade = await self.ledger.place_bet(model.id, "m1", "up", 10.0, 0.45, market_name="BTC")
        assert trade.amount_usdc == 4.0
        assert await self._balance(model.id) == 4.0

    @pytest.mark.asyncio
    async def test_fallback_under_min_bet_declines(self, make_model):
        model = await make_model(balance=1.5)
        trade = await self.ledger.place_bet(model.id, "m1", "up", 10.0, 0.45, market_name="BTC")
        assert trade is None
        assert await self._balance(model.id) == 1.5

    @pytest.mark.asyncio
    async def test_market_name_looked_up_from_snapshot(self, make_model, add_snapshot):
        model = await make_model()
        await add_snapshot(market_id="m1")
        trade = await self.ledger.place_bet(model.id, "m1", "up", 5.0, 0.45)
        assert trade.market_name == "BTC Up or Down (m1)"


class TestSettlement:
    """Test settlement, hooks and auto-expiry."""

    @pytest.fixture(autouse=True)
    def _ledger(self, repos, notifier):
        self.repos = repos
        self.ledger = PaperLedger(repos, notifier)

    async def _open(self, model_id, opened_at, direction="up", amount=10.0, market_id="m1"):
        return await self.ledger.place_bet(
            model_id, market_id, direction, amount, 0.5, market_name="BTC", now=opened_at
        )

    async def _balance(self, model_id):
        return (await self.repos.trades.get_account(model_id)).balance_usdc

    @pytest.mark.asyncio
    async def test_close_trade_credits_stake_and_profit(self, make_model, now):
        model = await make_model()
        trade = await self._open(model.id, now - timedelta(minutes=5))
        settled = await self.ledger.close_trade(trade.id, 0.6, now=now)
        assert settled.status == "closed"
        assert settled.pnl == pytest.approx(10.0)
        assert settled.exit_odds == 0.6
        assert settled.closed_at == now
        assert await self._balance(model.id) == pytest.approx(110.0)

    @pytest.mark.asyncio
    async def test_losing_trade_keeps_debit(self, make_model, now):
        model = await make_model()
        trade = await self._open(model.id, now - timedelta(minutes=5))
        settled = await self.ledger.close_trade(trade.id, 0.2, now=now)
        assert settled.pnl == -10.0
        assert await self._balance(model.id) == 90.0

    @pytest.mark.asyncio
    async def test_trade_settles_only_once(self, make_model, now):
        model = await make_model()
        trade = await self._open(model.id, now - timedelta(minutes=5))
        await self.ledger.close_trade(trade.id, 0.6, now=now)
        assert await self.ledger.close_trade(trade.id, 0.6, now=now) is None
        assert await self._balance(model.id) == pytest.approx(110.0)

    @pytest.mark.asyncio
    async def test_unknown_trade(self):
        assert await self.ledger.close_trade(999, 0.6) is None

    @pytest.mark.asyncio
    async def test_hooks_run_in_order(self, make_model, now):
        model = await make_model()
        seen = []

        async def first(trade):
            seen.append(("first", trade.id))

        async def second(trade):
            seen.append(("second", trade.id))

        self.ledger.add_settlement_hook(first)
        self.ledger.add_settlement_hook(second)
        trade = await self._open(model.id, now - timedelta(minutes=5))
        await self.ledger.close_trade(trade.id, 0.6, now=now)
        assert seen == [("first", trade.id), ("second", trade.id)]

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_undo_settlement(self, make_model, now):
        model = await make_model()

        async def broken(trade):
            raise RuntimeError("boom")

        self.ledger.add_settlement_hook(broken)
        trade = await self._open(model.id, now - timedelta(minutes=5))
        settled = await self.ledger.close_trade(trade.id, 0.6, now=now)
        assert settled is not None
        assert (await self.repos.trades.get(trade.id)).status == "closed"

    @pytest.mark.asyncio
    async def test_resolved_market_expires_trade(self, make_model, add_snapshot, now):
        model = await make_model()
        trade = await self._open(model.id, now - timedelta(minutes=10))
        await add_snapshot(market_id="m1", up_odds=0.8, time_remaining=0, at=now)

        stats = await self.ledger.check_expired_trades(now)

        assert stats == {"expired": 1, "stuck": 0, "errors": 0}
        settled = await self.repos.trades.get(trade.id)
        assert settled.status == "expired"
        assert settled.exit_odds == 0.8
        assert settled.pnl == pytest.approx(10.0)
        assert "[auto-expired]" in settled.notes

    @pytest.mark.asyncio
    async def test_trade_inside_grace_period_untouched(self, make_model, add_snapshot, now):
        model = await make_model()
        trade = await self._open(model.id, now - timedelta(minutes=2))
        await add_snapshot(market_id="m1", up_odds=0.8, time_remaining=0, at=now)

        stats = await self.ledger.check_expired_trades(now)

        assert stats["expired"] == 0
        assert (await self.repos.trades.get(trade.id)).is_open

    @pytest.mark.asyncio
    async def test_running_market_not_expired(self, make_model, add_snapshot, now):
        model = await make_model()
        trade = await self._open(model.id, now - timedelta(minutes=10))
        await add_snapshot(market_id="m1", time_remaining=120, at=now)

        await self.ledger.check_expired_trades(now)

        assert (await self.repos.trades.get(trade.id)).is_open

    @pytest.mark.asyncio
    async def test_stuck_trade_expires_at_breakeven(self, make_model, now):
        model = await make_model()
        trade = await self._open(model.id, now - timedelta(minutes=40), market_id="gone")

        stats = await self.ledger.check_expired_trades(now)

        assert stats["stuck"] == 1
        settled = await self.repos.trades.get(trade.id)
        assert settled.status == "expired"
        assert settled.pnl == 0
        assert "[expired-no-data]" in settled.notes
        assert await self._balance(model.id) == 100.0


class TestModelStats:
    """Test get_model_stats reporting."""

    @pytest.mark.asyncio
    async def test_stats_over_settled_trades(self, repos, make_model, add_settled_trade, now):
        model = await make_model()
        for minutes, pnl in ((60, 5.0), (40, -5.0), (20, 5.0), (10, 4.0)):
            await add_settled_trade(model.id, pnl, opened_at=now - timedelta(minutes=minutes))

        stats = await PaperLedger(repos).get_model_stats(model.id)

        assert stats["total_trades"] == 4
        assert stats["wins"] == 3
        assert stats["losses"] == 1
        assert stats["win_rate"] == pytest.approx(0.75)
        assert stats["total_pnl"] == pytest.approx(9.0)
        assert stats["balance"] == pytest.approx(109.0)
        assert stats["roi_pct"] == pytest.approx(9.0)
        assert stats["best_trade"]["pnl"] == 5.0
        assert stats["worst_trade"]["pnl"] == -5.0
        assert stats["current_streak"] == 2
        assert stats["streak_type"] == "win"
        assert stats["open_trades"] == 0

    @pytest.mark.asyncio
    async def test_stats_without_trades(self, repos, make_model):
        model = await make_model()
        stats = await PaperLedger(repos).get_model_stats(model.id)
        assert stats["total_trades"] == 0
        assert stats["win_rate"] == 0.0
        assert stats["balance"] == 100.0
        assert stats["streak_type"] is None
