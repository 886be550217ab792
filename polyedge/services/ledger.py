"""Paper-Trading Ledger.

Places and settles simulated trades and keeps each model's USDC balance.
NO REAL MONEY IS EVER AT RISK.

Binary-market settlement:
- exit_odds is the final up-side implied probability
- an UP bet wins if exit_odds >= 0.5, a DOWN bet wins if exit_odds < 0.5
- a win pays stake * (1 - p) / p, where p is the implied probability of
  the side taken (entry_odds for up, 1 - entry_odds for down)
- a loss costs the stake; no resolution data is a push (pnl 0)

Balance debits on placement and credits on settlement happen in the same
unit of work as the trade insert/update.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from polyedge.config.trading import (
    Direction,
    LedgerConfig,
    SizingConfig,
    TradeStatus,
    get_trading_config,
)
from polyedge.models.domain import PaperAccount, Trade
from polyedge.repositories.base import Repositories
from polyedge.services.notifier import LogNotifier, Notifier, notify_safely

logger = structlog.get_logger(__name__)

SettlementHook = Callable[[Trade], Awaitable[None]]


def calculate_pnl(
    direction: str,
    amount: float,
    entry_odds: float,
    exit_odds: float | None,
    resolution_threshold: float = 0.5,
) -> float:
    """
    P&L of a binary up/down bet.

    Args:
        direction: "up" or "down"
        amount: Stake in USDC
        entry_odds: Odds recorded at entry (up-side probability for an up bet)
        exit_odds: Final up-side odds at resolution, None if unresolved

    Returns:
        Profit (positive), loss of the stake (negative) or 0 for a push
    """
    if exit_odds is None:
        return 0.0

    if direction == Direction.UP.value:
        won = exit_odds >= resolution_threshold
        p = entry_odds
    else:
        won = exit_odds < resolution_threshold
        p = 1 - entry_odds

    if p <= 0 or p >= 1:
        return 0.0
    if won:
        return amount * (1 - p) / p
    return -amount


class PaperLedger:
    """Paper account and trade lifecycle for all models."""

    def __init__(
        self,
        repos: Repositories,
        notifier: Notifier | None = None,
        config: LedgerConfig | None = None,
        sizing: SizingConfig | None = None,
        notify_timeout: float = 5.0,
    ):
        self.repos = repos
        self.notifier = notifier or LogNotifier()
        self.config = config or get_trading_config().ledger
        self.sizing = sizing or get_trading_config().sizing
        self.notify_timeout = notify_timeout
        self._hooks: list[SettlementHook] = []

    def add_settlement_hook(self, hook: SettlementHook) -> None:
        """Register a coroutine run after every settlement."""
        self._hooks.append(hook)

    async def open_account(
        self, model_id: int, starting_balance: float | None = None
    ) -> PaperAccount:
        balance = (
            starting_balance
            if starting_balance is not None
            else self.config.starting_balance
        )
        return await self.repos.trades.create_account(model_id, balance)

    # =========================================================================
    # Placement
    # =========================================================================

    def _resolve_stake(self, requested: float) -> Callable[[float], float]:
        min_bet = self.sizing.min_bet
        fraction = self.config.fallback_balance_fraction

        def resolve(balance: float) -> float:
            if balance >= requested:
                return requested
            fallback = round(balance * fraction, 2)
            logger.warning(
                "insufficient_balance",
                balance=balance,
                requested=requested,
                fallback=fallback,
            )
            return fallback if fallback >= min_bet else 0.0

        return resolve

    async def place_bet(
        self,
        model_id: int,
        market_id: str,
        direction: str,
        amount: float,
        entry_odds: float,
        *,
        cap: float | None = None,
        market_name: str | None = None,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> Trade | None:
        """
        Open a paper trade.

        ``cap`` is the Kelly-derived ceiling; any requested amount (including
        one suggested by the decision oracle) is clamped to it. When the
        balance cannot cover the stake, up to half of the remaining balance
        is used instead, and the bet is declined if that is under MIN_BET.
        """
        if cap is not None:
            amount = min(amount, cap)
        amount = round(amount, 2)
        if amount < self.sizing.min_bet:
            logger.info(
                "bet_declined", model_id=model_id, amount=amount, reason="below_min_bet"
            )
            return None

        if market_name is None:
            snapshot = await self.repos.markets.latest_snapshot(market_id=market_id)
            market_name = snapshot.market_name if snapshot else market_id

        trade = Trade(
            model_id=model_id,
            market_id=market_id,
            market_name=market_name,
            direction=direction,
            amount_usdc=amount,
            entry_odds=entry_odds,
            exit_odds=None,
            status=TradeStatus.OPEN.value,
            pnl=None,
            opened_at=now or datetime.now(timezone.utc),
            closed_at=None,
            notes=notes,
        )
        placed = await self.repos.trades.open_trade(trade, self._resolve_stake(amount))
        if placed is None:
            logger.warning("bet_declined", model_id=model_id, market_id=market_id)
            return None

        logger.info(
            "trade_placed",
            trade_id=placed.id,
            model_id=model_id,
            market_id=market_id,
            direction=direction,
            amount=placed.amount_usdc,
            entry_odds=entry_odds,
        )
        await notify_safely(
            self.notifier,
            f"Paper bet #{placed.id}: ${placed.amount_usdc:.2f} {direction.upper()} "
            f"on {market_name} @ {entry_odds:.3f} (model {model_id})",
            self.notify_timeout,
        )
        return placed

    # =========================================================================
    # Settlement
    # =========================================================================

    async def _settle(
        self,
        trade: Trade,
        *,
        status: TradeStatus,
        exit_odds: float | None,
        pnl: float,
        credit: float,
        now: datetime,
        note: str | None = None,
    ) -> Trade | None:
        settled = await self.repos.trades.settle_trade(
            trade.id,
            status=status.value,
            exit_odds=exit_odds,
            pnl=round(pnl, 4),
            credit=round(credit, 4),
            closed_at=now,
            note=note,
        )
        if settled is None:
            logger.warning("trade_not_open", trade_id=trade.id)
            return None

        logger.info(
            "trade_settled",
            trade_id=settled.id,
            model_id=settled.model_id,
            status=settled.status,
            exit_odds=exit_odds,
            pnl=settled.pnl,
        )
        outcome = "WIN" if settled.pnl > 0 else ("PUSH" if settled.pnl == 0 else "LOSS")
        await notify_safely(
            self.notifier,
            f"Trade #{settled.id} {outcome}: P&L ${settled.pnl:+.2f} "
            f"({settled.direction.upper()} {settled.market_name or settled.market_id})",
            self.notify_timeout,
        )

        for hook in self._hooks:
            try:
                await hook(settled)
            except Exception as e:
                logger.error(
                    "settlement_hook_failed", trade_id=settled.id, error=str(e)
                )
        return settled

    async def close_trade(
        self, trade_id: int, exit_odds: float | None, now: datetime | None = None
    ) -> Trade | None:
        """Settle an open trade at the given resolution odds."""
        trade = await self.repos.trades.get(trade_id)
        if trade is None:
            logger.error("trade_not_found", trade_id=trade_id)
            return None
        if not trade.is_open:
            logger.warning("trade_already_settled", trade_id=trade_id, status=trade.status)
            return None

        pnl = calculate_pnl(
            trade.direction,
            trade.amount_usdc,
            trade.entry_odds,
            exit_odds,
            self.config.resolution_threshold,
        )
        return await self._settle(
            trade,
            status=TradeStatus.CLOSED,
            exit_odds=exit_odds,
            pnl=pnl,
            credit=trade.amount_usdc + pnl,
            now=now or datetime.now(timezone.utc),
        )

    async def check_expired_trades(self, now: datetime | None = None) -> dict[str, int]:
        """
        Settle trades whose market has resolved, then force-close stuck ones.

        1. Open trades older than the grace period whose market's latest
           snapshot shows no time remaining settle at that snapshot's
           up_odds (status expired).
        2. Anything still open past the stuck-trade limit expires at
           breakeven with the stake returned.
        """
        now = now or datetime.now(timezone.utc)
        stats = {"expired": 0, "stuck": 0, "errors": 0}
        grace_cutoff = now - timedelta(minutes=self.config.expiry_grace_minutes)
        stuck_cutoff = now - timedelta(minutes=self.config.stuck_trade_minutes)

        for trade in await self.repos.trades.list_open():
            if trade.opened_at >= grace_cutoff:
                continue
            try:
                snapshot = await self.repos.markets.latest_snapshot(
                    market_id=trade.market_id
                )
                if snapshot is None or snapshot.time_remaining not in (0, None):
                    continue
                exit_odds = snapshot.up_odds
                pnl = calculate_pnl(
                    trade.direction,
                    trade.amount_usdc,
                    trade.entry_odds,
                    exit_odds,
                    self.config.resolution_threshold,
                )
                if await self._settle(
                    trade,
                    status=TradeStatus.EXPIRED,
                    exit_odds=exit_odds,
                    pnl=pnl,
                    credit=trade.amount_usdc + pnl,
                    now=now,
                    note="[auto-expired]",
                ):
                    stats["expired"] += 1
            except Exception as e:
                logger.error("trade_expiry_failed", trade_id=trade.id, error=str(e))
                stats["errors"] += 1

        for trade in await self.repos.trades.list_open():
            if trade.opened_at >= stuck_cutoff:
                continue
            try:
                if await self._settle(
                    trade,
                    status=TradeStatus.EXPIRED,
                    exit_odds=trade.entry_odds,
                    pnl=0.0,
                    credit=trade.amount_usdc,
                    now=now,
                    note="[expired-no-data]",
                ):
                    stats["stuck"] += 1
            except Exception as e:
                logger.error("stuck_trade_expiry_failed", trade_id=trade.id, error=str(e))
                stats["errors"] += 1

        if stats["expired"] or stats["stuck"] or stats["errors"]:
            logger.info("expired_trades_checked", **stats)
        return stats

    # =========================================================================
    # Reporting
    # =========================================================================

    async def get_model_stats(self, model_id: int) -> dict[str, Any]:
        """Balance, win/loss record, ROI, extremes and the current streak."""
        account = await self.repos.trades.get_account(model_id)
        starting = account.starting_balance if account else self.config.starting_balance
        balance = account.balance_usdc if account else starting
        trades = await self.repos.trades.recent_settled(model_id)
        open_trades = await self.repos.trades.list_open(model_id)

        pnls = [t.pnl or 0.0 for t in trades]
        total = len(trades)
        wins = sum(1 for p in pnls if p > 0)
        losses = sum(1 for p in pnls if p < 0)
        total_pnl = sum(pnls)

        best = max(trades, key=lambda t: t.pnl or 0.0, default=None)
        worst = min(trades, key=lambda t: t.pnl or 0.0, default=None)

        streak = 0
        streak_type = None
        for p in pnls:
            kind = "win" if p > 0 else "loss"
            if streak_type is None:
                streak_type = kind
                streak = 1
            elif kind == streak_type:
                streak += 1
            else:
                break

        def _summary(trade: Trade | None) -> dict[str, Any] | None:
            if trade is None:
                return None
            return {"id": trade.id, "pnl": trade.pnl, "direction": trade.direction}

        return {
            "balance": round(balance, 4),
            "starting_balance": starting,
            "total_trades": total,
            "open_trades": len(open_trades),
            "wins": wins,
            "losses": losses,
            "win_rate": wins / total if total else 0.0,
            "avg_pnl": total_pnl / total if total else 0.0,
            "total_pnl": round(total_pnl, 4),
            "roi_pct": (balance - starting) / starting * 100 if starting > 0 else 0.0,
            "best_trade": _summary(best),
            "worst_trade": _summary(worst),
            "current_streak": streak,
            "streak_type": streak_type,
        }
