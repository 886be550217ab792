"""Model version tracking and risk-adjusted ranking.

Every change to a model's weights or thresholds is snapshotted as an
immutable version. A version is "active" from its created_at until the
next version of the same model is created; the trades opened in that
window are what its statistics are computed from.
"""

import math
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from polyedge.config.trading import VersionConfig, get_trading_config
from polyedge.models.domain import ModelVersion, TradingModel
from polyedge.repositories.base import Repositories

logger = structlog.get_logger(__name__)

DEFAULT_REASON = "weight_update"
INITIAL_REASON = "initial"


# =============================================================================
# Math helpers
# =============================================================================


def mean(values: list[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def stddev(values: list[float]) -> float:
    """Sample standard deviation (n - 1); 0 for fewer than two values."""
    if len(values) < 2:
        return 0.0
    m = mean(values)
    variance = sum((v - m) ** 2 for v in values) / (len(values) - 1)
    return math.sqrt(variance)


def sharpe_ratio(
    pnls: list[float], config: VersionConfig | None = None
) -> float | None:
    """
    Annualized Sharpe ratio of per-trade P&L (sqrt(252) multiplier).

    None below the minimum sample size. A zero-variance series scores
    a large sentinel when profitable and 0 otherwise.
    """
    config = config or get_trading_config().versions
    if len(pnls) < config.min_trades_for_sharpe:
        return None
    m = mean(pnls)
    sd = stddev(pnls)
    if sd == 0:
        return config.flat_positive_sharpe if m > 0 else 0.0
    return m / sd * math.sqrt(config.annualization_days)


def max_drawdown(balances: list[float]) -> float:
    """Largest peak-to-trough fall as a fraction of the running peak."""
    if len(balances) < 2:
        return 0.0
    peak = balances[0]
    worst = 0.0
    for b in balances:
        if b > peak:
            peak = b
        dd = (peak - b) / peak if peak > 0 else 0.0
        if dd > worst:
            worst = dd
    return worst


def trailing_streaks(pnls: list[float]) -> tuple[int, int]:
    """(consecutive wins, consecutive losses) counted back from the last trade."""
    wins = losses = 0
    for p in reversed(pnls):
        if p > 0 and losses == 0:
            wins += 1
        elif p <= 0 and wins == 0:
            losses += 1
        else:
            break
    return wins, losses


@dataclass
class VersionStats:
    """Performance of the trades opened while a version was active."""

    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    roi_pct: float = 0.0
    avg_pnl: float = 0.0
    max_drawdown: float = 0.0
    sharpe_ratio: Optional[float] = None
    consecutive_wins: int = 0
    consecutive_losses: int = 0
    balance: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class VersionManager:
    """Creates, scores and promotes model versions."""

    def __init__(self, repos: Repositories, config: VersionConfig | None = None):
        self.repos = repos
        self.config = config or get_trading_config().versions

    async def seed_v1(
        self, model: TradingModel, now: datetime | None = None
    ) -> ModelVersion | None:
        """Snapshot the model's current config as v1 if it has no versions yet."""
        if await self.repos.versions.latest(model.id) is not None:
            return None
        version = await self.repos.versions.append(
            model.id,
            reason=INITIAL_REASON,
            signal_weights=model.signal_weights,
            thresholds=model.thresholds,
            created_at=model.created_at or now or datetime.now(timezone.utc),
        )
        if version is not None:
            logger.info("version_seeded", model_id=model.id, version_id=version.id)
        return version

    async def create_version(
        self,
        model_id: int,
        reason: str | None,
        signal_weights: dict[str, float],
        thresholds: dict[str, float],
        now: datetime | None = None,
    ) -> ModelVersion | None:
        """Append the next version, parented to the current latest."""
        version = await self.repos.versions.append(
            model_id,
            reason=reason or DEFAULT_REASON,
            signal_weights=signal_weights,
            thresholds=thresholds,
            created_at=now or datetime.now(timezone.utc),
        )
        if version is not None:
            logger.info(
                "version_created",
                model_id=model_id,
                version_num=version.version_num,
                version_id=version.id,
                reason=version.mutation_reason,
            )
        return version

    async def on_weights_changed(
        self,
        model_id: int,
        reason: str | None,
        signal_weights: dict[str, float],
        thresholds: dict[str, float],
        now: datetime | None = None,
    ) -> ModelVersion | None:
        """Called by the learning loop after it mutates a model."""
        return await self.create_version(
            model_id, reason, signal_weights, thresholds, now=now
        )

    async def get_version_stats(self, version: ModelVersion) -> VersionStats:
        versions = await self.repos.versions.list_for_model(version.model_id)
        following = [v for v in versions if v.version_num > version.version_num]
        window_end = following[0].created_at if following else None

        trades = await self.repos.trades.settled_opened_between(
            version.model_id, version.created_at, window_end
        )
        if not trades:
            return VersionStats()

        account = await self.repos.trades.get_account(version.model_id)
        start = account.starting_balance if account else 100.0

        pnls = [t.pnl or 0.0 for t in trades]
        total_pnl = sum(pnls)
        wins = sum(1 for p in pnls if p > 0)

        balances = [start]
        running = start
        for p in pnls:
            running += p
            balances.append(running)

        consecutive_wins, consecutive_losses = trailing_streaks(pnls)
        return VersionStats(
            total_trades=len(trades),
            wins=wins,
            losses=len(trades) - wins,
            win_rate=wins / len(trades),
            total_pnl=total_pnl,
            roi_pct=total_pnl / start * 100 if start > 0 else 0.0,
            avg_pnl=mean(pnls),
            max_drawdown=max_drawdown(balances),
            sharpe_ratio=sharpe_ratio(pnls, self.config),
            consecutive_wins=consecutive_wins,
            consecutive_losses=consecutive_losses,
            balance=account.balance_usdc if account else None,
        )

    async def get_version_history(self, model_id: int) -> list[dict[str, Any]]:
        """All versions oldest first, each merged with its stats."""
        history = []
        for v in await self.repos.versions.list_for_model(model_id):
            stats = await self.get_version_stats(v)
            history.append(
                {
                    "id": v.id,
                    "version_num": v.version_num,
                    "parent_version_id": v.parent_version_id,
                    "created_at": v.created_at,
                    "mutation_reason": v.mutation_reason,
                    "weights": dict(v.signal_weights),
                    "thresholds": dict(v.thresholds),
                    "is_prod_synced": bool(v.is_prod_synced),
                    **stats.to_dict(),
                }
            )
        return history

    async def get_best_version(self, model_id: int) -> dict[str, Any] | None:
        """Highest-Sharpe version among those with enough trades."""
        qualified = [
            v
            for v in await self.get_version_history(model_id)
            if v["total_trades"] >= self.config.min_trades_for_best
        ]
        if not qualified:
            return None

        def _key(v: dict[str, Any]) -> float:
            s = v["sharpe_ratio"]
            return s if s is not None else -math.inf

        # max() keeps the first (oldest) version on ties
        return max(qualified, key=_key)

    async def promote_to_prod(
        self, version_id: int, now: datetime | None = None
    ) -> ModelVersion | None:
        """
        Restore a version's config onto its model.

        The model row is updated atomically, the version is flagged as
        prod-synced and a promotion version is appended so the restored
        config gets its own active window. Returns the new version.
        """
        version = await self.repos.versions.get(version_id)
        if version is None:
            logger.warning("version_not_found", version_id=version_id)
            return None

        def restore(model: TradingModel) -> int:
            model.signal_weights = dict(version.signal_weights)
            model.thresholds = dict(version.thresholds)
            model.version += 1
            return model.version

        new_model_version = await self.repos.models.update(version.model_id, restore)
        if new_model_version is None:
            logger.warning(
                "version_model_missing", version_id=version_id, model_id=version.model_id
            )
            return None

        await self.repos.versions.mark_prod_synced(version.id)
        promoted = await self.create_version(
            version.model_id,
            f"promote v{version.version_num}",
            version.signal_weights,
            version.thresholds,
            now=now,
        )
        logger.info(
            "version_promoted",
            model_id=version.model_id,
            version_num=version.version_num,
            model_version=new_model_version,
        )
        return promoted
