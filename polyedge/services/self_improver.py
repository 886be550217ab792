"""Self-improvement loop.

Runs after every fifth settled trade of a model and from the hourly
sweep. One learning cycle:

1. Loads the model's last 20 settled trades with their analyses
2. Scores each signal source: accuracy, edge and the correlation
   between signal strength and P&L
3. Nudges weights by edge * learning_rate * 0.1 (capped, clamped and
   renormalized so the map still sums to 1.0)
4. Raises the bet threshold after a poor run, lowers it after a strong one
5. Trips a 30-minute blackout after 3 consecutive non-winning trades and
   refreshes the global volatility and fear/greed throttles
6. Writes the model atomically, snapshots a version when the config
   changed and appends the rationale to the insight log
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from polyedge.config.trading import LearningConfig, get_trading_config
from polyedge.models.domain import ModelInsight, Trade, TradingModel
from polyedge.repositories.base import BLACKOUT_KEY, Repositories
from polyedge.services.versions import VersionManager

logger = structlog.get_logger(__name__)

IMPROVEMENT_REASON = "self_improvement"


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


# =============================================================================
# Math helpers
# =============================================================================


def pearson_correlation(xs: list[float], ys: list[float]) -> float:
    """Pearson r of two equal-length series; 0 when undefined."""
    if len(xs) != len(ys) or len(xs) < 2:
        return 0.0
    n = len(xs)
    mx = sum(xs) / n
    my = sum(ys) / n
    num = dx2 = dy2 = 0.0
    for x, y in zip(xs, ys):
        dx = x - mx
        dy = y - my
        num += dx * dy
        dx2 += dx * dx
        dy2 += dy * dy
    denom = math.sqrt(dx2 * dy2)
    return num / denom if denom else 0.0


def compute_learning_rate(
    trade_count: int, config: LearningConfig | None = None
) -> float:
    """
    Decaying learning rate: max(0.05, 0.3 / (1 + trades / 50)).

    0 trades -> 0.30, 50 -> 0.15, 200 -> 0.06.
    """
    config = config or get_trading_config().learning
    return max(
        config.min_learning_rate,
        config.base_learning_rate / (1 + trade_count / config.learning_rate_decay_trades),
    )


def normalize_weights(
    weights: dict[str, float], config: LearningConfig | None = None
) -> dict[str, float]:
    """
    Rescale so the weights sum to 1.0 with every value in [min, max].

    Values pinned at a bound are held while the remainder is rescaled,
    repeating until nothing new hits a bound. A single source gets 1.0.
    """
    config = config or get_trading_config().learning
    if not weights:
        return {}
    if len(weights) == 1:
        return {key: 1.0 for key in weights}

    lo, hi = config.min_weight, config.max_weight
    result = {k: _clamp(v, lo, hi) for k, v in weights.items()}

    for _ in range(len(result) + 1):
        total = sum(result.values())
        if math.isclose(total, 1.0, abs_tol=1e-12):
            break
        if total > 1.0:
            free = [k for k, v in result.items() if v > lo]
        else:
            free = [k for k, v in result.items() if v < hi]
        free_sum = sum(result[k] for k in free)
        if not free or free_sum <= 0:
            break
        target = 1.0 - (total - free_sum)
        scale = target / free_sum
        for k in free:
            result[k] = _clamp(result[k] * scale, lo, hi)

    result = {k: round(v, 6) for k, v in result.items()}

    # Push rounding residue onto the largest weight that has room
    residue = round(1.0 - sum(result.values()), 6)
    if residue:
        for k in sorted(result, key=lambda k: result[k], reverse=True):
            adjusted = round(result[k] + residue, 6)
            if lo <= adjusted <= hi:
                result[k] = adjusted
                break
    return result


def consecutive_losses(trades: list[Trade]) -> int:
    """Non-winning trades counted from the most recent (trades newest first)."""
    count = 0
    for trade in trades:
        if trade.is_win:
            break
        count += 1
    return count


# =============================================================================
# Learning steps
# =============================================================================


@dataclass
class SignalScore:
    """How useful one signal source has been over the window."""

    accuracy: float
    strength_correlation: float
    edge: float
    sample_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "accuracy": self.accuracy,
            "strength_correlation": self.strength_correlation,
            "edge": self.edge,
            "sample_count": self.sample_count,
        }


def score_signals(
    samples: list[tuple[dict[str, float], bool, float]],
) -> dict[str, SignalScore]:
    """
    Score sources from (contributions, is_win, pnl) samples.

    A contribution already folds in the outcome, so multiplying it by the
    outcome sign recovers the signal's alignment with the trade direction.
    """
    data: dict[str, dict[str, Any]] = {}
    for contributions, is_win, pnl in samples:
        if not contributions:
            continue
        out_mult = 1 if is_win else -1
        for source, contribution in contributions.items():
            entry = data.setdefault(
                source, {"correct": 0, "total": 0, "strengths": [], "pnls": []}
            )
            alignment = contribution * out_mult
            entry["total"] += 1
            if alignment > 0:
                entry["correct"] += 1
            entry["strengths"].append(abs(alignment))
            entry["pnls"].append(pnl)

    scores = {}
    for source, entry in data.items():
        accuracy = entry["correct"] / entry["total"]
        scores[source] = SignalScore(
            accuracy=round(accuracy, 4),
            strength_correlation=round(
                pearson_correlation(entry["strengths"], entry["pnls"]), 4
            ),
            edge=round(accuracy - 0.5, 4),
            sample_count=entry["total"],
        )
    return scores


@dataclass
class WeightAdjustment:
    new_weights: dict[str, float]
    changes: dict[str, float]
    insights: list[str] = field(default_factory=list)


def adjust_weights(
    current: dict[str, float],
    scores: dict[str, SignalScore],
    learning_rate: float,
    config: LearningConfig | None = None,
) -> WeightAdjustment:
    """Apply edge-proportional deltas to sources with enough samples."""
    config = config or get_trading_config().learning
    proposed = dict(current)
    insights = []

    for source, old in current.items():
        score = scores.get(source)
        if score is None or score.sample_count < config.min_source_samples:
            continue
        delta = _clamp(
            score.edge * learning_rate * config.delta_scale,
            -config.max_weight_change,
            config.max_weight_change,
        )
        new = _clamp(old + delta, config.min_weight, config.max_weight)
        proposed[source] = new

        change = new - old
        if abs(change) >= config.min_reported_change:
            verb = "increasing" if change > 0 else "reducing"
            insights.append(
                f"{source} signal accuracy {score.accuracy * 100:.0f}% - {verb} weight "
                f"from {old:.3f} -> {new:.3f} (edge: {score.edge:+.3f})"
            )

    normalized = normalize_weights(proposed, config)
    changes = {
        source: round(normalized.get(source, 0.0) - current.get(source, 0.0), 6)
        for source in current
    }
    return WeightAdjustment(normalized, changes, insights)


@dataclass
class ThresholdAdjustment:
    new_threshold: float
    changed: bool
    insight: str | None = None


def adapt_threshold(
    current: float,
    win_rate: float,
    trade_count: int,
    config: LearningConfig | None = None,
) -> ThresholdAdjustment:
    """Raise the bet threshold after a poor run, lower it after a strong one."""
    config = config or get_trading_config().learning
    proposed = current
    insight = None

    if trade_count >= config.min_trades:
        if win_rate < config.low_win_rate:
            proposed = current + config.threshold_raise
            insight = (
                f"Win rate {win_rate * 100:.0f}% < {config.low_win_rate * 100:.0f}% - "
                f"raising threshold from {current:.3f} -> "
                f"{min(proposed, config.threshold_max):.3f}"
            )
        elif (
            win_rate > config.high_win_rate
            and trade_count >= config.high_win_rate_min_trades
        ):
            proposed = current - config.threshold_lower
            insight = (
                f"Win rate {win_rate * 100:.0f}% > {config.high_win_rate * 100:.0f}% - "
                f"lowering threshold from {current:.3f} -> "
                f"{max(proposed, config.threshold_min):.3f}"
            )

    new = round(_clamp(proposed, config.threshold_min, config.threshold_max), 4)
    changed = not math.isclose(new, current, abs_tol=1e-9)
    return ThresholdAdjustment(new, changed, insight if changed else None)


@dataclass
class BlackoutEvaluation:
    blackout: bool
    reason: str | None
    until: datetime | None
    consecutive_losses: int
    confidence_multiplier: float
    skip_up_bets: bool
    skip_down_bets: bool
    insights: list[str] = field(default_factory=list)


def _parse_ts(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None


# =============================================================================
# Service
# =============================================================================


class SelfImprover:
    """Adjusts a model's weights, threshold and risk throttles from outcomes."""

    def __init__(
        self,
        repos: Repositories,
        versions: VersionManager | None = None,
        config: LearningConfig | None = None,
    ):
        self.repos = repos
        self.versions = versions or VersionManager(repos)
        self.config = config or get_trading_config().learning

    async def latest_btc_volatility(self) -> float | None:
        latest = await self.repos.markets.latest_btc()
        if latest is None or latest.change_1h is None:
            return None
        return abs(latest.change_1h)

    async def latest_fear_greed(self, model_id: int, now: datetime) -> int | None:
        """Latest fear/greed reading mapped from [-1, 1] onto 0-100."""
        signal = await self.repos.signals.latest(
            model_id, "fear_greed", datetime.min.replace(tzinfo=timezone.utc), now
        )
        if signal is None:
            return None
        return round((signal.normalized + 1) / 2 * 100)

    async def evaluate_blackout(
        self,
        model_id: int,
        recent_trades: list[Trade],
        btc_volatility: float | None,
        fear_greed: int | None,
        now: datetime | None = None,
    ) -> BlackoutEvaluation:
        """
        Update the persisted blackout document for one model and the
        global throttles, returning what changed.

        The document is shared by all models, so the write goes through the
        state store's locked ``update``.
        """
        now = now or datetime.now(timezone.utc)
        config = self.config
        insights = []

        losses = consecutive_losses(recent_trades)
        blackout = losses >= config.blackout_losses
        reason = None
        until = None
        if blackout:
            until = now + timedelta(minutes=config.blackout_minutes)
            reason = f"{losses} consecutive losses"
            insights.append(
                f"Blackout triggered: {losses} consecutive losses, "
                f"pausing {config.blackout_minutes} minutes"
            )

        multiplier = 1.0
        high_volatility = (
            btc_volatility is not None and btc_volatility > config.high_volatility_pct
        )
        if high_volatility:
            multiplier = config.volatility_multiplier
            insights.append(
                f"BTC 1h volatility {btc_volatility:.2f}% > {config.high_volatility_pct:g}% "
                f"- applying {multiplier:g}x confidence multiplier"
            )

        skip_up = skip_down = None
        if fear_greed is not None:
            skip_up = fear_greed < config.extreme_fear
            skip_down = fear_greed > config.extreme_greed
            if skip_up:
                insights.append(
                    f"Fear/Greed index {fear_greed} (extreme fear) - skipping all UP bets"
                )
            elif skip_down:
                insights.append(
                    f"Fear/Greed index {fear_greed} (extreme greed) - skipping all DOWN bets"
                )

        def apply(state: dict[str, Any]) -> None:
            models = state.setdefault("models", {})
            model_state = models.get(str(model_id)) or {}
            if blackout:
                model_state["blackout_until"] = until.isoformat()
                model_state["blackout_reason"] = reason
            else:
                existing = _parse_ts(model_state.get("blackout_until"))
                if existing is not None and existing <= now:
                    model_state["blackout_until"] = None
                    model_state["blackout_reason"] = None
            model_state["consecutive_losses"] = losses
            models[str(model_id)] = model_state

            glob = state.setdefault("global", {})
            glob["volatility_pct"] = btc_volatility
            glob["high_volatility"] = high_volatility
            # Extreme readings throttle one side only
            if fear_greed is not None:
                glob["fear_greed"] = fear_greed
                glob["skip_up_bets"] = skip_up
                glob["skip_down_bets"] = skip_down
            state["updated_at"] = now.isoformat()

        state = await self.repos.state.update(BLACKOUT_KEY, apply)
        glob = state.get("global") or {}

        return BlackoutEvaluation(
            blackout=blackout,
            reason=reason,
            until=until,
            consecutive_losses=losses,
            confidence_multiplier=multiplier,
            skip_up_bets=bool(glob.get("skip_up_bets")),
            skip_down_bets=bool(glob.get("skip_down_bets")),
            insights=insights,
        )

    async def _store_insights(
        self,
        model_id: int,
        insights: list[str],
        action: dict[str, Any],
        now: datetime,
    ) -> None:
        for text in insights:
            logger.info("model_insight", model_id=model_id, insight=text)
            await self.repos.insights.add(
                ModelInsight(
                    model_id=model_id,
                    timestamp=now,
                    insight_text=text,
                    action_taken=action,
                )
            )

    async def run_for_model(
        self, model_id: int, now: datetime | None = None
    ) -> dict[str, Any] | None:
        """Run one learning cycle; returns the cycle summary."""
        now = now or datetime.now(timezone.utc)
        config = self.config

        model = await self.repos.models.get(model_id)
        if model is None:
            logger.error("improver_model_not_found", model_id=model_id)
            return None

        trades = await self.repos.trades.recent_settled(model_id, config.window_size)
        if len(trades) < config.min_trades:
            logger.info(
                "learning_skipped",
                model_id=model_id,
                trade_count=len(trades),
                required=config.min_trades,
            )
            return {
                "model_id": model_id,
                "skipped": True,
                "reason": "insufficient_trades",
                "trade_count": len(trades),
            }

        analyses = await self.repos.analyses.for_trades([t.id for t in trades])
        samples = [
            (
                dict(analyses[t.id].signal_contributions) if t.id in analyses else {},
                t.is_win,
                t.pnl or 0.0,
            )
            for t in trades
        ]
        trade_count = len(trades)
        wins = sum(1 for t in trades if t.is_win)
        win_rate = wins / trade_count
        learning_rate = compute_learning_rate(
            await self.repos.trades.count_settled(model_id), config
        )
        scores = score_signals(samples)

        btc_volatility = await self.latest_btc_volatility()
        fear_greed = await self.latest_fear_greed(model_id, now)
        blackout = await self.evaluate_blackout(
            model_id, trades, btc_volatility, fear_greed, now
        )

        def apply(fresh: TradingModel) -> dict[str, Any]:
            old_weights = dict(fresh.signal_weights)
            old_threshold = fresh.bet_threshold
            weights = adjust_weights(old_weights, scores, learning_rate, config)
            threshold = adapt_threshold(old_threshold, win_rate, trade_count, config)
            weights_changed = any(weights.changes.values())

            new_thresholds = dict(fresh.thresholds)
            new_thresholds["bet_threshold"] = threshold.new_threshold
            fresh.signal_weights = weights.new_weights
            fresh.thresholds = new_thresholds
            fresh.consecutive_losses = blackout.consecutive_losses
            if blackout.until is not None:
                fresh.blackout_until = blackout.until
            elif fresh.blackout_until is not None and fresh.blackout_until <= now:
                fresh.blackout_until = None
            fresh.total_learning_cycles = (fresh.total_learning_cycles or 0) + 1
            if weights_changed or threshold.changed:
                fresh.version = (fresh.version or 1) + 1

            return {
                "old_weights": old_weights,
                "old_threshold": old_threshold,
                "weights": weights,
                "threshold": threshold,
                "config_changed": weights_changed or threshold.changed,
                "thresholds": new_thresholds,
            }

        outcome = await self.repos.models.update(model_id, apply)
        if outcome is None:
            logger.error("improver_model_vanished", model_id=model_id)
            return None

        weights: WeightAdjustment = outcome["weights"]
        threshold: ThresholdAdjustment = outcome["threshold"]

        if outcome["config_changed"]:
            await self.versions.on_weights_changed(
                model_id,
                IMPROVEMENT_REASON,
                weights.new_weights,
                outcome["thresholds"],
                now=now,
            )

        insights = list(weights.insights)
        if threshold.insight:
            insights.append(threshold.insight)
        insights.extend(blackout.insights)
        if blackout.blackout:
            insights.append(
                f"Model raised threshold from {outcome['old_threshold']:.3f} -> "
                f"{threshold.new_threshold:.3f} after "
                f"{blackout.consecutive_losses} consecutive losses"
            )
        await self._store_insights(
            model_id,
            insights,
            {
                "type": "learning_cycle",
                "win_rate": win_rate,
                "trade_count": trade_count,
                "weight_changes": weights.changes,
            },
            now,
        )

        logger.info(
            "learning_cycle_complete",
            model_id=model_id,
            trade_count=trade_count,
            win_rate=round(win_rate, 4),
            learning_rate=round(learning_rate, 4),
            insights=len(insights),
            blackout=blackout.blackout,
        )
        return {
            "model_id": model_id,
            "model_name": model.name,
            "skipped": False,
            "trade_count": trade_count,
            "win_rate": round(win_rate, 4),
            "learning_rate": round(learning_rate, 4),
            "signal_scores": {k: v.to_dict() for k, v in scores.items()},
            "old_weights": outcome["old_weights"],
            "new_weights": weights.new_weights,
            "weight_changes": weights.changes,
            "old_threshold": outcome["old_threshold"],
            "new_threshold": threshold.new_threshold,
            "threshold_changed": threshold.changed,
            "blackout": blackout.blackout,
            "blackout_until": blackout.until.isoformat() if blackout.until else None,
            "blackout_reason": blackout.reason,
            "consecutive_losses": blackout.consecutive_losses,
            "btc_volatility": btc_volatility,
            "fear_greed": fear_greed,
            "global_confidence_multiplier": blackout.confidence_multiplier,
            "skip_up_bets": blackout.skip_up_bets,
            "skip_down_bets": blackout.skip_down_bets,
            "insights": insights,
            "ran_at": now.isoformat(),
        }

    async def run_improvement_cycle(
        self, now: datetime | None = None
    ) -> list[dict[str, Any]]:
        """Learning cycle for every active model; failures are isolated."""
        results = []
        for model in await self.repos.models.list_active():
            try:
                result = await self.run_for_model(model.id, now)
            except Exception as e:
                logger.error("learning_cycle_failed", model_id=model.id, error=str(e))
                results.append({"model_id": model.id, "error": str(e)})
                continue
            if result is not None:
                results.append(result)
        logger.info("improvement_cycle_complete", models=len(results))
        return results

    async def on_trade_closed(self, trade: Trade) -> dict[str, Any] | None:
        """Settlement hook: learn after every Nth settled trade."""
        total = await self.repos.trades.count_settled(trade.model_id)
        if total > 0 and total % self.config.trigger_every == 0:
            logger.info(
                "learning_cycle_triggered", model_id=trade.model_id, settled=total
            )
            return await self.run_for_model(trade.model_id, trade.closed_at)
        return None
