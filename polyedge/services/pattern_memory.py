"""Pattern memory: historical edge statistics from settled trades.

Pure arithmetic over trade, BTC price and market snapshot history. The
derived document is a cache: ``run_analysis`` recomputes it from scratch
and is idempotent, so two runs over an unchanged history produce
identical buckets.

Document layout::

    hourly        {"<utc hour>": {wins, total, win_rate, is_weak}}
    btc_momentum  {high_up|high_down|low: {wins, total, win_rate}}
    odds_ev       {"<dir>_<lo>_<hi>": {wins, total, implied_prob,
                                       actual_win_rate, ev}}
    market_vig    {"<market id>": {avg_vig, avg_total, samples}}
    updated_at    ISO timestamp of the last recompute
"""

import bisect
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from polyedge.config.trading import PatternConfig, get_trading_config
from polyedge.models.domain import BtcPrice, Trade
from polyedge.repositories.base import PATTERNS_KEY, Repositories

logger = structlog.get_logger(__name__)

MOMENTUM_KEYS = ("high_up", "high_down", "low")


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def odds_range_key(
    direction: str, odds: float, config: PatternConfig | None = None
) -> str | None:
    """Bucket key such as ``up_35_45`` for entry odds, or None if untracked."""
    config = config or get_trading_config().patterns
    for lo, hi, _ in config.odds_buckets:
        if lo <= odds < hi:
            return f"{direction}_{round(lo * 100)}_{round(hi * 100)}"
    return None


def implied_prob_for_key(key: str) -> float:
    """Midpoint implied probability of a bucket key (``up_35_45`` -> 0.40)."""
    parts = key.split("_")
    lo = int(parts[-2]) / 100
    hi = int(parts[-1]) / 100
    return round((lo + hi) / 2, 4)


def btc_momentum_key(change_1h: float | None, threshold: float = 2.0) -> str:
    if change_1h is None:
        return "low"
    if change_1h > threshold:
        return "high_up"
    if change_1h < -threshold:
        return "high_down"
    return "low"


def empty_patterns() -> dict[str, Any]:
    return {
        "hourly": {},
        "btc_momentum": {
            key: {"wins": 0, "total": 0, "win_rate": None} for key in MOMENTUM_KEYS
        },
        "odds_ev": {},
        "market_vig": {},
        "updated_at": None,
    }


def _utc_hour(ts: datetime) -> int:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).hour


class _BtcIndex:
    """Nearest-neighbour lookup over BTC readings sorted by time."""

    def __init__(self, prices: list[BtcPrice]):
        self.prices = prices
        self.times = [p.timestamp for p in prices]

    def nearest_change(self, ts: datetime, tolerance: timedelta) -> float | None:
        if not self.prices:
            return None
        i = bisect.bisect_left(self.times, ts)
        best = None
        best_diff = None
        for j in (i - 1, i):
            if 0 <= j < len(self.prices):
                diff = abs(self.times[j] - ts)
                if best_diff is None or diff < best_diff:
                    best, best_diff = self.prices[j], diff
        if best is None or best_diff > tolerance:
            return None
        return best.change_1h


def compute_market_edge(
    patterns: dict[str, Any],
    direction: str,
    current_odds: float,
    hour_of_day: int,
    recent_volatility: float | None,
    config: PatternConfig | None = None,
) -> float:
    """
    Edge score in [0, 1] for a proposed trade; 0.5 is neutral.

    Hour-of-day and odds-EV terms only count once their bucket holds at
    least ``edge_min_samples`` trades.
    """
    config = config or get_trading_config().patterns
    score = 0.5

    hour = (patterns.get("hourly") or {}).get(str(int(hour_of_day)))
    if hour and hour["total"] >= config.edge_min_samples and hour["win_rate"] is not None:
        score += hour["win_rate"] - 0.5
        if hour["is_weak"]:
            score -= config.weak_penalty

    key = odds_range_key(direction, current_odds, config)
    bucket = (patterns.get("odds_ev") or {}).get(key) if key else None
    if bucket and bucket["total"] >= config.edge_min_samples:
        score += _clamp(bucket["ev"] or 0.0, -config.ev_clamp, config.ev_clamp)

    if recent_volatility is not None:
        if recent_volatility > config.high_volatility_pct:
            score -= config.high_volatility_penalty
        elif recent_volatility > config.moderate_volatility_pct:
            score -= config.moderate_volatility_penalty

    return round(_clamp(score, 0.0, 1.0), 4)


class PatternMemory:
    """Recomputes and serves the pattern document."""

    def __init__(self, repos: Repositories, config: PatternConfig | None = None):
        self.repos = repos
        self.config = config or get_trading_config().patterns

    async def _btc_index(self, trades: list[Trade]) -> _BtcIndex:
        if not trades:
            return _BtcIndex([])
        tolerance = timedelta(minutes=self.config.btc_match_tolerance_minutes)
        prices = await self.repos.markets.btc_prices_between(
            trades[0].opened_at - tolerance, trades[-1].opened_at + tolerance
        )
        return _BtcIndex(prices)

    async def compute(self) -> dict[str, Any]:
        """Derive all buckets from history without persisting."""
        patterns = empty_patterns()
        trades = await self.repos.trades.all_settled()
        btc = await self._btc_index(trades)
        tolerance = timedelta(minutes=self.config.btc_match_tolerance_minutes)

        for trade in trades:
            win = 1 if trade.is_win else 0

            hour = patterns["hourly"].setdefault(
                str(_utc_hour(trade.opened_at)),
                {"wins": 0, "total": 0, "win_rate": None, "is_weak": False},
            )
            hour["wins"] += win
            hour["total"] += 1

            change = btc.nearest_change(trade.opened_at, tolerance)
            momentum = patterns["btc_momentum"][
                btc_momentum_key(change, self.config.momentum_threshold_pct)
            ]
            momentum["wins"] += win
            momentum["total"] += 1

            if trade.entry_odds is not None:
                key = odds_range_key(trade.direction, trade.entry_odds, self.config)
                if key:
                    bucket = patterns["odds_ev"].setdefault(
                        key,
                        {
                            "wins": 0,
                            "total": 0,
                            "implied_prob": implied_prob_for_key(key),
                            "actual_win_rate": None,
                            "ev": None,
                        },
                    )
                    bucket["wins"] += win
                    bucket["total"] += 1

        for data in patterns["hourly"].values():
            data["win_rate"] = data["wins"] / data["total"]
            data["is_weak"] = (
                data["total"] >= self.config.weak_min_samples
                and data["win_rate"] < self.config.weak_win_rate
            )
        for data in patterns["btc_momentum"].values():
            data["win_rate"] = data["wins"] / data["total"] if data["total"] else None
        for data in patterns["odds_ev"].values():
            data["actual_win_rate"] = data["wins"] / data["total"]
            data["ev"] = round(data["actual_win_rate"] - data["implied_prob"], 4)

        vig = await self.repos.markets.vig_by_market()
        for market_id, (avg_total, samples) in sorted(vig.items()):
            patterns["market_vig"][market_id] = {
                "avg_vig": round((avg_total - 1.0) * 100, 3),
                "avg_total": round(avg_total, 4),
                "samples": samples,
            }

        logger.info(
            "pattern_analysis_computed",
            trades=len(trades),
            hourly_buckets=len(patterns["hourly"]),
            ev_buckets=len(patterns["odds_ev"]),
            markets=len(patterns["market_vig"]),
        )
        return patterns

    async def run_analysis(self, now: datetime | None = None) -> dict[str, Any]:
        """Recompute the document from history and persist it."""
        patterns = await self.compute()
        patterns["updated_at"] = (now or datetime.now(timezone.utc)).isoformat()
        await self.repos.state.save(PATTERNS_KEY, patterns)
        return patterns

    async def load(self) -> dict[str, Any]:
        """Cached document, regenerated from history when missing."""
        patterns = await self.repos.state.load(PATTERNS_KEY)
        if patterns is None:
            logger.info("pattern_memory_regenerating")
            patterns = await self.run_analysis()
        return patterns

    async def get_market_edge(
        self,
        direction: str,
        current_odds: float,
        hour_of_day: int,
        recent_volatility: float | None,
    ) -> float:
        patterns = await self.load()
        return compute_market_edge(
            patterns, direction, current_odds, hour_of_day, recent_volatility, self.config
        )

    async def is_weak_period(self, hour_of_day: int) -> bool:
        patterns = await self.load()
        hour = patterns["hourly"].get(str(int(hour_of_day)))
        return bool(hour and hour["is_weak"])

    async def get_odds_ev(self, direction: str, odds: float) -> float | None:
        """EV of the odds bucket, None when untracked or under-sampled."""
        key = odds_range_key(direction, odds, self.config)
        if key is None:
            return None
        patterns = await self.load()
        bucket = patterns["odds_ev"].get(key)
        if bucket and bucket["total"] >= self.config.edge_min_samples:
            return bucket["ev"]
        return None

    async def get_market_vig(self, market_id: str) -> float | None:
        """Average vig as a fraction (0.02 == 2%)."""
        patterns = await self.load()
        vig = patterns["market_vig"].get(market_id)
        return vig["avg_vig"] / 100 if vig else None
