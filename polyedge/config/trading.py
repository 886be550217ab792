"""Trading Configuration.

Defines the numeric parameters of the PolyEdge decision core: signal
freshness windows, score tiers, Kelly sizing, settlement timing, the
learning loop and version ranking.

This is PAPER TRADING only - no real money is ever at risk.
"""

from dataclasses import dataclass, field
from enum import Enum


class Direction(str, Enum):
    """Side of a binary up/down market."""
    UP = "up"
    DOWN = "down"
    HOLD = "hold"


class Confidence(str, Enum):
    """Confidence tier derived from the absolute aggregated score."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Action(str, Enum):
    """Outcome of one aggregation run."""
    BET = "bet"
    ALERT = "alert"
    SKIP = "skip"


class TradeStatus(str, Enum):
    """Paper trade lifecycle. A trade is settled exactly once."""
    OPEN = "open"
    CLOSED = "closed"
    EXPIRED = "expired"


class Verdict(str, Enum):
    """Post-mortem classification of a settled trade."""
    GOOD_TRADE = "good_trade"
    BAD_EDGE = "bad_edge"
    MARKET_REVERSAL = "market_reversal"
    TIMING = "timing"
    SIGNAL_FAILURE = "signal_failure"


SHORT_TERM_SOURCES = ("price_momentum", "fear_greed", "volume")
LONG_TERM_SOURCES = ("news_sentiment", "x_sentiment", "poly_odds")
ALL_SOURCES = SHORT_TERM_SOURCES + LONG_TERM_SOURCES


@dataclass
class AggregatorConfig:
    """Signal freshness windows and score tiers."""
    short_window_minutes: int = 30
    long_window_minutes: int = 120
    direction_threshold: float = 0.1
    high_confidence: float = 0.7
    medium_confidence: float = 0.4
    oracle_gate: float = 0.55
    market_max_age_minutes: int = 5
    placeholder_market_id: str = "btc-5min-placeholder"
    reasoning_top_n: int = 3

    def window_for(self, source: str) -> int:
        """Freshness window in minutes for a signal source."""
        if source in SHORT_TERM_SOURCES:
            return self.short_window_minutes
        return self.long_window_minutes


@dataclass
class SizingConfig:
    """Quarter-Kelly sizing and the skip gate."""
    min_bet: float = 1.0
    kelly_fraction: float = 0.25
    min_balance: float = 10.0
    min_edge_score: float = 0.30


@dataclass
class LedgerConfig:
    """Settlement and expiry timing."""
    starting_balance: float = 100.0
    fallback_balance_fraction: float = 0.5
    resolution_threshold: float = 0.5
    expiry_grace_minutes: int = 5
    stuck_trade_minutes: int = 30


@dataclass
class PatternConfig:
    """Pattern memory buckets and edge adjustments."""
    btc_match_tolerance_minutes: int = 30
    momentum_threshold_pct: float = 2.0
    weak_min_samples: int = 10
    weak_win_rate: float = 0.40
    edge_min_samples: int = 5
    weak_penalty: float = 0.15
    ev_clamp: float = 0.3
    high_volatility_pct: float = 5.0
    high_volatility_penalty: float = 0.25
    moderate_volatility_pct: float = 2.0
    moderate_volatility_penalty: float = 0.10
    # (low, high, implied midpoint)
    odds_buckets: tuple[tuple[float, float, float], ...] = (
        (0.45, 0.55, 0.50),
        (0.35, 0.45, 0.40),
        (0.25, 0.35, 0.30),
    )


@dataclass
class LearningConfig:
    """Self-improvement loop parameters."""
    window_size: int = 20
    min_trades: int = 5
    min_source_samples: int = 3
    trigger_every: int = 5
    base_learning_rate: float = 0.3
    min_learning_rate: float = 0.05
    learning_rate_decay_trades: int = 50
    delta_scale: float = 0.1
    max_weight_change: float = 0.15
    min_weight: float = 0.02
    max_weight: float = 0.50
    min_reported_change: float = 0.005
    threshold_min: float = 0.50
    threshold_max: float = 0.90
    threshold_raise: float = 0.03
    threshold_lower: float = 0.02
    low_win_rate: float = 0.45
    high_win_rate: float = 0.65
    high_win_rate_min_trades: int = 20
    blackout_losses: int = 3
    blackout_minutes: int = 30
    high_volatility_pct: float = 5.0
    volatility_multiplier: float = 0.7
    extreme_fear: int = 20
    extreme_greed: int = 80


@dataclass
class AnalyzerConfig:
    """Trade post-mortem rules."""
    bad_up_odds: float = 0.30
    bad_down_odds: float = 0.70
    reversal_pct: float = 2.0
    timing_alignment: float = 0.1
    suggestion_scale: float = 0.05
    min_suggestion: float = 0.001
    btc_tolerance_minutes: int = 15
    bullish_pct: float = 1.5
    bearish_pct: float = -1.5


@dataclass
class VersionConfig:
    """Version ranking."""
    min_trades_for_sharpe: int = 3
    min_trades_for_best: int = 20
    annualization_days: int = 252
    flat_positive_sharpe: float = 999.0


@dataclass
class TradingConfig:
    """Complete decision-core configuration."""
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
    sizing: SizingConfig = field(default_factory=SizingConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    patterns: PatternConfig = field(default_factory=PatternConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)
    analyzer: AnalyzerConfig = field(default_factory=AnalyzerConfig)
    versions: VersionConfig = field(default_factory=VersionConfig)


# Global configuration instance
TRADING_CONFIG = TradingConfig()


def get_trading_config() -> TradingConfig:
    """Get the trading configuration."""
    return TRADING_CONFIG
