"""Kelly Criterion position sizing and the trade skip gate.

Sizing is practical quarter-Kelly: the full Kelly fraction

    f* = (p * b - q) / b        q = 1 - p

is scaled by 0.25 and the resulting stake is clamped to
[MIN_BET, max_bet] and never exceeds the bankroll.

The skip gate runs before sizing and rejects a trade when the model is in
blackout, the balance is under the floor, the pattern-memory edge score
is too weak, or the Kelly stake is below the minimum bet.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

import structlog

from polyedge.config.trading import SizingConfig, get_trading_config
from polyedge.models.domain import TradingModel
from polyedge.repositories.base import BLACKOUT_KEY, StateStore

logger = structlog.get_logger(__name__)

_SIZING = get_trading_config().sizing
MIN_BET = _SIZING.min_bet
KELLY_FRACTION = _SIZING.kelly_fraction
MIN_BALANCE = _SIZING.min_balance
MIN_EDGE_SCORE = _SIZING.min_edge_score


def kelly_bet(
    win_probability: float,
    payoff_odds: float,
    bankroll: float,
    max_bet: float,
    kelly_fraction: float = KELLY_FRACTION,
    min_bet: float = MIN_BET,
) -> float:
    """
    Quarter-Kelly stake in USDC.

    Degenerate inputs (probability outside (0, 1), non-positive payoff)
    are logged and sized at the minimum bet rather than raising.

    Returns:
        Stake rounded to cents, 0 when there is no edge or no bankroll.
    """
    if win_probability <= 0 or win_probability >= 1:
        logger.warning("kelly_invalid_probability", win_probability=win_probability)
        return min_bet
    if payoff_odds <= 0:
        logger.warning("kelly_invalid_payoff", payoff_odds=payoff_odds)
        return min_bet
    if bankroll <= 0:
        return 0.0

    p = win_probability
    q = 1 - p
    b = payoff_odds
    fraction = (p * b - q) / b
    if fraction <= 0:
        logger.debug("kelly_no_edge", kelly_fraction=round(fraction, 4))
        return 0.0

    raw_bet = bankroll * fraction * kelly_fraction
    bet = min(max(raw_bet, min_bet), max_bet)
    bet = min(bet, bankroll)
    return round(bet, 2)


def entry_odds_to_payoff(entry_odds: float) -> float:
    """
    Net decimal payoff for an implied probability.

    entry_odds=0.4 pays 1.5 per unit staked. Odds outside (0, 1) map to
    even money.
    """
    if entry_odds <= 0 or entry_odds >= 1:
        return 1.0
    return 1 / entry_odds - 1


def score_to_win_probability(score: float) -> float:
    """Map an aggregated score in [-1, 1] onto a win probability in (0, 1)."""
    p = 0.5 + abs(score) / 2
    return min(max(p, 0.01), 0.99)


@dataclass
class SkipDecision:
    """Outcome of the skip gate."""

    skip: bool
    reason: str
    suggested_bet: float = 0.0


def _parse_ts(value) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None


class BetSizer:
    """Skip gate plus Kelly sizing for one proposed trade."""

    def __init__(self, state: StateStore, config: SizingConfig | None = None):
        self.state = state
        self.config = config or get_trading_config().sizing

    async def blackout_until(
        self, model: TradingModel, now: datetime | None = None
    ) -> datetime | None:
        """
        Active blackout expiry for a model, or None.

        The model row is authoritative; the persisted blackout document is
        consulted as well so a breaker tripped by another worker is honored
        before the row is re-read.
        """
        now = now or datetime.now(timezone.utc)
        candidates = [model.blackout_until]
        document = await self.state.load(BLACKOUT_KEY) or {}
        model_state = (document.get("models") or {}).get(str(model.id)) or {}
        candidates.append(_parse_ts(model_state.get("blackout_until")))
        active = [c for c in candidates if c is not None and c > now]
        return max(active) if active else None

    def size(
        self, win_probability: float, entry_odds: float, balance: float, max_bet: float
    ) -> float:
        return kelly_bet(
            win_probability,
            entry_odds_to_payoff(entry_odds),
            balance,
            max_bet,
            kelly_fraction=self.config.kelly_fraction,
            min_bet=self.config.min_bet,
        )

    async def should_skip_trade(
        self,
        model: TradingModel,
        entry_odds: float,
        direction: str,
        *,
        balance: float,
        win_probability: float,
        max_bet: float,
        edge_score: float,
        now: datetime | None = None,
    ) -> SkipDecision:
        """Run the skip gate in order: blackout, balance, edge, stake size."""
        until = await self.blackout_until(model, now)
        if until is not None:
            return SkipDecision(
                True, f"Model {model.id} in blackout until {until.isoformat()}"
            )

        if balance < self.config.min_balance:
            return SkipDecision(
                True,
                f"Balance ${balance:.2f} < minimum ${self.config.min_balance:.2f}",
            )

        if edge_score < self.config.min_edge_score:
            return SkipDecision(
                True,
                f"Market edge {edge_score:.3f} < minimum {self.config.min_edge_score}",
            )

        bet = self.size(win_probability, entry_odds, balance, max_bet)
        if bet < self.config.min_bet:
            return SkipDecision(
                True,
                f"Kelly bet ${bet:.2f} < minimum ${self.config.min_bet:.2f} ({direction})",
            )

        return SkipDecision(False, "OK", suggested_bet=bet)
