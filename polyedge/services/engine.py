"""Trading engine.

Wires the decision-core services together and runs the periodic sweep:

1. Settle resolved and stuck trades (settlement hooks run the trade
   analyzer and then the learning trigger)
2. Make sure every active model has a v1 version
3. Aggregate signals for each active model in turn; one model failing
   never stops the sweep
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as redis
import structlog

from polyedge.config import Settings, get_settings
from polyedge.config.trading import Action
from polyedge.models.base import get_engine, get_session_factory
from polyedge.models.domain import Trade, TradingModel
from polyedge.repositories.base import Repositories
from polyedge.repositories.sql import build_sql_repositories
from polyedge.repositories.state import RedisStateStore
from polyedge.services.aggregator import SignalAggregator
from polyedge.services.analyzer import TradeAnalyzer
from polyedge.services.bet_sizer import BetSizer
from polyedge.services.ledger import PaperLedger
from polyedge.services.notifier import LogNotifier, Notifier, TelegramNotifier
from polyedge.services.oracle import AnthropicDecisionOracle, DecisionOracle, NullOracle
from polyedge.services.pattern_memory import PatternMemory
from polyedge.services.self_improver import SelfImprover
from polyedge.services.versions import VersionManager

logger = structlog.get_logger(__name__)


@dataclass
class TradingEngine:
    """All services sharing one repository bundle."""

    repos: Repositories
    ledger: PaperLedger
    bet_sizer: BetSizer
    patterns: PatternMemory
    aggregator: SignalAggregator
    analyzer: TradeAnalyzer
    versions: VersionManager
    improver: SelfImprover

    async def _analyze_settled(self, trade: Trade) -> None:
        await self.analyzer.analyze_trade(trade.id, now=trade.closed_at)

    async def _learn_from_settled(self, trade: Trade) -> None:
        await self.improver.on_trade_closed(trade)

    def register_hooks(self) -> None:
        """Analysis must run before learning so the cycle sees the new row."""
        self.ledger.add_settlement_hook(self._analyze_settled)
        self.ledger.add_settlement_hook(self._learn_from_settled)

    async def run_sweep(self, now: datetime | None = None) -> dict[str, Any]:
        """One pass over all active models."""
        now = now or datetime.now(timezone.utc)
        stats: dict[str, Any] = {
            "models": 0,
            "bets": 0,
            "alerts": 0,
            "skips": 0,
            "errors": 0,
        }
        stats["settlement"] = await self.ledger.check_expired_trades(now)

        for model in await self.repos.models.list_active():
            stats["models"] += 1
            try:
                await self.versions.seed_v1(model, now)
                result = await self.aggregator.run_for_model(model.id, now)
            except Exception as e:
                logger.error("sweep_model_failed", model_id=model.id, error=str(e))
                stats["errors"] += 1
                continue
            if result is None:
                continue
            if result.action == Action.BET and result.trade is not None:
                stats["bets"] += 1
            elif result.action == Action.ALERT:
                stats["alerts"] += 1
            else:
                stats["skips"] += 1

        logger.info("sweep_complete", **{k: v for k, v in stats.items() if k != "settlement"})
        return stats


def build_notifier(settings: Settings) -> Notifier:
    if settings.telegram_configured:
        return TelegramNotifier(
            settings.telegram_bot_token,
            settings.telegram_chat_id,
            timeout=settings.notify_timeout_seconds,
        )
    return LogNotifier()


def build_oracle(settings: Settings) -> DecisionOracle:
    if settings.oracle_configured:
        return AnthropicDecisionOracle(
            settings.anthropic_api_key,
            settings.oracle_model,
            timeout=settings.oracle_timeout_seconds,
        )
    return NullOracle()


def build_trading_engine(
    repos: Repositories,
    *,
    notifier: Notifier | None = None,
    oracle: DecisionOracle | None = None,
    settings: Settings | None = None,
) -> TradingEngine:
    """Assemble the services around ``repos`` and register settlement hooks."""
    settings = settings or get_settings()
    notifier = notifier or build_notifier(settings)
    oracle = oracle or build_oracle(settings)

    ledger = PaperLedger(repos, notifier, notify_timeout=settings.notify_timeout_seconds)
    bet_sizer = BetSizer(repos.state)
    patterns = PatternMemory(repos)
    versions = VersionManager(repos)
    engine = TradingEngine(
        repos=repos,
        ledger=ledger,
        bet_sizer=bet_sizer,
        patterns=patterns,
        aggregator=SignalAggregator(
            repos,
            ledger,
            bet_sizer,
            patterns,
            oracle=oracle,
            notifier=notifier,
            oracle_timeout=settings.oracle_timeout_seconds,
            notify_timeout=settings.notify_timeout_seconds,
        ),
        analyzer=TradeAnalyzer(repos),
        versions=versions,
        improver=SelfImprover(repos, versions),
    )
    engine.register_hooks()
    return engine


@asynccontextmanager
async def open_trading_engine(
    settings: Settings | None = None,
) -> AsyncIterator[TradingEngine]:
    """
    SQL- and Redis-backed engine for one event loop.

    Used by Celery tasks and the CLI: each asyncio.run() gets its own
    connection pool and Redis client, closed on exit.
    """
    settings = settings or get_settings()
    db_engine = get_engine()
    client = redis.from_url(settings.redis_url, decode_responses=True)
    try:
        repos = build_sql_repositories(
            get_session_factory(db_engine),
            RedisStateStore(client, settings.state_key_prefix),
        )
        yield build_trading_engine(repos, settings=settings)
    finally:
        await client.aclose()
        await db_engine.dispose()


async def seed_default_models(
    engine: TradingEngine,
    defaults: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> list[TradingModel]:
    """
    Onboard the models listed in defaults.yaml.

    Each new model gets a paper account and a v1 version. Existing models
    (matched by name) are left untouched.
    """
    now = now or datetime.now(timezone.utc)
    defaults = defaults if defaults is not None else get_settings().load_defaults_config()
    starting_balance = float(defaults.get("starting_balance", 100.0))
    created = []

    for entry in defaults.get("models") or []:
        if await engine.repos.models.get_by_name(entry["name"]) is not None:
            continue
        model = await engine.repos.models.add(
            TradingModel(
                name=entry["name"],
                description=entry.get("description"),
                is_active=entry.get("is_active", True),
                signal_weights={k: float(v) for k, v in entry["signal_weights"].items()},
                thresholds={k: float(v) for k, v in entry["thresholds"].items()},
                consecutive_losses=0,
                blackout_until=None,
                version=1,
                total_learning_cycles=0,
                created_at=now,
            )
        )
        await engine.ledger.open_account(model.id, starting_balance)
        await engine.versions.seed_v1(model, now)
        logger.info("model_seeded", model_id=model.id, name=model.name)
        created.append(model)
    return created
