"""PolyEdge diagnostic command line.

Examples:
  polyedge selftest              # offline checks against in-memory storage
  polyedge seed                  # onboard the models in defaults.yaml
  polyedge sweep                 # settle trades and aggregate every model
  polyedge run-model 2           # aggregate one model
  polyedge improve --model-id 2  # learning cycle for one model
  polyedge analyze               # analyze all pending trades
  polyedge versions 2            # version history with stats
  polyedge promote 7             # restore version 7 onto its model
"""

import argparse
import asyncio
import json
import math
import sys
from dataclasses import asdict, replace
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from polyedge.config import get_settings
from polyedge.config.logging import configure_logging
from polyedge.models.domain import MarketSnapshot, Signal
from polyedge.repositories.memory import build_memory_repositories
from polyedge.services.bet_sizer import kelly_bet
from polyedge.services.engine import (
    build_trading_engine,
    open_trading_engine,
    seed_default_models,
)
from polyedge.services.notifier import LogNotifier
from polyedge.services.oracle import NullOracle
from polyedge.services.self_improver import (
    adapt_threshold,
    compute_learning_rate,
    normalize_weights,
    pearson_correlation,
)

logger = structlog.get_logger(__name__)


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


# =============================================================================
# Self-test
# =============================================================================


def _math_checks() -> list[tuple[str, bool, Any]]:
    checks = []

    def check(name: str, ok: bool, value: Any) -> None:
        checks.append((name, ok, value))

    bet = kelly_bet(0.60, 1 / 0.45 - 1, 100, 20)
    check("kelly p=0.60 odds=0.45", math.isclose(bet, 6.82, abs_tol=0.01), bet)
    bet = kelly_bet(0.50, 1.0, 100, 20)
    check("kelly fair odds", bet == 0, bet)
    bet = kelly_bet(0.40, 1.0, 100, 20)
    check("kelly negative edge", bet == 0, bet)
    bet = kelly_bet(0.90, 1 / 0.30 - 1, 100, 15)
    check("kelly capped at max_bet", bet == 15, bet)

    for trades, expected in ((0, 0.30), (50, 0.15), (200, 0.06)):
        lr = compute_learning_rate(trades)
        check(f"learning rate at {trades} trades", math.isclose(lr, expected), lr)

    weights = normalize_weights({"a": 0.9, "b": 0.05, "c": 0.01, "d": 0.3})
    check(
        "normalized weights bounded and summing to 1",
        math.isclose(sum(weights.values()), 1.0, abs_tol=1e-6)
        and all(0.02 <= w <= 0.50 for w in weights.values()),
        weights,
    )

    corr = pearson_correlation([1, 2, 3, 4, 5], [2, 4, 6, 8, 10])
    check("pearson of linear series", math.isclose(corr, 1.0), corr)

    raised = adapt_threshold(0.65, 0.40, 20)
    check("threshold raised after poor run", raised.new_threshold == 0.68, raised.new_threshold)
    lowered = adapt_threshold(0.65, 0.70, 20)
    check("threshold lowered after strong run", lowered.new_threshold == 0.63, lowered.new_threshold)
    return checks


async def _simulation_checks() -> list[tuple[str, bool, Any]]:
    """Seed, signal, bet and settle against in-memory storage."""
    checks = []
    now = datetime.now(timezone.utc).replace(microsecond=0)
    engine = build_trading_engine(
        build_memory_repositories(), notifier=LogNotifier(), oracle=NullOracle()
    )
    models = await seed_default_models(engine, now=now - timedelta(hours=1))
    checks.append(("seeded models", len(models) == 3, [m.name for m in models]))

    aggressive = next(m for m in models if m.name == "Aggressive")
    for source in aggressive.signal_weights:
        await engine.repos.signals.add(
            Signal(
                model_id=aggressive.id,
                source=source,
                normalized=0.8,
                raw_value=None,
                signal_metadata=None,
                timestamp=now - timedelta(minutes=1),
            )
        )
    await engine.repos.markets.add_snapshot(
        MarketSnapshot(
            market_id="btc-up-5m",
            market_name="BTC up in 5 minutes?",
            up_odds=0.45,
            down_odds=0.57,
            volume=1000.0,
            time_remaining=240,
            timestamp=now,
        )
    )
    result = await engine.aggregator.run_for_model(aggressive.id, now)
    checks.append(("strong signal places a bet", result.trade is not None, result.action.value))

    if result.trade is not None:
        settled = await engine.ledger.close_trade(
            result.trade.id, 0.9, now=now + timedelta(minutes=5)
        )
        account = await engine.repos.trades.get_account(aggressive.id)
        checks.append(
            (
                "winning settlement credits the account",
                settled is not None and settled.pnl > 0 and account.balance_usdc > 100,
                account.balance_usdc,
            )
        )
        analysis = await engine.repos.analyses.get_for_trade(result.trade.id)
        checks.append(
            ("settlement hook stored an analysis", analysis is not None, analysis and analysis.verdict)
        )
    return checks


def cmd_selftest(args: argparse.Namespace) -> int:
    checks = _math_checks() + asyncio.run(_simulation_checks())
    failed = 0
    for name, ok, value in checks:
        failed += not ok
        print(f"[{'PASS' if ok else 'FAIL'}] {name}: {value}")
    print(f"\n{len(checks) - failed}/{len(checks)} checks passed")
    return 1 if failed else 0


# =============================================================================
# Store-backed commands
# =============================================================================


async def _seed() -> list[dict[str, Any]]:
    async with open_trading_engine() as engine:
        created = await seed_default_models(engine)
    return [{"id": m.id, "name": m.name} for m in created]


async def _sweep() -> dict[str, Any]:
    async with open_trading_engine() as engine:
        return await engine.run_sweep()


async def _run_model(model_id: int) -> dict[str, Any] | None:
    async with open_trading_engine() as engine:
        result = await engine.aggregator.run_for_model(model_id)
    if result is None:
        return None
    payload = asdict(replace(result, trade=None))
    payload["trade"] = result.trade.id if result.trade else None
    return payload


async def _patterns() -> dict[str, Any]:
    async with open_trading_engine() as engine:
        return await engine.patterns.run_analysis()


async def _improve(model_id: int | None) -> Any:
    async with open_trading_engine() as engine:
        if model_id is None:
            return await engine.improver.run_improvement_cycle()
        return await engine.improver.run_for_model(model_id)


async def _analyze(trade_id: int | None) -> Any:
    async with open_trading_engine() as engine:
        if trade_id is None:
            analyses = await engine.analyzer.analyze_all_pending()
        else:
            analysis = await engine.analyzer.analyze_trade(trade_id)
            analyses = [analysis] if analysis else []
    return [
        {
            "trade_id": a.trade_id,
            "verdict": a.verdict,
            "signal_contributions": a.signal_contributions,
            "adjustment_suggestions": a.adjustment_suggestions,
            "market_conditions": a.market_conditions,
        }
        for a in analyses
    ]


async def _versions(model_id: int) -> dict[str, Any]:
    async with open_trading_engine() as engine:
        return {
            "history": await engine.versions.get_version_history(model_id),
            "best": await engine.versions.get_best_version(model_id),
        }


async def _promote(version_id: int) -> dict[str, Any] | None:
    async with open_trading_engine() as engine:
        version = await engine.versions.promote_to_prod(version_id)
    if version is None:
        return None
    return {"new_version_id": version.id, "new_version_num": version.version_num}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="polyedge",
        description="PolyEdge paper-trading decision core",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("selftest", help="Run offline checks with in-memory storage")
    sub.add_parser("seed", help="Create the models listed in defaults.yaml")
    sub.add_parser("sweep", help="Settle trades and aggregate all active models")

    p = sub.add_parser("run-model", help="Aggregate signals for one model")
    p.add_argument("model_id", type=int)

    sub.add_parser("patterns", help="Recompute pattern memory")

    p = sub.add_parser("improve", help="Run the learning cycle")
    p.add_argument("--model-id", type=int, default=None, help="Only this model")

    p = sub.add_parser("analyze", help="Analyze one trade or all pending trades")
    p.add_argument("trade_id", type=int, nargs="?", default=None)

    p = sub.add_parser("versions", help="Show version history and the best version")
    p.add_argument("model_id", type=int)

    p = sub.add_parser("promote", help="Restore a version onto its model")
    p.add_argument("version_id", type=int)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(get_settings().log_level)

    if args.command == "selftest":
        return cmd_selftest(args)

    runners = {
        "seed": lambda: _seed(),
        "sweep": lambda: _sweep(),
        "run-model": lambda: _run_model(args.model_id),
        "patterns": lambda: _patterns(),
        "improve": lambda: _improve(args.model_id),
        "analyze": lambda: _analyze(args.trade_id),
        "versions": lambda: _versions(args.model_id),
        "promote": lambda: _promote(args.version_id),
    }
    try:
        result = asyncio.run(runners[args.command]())
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        logger.error("command_failed", command=args.command, error=str(e))
        return 1

    _print(result)
    return 0 if result is not None else 1


if __name__ == "__main__":
    sys.exit(main())
