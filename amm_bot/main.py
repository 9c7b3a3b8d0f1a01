from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from dataclasses import replace

from amm_bot.config import AppSettings, BotConfiguration, load_settings
from amm_bot.engine import AMMEngine
from amm_bot.framework.broadcast import BroadcastEvent, BufferedBroadcastSink
from amm_bot.framework.trade_activity import CapitalPolicyBook, TradeActivityLog
from amm_bot.ledger import DryRunSigner, JsonRpcLedgerClient
from amm_bot.logging_setup import configure_logging
from amm_bot.orchestrator import Orchestrator
from amm_bot.policy import PolicyGuard
from amm_bot.record_store import TradeRecordStore
from amm_bot.safety import SafetyChecker

LOGGER = logging.getLogger(__name__)

_DRY_RUN_ADDRESS = "rDryRunAccount1111111111111111111"


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="AMM arbitrage and liquidity bot",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Override AMM_LOG_LEVEL (DEBUG, INFO, WARNING, ...)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single engine tick and exit",
    )
    parser.add_argument(
        "--db-path",
        type=str,
        default=None,
        help="SQLite file for the trade record store",
    )
    return parser.parse_args()


def _log_event(event: BroadcastEvent) -> None:
    LOGGER.debug("broadcast %s %s", event.event, event.payload)


class _Runtime:
    """Shared services for every engine started by this process."""

    def __init__(self, settings: AppSettings) -> None:
        self.settings = settings
        self.ledger = JsonRpcLedgerClient(settings.ledger)
        address = settings.ledger.wallet_address or _DRY_RUN_ADDRESS
        if not settings.dry_run:
            LOGGER.warning("no live signer is wired into the CLI, submitting in dry-run mode")
        self.signer = DryRunSigner(address)
        self.broadcast = BufferedBroadcastSink()
        self.broadcast.subscribe(_log_event)
        self.records = TradeRecordStore(settings.db_path)
        self.capital = CapitalPolicyBook(TradeActivityLog())

    def build_engine(self, instance_id: str, config: BotConfiguration) -> AMMEngine:
        guard = PolicyGuard(
            config.risk,
            safety=SafetyChecker(self.ledger, self.signer.address, config.risk),
            capital=self.capital,
        )
        return AMMEngine(
            instance_id,
            config,
            self.ledger,
            self.signer,
            discovery_settings=self.settings.discovery,
            guard=guard,
            broadcast=self.broadcast,
            records=self.records,
        )

    async def aclose(self) -> None:
        await self.ledger.aclose()
        self.records.close()


async def _wait_for_shutdown() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            LOGGER.debug("signal handlers unavailable on this platform")
    await stop.wait()


async def _run() -> None:
    args = parse_args()
    settings = load_settings()
    if args.log_level:
        settings = replace(settings, log_level=args.log_level)
    if args.once:
        settings = replace(settings, run_once=True)
    if args.db_path:
        settings = replace(settings, db_path=args.db_path)

    configure_logging(settings.log_level)
    runtime = _Runtime(settings)
    LOGGER.info(
        "bot config=%s mode=%s interval=%ss arbitrage=%s liquidity=%s",
        settings.bot.config_id,
        "dry-run" if settings.dry_run else "live",
        settings.bot.tick_interval_seconds,
        settings.bot.arbitrage.enabled,
        settings.bot.liquidity.enabled,
    )

    try:
        if settings.run_once:
            engine = runtime.build_engine("once", settings.bot)
            await engine.run_tick()
            stats = engine.get_statistics()
            LOGGER.info(
                "tick done: executions=%d profit=%.6f positions=%d",
                stats.arbitrage.total_executions,
                stats.arbitrage.total_profit,
                stats.active_positions,
            )
            return

        orchestrator = Orchestrator(runtime.build_engine)
        started = await orchestrator.start_bot(settings.bot)
        if not started.success:
            LOGGER.error("bot failed to start: %s", started.error)
            return
        await _wait_for_shutdown()
        LOGGER.info("shutdown requested")
        await orchestrator.stop_all()
    finally:
        await runtime.aclose()


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
