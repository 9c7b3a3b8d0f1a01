"""Per-instance AMM engine.

One tick runs, in order: arbitrage scan and execution, LP entry, monitoring
of open positions (with full or half exits) and a status broadcast. Ticks
are driven by a :class:`PeriodicTask`, so a tick that fires while the
previous one is still running is skipped without touching the network.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from amm_bot.config import BotConfiguration, DiscoverySettings
from amm_bot.detector import ArbitrageDetector, DetectorConfig
from amm_bot.discovery import PoolDiscovery
from amm_bot.errors import AmmBotError, LedgerError, SafetyViolation
from amm_bot.executor import ArbitrageExecutor, ExecutorConfig
from amm_bot.framework.broadcast import BroadcastSink, NullBroadcastSink
from amm_bot.framework.periodic_task import PeriodicTask
from amm_bot.ledger.base import LedgerQueryService, Signer
from amm_bot.liquidity import ExitRules, LiquidityProvider, numeraire_sides, pool_price
from amm_bot.logging_setup import InstanceLogAdapter
from amm_bot.models import (
    DepositStrategy,
    ExecutionStatistics,
    ExitAction,
    LPPosition,
    PoolMetrics,
    PoolPair,
)
from amm_bot.policy import PolicyGuard, TradeRequest
from amm_bot.pool_metrics import PoolMetricsEngine
from amm_bot.pool_ranking import filter_quality_pools, optimal_liquidity_amount, rank_pools_by_strategy, tier_for_strategy
from amm_bot.record_store import TradeRecordStore
from amm_bot.router import BestExecutionRouter
from amm_bot.safety import check_position_limit

LOGGER = logging.getLogger(__name__)

STRATEGY = "amm"
LP_DEPTH_FRACTION = 0.1


@dataclass(frozen=True)
class EngineStatistics:
    running: bool
    active_positions: int
    arbitrage: ExecutionStatistics
    positions: List[LPPosition] = field(default_factory=list)
    ticks_started: int = 0
    ticks_skipped: int = 0
    ticks_failed: int = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AMMEngine:
    def __init__(
        self,
        instance_id: str,
        config: BotConfiguration,
        ledger: LedgerQueryService,
        signer: Signer,
        discovery_settings: DiscoverySettings | None = None,
        guard: PolicyGuard | None = None,
        broadcast: BroadcastSink | None = None,
        records: TradeRecordStore | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.instance_id = instance_id
        self._config = config
        self._ledger = ledger
        self._signer = signer
        self._guard = guard or PolicyGuard(config.risk)
        self._broadcast = broadcast if broadcast is not None else NullBroadcastSink()
        self._records = records
        self._now = now

        sleep = sleep or asyncio.sleep
        arb = config.arbitrage
        self.discovery = PoolDiscovery(ledger, discovery_settings, sleep=sleep)
        self.metrics = PoolMetricsEngine(ledger)
        self.detector = ArbitrageDetector(
            DetectorConfig(min_profit_percent=arb.min_profit_percent, max_trade_amount=arb.max_trade_amount)
        )
        self.router = BestExecutionRouter(ledger, signer, self.metrics)
        self.executor = ArbitrageExecutor(
            self.router,
            ExecutorConfig(
                min_profit_threshold=arb.min_profit_percent,
                max_slippage_percent=arb.max_slippage_percent,
                settlement_delay=arb.settlement_delay_seconds,
            ),
            sleep=sleep,
        )
        self.liquidity = LiquidityProvider(
            signer, ExitRules(max_impermanent_loss=config.risk.max_impermanent_loss)
        )
        self._task = PeriodicTask(f"amm-{instance_id}", self.tick, config.tick_interval_seconds)

        self._log = InstanceLogAdapter(LOGGER, instance_id, "AMM")
        self._arb_log = self._log.with_category("Arbitrage")
        self._lp_log = self._log.with_category("Liquidity")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task.running

    @property
    def config(self) -> BotConfiguration:
        return self._config

    @property
    def task(self) -> PeriodicTask:
        return self._task

    def start(self) -> None:
        if self._task.running:
            self._log.warning("engine already running")
            return
        arb, lp, risk = self._config.arbitrage, self._config.liquidity, self._config.risk
        self._log.info(
            "engine started",
            metadata={
                "arbitrage": arb.enabled,
                "liquidity": lp.enabled,
                "interval": self._config.tick_interval_seconds,
                "max_il": risk.max_impermanent_loss,
                "max_position_size": risk.max_position_size,
            },
        )
        self._task.start()

    async def stop(self) -> None:
        self._log.info("stopping engine")
        await self._task.stop()
        self._log.info("engine stopped")

    async def run_tick(self) -> bool:
        """One guarded tick; False when a tick was already in flight."""
        return await self._task.run_tick()

    async def tick(self) -> None:
        pools: Optional[List[PoolMetrics]] = None
        if self._config.arbitrage.enabled:
            pools = await self._scan_pools()
            await self._run_arbitrage(pools)
        if self._config.liquidity.enabled:
            if pools is None:
                pools = await self._scan_pools()
            await self._enter_liquidity(pools)
        await self._monitor_positions()
        self._broadcast_status()

    # ------------------------------------------------------------------
    # Pools
    # ------------------------------------------------------------------

    async def _scan_pools(self) -> List[PoolMetrics]:
        lp = self._config.liquidity
        try:
            pairs = await self.discovery.discover()
        except LedgerError as exc:
            self._log.warning("pool discovery failed: %s", exc)
            return []
        pools = await self.metrics.find_profitable_pools(
            pairs, min_tvl=lp.min_tvl, max_price_impact=lp.max_price_impact
        )
        self._log.debug("scanned %d pairs, %d usable pools", len(pairs), len(pools))
        return pools

    # ------------------------------------------------------------------
    # Arbitrage
    # ------------------------------------------------------------------

    async def _run_arbitrage(self, pools: List[PoolMetrics]) -> None:
        log = self._arb_log
        opportunities = self.detector.detect(pools)
        if not opportunities:
            return
        log.info("found %d opportunities", len(opportunities))
        max_amount = self._config.arbitrage.max_trade_amount

        for opp in opportunities:
            if opp.trade_amount > max_amount:
                log.warning("opportunity exceeds max trade amount, skipping", metadata={"amount": opp.trade_amount})
                continue
            counter = opp.buy_pool.other_asset(opp.token)
            request = TradeRequest(
                user_id=self._config.user_id,
                strategy=STRATEGY,
                amount=opp.trade_amount,
                instance_id=self.instance_id,
                description=f"arbitrage {opp.token.currency}",
                spends_native=counter.is_native,
            )
            try:
                await self._guard.enforce(request)
            except SafetyViolation as exc:
                log.warning("arbitrage blocked: %s", exc, metadata={"token": opp.token.currency})
                continue

            try:
                execution = await self.executor.execute(opp)
            except Exception:
                await self._guard.release(request)
                raise
            if self._records is not None:
                self._records.record_execution(self.instance_id, execution)
            if execution.settlement_refs:
                await self._guard.record_trade(request)
            else:
                await self._guard.release(request)
            if not execution.executed:
                log.warning("arbitrage failed: %s", execution.error, metadata={"token": opp.token.currency})
                if execution.settlement_refs:
                    # leg 1 settled; the unsold token is still on the account
                    log.warning("stopping arbitrage for this tick after a partial execution")
                    break
                continue

            if execution.actual_profit < 0:
                await self._guard.record_loss(self._config.user_id, -execution.actual_profit)
            log.info(
                "arbitrage executed",
                metadata={
                    "token": opp.token.currency,
                    "profit": round(execution.actual_profit, 6),
                    "refs": list(execution.settlement_refs),
                },
            )
            self._broadcast.emit(
                "arbitrage",
                {
                    "instanceId": self.instance_id,
                    "token": opp.token.currency,
                    "profit": execution.actual_profit,
                    "timestamp": self._now().isoformat(),
                },
            )
            break

    # ------------------------------------------------------------------
    # Liquidity
    # ------------------------------------------------------------------

    async def _position_limit(self) -> tuple[bool, str]:
        configured = self._config.liquidity.max_positions
        held = len(self.liquidity.positions)
        if configured:
            return check_position_limit(held, 0.0, configured)
        try:
            balance = await self._ledger.account_balance(self._signer.address)
        except LedgerError as exc:
            return False, f"balance unavailable: {exc}"
        return check_position_limit(held, balance or 0.0)

    def deposit_amount(self, pool: PoolMetrics) -> float:
        amount = min(self._config.risk.max_position_size, pool.liquidity_depth * LP_DEPTH_FRACTION)
        if self._deposit_strategy() == DepositStrategy.ONE_SIDED:
            _, num_reserve, _, other_reserve = numeraire_sides(pool)
            amount = optimal_liquidity_amount(num_reserve, other_reserve, amount).deposit_amount
        return amount

    def _deposit_strategy(self) -> DepositStrategy:
        if self._config.liquidity.strategy == "balanced":
            return DepositStrategy.BALANCED
        return DepositStrategy.ONE_SIDED

    async def _enter_liquidity(self, pools: List[PoolMetrics]) -> None:
        log = self._lp_log
        lp = self._config.liquidity
        allowed, reason = await self._position_limit()
        if not allowed:
            log.debug(reason)
            return

        held = self.liquidity.positions
        candidates = [p for p in pools if p.pool_id not in held]
        quality = filter_quality_pools(candidates, lp.min_tvl, lp.max_price_impact, lp.target_apr)
        if not quality:
            log.info("no pools meet quality criteria", metadata={"min_tvl": lp.min_tvl, "target_apr": lp.target_apr})
            return
        best = rank_pools_by_strategy(quality, tier_for_strategy(lp.strategy))[0]

        amount = self.deposit_amount(best)
        if amount <= 0:
            log.info("deposit into %s sized to zero, skipping", best.label)
            return
        request = TradeRequest(
            user_id=self._config.user_id,
            strategy=STRATEGY,
            amount=amount,
            instance_id=self.instance_id,
            description="LP entry",
            spends_native=numeraire_sides(best)[0].is_native,
        )
        decision = await self._guard.check(request)
        if not decision.allowed:
            log.warning("LP entry blocked: %s", decision.reason)
            return

        strategy = self._deposit_strategy()
        log.info(
            "entering position",
            metadata={"pool": best.label, "apr": round(best.apr or 0.0, 2), "amount": amount, "strategy": strategy.value},
        )
        try:
            result, position = await self.liquidity.open_position(best, amount, strategy, now=self._now())
        except Exception:
            await self._guard.release(request)
            raise
        if position is None:
            await self._guard.release(request)
            log.warning("failed to enter %s: %s", best.label, result.error)
            return

        await self._guard.record_trade(request)
        if self._records is not None:
            self._records.record_lp_entry(self.instance_id, position, result)
        log.info("position entered", metadata={"pool": best.label, "lp_tokens": result.lp_tokens, "ref": result.settlement_ref})
        self._broadcast.emit(
            "lpPosition",
            {
                "instanceId": self.instance_id,
                "action": "enter",
                "pool": best.label,
                "amount": amount,
                "apr": best.apr,
            },
        )

    async def _monitor_positions(self) -> None:
        log = self._lp_log
        positions = self.liquidity.position_list()
        if not positions:
            return
        log.debug("monitoring %d positions", len(positions))
        target_apr = self._config.liquidity.target_apr

        for position in positions:
            try:
                pool = await self.metrics.fetch(PoolPair(position.asset1, position.asset2))
                if pool is None:
                    log.warning("pool not found for position %s", position.label)
                    continue
                now = self._now()
                self.liquidity.update_position(position, pool, now=now)
                decision = self.liquidity.determine_exit(position, target_apr, now=now)
                if decision.action == ExitAction.WITHDRAW_ALL:
                    log.info("exit conditions met: %s", decision.reason, metadata={"pool": position.label})
                    await self._exit_position(position, pool, 1.0, decision.reason)
                elif decision.action == ExitAction.WITHDRAW_HALF:
                    log.info("partial exit: %s", decision.reason, metadata={"pool": position.label})
                    await self._exit_position(position, pool, 0.5, decision.reason)
            except AmmBotError as exc:
                log.error("error monitoring %s: %s", position.label, exc)

    async def _exit_position(self, position: LPPosition, pool: PoolMetrics, fraction: float, reason: str) -> None:
        log = self._lp_log
        cost_basis = position.initial_deposit.total_value * fraction
        result = await self.liquidity.withdraw(position, pool, fraction, now=self._now())
        if not result.success:
            log.warning("failed to exit %s: %s", position.label, result.error)
            return

        price = pool_price(pool)
        if numeraire_sides(pool)[0] == pool.asset1:
            received = result.asset1_received + result.asset2_received * price
        else:
            received = result.asset2_received + result.asset1_received * price
        profit = received - cost_basis
        if profit < 0:
            await self._guard.record_loss(self._config.user_id, -profit)
        if self._records is not None:
            self._records.record_lp_exit(self.instance_id, position, result, reason)
        log.info(
            "position exited",
            metadata={
                "pool": position.label,
                "full": result.full,
                "profit": round(profit, 6),
                "return_pct": round(profit / cost_basis * 100, 2) if cost_basis else 0.0,
                "ref": result.settlement_ref,
            },
        )
        self._broadcast.emit(
            "lpPosition",
            {
                "instanceId": self.instance_id,
                "action": "exit" if result.full else "partial_exit",
                "pool": position.label,
                "profit": profit,
            },
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _broadcast_status(self) -> None:
        stats = self.executor.get_statistics()
        self._broadcast.emit(
            "ammBotStatus",
            {
                "instanceId": self.instance_id,
                "isRunning": self.running,
                "activePositions": len(self.liquidity.positions),
                "arbitrageStats": asdict(stats),
                "timestamp": self._now().isoformat(),
            },
        )

    def get_statistics(self) -> EngineStatistics:
        return EngineStatistics(
            running=self.running,
            active_positions=len(self.liquidity.positions),
            arbitrage=self.executor.get_statistics(),
            positions=self.liquidity.position_list(),
            ticks_started=self._task.ticks_started,
            ticks_skipped=self._task.ticks_skipped,
            ticks_failed=self._task.ticks_failed,
        )

    def status_payload(self) -> Dict[str, Any]:
        stats = self.get_statistics()
        return {
            "instanceId": self.instance_id,
            "isRunning": stats.running,
            "activePositions": stats.active_positions,
            "arbitrageStats": asdict(stats.arbitrage),
        }
