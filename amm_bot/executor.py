from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List

import numpy as np

from amm_bot.models import (
    ArbitrageExecution,
    ArbitrageOpportunity,
    ExecutionStatistics,
    TradeIntent,
    TradeSide,
)
from amm_bot.router import BestExecutionRouter

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutorConfig:
    """Arbitrage execution settings.

    Parameters
    ----------
    min_profit_threshold:
        Opportunities whose price difference (percent) fell below this are
        refused before any trade. Default 0.5.
    max_slippage_percent:
        Slippage allowed per leg. Default 2.0.
    settlement_delay:
        Seconds to wait between legs so leg 1 settles. Default 1.0.
    """

    min_profit_threshold: float = 0.5
    max_slippage_percent: float = 2.0
    settlement_delay: float = 1.0


class ArbitrageExecutor:
    """Runs two-leg arbitrage trades strictly in sequence.

    Every attempt, successful or not, lands in the execution history, which
    only feeds :meth:`get_statistics`.
    """

    def __init__(
        self,
        router: BestExecutionRouter,
        config: ExecutorConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._router = router
        self._config = config or ExecutorConfig()
        self._sleep = sleep or asyncio.sleep
        self._clock = clock
        self._history: List[ArbitrageExecution] = []

    @property
    def history(self) -> List[ArbitrageExecution]:
        return list(self._history)

    def clear_history(self) -> None:
        self._history.clear()

    async def execute(self, opportunity: ArbitrageOpportunity) -> ArbitrageExecution:
        started = self._clock()
        execution = await self._run(opportunity, started)
        self._history.append(execution)
        return execution

    async def _run(self, opp: ArbitrageOpportunity, started: float) -> ArbitrageExecution:
        cfg = self._config
        if opp.price_difference < cfg.min_profit_threshold:
            return ArbitrageExecution(opportunity=opp, executed=False, error="Profit below threshold")

        buy_pool, sell_pool = opp.buy_pool, opp.sell_pool
        counter = buy_pool.other_asset(opp.token)
        if sell_pool.other_asset(opp.token) != counter:
            return ArbitrageExecution(
                opportunity=opp,
                executed=False,
                error="pools quote the token against different assets",
            )

        LOGGER.info(
            "arbitrage %s: buy %.4f %s worth from %s, sell into %s (%.2f%% spread)",
            opp.token.currency,
            opp.trade_amount,
            counter,
            buy_pool.pool_id,
            sell_pool.pool_id,
            opp.price_difference,
        )

        buy = await self._router.execute(
            TradeIntent(
                side=TradeSide.BUY,
                token=opp.token,
                counter=counter,
                amount=opp.trade_amount,
                pool=buy_pool,
                max_slippage_pct=cfg.max_slippage_percent,
            )
        )
        if not buy.success:
            return ArbitrageExecution(
                opportunity=opp,
                executed=False,
                execution_time=self._clock() - started,
                error=f"Buy failed: {buy.error}",
            )
        refs = (buy.settlement_ref,) if buy.settlement_ref else ()

        await self._sleep(cfg.settlement_delay)

        sell = await self._router.execute(
            TradeIntent(
                side=TradeSide.SELL,
                token=opp.token,
                counter=counter,
                amount=buy.amount_out,
                pool=sell_pool,
                max_slippage_pct=cfg.max_slippage_percent,
            )
        )
        if not sell.success:
            LOGGER.warning(
                "bought %.6f %s but could not sell: %s", buy.amount_out, opp.token.currency, sell.error
            )
            return ArbitrageExecution(
                opportunity=opp,
                executed=False,
                settlement_refs=refs,
                execution_time=self._clock() - started,
                error=f"Bought but could not sell: {sell.error}",
            )
        if sell.settlement_ref:
            refs = refs + (sell.settlement_ref,)

        profit = sell.amount_out - buy.amount_in
        LOGGER.info(
            "arbitrage %s complete: profit %.6f (%.2f%%)",
            opp.token.currency,
            profit,
            profit / buy.amount_in * 100 if buy.amount_in else 0.0,
        )
        return ArbitrageExecution(
            opportunity=opp,
            executed=True,
            actual_profit=profit,
            settlement_refs=refs,
            execution_time=self._clock() - started,
        )

    def get_statistics(self) -> ExecutionStatistics:
        history = self._history
        if not history:
            return ExecutionStatistics()
        succeeded = [e for e in history if e.executed]
        profits = np.array([e.actual_profit for e in succeeded], dtype=float)
        times = np.array([e.execution_time for e in history], dtype=float)
        return ExecutionStatistics(
            total_executions=len(history),
            successful_executions=len(succeeded),
            failed_executions=len(history) - len(succeeded),
            total_profit=float(profits.sum()),
            average_profit=float(profits.mean()) if profits.size else 0.0,
            success_rate=len(succeeded) / len(history) * 100,
            average_execution_time=float(times.mean()),
        )
