"""Liquidity provision: deposits, valuation, exit rules and withdrawals.

Positions are valued in the pool's numeraire: the native asset when the pool
has one, otherwise ``asset1``. Deposit sizes are expressed in the same unit.
The provider exclusively owns its position map; a position leaves it only
after a successful full withdrawal.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from amm_bot.errors import ExecutionFailure, LedgerError
from amm_bot.ledger.base import Signer, SubmitResult
from amm_bot.ledger.settlement import (
    asset_received,
    fee_paid,
    lp_tokens_received,
    lp_tokens_redeemed,
    transaction_succeeded,
)
from amm_bot.models import (
    Amount,
    Asset,
    DepositResult,
    DepositStrategy,
    ExitAction,
    ExitDecision,
    InitialDeposit,
    LPPosition,
    PoolMetrics,
    PositionValuation,
    WithdrawalResult,
)

LOGGER = logging.getLogger(__name__)

TF_LP_TOKEN = 0x00010000
TF_WITHDRAW_ALL = 0x00020000
TF_SINGLE_ASSET = 0x00080000
TF_TWO_ASSET = 0x00100000

SECONDS_PER_DAY = 86_400.0


def impermanent_loss(initial_price: float, current_price: float) -> float:
    """Loss versus holding, in percent (always <= 0)."""
    if initial_price <= 0 or current_price <= 0:
        return 0.0
    ratio = current_price / initial_price
    return (2 * math.sqrt(ratio) / (1 + ratio) - 1) * 100


def numeraire_sides(pool: PoolMetrics) -> Tuple[Asset, float, Asset, float]:
    """(numeraire asset, its reserve, other asset, its reserve)."""
    if pool.asset2.is_native and not pool.asset1.is_native:
        return pool.asset2, pool.reserve2, pool.asset1, pool.reserve1
    return pool.asset1, pool.reserve1, pool.asset2, pool.reserve2


def pool_price(pool: PoolMetrics) -> float:
    """Price of the non-numeraire asset in numeraire units."""
    _, num_reserve, _, other_reserve = numeraire_sides(pool)
    return num_reserve / other_reserve if other_reserve > 0 else 0.0


def days_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / SECONDS_PER_DAY


@dataclass(frozen=True)
class ExitRules:
    """Thresholds for the per-tick exit decision.

    Parameters
    ----------
    max_impermanent_loss:
        Withdraw everything once IL is worse than minus this percent.
    low_apr_days / high_apr_days:
        Minimum holding time before the low- and high-APR rules apply.
    partial_exit_cooldown_days:
        Minimum spacing between two half withdrawals of one position.
    """

    max_impermanent_loss: float = 10.0
    low_apr_days: float = 7.0
    high_apr_days: float = 3.0
    partial_exit_cooldown_days: float = 3.0


def determine_exit(
    position: LPPosition,
    target_apr: float = 20.0,
    now: datetime | None = None,
    rules: ExitRules | None = None,
) -> ExitDecision:
    rules = rules or ExitRules()
    now = now or datetime.now(timezone.utc)
    days_held = days_between(position.entry_time, now)

    if position.impermanent_loss < -rules.max_impermanent_loss:
        return ExitDecision(
            True, ExitAction.WITHDRAW_ALL, f"High impermanent loss: {position.impermanent_loss:.2f}%"
        )
    if position.apr < target_apr / 2 and days_held > rules.low_apr_days:
        return ExitDecision(
            True, ExitAction.WITHDRAW_ALL, f"Low APR: {position.apr:.2f}% (target: {target_apr}%)"
        )
    if position.apr > target_apr * 1.5 and days_held > rules.high_apr_days:
        last = position.last_partial_exit_at
        if last is None or days_between(last, now) >= rules.partial_exit_cooldown_days:
            return ExitDecision(
                False, ExitAction.WITHDRAW_HALF, f"High APR: {position.apr:.2f}% - take partial profits"
            )
    return ExitDecision(False, ExitAction.HOLD, f"Performing well: {position.apr:.2f}% APR")


def value_position(position: LPPosition, pool: PoolMetrics, now: datetime | None = None) -> PositionValuation:
    now = now or datetime.now(timezone.utc)
    _, num_reserve, _, other_reserve = numeraire_sides(pool)
    share = position.lp_tokens / pool.lp_token_supply if pool.lp_token_supply > 0 else 0.0
    price = pool_price(pool)
    current_value = share * num_reserve + share * other_reserve * price

    il = impermanent_loss(position.entry_price, price)
    initial = position.initial_deposit.total_value
    fees = max(0.0, current_value - initial * (1 + il / 100))
    total_return = (current_value - initial) / initial * 100 if initial > 0 else 0.0
    days_held = days_between(position.entry_time, now)
    apr = total_return / days_held * 365 if days_held > 0 else 0.0
    return PositionValuation(
        current_value=current_value,
        fees_earned=fees,
        impermanent_loss=il,
        total_return=total_return,
        apr=apr,
    )


class LiquidityProvider:
    def __init__(self, signer: Signer, exit_rules: ExitRules | None = None) -> None:
        self._signer = signer
        self._rules = exit_rules or ExitRules()
        self._positions: Dict[str, LPPosition] = {}

    @property
    def positions(self) -> Dict[str, LPPosition]:
        return self._positions

    @property
    def rules(self) -> ExitRules:
        return self._rules

    def position_list(self) -> List[LPPosition]:
        return list(self._positions.values())

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    def build_deposit(self, pool: PoolMetrics, amount: float, strategy: DepositStrategy) -> Dict[str, Any]:
        num_asset, num_reserve, other_asset, other_reserve = numeraire_sides(pool)
        tx: Dict[str, Any] = {
            "TransactionType": "AMMDeposit",
            "Account": self._signer.address,
            "Asset": pool.asset1.to_ledger(),
            "Asset2": pool.asset2.to_ledger(),
            "Amount": Amount(num_asset, amount).to_ledger(),
            "Flags": TF_SINGLE_ASSET,
        }
        if strategy == DepositStrategy.BALANCED:
            second = amount / num_reserve * other_reserve
            tx["Amount2"] = Amount(other_asset, second).to_ledger()
            tx["Flags"] = TF_TWO_ASSET
        return tx

    async def deposit(self, pool: PoolMetrics, amount: float, strategy: DepositStrategy) -> DepositResult:
        if amount <= 0:
            return DepositResult(success=False, error="deposit amount must be positive")
        num_asset, num_reserve, _, other_reserve = numeraire_sides(pool)
        second = amount / num_reserve * other_reserve if strategy == DepositStrategy.BALANCED else 0.0
        amounts = (amount, second) if num_asset == pool.asset1 else (second, amount)
        tx = self.build_deposit(pool, amount, strategy)
        LOGGER.info("%s deposit of %.6f into %s", strategy.value, amount, pool.label)
        submitted, error = await self._submit(tx)
        if submitted is None:
            return DepositResult(success=False, error=error)

        meta = submitted.metadata
        if meta and transaction_succeeded(meta):
            lp_tokens = lp_tokens_received(meta, self._signer.address, pool.lp_token_currency, pool.amm_account)
        else:
            lp_tokens = estimate_lp_tokens(pool, amount, strategy)
        return DepositResult(
            success=True,
            lp_tokens=lp_tokens,
            asset1_amount=amounts[0],
            asset2_amount=amounts[1],
            settlement_ref=submitted.settlement_ref,
        )

    async def open_position(
        self,
        pool: PoolMetrics,
        amount: float,
        strategy: DepositStrategy,
        now: datetime | None = None,
    ) -> Tuple[DepositResult, Optional[LPPosition]]:
        result = await self.deposit(pool, amount, strategy)
        if not result.success:
            return result, None
        price = pool_price(pool)
        if numeraire_sides(pool)[0] == pool.asset1:
            total = result.asset1_amount + result.asset2_amount * price
        else:
            total = result.asset2_amount + result.asset1_amount * price
        position = LPPosition(
            pool_id=pool.pool_id,
            asset1=pool.asset1,
            asset2=pool.asset2,
            lp_tokens=result.lp_tokens,
            initial_deposit=InitialDeposit(result.asset1_amount, result.asset2_amount, total),
            entry_price=price,
            current_value=total,
            strategy=strategy,
            apr=pool.apr or 0.0,
            entry_time=now or datetime.now(timezone.utc),
            lp_token_currency=pool.lp_token_currency,
            amm_account=pool.amm_account,
        )
        self._positions[pool.pool_id] = position
        return result, position

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def update_position(self, position: LPPosition, pool: PoolMetrics, now: datetime | None = None) -> PositionValuation:
        valuation = value_position(position, pool, now=now)
        position.current_value = valuation.current_value
        position.fees_earned = valuation.fees_earned
        position.impermanent_loss = valuation.impermanent_loss
        position.apr = valuation.apr
        return valuation

    def determine_exit(self, position: LPPosition, target_apr: float, now: datetime | None = None) -> ExitDecision:
        return determine_exit(position, target_apr, now=now, rules=self._rules)

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    def build_withdrawal(self, position: LPPosition, pool: PoolMetrics, lp_amount: float, full: bool) -> Dict[str, Any]:
        tx: Dict[str, Any] = {
            "TransactionType": "AMMWithdraw",
            "Account": self._signer.address,
            "Asset": pool.asset1.to_ledger(),
            "Asset2": pool.asset2.to_ledger(),
        }
        if full:
            tx["Flags"] = TF_WITHDRAW_ALL
        else:
            tx["Flags"] = TF_LP_TOKEN
            tx["LPTokenIn"] = {
                "currency": position.lp_token_currency or pool.lp_token_currency,
                "issuer": position.amm_account or pool.amm_account,
                "value": f"{lp_amount:.15g}",
            }
        return tx

    async def withdraw(
        self,
        position: LPPosition,
        pool: PoolMetrics,
        fraction: float = 1.0,
        now: datetime | None = None,
    ) -> WithdrawalResult:
        if not 0 < fraction <= 1:
            return WithdrawalResult(success=False, error=f"invalid withdrawal fraction {fraction}")
        full = fraction >= 1.0
        lp_amount = position.lp_tokens * fraction
        tx = self.build_withdrawal(position, pool, lp_amount, full)
        LOGGER.info("withdrawing %.6f LP tokens (%s) from %s", lp_amount, "all" if full else f"{fraction:.0%}", pool.label)
        submitted, error = await self._submit(tx)
        if submitted is None:
            return WithdrawalResult(success=False, full=full, error=error)

        meta = submitted.metadata
        if meta and transaction_succeeded(meta):
            fee = fee_paid(tx)
            redeemed = lp_tokens_redeemed(
                meta,
                self._signer.address,
                position.lp_token_currency or pool.lp_token_currency,
                position.amm_account or pool.amm_account,
            )
            if redeemed > 0:
                lp_amount = redeemed
            received1 = asset_received(meta, self._signer.address, pool.asset1.key(), fee if pool.asset1.is_native else 0.0)
            received2 = asset_received(meta, self._signer.address, pool.asset2.key(), fee if pool.asset2.is_native else 0.0)
        else:
            share = lp_amount / pool.lp_token_supply if pool.lp_token_supply > 0 else 0.0
            received1 = share * pool.reserve1
            received2 = share * pool.reserve2

        if full:
            self._positions.pop(position.pool_id, None)
        else:
            remaining = 1.0 - fraction
            position.lp_tokens -= lp_amount
            deposit = position.initial_deposit
            position.initial_deposit = replace(
                deposit,
                asset1_amount=deposit.asset1_amount * remaining,
                asset2_amount=deposit.asset2_amount * remaining,
                total_value=deposit.total_value * remaining,
            )
            position.partial_exits += 1
            position.last_partial_exit_at = now or datetime.now(timezone.utc)
        return WithdrawalResult(
            success=True,
            asset1_received=received1,
            asset2_received=received2,
            lp_tokens_redeemed=lp_amount,
            full=full,
            settlement_ref=submitted.settlement_ref,
        )

    async def _submit(self, tx: Dict[str, Any]) -> Tuple[Optional[SubmitResult], Optional[str]]:
        try:
            submitted = await self._signer.submit(tx)
        except (LedgerError, ExecutionFailure) as exc:
            LOGGER.warning("%s failed: %s", tx["TransactionType"], exc)
            return None, str(exc)
        if not submitted.success:
            error = submitted.error or submitted.engine_result or "Transaction failed"
            LOGGER.warning("%s rejected: %s", tx["TransactionType"], error)
            return None, error
        return submitted, None


def estimate_lp_tokens(pool: PoolMetrics, amount: float, strategy: DepositStrategy) -> float:
    """LP tokens a deposit should mint, for when no metadata is available."""
    _, num_reserve, _, _ = numeraire_sides(pool)
    if pool.lp_token_supply <= 0 or num_reserve <= 0:
        return 0.0
    if strategy == DepositStrategy.BALANCED:
        return pool.lp_token_supply * amount / num_reserve
    # single-asset deposits pay half the trading fee on the implied swap
    effective = amount * (1 - pool.fee_rate / 2)
    return pool.lp_token_supply * (math.sqrt(1 + effective / num_reserve) - 1)
