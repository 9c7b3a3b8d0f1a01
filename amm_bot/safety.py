"""Account-level pre-trade checks.

The ledger locks a base reserve per account plus an owner reserve per trust
line. On top of that a fixed buffer is kept for fees, and a trade must leave
at least ``min_tradable_after`` native units spendable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Tuple

from amm_bot.config import RiskSettings
from amm_bot.errors import LedgerError
from amm_bot.ledger.base import LedgerQueryService

LOGGER = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class BalanceCheck:
    can_trade: bool
    balance: float
    locked: float
    tradable: float
    active_positions: int
    reason: str = ""


@dataclass(frozen=True)
class AccountStatus:
    balance: float
    locked_reserves: float
    tradable: float
    active_positions: int
    max_positions: int
    positions_available: int
    health: HealthStatus


def max_positions_for_balance(balance: float) -> int:
    if balance < 15:
        return 2
    if balance < 25:
        return 5
    if balance < 50:
        return 12
    if balance < 100:
        return 20
    return 30


def check_position_limit(current: int, balance: float, max_positions: int = 0) -> Tuple[bool, str]:
    """``max_positions`` of 0 derives the limit from the balance."""
    limit = max_positions or max_positions_for_balance(balance)
    if current >= limit:
        return False, f"Maximum position limit reached ({current}/{limit})"
    return True, ""


def _held_lines(lines: List[Dict[str, Any]]) -> int:
    held = 0
    for line in lines:
        try:
            if float(line.get("balance", 0) or 0) > 0:
                held += 1
        except (TypeError, ValueError):
            continue
    return held


def evaluate_balance(
    balance: float,
    lines: List[Dict[str, Any]],
    amount: float,
    risk: RiskSettings | None = None,
) -> BalanceCheck:
    risk = risk or RiskSettings()
    locked = risk.base_reserve + len(lines) * risk.per_trustline_reserve
    tradable = balance - locked - risk.safety_buffer
    shown = max(0.0, tradable)
    held = _held_lines(lines)

    if tradable < amount:
        return BalanceCheck(
            False,
            balance,
            locked,
            shown,
            held,
            f"Insufficient tradable balance: have {shown:.2f}, need {amount} "
            f"(total {balance}, locked {locked:.2f}, buffer {risk.safety_buffer})",
        )
    if tradable - amount < risk.min_tradable_after:
        return BalanceCheck(
            False,
            balance,
            locked,
            shown,
            held,
            f"Trade would leave less than {risk.min_tradable_after} available "
            f"(tradable {shown:.2f}, after trade {max(0.0, tradable - amount):.2f})",
        )
    return BalanceCheck(True, balance, locked, shown, held)


class SafetyChecker:
    def __init__(self, ledger: LedgerQueryService, address: str, risk: RiskSettings | None = None) -> None:
        self._ledger = ledger
        self._address = address
        self._risk = risk or RiskSettings()

    async def _snapshot(self) -> Tuple[float, List[Dict[str, Any]]]:
        balance = await self._ledger.account_balance(self._address)
        lines = await self._ledger.account_lines(self._address)
        return balance or 0.0, lines

    async def check_sufficient_balance(self, amount: float) -> BalanceCheck:
        try:
            balance, lines = await self._snapshot()
        except LedgerError as exc:
            LOGGER.warning("balance check failed: %s", exc)
            return BalanceCheck(False, 0.0, 0.0, 0.0, 0, f"Error checking balance: {exc}")
        return evaluate_balance(balance, lines, amount, self._risk)

    async def account_status(self) -> AccountStatus:
        balance, lines = await self._snapshot()
        locked = self._risk.base_reserve + len(lines) * self._risk.per_trustline_reserve
        tradable = max(0.0, balance - locked - self._risk.safety_buffer)
        held = _held_lines(lines)
        limit = max_positions_for_balance(balance)

        if tradable < 1:
            health = HealthStatus.CRITICAL
        elif tradable < 3 or held >= limit:
            health = HealthStatus.WARNING
        else:
            health = HealthStatus.HEALTHY
        return AccountStatus(
            balance=balance,
            locked_reserves=locked,
            tradable=tradable,
            active_positions=held,
            max_positions=limit,
            positions_available=max(0, limit - held),
            health=health,
        )
