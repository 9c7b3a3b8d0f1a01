from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Tuple

from amm_bot.config import RiskSettings
from amm_bot.errors import AmmBotError, SafetyViolation
from amm_bot.framework.trade_activity import CapitalPolicyBook
from amm_bot.safety import SafetyChecker

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradeRequest:
    user_id: str
    strategy: str
    amount: float  # native units committed by the trade
    instance_id: str = ""
    description: str = ""
    spends_native: bool = True


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    reason: str = ""


Approver = Callable[[TradeRequest], Awaitable[GuardDecision]]


class PolicyGuard:
    """Pre-trade gate consulted before every trade an engine submits.

    Checks run cheapest first and stop at the first denial: position size,
    the user's capital policy, the account balance and finally the optional
    external approver.
    """

    def __init__(
        self,
        risk: RiskSettings | None = None,
        safety: SafetyChecker | None = None,
        capital: CapitalPolicyBook | None = None,
        approver: Optional[Approver] = None,
    ) -> None:
        self._risk = risk or RiskSettings()
        self._safety = safety
        self._capital = capital
        self._approver = approver
        # (user, strategy) -> hourly slots this guard claimed and not yet settled
        self._held: Dict[Tuple[str, str], int] = {}

    async def check(self, request: TradeRequest) -> GuardDecision:
        """Run every check; an allowed decision holds one hourly trade slot.

        The slot is turned into a trade by :meth:`record_trade` or given back
        by :meth:`release`, so concurrent instances of one user cannot both
        take the last slot of the hour.
        """
        if request.amount <= 0:
            return GuardDecision(False, "trade amount must be positive")
        if request.amount > self._risk.max_position_size:
            return GuardDecision(
                False, f"trade amount exceeds max position size ({self._risk.max_position_size})"
            )

        if self._capital is not None:
            capital = await self._capital.check(request.user_id, request.strategy, request.amount, claim=True)
            if not capital.allowed:
                return self._deny(request, capital.reason)
            if capital.slot_held:
                key = (request.user_id, request.strategy)
                self._held[key] = self._held.get(key, 0) + 1

        try:
            decision = await self._check_account(request)
        except Exception:
            await self.release(request)
            raise
        if not decision.allowed:
            await self.release(request)
        return decision

    async def _check_account(self, request: TradeRequest) -> GuardDecision:
        if self._safety is not None and request.spends_native:
            balance = await self._safety.check_sufficient_balance(request.amount)
            if not balance.can_trade:
                return self._deny(request, balance.reason)

        if self._approver is not None:
            try:
                decision = await self._approver(request)
            except AmmBotError as exc:
                return self._deny(request, f"approval failed: {exc}")
            if not decision.allowed:
                return self._deny(request, decision.reason or "not approved")

        return GuardDecision(True, "ok")

    async def enforce(self, request: TradeRequest) -> None:
        """Like :meth:`check` but raises :class:`SafetyViolation` on denial."""
        decision = await self.check(request)
        if not decision.allowed:
            raise SafetyViolation(decision.reason)

    async def record_trade(self, request: TradeRequest) -> None:
        if self._capital is not None:
            await self._capital.log.record_trade(
                request.user_id, request.strategy, request.amount, claimed=self._take_held(request)
            )

    async def release(self, request: TradeRequest) -> None:
        """Give back the slot of an allowed request whose trade never happened."""
        if self._capital is not None and self._take_held(request):
            await self._capital.log.release_slot(request.user_id, request.strategy)

    async def record_loss(self, user_id: str, loss: float) -> None:
        if self._capital is not None and loss > 0:
            await self._capital.log.record_realized_loss(user_id, loss)

    def _take_held(self, request: TradeRequest) -> bool:
        key = (request.user_id, request.strategy)
        held = self._held.get(key, 0)
        if held == 0:
            return False
        if held == 1:
            del self._held[key]
        else:
            self._held[key] = held - 1
        return True

    @staticmethod
    def _deny(request: TradeRequest, reason: str) -> GuardDecision:
        LOGGER.warning("trade denied for %s/%s (%.4f): %s", request.user_id, request.strategy, request.amount, reason)
        return GuardDecision(False, reason)
