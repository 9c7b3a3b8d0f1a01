"""Per-user trade activity log and capital policy.

The activity log is the one structure shared across bot instances and
strategies of a user: every executed trade is appended, entries older than a
day are pruned, and the capital policy reads it before each trade to enforce
hourly trade counts and the daily realized-loss cap. All mutation happens
under one ``asyncio.Lock`` so concurrent append/prune never loses an entry.

Usage::

    log = TradeActivityLog()
    policies = CapitalPolicyBook(log)
    policies.set_policy("user-1", CapitalPolicy(max_trades_per_hour=4))
    decision = await policies.check("user-1", "amm", 5.0)
    if decision.allowed:
        ...
        await log.record_trade("user-1", "amm", 5.0)
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, FrozenSet, List, Optional

HOUR_SECONDS = 60 * 60
DAY_SECONDS = 24 * HOUR_SECONDS

STRATEGIES = frozenset({"amm", "sniper", "copyTrading"})


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TradeActivity:
    user_id: str
    strategy: str
    amount: float
    timestamp: float


@dataclass(frozen=True)
class CapitalDecision:
    allowed: bool
    reason: str = ""
    slot_held: bool = False  # an hourly slot is claimed until recorded or released


# ---------------------------------------------------------------------------
# Log
# ---------------------------------------------------------------------------


class TradeActivityLog:
    """Time-ordered trade log plus per-day realized losses."""

    def __init__(self, retention_seconds: float = DAY_SECONDS) -> None:
        self._retention = retention_seconds
        self._entries: List[TradeActivity] = []
        self._daily_loss: Dict[str, tuple[str, float]] = {}
        # (user, strategy) -> slots claimed by checks whose trade is not recorded yet
        self._pending: Dict[tuple[str, str], int] = {}
        self._lock = asyncio.Lock()

    async def record_trade(
        self,
        user_id: str,
        strategy: str,
        amount: float,
        now: float | None = None,
        claimed: bool = False,
    ) -> None:
        """Append a trade; ``claimed`` turns a slot from :meth:`claim_slot` into it."""
        ts = now if now is not None else time.time()
        async with self._lock:
            self._entries.append(TradeActivity(user_id, strategy, amount, ts))
            if claimed:
                self._release_locked((user_id, strategy))
            self._prune_locked(ts)

    async def claim_slot(
        self,
        user_id: str,
        strategy: str,
        limit: int,
        window_seconds: float = HOUR_SECONDS,
        now: float | None = None,
    ) -> bool:
        """Claim one of ``limit`` trades in the window, counting unrecorded claims.

        Count and claim happen under one lock acquisition, so concurrent
        callers cannot both take the last slot.
        """
        ts = now if now is not None else time.time()
        cutoff = ts - window_seconds
        key = (user_id, strategy)
        async with self._lock:
            self._prune_locked(ts)
            used = self._pending.get(key, 0) + sum(
                1
                for e in self._entries
                if e.user_id == user_id and e.strategy == strategy and e.timestamp >= cutoff
            )
            if used >= limit:
                return False
            self._pending[key] = self._pending.get(key, 0) + 1
            return True

    async def release_slot(self, user_id: str, strategy: str) -> None:
        async with self._lock:
            self._release_locked((user_id, strategy))

    def pending(self, user_id: str, strategy: str) -> int:
        return self._pending.get((user_id, strategy), 0)

    async def record_realized_loss(self, user_id: str, loss: float, now: float | None = None) -> None:
        if loss <= 0:
            return
        key = _date_key(now)
        async with self._lock:
            day, total = self._daily_loss.get(user_id, (key, 0.0))
            if day != key:
                total = 0.0
            self._daily_loss[user_id] = (key, total + loss)

    async def prune(self, now: float | None = None) -> int:
        ts = now if now is not None else time.time()
        async with self._lock:
            return self._prune_locked(ts)

    async def recent_count(
        self, user_id: str, strategy: str, window_seconds: float = HOUR_SECONDS, now: float | None = None
    ) -> int:
        ts = now if now is not None else time.time()
        cutoff = ts - window_seconds
        async with self._lock:
            self._prune_locked(ts)
            return sum(
                1
                for e in self._entries
                if e.user_id == user_id and e.strategy == strategy and e.timestamp >= cutoff
            )

    async def daily_realized_loss(self, user_id: str, now: float | None = None) -> float:
        key = _date_key(now)
        async with self._lock:
            day, total = self._daily_loss.get(user_id, (key, 0.0))
            return total if day == key else 0.0

    def __len__(self) -> int:
        return len(self._entries)

    def _release_locked(self, key: tuple[str, str]) -> None:
        held = self._pending.get(key, 0)
        if held <= 1:
            self._pending.pop(key, None)
        else:
            self._pending[key] = held - 1

    def _prune_locked(self, now: float) -> int:
        cutoff = now - self._retention
        drop = 0
        while drop < len(self._entries) and self._entries[drop].timestamp < cutoff:
            drop += 1
        if drop:
            del self._entries[:drop]
        return drop


def _date_key(now: float | None) -> str:
    ts = now if now is not None else time.time()
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CapitalPolicy:
    """Capital limits for one managed user.

    Parameters
    ----------
    allowed_strategies:
        Strategies the user may trade with. Default all.
    max_position_size:
        Largest single trade in native units. Default 50.
    allocated / reserved:
        Budget handed to the user and the part already committed; a trade may
        not exceed ``allocated - reserved``.
    max_daily_loss:
        Realized loss per UTC day after which trading stops. 0 = disabled.
    max_trades_per_hour:
        Per strategy. Default 10.
    active:
        Paused policies deny everything.
    """

    allowed_strategies: FrozenSet[str] = field(default_factory=lambda: STRATEGIES)
    max_position_size: float = 50.0
    allocated: float = 1_000.0
    reserved: float = 0.0
    max_daily_loss: float = 0.0
    max_trades_per_hour: int = 10
    active: bool = True


class CapitalPolicyBook:
    """Holds per-user policies and evaluates trades against the shared log.

    Users without a policy are not capital-managed and are always allowed.
    """

    def __init__(self, log: TradeActivityLog) -> None:
        self._log = log
        self._policies: Dict[str, CapitalPolicy] = {}

    @property
    def log(self) -> TradeActivityLog:
        return self._log

    def set_policy(self, user_id: str, policy: CapitalPolicy) -> None:
        self._policies[user_id] = policy

    def remove_policy(self, user_id: str) -> None:
        self._policies.pop(user_id, None)

    def policy_for(self, user_id: str) -> Optional[CapitalPolicy]:
        return self._policies.get(user_id)

    async def check(
        self,
        user_id: str,
        strategy: str,
        amount: float,
        now: float | None = None,
        claim: bool = False,
    ) -> CapitalDecision:
        """Evaluate a trade; with ``claim`` an allowed trade also holds an hourly slot."""
        policy = self._policies.get(user_id)
        if policy is None:
            return CapitalDecision(True)
        if not policy.active:
            return CapitalDecision(False, "capital policy is paused")
        if strategy not in policy.allowed_strategies:
            return CapitalDecision(False, f"strategy {strategy} is not allowed")
        if amount > policy.max_position_size:
            return CapitalDecision(
                False, f"trade amount exceeds max position size ({policy.max_position_size})"
            )
        if amount > policy.allocated - policy.reserved:
            return CapitalDecision(False, "trade amount exceeds allocatable budget")
        if policy.max_daily_loss > 0:
            loss = await self._log.daily_realized_loss(user_id, now=now)
            if loss >= policy.max_daily_loss:
                return CapitalDecision(
                    False, f"max daily loss reached ({loss:.2f} >= {policy.max_daily_loss})"
                )
        hourly_cap = CapitalDecision(
            False, f"max trades per hour reached ({policy.max_trades_per_hour})"
        )
        if claim:
            if not await self._log.claim_slot(user_id, strategy, policy.max_trades_per_hour, now=now):
                return hourly_cap
            return CapitalDecision(True, slot_held=True)
        recent = await self._log.recent_count(user_id, strategy, now=now)
        if recent >= policy.max_trades_per_hour:
            return hourly_cap
        return CapitalDecision(True)
