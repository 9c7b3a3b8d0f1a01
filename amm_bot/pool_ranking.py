"""Pool selection for liquidity provision.

Scores pools per risk tier, filters by quality thresholds and sizes one-sided
deposits so their own slippage stays within a target.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import numpy as np

from amm_bot.models import PoolMetrics

# (tvl weight, apr weight, price-impact penalty)
TIER_WEIGHTS: Dict[str, Tuple[float, float, float]] = {
    "conservative": (0.5, 0.3, 1000.0),
    "balanced": (0.3, 0.5, 500.0),
    "aggressive": (0.2, 0.7, 0.0),
}

STRATEGY_TIERS = {
    "one-sided": "conservative",
    "balanced": "balanced",
    "auto": "aggressive",
}


def tier_for_strategy(strategy: str) -> str:
    return STRATEGY_TIERS.get(strategy, "balanced")


def score_pools(pools: Sequence[PoolMetrics], tier: str) -> np.ndarray:
    tvl_w, apr_w, impact_w = TIER_WEIGHTS[tier]
    tvl = np.array([p.tvl for p in pools], dtype=float)
    apr = np.array([p.apr or 0.0 for p in pools], dtype=float)
    impact = np.array([p.price_impact for p in pools], dtype=float)
    return tvl * tvl_w + apr * apr_w - impact * impact_w


def rank_pools_by_strategy(pools: Sequence[PoolMetrics], tier: str) -> List[PoolMetrics]:
    """Best pool first. Unknown tiers keep the input order."""
    if tier not in TIER_WEIGHTS or not pools:
        return list(pools)
    scores = score_pools(pools, tier)
    # stable sort on the negated scores keeps input order for ties
    order = np.argsort(-scores, kind="stable")
    return [pools[i] for i in order]


def filter_quality_pools(
    pools: Sequence[PoolMetrics],
    min_tvl: float = 100.0,
    max_price_impact: float = 0.05,
    min_apr: float = 10.0,
) -> List[PoolMetrics]:
    return [
        p
        for p in pools
        if p.tvl >= min_tvl and p.price_impact <= max_price_impact and (p.apr or 0.0) >= min_apr
    ]


@dataclass(frozen=True)
class DepositSizing:
    deposit_amount: float
    expected_tokens: float
    slippage: float


def optimal_liquidity_amount(
    native_reserve: float,
    token_reserve: float,
    amount: float,
    target_slippage: float = 0.02,
    max_iterations: int = 50,
) -> DepositSizing:
    """Shrink a one-sided deposit until its implied swap slippage is within target."""
    k = native_reserve * token_reserve
    for _ in range(max_iterations):
        tokens = token_reserve - k / (native_reserve + amount)
        if tokens <= 0:
            return DepositSizing(0.0, 0.0, 0.0)
        spot = native_reserve / token_reserve
        slippage = (amount / tokens - spot) / spot
        if slippage <= target_slippage:
            return DepositSizing(amount, tokens, slippage)
        amount *= target_slippage / slippage
    return DepositSizing(amount, token_reserve - k / (native_reserve + amount), target_slippage)
