"""Constant-product pool statistics.

Turns one raw ``amm_info`` pool object into :class:`PoolMetrics`:
reserves normalized by amount shape, TVL in native units, the price impact
of a one-unit probe, the liquidity depth at 1% slippage and an APR estimate.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from amm_bot.errors import DataError, LedgerError
from amm_bot.ledger.base import LedgerQueryService
from amm_bot.models import PoolMetrics, PoolPair, parse_amount

LOGGER = logging.getLogger(__name__)

DEFAULT_TRADING_FEE_BPS = 10.0
PROBE_SIZE = 1.0
DEPTH_TARGET_SLIPPAGE = 0.01
DEPTH_RESERVE_FRACTION = 0.1
DEPTH_TOLERANCE = 0.01
DAILY_VOLUME_FRACTION = 0.05


def price_impact(amount_in: float, reserve_in: float, reserve_out: float) -> float:
    """Relative deviation of the execution price from spot for ``amount_in``."""
    if amount_in <= 0:
        return 0.0
    if reserve_in <= 0 or reserve_out <= 0:
        raise DataError("reserves must be positive")
    k = reserve_in * reserve_out
    amount_out = reserve_out - k / (reserve_in + amount_in)
    if amount_out <= 0:
        return float("inf")
    effective = amount_in / amount_out
    spot = reserve_in / reserve_out
    return abs((effective - spot) / spot)


def liquidity_depth(reserve_in: float, reserve_out: float, target_slippage: float = DEPTH_TARGET_SLIPPAGE) -> float:
    """Largest trade (capped at 10% of ``reserve_in``) whose impact stays under target."""
    low = 0.0
    high = reserve_in * DEPTH_RESERVE_FRACTION
    result = 0.0
    while high - low > DEPTH_TOLERANCE:
        mid = (low + high) / 2
        if price_impact(mid, reserve_in, reserve_out) < target_slippage:
            result = mid
            low = mid
        else:
            high = mid
    return result


def estimate_apr(metrics: PoolMetrics) -> float:
    """Fee APR in percent, assuming daily volume of 5% of TVL."""
    if metrics.tvl <= 0:
        return 0.0
    daily_volume = metrics.tvl * DAILY_VOLUME_FRACTION
    annual_fees = daily_volume * metrics.fee_rate * 365
    return annual_fees / metrics.tvl * 100


def constant_product_output(amount_in: float, reserve_in: float, reserve_out: float, fee_rate: float) -> float:
    """Output of a swap against the pool, fee charged on the input."""
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0.0
    effective_in = amount_in * (1 - fee_rate)
    return reserve_out * effective_in / (reserve_in + effective_in)


def analyze(raw: Dict[str, Any]) -> PoolMetrics:
    """Build metrics from a raw pool object. Raises DataError on bad shapes."""
    if not isinstance(raw, dict):
        raise DataError("pool object is not a mapping")
    if "amount" not in raw or "amount2" not in raw:
        raise DataError("pool object without reserves")
    first = parse_amount(raw["amount"])
    second = parse_amount(raw["amount2"])
    if first.value <= 0 or second.value <= 0:
        raise DataError(f"non-positive reserves {first.value}/{second.value}")

    fee_raw = raw.get("trading_fee")
    try:
        fee_bps = float(fee_raw) if fee_raw not in (None, "") else DEFAULT_TRADING_FEE_BPS
    except (TypeError, ValueError) as exc:
        raise DataError(f"bad trading fee {fee_raw!r}") from exc

    if first.asset.is_native:
        native_reserve, token_reserve = first.value, second.value
        tvl = first.value * 2
    elif second.asset.is_native:
        native_reserve, token_reserve = second.value, first.value
        tvl = second.value * 2
    else:
        # token/token pools have no native price reference
        native_reserve, token_reserve = first.value, second.value
        tvl = 0.0

    lp_token = raw.get("lp_token") if isinstance(raw.get("lp_token"), dict) else {}
    try:
        lp_supply = float(lp_token.get("value", 0) or 0)
    except (TypeError, ValueError):
        lp_supply = 0.0

    pair = PoolPair(first.asset, second.asset)
    pool_id = str(raw.get("amm_id") or raw.get("account") or pair.key)
    return PoolMetrics(
        pool_id=pool_id,
        asset1=first.asset,
        asset2=second.asset,
        reserve1=first.value,
        reserve2=second.value,
        trading_fee_bps=fee_bps,
        tvl=tvl,
        price_impact=price_impact(PROBE_SIZE, native_reserve, token_reserve),
        liquidity_depth=liquidity_depth(native_reserve, token_reserve),
        lp_token_supply=lp_supply,
        lp_token_currency=str(lp_token.get("currency") or ""),
        amm_account=str(raw.get("account") or lp_token.get("issuer") or ""),
    )


class PoolMetricsEngine:
    """Fetches and analyzes pools, caching the latest metrics per pool id."""

    def __init__(self, ledger: LedgerQueryService) -> None:
        self._ledger = ledger
        self._cache: Dict[str, PoolMetrics] = {}

    @property
    def cache(self) -> Dict[str, PoolMetrics]:
        return dict(self._cache)

    def cached(self, pool_id: str) -> Optional[PoolMetrics]:
        return self._cache.get(pool_id)

    def analyze(self, raw: Dict[str, Any]) -> Optional[PoolMetrics]:
        try:
            metrics = analyze(raw)
        except DataError as exc:
            LOGGER.debug("dropping pool: %s", exc)
            return None
        self._cache[metrics.pool_id] = metrics
        return metrics

    async def fetch(self, pair: PoolPair) -> Optional[PoolMetrics]:
        try:
            raw = await self._ledger.amm_info(pair.asset1, pair.asset2)
        except LedgerError as exc:
            LOGGER.warning("amm_info %s failed: %s", pair.label, exc)
            return None
        if raw is None:
            return None
        return self.analyze(raw)

    async def find_profitable_pools(
        self,
        pairs: Iterable[PoolPair],
        min_tvl: float = 100.0,
        max_price_impact: float = 0.05,
    ) -> List[PoolMetrics]:
        found: List[PoolMetrics] = []
        for pair in pairs:
            metrics = await self.fetch(pair)
            if metrics is None:
                continue
            if metrics.tvl >= min_tvl and metrics.price_impact <= max_price_impact:
                with_apr = metrics.with_apr(estimate_apr(metrics))
                self._cache[with_apr.pool_id] = with_apr
                found.append(with_apr)
        found.sort(key=lambda m: m.apr or 0.0, reverse=True)
        return found
