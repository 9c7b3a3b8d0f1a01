from __future__ import annotations

import logging
from dataclasses import dataclass
from itertools import combinations
from typing import List, Optional, Sequence

from amm_bot.models import ArbitrageOpportunity, IssuedAsset, PoolMetrics, Route

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DetectorConfig:
    """Sanity bounds for cross-pool price comparison.

    Parameters
    ----------
    min_profit_percent:
        Minimum relative price difference, in percent. Default 0.5.
    max_trade_amount:
        Cap on the sized trade. Default 100.
    max_price / min_price:
        Prices outside this band are treated as malformed reserve data.
    max_price_difference:
        Relative differences above this (10 = 1000%) are data errors.
    trade_fraction:
        Share of the thinnest reserve used to size a trade. Default 0.05.
    min_trade_amount / max_sane_trade_amount:
        Absolute range a sized trade must fall in.
    """

    min_profit_percent: float = 0.5
    max_trade_amount: float = 100.0
    max_price: float = 1e6
    min_price: float = 1e-7
    max_price_difference: float = 10.0
    trade_fraction: float = 0.05
    min_trade_amount: float = 1.0
    max_sane_trade_amount: float = 100_000.0


def shared_token(pool1: PoolMetrics, pool2: PoolMetrics) -> Optional[IssuedAsset]:
    """First non-native asset present in both pools."""
    for asset in (pool1.asset1, pool1.asset2):
        if asset.is_native:
            continue
        if pool2.contains(asset):
            return asset  # type: ignore[return-value]
    return None


def token_price(pool: PoolMetrics, token: IssuedAsset) -> float:
    """Shared-token reserve per unit of the pool's other reserve."""
    other = pool.reserve_of(pool.other_asset(token))
    if other <= 0:
        return 0.0
    return pool.reserve_of(token) / other


def trade_size(pool1: PoolMetrics, pool2: PoolMetrics, config: DetectorConfig) -> float:
    thinnest = min(
        min(pool1.reserve1, pool1.reserve2),
        min(pool2.reserve1, pool2.reserve2),
    )
    return min(thinnest * config.trade_fraction, config.max_trade_amount)


class ArbitrageDetector:
    def __init__(self, config: DetectorConfig | None = None) -> None:
        self._config = config or DetectorConfig()

    @property
    def config(self) -> DetectorConfig:
        return self._config

    def evaluate(self, pool1: PoolMetrics, pool2: PoolMetrics) -> Optional[ArbitrageOpportunity]:
        cfg = self._config
        token = shared_token(pool1, pool2)
        if token is None:
            return None

        price1 = token_price(pool1, token)
        price2 = token_price(pool2, token)
        for price in (price1, price2):
            if price <= 0 or price > cfg.max_price or price < cfg.min_price:
                LOGGER.debug("rejecting %s: insane price %s", token.currency, price)
                return None

        difference = abs(price1 - price2) / min(price1, price2)
        if difference > cfg.max_price_difference:
            LOGGER.debug("rejecting %s: difference %.2f%% looks like bad data", token.currency, difference * 100)
            return None
        if difference < cfg.min_profit_percent / 100:
            return None

        amount = trade_size(pool1, pool2, cfg)
        if amount < cfg.min_trade_amount or amount > cfg.max_sane_trade_amount:
            LOGGER.debug("rejecting %s: trade size %.4f out of range", token.currency, amount)
            return None

        return ArbitrageOpportunity(
            pool1=pool1,
            pool2=pool2,
            token=token,
            price_difference=difference * 100,
            profit_potential=amount * difference,
            trade_amount=amount,
            route=Route.POOL1_THEN_POOL2 if price1 < price2 else Route.POOL2_THEN_POOL1,
        )

    def detect(self, pools: Sequence[PoolMetrics]) -> List[ArbitrageOpportunity]:
        opportunities: List[ArbitrageOpportunity] = []
        for pool1, pool2 in combinations(pools, 2):
            opportunity = self.evaluate(pool1, pool2)
            if opportunity is not None:
                opportunities.append(opportunity)
        opportunities.sort(key=lambda o: o.profit_potential, reverse=True)
        if opportunities:
            LOGGER.info(
                "found %d arbitrage opportunities across %d pools (best %.2f%% on %s)",
                len(opportunities),
                len(pools),
                opportunities[0].price_difference,
                opportunities[0].token.currency,
            )
        return opportunities
