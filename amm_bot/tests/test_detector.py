from __future__ import annotations

import pytest

from amm_bot.detector import ArbitrageDetector, DetectorConfig, shared_token, token_price
from amm_bot.models import NATIVE, IssuedAsset, PoolMetrics, Route

USD = IssuedAsset("USD", "rIssuerUSD")
EUR = IssuedAsset("EUR", "rIssuerEUR")


def _make_pool(pool_id: str, native: float, token: float, asset: IssuedAsset = USD) -> PoolMetrics:
    return PoolMetrics(
        pool_id=pool_id,
        asset1=NATIVE,
        asset2=asset,
        reserve1=native,
        reserve2=token,
        trading_fee_bps=30,
        tvl=native * 2,
        price_impact=0.001,
        liquidity_depth=native / 100,
    )


class TestHelpers:
    def test_shared_token(self) -> None:
        assert shared_token(_make_pool("a", 1, 1), _make_pool("b", 1, 1)) == USD
        assert shared_token(_make_pool("a", 1, 1), _make_pool("b", 1, 1, EUR)) is None

    def test_price_is_token_per_other_reserve(self) -> None:
        assert token_price(_make_pool("a", 1000, 500), USD) == 0.5


def test_twenty_five_percent_gap_buys_from_first_pool() -> None:
    pool_a = _make_pool("A", 1000, 500)
    pool_b = _make_pool("B", 800, 500)

    opportunity = ArbitrageDetector().evaluate(pool_a, pool_b)

    assert opportunity is not None
    assert opportunity.token == USD
    assert opportunity.price_difference == pytest.approx(25.0)
    assert opportunity.route == Route.POOL1_THEN_POOL2
    assert opportunity.buy_pool is pool_a
    assert opportunity.sell_pool is pool_b
    assert opportunity.trade_amount == pytest.approx(25.0)
    assert opportunity.profit_potential == pytest.approx(6.25)


def test_route_flips_with_pool_order() -> None:
    opportunity = ArbitrageDetector().evaluate(_make_pool("B", 800, 500), _make_pool("A", 1000, 500))
    assert opportunity is not None
    assert opportunity.route == Route.POOL2_THEN_POOL1
    assert opportunity.buy_pool.pool_id == "A"


def test_trade_amount_capped_by_config() -> None:
    detector = ArbitrageDetector(DetectorConfig(max_trade_amount=5))
    opportunity = detector.evaluate(_make_pool("A", 1000, 500), _make_pool("B", 800, 500))
    assert opportunity is not None
    assert opportunity.trade_amount == 5
    assert opportunity.profit_potential == pytest.approx(1.25)


class TestRejections:
    def test_below_threshold(self) -> None:
        detector = ArbitrageDetector(DetectorConfig(min_profit_percent=0.5))
        assert detector.evaluate(_make_pool("A", 1000, 500), _make_pool("B", 999, 500)) is None

    def test_no_shared_token(self) -> None:
        assert ArbitrageDetector().evaluate(_make_pool("A", 1000, 500), _make_pool("B", 800, 500, EUR)) is None

    def test_absurd_difference_is_treated_as_bad_data(self) -> None:
        assert ArbitrageDetector().evaluate(_make_pool("A", 1000, 500), _make_pool("B", 10, 500)) is None

    def test_price_outside_band(self) -> None:
        tiny = _make_pool("A", 1e9, 1)
        assert ArbitrageDetector().evaluate(tiny, _make_pool("B", 1e9, 1.2)) is None

    def test_trade_too_small(self) -> None:
        assert ArbitrageDetector().evaluate(_make_pool("A", 10, 5), _make_pool("B", 8, 5)) is None


def test_detect_sorts_by_profit_potential() -> None:
    pools = [
        _make_pool("A", 1000, 500),
        _make_pool("B", 800, 500),
        _make_pool("C", 990, 500),
        _make_pool("E", 1000, 500, EUR),
    ]
    found = ArbitrageDetector().detect(pools)

    assert len(found) == 3
    profits = [o.profit_potential for o in found]
    assert profits == sorted(profits, reverse=True)
    assert {found[0].pool1.pool_id, found[0].pool2.pool_id} == {"A", "B"}
    assert all(o.token == USD for o in found)
