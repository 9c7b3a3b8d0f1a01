from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from amm_bot.ledger.base import Signer, SubmitResult
from amm_bot.ledger.signer import DryRunSigner
from amm_bot.liquidity import (
    TF_LP_TOKEN,
    TF_SINGLE_ASSET,
    TF_TWO_ASSET,
    TF_WITHDRAW_ALL,
    ExitRules,
    LiquidityProvider,
    determine_exit,
    estimate_lp_tokens,
    impermanent_loss,
    numeraire_sides,
    pool_price,
    value_position,
)
from amm_bot.models import (
    NATIVE,
    DepositStrategy,
    ExitAction,
    InitialDeposit,
    IssuedAsset,
    LPPosition,
    PoolMetrics,
)

USD = IssuedAsset("USD", "rIssuerUSD")
EUR = IssuedAsset("EUR", "rIssuerEUR")
WALLET = "rWallet"
NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


def _make_pool(native: float = 1000, token: float = 500, native_first: bool = True, supply: float = 1000) -> PoolMetrics:
    asset1, asset2 = (NATIVE, USD) if native_first else (USD, NATIVE)
    reserve1, reserve2 = (native, token) if native_first else (token, native)
    return PoolMetrics(
        pool_id="rAMM",
        asset1=asset1,
        asset2=asset2,
        reserve1=reserve1,
        reserve2=reserve2,
        trading_fee_bps=30,
        tvl=native * 2,
        price_impact=0.001,
        liquidity_depth=native / 100,
        lp_token_supply=supply,
        lp_token_currency="03LP",
        amm_account="rAMM",
        apr=25.0,
    )


def _make_position(
    lp_tokens: float = 100,
    initial: float = 180,
    entry_price: float = 2.0,
    days_held: float = 5,
    apr: float = 0.0,
    il: float = 0.0,
) -> LPPosition:
    return LPPosition(
        pool_id="rAMM",
        asset1=NATIVE,
        asset2=USD,
        lp_tokens=lp_tokens,
        initial_deposit=InitialDeposit(initial, 0.0, initial),
        entry_price=entry_price,
        current_value=initial,
        strategy=DepositStrategy.ONE_SIDED,
        apr=apr,
        impermanent_loss=il,
        entry_time=NOW - timedelta(days=days_held),
        lp_token_currency="03LP",
        amm_account="rAMM",
    )


class _MetaSigner(Signer):
    def __init__(self, metadata: Optional[Dict[str, Any]] = None, reject: bool = False) -> None:
        self.address = WALLET
        self.metadata = metadata or {}
        self.reject = reject
        self.submitted: List[Dict[str, Any]] = []

    async def submit(self, tx):
        self.submitted.append(tx)
        if self.reject:
            return SubmitResult(success=False, engine_result="tecAMM_FAILED")
        return SubmitResult(success=True, settlement_ref="REF", metadata=self.metadata)


def _lp_line(previous: str, final: str) -> Dict[str, Any]:
    return {
        "ModifiedNode": {
            "LedgerEntryType": "RippleState",
            "FinalFields": {
                "Balance": {"currency": "03LP", "value": final},
                "LowLimit": {"issuer": WALLET},
                "HighLimit": {"issuer": "rAMM"},
            },
            "PreviousFields": {"Balance": {"currency": "03LP", "value": previous}},
        }
    }


# ---------------------------------------------------------------------------
# Pricing and valuation
# ---------------------------------------------------------------------------


class TestImpermanentLoss:
    def test_zero_when_price_unchanged(self) -> None:
        assert impermanent_loss(2.0, 2.0) == pytest.approx(0.0)

    def test_fourfold_move_costs_twenty_percent(self) -> None:
        assert impermanent_loss(1.0, 4.0) == pytest.approx(-20.0)

    def test_symmetric_in_ratio(self) -> None:
        assert impermanent_loss(1.0, 4.0) == pytest.approx(impermanent_loss(4.0, 1.0))

    def test_never_positive(self) -> None:
        for ratio in (0.1, 0.5, 0.9, 1.1, 3.0, 50.0):
            assert impermanent_loss(1.0, ratio) <= 0

    def test_bad_prices(self) -> None:
        assert impermanent_loss(0, 2) == 0.0
        assert impermanent_loss(2, -1) == 0.0


def test_numeraire_is_native_side_when_present() -> None:
    assert numeraire_sides(_make_pool())[0] == NATIVE
    assert numeraire_sides(_make_pool(native_first=False))[0] == NATIVE
    assert pool_price(_make_pool()) == 2.0
    assert pool_price(_make_pool(native_first=False)) == 2.0


def test_numeraire_falls_back_to_first_asset() -> None:
    pool = PoolMetrics(
        pool_id="p", asset1=USD, asset2=EUR, reserve1=100, reserve2=90,
        trading_fee_bps=10, tvl=0, price_impact=0.01, liquidity_depth=1,
    )
    assert numeraire_sides(pool)[0] == USD
    assert pool_price(pool) == pytest.approx(100 / 90)


def test_value_position_numbers() -> None:
    valuation = value_position(_make_position(), _make_pool(), now=NOW)

    assert valuation.current_value == pytest.approx(200.0)
    assert valuation.impermanent_loss == pytest.approx(0.0)
    assert valuation.fees_earned == pytest.approx(20.0)
    assert valuation.total_return == pytest.approx(100 / 9)
    assert valuation.apr == pytest.approx(100 / 9 / 5 * 365)


def test_value_position_same_day_has_zero_apr() -> None:
    valuation = value_position(_make_position(days_held=0), _make_pool(), now=NOW)
    assert valuation.apr == 0.0


def test_value_position_after_price_move_shows_loss() -> None:
    # price moved from 2 to 8: IL -20%
    valuation = value_position(_make_position(entry_price=2.0), _make_pool(native=2000, token=250), now=NOW)
    assert valuation.impermanent_loss == pytest.approx(-20.0)


# ---------------------------------------------------------------------------
# Exit rules
# ---------------------------------------------------------------------------


class TestDetermineExit:
    def test_high_impermanent_loss_exits_fully(self) -> None:
        decision = determine_exit(_make_position(il=-12.0, apr=50), now=NOW)
        assert decision.should_exit
        assert decision.action == ExitAction.WITHDRAW_ALL
        assert decision.reason.startswith("High impermanent loss")

    def test_low_apr_after_a_week_exits_fully(self) -> None:
        decision = determine_exit(_make_position(apr=5.0, days_held=8), target_apr=20, now=NOW)
        assert decision.should_exit
        assert decision.action == ExitAction.WITHDRAW_ALL
        assert "Low APR" in decision.reason

    def test_low_apr_too_early_holds(self) -> None:
        decision = determine_exit(_make_position(apr=5.0, days_held=6), target_apr=20, now=NOW)
        assert decision.action == ExitAction.HOLD

    def test_high_apr_takes_half_without_exiting(self) -> None:
        decision = determine_exit(_make_position(apr=40.0, days_held=4), target_apr=20, now=NOW)
        assert not decision.should_exit
        assert decision.action == ExitAction.WITHDRAW_HALF

    def test_high_apr_respects_cooldown(self) -> None:
        position = _make_position(apr=40.0, days_held=10)
        position.last_partial_exit_at = NOW - timedelta(days=1)
        assert determine_exit(position, 20, now=NOW).action == ExitAction.HOLD

        position.last_partial_exit_at = NOW - timedelta(days=3)
        assert determine_exit(position, 20, now=NOW).action == ExitAction.WITHDRAW_HALF

    def test_custom_rules(self) -> None:
        rules = ExitRules(max_impermanent_loss=5.0)
        assert determine_exit(_make_position(il=-6.0, apr=25), 20, now=NOW, rules=rules).should_exit

    def test_performing_position_holds(self) -> None:
        decision = determine_exit(_make_position(apr=25.0, days_held=30), 20, now=NOW)
        assert not decision.should_exit
        assert decision.action == ExitAction.HOLD


# ---------------------------------------------------------------------------
# Deposits
# ---------------------------------------------------------------------------


class TestDeposits:
    def test_one_sided_transaction(self) -> None:
        provider = LiquidityProvider(DryRunSigner(WALLET))
        tx = provider.build_deposit(_make_pool(), 10.0, DepositStrategy.ONE_SIDED)
        assert tx["TransactionType"] == "AMMDeposit"
        assert tx["Flags"] == TF_SINGLE_ASSET
        assert tx["Amount"] == "10000000"
        assert tx["Asset"] == {"currency": "XRP"}
        assert tx["Asset2"] == {"currency": "USD", "issuer": USD.issuer}
        assert "Amount2" not in tx

    def test_balanced_transaction_matches_pool_ratio(self) -> None:
        provider = LiquidityProvider(DryRunSigner(WALLET))
        tx = provider.build_deposit(_make_pool(), 10.0, DepositStrategy.BALANCED)
        assert tx["Flags"] == TF_TWO_ASSET
        assert tx["Amount2"] == {"currency": "USD", "issuer": USD.issuer, "value": "5"}

    def test_open_balanced_position_without_metadata_estimates_tokens(self) -> None:
        signer = DryRunSigner(WALLET)
        provider = LiquidityProvider(signer)

        result, position = asyncio.run(provider.open_position(_make_pool(), 10.0, DepositStrategy.BALANCED, now=NOW))

        assert result.success
        assert result.lp_tokens == pytest.approx(10.0)
        assert (result.asset1_amount, result.asset2_amount) == pytest.approx((10.0, 5.0))
        assert position is not None
        assert position.initial_deposit.total_value == pytest.approx(20.0)
        assert position.entry_price == 2.0
        assert position.entry_time == NOW
        assert provider.positions == {"rAMM": position}
        assert len(signer.submitted) == 1

    def test_native_second_pool_keeps_pool_order(self) -> None:
        provider = LiquidityProvider(DryRunSigner(WALLET))
        result, position = asyncio.run(
            provider.open_position(_make_pool(native_first=False), 10.0, DepositStrategy.BALANCED, now=NOW)
        )
        assert (result.asset1_amount, result.asset2_amount) == pytest.approx((5.0, 10.0))
        assert position is not None
        assert position.initial_deposit.total_value == pytest.approx(20.0)

    def test_one_sided_estimate_is_below_proportional_share(self) -> None:
        pool = _make_pool()
        one_sided = estimate_lp_tokens(pool, 10.0, DepositStrategy.ONE_SIDED)
        balanced = estimate_lp_tokens(pool, 10.0, DepositStrategy.BALANCED)
        assert 0 < one_sided < balanced
        assert one_sided == pytest.approx(1000 * ((1 + 10 * 0.9985 / 1000) ** 0.5 - 1))

    def test_metadata_lp_tokens_win_over_estimate(self) -> None:
        metadata = {"TransactionResult": "tesSUCCESS", "AffectedNodes": [_lp_line("0", "4.2")]}
        provider = LiquidityProvider(_MetaSigner(metadata))
        result, position = asyncio.run(provider.open_position(_make_pool(), 10.0, DepositStrategy.ONE_SIDED, now=NOW))
        assert result.lp_tokens == pytest.approx(4.2)
        assert position is not None and position.lp_tokens == pytest.approx(4.2)

    def test_rejected_deposit_opens_nothing(self) -> None:
        provider = LiquidityProvider(_MetaSigner(reject=True))
        result, position = asyncio.run(provider.open_position(_make_pool(), 10.0, DepositStrategy.ONE_SIDED))
        assert not result.success
        assert result.error == "tecAMM_FAILED"
        assert position is None
        assert provider.positions == {}

    def test_non_positive_amount(self) -> None:
        result = asyncio.run(LiquidityProvider(DryRunSigner(WALLET)).deposit(_make_pool(), 0, DepositStrategy.ONE_SIDED))
        assert not result.success


# ---------------------------------------------------------------------------
# Withdrawals
# ---------------------------------------------------------------------------


class TestWithdrawals:
    def _provider_with_position(self, signer: Signer) -> tuple[LiquidityProvider, LPPosition]:
        provider = LiquidityProvider(signer)
        position = _make_position()
        provider.positions[position.pool_id] = position
        return provider, position

    def test_half_withdrawal_keeps_position(self) -> None:
        signer = DryRunSigner(WALLET)
        provider, position = self._provider_with_position(signer)

        result = asyncio.run(provider.withdraw(position, _make_pool(), fraction=0.5, now=NOW))

        assert result.success
        assert not result.full
        assert result.lp_tokens_redeemed == pytest.approx(50.0)
        assert result.asset1_received == pytest.approx(50.0)
        assert result.asset2_received == pytest.approx(25.0)
        assert position.lp_tokens == pytest.approx(50.0)
        assert position.initial_deposit.total_value == pytest.approx(90.0)
        assert position.partial_exits == 1
        assert position.last_partial_exit_at == NOW
        assert "rAMM" in provider.positions

        tx = signer.submitted[0]
        assert tx["Flags"] == TF_LP_TOKEN
        assert tx["LPTokenIn"] == {"currency": "03LP", "issuer": "rAMM", "value": "50"}

    def test_full_withdrawal_removes_position(self) -> None:
        signer = DryRunSigner(WALLET)
        provider, position = self._provider_with_position(signer)

        result = asyncio.run(provider.withdraw(position, _make_pool()))

        assert result.success and result.full
        assert provider.positions == {}
        assert signer.submitted[0]["Flags"] == TF_WITHDRAW_ALL
        assert "LPTokenIn" not in signer.submitted[0]

    def test_failed_withdrawal_keeps_position(self) -> None:
        provider, position = self._provider_with_position(_MetaSigner(reject=True))
        result = asyncio.run(provider.withdraw(position, _make_pool()))
        assert not result.success
        assert provider.positions == {"rAMM": position}
        assert position.lp_tokens == 100

    def test_metadata_amounts_are_used(self) -> None:
        metadata = {
            "TransactionResult": "tesSUCCESS",
            "AffectedNodes": [
                _lp_line("100", "60"),
                {
                    "ModifiedNode": {
                        "LedgerEntryType": "AccountRoot",
                        "FinalFields": {"Account": WALLET, "Balance": "38000000"},
                        "PreviousFields": {"Balance": "0"},
                    }
                },
            ],
        }
        provider, position = self._provider_with_position(_MetaSigner(metadata))
        result = asyncio.run(provider.withdraw(position, _make_pool(), fraction=0.5, now=NOW))

        assert result.lp_tokens_redeemed == pytest.approx(40.0)
        assert result.asset1_received == pytest.approx(38.0)
        assert result.asset2_received == 0.0
        assert position.lp_tokens == pytest.approx(60.0)

    @pytest.mark.parametrize("fraction", [0, -0.5, 1.5])
    def test_invalid_fraction(self, fraction: float) -> None:
        provider, position = self._provider_with_position(DryRunSigner(WALLET))
        result = asyncio.run(provider.withdraw(position, _make_pool(), fraction=fraction))
        assert not result.success
        assert provider.positions == {"rAMM": position}


def test_update_position_writes_valuation_back() -> None:
    provider = LiquidityProvider(DryRunSigner(WALLET))
    position = _make_position()
    provider.update_position(position, _make_pool(), now=NOW)
    assert position.current_value == pytest.approx(200.0)
    assert position.fees_earned == pytest.approx(20.0)
    assert position.apr == pytest.approx(100 / 9 / 5 * 365)
    assert provider.determine_exit(position, 20, now=NOW).action == ExitAction.WITHDRAW_HALF
