from __future__ import annotations

import pytest

from amm_bot.ledger.settlement import (
    asset_received,
    balance_changes,
    delivered_amount,
    fee_paid,
    lp_tokens_received,
    lp_tokens_redeemed,
    transaction_succeeded,
)
from amm_bot.models import NATIVE

WALLET = "rWallet"
ISSUER = "rIssuer"
AMM = "rAMMAccount"
LP_CURRENCY = "03ABCDEF"


def _account_root(previous: str, final: str, account: str = WALLET) -> dict:
    return {
        "ModifiedNode": {
            "LedgerEntryType": "AccountRoot",
            "FinalFields": {"Account": account, "Balance": final},
            "PreviousFields": {"Balance": previous},
        }
    }


def _trust_line(currency: str, low: str, high: str, previous: str, final: str) -> dict:
    return {
        "ModifiedNode": {
            "LedgerEntryType": "RippleState",
            "FinalFields": {
                "Balance": {"currency": currency, "issuer": "rrrrrrrrrrrrrrrrrrrrBZbvji", "value": final},
                "LowLimit": {"issuer": low},
                "HighLimit": {"issuer": high},
            },
            "PreviousFields": {
                "Balance": {"currency": currency, "issuer": "rrrrrrrrrrrrrrrrrrrrBZbvji", "value": previous},
            },
        }
    }


def test_native_change_in_whole_units() -> None:
    meta = {"AffectedNodes": [_account_root("10000000", "7500000")]}
    assert balance_changes(meta, WALLET) == {"XRP": -2.5}


def test_other_accounts_are_ignored() -> None:
    meta = {"AffectedNodes": [_account_root("10000000", "7500000", account="rSomeoneElse")]}
    assert balance_changes(meta, WALLET) == {}


def test_trust_line_sign_follows_low_side() -> None:
    # wallet is the low side: balance grows from 1 to 4
    low_meta = {"AffectedNodes": [_trust_line("USD", WALLET, ISSUER, "1", "4")]}
    assert balance_changes(low_meta, WALLET) == {f"USD:{ISSUER}": 3.0}

    # wallet is the high side: stored balance goes negative as the wallet receives
    high_meta = {"AffectedNodes": [_trust_line("USD", ISSUER, WALLET, "-1", "-4")]}
    assert balance_changes(high_meta, WALLET) == {f"USD:{ISSUER}": 3.0}


def test_created_line_starts_from_zero() -> None:
    meta = {
        "AffectedNodes": [
            {
                "CreatedNode": {
                    "LedgerEntryType": "RippleState",
                    "NewFields": {
                        "Balance": {"currency": LP_CURRENCY, "value": "12.5"},
                        "LowLimit": {"issuer": WALLET},
                        "HighLimit": {"issuer": AMM},
                    },
                }
            }
        ]
    }
    assert lp_tokens_received(meta, WALLET, LP_CURRENCY, AMM) == 12.5
    assert lp_tokens_redeemed(meta, WALLET, LP_CURRENCY, AMM) == 0.0


def test_lp_redeemed_and_native_received_with_fee_added_back() -> None:
    meta = {
        "AffectedNodes": [
            _account_root("10000000", "14999988"),
            _trust_line(LP_CURRENCY, WALLET, AMM, "20", "10"),
        ]
    }
    assert lp_tokens_redeemed(meta, WALLET, LP_CURRENCY, AMM) == 10.0
    fee = fee_paid({"Fee": "12"})
    assert fee == 0.000012
    assert asset_received(meta, WALLET, "XRP", fee=fee) == pytest.approx(5.0)


def test_unchanged_balance_contributes_nothing() -> None:
    meta = {
        "AffectedNodes": [
            {
                "ModifiedNode": {
                    "LedgerEntryType": "AccountRoot",
                    "FinalFields": {"Account": WALLET, "Balance": "100", "Sequence": 5},
                    "PreviousFields": {"Sequence": 4},
                }
            }
        ]
    }
    assert balance_changes(meta, WALLET) == {}


def test_delivered_amount_and_result() -> None:
    assert transaction_succeeded({"TransactionResult": "tesSUCCESS"})
    assert not transaction_succeeded({"TransactionResult": "tecPATH_DRY"})

    native = delivered_amount({"delivered_amount": "2000000"})
    assert native is not None
    assert native.asset == NATIVE
    assert native.value == 2.0

    issued = delivered_amount({"DeliveredAmount": {"currency": "USD", "issuer": ISSUER, "value": "3.5"}})
    assert issued is not None
    assert issued.value == 3.5
    assert delivered_amount({"delivered_amount": "unavailable"}) is None
    assert fee_paid({}) == 0.0
