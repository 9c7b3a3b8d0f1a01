from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from amm_bot.errors import LedgerError
from amm_bot.ledger.base import LedgerPage, LedgerQueryService, Signer, SubmitResult
from amm_bot.models import NATIVE, IssuedAsset, PoolMetrics, TradeIntent, TradeSide, Venue
from amm_bot.router import BestExecutionRouter

USD = IssuedAsset("USD", "rIssuerUSD")
WALLET = "rWallet"


def _make_pool(native: float = 1000, token: float = 500) -> PoolMetrics:
    return PoolMetrics(
        pool_id="rAMM",
        asset1=NATIVE,
        asset2=USD,
        reserve1=native,
        reserve2=token,
        trading_fee_bps=30,
        tvl=native * 2,
        price_impact=0.001,
        liquidity_depth=native / 100,
    )


class _FakeLedger(LedgerQueryService):
    def __init__(
        self,
        offers: Optional[List[Dict[str, Any]]] = None,
        paths: Optional[List[Dict[str, Any]]] = None,
        lines: Optional[List[Dict[str, Any]]] = None,
        book_error: bool = False,
        pool: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.offers = offers or []
        self.paths = paths or []
        self.lines = [{"currency": "USD", "account": USD.issuer}] if lines is None else lines
        self.book_error = book_error
        self.pool = pool

    async def amm_info(self, asset1, asset2):
        return self.pool

    async def book_offers(self, taker_gets, taker_pays, limit=20):
        if self.book_error:
            raise LedgerError("book unavailable")
        return self.offers

    async def path_find(self, source_account, destination_amount, source_asset):
        return self.paths

    async def ledger_data(self, entry_type="amm", marker=None, limit=200):
        return LedgerPage([])

    async def account_balance(self, address):
        return 100.0

    async def account_lines(self, address):
        return self.lines


class _FakeSigner(Signer):
    def __init__(self, reject: tuple = (), metadata: Optional[Dict[str, Any]] = None) -> None:
        self.address = WALLET
        self.reject = set(reject)
        self.metadata = metadata or {}
        self.submitted: List[Dict[str, Any]] = []

    async def submit(self, tx):
        self.submitted.append(tx)
        kind = tx["TransactionType"]
        if kind in self.reject:
            return SubmitResult(success=False, engine_result="tecKILLED", error=f"{kind} rejected")
        return SubmitResult(success=True, settlement_ref=f"REF{len(self.submitted)}", metadata=self.metadata)


def _buy(amount: float = 10.0, pool: Optional[PoolMetrics] = None) -> TradeIntent:
    return TradeIntent(side=TradeSide.BUY, token=USD, counter=NATIVE, amount=amount, pool=pool or _make_pool())


def _amm_out(amount: float = 10.0) -> float:
    effective = amount * (1 - 0.003)
    return 500 * effective / (1000 + effective)


def test_amm_only_when_no_other_venue_quotes() -> None:
    signer = _FakeSigner()
    router = BestExecutionRouter(_FakeLedger(), signer)

    result = asyncio.run(router.execute(_buy()))

    assert result.success
    assert result.venue == Venue.AMM
    assert result.amount_out == pytest.approx(_amm_out())
    assert [tx["TransactionType"] for tx in signer.submitted] == ["Payment"]
    assert "Paths" not in signer.submitted[0]
    assert signer.submitted[0]["SendMax"] == "10000000"


def test_better_book_fails_and_falls_back_to_amm() -> None:
    offers = [{"TakerGets": {"currency": "USD", "issuer": USD.issuer, "value": "10"}, "TakerPays": "10000000"}]
    signer = _FakeSigner(reject=("OfferCreate",))
    router = BestExecutionRouter(_FakeLedger(offers=offers), signer)

    result = asyncio.run(router.execute(_buy()))

    assert result.success
    assert result.venue == Venue.AMM
    assert [tx["TransactionType"] for tx in signer.submitted] == ["OfferCreate", "Payment"]


def test_book_query_failure_still_routes_through_amm() -> None:
    signer = _FakeSigner()
    router = BestExecutionRouter(_FakeLedger(book_error=True), signer)
    result = asyncio.run(router.execute(_buy()))
    assert result.success
    assert result.venue == Venue.AMM


def test_path_wins_a_tie_with_the_pool() -> None:
    paths = [
        {
            "source_amount": "10000000",
            "paths_computed": [[{"currency": "USD", "issuer": USD.issuer}]],
        }
    ]
    signer = _FakeSigner()
    router = BestExecutionRouter(_FakeLedger(paths=paths), signer)

    candidates, _ = asyncio.run(router.quotes(_buy()))
    assert [q.venue for q in candidates][:2] == [Venue.PATH_FIND, Venue.AMM]

    result = asyncio.run(router.execute(_buy()))
    assert result.venue == Venue.PATH_FIND
    assert signer.submitted[-1]["Paths"] == [[{"currency": "USD", "issuer": USD.issuer}]]


def test_expensive_path_is_ignored() -> None:
    paths = [{"source_amount": "20000000", "paths_computed": [[{"currency": "USD"}]]}]
    router = BestExecutionRouter(_FakeLedger(paths=paths), _FakeSigner())
    candidates, _ = asyncio.run(router.quotes(_buy()))
    assert [q.venue for q in candidates] == [Venue.AMM]


def test_buy_creates_missing_trust_line_first() -> None:
    signer = _FakeSigner()
    router = BestExecutionRouter(_FakeLedger(lines=[]), signer)

    result = asyncio.run(router.execute(_buy()))

    assert result.success
    assert signer.submitted[0]["TransactionType"] == "TrustSet"
    assert signer.submitted[0]["LimitAmount"]["currency"] == "USD"


def test_sell_does_not_touch_trust_lines() -> None:
    signer = _FakeSigner()
    router = BestExecutionRouter(_FakeLedger(lines=[]), signer)
    intent = TradeIntent(side=TradeSide.SELL, token=USD, counter=NATIVE, amount=5.0, pool=_make_pool())

    result = asyncio.run(router.execute(intent))

    assert result.success
    assert [tx["TransactionType"] for tx in signer.submitted] == ["Payment"]
    assert signer.submitted[0]["SendMax"]["currency"] == "USD"


def test_failed_trust_line_aborts_buy() -> None:
    signer = _FakeSigner(reject=("TrustSet",))
    router = BestExecutionRouter(_FakeLedger(lines=[]), signer)
    result = asyncio.run(router.execute(_buy()))
    assert not result.success
    assert "trust line" in (result.error or "")
    assert len(signer.submitted) == 1


def test_no_pool_and_no_quotes_fails() -> None:
    router = BestExecutionRouter(_FakeLedger(pool=None), _FakeSigner())
    intent = TradeIntent(side=TradeSide.BUY, token=USD, counter=NATIVE, amount=10.0)
    result = asyncio.run(router.execute(intent))
    assert not result.success
    assert result.error == "no AMM pool for USD"


def test_realized_amounts_come_from_metadata() -> None:
    metadata = {
        "TransactionResult": "tesSUCCESS",
        "delivered_amount": {"currency": "USD", "issuer": USD.issuer, "value": "4.8"},
        "AffectedNodes": [
            {
                "ModifiedNode": {
                    "LedgerEntryType": "AccountRoot",
                    "FinalFields": {"Account": WALLET, "Balance": "89999988"},
                    "PreviousFields": {"Balance": "100000000"},
                }
            }
        ],
    }
    router = BestExecutionRouter(_FakeLedger(), _FakeSigner(metadata=metadata))

    result = asyncio.run(router.execute(_buy()))

    assert result.amount_out == 4.8
    assert result.amount_in == pytest.approx(10.000012)


def test_non_positive_amount_is_refused() -> None:
    signer = _FakeSigner()
    result = asyncio.run(BestExecutionRouter(_FakeLedger(), signer).execute(_buy(amount=0)))
    assert not result.success
    assert signer.submitted == []
