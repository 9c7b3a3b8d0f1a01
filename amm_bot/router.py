"""Best-execution routing for one directional trade.

Quotes are gathered concurrently from three venues:

* ``path_find`` - the ledger's payment-path search;
* ``amm`` - the constant-product formula on the pool's current reserves;
* ``book`` - resting offers walked best quality first.

The venue with the greatest output wins. If submitting through a non-AMM
winner fails, the trade is retried once directly against the AMM; with no
quotes at all the AMM is used outright.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from amm_bot.errors import DataError, ExecutionFailure, LedgerError
from amm_bot.ledger.base import LedgerQueryService, Signer, SubmitResult
from amm_bot.ledger.settlement import balance_changes, delivered_amount, transaction_succeeded
from amm_bot.models import (
    Amount,
    PoolMetrics,
    TradeIntent,
    TradeResult,
    TradeSide,
    Venue,
    VenueQuote,
    parse_amount,
)
from amm_bot.order_book import parse_levels, walk_book
from amm_bot.pool_metrics import PoolMetricsEngine, constant_product_output

LOGGER = logging.getLogger(__name__)

TF_PARTIAL_PAYMENT = 0x00020000
TF_IMMEDIATE_OR_CANCEL = 0x00020000
TF_SELL = 0x00080000


@dataclass(frozen=True)
class RouterConfig:
    """Quoting knobs.

    Parameters
    ----------
    book_depth:
        Offers requested per book. Default 30.
    path_send_max_factor:
        A path quote is only usable if its source cost is within this
        multiple of the input amount. Default 1.05.
    fallback_target_rate:
        Output-per-input guess for path targets when no pool is known.
        Default 0.001.
    trust_line_limit:
        Limit used when a buy needs a new trust line. Default 100000.
    """

    book_depth: int = 30
    path_send_max_factor: float = 1.05
    fallback_target_rate: float = 0.001
    trust_line_limit: float = 100_000.0


class BestExecutionRouter:
    def __init__(
        self,
        ledger: LedgerQueryService,
        signer: Signer,
        metrics: PoolMetricsEngine | None = None,
        config: RouterConfig | None = None,
    ) -> None:
        self._ledger = ledger
        self._signer = signer
        self._metrics = metrics or PoolMetricsEngine(ledger)
        self._config = config or RouterConfig()

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def _resolve_pool(self, intent: TradeIntent) -> Optional[PoolMetrics]:
        if intent.pool is not None:
            return intent.pool
        for pair in ((intent.counter, intent.token), (intent.token, intent.counter)):
            try:
                raw = await self._ledger.amm_info(*pair)
            except LedgerError as exc:
                LOGGER.debug("amm_info for %s failed: %s", intent.token.currency, exc)
                return None
            if raw is not None:
                return self._metrics.analyze(raw)
        return None

    def quote_amm(self, intent: TradeIntent, pool: Optional[PoolMetrics]) -> Optional[VenueQuote]:
        if pool is None or not (pool.contains(intent.asset_in) and pool.contains(intent.asset_out)):
            return None
        out = constant_product_output(
            intent.amount,
            pool.reserve_of(intent.asset_in),
            pool.reserve_of(intent.asset_out),
            pool.fee_rate,
        )
        if out <= 0:
            return None
        return VenueQuote(venue=Venue.AMM, amount_in=intent.amount, amount_out=out, rate=intent.amount / out)

    async def quote_book(self, intent: TradeIntent) -> Optional[VenueQuote]:
        try:
            offers = await self._ledger.book_offers(
                taker_gets=intent.asset_out, taker_pays=intent.asset_in, limit=self._config.book_depth
            )
        except LedgerError as exc:
            LOGGER.debug("book_offers failed: %s", exc)
            return None
        fill = walk_book(parse_levels(offers), intent.amount)
        if fill.amount_out <= 0:
            return None
        return VenueQuote(
            venue=Venue.BOOK, amount_in=fill.amount_in, amount_out=fill.amount_out, rate=fill.effective_rate
        )

    async def quote_path_find(self, intent: TradeIntent, target_out: float) -> Optional[VenueQuote]:
        if target_out <= 0:
            return None
        destination = Amount(intent.asset_out, target_out).to_ledger()
        try:
            alternatives = await self._ledger.path_find(self._signer.address, destination, intent.asset_in)
        except LedgerError as exc:
            LOGGER.debug("path_find failed: %s", exc)
            return None
        best: Optional[Tuple[float, Dict[str, Any]]] = None
        for alt in alternatives:
            if not alt.get("paths_computed") or "source_amount" not in alt:
                continue
            try:
                source = parse_amount(alt["source_amount"]).value
            except DataError:
                continue
            if source <= 0:
                continue
            if best is None or source < best[0]:
                best = (source, alt)
        if best is None:
            return None
        source, alt = best
        if source > intent.amount * self._config.path_send_max_factor:
            return None
        # scale to the fixed input so the venues compare like for like
        out = target_out * min(1.0, intent.amount / source)
        return VenueQuote(
            venue=Venue.PATH_FIND,
            amount_in=min(source, intent.amount),
            amount_out=out,
            rate=source / target_out,
            paths=tuple(alt["paths_computed"]),
        )

    async def quotes(self, intent: TradeIntent) -> Tuple[List[VenueQuote], Optional[PoolMetrics]]:
        pool = await self._resolve_pool(intent)
        amm_quote = self.quote_amm(intent, pool)
        target = amm_quote.amount_out if amm_quote else intent.amount * self._config.fallback_target_rate
        path_quote, book_quote = await asyncio.gather(
            self.quote_path_find(intent, target),
            self.quote_book(intent),
        )
        # path first so it wins ties, then the pool, then the book
        candidates = [q for q in (path_quote, amm_quote, book_quote) if q is not None]
        candidates.sort(key=lambda q: q.amount_out, reverse=True)
        return candidates, pool

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, intent: TradeIntent) -> TradeResult:
        if intent.amount <= 0:
            return TradeResult(success=False, error="trade amount must be positive")
        if intent.side == TradeSide.BUY:
            trust_error = await self._ensure_trust_line(intent)
            if trust_error:
                return TradeResult(success=False, error=trust_error)

        candidates, pool = await self.quotes(intent)
        amm_quote = next((q for q in candidates if q.venue == Venue.AMM), None)
        if not candidates:
            LOGGER.info("no venue quoted %s %s, using the AMM directly", intent.side.value, intent.token.currency)
            return await self._execute_amm(intent, amm_quote)

        best = candidates[0]
        LOGGER.info(
            "%s %s %.6f via %s (expected out %.6f)",
            intent.side.value,
            intent.token.currency,
            intent.amount,
            best.venue.value,
            best.amount_out,
        )
        if best.venue == Venue.AMM:
            return await self._execute_amm(intent, best)
        result = await self._submit_quote(intent, best)
        if result.success:
            return result
        LOGGER.warning("%s execution failed (%s), falling back to AMM", best.venue.value, result.error)
        return await self._execute_amm(intent, amm_quote)

    async def _execute_amm(self, intent: TradeIntent, quote: Optional[VenueQuote]) -> TradeResult:
        if quote is None:
            return TradeResult(success=False, venue=Venue.AMM, error=f"no AMM pool for {intent.token.currency}")
        return await self._submit_quote(intent, quote)

    def build_transaction(self, intent: TradeIntent, quote: VenueQuote) -> Dict[str, Any]:
        min_out = quote.amount_out * (1 - intent.max_slippage_pct / 100)
        if quote.venue == Venue.BOOK:
            return {
                "TransactionType": "OfferCreate",
                "Account": self._signer.address,
                "TakerGets": Amount(intent.asset_in, quote.amount_in).to_ledger(),
                "TakerPays": Amount(intent.asset_out, min_out).to_ledger(),
                "Flags": TF_IMMEDIATE_OR_CANCEL | TF_SELL,
            }
        tx: Dict[str, Any] = {
            "TransactionType": "Payment",
            "Account": self._signer.address,
            "Destination": self._signer.address,
            "Amount": Amount(intent.asset_out, quote.amount_out).to_ledger(),
            "SendMax": Amount(intent.asset_in, intent.amount).to_ledger(),
            "DeliverMin": Amount(intent.asset_out, min_out).to_ledger(),
            "Flags": TF_PARTIAL_PAYMENT,
        }
        if quote.venue == Venue.PATH_FIND and quote.paths:
            tx["Paths"] = [list(path) for path in quote.paths]
        return tx

    async def _submit_quote(self, intent: TradeIntent, quote: VenueQuote) -> TradeResult:
        tx = self.build_transaction(intent, quote)
        try:
            submitted = await self._signer.submit(tx)
        except (LedgerError, ExecutionFailure) as exc:
            return TradeResult(success=False, venue=quote.venue, error=str(exc))
        if not submitted.success:
            return TradeResult(
                success=False,
                venue=quote.venue,
                settlement_ref=submitted.settlement_ref,
                error=submitted.error or submitted.engine_result or "submission failed",
            )
        amount_in, amount_out = self._realized(intent, quote, submitted)
        return TradeResult(
            success=True,
            venue=quote.venue,
            amount_in=amount_in,
            amount_out=amount_out,
            settlement_ref=submitted.settlement_ref,
        )

    def _realized(self, intent: TradeIntent, quote: VenueQuote, submitted: SubmitResult) -> Tuple[float, float]:
        meta = submitted.metadata
        if not meta or not transaction_succeeded(meta):
            return quote.amount_in, quote.amount_out
        delivered = delivered_amount(meta)
        changes = balance_changes(meta, self._signer.address)
        spent = -changes.get(intent.asset_in.key(), 0.0)
        if delivered is not None and delivered.asset == intent.asset_out:
            out = delivered.value
        else:
            out = changes.get(intent.asset_out.key(), 0.0)
        return (spent if spent > 0 else quote.amount_in), (out if out > 0 else quote.amount_out)

    async def _ensure_trust_line(self, intent: TradeIntent) -> Optional[str]:
        token = intent.token
        try:
            lines = await self._ledger.account_lines(self._signer.address)
        except LedgerError as exc:
            LOGGER.debug("account_lines failed: %s", exc)
            lines = []
        for line in lines:
            if line.get("currency") == token.currency and line.get("account") == token.issuer:
                return None
        tx = {
            "TransactionType": "TrustSet",
            "Account": self._signer.address,
            "LimitAmount": Amount(token, self._config.trust_line_limit).to_ledger(),
        }
        try:
            result = await self._signer.submit(tx)
        except (LedgerError, ExecutionFailure) as exc:
            return f"failed to create trust line: {exc}"
        if not result.success:
            return f"failed to create trust line: {result.error or result.engine_result}"
        LOGGER.info("created trust line for %s", token)
        return None
