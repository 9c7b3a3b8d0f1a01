"""Candidate pool enumeration.

Three modes:

* ``curated`` - the maintained list of native/token pairs below;
* ``dynamic`` - a paginated ``ledger_data`` scan of every AMM entry, paced
  between pages, with rate-limited pages retried under the shared
  :class:`RetryPolicy`. When a page exhausts its retries the scan stops and
  the pairs collected so far are returned;
* ``legacy`` - one ``amm_info`` probe per curated token, for nodes that do
  not serve full-ledger scans.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from amm_bot.config import DiscoverySettings
from amm_bot.errors import DataError, LedgerError, RateLimitedError
from amm_bot.framework.retry_policy import RetryPolicy, RetryPolicyConfig, is_rate_limited
from amm_bot.ledger.base import LedgerPage, LedgerQueryService
from amm_bot.models import NATIVE, IssuedAsset, PoolPair, parse_asset

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class KnownToken:
    currency: str
    issuer: str
    name: str

    @property
    def asset(self) -> IssuedAsset:
        return IssuedAsset(self.currency, self.issuer)


# Verify issuers before trading against a new entry.
KNOWN_TOKENS: tuple[KnownToken, ...] = (
    KnownToken("USD", "rhub8VRN55s94qWKDv6jmDy1pUykJzF3wq", "Gatehub USD"),
    KnownToken("EUR", "rhub8VRN55s94qWKDv6jmDy1pUykJzF3wq", "Gatehub EUR"),
    KnownToken("BTC", "rchGBxcD1A1C2tdxF6papQYZ8kjRKMYcL", "Bitstamp BTC"),
    KnownToken("ETH", "rcA8X3TVMST1n3CJeAdGk1RdRCHii7N2h", "Bitstamp ETH"),
    KnownToken("USD", "rvYAfWj5gh67oV6fW32ZzP3Aw4Eubs59B", "Bitstamp USD"),
    KnownToken("USDC", "rcEGREd8NmkKRE8GE424sksyt1tJVFZwu", "USD Coin"),
    KnownToken("CSC", "rCSCManTZ8ME9EoLrSHHYKW8PPwWMgkwr", "CasinoCoin"),
    KnownToken("ELS", "rHXuEaRYnnJHbDeuBH5w8yPh5uwNVh5zAg", "XRPL ELS"),
    KnownToken("SOLO", "rsoLo2S1kiGeCcn6hCUXVrCpGMWLrRrLZz", "Sologenic"),
    KnownToken("XRdoge", "rLqUC2eCPohYvJCEBJ77eCCqVL2uEiczjA", "XRdoge"),
    KnownToken("CORE", "rcoreNywaoz2ZCQ8Lg2EbSLnGuRBmun6D", "Coreum"),
    KnownToken("BNB", "rJHygWcTLVpSXkowott6kzgZU6viQSVYM1", "Binance Coin"),
    KnownToken("ADA", "rJHygWcTLVpSXkowott6kzgZU6viQSVYM1", "Cardano"),
    KnownToken("SOL", "rJHygWcTLVpSXkowott6kzgZU6viQSVYM1", "Solana"),
    KnownToken("DOGE", "rLHzPsX6oXkzU9rFfyge86nBGfcj3RaA7b", "Dogecoin"),
    KnownToken("XRPaynet", "rPayNetWdUpzqKMvJP7jwddbPvWMERfaKb", "XRPaynet"),
    KnownToken("Equilibrium", "rEqtEHKbinqm18wQSQGstmqg9SFpUELasT", "Equilibrium"),
    KnownToken("XRPH", "rEa5M1xHD39cM2fBASZaDB3fy6zWvDHCLp", "XRPH"),
    KnownToken("XRPunk", "rEqtEHKbinqm18wQSQGstmqg9SFpUELasT", "XRPunk"),
    KnownToken("Aesthetes", "rHZwvHEs56GCmHCxi6qxLhRRWNKiDqzx8g", "Aesthetes"),
)


def curated_pairs() -> List[PoolPair]:
    return [PoolPair(NATIVE, token.asset) for token in KNOWN_TOKENS]


def normalize_entry(entry: Dict[str, Any]) -> PoolPair:
    """Pool pair of one raw ``AMM`` ledger entry."""
    if not isinstance(entry, dict):
        raise DataError("ledger entry is not a mapping")
    if "Asset" not in entry or "Asset2" not in entry:
        raise DataError(f"AMM entry {entry.get('index', '?')} without assets")
    first = parse_asset(entry["Asset"])
    second = parse_asset(entry["Asset2"])
    if first == second:
        raise DataError(f"AMM entry pairs {first} with itself")
    return PoolPair(first, second)


def merge_pairs(*groups: List[PoolPair]) -> List[PoolPair]:
    seen: set[str] = set()
    merged: List[PoolPair] = []
    for group in groups:
        for pair in group:
            if pair.key in seen:
                continue
            seen.add(pair.key)
            merged.append(pair)
    return merged


@dataclass
class ScanResult:
    pairs: List[PoolPair] = field(default_factory=list)
    pages: int = 0
    dropped_entries: int = 0
    complete: bool = False
    retry_delays: List[float] = field(default_factory=list)
    error: Optional[str] = None


class PoolDiscovery:
    def __init__(
        self,
        ledger: LedgerQueryService,
        settings: DiscoverySettings | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._ledger = ledger
        self._settings = settings or DiscoverySettings()
        self._sleep = sleep or asyncio.sleep
        self.retry_policy = RetryPolicy(
            RetryPolicyConfig(
                max_attempts=self._settings.max_attempts,
                base_delay=self._settings.base_backoff_seconds,
                multiplier=2.0,
            ),
            retryable=is_rate_limited,
            sleep=self._sleep,
        )
        self.last_scan: Optional[ScanResult] = None

    async def discover(self, mode: str | None = None) -> List[PoolPair]:
        mode = mode or self._settings.mode
        if mode == "curated":
            return curated_pairs()
        if mode == "legacy":
            return await self.probe_known_tokens()
        if mode != "dynamic":
            raise ValueError(f"unknown discovery mode {mode!r}")
        result = await self.scan_ledger()
        if self._settings.merge_curated:
            return merge_pairs(curated_pairs(), result.pairs)
        return result.pairs

    async def scan_ledger(self) -> ScanResult:
        result = ScanResult()
        seen: set[str] = set()
        marker: Any = None

        def _on_retry(attempt: int, exc: BaseException, delay: float) -> None:
            result.retry_delays.append(delay)
            LOGGER.info("ledger_data rate limited (attempt %d), backing off %.2fs", attempt, delay)

        while result.pages < self._settings.max_pages:
            if result.pages:
                await self._sleep(self._settings.page_delay_seconds)
            try:
                page = await self.retry_policy.run(
                    lambda: self._fetch_page(marker),
                    on_retry=_on_retry,
                )
            except RateLimitedError as exc:
                result.error = f"rate limited: {exc}"
                LOGGER.warning(
                    "discovery stopped after %d pages (%d pairs): %s", result.pages, len(result.pairs), exc
                )
                break
            except LedgerError as exc:
                result.error = str(exc)
                LOGGER.warning("discovery page failed: %s", exc)
                break
            result.pages += 1
            for entry in page.entries:
                try:
                    pair = normalize_entry(entry)
                except DataError as exc:
                    result.dropped_entries += 1
                    LOGGER.debug("dropping AMM entry: %s", exc)
                    continue
                if pair.key in seen:
                    continue
                seen.add(pair.key)
                result.pairs.append(pair)
            marker = page.marker
            if not marker:
                result.complete = True
                break

        LOGGER.info(
            "ledger scan: %d pairs over %d pages (complete=%s)", len(result.pairs), result.pages, result.complete
        )
        self.last_scan = result
        return result

    async def _fetch_page(self, marker: Any) -> LedgerPage:
        return await self._ledger.ledger_data("amm", marker=marker, limit=self._settings.page_size)

    async def probe_known_tokens(self) -> List[PoolPair]:
        found: List[PoolPair] = []
        for index, token in enumerate(KNOWN_TOKENS):
            if index:
                await self._sleep(self._settings.page_delay_seconds)
            try:
                raw = await self._ledger.amm_info(NATIVE, token.asset)
            except LedgerError as exc:
                LOGGER.debug("probe %s failed: %s", token.name, exc)
                continue
            if raw is not None:
                found.append(PoolPair(NATIVE, token.asset))
        LOGGER.info("legacy probe: %d/%d known tokens have pools", len(found), len(KNOWN_TOKENS))
        return found
