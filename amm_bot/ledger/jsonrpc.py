from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from amm_bot.config import LedgerSettings
from amm_bot.errors import LedgerError, RateLimitedError
from amm_bot.framework.retry_policy import RetryPolicy, RetryPolicyConfig
from amm_bot.ledger.base import LedgerPage, LedgerQueryService
from amm_bot.models import DROPS_PER_NATIVE, Asset

LOGGER = logging.getLogger(__name__)

RATE_LIMIT_CODES = frozenset({"slowDown", "tooBusy"})
NOT_FOUND_CODES = frozenset({"actNotFound", "entryNotFound"})
NO_PATH_CODES = frozenset({"noPath", "noCurrent"})


def is_transport_error(exc: BaseException) -> bool:
    return isinstance(exc, httpx.TransportError)


class JsonRpcLedgerClient(LedgerQueryService):
    """rippled JSON-RPC over ``httpx``.

    Transport failures rotate to the next configured URL and are retried with
    the shared retry policy. Rate-limit answers are surfaced as
    :class:`RateLimitedError` without retrying here; callers decide whether a
    page is worth waiting for.
    """

    def __init__(
        self,
        settings: LedgerSettings,
        client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._settings = settings
        self._urls = [settings.rpc_url, *[u for u in settings.fallback_urls if u != settings.rpc_url]]
        self._url_index = 0
        self._client = client or httpx.AsyncClient(timeout=settings.timeout_seconds)
        self._retry = retry_policy or RetryPolicy(
            RetryPolicyConfig(
                max_attempts=settings.max_attempts,
                base_delay=settings.retry_base_delay_seconds,
            ),
            retryable=is_transport_error,
        )

    @property
    def active_url(self) -> str:
        return self._urls[self._url_index]

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def request(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        async def _once() -> Dict[str, Any]:
            url = self.active_url
            try:
                response = await self._client.post(url, json={"method": method, "params": [params]})
            except httpx.TransportError as exc:
                self._rotate(exc)
                raise
            return self._parse_response(method, response)

        return await self._retry.run(_once)

    def _rotate(self, error: Exception) -> None:
        if len(self._urls) <= 1:
            return
        old_url = self.active_url
        self._url_index = (self._url_index + 1) % len(self._urls)
        LOGGER.warning("ledger rpc failover: %s -> %s (error=%s)", old_url, self.active_url, error)

    @staticmethod
    def _parse_response(method: str, response: httpx.Response) -> Dict[str, Any]:
        if response.status_code == 429:
            retry_after: float | None = None
            header = response.headers.get("Retry-After")
            if header:
                try:
                    retry_after = float(header)
                except ValueError:
                    retry_after = None
            raise RateLimitedError(f"{method}: HTTP 429", retry_after=retry_after)
        if response.status_code == 503:
            raise RateLimitedError(f"{method}: HTTP 503")
        if response.status_code >= 400:
            raise LedgerError(f"{method}: HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise LedgerError(f"{method}: response is not JSON") from exc
        result = payload.get("result") if isinstance(payload, dict) else None
        if not isinstance(result, dict):
            raise LedgerError(f"{method}: response without result")
        if result.get("status") == "error" or "error" in result:
            code = str(result.get("error") or "unknown")
            message = str(result.get("error_message") or code)
            if code in RATE_LIMIT_CODES:
                raise RateLimitedError(f"{method}: {message}")
            raise LedgerError(f"{method}: {message}", code=code)
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def amm_info(self, asset1: Asset, asset2: Asset) -> Optional[Dict[str, Any]]:
        try:
            result = await self.request(
                "amm_info",
                {"asset": asset1.to_ledger(), "asset2": asset2.to_ledger(), "ledger_index": "validated"},
            )
        except LedgerError as exc:
            if exc.code in NOT_FOUND_CODES:
                return None
            raise
        amm = result.get("amm")
        return amm if isinstance(amm, dict) else None

    async def book_offers(self, taker_gets: Asset, taker_pays: Asset, limit: int = 20) -> List[Dict[str, Any]]:
        result = await self.request(
            "book_offers",
            {
                "taker_gets": taker_gets.to_ledger(),
                "taker_pays": taker_pays.to_ledger(),
                "limit": limit,
                "ledger_index": "validated",
            },
        )
        offers = result.get("offers")
        return offers if isinstance(offers, list) else []

    async def path_find(
        self,
        source_account: str,
        destination_amount: Any,
        source_asset: Asset,
    ) -> List[Dict[str, Any]]:
        try:
            result = await self.request(
                "ripple_path_find",
                {
                    "source_account": source_account,
                    "destination_account": source_account,
                    "destination_amount": destination_amount,
                    "source_currencies": [source_asset.to_ledger()],
                },
            )
        except LedgerError as exc:
            if exc.code in NO_PATH_CODES or exc.code in NOT_FOUND_CODES:
                return []
            raise
        alternatives = result.get("alternatives")
        return alternatives if isinstance(alternatives, list) else []

    async def ledger_data(self, entry_type: str = "amm", marker: Any = None, limit: int = 200) -> LedgerPage:
        params: Dict[str, Any] = {"type": entry_type, "limit": limit, "ledger_index": "validated"}
        if marker is not None:
            params["marker"] = marker
        result = await self.request("ledger_data", params)
        state = result.get("state")
        return LedgerPage(entries=state if isinstance(state, list) else [], marker=result.get("marker"))

    async def _account_data(self, address: str) -> Optional[Dict[str, Any]]:
        try:
            result = await self.request("account_info", {"account": address, "ledger_index": "validated"})
        except LedgerError as exc:
            if exc.code in NOT_FOUND_CODES:
                return None
            raise
        data = result.get("account_data")
        return data if isinstance(data, dict) else None

    async def account_balance(self, address: str) -> Optional[float]:
        data = await self._account_data(address)
        if data is None:
            return None
        return float(data.get("Balance", 0)) / DROPS_PER_NATIVE

    async def account_objects_count(self, address: str) -> int:
        data = await self._account_data(address)
        if data is None:
            return 0
        return int(data.get("OwnerCount", 0))

    async def account_lines(self, address: str) -> List[Dict[str, Any]]:
        lines: List[Dict[str, Any]] = []
        marker: Any = None
        for _ in range(20):
            params: Dict[str, Any] = {"account": address, "ledger_index": "validated", "limit": 400}
            if marker is not None:
                params["marker"] = marker
            try:
                result = await self.request("account_lines", params)
            except LedgerError as exc:
                if exc.code in NOT_FOUND_CODES:
                    return []
                raise
            page = result.get("lines")
            if isinstance(page, list):
                lines.extend(page)
            marker = result.get("marker")
            if not marker:
                break
        return lines
