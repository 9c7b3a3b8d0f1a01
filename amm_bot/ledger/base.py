from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from amm_bot.models import Asset


@dataclass(frozen=True)
class LedgerPage:
    """One page of a raw ledger-state scan."""

    entries: List[Dict[str, Any]]
    marker: Any = None


@dataclass(frozen=True)
class SubmitResult:
    success: bool
    settlement_ref: str | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    engine_result: str = ""
    error: str | None = None


class LedgerQueryService(ABC):
    """Read-only ledger access.

    Implementations raise :class:`amm_bot.errors.RateLimitedError` when the
    node asks us to slow down and :class:`amm_bot.errors.LedgerError` for
    every other failure.
    """

    @abstractmethod
    async def amm_info(self, asset1: Asset, asset2: Asset) -> Optional[Dict[str, Any]]:
        """Raw ``amm`` object for the pool, or None when no pool exists."""
        raise NotImplementedError

    @abstractmethod
    async def book_offers(
        self, taker_gets: Asset, taker_pays: Asset, limit: int = 20
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    async def path_find(
        self,
        source_account: str,
        destination_amount: Any,
        source_asset: Asset,
    ) -> List[Dict[str, Any]]:
        """Payment path alternatives (``ripple_path_find``)."""
        raise NotImplementedError

    @abstractmethod
    async def ledger_data(
        self, entry_type: str = "amm", marker: Any = None, limit: int = 200
    ) -> LedgerPage:
        raise NotImplementedError

    @abstractmethod
    async def account_balance(self, address: str) -> Optional[float]:
        """Native balance in whole units, or None when the account is unfunded."""
        raise NotImplementedError

    @abstractmethod
    async def account_lines(self, address: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def account_objects_count(self, address: str) -> int:
        """Number of owned ledger objects (for owner-reserve accounting)."""
        return len(await self.account_lines(address))

    async def aclose(self) -> None:
        return None


class Signer(ABC):
    """Signs and submits transactions for one account."""

    address: str

    @abstractmethod
    async def submit(self, tx: Dict[str, Any]) -> SubmitResult:
        raise NotImplementedError
