from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from amm_bot.errors import DataError

NATIVE_CURRENCY = "XRP"
DROPS_PER_NATIVE = 1_000_000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Assets and amounts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NativeAsset:
    currency: str = NATIVE_CURRENCY

    @property
    def issuer(self) -> None:
        return None

    @property
    def is_native(self) -> bool:
        return True

    def key(self) -> str:
        return self.currency

    def to_ledger(self) -> Dict[str, str]:
        return {"currency": self.currency}

    def __str__(self) -> str:
        return self.currency


@dataclass(frozen=True)
class IssuedAsset:
    currency: str
    issuer: str

    @property
    def is_native(self) -> bool:
        return False

    def key(self) -> str:
        return f"{self.currency}:{self.issuer}"

    def to_ledger(self) -> Dict[str, str]:
        return {"currency": self.currency, "issuer": self.issuer}

    def __str__(self) -> str:
        return f"{self.currency}.{self.issuer[:6]}"


Asset = Union[NativeAsset, IssuedAsset]

NATIVE = NativeAsset()


def parse_asset(raw: Any) -> Asset:
    """Normalize a ledger currency object (``{"currency": ..., "issuer": ...}``)."""
    if isinstance(raw, str):
        raw = {"currency": raw}
    if not isinstance(raw, dict):
        raise DataError(f"unsupported asset shape: {raw!r}")
    currency = str(raw.get("currency") or "").strip()
    issuer = str(raw.get("issuer") or "").strip()
    if not currency:
        raise DataError("asset without currency code")
    if currency == NATIVE_CURRENCY:
        if issuer:
            raise DataError(f"native currency code with issuer {issuer}")
        return NATIVE
    if not issuer:
        raise DataError(f"issued asset {currency} without issuer")
    return IssuedAsset(currency=currency, issuer=issuer)


def format_token_value(value: float) -> str:
    """Issued amounts carry at most 15 significant digits."""
    text = format(value, ".15g")
    return text if "e" not in text else format(value, ".15f").rstrip("0").rstrip(".")


@dataclass(frozen=True)
class Amount:
    asset: Asset
    value: float

    def to_ledger(self) -> Union[str, Dict[str, str]]:
        if self.asset.is_native:
            return str(int(math.floor(self.value * DROPS_PER_NATIVE)))
        return {**self.asset.to_ledger(), "value": format_token_value(self.value)}


def parse_amount(raw: Any) -> Amount:
    """Parse a ledger amount by its shape.

    Drops strings/ints are native, objects with a ``value`` are issued.
    """
    if isinstance(raw, bool):
        raise DataError(f"unsupported amount: {raw!r}")
    if isinstance(raw, (str, int)):
        try:
            drops = float(raw)
        except ValueError as exc:
            raise DataError(f"bad drops amount {raw!r}") from exc
        return Amount(asset=NATIVE, value=drops / DROPS_PER_NATIVE)
    if isinstance(raw, dict) and "value" in raw:
        asset = parse_asset(raw)
        try:
            value = float(raw["value"])
        except (TypeError, ValueError) as exc:
            raise DataError(f"bad issued amount {raw!r}") from exc
        return Amount(asset=asset, value=value)
    raise DataError(f"unsupported amount: {raw!r}")


# ---------------------------------------------------------------------------
# Pools
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PoolPair:
    asset1: Asset
    asset2: Asset

    @property
    def key(self) -> str:
        return "|".join(sorted((self.asset1.key(), self.asset2.key())))

    @property
    def label(self) -> str:
        return f"{self.asset1.currency}/{self.asset2.currency}"


@dataclass(frozen=True)
class PoolMetrics:
    pool_id: str
    asset1: Asset
    asset2: Asset
    reserve1: float
    reserve2: float
    trading_fee_bps: float
    tvl: float
    price_impact: float
    liquidity_depth: float
    lp_token_supply: float = 0.0
    lp_token_currency: str = ""
    amm_account: str = ""
    apr: Optional[float] = None
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def pair(self) -> PoolPair:
        return PoolPair(self.asset1, self.asset2)

    @property
    def label(self) -> str:
        return self.pair.label

    @property
    def fee_rate(self) -> float:
        return self.trading_fee_bps / 10_000

    @property
    def native_side(self) -> int | None:
        if self.asset1.is_native:
            return 1
        if self.asset2.is_native:
            return 2
        return None

    def contains(self, asset: Asset) -> bool:
        return asset == self.asset1 or asset == self.asset2

    def reserve_of(self, asset: Asset) -> float:
        if asset == self.asset1:
            return self.reserve1
        if asset == self.asset2:
            return self.reserve2
        raise ValueError(f"{asset} not in pool {self.label}")

    def other_asset(self, asset: Asset) -> Asset:
        if asset == self.asset1:
            return self.asset2
        if asset == self.asset2:
            return self.asset1
        raise ValueError(f"{asset} not in pool {self.label}")

    def with_apr(self, apr: float) -> "PoolMetrics":
        return replace(self, apr=apr)


# ---------------------------------------------------------------------------
# Arbitrage
# ---------------------------------------------------------------------------


class Route(str, Enum):
    POOL1_THEN_POOL2 = "pool1_then_pool2"
    POOL2_THEN_POOL1 = "pool2_then_pool1"


@dataclass(frozen=True)
class ArbitrageOpportunity:
    pool1: PoolMetrics
    pool2: PoolMetrics
    token: IssuedAsset
    price_difference: float  # percent
    profit_potential: float
    trade_amount: float
    route: Route

    @property
    def buy_pool(self) -> PoolMetrics:
        return self.pool1 if self.route == Route.POOL1_THEN_POOL2 else self.pool2

    @property
    def sell_pool(self) -> PoolMetrics:
        return self.pool2 if self.route == Route.POOL1_THEN_POOL2 else self.pool1


@dataclass(frozen=True)
class ArbitrageExecution:
    opportunity: ArbitrageOpportunity
    executed: bool
    actual_profit: float = 0.0
    settlement_refs: tuple[str, ...] = ()
    execution_time: float = 0.0
    error: str | None = None


@dataclass(frozen=True)
class ExecutionStatistics:
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    total_profit: float = 0.0
    average_profit: float = 0.0
    success_rate: float = 0.0  # percent
    average_execution_time: float = 0.0


# ---------------------------------------------------------------------------
# Trading venues
# ---------------------------------------------------------------------------


class TradeSide(str, Enum):
    BUY = "buy"  # counter asset -> token
    SELL = "sell"  # token -> counter asset


class Venue(str, Enum):
    PATH_FIND = "path_find"
    AMM = "amm"
    BOOK = "book"


@dataclass(frozen=True)
class TradeIntent:
    side: TradeSide
    token: IssuedAsset
    counter: Asset
    amount: float  # input amount: counter for buys, token for sells
    pool: PoolMetrics | None = None
    max_slippage_pct: float = 2.0

    @property
    def asset_in(self) -> Asset:
        return self.counter if self.side == TradeSide.BUY else self.token

    @property
    def asset_out(self) -> Asset:
        return self.token if self.side == TradeSide.BUY else self.counter


@dataclass(frozen=True)
class VenueQuote:
    venue: Venue
    amount_in: float
    amount_out: float
    rate: float
    paths: tuple = ()


@dataclass(frozen=True)
class TradeResult:
    success: bool
    venue: Venue | None = None
    amount_in: float = 0.0
    amount_out: float = 0.0
    settlement_ref: str | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Liquidity provision
# ---------------------------------------------------------------------------


class DepositStrategy(str, Enum):
    ONE_SIDED = "one-sided"
    BALANCED = "balanced"


@dataclass(frozen=True)
class InitialDeposit:
    asset1_amount: float
    asset2_amount: float
    total_value: float


@dataclass
class LPPosition:
    pool_id: str
    asset1: Asset
    asset2: Asset
    lp_tokens: float
    initial_deposit: InitialDeposit
    entry_price: float
    current_value: float
    strategy: DepositStrategy
    fees_earned: float = 0.0
    impermanent_loss: float = 0.0
    apr: float = 0.0
    entry_time: datetime = field(default_factory=_utcnow)
    lp_token_currency: str = ""
    amm_account: str = ""
    partial_exits: int = 0
    last_partial_exit_at: datetime | None = None

    @property
    def label(self) -> str:
        return f"{self.asset1.currency}/{self.asset2.currency}"


@dataclass(frozen=True)
class PositionValuation:
    current_value: float
    fees_earned: float
    impermanent_loss: float
    total_return: float  # percent
    apr: float


class ExitAction(str, Enum):
    HOLD = "hold"
    WITHDRAW_ALL = "withdraw_all"
    WITHDRAW_HALF = "withdraw_half"


@dataclass(frozen=True)
class ExitDecision:
    should_exit: bool
    action: ExitAction
    reason: str


@dataclass(frozen=True)
class DepositResult:
    success: bool
    lp_tokens: float = 0.0
    asset1_amount: float = 0.0
    asset2_amount: float = 0.0
    settlement_ref: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class WithdrawalResult:
    success: bool
    asset1_received: float = 0.0
    asset2_received: float = 0.0
    lp_tokens_redeemed: float = 0.0
    full: bool = False
    settlement_ref: str | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Bot instances
# ---------------------------------------------------------------------------


class BotStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class BotInstance:
    id: str
    config_id: str
    config: Any
    user_id: str
    status: BotStatus = BotStatus.STARTING
    started_at: datetime = field(default_factory=_utcnow)
    error: str | None = None
    engine: Any = None
    status_history: list[BotStatus] = field(default_factory=list)
    modules: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.status_history:
            self.status_history.append(self.status)
