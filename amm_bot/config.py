from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from dotenv import load_dotenv

from amm_bot.errors import ConfigurationError

DISCOVERY_MODES = ("dynamic", "curated", "legacy")
LIQUIDITY_STRATEGIES = ("one-sided", "balanced", "auto")
RISK_TIERS = ("conservative", "balanced", "aggressive")


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _as_csv(value: str | None) -> List[str]:
    if value is None or not value.strip():
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _require_positive(name: str, value: float) -> None:
    if value <= 0:
        raise ConfigurationError(f"{name} must be > 0, got {value}")


def _require_non_negative(name: str, value: float) -> None:
    if value < 0:
        raise ConfigurationError(f"{name} must be >= 0, got {value}")


def _require_choice(name: str, value: str, choices: tuple[str, ...]) -> None:
    if value not in choices:
        raise ConfigurationError(f"{name} must be one of {', '.join(choices)}, got {value!r}")


@dataclass(frozen=True)
class LedgerSettings:
    rpc_url: str = "https://s1.ripple.com:51234/"
    fallback_urls: List[str] = field(default_factory=list)
    timeout_seconds: float = 10.0
    max_attempts: int = 3
    retry_base_delay_seconds: float = 0.5
    wallet_address: str = ""

    def validate(self) -> None:
        if not self.rpc_url.strip():
            raise ConfigurationError("ledger rpc_url is empty")
        _require_positive("ledger timeout_seconds", self.timeout_seconds)
        _require_positive("ledger max_attempts", self.max_attempts)
        _require_non_negative("ledger retry_base_delay_seconds", self.retry_base_delay_seconds)


@dataclass(frozen=True)
class DiscoverySettings:
    mode: str = "dynamic"
    merge_curated: bool = True
    page_size: int = 200
    page_delay_seconds: float = 0.15
    max_pages: int = 50
    max_attempts: int = 5
    base_backoff_seconds: float = 1.0

    def validate(self) -> None:
        _require_choice("discovery mode", self.mode, DISCOVERY_MODES)
        _require_positive("discovery page_size", self.page_size)
        _require_non_negative("discovery page_delay_seconds", self.page_delay_seconds)
        _require_positive("discovery max_pages", self.max_pages)
        _require_positive("discovery max_attempts", self.max_attempts)
        _require_positive("discovery base_backoff_seconds", self.base_backoff_seconds)


@dataclass(frozen=True)
class ArbitrageSettings:
    enabled: bool = True
    min_profit_percent: float = 0.5
    max_trade_amount: float = 5.0
    check_interval_seconds: float = 5.0
    settlement_delay_seconds: float = 1.0
    max_slippage_percent: float = 2.0

    def validate(self) -> None:
        _require_positive("arbitrage min_profit_percent", self.min_profit_percent)
        _require_positive("arbitrage max_trade_amount", self.max_trade_amount)
        _require_positive("arbitrage check_interval_seconds", self.check_interval_seconds)
        _require_non_negative("arbitrage settlement_delay_seconds", self.settlement_delay_seconds)
        _require_positive("arbitrage max_slippage_percent", self.max_slippage_percent)


@dataclass(frozen=True)
class LiquiditySettings:
    enabled: bool = False
    strategy: str = "one-sided"
    min_tvl: float = 100.0
    max_price_impact: float = 0.05
    target_apr: float = 20.0
    max_positions: int = 5  # 0 = derive from balance

    def validate(self) -> None:
        _require_choice("liquidity strategy", self.strategy, LIQUIDITY_STRATEGIES)
        _require_non_negative("liquidity min_tvl", self.min_tvl)
        _require_positive("liquidity max_price_impact", self.max_price_impact)
        _require_positive("liquidity target_apr", self.target_apr)
        _require_non_negative("liquidity max_positions", self.max_positions)


@dataclass(frozen=True)
class RiskSettings:
    max_impermanent_loss: float = 10.0
    max_position_size: float = 50.0
    risk_tier: str = "balanced"
    base_reserve: float = 1.0
    per_trustline_reserve: float = 0.2
    safety_buffer: float = 3.0
    min_tradable_after: float = 1.0

    def validate(self) -> None:
        _require_positive("risk max_impermanent_loss", self.max_impermanent_loss)
        _require_positive("risk max_position_size", self.max_position_size)
        _require_choice("risk tier", self.risk_tier, RISK_TIERS)
        _require_non_negative("risk base_reserve", self.base_reserve)
        _require_non_negative("risk per_trustline_reserve", self.per_trustline_reserve)
        _require_non_negative("risk safety_buffer", self.safety_buffer)


@dataclass(frozen=True)
class BotConfiguration:
    """Read-only thresholds for one bot instance.

    Parameters
    ----------
    config_id:
        Stable id of the stored configuration. Two running instances may not
        share one.
    amm_enabled / sniper_enabled / copy_trading_enabled:
        Which strategy modules the instance requests at start.
    trader_addresses:
        Accounts to mirror; copy trading refuses to start without them.
    """

    config_id: str = "default"
    name: str = "amm-bot"
    user_id: str = "local"
    amm_enabled: bool = True
    sniper_enabled: bool = False
    copy_trading_enabled: bool = False
    trader_addresses: List[str] = field(default_factory=list)
    arbitrage: ArbitrageSettings = field(default_factory=ArbitrageSettings)
    liquidity: LiquiditySettings = field(default_factory=LiquiditySettings)
    risk: RiskSettings = field(default_factory=RiskSettings)

    @property
    def tick_interval_seconds(self) -> float:
        return self.arbitrage.check_interval_seconds

    def validate(self) -> None:
        if not self.config_id.strip():
            raise ConfigurationError("config_id is empty")
        if not self.user_id.strip():
            raise ConfigurationError("user_id is empty")
        self.arbitrage.validate()
        self.liquidity.validate()
        self.risk.validate()


@dataclass(frozen=True)
class AppSettings:
    log_level: str
    run_once: bool
    db_path: str
    dry_run: bool
    ledger: LedgerSettings
    discovery: DiscoverySettings
    bot: BotConfiguration

    def validate(self) -> None:
        self.ledger.validate()
        self.discovery.validate()
        self.bot.validate()


def load_settings() -> AppSettings:
    load_dotenv(override=False)

    db_path = os.getenv("AMM_DB_PATH", "amm_bot.sqlite3")
    if db_path:
        db_path = str(Path(db_path).expanduser())

    settings = AppSettings(
        log_level=os.getenv("AMM_LOG_LEVEL", "INFO"),
        run_once=_as_bool(os.getenv("AMM_RUN_ONCE"), default=False),
        db_path=db_path,
        dry_run=_as_bool(os.getenv("AMM_DRY_RUN"), default=True),
        ledger=LedgerSettings(
            rpc_url=os.getenv("XRPL_RPC_URL", "https://s1.ripple.com:51234/"),
            fallback_urls=_as_csv(os.getenv("XRPL_FALLBACK_URLS")),
            timeout_seconds=_as_float(os.getenv("XRPL_TIMEOUT_SECONDS"), 10.0),
            max_attempts=_as_int(os.getenv("XRPL_MAX_ATTEMPTS"), 3),
            retry_base_delay_seconds=_as_float(os.getenv("XRPL_RETRY_BASE_DELAY_SECONDS"), 0.5),
            wallet_address=os.getenv("XRPL_WALLET_ADDRESS", ""),
        ),
        discovery=DiscoverySettings(
            mode=os.getenv("AMM_DISCOVERY_MODE", "dynamic").strip().lower(),
            merge_curated=_as_bool(os.getenv("AMM_DISCOVERY_MERGE_CURATED"), True),
            page_size=_as_int(os.getenv("AMM_DISCOVERY_PAGE_SIZE"), 200),
            page_delay_seconds=_as_float(os.getenv("AMM_DISCOVERY_PAGE_DELAY_SECONDS"), 0.15),
            max_pages=_as_int(os.getenv("AMM_DISCOVERY_MAX_PAGES"), 50),
            max_attempts=_as_int(os.getenv("AMM_DISCOVERY_MAX_ATTEMPTS"), 5),
            base_backoff_seconds=_as_float(os.getenv("AMM_DISCOVERY_BASE_BACKOFF_SECONDS"), 1.0),
        ),
        bot=BotConfiguration(
            config_id=os.getenv("AMM_CONFIG_ID", "default"),
            name=os.getenv("AMM_BOT_NAME", "amm-bot"),
            user_id=os.getenv("AMM_USER_ID", "local"),
            amm_enabled=_as_bool(os.getenv("AMM_ENABLED"), True),
            sniper_enabled=_as_bool(os.getenv("AMM_SNIPER_ENABLED"), False),
            copy_trading_enabled=_as_bool(os.getenv("AMM_COPY_TRADING_ENABLED"), False),
            trader_addresses=_as_csv(os.getenv("AMM_COPY_TRADER_ADDRESSES")),
            arbitrage=ArbitrageSettings(
                enabled=_as_bool(os.getenv("AMM_ARBITRAGE_ENABLED"), True),
                min_profit_percent=_as_float(os.getenv("AMM_ARBITRAGE_MIN_PROFIT_PERCENT"), 0.5),
                max_trade_amount=_as_float(os.getenv("AMM_ARBITRAGE_MAX_TRADE_AMOUNT"), 5.0),
                check_interval_seconds=_as_float(os.getenv("AMM_CHECK_INTERVAL_SECONDS"), 5.0),
                settlement_delay_seconds=_as_float(os.getenv("AMM_SETTLEMENT_DELAY_SECONDS"), 1.0),
                max_slippage_percent=_as_float(os.getenv("AMM_MAX_SLIPPAGE_PERCENT"), 2.0),
            ),
            liquidity=LiquiditySettings(
                enabled=_as_bool(os.getenv("AMM_LIQUIDITY_ENABLED"), False),
                strategy=os.getenv("AMM_LIQUIDITY_STRATEGY", "one-sided").strip().lower(),
                min_tvl=_as_float(os.getenv("AMM_LIQUIDITY_MIN_TVL"), 100.0),
                max_price_impact=_as_float(os.getenv("AMM_LIQUIDITY_MAX_PRICE_IMPACT"), 0.05),
                target_apr=_as_float(os.getenv("AMM_LIQUIDITY_TARGET_APR"), 20.0),
                max_positions=_as_int(os.getenv("AMM_LIQUIDITY_MAX_POSITIONS"), 5),
            ),
            risk=RiskSettings(
                max_impermanent_loss=_as_float(os.getenv("AMM_RISK_MAX_IMPERMANENT_LOSS"), 10.0),
                max_position_size=_as_float(os.getenv("AMM_RISK_MAX_POSITION_SIZE"), 50.0),
                risk_tier=os.getenv("AMM_RISK_TIER", "balanced").strip().lower(),
                base_reserve=_as_float(os.getenv("AMM_RISK_BASE_RESERVE"), 1.0),
                per_trustline_reserve=_as_float(os.getenv("AMM_RISK_PER_TRUSTLINE_RESERVE"), 0.2),
                safety_buffer=_as_float(os.getenv("AMM_RISK_SAFETY_BUFFER"), 3.0),
                min_tradable_after=_as_float(os.getenv("AMM_RISK_MIN_TRADABLE_AFTER"), 1.0),
            ),
        ),
    )
    settings.validate()
    return settings
