from __future__ import annotations

import pytest

from amm_bot.config import (
    ArbitrageSettings,
    BotConfiguration,
    DiscoverySettings,
    LiquiditySettings,
    RiskSettings,
    load_settings,
)
from amm_bot.errors import ConfigurationError

_ENV_NAMES = (
    "AMM_LOG_LEVEL",
    "AMM_RUN_ONCE",
    "AMM_DB_PATH",
    "AMM_DRY_RUN",
    "XRPL_RPC_URL",
    "XRPL_FALLBACK_URLS",
    "XRPL_WALLET_ADDRESS",
    "AMM_DISCOVERY_MODE",
    "AMM_ENABLED",
    "AMM_SNIPER_ENABLED",
    "AMM_COPY_TRADING_ENABLED",
    "AMM_COPY_TRADER_ADDRESSES",
    "AMM_ARBITRAGE_ENABLED",
    "AMM_ARBITRAGE_MIN_PROFIT_PERCENT",
    "AMM_ARBITRAGE_MAX_TRADE_AMOUNT",
    "AMM_CHECK_INTERVAL_SECONDS",
    "AMM_LIQUIDITY_ENABLED",
    "AMM_LIQUIDITY_STRATEGY",
    "AMM_LIQUIDITY_TARGET_APR",
    "AMM_RISK_TIER",
    "AMM_RISK_MAX_IMPERMANENT_LOSS",
)


@pytest.fixture()
def clean_env(monkeypatch, tmp_path):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


def test_defaults(clean_env) -> None:
    settings = load_settings()

    assert settings.log_level == "INFO"
    assert settings.dry_run is True
    assert settings.run_once is False
    assert settings.discovery.mode == "dynamic"
    assert settings.bot.amm_enabled is True
    assert settings.bot.arbitrage.min_profit_percent == 0.5
    assert settings.bot.arbitrage.max_trade_amount == 5.0
    assert settings.bot.tick_interval_seconds == 5.0
    assert settings.bot.liquidity.enabled is False
    assert settings.bot.risk.max_impermanent_loss == 10.0


def test_env_overrides(clean_env) -> None:
    clean_env.setenv("AMM_LOG_LEVEL", "DEBUG")
    clean_env.setenv("AMM_DRY_RUN", "false")
    clean_env.setenv("XRPL_FALLBACK_URLS", "https://a.example, https://b.example,")
    clean_env.setenv("AMM_DISCOVERY_MODE", "Curated")
    clean_env.setenv("AMM_ARBITRAGE_MIN_PROFIT_PERCENT", "1.25")
    clean_env.setenv("AMM_CHECK_INTERVAL_SECONDS", "30")
    clean_env.setenv("AMM_LIQUIDITY_ENABLED", "yes")
    clean_env.setenv("AMM_LIQUIDITY_STRATEGY", "balanced")
    clean_env.setenv("AMM_COPY_TRADER_ADDRESSES", "rTraderOne,rTraderTwo")

    settings = load_settings()

    assert settings.log_level == "DEBUG"
    assert settings.dry_run is False
    assert settings.ledger.fallback_urls == ["https://a.example", "https://b.example"]
    assert settings.discovery.mode == "curated"
    assert settings.bot.arbitrage.min_profit_percent == 1.25
    assert settings.bot.tick_interval_seconds == 30.0
    assert settings.bot.liquidity.enabled is True
    assert settings.bot.liquidity.strategy == "balanced"
    assert settings.bot.trader_addresses == ["rTraderOne", "rTraderTwo"]


def test_unknown_discovery_mode_is_rejected(clean_env) -> None:
    clean_env.setenv("AMM_DISCOVERY_MODE", "everything")
    with pytest.raises(ConfigurationError):
        load_settings()


def test_non_positive_threshold_is_rejected(clean_env) -> None:
    clean_env.setenv("AMM_ARBITRAGE_MAX_TRADE_AMOUNT", "0")
    with pytest.raises(ConfigurationError):
        load_settings()


class TestValidate:
    def test_bot_configuration_defaults_are_valid(self) -> None:
        BotConfiguration().validate()
        DiscoverySettings().validate()

    def test_empty_config_id(self) -> None:
        with pytest.raises(ConfigurationError):
            BotConfiguration(config_id=" ").validate()

    def test_bad_risk_tier(self) -> None:
        with pytest.raises(ConfigurationError):
            BotConfiguration(risk=RiskSettings(risk_tier="yolo")).validate()

    def test_bad_liquidity_strategy(self) -> None:
        with pytest.raises(ConfigurationError):
            LiquiditySettings(strategy="two-sided").validate()

    def test_negative_min_profit(self) -> None:
        with pytest.raises(ConfigurationError):
            ArbitrageSettings(min_profit_percent=-1).validate()

    def test_configuration_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            RiskSettings(max_position_size=0).validate()
