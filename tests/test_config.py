"""
Tests for configuration loading, env overrides and validation.
"""

from hyperliquid.utils import constants

from yield_rebalancer.core.config import Config


def test_defaults_validate():
    config = Config()
    assert config.validate() == []
    assert config.execution.mode == "paper"
    assert config.hedge.api_url == constants.TESTNET_API_URL


def test_from_dict_merges_sections():
    config = Config.from_dict({
        "optimizer": {"risk_aversion": 5.0, "concentration_cap": 0.5},
        "hedge": {"network": "mainnet", "ticker": "BTC"},
    })

    assert config.optimizer.risk_aversion == 5.0
    assert config.optimizer.concentration_cap == 0.5
    assert config.optimizer.turnover_cap == 0.20
    assert config.hedge.ticker == "BTC"
    assert config.hedge.api_url == constants.MAINNET_API_URL


def test_from_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "scheduler:\n"
        "  interval_minutes: 15\n"
        "execution:\n"
        "  min_trade_usd: 25.0\n"
    )

    config = Config.from_yaml(str(path))

    assert config.scheduler.interval_minutes == 15
    assert config.execution.min_trade_usd == 25.0


def test_empty_yaml_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")

    assert Config.from_yaml(str(path)).validate() == []


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///other.db")
    monkeypatch.setenv("STRATEGY_VERSION", "mv-2")
    monkeypatch.setenv("HL_NETWORK", "mainnet")

    config = Config()

    assert config.ledger.database_url == "sqlite:///other.db"
    assert config.ledger.strategy_version == "mv-2"
    assert config.hedge.api_url == constants.MAINNET_API_URL


def test_live_mode_requires_credentials(monkeypatch):
    monkeypatch.setenv("EXECUTION_MODE", "LIVE")

    errors = Config().validate()

    assert any("HL_ADDRESS" in e for e in errors)
    assert any("HL_SECRET_KEY" in e for e in errors)


def test_invalid_optimizer_parameters():
    config = Config()
    config.optimizer.reserved_fraction = 1.0
    config.optimizer.concentration_cap = 0.0
    config.optimizer.risk_aversion = -1.0

    errors = config.validate()

    assert len(errors) == 3
