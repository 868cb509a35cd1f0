import os

import pytest

from config import DEFAULT_DSN, Config
from models import ABORT, BODY, DECIMAL, MALAY, OVER_UNDER, SKIP_COMMISSION

ENV_VARS = (
    "SETTLEMENT_DATABASE_URL",
    "SETTLEMENT_PRICE_STYLE",
    "SETTLEMENT_HIERARCHY_FAILURE_POLICY",
    "SETTLEMENT_MAX_HIERARCHY_DEPTH",
    "SETTLEMENT_WORKERS",
    "SETTLEMENT_LOG_LEVEL",
    "SETTLEMENT_DECISIVE_HALF_LINE_MARKETS",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield tmp_path / ".env"
    # load_dotenv writes straight into os.environ
    for name in ENV_VARS:
        os.environ.pop(name, None)


def test_defaults_without_env(clean_env):
    config = Config.from_env(clean_env)

    assert config.database_url == DEFAULT_DSN
    assert config.price_style == MALAY
    assert config.hierarchy_failure_policy == ABORT
    assert config.max_hierarchy_depth == 10
    assert config.settlement_workers == 4
    assert config.log_level == "INFO"
    assert config.rules().decisive_half_line_markets == frozenset({OVER_UNDER})


def test_values_from_environment(clean_env, monkeypatch):
    monkeypatch.setenv("SETTLEMENT_DATABASE_URL", "dbname=other")
    monkeypatch.setenv("SETTLEMENT_PRICE_STYLE", "Decimal")
    monkeypatch.setenv("SETTLEMENT_HIERARCHY_FAILURE_POLICY", "skip_commission")
    monkeypatch.setenv("SETTLEMENT_MAX_HIERARCHY_DEPTH", "6")
    monkeypatch.setenv("SETTLEMENT_WORKERS", "2")
    monkeypatch.setenv("SETTLEMENT_LOG_LEVEL", "debug")

    config = Config.from_env(clean_env)

    assert config.database_url == "dbname=other"
    assert config.price_style == DECIMAL
    assert config.hierarchy_failure_policy == SKIP_COMMISSION
    assert config.max_hierarchy_depth == 6
    assert config.settlement_workers == 2
    assert config.log_level == "DEBUG"

    rules = config.rules()
    assert rules.price_style == DECIMAL
    assert rules.hierarchy_failure_policy == SKIP_COMMISSION
    assert rules.max_hierarchy_depth == 6


def test_dotenv_file_is_read(clean_env):
    clean_env.write_text("SETTLEMENT_WORKERS=3\nSETTLEMENT_PRICE_STYLE=decimal\n")

    config = Config.from_env(clean_env)

    assert config.settlement_workers == 3
    assert config.price_style == DECIMAL


@pytest.mark.parametrize(
    "name, value",
    [
        ("SETTLEMENT_PRICE_STYLE", "hongkong"),
        ("SETTLEMENT_HIERARCHY_FAILURE_POLICY", "ignore"),
        ("SETTLEMENT_MAX_HIERARCHY_DEPTH", "ten"),
        ("SETTLEMENT_WORKERS", "0"),
        ("SETTLEMENT_LOG_LEVEL", "LOUD"),
        ("SETTLEMENT_DECISIVE_HALF_LINE_MARKETS", "overUnder,corners"),
    ],
)
def test_invalid_values_are_rejected(clean_env, monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        Config.from_env(clean_env)


def test_decisive_half_line_markets_from_environment(clean_env, monkeypatch):
    monkeypatch.setenv("SETTLEMENT_DECISIVE_HALF_LINE_MARKETS", " body , overUnder ")
    assert Config.from_env(clean_env).rules().decisive_half_line_markets == frozenset({BODY, OVER_UNDER})

    # set but empty: every half line splits
    monkeypatch.setenv("SETTLEMENT_DECISIVE_HALF_LINE_MARKETS", "")
    assert Config.from_env(clean_env).rules().decisive_half_line_markets == frozenset()
