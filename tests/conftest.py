import os
from decimal import Decimal
from pathlib import Path

import pytest

from hierarchy import build_accounts
from models import (
    BODY,
    FULL_TIME,
    HDP_OU_FT_LG,
    MIX_PARLAY_2,
    MIX_PARLAY_3_TO_8,
    SINGLE,
    Account,
    BetLeg,
    BetSlip,
    CommissionSetting,
)
from settlement_engine import SettlementBook

MEMBER_START_CASH = 50000


def make_leg(
    match_id="M1",
    bet_category=BODY,
    market="home",
    period=FULL_TIME,
    line="-1",
    price="0.85",
    **kwargs,
) -> BetLeg:
    return BetLeg(
        match_id=match_id,
        bet_category=bet_category,
        market=market,
        period=period,
        line=line,
        price=Decimal(price),
        **kwargs,
    )


def make_hierarchy():
    """
    Admin(10%) -> Senior(6%) -> Master(6%) -> Agent(3%) -> member (no setting)
    parlay rates are set so both parlay columns differ from the singles column.
    """
    settings = {
        "S_ADMIN": CommissionSetting("S_ADMIN", {HDP_OU_FT_LG: Decimal("10"), MIX_PARLAY_2: Decimal("7"), MIX_PARLAY_3_TO_8: Decimal("15")}),
        "S_SENIOR": CommissionSetting("S_SENIOR", {HDP_OU_FT_LG: Decimal("6"), MIX_PARLAY_2: Decimal("5"), MIX_PARLAY_3_TO_8: Decimal("12")}),
        "S_MASTER": CommissionSetting("S_MASTER", {HDP_OU_FT_LG: Decimal("6"), MIX_PARLAY_2: Decimal("4"), MIX_PARLAY_3_TO_8: Decimal("10")}),
        "S_AGENT": CommissionSetting("S_AGENT", {HDP_OU_FT_LG: Decimal("3"), MIX_PARLAY_2: Decimal("2"), MIX_PARLAY_3_TO_8: Decimal("5")}),
    }
    accounts = build_accounts(
        [
            Account("admin", "Admin", None, "S_ADMIN"),
            Account("senior", "Senior", "admin", "S_SENIOR"),
            Account("master", "Master", "senior", "S_MASTER"),
            Account("agent", "Agent", "master", "S_AGENT"),
            Account("member", "User", "agent", None),
        ]
    )
    return accounts, settings


@pytest.fixture
def book():
    accounts, settings = make_hierarchy()
    book = SettlementBook(accounts=accounts, settings=settings)
    for account_id in accounts:
        book.ledger.open_account(account_id, MEMBER_START_CASH if account_id == "member" else 0)
    return book


def place(book, slip_id, legs, stake=10000, bet_type=SINGLE, account_id="member") -> BetSlip:
    """what the placement service does: debit the stake, store a pending slip."""
    book.ledger.debit(account_id, stake, slip_id)
    return book.add_slip(
        BetSlip(id=slip_id, account_id=account_id, bet_type=bet_type, stake=stake, legs=legs)
    )


# ---------
# postgres (opt-in)
# ---------

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "db" / "schema.sql"


@pytest.fixture
def pg_dsn(monkeypatch):
    """
    integration tests run against a throwaway database named by
    SETTLEMENT_TEST_DATABASE_URL; without it they are skipped.
    """
    dsn = os.getenv("SETTLEMENT_TEST_DATABASE_URL")
    if not dsn:
        pytest.skip("SETTLEMENT_TEST_DATABASE_URL not set")

    import psycopg
    from config import get_config

    monkeypatch.setenv("SETTLEMENT_DATABASE_URL", dsn)
    get_config.cache_clear()

    with psycopg.connect(dsn) as conn:
        with conn.cursor() as cur:
            cur.execute(SCHEMA_PATH.read_text())
            cur.execute(
                """
                TRUNCATE commission_transactions, balance_transactions, bet_legs, bet_slips,
                         match_results, balances, accounts, commission_settings
                RESTART IDENTITY CASCADE
                """
            )
        conn.commit()

    yield dsn
    get_config.cache_clear()
