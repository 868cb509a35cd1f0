import threading

import pytest

from db.db import get_conn
from db.repositories import (
    get_balance,
    get_bet_slip,
    get_commission_transactions,
    get_upline_chain_db,
    insert_bet_slip,
    ledger_credit,
    ledger_debit,
)
from errors import HierarchyCycle, InsufficientFunds, MissingLedgerAccount
from models import (
    DUPLICATE,
    FAILED,
    PAIDOUT,
    PARLAY,
    PENDING,
    REJECTED,
    SETTLED,
    SINGLE,
    WON,
    BetSlip,
    FinalizedMatch,
)
from settlement_engine_db import record_results_db, settle_batch_db, settle_slip_db
from tests.conftest import MEMBER_START_CASH, make_leg


def _seed_hierarchy(conn):
    """
    Admin(10%) -> Senior(6%) -> Master(6%) -> Agent(3%) -> member (no setting)
    returns {username: account id}.
    """
    ids = {}
    with conn.cursor() as cur:
        upline = None
        for username, role, rate in [
            ("admin", "Admin", 10),
            ("senior", "Senior", 6),
            ("master", "Master", 6),
            ("agent", "Agent", 3),
        ]:
            cur.execute(
                "INSERT INTO commission_settings (hdp_ou_ft_lg) VALUES (%s) RETURNING id",
                (rate,),
            )
            setting_id = cur.fetchone()[0]
            cur.execute(
                """
                INSERT INTO accounts (username, role, upline_id, commission_setting_id)
                VALUES (%s, %s, %s, %s) RETURNING id
                """,
                (username, role, upline, setting_id),
            )
            upline = cur.fetchone()[0]
            ids[username] = upline

        cur.execute(
            "INSERT INTO accounts (username, role, upline_id) VALUES ('member', 'User', %s) RETURNING id",
            (upline,),
        )
        ids["member"] = cur.fetchone()[0]

        for username, account_id in ids.items():
            cash = MEMBER_START_CASH if username == "member" else 0
            cur.execute(
                "INSERT INTO balances (account_id, cash_balance, account_balance) VALUES (%s, %s, %s)",
                (account_id, cash, cash),
            )
    return ids


def _place(conn, account_id, legs, stake=10000, bet_type=SINGLE):
    slip_id = insert_bet_slip(
        conn, BetSlip(id=None, account_id=account_id, bet_type=bet_type, stake=stake, legs=legs)
    )
    ledger_debit(conn, account_id, stake, slip_id)
    return slip_id


def test_db_single_settles_once(pg_dsn):
    with get_conn() as conn:
        ids = _seed_hierarchy(conn)
        slip_id = _place(conn, ids["member"], [make_leg(match_id="DB_M1")])
        conn.commit()

    report = settle_batch_db([FinalizedMatch("DB_M1", "full-time", 2, 0)], workers=2)
    assert report.settled == 1
    assert report.outcomes[0].payout == 18500

    with get_conn() as conn:
        assert get_balance(conn, ids["member"]).cash_balance == 58500
        assert get_balance(conn, ids["agent"]).cash_balance == 300
        assert get_balance(conn, ids["master"]).cash_balance == 300
        assert get_balance(conn, ids["senior"]).cash_balance == 0
        assert get_balance(conn, ids["admin"]).cash_balance == 400

        slip = get_bet_slip(conn, slip_id)
        assert slip.status == WON
        assert slip.conditions == PAIDOUT
        assert slip.legs[0].outcome == WON

        commissions = get_commission_transactions(conn, slip_id)
        assert sorted(c["amount"] for c in commissions) == [300, 300, 400]

    # second pass: nothing pending, direct retry is a duplicate
    assert settle_batch_db([FinalizedMatch("DB_M1", "full-time", 2, 0)]).settled == 0
    assert settle_slip_db(slip_id).outcome == DUPLICATE

    with get_conn() as conn:
        assert get_balance(conn, ids["member"]).cash_balance == 58500
        assert len(get_commission_transactions(conn, slip_id)) == 3


def test_db_parlay_spans_batches(pg_dsn):
    with get_conn() as conn:
        ids = _seed_hierarchy(conn)
        slip_id = _place(
            conn,
            ids["member"],
            [make_leg(match_id="DB_A", price="0.9"), make_leg(match_id="DB_B", line="0", price="0.8")],
            bet_type=PARLAY,
        )
        conn.commit()

    first = settle_batch_db([FinalizedMatch("DB_A", "full-time", 2, 0)])
    assert first.awaiting == 1

    second = settle_batch_db([FinalizedMatch("DB_B", "full-time", 1, 0)])
    assert second.settled == 1

    with get_conn() as conn:
        slip = get_bet_slip(conn, slip_id)
        assert slip.status == WON
        assert slip.payout == 34200


def test_db_missing_balance_row_rolls_back(pg_dsn):
    with get_conn() as conn:
        ids = _seed_hierarchy(conn)
        slip_id = _place(conn, ids["member"], [make_leg(match_id="DB_M2")])
        with conn.cursor() as cur:
            cur.execute("DELETE FROM balances WHERE account_id = %s", (ids["admin"],))
        conn.commit()

    report = settle_batch_db([FinalizedMatch("DB_M2", "full-time", 2, 0)])
    assert report.failed == 1

    with get_conn() as conn:
        assert get_balance(conn, ids["member"]).cash_balance == MEMBER_START_CASH - 10000
        assert get_balance(conn, ids["agent"]).cash_balance == 0
        assert get_bet_slip(conn, slip_id).status == PENDING
        assert get_commission_transactions(conn, slip_id) == []


def test_db_ledger_guards(pg_dsn):
    with get_conn() as conn:
        ids = _seed_hierarchy(conn)

        with pytest.raises(InsufficientFunds):
            ledger_debit(conn, ids["agent"], 1)
        with pytest.raises(MissingLedgerAccount):
            ledger_credit(conn, 999999, 10)
        assert ledger_credit(conn, ids["agent"], 0) is None

        entry = ledger_credit(conn, ids["agent"], 250)
        assert (entry.balance_before, entry.balance_after) == (0, 250)
        conn.rollback()


def test_db_chain_cycle_is_detected(pg_dsn):
    with get_conn() as conn:
        ids = _seed_hierarchy(conn)
        with conn.cursor() as cur:
            cur.execute("UPDATE accounts SET upline_id = %s WHERE id = %s", (ids["agent"], ids["admin"]))

        with pytest.raises(HierarchyCycle):
            get_upline_chain_db(conn, ids["member"])
        conn.rollback()


def test_db_cycle_aborts_settlement(pg_dsn):
    with get_conn() as conn:
        ids = _seed_hierarchy(conn)
        slip_id = _place(conn, ids["member"], [make_leg(match_id="DB_M3")])
        with conn.cursor() as cur:
            cur.execute("UPDATE accounts SET upline_id = %s WHERE id = %s", (ids["agent"], ids["admin"]))
        conn.commit()

    report = settle_batch_db([FinalizedMatch("DB_M3", "full-time", 2, 0)])
    assert report.outcomes[0].outcome == FAILED

    with get_conn() as conn:
        assert get_bet_slip(conn, slip_id).status == PENDING
        assert get_balance(conn, ids["member"]).cash_balance == MEMBER_START_CASH - 10000


def test_db_concurrent_passes_pay_once(pg_dsn):
    """
    several workers settle the same slip at once, each on its own
    connection: the conditional claim lets exactly one through.
    """
    with get_conn() as conn:
        ids = _seed_hierarchy(conn)
        slip_id = _place(conn, ids["member"], [make_leg(match_id="DB_M4")])
        conn.commit()
    record_results_db([FinalizedMatch("DB_M4", "full-time", 2, 0)])

    workers = 4
    barrier = threading.Barrier(workers)
    outcomes = []
    outcomes_lock = threading.Lock()

    def worker():
        barrier.wait()
        result = settle_slip_db(slip_id)
        with outcomes_lock:
            outcomes.append(result.outcome)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count(SETTLED) == 1
    assert outcomes.count(DUPLICATE) == workers - 1

    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT COUNT(*) FROM balance_transactions WHERE bet_slip_id = %s AND type = 'Won'",
                (slip_id,),
            )
            assert cur.fetchone()[0] == 1
        assert len(get_commission_transactions(conn, slip_id)) == 3
        assert get_balance(conn, ids["member"]).cash_balance == 58500
        assert get_balance(conn, ids["admin"]).cash_balance == 400


def test_db_rejected_slip_is_not_selected(pg_dsn):
    with get_conn() as conn:
        ids = _seed_hierarchy(conn)
        slip_id = _place(conn, ids["member"], [make_leg(match_id="DB_M5")])
        with conn.cursor() as cur:
            cur.execute("UPDATE bet_slips SET conditions = %s WHERE id = %s", (REJECTED, slip_id))
        conn.commit()

    report = settle_batch_db([FinalizedMatch("DB_M5", "full-time", 2, 0)])

    assert report.outcomes == []
    with get_conn() as conn:
        assert get_bet_slip(conn, slip_id).status == PENDING
