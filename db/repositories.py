from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from psycopg import Connection

from errors import HierarchyCycle, InsufficientFunds, MissingLedgerAccount, ValidationError
from models import (
    HDP_OU_FT_LG,
    HDP_OU_FT_SM,
    HDP_OU_HT_LG,
    HDP_OU_HT_SM,
    MIX_PARLAY_2,
    MIX_PARLAY_3_TO_8,
    MIX_PARLAY_9_TO_11,
    TX_BET,
    TX_WON,
    Account,
    BalanceRecord,
    BalanceTransaction,
    BetLeg,
    BetSlip,
    ChainLink,
    CommissionSetting,
    CommissionShare,
    FinalizedMatch,
    Score,
    SlipResult,
)

# commission setting field -> commission_settings column
COMMISSION_COLUMNS = {
    HDP_OU_FT_LG: "hdp_ou_ft_lg",
    HDP_OU_FT_SM: "hdp_ou_ft_sm",
    HDP_OU_HT_LG: "hdp_ou_ht_lg",
    HDP_OU_HT_SM: "hdp_ou_ht_sm",
    MIX_PARLAY_2: "mix_parlay_2",
    MIX_PARLAY_3_TO_8: "mix_parlay_3_to_8",
    MIX_PARLAY_9_TO_11: "mix_parlay_9_to_11",
}


# ---------
# match results
# ---------

def upsert_match_result(conn: Connection, match: FinalizedMatch) -> None:
    """
    store a finalized score for (match_id, period).
    a later batch for the same period overwrites it (score corrections).
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO match_results (match_id, period, home_score, away_score, cancelled)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (match_id, period)
            DO UPDATE SET
                home_score = EXCLUDED.home_score,
                away_score = EXCLUDED.away_score,
                cancelled = EXCLUDED.cancelled,
                updated_at = NOW()
            """,
            (match.match_id, match.period, match.home_score, match.away_score, match.cancelled),
        )


def get_match_results(conn: Connection, match_ids: Sequence[str]) -> Dict[Tuple[str, str], Score]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT match_id, period, home_score, away_score, cancelled
            FROM match_results
            WHERE match_id = ANY(%s)
            """,
            (list(match_ids),),
        )
        rows = cur.fetchall()
    return {(r[0], r[1]): Score(r[2], r[3], r[4]) for r in rows}


# ---------
# bet slips
# ---------

def insert_bet_slip(conn: Connection, slip: BetSlip) -> int:
    """
    persist a freshly placed slip and its legs (placement-side helper).
    returns the new slip id.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO bet_slips (account_id, bet_type, stake, status, conditions)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id
            """,
            (slip.account_id, slip.bet_type, slip.stake, slip.status, slip.conditions),
        )
        slip_id = cur.fetchone()[0]

        for position, leg in enumerate(slip.legs):
            cur.execute(
                """
                INSERT INTO bet_legs
                    (bet_slip_id, position, match_id, bet_category, market, period,
                     market_size, line, price)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    slip_id,
                    position,
                    leg.match_id,
                    leg.bet_category,
                    leg.market,
                    leg.period,
                    leg.market_size,
                    leg.line,
                    leg.price,
                ),
            )
    return slip_id


def get_pending_slip_ids(conn: Connection, match_ids: Sequence[str]) -> List[int]:
    """pending slips with at least one leg on any of the given matches."""
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT DISTINCT s.id
            FROM bet_slips s
            JOIN bet_legs l ON l.bet_slip_id = s.id
            WHERE s.status = 'pending'
              AND s.conditions = 'accepted'
              AND l.match_id = ANY(%s)
            ORDER BY s.id
            """,
            (list(match_ids),),
        )
        return [r[0] for r in cur.fetchall()]


def get_bet_slip(conn: Connection, slip_id: int) -> Optional[BetSlip]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT id, account_id, bet_type, stake, status, conditions,
                   payout, profit, created_at, settled_at
            FROM bet_slips
            WHERE id = %s
            """,
            (slip_id,),
        )
        row = cur.fetchone()
        if row is None:
            return None

        cur.execute(
            """
            SELECT match_id, bet_category, market, period, line, price,
                   market_size, outcome, payout_multiplier
            FROM bet_legs
            WHERE bet_slip_id = %s
            ORDER BY position
            """,
            (slip_id,),
        )
        leg_rows = cur.fetchall()

    legs = [
        BetLeg(
            match_id=r[0],
            bet_category=r[1],
            market=r[2],
            period=r[3],
            line=r[4],
            price=r[5],
            market_size=r[6],
            outcome=r[7],
            payout_multiplier=r[8],
        )
        for r in leg_rows
    ]
    return BetSlip(
        id=row[0],
        account_id=row[1],
        bet_type=row[2],
        stake=row[3],
        legs=legs,
        status=row[4],
        conditions=row[5],
        payout=row[6],
        profit=row[7],
        created_at=row[8],
        settled_at=row[9],
    )


def claim_slip(conn: Connection, slip_id: int, result: SlipResult, settled_at: datetime) -> bool:
    """
    write the terminal status only if the slip is still pending.
    the WHERE clause is the idempotency gate: a second pass (or a racing
    worker) updates zero rows and gets False. the row stays locked until
    the surrounding transaction ends.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE bet_slips
            SET status = %s,
                payout = %s,
                profit = %s,
                settled_at = %s
            WHERE id = %s
              AND status = 'pending'
              AND conditions = 'accepted'
            """,
            (result.status, result.payout, result.profit, settled_at, slip_id),
        )
        return cur.rowcount == 1


def update_leg_outcomes(conn: Connection, slip_id: int, legs: Sequence[BetLeg]) -> None:
    with conn.cursor() as cur:
        for position, leg in enumerate(legs):
            cur.execute(
                """
                UPDATE bet_legs
                SET outcome = %s, payout_multiplier = %s
                WHERE bet_slip_id = %s AND position = %s AND outcome = 'unsettled'
                """,
                (leg.outcome, leg.payout_multiplier, slip_id, position),
            )
            if cur.rowcount != 1:
                raise ValueError(f"Leg {position} of slip {slip_id} was already settled")


def mark_slip_paidout(conn: Connection, slip_id: int) -> None:
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE bet_slips SET conditions = 'paidout' WHERE id = %s AND conditions = 'accepted'",
            (slip_id,),
        )
        if cur.rowcount != 1:
            raise ValueError(f"Failed to mark slip {slip_id} as paid out")


# ---------
# ledger
# ---------

def _check_amount(amount) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise ValidationError(f"Ledger amounts must be integers, got {amount!r}")


def _balance_exists(conn: Connection, account_id: int) -> Optional[int]:
    with conn.cursor() as cur:
        cur.execute("SELECT cash_balance FROM balances WHERE account_id = %s", (account_id,))
        row = cur.fetchone()
        return None if row is None else row[0]


def insert_balance_transaction(
    conn: Connection,
    account_id: int,
    bet_slip_id: Optional[int],
    tx_type: str,
    amount: int,
    balance_before: int,
    balance_after: int,
) -> BalanceTransaction:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO balance_transactions
                (account_id, bet_slip_id, type, amount, balance_before, balance_after)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING created_at
            """,
            (account_id, bet_slip_id, tx_type, amount, balance_before, balance_after),
        )
        created_at = cur.fetchone()[0]
    return BalanceTransaction(
        account_id=account_id,
        bet_slip_id=bet_slip_id,
        type=tx_type,
        amount=amount,
        balance_before=balance_before,
        balance_after=balance_after,
        created_at=created_at,
    )


def ledger_debit(
    conn: Connection,
    account_id: int,
    amount: int,
    bet_slip_id: Optional[int] = None,
    tx_type: str = TX_BET,
) -> BalanceTransaction:
    """
    atomic decrement guarded by cash_balance >= amount.
    before/after come back from the same UPDATE, not from a separate read.
    """
    _check_amount(amount)
    if amount <= 0:
        raise ValidationError(f"Debit amount must be positive, got {amount}")

    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE balances
            SET cash_balance = cash_balance - %s,
                account_balance = account_balance - %s,
                updated_at = NOW()
            WHERE account_id = %s
              AND cash_balance >= %s
            RETURNING cash_balance + %s, cash_balance
            """,
            (amount, amount, account_id, amount, amount),
        )
        row = cur.fetchone()

    if row is None:
        available = _balance_exists(conn, account_id)
        if available is None:
            raise MissingLedgerAccount(account_id)
        raise InsufficientFunds(account_id, amount, available)

    before, after = row
    return insert_balance_transaction(conn, account_id, bet_slip_id, tx_type, -amount, before, after)


def ledger_credit(
    conn: Connection,
    account_id: int,
    amount: int,
    bet_slip_id: Optional[int] = None,
    tx_type: str = TX_WON,
) -> Optional[BalanceTransaction]:
    """atomic increment of both balances; no-op for amount <= 0."""
    _check_amount(amount)
    if amount <= 0:
        return None

    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE balances
            SET cash_balance = cash_balance + %s,
                account_balance = account_balance + %s,
                updated_at = NOW()
            WHERE account_id = %s
            RETURNING cash_balance - %s, cash_balance
            """,
            (amount, amount, account_id, amount),
        )
        row = cur.fetchone()

    if row is None:
        raise MissingLedgerAccount(account_id)

    before, after = row
    return insert_balance_transaction(conn, account_id, bet_slip_id, tx_type, amount, before, after)


def get_balance(conn: Connection, account_id: int) -> BalanceRecord:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT cash_balance, account_balance FROM balances WHERE account_id = %s",
            (account_id,),
        )
        row = cur.fetchone()
    if row is None:
        raise MissingLedgerAccount(account_id)
    return BalanceRecord(cash_balance=row[0], account_balance=row[1])


# ---------
# commissions
# ---------

def insert_commission_transaction(conn: Connection, slip: BetSlip, share: CommissionShare) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO commission_transactions
                (account_id, bet_slip_id, commission_rate, amount, original_stake, bet_category)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (share.account_id, slip.id, share.rate, share.amount, slip.stake, share.bet_category),
        )


def get_commission_transactions(conn: Connection, slip_id: int) -> List[Dict[str, Any]]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT account_id, commission_rate, amount, original_stake, bet_category, created_at
            FROM commission_transactions
            WHERE bet_slip_id = %s
            ORDER BY id
            """,
            (slip_id,),
        )
        rows = cur.fetchall()
    return [
        {
            "account_id": r[0],
            "commission_rate": r[1],
            "amount": r[2],
            "original_stake": r[3],
            "bet_category": r[4],
            "created_at": r[5],
        }
        for r in rows
    ]


# ---------
# hierarchy
# ---------

def get_account_db(conn: Connection, account_id: int) -> Account:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT id, role, upline_id, commission_setting_id FROM accounts WHERE id = %s",
            (account_id,),
        )
        row = cur.fetchone()
    if row is None:
        raise HierarchyCycle(f"Account {account_id} not found in hierarchy")
    return Account(id=row[0], role=row[1], upline_id=row[2], commission_setting_id=row[3])


def get_commission_setting_db(conn: Connection, setting_id: Optional[int]) -> Optional[CommissionSetting]:
    if setting_id is None:
        return None

    fields = list(COMMISSION_COLUMNS)
    columns = ", ".join(COMMISSION_COLUMNS[f] for f in fields)
    with conn.cursor() as cur:
        cur.execute(
            f"SELECT {columns} FROM commission_settings WHERE id = %s",
            (setting_id,),
        )
        row = cur.fetchone()
    if row is None:
        return None
    return CommissionSetting(id=setting_id, rates={f: Decimal(v) for f, v in zip(fields, row)})


def get_upline_chain_db(conn: Connection, account_id: int, max_depth: int = 10) -> List[ChainLink]:
    """
    DB-backed chain lookup: follow upline_id from the account to the top.
    returns [immediate upline, ..., top] with each level's commission setting.

    same guards as the in-memory walk: no revisits, at most max_depth hops,
    every upline id must exist.
    """
    current = get_account_db(conn, account_id)
    seen = {current.id}
    chain: List[ChainLink] = []

    while current.upline_id is not None:
        upline_id = current.upline_id
        if upline_id in seen:
            raise HierarchyCycle(f"Upline chain of {account_id} loops back to {upline_id}.")
        if len(chain) >= max_depth:
            raise HierarchyCycle(f"Upline chain of {account_id} exceeds {max_depth} levels.")

        try:
            upline = get_account_db(conn, upline_id)
        except HierarchyCycle:
            raise HierarchyCycle(f"Upline {upline_id} of account {current.id} does not exist.")

        seen.add(upline.id)
        chain.append(
            ChainLink(
                account_id=upline.id,
                role=upline.role,
                setting=get_commission_setting_db(conn, upline.commission_setting_id),
            )
        )
        current = upline

    return chain
