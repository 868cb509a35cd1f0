import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from psycopg import Connection

from commission_engine import commission_field, compute_commissions
from errors import HierarchyCycle, SettlementError
from leg_engine import evaluate_leg
from models import (
    AWAITING,
    CANCELLED,
    DUPLICATE,
    FAILED,
    PENDING,
    PUSH,
    SETTLED,
    SKIP_COMMISSION,
    TX_COMMISSION,
    TX_REFUND,
    TX_WON,
    BatchReport,
    BetSlip,
    CommissionShare,
    FinalizedMatch,
    SettlementRules,
    SlipOutcome,
)
from slip_engine import aggregate_slip
from db.db import get_conn
from db.repositories import (
    claim_slip,
    get_account_db,
    get_bet_slip,
    get_commission_setting_db,
    get_match_results,
    get_pending_slip_ids,
    get_upline_chain_db,
    insert_commission_transaction,
    ledger_credit,
    mark_slip_paidout,
    update_leg_outcomes,
    upsert_match_result,
)

logger = logging.getLogger(__name__)


def record_results_db(matches: Sequence[FinalizedMatch]) -> List[str]:
    """persist the batch's finalized scores in one transaction."""
    match_ids: List[str] = []
    with get_conn() as conn:
        try:
            for match in matches:
                upsert_match_result(conn, match)
                if match.match_id not in match_ids:
                    match_ids.append(match.match_id)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    return match_ids


def distribute_commissions_db(conn: Connection, slip: BetSlip, shares: Sequence[CommissionShare]) -> None:
    for share in shares:
        insert_commission_transaction(conn, slip, share)
        ledger_credit(conn, share.account_id, share.amount, slip.id, TX_COMMISSION)


def _price_commissions_db(conn: Connection, slip: BetSlip, rules: SettlementRules) -> List[CommissionShare]:
    member = get_account_db(conn, slip.account_id)
    chain = get_upline_chain_db(conn, slip.account_id, rules.max_hierarchy_depth)
    return compute_commissions(
        slip.stake,
        commission_field(slip),
        slip.account_id,
        get_commission_setting_db(conn, member.commission_setting_id),
        chain,
    )


def settle_slip_db(
    slip_id: int,
    rules: Optional[SettlementRules] = None,
    now: Optional[datetime] = None,
) -> SlipOutcome:
    """
    DB-backed variant of settle_slip: one connection, one transaction.
    """
    rules = rules or SettlementRules()
    now = now or datetime.now(timezone.utc)

    with get_conn() as conn:
        try:
            outcome = _settle_slip_db_in_tx(conn, slip_id, rules, now)
            if outcome.outcome == SETTLED:
                conn.commit()
            else:
                conn.rollback()
        except SettlementError as e:
            conn.rollback()
            logger.error("slip %s settlement aborted, will retry: %s", slip_id, e)
            return SlipOutcome(slip_id, FAILED, error=str(e))
        except Exception as e:
            conn.rollback()
            logger.exception("slip %s settlement aborted unexpectedly", slip_id)
            return SlipOutcome(slip_id, FAILED, error=str(e))

    if outcome.outcome == SETTLED:
        logger.info(
            "slip %s settled as %s payout=%s profit=%s commissions=%d",
            slip_id, outcome.status, outcome.payout, outcome.profit, len(outcome.commissions),
        )
    return outcome


def _settle_slip_db_in_tx(
    conn: Connection,
    slip_id: int,
    rules: SettlementRules,
    now: datetime,
) -> SlipOutcome:
    slip = get_bet_slip(conn, slip_id)
    if slip is None:
        raise ValueError(f"Bet slip {slip_id} not found")
    if slip.status != PENDING:
        return SlipOutcome(slip_id, DUPLICATE, slip.status, slip.payout, slip.profit)

    # 1) evaluate every leg against every finalized result we know of
    results = get_match_results(conn, [leg.match_id for leg in slip.legs])
    legs = []
    for leg in slip.legs:
        leg_result = evaluate_leg(leg, results.get((leg.match_id, leg.period)), rules)
        if leg_result.outcome == PENDING:
            logger.debug("slip %s waiting for %s %s", slip_id, leg.match_id, leg.period)
            return SlipOutcome(slip_id, AWAITING)
        legs.append(replace(leg, outcome=leg_result.outcome, payout_multiplier=leg_result.multiplier))

    # 2) slip result
    result = aggregate_slip(slip.bet_type, slip.stake, legs, rules)

    # 3) conditional claim, the idempotency gate
    if not claim_slip(conn, slip_id, result, now):
        logger.info("slip %s already settled by another pass, skipping", slip_id)
        return SlipOutcome(slip_id, DUPLICATE)

    update_leg_outcomes(conn, slip_id, legs)
    outcome = SlipOutcome(slip_id, SETTLED, result.status, result.payout, result.profit)

    # 4) payout
    if result.payout > 0:
        tx_type = TX_REFUND if result.status in (PUSH, CANCELLED) else TX_WON
        ledger_credit(conn, slip.account_id, result.payout, slip_id, tx_type)

    # 5) commissions
    if result.status != CANCELLED:
        try:
            shares = _price_commissions_db(conn, slip, rules)
        except HierarchyCycle as e:
            if rules.hierarchy_failure_policy != SKIP_COMMISSION:
                raise
            logger.error("slip %s: commissions skipped, %s", slip_id, e)
            outcome.commission_skipped = True
            shares = []
        distribute_commissions_db(conn, slip, shares)
        outcome.commissions = list(shares)

    # 6) only now is the slip paid out
    mark_slip_paidout(conn, slip_id)
    return outcome


def settle_batch_db(
    matches: Sequence[FinalizedMatch],
    rules: Optional[SettlementRules] = None,
    workers: int = 4,
) -> BatchReport:
    """
    DB-backed variant of settle_batch.

    each worker opens its own connection; slips are settled independently and
    a failing slip is reported, not raised.
    """
    rules = rules or SettlementRules()
    match_ids = record_results_db(matches)
    if not match_ids:
        logger.info("no finalized matches in batch")
        return BatchReport()

    with get_conn() as conn:
        slip_ids = get_pending_slip_ids(conn, match_ids)
        conn.rollback()

    logger.info("settling %d pending slips for %d matches", len(slip_ids), len(match_ids))

    if workers <= 1 or len(slip_ids) <= 1:
        outcomes = [settle_slip_db(slip_id, rules) for slip_id in slip_ids]
    else:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = list(pool.map(lambda sid: settle_slip_db(sid, rules), slip_ids))

    report = BatchReport(outcomes=outcomes)
    logger.info(
        "batch done: settled=%d awaiting=%d duplicate=%d failed=%d",
        report.settled, report.awaiting, report.duplicate, report.failed,
    )
    return report
