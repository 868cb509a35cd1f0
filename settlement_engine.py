import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from commission_engine import commission_field, compute_commissions
from errors import HierarchyCycle, SettlementError
from hierarchy import lookup_setting, resolve_chain
from leg_engine import evaluate_leg
from ledger import Ledger
from models import (
    ACCEPTED,
    AWAITING,
    CANCELLED,
    DUPLICATE,
    FAILED,
    PAIDOUT,
    PENDING,
    PUSH,
    SETTLED,
    SKIP_COMMISSION,
    TX_COMMISSION,
    TX_REFUND,
    TX_WON,
    Account,
    BatchReport,
    BetLeg,
    BetSlip,
    CommissionSetting,
    CommissionShare,
    CommissionTransaction,
    FinalizedMatch,
    Score,
    SettlementRules,
    SlipOutcome,
)
from slip_engine import aggregate_slip

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 4


class SettlementBook:
    """
    in-memory 'tables' for one settlement domain:

    slips : slip_id -> BetSlip
    results : (match_id, period) -> Score, every finalized result seen so far
    accounts : account_id -> Account (read-only hierarchy)
    settings : commission_setting_id -> CommissionSetting
    ledger : Ledger (balances + balance transaction log)
    commission_transactions : append-only commission journal

    one re-entrant lock is shared by the book and its ledger; an atomic unit
    holds it for the whole commit.
    """

    def __init__(
        self,
        accounts: Optional[Dict[Any, Account]] = None,
        settings: Optional[Dict[Any, CommissionSetting]] = None,
    ):
        self.lock = threading.RLock()
        self.ledger = Ledger(lock=self.lock)
        self.slips: Dict[Any, BetSlip] = {}
        self.results: Dict[Tuple[str, str], Score] = {}
        self.accounts: Dict[Any, Account] = dict(accounts or {})
        self.settings: Dict[Any, CommissionSetting] = dict(settings or {})
        self.commission_transactions: List[CommissionTransaction] = []

    def add_slip(self, slip: BetSlip) -> BetSlip:
        with self.lock:
            if slip.id in self.slips:
                raise ValueError(f"Bet slip {slip.id} already exists.")
            self.slips[slip.id] = slip
        return slip

    def record_results(self, matches: Iterable[FinalizedMatch]) -> List[str]:
        match_ids = []
        with self.lock:
            for match in matches:
                self.results[(match.match_id, match.period)] = match.score
                if match.match_id not in match_ids:
                    match_ids.append(match.match_id)
        return match_ids

    def pending_slip_ids(self, match_ids: Sequence[str]) -> List[Any]:
        wanted = set(match_ids)
        with self.lock:
            return [
                slip.id
                for slip in self.slips.values()
                if slip.status == PENDING
                and slip.conditions == ACCEPTED
                and any(leg.match_id in wanted for leg in slip.legs)
            ]


def evaluate_slip_legs(
    slip: BetSlip,
    results: Dict[Tuple[str, str], Score],
    rules: SettlementRules,
) -> Optional[List[BetLeg]]:
    """
    return copies of the slip's legs with outcomes filled in, or None when any
    leg still waits for its score. the stored slip is not touched.
    """
    resolved = []
    for leg in slip.legs:
        result = evaluate_leg(leg, results.get((leg.match_id, leg.period)), rules)
        if result.outcome == PENDING:
            return None
        resolved.append(replace(leg, outcome=result.outcome, payout_multiplier=result.multiplier))
    return resolved


def distribute_commissions(
    book: SettlementBook,
    slip: BetSlip,
    shares: Sequence[CommissionShare],
    now: datetime,
) -> None:
    """one journal entry + one ledger credit per non-zero share."""
    for share in shares:
        book.commission_transactions.append(
            CommissionTransaction(
                account_id=share.account_id,
                bet_slip_id=slip.id,
                commission_rate=share.rate,
                amount=share.amount,
                original_stake=slip.stake,
                bet_category=share.bet_category,
                created_at=now,
            )
        )
        book.ledger.credit(share.account_id, share.amount, slip.id, TX_COMMISSION)


def _price_commissions(book: SettlementBook, slip: BetSlip, rules: SettlementRules) -> List[CommissionShare]:
    member = book.accounts.get(slip.account_id)
    if member is None:
        raise HierarchyCycle(f"Account {slip.account_id} not found in hierarchy")

    chain = resolve_chain(slip.account_id, book.accounts, book.settings, rules.max_hierarchy_depth)
    return compute_commissions(
        slip.stake,
        commission_field(slip),
        slip.account_id,
        lookup_setting(member, book.settings),
        chain,
    )


def settle_slip(
    book: SettlementBook,
    slip_id: Any,
    rules: Optional[SettlementRules] = None,
    now: Optional[datetime] = None,
) -> SlipOutcome:
    """
    settle one slip against the book:
      - evaluate legs (waiting legs -> 'awaiting', nothing written)
      - aggregate into status / payout / profit
      - in one atomic unit: claim the slip only if still pending, credit the
        payout, pay commissions up the chain, flip conditions to paidout

    any error inside the unit rolls the ledger and journal back and leaves the
    slip pending ('failed').
    """
    rules = rules or SettlementRules()
    now = now or datetime.now(timezone.utc)

    slip = book.slips.get(slip_id)
    if slip is None:
        raise ValueError(f"Bet slip {slip_id} not found")

    try:
        legs = evaluate_slip_legs(slip, book.results, rules)
        if legs is None:
            logger.debug("slip %s waiting for scores", slip_id)
            return SlipOutcome(slip_id, AWAITING)

        result = aggregate_slip(slip.bet_type, slip.stake, legs, rules)
    except SettlementError as e:
        logger.error("slip %s needs manual review: %s", slip_id, e)
        return SlipOutcome(slip_id, FAILED, error=str(e))

    outcome = SlipOutcome(slip_id, SETTLED, result.status, result.payout, result.profit)

    try:
        with book.ledger.atomic():
            journal_len = len(book.commission_transactions)
            try:
                # 1) idempotency gate, checked under the same lock as the writes
                if slip.status != PENDING or slip.conditions != ACCEPTED:
                    logger.info("slip %s already settled (%s), skipping", slip_id, slip.status)
                    return SlipOutcome(slip_id, DUPLICATE, slip.status, slip.payout, slip.profit)

                # 2) payout
                if result.payout > 0:
                    tx_type = TX_REFUND if result.status in (PUSH, CANCELLED) else TX_WON
                    book.ledger.credit(slip.account_id, result.payout, slip.id, tx_type)

                # 3) commissions
                if result.status != CANCELLED:
                    try:
                        shares = _price_commissions(book, slip, rules)
                    except HierarchyCycle as e:
                        if rules.hierarchy_failure_policy != SKIP_COMMISSION:
                            raise
                        logger.error("slip %s: commissions skipped, %s", slip_id, e)
                        outcome.commission_skipped = True
                        shares = []
                    distribute_commissions(book, slip, shares, now)
                    outcome.commissions = list(shares)

                # 4) slip record last; nothing above can fail after this
                slip.legs = legs
                slip.status = result.status
                slip.payout = result.payout
                slip.profit = result.profit
                slip.settled_at = now
                slip.conditions = PAIDOUT
            except BaseException:
                del book.commission_transactions[journal_len:]
                raise
    except SettlementError as e:
        logger.error("slip %s settlement aborted, will retry: %s", slip_id, e)
        return SlipOutcome(slip_id, FAILED, error=str(e))
    except Exception as e:
        logger.exception("slip %s settlement aborted unexpectedly", slip_id)
        return SlipOutcome(slip_id, FAILED, error=str(e))

    logger.info(
        "slip %s settled as %s payout=%s profit=%s commissions=%d",
        slip_id, result.status, result.payout, result.profit, len(outcome.commissions),
    )
    return outcome


def settle_batch(
    book: SettlementBook,
    matches: Iterable[FinalizedMatch],
    rules: Optional[SettlementRules] = None,
    workers: int = DEFAULT_WORKERS,
) -> BatchReport:
    """
    record a batch of finalized results and settle every pending slip that
    has a leg on one of those matches. slips are independent; one failure
    never blocks the others.
    """
    rules = rules or SettlementRules()
    match_ids = book.record_results(matches)
    if not match_ids:
        logger.info("no finalized matches in batch")
        return BatchReport()

    slip_ids = book.pending_slip_ids(match_ids)
    logger.info("settling %d pending slips for %d matches", len(slip_ids), len(match_ids))

    if workers <= 1 or len(slip_ids) <= 1:
        outcomes = [settle_slip(book, slip_id, rules) for slip_id in slip_ids]
    else:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = list(pool.map(lambda sid: settle_slip(book, sid, rules), slip_ids))

    report = BatchReport(outcomes=outcomes)
    logger.info(
        "batch done: settled=%d awaiting=%d duplicate=%d failed=%d",
        report.settled, report.awaiting, report.duplicate, report.failed,
    )
    return report
