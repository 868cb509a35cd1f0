import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from errors import InsufficientFunds, MissingLedgerAccount, ValidationError
from models import (
    TX_BET,
    TX_WON,
    BalanceRecord,
    BalanceTransaction,
)

logger = logging.getLogger(__name__)


def _check_amount(amount) -> None:
    # money is integer minor units only
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise ValidationError(f"Ledger amounts must be integers, got {amount!r}")


class Ledger:
    """
    in-memory ledger: one BalanceRecord per account plus an append-only
    list of BalanceTransaction entries.

    every mutation happens under a single lock, so concurrent debits / credits
    to the same account are true increments and before/after amounts are read
    in the same step as the write.
    """

    def __init__(self, lock: Optional[threading.RLock] = None):
        self._lock = lock or threading.RLock()
        self._balances: Dict[Any, BalanceRecord] = {}
        self.transactions: List[BalanceTransaction] = []

    def open_account(self, account_id: Any, cash_balance: int = 0) -> BalanceRecord:
        _check_amount(cash_balance)
        with self._lock:
            if account_id in self._balances:
                raise ValueError(f"Balance record already exists for account {account_id}")
            record = BalanceRecord(cash_balance=cash_balance, account_balance=cash_balance)
            self._balances[account_id] = record
            return BalanceRecord(record.cash_balance, record.account_balance)

    def balance(self, account_id: Any) -> BalanceRecord:
        with self._lock:
            record = self._balances.get(account_id)
            if record is None:
                raise MissingLedgerAccount(account_id)
            return BalanceRecord(record.cash_balance, record.account_balance)

    def debit(
        self,
        account_id: Any,
        amount: int,
        bet_slip_id: Any = None,
        tx_type: str = TX_BET,
    ) -> BalanceTransaction:
        _check_amount(amount)
        if amount <= 0:
            raise ValidationError(f"Debit amount must be positive, got {amount}")

        with self._lock:
            record = self._balances.get(account_id)
            if record is None:
                raise MissingLedgerAccount(account_id)
            if record.cash_balance < amount:
                raise InsufficientFunds(account_id, amount, record.cash_balance)

            before = record.cash_balance
            record.cash_balance -= amount
            record.account_balance -= amount
            return self._log(account_id, bet_slip_id, tx_type, -amount, before, record.cash_balance)

    def credit(
        self,
        account_id: Any,
        amount: int,
        bet_slip_id: Any = None,
        tx_type: str = TX_WON,
    ) -> Optional[BalanceTransaction]:
        _check_amount(amount)
        if amount <= 0:
            return None

        with self._lock:
            record = self._balances.get(account_id)
            if record is None:
                # fatal for the surrounding unit; the caller rolls back
                raise MissingLedgerAccount(account_id)

            before = record.cash_balance
            record.cash_balance += amount
            record.account_balance += amount
            return self._log(account_id, bet_slip_id, tx_type, amount, before, record.cash_balance)

    def _log(self, account_id, bet_slip_id, tx_type, amount, before, after) -> BalanceTransaction:
        entry = BalanceTransaction(
            account_id=account_id,
            bet_slip_id=bet_slip_id,
            type=tx_type,
            amount=amount,
            balance_before=before,
            balance_after=after,
            created_at=datetime.now(timezone.utc),
        )
        self.transactions.append(entry)
        logger.debug(
            "ledger %s %s account=%s slip=%s balance %s -> %s",
            tx_type, amount, account_id, bet_slip_id, before, after,
        )
        return entry

    @contextmanager
    def atomic(self):
        """
        all-or-nothing block: holds the lock for the whole block and puts
        balances and the transaction log back if the block raises.
        """
        with self._lock:
            saved = {k: BalanceRecord(v.cash_balance, v.account_balance) for k, v in self._balances.items()}
            saved_len = len(self.transactions)
            try:
                yield self
            except BaseException:
                self._balances = saved
                del self.transactions[saved_len:]
                raise
