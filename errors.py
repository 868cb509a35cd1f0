class SettlementError(Exception):
    """base class for every error raised by the settlement core."""


class ValidationError(SettlementError, ValueError):
    """
    malformed leg / slip data (unknown category, bad line, bad price ...).
    should have been rejected at placement; during settlement it is fatal
    for that slip and needs manual review.
    """


class InsufficientFunds(SettlementError, ValueError):
    def __init__(self, account_id, requested: int, available: int):
        self.account_id = account_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient cash balance for account {account_id}: "
            f"requested {requested}, available {available}."
        )


class MissingLedgerAccount(SettlementError, LookupError):
    def __init__(self, account_id):
        self.account_id = account_id
        super().__init__(f"Balance record not found for account {account_id}")


class HierarchyCycle(SettlementError, ValueError):
    """upline chain loops back on itself, is too deep, or points at nothing."""
