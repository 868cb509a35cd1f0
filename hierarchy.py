from typing import Any, Dict, List, Mapping, Optional

from errors import HierarchyCycle
from models import Account, ChainLink, CommissionSetting

DEFAULT_MAX_DEPTH = 10


def resolve_chain(
    account_id: Any,
    accounts: Mapping[Any, Account],
    settings: Mapping[Any, CommissionSetting],
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> List[ChainLink]:
    """
    given an account and the in-memory account graph, return its uplines
    ordered from the immediate upline to the top of the hierarchy.

    accounts: account_id -> Account
    settings: commission_setting_id -> CommissionSetting

    rules:
      - the walk stops at an account whose upline_id is None
      - visiting the same account twice is a cycle
      - more than max_depth uplines is treated as malformed data
      - an upline id that does not resolve to an account is malformed data
    """
    account = accounts.get(account_id)
    if account is None:
        raise HierarchyCycle(f"Account {account_id} not found in hierarchy")

    chain: List[ChainLink] = []
    seen = {account_id}
    current = account

    while current.upline_id is not None:
        upline_id = current.upline_id

        if upline_id in seen:
            raise HierarchyCycle(
                f"Upline chain of {account_id} loops back to {upline_id}."
            )
        if len(chain) >= max_depth:
            raise HierarchyCycle(
                f"Upline chain of {account_id} exceeds {max_depth} levels."
            )

        upline = accounts.get(upline_id)
        if upline is None:
            raise HierarchyCycle(
                f"Upline {upline_id} of account {current.id} does not exist."
            )

        seen.add(upline_id)
        chain.append(
            ChainLink(
                account_id=upline.id,
                role=upline.role,
                setting=lookup_setting(upline, settings),
            )
        )
        current = upline

    return chain


def lookup_setting(
    account: Account,
    settings: Mapping[Any, CommissionSetting],
) -> Optional[CommissionSetting]:
    if account.commission_setting_id is None:
        return None
    return settings.get(account.commission_setting_id)


def build_accounts(rows) -> Dict[Any, Account]:
    """convenience: index an iterable of Account records by id."""
    return {a.id: a for a in rows}
