from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, List, Optional

# ---------
# vocabulary
# ---------

SINGLE = "single"
PARLAY = "parlay"

BODY = "body"
OVER_UNDER = "overUnder"
BET_CATEGORIES = (BODY, OVER_UNDER)

MARKETS_BY_CATEGORY = {
    BODY: ("home", "away"),
    OVER_UNDER: ("over", "under"),
}

FULL_TIME = "full-time"
HALF_TIME = "half-time"
PERIODS = (FULL_TIME, HALF_TIME)

LARGE = "large"
SMALL = "small"

# leg outcomes
UNSETTLED = "unsettled"
WON = "won"
HALF_WON = "half-won"
PUSH = "push"
HALF_LOST = "half-lost"
LOST = "lost"
CANCELLED = "cancelled"

# slip status
PENDING = "pending"

# slip conditions
ACCEPTED = "accepted"
PAIDOUT = "paidout"
REJECTED = "rejected"

# balance transaction types
TX_BET = "Bet"
TX_WON = "Won"
TX_REFUND = "Refund"
TX_COMMISSION = "Commission"

# commission setting fields
HDP_OU_FT_LG = "hdpOuFtLg"
HDP_OU_FT_SM = "hdpOuFtSm"
HDP_OU_HT_LG = "hdpOuHtLg"
HDP_OU_HT_SM = "hdpOuHtSm"
MIX_PARLAY_2 = "mixParlay2"
MIX_PARLAY_3_TO_8 = "mixParlay3to8"
MIX_PARLAY_9_TO_11 = "mixParlay9to11"

COMMISSION_FIELDS = (
    HDP_OU_FT_LG,
    HDP_OU_FT_SM,
    HDP_OU_HT_LG,
    HDP_OU_HT_SM,
    MIX_PARLAY_2,
    MIX_PARLAY_3_TO_8,
    MIX_PARLAY_9_TO_11,
)

MALAY = "malay"
DECIMAL = "decimal"
PRICE_STYLES = (MALAY, DECIMAL)

ABORT = "abort"
SKIP_COMMISSION = "skip_commission"
HIERARCHY_FAILURE_POLICIES = (ABORT, SKIP_COMMISSION)


# ---------
# records
# ---------

@dataclass(frozen=True)
class SettlementRules:
    price_style: str = MALAY
    decisive_half_line_markets: FrozenSet[str] = frozenset({OVER_UNDER})
    hierarchy_failure_policy: str = ABORT
    max_hierarchy_depth: int = 10


@dataclass
class BetLeg:
    match_id: str
    bet_category: str
    market: str
    period: str
    line: str
    price: Decimal
    market_size: str = LARGE
    outcome: str = UNSETTLED
    payout_multiplier: Optional[Decimal] = None


@dataclass
class BetSlip:
    id: Any
    account_id: Any
    bet_type: str
    stake: int
    legs: List[BetLeg]
    status: str = PENDING
    conditions: str = ACCEPTED
    payout: Optional[int] = None
    profit: Optional[int] = None
    created_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None


@dataclass(frozen=True)
class Score:
    home: int
    away: int
    cancelled: bool = False


@dataclass(frozen=True)
class FinalizedMatch:
    match_id: str
    period: str
    home_score: int
    away_score: int
    cancelled: bool = False

    @property
    def score(self) -> Score:
        return Score(self.home_score, self.away_score, self.cancelled)


@dataclass(frozen=True)
class LegResult:
    outcome: str
    multiplier: Decimal


@dataclass(frozen=True)
class SlipResult:
    status: str
    payout: int
    profit: int


@dataclass
class CommissionSetting:
    id: Any
    rates: Dict[str, Decimal] = field(default_factory=dict)

    def rate(self, field_name: str) -> Decimal:
        return Decimal(self.rates.get(field_name) or 0)


@dataclass(frozen=True)
class Account:
    id: Any
    role: str
    upline_id: Any = None
    commission_setting_id: Any = None


@dataclass(frozen=True)
class ChainLink:
    account_id: Any
    role: str
    setting: Optional[CommissionSetting]


@dataclass(frozen=True)
class CommissionShare:
    account_id: Any
    rate: Decimal
    amount: int
    bet_category: str


@dataclass
class BalanceRecord:
    cash_balance: int = 0
    account_balance: int = 0


@dataclass(frozen=True)
class BalanceTransaction:
    account_id: Any
    bet_slip_id: Any
    type: str
    amount: int
    balance_before: int
    balance_after: int
    created_at: datetime


@dataclass(frozen=True)
class CommissionTransaction:
    account_id: Any
    bet_slip_id: Any
    commission_rate: Decimal
    amount: int
    original_stake: int
    bet_category: str
    created_at: datetime


# orchestrator verdicts for one slip
SETTLED = "settled"
AWAITING = "awaiting"
DUPLICATE = "duplicate"
FAILED = "failed"


@dataclass
class SlipOutcome:
    slip_id: Any
    outcome: str
    status: Optional[str] = None
    payout: Optional[int] = None
    profit: Optional[int] = None
    commissions: List[CommissionShare] = field(default_factory=list)
    commission_skipped: bool = False
    error: Optional[str] = None


@dataclass
class BatchReport:
    outcomes: List[SlipOutcome] = field(default_factory=list)

    def count(self, outcome: str) -> int:
        return sum(1 for o in self.outcomes if o.outcome == outcome)

    @property
    def settled(self) -> int:
        return self.count(SETTLED)

    @property
    def awaiting(self) -> int:
        return self.count(AWAITING)

    @property
    def duplicate(self) -> int:
        return self.count(DUPLICATE)

    @property
    def failed(self) -> int:
        return self.count(FAILED)
