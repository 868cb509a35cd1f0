from decimal import Decimal, ROUND_DOWN
from typing import Any, List, Optional, Sequence

from errors import ValidationError
from models import (
    FULL_TIME,
    HDP_OU_FT_LG,
    HDP_OU_FT_SM,
    HDP_OU_HT_LG,
    HDP_OU_HT_SM,
    MIX_PARLAY_2,
    MIX_PARLAY_3_TO_8,
    MIX_PARLAY_9_TO_11,
    PARLAY,
    SINGLE,
    SMALL,
    BetSlip,
    ChainLink,
    CommissionSetting,
    CommissionShare,
)

HUNDRED = Decimal("100")


def commission_field(slip: BetSlip) -> str:
    """
    map a slip to the CommissionSetting column that prices it.
      single: hdpOu{Ft|Ht}{Lg|Sm} from the leg's period and market size
      parlay: by leg count (2, 3-8, 9-11)
    """
    if slip.bet_type == SINGLE:
        if len(slip.legs) != 1:
            raise ValidationError(f"Single bet {slip.id} must have exactly one leg")
        leg = slip.legs[0]
        full_time = leg.period == FULL_TIME
        small = leg.market_size == SMALL
        if full_time:
            return HDP_OU_FT_SM if small else HDP_OU_FT_LG
        return HDP_OU_HT_SM if small else HDP_OU_HT_LG

    if slip.bet_type == PARLAY:
        leg_count = len(slip.legs)
        if leg_count == 2:
            return MIX_PARLAY_2
        if 3 <= leg_count <= 8:
            return MIX_PARLAY_3_TO_8
        if 9 <= leg_count <= 11:
            return MIX_PARLAY_9_TO_11
        raise ValidationError(f"No commission category for a {leg_count}-leg parlay")

    raise ValidationError(f"Unknown bet type: {slip.bet_type!r}")


def _amount(stake: int, rate: Decimal) -> int:
    return int((Decimal(stake) * rate / HUNDRED).quantize(Decimal("1"), rounding=ROUND_DOWN))


def compute_commissions(
    stake: int,
    field_name: str,
    member_id: Any,
    member_setting: Optional[CommissionSetting],
    chain: Sequence[ChainLink],
) -> List[CommissionShare]:
    """
    walk member -> agent -> master -> ... -> top and price each level.

    - the member earns a flat stake * own_rate / 100
    - each upline earns stake * max(0, rate - previous_rate) / 100, where
      previous_rate is the rate of the nearest level below with a setting
    - an account without a setting, or with a negative rate, earns nothing
      and leaves previous_rate as is

    only non-zero shares are returned, bottom-up.
    """
    shares: List[CommissionShare] = []
    previous_rate = Decimal("0")

    if member_setting is not None:
        member_rate = max(Decimal("0"), member_setting.rate(field_name))
        amount = _amount(stake, member_rate)
        if amount > 0:
            shares.append(CommissionShare(member_id, member_rate, amount, field_name))
        previous_rate = member_rate

    for link in chain:
        if link.setting is None:
            continue

        current_rate = link.setting.rate(field_name)
        if current_rate < 0:
            # misconfigured rate, same as no setting
            continue

        spread = max(Decimal("0"), current_rate - previous_rate)
        amount = _amount(stake, spread)
        if amount > 0:
            shares.append(CommissionShare(link.account_id, spread, amount, field_name))

        previous_rate = current_rate

    return shares
