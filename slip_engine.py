from decimal import Decimal, InvalidOperation, ROUND_DOWN, localcontext
from typing import Sequence

from errors import ValidationError
from models import (
    CANCELLED,
    DECIMAL,
    HALF_LOST,
    HALF_WON,
    LOST,
    MALAY,
    PARLAY,
    PUSH,
    SINGLE,
    WON,
    BetLeg,
    SettlementRules,
    SlipResult,
)

# plenty of headroom for an 11-leg parlay before we round to minor units
PRECISION = 34

RESOLVED_OUTCOMES = (WON, HALF_WON, PUSH, HALF_LOST, LOST, CANCELLED)

DEFAULT_RULES = SettlementRules()


def _price(leg: BetLeg) -> Decimal:
    try:
        price = Decimal(leg.price)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid price {leg.price!r} on match {leg.match_id}")
    if not price.is_finite():
        raise ValidationError(f"Invalid price {leg.price!r} on match {leg.match_id}")
    return price


def win_ratio(price: Decimal, price_style: str) -> Decimal:
    """
    profit per unit of stake for a full win.

    malay:   +p wins stake * p, -p wins stake / |p| (the stake is the risk)
    decimal: p wins stake * (p - 1)
    """
    if price_style == MALAY:
        if price == 0 or abs(price) > 1:
            raise ValidationError(f"Malay price must be within [-1, 1] and non-zero, got {price}")
        if price > 0:
            return price
        return 1 / abs(price)

    if price_style == DECIMAL:
        if price <= 1:
            raise ValidationError(f"Decimal price must be greater than 1, got {price}")
        return price - 1

    raise ValidationError(f"Unknown price style: {price_style!r}")


def leg_return_ratio(leg: BetLeg, price_style: str) -> Decimal:
    """amount returned per unit of stake for a resolved leg."""
    outcome = leg.outcome
    if outcome == LOST:
        return Decimal("0")
    if outcome in (PUSH, CANCELLED):
        return Decimal("1")
    if outcome == HALF_LOST:
        return Decimal("0.5")

    w = win_ratio(_price(leg), price_style)
    if outcome == WON:
        return 1 + w
    if outcome == HALF_WON:
        return 1 + w / 2

    raise ValidationError(f"Leg on match {leg.match_id} is not resolved (outcome={outcome!r})")


def _to_minor_units(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_DOWN))


def aggregate_slip(
    bet_type: str,
    stake: int,
    legs: Sequence[BetLeg],
    rules: SettlementRules = DEFAULT_RULES,
) -> SlipResult:
    """
    combine resolved legs into the slip's status, payout and profit.

    single: status follows the leg, payout = stake * leg return.
    parlay: any lost leg loses the whole slip. otherwise payout is the stake
            times the product of leg returns; push/cancelled legs count as x1.
    profit is always payout - stake. payout is rounded down to minor units.
    """
    if not isinstance(stake, int) or isinstance(stake, bool) or stake <= 0:
        raise ValidationError(f"Stake must be a positive integer, got {stake!r}")

    for leg in legs:
        if leg.outcome not in RESOLVED_OUTCOMES:
            raise ValidationError(
                f"Leg on match {leg.match_id} is not resolved (outcome={leg.outcome!r})"
            )

    with localcontext() as ctx:
        ctx.prec = PRECISION

        if bet_type == SINGLE:
            if len(legs) != 1:
                raise ValidationError(f"Single bet must have exactly one leg, got {len(legs)}")
            leg = legs[0]
            if leg.outcome == LOST:
                return SlipResult(LOST, 0, -stake)
            payout = _to_minor_units(stake * leg_return_ratio(leg, rules.price_style))
            return SlipResult(leg.outcome, payout, payout - stake)

        if bet_type == PARLAY:
            if len(legs) < 2:
                raise ValidationError(f"Parlay must have at least two legs, got {len(legs)}")

            # one full loss voids the combination, no partial credit
            if any(leg.outcome == LOST for leg in legs):
                return SlipResult(LOST, 0, -stake)

            outcomes = {leg.outcome for leg in legs}
            if outcomes == {CANCELLED}:
                return SlipResult(CANCELLED, stake, 0)
            if outcomes <= {PUSH, CANCELLED}:
                return SlipResult(PUSH, stake, 0)

            ratio = Decimal("1")
            for leg in legs:
                ratio *= leg_return_ratio(leg, rules.price_style)

            payout = _to_minor_units(stake * ratio)
            return SlipResult(WON, payout, payout - stake)

    raise ValidationError(f"Unknown bet type: {bet_type!r}")
