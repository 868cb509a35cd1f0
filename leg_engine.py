from decimal import Decimal, InvalidOperation
from typing import Optional

from errors import ValidationError
from models import (
    BODY,
    CANCELLED,
    HALF_LOST,
    HALF_WON,
    LOST,
    MARKETS_BY_CATEGORY,
    PENDING,
    PERIODS,
    PUSH,
    WON,
    BetLeg,
    LegResult,
    Score,
    SettlementRules,
)

HALF_GOAL = Decimal("0.5")
QUARTER_GOAL = Decimal("0.25")

# score for the leg's period has not arrived yet; the slip waits for a later pass
AWAITING_DATA = LegResult(PENDING, Decimal("0"))

MULTIPLIERS = {
    WON: Decimal("1.0"),
    HALF_WON: Decimal("0.5"),
    PUSH: Decimal("0.0"),
    HALF_LOST: Decimal("-0.5"),
    LOST: Decimal("0.0"),
    CANCELLED: Decimal("0.0"),
}

DEFAULT_RULES = SettlementRules()


def _to_decimal(text: str) -> Decimal:
    try:
        value = Decimal(text)
    except InvalidOperation:
        raise ValidationError(f"Invalid line value: {text!r}")
    if not value.is_finite():
        raise ValidationError(f"Invalid line value: {text!r}")
    return value


def parse_line(raw) -> Decimal:
    """
    parse a locked handicap / total line into a Decimal.

    accepts plain signed values ("-1", "+0.5", "2.5", "-0.25") and split
    notation ("0/0.5" == 0.25, "-0.5/1" == -0.75). the result must be a
    multiple of a quarter goal.
    """
    if raw is None:
        raise ValidationError("Line is mandatory for handicap and over/under legs.")

    text = str(raw).strip().replace(" ", "")
    if not text:
        raise ValidationError("Line is mandatory for handicap and over/under legs.")

    if "/" in text:
        sign = Decimal("1")
        if text[0] in "+-":
            if text[0] == "-":
                sign = Decimal("-1")
            text = text[1:]
        parts = text.split("/")
        if len(parts) != 2:
            raise ValidationError(f"Invalid split line: {raw!r}")
        low, high = (_to_decimal(p) for p in parts)
        if low < 0 or high < 0 or abs(high - low) != HALF_GOAL:
            raise ValidationError(f"Invalid split line: {raw!r}")
        value = sign * (low + high) / 2
    else:
        value = _to_decimal(text)

    if (value * 4) % 1 != 0:
        raise ValidationError(f"Line {raw!r} is not a multiple of a quarter goal.")
    return value


def is_quarter_line(line: Decimal) -> bool:
    return (line * 4) % 2 != 0


def leg_margin(leg: BetLeg, line: Decimal, score: Score) -> Decimal:
    """
    signed goal margin in favour of the chosen side, after the line.
      body:      (own goals - other goals) + line
      overUnder: total - line for over, line - total for under
    """
    if leg.bet_category == BODY:
        diff = score.home - score.away
        if leg.market == "away":
            diff = -diff
        return Decimal(diff) + line

    total = Decimal(score.home + score.away)
    if leg.market == "over":
        return total - line
    return line - total


def classify_margin(margin: Decimal, boundary: Decimal, decisive: bool = False) -> str:
    if margin > boundary:
        return WON
    if margin == boundary:
        return WON if decisive else HALF_WON
    if margin == 0:
        return PUSH
    if margin == -boundary:
        return LOST if decisive else HALF_LOST
    if margin < -boundary:
        return LOST
    # 0 < |margin| < boundary only happens for lines off the quarter grid,
    # which parse_line already refuses
    raise ValidationError(f"Margin {margin} does not fall on a settlement boundary.")


def validate_leg(leg: BetLeg) -> Decimal:
    """check category / side / period and return the parsed line."""
    markets = MARKETS_BY_CATEGORY.get(leg.bet_category)
    if markets is None:
        raise ValidationError(f"Unsupported bet category: {leg.bet_category!r}")
    if leg.market not in markets:
        raise ValidationError(
            f"Market {leg.market!r} is not valid for category {leg.bet_category!r}"
        )
    if leg.period not in PERIODS:
        raise ValidationError(f"Unsupported period: {leg.period!r}")
    return parse_line(leg.line)


def evaluate_leg(
    leg: BetLeg,
    score: Optional[Score],
    rules: SettlementRules = DEFAULT_RULES,
) -> LegResult:
    """
    decide one leg against the final score of its period.

    returns AWAITING_DATA when score is None. raises ValidationError for legs
    that should never have been accepted.
    """
    line = validate_leg(leg)

    if score is None:
        return AWAITING_DATA

    if score.cancelled:
        return LegResult(CANCELLED, MULTIPLIERS[CANCELLED])

    if score.home < 0 or score.away < 0:
        raise ValidationError(f"Negative score for match {leg.match_id}: {score}")

    margin = leg_margin(leg, line, score)

    if is_quarter_line(line):
        boundary = QUARTER_GOAL
        decisive = False
    else:
        boundary = HALF_GOAL
        decisive = leg.bet_category in rules.decisive_half_line_markets

    outcome = classify_margin(margin, boundary, decisive)
    return LegResult(outcome, MULTIPLIERS[outcome])
