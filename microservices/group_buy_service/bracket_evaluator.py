"""
Discount Bracket Evaluator

Pure pricing functions over a campaign's bracket set. No I/O and no shared
state, so they are safe for concurrent reads.

Brackets are always considered in bracket_order; callers may pass them in any
order.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Sequence

from .models import BracketEvaluation, DiscountBracket
from .protocols import ValidationError

HUNDRED = Decimal("100")
ZERO_PERCENT = Decimal("0.00")
FULL_PERCENT = Decimal("100.00")
_CENTS = Decimal("0.01")


def ordered_brackets(brackets: Sequence[DiscountBracket]) -> List[DiscountBracket]:
    return sorted(brackets, key=lambda b: b.bracket_order)


def current_bracket(
    brackets: Sequence[DiscountBracket], quantity: int
) -> Optional[DiscountBracket]:
    """
    Bracket whose [min, max] range contains quantity.

    A quantity below every minimum still gets the lowest-ordered bracket so a
    price can always be shown, and one beyond a bounded top tier gets the
    highest. Returns None only for an empty bracket set.
    """
    ordered = ordered_brackets(brackets)
    if not ordered:
        return None
    for bracket in ordered:
        if bracket.contains(quantity):
            return bracket
    if quantity >= ordered[-1].min_quantity:
        return ordered[-1]
    return ordered[0]


def next_bracket(
    brackets: Sequence[DiscountBracket], quantity: int
) -> Optional[DiscountBracket]:
    """Bracket immediately after the current one, or None if current is last"""
    ordered = ordered_brackets(brackets)
    current = current_bracket(ordered, quantity)
    if current is None:
        return None
    index = next(i for i, b in enumerate(ordered) if b.bracket_id == current.bracket_id)
    if index + 1 < len(ordered):
        return ordered[index + 1]
    return None


def percentage_to_next_tier(
    quantity: int,
    current: Optional[DiscountBracket],
    next_: Optional[DiscountBracket],
) -> Decimal:
    """
    Progress from current.min toward next.min as a percentage.

    Clamped to [0, 100] and rounded half-up to 2 decimals. A degenerate range
    (next.min <= current.min) yields 0.
    """
    if next_ is None:
        return FULL_PERCENT
    if current is None:
        return ZERO_PERCENT

    span = next_.min_quantity - current.min_quantity
    if span <= 0:
        return ZERO_PERCENT

    raw = Decimal(quantity - current.min_quantity) * HUNDRED / Decimal(span)
    clamped = min(max(raw, Decimal(0)), HUNDRED)
    return clamped.quantize(_CENTS, rounding=ROUND_HALF_UP)


def evaluate(brackets: Sequence[DiscountBracket], quantity: int) -> BracketEvaluation:
    """Current tier, next tier and progress for a quantity"""
    current = current_bracket(brackets, quantity)
    following = next_bracket(brackets, quantity)
    return BracketEvaluation(
        quantity=quantity,
        current_bracket=current,
        next_bracket=following,
        percentage_to_next_tier=percentage_to_next_tier(quantity, current, following),
        unit_price=current.unit_price if current else None,
    )


def minimum_viable_quantity(brackets: Sequence[DiscountBracket]) -> int:
    """
    Committed quantity required to lock a campaign.

    This is the second bracket's min_quantity, the volume needed to leave the
    base tier. A single-bracket campaign uses that bracket's own minimum.
    """
    ordered = ordered_brackets(brackets)
    if not ordered:
        return 0
    if len(ordered) == 1:
        return ordered[0].min_quantity
    return ordered[1].min_quantity


def discount_percentage(
    brackets: Sequence[DiscountBracket], final_unit_price: Decimal
) -> int:
    """Whole-percent discount of final_unit_price against the base tier price"""
    ordered = ordered_brackets(brackets)
    if not ordered:
        return 0
    base_price = ordered[0].unit_price
    if base_price <= 0:
        return 0
    discount = (base_price - final_unit_price) * HUNDRED / base_price
    return int(discount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def validate_brackets(brackets: Sequence[DiscountBracket]) -> None:
    """
    Check a bracket set before publish.

    Raises ValidationError unless brackets are non-empty, ascend by
    min_quantity in bracket_order, are contiguous and non-overlapping, and only
    the last one is unbounded.
    """
    ordered = ordered_brackets(brackets)
    if not ordered:
        raise ValidationError("Campaign must have at least one discount bracket", field="brackets")

    orders = [b.bracket_order for b in ordered]
    if len(set(orders)) != len(orders):
        raise ValidationError("Bracket orders must be unique", field="brackets")

    for bracket in ordered:
        if bracket.max_quantity is not None and bracket.max_quantity < bracket.min_quantity:
            raise ValidationError(
                f"Bracket {bracket.bracket_order} has max_quantity below min_quantity",
                field="brackets",
            )

    for previous, following in zip(ordered, ordered[1:]):
        if previous.max_quantity is None:
            raise ValidationError(
                f"Only the last bracket may be unbounded (bracket {previous.bracket_order})",
                field="brackets",
            )
        if following.min_quantity <= previous.min_quantity:
            raise ValidationError(
                "Brackets must ascend by min_quantity in bracket order", field="brackets"
            )
        if following.min_quantity != previous.max_quantity + 1:
            raise ValidationError(
                f"Brackets {previous.bracket_order} and {following.bracket_order} "
                f"are not contiguous",
                field="brackets",
            )
