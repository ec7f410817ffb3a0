"""
Free gift rule.

A single complimentary product is added to the cart once the subtotal of
the paid lines reaches a threshold, and removed again when it drops below.
The functions here are pure: they never touch the store and never mutate
the list they are given.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import List

from .schemas import CartItem


@dataclass(frozen=True)
class FreeGiftRule:
    product_id: int
    min_subtotal: Decimal


def is_free_gift(item: CartItem, rule: FreeGiftRule) -> bool:
    return item.product_id == rule.product_id


def cart_subtotal(items: List[CartItem], rule: FreeGiftRule) -> Decimal:
    """Sum of unit_price * quantity over every line except the gift."""
    return sum(
        (Decimal(item.unit_price) * item.quantity for item in items if not is_free_gift(item, rule)),
        Decimal("0"),
    )


def apply_free_gift(items: List[CartItem], rule: FreeGiftRule) -> List[CartItem]:
    """
    Return the cart with the gift line added, removed or normalized.

    - subtotal >= threshold and no gift line: append one (qty 1, price 0)
    - subtotal < threshold: drop any gift line
    - gift line present and still earned: force qty 1 and price 0

    Duplicate gift lines collapse into the first one. An empty cart never
    qualifies. Applying the rule twice gives the same result as applying it
    once.

    Args:
        items: Working cart lines
        rule: Gift product and threshold

    Returns:
        A new list of cart lines
    """
    qualifies = bool(items) and cart_subtotal(items, rule) >= rule.min_subtotal

    result: List[CartItem] = []
    gift_seen = False
    for item in items:
        if not is_free_gift(item, rule):
            result.append(item.model_copy())
            continue
        if qualifies and not gift_seen:
            result.append(item.model_copy(update={"quantity": 1, "unit_price": Decimal("0")}))
        gift_seen = True

    if qualifies and not gift_seen:
        result.append(CartItem(product_id=rule.product_id, quantity=1, unit_price=Decimal("0")))

    return result


def strip_free_gift(items: List[CartItem], rule: FreeGiftRule) -> List[CartItem]:
    """Return the cart without any gift line."""
    return [item.model_copy() for item in items if not is_free_gift(item, rule)]
