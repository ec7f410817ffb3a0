"""
Checkout validation utilities for the Storefront service.

Provides business-rule validation beyond what the pydantic schemas enforce.
"""
from typing import List, Optional, Tuple
from . import schemas

# Checked in this order; the first missing field is reported
REQUIRED_ORDER_FIELDS = (
    "phone",
    "email",
    "customer_name",
    "address_line",
    "province",
    "district",
    "subdistrict",
    "postal_code",
    "cart_items",
)

MAX_CART_LINES = 100
MAX_LINE_QUANTITY = 10000

PAYMENT_METHODS = ("qr", "card")


def validate_required_fields(order: schemas.OrderCreate) -> Tuple[bool, Optional[str]]:
    """
    Check that every checkout field is present and non-blank.

    Args:
        order: Checkout request

    Returns:
        Tuple of (is_valid, missing_field)
    """
    for field in REQUIRED_ORDER_FIELDS:
        value = getattr(order, field)
        if value is None:
            return False, field
        if isinstance(value, str) and not value.strip():
            return False, field
        if isinstance(value, list) and not value:
            return False, field
    return True, None


def validate_cart_items(items: List[schemas.CartItem]) -> Tuple[bool, str]:
    """
    Validate cart lines for business rules.

    Args:
        items: List of cart lines

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not items:
        return False, "Cart must contain at least one item"

    if len(items) > MAX_CART_LINES:
        return False, f"Cart cannot contain more than {MAX_CART_LINES} items"

    for item in items:
        if item.quantity <= 0:
            return False, f"Product {item.product_id}: quantity must be positive"

        if item.quantity > MAX_LINE_QUANTITY:
            return False, f"Product {item.product_id}: quantity exceeds maximum ({MAX_LINE_QUANTITY})"

    return True, ""


def validate_payment_method(method: Optional[str]) -> Tuple[bool, str]:
    if not method:
        return False, "Payment method is required"
    if method not in PAYMENT_METHODS:
        return False, f"Payment method must be one of: {', '.join(PAYMENT_METHODS)}"
    return True, ""
