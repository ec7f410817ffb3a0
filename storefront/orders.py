"""
Order assembly.

Turns a checkout request into a persisted Order plus its OrderItems:
re-prices the cart from the catalog, applies the free gift rule, computes
the total and writes everything in one transaction.
"""
import logging
import random
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import crud, models, schemas, validators
from .config import Settings
from .errors import (
    OrderNotFound,
    OrderNumberExhausted,
    ProductInactive,
    ProductNotFound,
    ValidationError,
)
from .freegift import FreeGiftRule, apply_free_gift, is_free_gift, strip_free_gift

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def generate_order_number(rng: random.Random, now: Optional[datetime] = None) -> str:
    """Return ``ORD-<YYYYMMDD>-<5 random digits>``."""
    now = now or datetime.utcnow()
    return f"ORD-{now:%Y%m%d}-{rng.randint(10000, 99999)}"


def order_total(items: List[schemas.CartItem]) -> Decimal:
    total = sum((Decimal(item.unit_price) * item.quantity for item in items), Decimal("0"))
    return total.quantize(CENT)


def _is_order_number_conflict(exc: IntegrityError) -> bool:
    return "order_number" in str(exc.orig)


class OrderAssembler:
    """Order creation and retrieval backed by the ledger store."""

    def __init__(self, settings: Settings, rng: Optional[random.Random] = None):
        self.rule = FreeGiftRule(
            product_id=settings.free_gift_product_id,
            min_subtotal=Decimal(settings.free_gift_min_subtotal),
        )
        self.max_attempts = max(1, settings.order_number_attempts)
        self._rng = rng or random.SystemRandom()

    def price_cart(self, db: Session, items: List[schemas.CartItem]) -> List[schemas.CartItem]:
        """
        Replace client prices with current catalog prices.

        Gift lines sent by the client are dropped; the gift is synthesized
        later by the rule.

        Raises:
            ProductNotFound: a line references a missing product
            ProductInactive: a line references a product that is not for sale
        """
        priced = []
        for item in strip_free_gift(items, self.rule):
            product = crud.get_product(db, item.product_id)
            if product is None:
                raise ProductNotFound(item.product_id)
            if not product.is_active:
                raise ProductInactive(item.product_id)
            priced.append(
                schemas.CartItem(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=Decimal(product.price),
                )
            )
        return priced

    def apply_gift(self, db: Session, items: List[schemas.CartItem]) -> List[schemas.CartItem]:
        gift = crud.get_product(db, self.rule.product_id)
        if gift is None or not gift.is_free_gift:
            logger.warning(f"Free gift product {self.rule.product_id} not found or not flagged; skipping gift")
            return strip_free_gift(items, self.rule)
        return apply_free_gift(items, self.rule)

    def create_order(self, db: Session, request: schemas.OrderCreate) -> schemas.OrderCreated:
        """
        Validate, price and persist a checkout.

        Args:
            db: Database session
            request: Checkout data

        Returns:
            The new order's id, number and total

        Raises:
            ValidationError: a required field is missing or the cart is invalid
            ProductNotFound / ProductInactive: the cart references stale catalog data
            OrderNumberExhausted: no free order number could be allocated
        """
        is_valid, missing = validators.validate_required_fields(request)
        if not is_valid:
            raise ValidationError(missing)

        is_valid, error_message = validators.validate_cart_items(request.cart_items)
        if not is_valid:
            raise ValidationError("cart_items", error_message)

        lines = self.price_cart(db, request.cart_items)
        if not lines:
            raise ValidationError("cart_items", "Cart must contain at least one purchasable item")
        lines = self.apply_gift(db, lines)
        total = order_total(lines)

        for attempt in range(1, self.max_attempts + 1):
            order_number = generate_order_number(self._rng)
            if crud.get_order_by_number(db, order_number) is not None:
                logger.warning(f"Order number {order_number} already taken (attempt {attempt})")
                continue

            try:
                db_order = self._persist(db, request, order_number, lines, total)
                db.commit()
            except IntegrityError as e:
                db.rollback()
                if not _is_order_number_conflict(e):
                    raise
                logger.warning(f"Order number {order_number} collided on insert (attempt {attempt})")
                continue
            except Exception:
                db.rollback()
                raise

            logger.info(f"Order {order_number} created: {len(lines)} lines, total {total}")
            return schemas.OrderCreated(
                order_id=db_order.id,
                order_number=order_number,
                total_amount=total,
            )

        raise OrderNumberExhausted(self.max_attempts)

    def _persist(
        self,
        db: Session,
        request: schemas.OrderCreate,
        order_number: str,
        lines: List[schemas.CartItem],
        total: Decimal,
    ) -> models.Order:
        db_order = crud.insert_order(
            db,
            order_number=order_number,
            customer_phone=request.phone.strip(),
            customer_email=request.email.strip(),
            customer_name=request.customer_name.strip(),
            shipping_address_line=request.address_line.strip(),
            province=request.province.strip(),
            district=request.district.strip(),
            subdistrict=request.subdistrict.strip(),
            postal_code=request.postal_code.strip(),
            total_amount=total,
            payment_status="pending",
            fulfill_status="pending",
        )
        for line in lines:
            crud.insert_order_item(
                db,
                order_id=db_order.id,
                product_id=line.product_id,
                quantity=line.quantity,
                unit_price=Decimal(line.unit_price),
                is_free_gift=is_free_gift(line, self.rule),
            )
        crud.add_order_event(
            db,
            order_id=db_order.id,
            event_type="created",
            description=f"Order {order_number} created with total {total}",
            new_value="pending",
        )
        return db_order


def get_order_detail(db: Session, order_id: int) -> models.Order:
    """
    Fetch an order with its items.

    Raises:
        OrderNotFound: no order has this ID
    """
    db_order = crud.get_order(db, order_id)
    if db_order is None:
        raise OrderNotFound(order_id)
    return db_order
