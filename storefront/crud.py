"""
Ledger store operations for the Storefront service.

This module contains all database operations for orders, order items,
payments and their audit rows. None of these functions commit: the calling
operation owns the transaction and commits or rolls back as one unit.
"""
import re
from decimal import Decimal
from typing import Any, Dict, List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session
import logging
from . import models

# Set up logging
logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


def get_product(db: Session, product_id: int) -> Optional[models.Product]:
    """
    Retrieve a product by ID for price and active-flag checks.

    Args:
        db: Database session
        product_id: ID of the product

    Returns:
        Product object or None if not found
    """
    return db.query(models.Product).filter(models.Product.id == product_id).first()


def get_order(db: Session, order_id: int) -> Optional[models.Order]:
    """
    Retrieve a single order by its numeric ID.

    Args:
        db: Database session
        order_id: ID of the order to retrieve

    Returns:
        Order object or None if not found
    """
    return db.query(models.Order).filter(models.Order.id == order_id).first()


def get_order_by_number(db: Session, order_number: str) -> Optional[models.Order]:
    """Retrieve an order by its business key."""
    return db.query(models.Order).filter(models.Order.order_number == order_number).first()


def get_order_by_reference(db: Session, reference: str) -> Optional[models.Order]:
    """
    Find the order a gateway reference points at.

    The gateway only accepts alphanumeric references, so it echoes back the
    order number with separators stripped. Exact matches win.

    Args:
        db: Database session
        reference: Order number or its sanitized gateway form

    Returns:
        Order object or None if not found
    """
    order = get_order_by_number(db, reference)
    if order is not None:
        return order

    sanitized = _NON_ALNUM.sub("", reference)
    if not sanitized:
        return None
    return (
        db.query(models.Order)
        .filter(func.replace(models.Order.order_number, "-", "") == sanitized)
        .first()
    )


def get_order_items(db: Session, order_id: int) -> List[models.OrderItem]:
    return (
        db.query(models.OrderItem)
        .filter(models.OrderItem.order_id == order_id)
        .order_by(models.OrderItem.id.asc())
        .all()
    )


def insert_order(db: Session, **fields: Any) -> models.Order:
    """
    Stage a new order row and assign its ID.

    Args:
        db: Database session
        **fields: Column values for the order

    Returns:
        The flushed Order object (``id`` populated)
    """
    db_order = models.Order(**fields)
    db.add(db_order)
    db.flush()
    return db_order


def insert_order_item(
    db: Session,
    order_id: int,
    product_id: int,
    quantity: int,
    unit_price: Decimal,
    is_free_gift: bool = False,
) -> models.OrderItem:
    """
    Stage one order line. ``total_price`` is derived, never supplied.

    Args:
        db: Database session
        order_id: Owning order
        product_id: Product sold
        quantity: Units (> 0)
        unit_price: Server-side unit price
        is_free_gift: Whether this is the synthesized gift line

    Returns:
        The flushed OrderItem object
    """
    item = models.OrderItem(
        order_id=order_id,
        product_id=product_id,
        quantity=quantity,
        unit_price=unit_price,
        total_price=unit_price * quantity,
        is_free_gift=is_free_gift,
    )
    db.add(item)
    db.flush()
    return item


def update_order_payment_status(db: Session, order_id: int, new_status: str) -> bool:
    """
    Move an order out of ``pending`` payment status.

    The update only applies while the order is still pending, so a terminal
    status is never overwritten, even by a concurrent delivery.

    Args:
        db: Database session
        order_id: Order to update
        new_status: "paid" or "failed"

    Returns:
        True if the row changed, False if the order was no longer pending
    """
    updated = (
        db.query(models.Order)
        .filter(models.Order.id == order_id, models.Order.payment_status == "pending")
        .update({"payment_status": new_status}, synchronize_session=False)
    )
    return updated == 1


def insert_payment(db: Session, order_id: int, gateway: str, amount: Decimal) -> models.Payment:
    """
    Stage a new pending payment row.

    Args:
        db: Database session
        order_id: Order being paid
        gateway: Integration name
        amount: Amount requested

    Returns:
        The flushed Payment object
    """
    payment = models.Payment(order_id=order_id, gateway=gateway, amount=amount, status="pending")
    db.add(payment)
    db.flush()
    return payment


def get_latest_payment_for_order(db: Session, order_id: int) -> Optional[models.Payment]:
    """Return the most recently created payment for an order."""
    return (
        db.query(models.Payment)
        .filter(models.Payment.order_id == order_id)
        .order_by(models.Payment.created_at.desc(), models.Payment.id.desc())
        .first()
    )


def get_payments_for_order(db: Session, order_id: int) -> List[models.Payment]:
    return (
        db.query(models.Payment)
        .filter(models.Payment.order_id == order_id)
        .order_by(models.Payment.id.asc())
        .all()
    )


def update_payment(
    db: Session,
    payment: models.Payment,
    status: str,
    gateway_transaction_id: Optional[str],
    raw_response: Optional[Dict[str, Any]],
) -> models.Payment:
    """
    Record the gateway's verdict on a payment.

    Args:
        db: Database session
        payment: Payment row to update
        status: "success" or "failed"
        gateway_transaction_id: Gateway's transaction reference, if any
        raw_response: Payload to keep for audit

    Returns:
        The updated Payment object
    """
    payment.status = status
    if gateway_transaction_id:
        payment.gateway_transaction_id = gateway_transaction_id
    payment.raw_response = raw_response
    db.flush()
    return payment


def add_order_event(
    db: Session,
    order_id: int,
    event_type: str,
    description: str,
    old_value: Optional[str] = None,
    new_value: Optional[str] = None,
) -> models.OrderEvent:
    """
    Stage an order timeline event.

    Args:
        db: Database session
        order_id: Order identifier
        event_type: Type of event (e.g., "created", "payment_reconciled")
        description: Human-readable description
        old_value: Previous value (optional)
        new_value: New value (optional)
    """
    event = models.OrderEvent(
        order_id=order_id,
        event_type=event_type,
        description=description,
        old_value=old_value,
        new_value=new_value,
    )
    db.add(event)
    db.flush()
    return event


def get_order_events(db: Session, order_id: int) -> List[models.OrderEvent]:
    return (
        db.query(models.OrderEvent)
        .filter(models.OrderEvent.order_id == order_id)
        .order_by(models.OrderEvent.created_at.asc(), models.OrderEvent.id.asc())
        .all()
    )


def insert_sms_log(
    db: Session,
    phone: str,
    message: str,
    status: str,
    sms_type: str = "other",
    error: Optional[str] = None,
) -> models.SmsLog:
    log = models.SmsLog(phone=phone, message=message, type=sms_type, status=status, error=error)
    db.add(log)
    db.flush()
    return log
