"""
SQLAlchemy ORM models for the Storefront service.

Defines the database schema for the tables touched by checkout, payment
and webhook reconciliation.
"""
from datetime import datetime
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from .database import Base


class Product(Base):
    """
    Catalog product. Managed by the back office; read-only here.

    Attributes:
        id (int): Primary key
        name (str): Display name
        sku (str): Unique stock keeping unit
        price (Decimal): Current unit price
        is_active (bool): Whether the product may be sold
        is_free_gift (bool): Whether the product can be handed out as the free gift
    """
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    sku = Column(String(100), unique=True, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    is_free_gift = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Order(Base):
    """
    Order model representing one checkout.

    Attributes:
        id (int): Primary key
        order_number (str): Unique business key, e.g. "ORD-20240101-12345"
        customer_phone (str): Contact phone as entered by the customer
        customer_email (str): Contact email
        customer_name (str): Full name
        shipping_address_line (str): Street address
        province, district, subdistrict, postal_code (str): Shipping address parts
        total_amount (Decimal): Sum of the order items' total_price
        payment_status (str): "pending", "paid" or "failed"
        fulfill_status (str): "pending", "processing", "shipped", "completed" or "cancelled"
        created_at, updated_at (datetime): Timestamps
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_number = Column(String(50), unique=True, nullable=False, index=True)
    customer_phone = Column(String(20), nullable=False, index=True)
    customer_email = Column(String(255), nullable=False)
    customer_name = Column(String(255), nullable=False)
    shipping_address_line = Column(Text, nullable=False)
    province = Column(String(100), nullable=False)
    district = Column(String(100), nullable=False)
    subdistrict = Column(String(100), nullable=False)
    postal_code = Column(String(10), nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)
    payment_status = Column(String(20), nullable=False, default="pending")
    fulfill_status = Column(String(20), nullable=False, default="pending")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )


class OrderItem(Base):
    """
    One line of an order. Immutable after creation.

    Attributes:
        id (int): Primary key
        order_id (int): Owning order
        product_id (int): Product sold on this line
        quantity (int): Units, always > 0
        unit_price (Decimal): Server-side price at checkout time
        total_price (Decimal): quantity * unit_price
        is_free_gift (bool): True for the synthesized complimentary line
    """
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)
    is_free_gift = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    order = relationship("Order", back_populates="items")


class Payment(Base):
    """
    One attempt to collect money for an order.

    Attributes:
        id (int): Primary key
        order_id (int): Order being paid (many payments per order are allowed)
        gateway (str): Integration used, e.g. "moneyspace_qr"
        gateway_transaction_id (str): Set by webhook reconciliation
        amount (Decimal): Amount requested
        status (str): "pending", "success" or "failed"
        raw_response (dict): Last webhook payload, kept for audit
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    gateway = Column(String(50), nullable=False)
    gateway_transaction_id = Column(String(255), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    raw_response = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class OrderEvent(Base):
    """
    OrderEvent model representing historical events in an order's lifecycle.

    Attributes:
        id (int): Primary key, auto-incrementing event ID
        order_id (int): Foreign key to the order
        event_type (str): e.g. "created", "payment_created", "payment_reconciled",
            "webhook_redelivered", "amount_mismatch"
        description (str): Human-readable description of the event
        old_value (str): Previous value (for changes, optional)
        new_value (str): New value (for changes, optional)
        created_at (datetime): Timestamp when the event occurred
    """
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    description = Column(Text, nullable=False)
    old_value = Column(String(255), nullable=True)
    new_value = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class SmsLog(Base):
    """Audit row for every outbound SMS attempt."""
    __tablename__ = "sms_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    phone = Column(String(20), nullable=False, index=True)
    message = Column(Text, nullable=False)
    type = Column(String(20), nullable=False, default="other")
    status = Column(String(20), nullable=False)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
