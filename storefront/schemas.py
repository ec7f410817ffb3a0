"""
Pydantic schemas for request/response validation in the Storefront service.

These schemas define the structure of data for API requests and responses,
plus the canonical records passed between the payment components.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CartItem(BaseModel):
    """Schema for one cart line submitted at checkout."""
    product_id: int = Field(..., description="Catalog product ID")
    quantity: int = Field(..., gt=0, description="Quantity ordered")
    unit_price: Decimal = Field(default=Decimal("0"), ge=0, description="Client-side price; replaced server-side")


class OrderCreate(BaseModel):
    """
    Schema for checkout.

    Every field is required, but they are declared optional here so the
    order assembler can report the missing field by name.
    """
    phone: Optional[str] = None
    email: Optional[str] = None
    customer_name: Optional[str] = None
    address_line: Optional[str] = None
    province: Optional[str] = None
    district: Optional[str] = None
    subdistrict: Optional[str] = None
    postal_code: Optional[str] = None
    cart_items: Optional[List[CartItem]] = None


class OrderCreated(BaseModel):
    """Result of a successful checkout."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    order_id: int
    order_number: str
    total_amount: Decimal


class OrderItem(BaseModel):
    """Schema for a persisted order line."""
    id: int
    product_id: int
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    is_free_gift: bool

    class Config:
        from_attributes = True


class Order(BaseModel):
    """
    Schema for order responses, includes all database fields and the order lines.

    Attributes:
        id (int): Order's numeric identifier
        order_number (str): Business key
        total_amount (Decimal): Sum of line totals
        payment_status (str): pending | paid | failed
        fulfill_status (str): pending | processing | shipped | completed | cancelled
        items (List[OrderItem]): Order lines
    """
    id: int
    order_number: str
    customer_phone: str
    customer_email: str
    customer_name: str
    shipping_address_line: str
    province: str
    district: str
    subdistrict: str
    postal_code: str
    total_amount: Decimal
    payment_status: str
    fulfill_status: str
    created_at: datetime
    updated_at: datetime
    items: List[OrderItem] = Field(default_factory=list)

    class Config:
        from_attributes = True


class OrderEvent(BaseModel):
    """Schema for order timeline events."""
    id: int
    order_id: int
    event_type: str
    description: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentCreate(BaseModel):
    """Schema for initiating a payment."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    order_id: Optional[int] = None
    method: Optional[str] = None


class PaymentCreated(BaseModel):
    """
    Public payment response.

    ``fallback`` is true when no real gateway transaction exists and
    ``payment_url`` is a non-functional placeholder.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    payment_id: int
    payment_url: str
    qr_code: Optional[str] = None
    transaction_id: str
    fallback: bool = False
    fallback_reason: Optional[str] = None


class WebhookEvent(BaseModel):
    """Canonical gateway callback, independent of the payload shape it came from."""
    shape: str
    order_reference: Optional[str] = None
    transaction_id: Optional[str] = None
    raw_status: Optional[str] = None
    status: Literal["success", "failed"] = "failed"
    amount: Optional[Decimal] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class WebhookResult(BaseModel):
    """Outcome of webhook reconciliation."""
    success: bool
    order_id: Optional[int] = None
    duplicate: bool = False
    error: Optional[str] = None
