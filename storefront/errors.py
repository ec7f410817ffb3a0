"""
Domain exceptions for the Storefront service.

Every exception carries the HTTP status the API layer should answer with and
a short machine-readable ``code``.
"""
from typing import Optional


class StorefrontError(Exception):
    """Base class for all domain errors."""
    status_code = 400
    code = "storefront_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# Checkout

class ValidationError(StorefrontError):
    """Missing or malformed client input. ``field`` names the offending field."""
    code = "validation_error"

    def __init__(self, field: str, message: Optional[str] = None):
        super().__init__(message or f"Missing or invalid field: {field}")
        self.field = field


class ProductNotFound(StorefrontError):
    code = "product_not_found"

    def __init__(self, product_id: int):
        super().__init__(f"Product not found: {product_id}")
        self.product_id = product_id


class ProductInactive(StorefrontError):
    code = "product_inactive"

    def __init__(self, product_id: int):
        super().__init__(f"Product is not active: {product_id}")
        self.product_id = product_id


class InvalidPaymentState(StorefrontError):
    code = "invalid_payment_state"

    def __init__(self, order_id: int, payment_status: str):
        super().__init__(
            f"Order {order_id} has payment status '{payment_status}'; "
            f"a new payment can only be created for pending orders"
        )
        self.order_id = order_id
        self.payment_status = payment_status


class OrderNumberExhausted(StorefrontError):
    status_code = 503
    code = "order_number_exhausted"

    def __init__(self, attempts: int):
        super().__init__(f"Could not allocate a unique order number after {attempts} attempts")
        self.attempts = attempts


class OrderNotFound(StorefrontError):
    status_code = 404
    code = "order_not_found"

    def __init__(self, reference):
        super().__init__(f"Order not found: {reference}")
        self.reference = reference


# Payment gateway

class GatewayFailure(StorefrontError):
    """Any failure talking to the payment gateway."""
    status_code = 502
    code = "gateway_failure"


class GatewayUnreachable(GatewayFailure):
    """Network error or timeout; no HTTP response was received."""
    code = "gateway_unreachable"


class GatewayError(GatewayFailure):
    """Gateway answered with a non-2xx status."""
    code = "gateway_error"

    def __init__(self, message: str, http_status: int):
        super().__init__(message)
        self.http_status = http_status


class GatewayRejected(GatewayFailure):
    """Gateway answered ``status: error`` with a business message."""
    code = "gateway_rejected"


class GatewayProtocolError(GatewayFailure):
    """Gateway answered success but the body lacks required fields."""
    code = "gateway_protocol_error"


# Webhooks

class InvalidSignature(StorefrontError):
    status_code = 401
    code = "invalid_signature"


# Notifications

class NotificationError(StorefrontError):
    """Any failure sending a customer notification."""
    code = "notification_error"


class InvalidPhoneFormat(NotificationError):
    code = "invalid_phone_format"

    def __init__(self, phone: str):
        super().__init__(f"Phone number cannot be normalized: {phone!r}")
        self.phone = phone


class ProviderRejected(NotificationError):
    code = "provider_rejected"


class ProviderUnreachable(NotificationError):
    code = "provider_unreachable"


class RequestSetupError(NotificationError):
    code = "request_setup_error"
