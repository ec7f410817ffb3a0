"""
Payment creation.

Records a pending Payment for an order, asks the gateway for a transaction
and shapes the public response. Gateway failures never reach the customer:
they turn into a fallback response that says so explicitly.
"""
import logging
from typing import Optional
from sqlalchemy.orm import Session

from . import crud, models, schemas, validators
from .clients.payment_gateway import MoneySpaceClient, TransactionResult, gateway_name
from .config import Settings
from .errors import GatewayFailure, InvalidPaymentState, ValidationError

logger = logging.getLogger(__name__)


def ensure_payable(order: models.Order) -> None:
    """
    Check that a new payment may be started for this order.

    Raises:
        InvalidPaymentState: the order is already paid or failed
    """
    if order.payment_status != "pending":
        raise InvalidPaymentState(order.id, order.payment_status)


class PaymentService:
    """Ties orders to payment rows and gateway transactions."""

    def __init__(self, settings: Settings, gateway: Optional[MoneySpaceClient] = None):
        self.gateway = gateway or MoneySpaceClient(settings)

    async def create_payment(self, db: Session, order: models.Order, method: str) -> schemas.PaymentCreated:
        """
        Start a payment for a pending order.

        The payment row is not bound to the gateway transaction here; the
        webhook does that once the gateway reports the outcome.

        Args:
            db: Database session
            order: Order to pay; callers run ``ensure_payable`` first
            method: "qr" or "card"

        Returns:
            Payment URL and transaction reference, flagged when in fallback mode
        """
        is_valid, error_message = validators.validate_payment_method(method)
        if not is_valid:
            raise ValidationError("method", error_message)

        order_number = order.order_number
        try:
            payment = crud.insert_payment(db, order.id, gateway_name(method), order.total_amount)
            crud.add_order_event(
                db,
                order_id=order.id,
                event_type="payment_created",
                description=f"Payment {payment.id} created via {payment.gateway}",
                new_value="pending",
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        payment_id = payment.id
        logger.info(f"Payment {payment_id} created for order {order_number} ({method})")

        try:
            result = await self.gateway.create_transaction(order, method, payment_id)
        except GatewayFailure as e:
            logger.error(f"Gateway failure for order {order_number} ({e.code}): {e}; using fallback mode")
            result = self.gateway.fallback_transaction(payment_id, reason=e.code)
        except Exception as e:
            logger.exception(f"Unexpected error creating transaction for order {order_number}: {e}")
            result = self.gateway.fallback_transaction(payment_id, reason="unexpected_error")

        if result.is_fallback:
            logger.warning(
                f"Payment {payment_id} for order {order_number} is in fallback mode "
                f"({result.fallback_reason}); customer has no working payment link"
            )
        return self._to_response(payment_id, result)

    @staticmethod
    def _to_response(payment_id: int, result: TransactionResult) -> schemas.PaymentCreated:
        return schemas.PaymentCreated(
            payment_id=payment_id,
            payment_url=result.payment_url,
            qr_code=result.qr_code_url,
            transaction_id=result.transaction_id,
            fallback=result.is_fallback,
            fallback_reason=result.fallback_reason,
        )
