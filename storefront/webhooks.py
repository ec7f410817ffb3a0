"""
Payment gateway webhook reconciliation.

Verifies an inbound callback, decodes it into a canonical ``WebhookEvent``,
moves the matching order out of ``pending`` payment status and, on
success, notifies the customer in the background.

Callbacks arrive in several historical payload shapes; ``PAYLOAD_SHAPES``
lists them in priority order.
"""
import asyncio
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Sequence, Set, Tuple
from urllib.parse import parse_qsl

from sqlalchemy.orm import Session

from . import crud, schemas
from .config import Settings
from .errors import (
    InvalidSignature,
    NotificationError,
    OrderNotFound,
    StorefrontError,
    ValidationError,
)
from .notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

SUCCESS_TOKENS = {"success", "paysuccess", "ok"}
SIGNATURE_PREFIX = "sha256="


@dataclass(frozen=True)
class PayloadShape:
    """Key names one generation of the gateway used for each field, in priority order."""
    name: str
    order_keys: Tuple[str, ...]
    transaction_keys: Tuple[str, ...]
    status_keys: Tuple[str, ...]
    amount_keys: Tuple[str, ...]


# Checked in order; the first shape whose order key is present wins
PAYLOAD_SHAPES: Tuple[PayloadShape, ...] = (
    PayloadShape(
        name="moneyspace",
        order_keys=("orderid",),
        transaction_keys=("transectionID", "transactionID", "transaction_ID"),
        status_keys=("status",),
        amount_keys=("amount",),
    ),
    PayloadShape(
        name="moneyspec",
        order_keys=("invoiceNo",),
        transaction_keys=("transaction_id", "transactionId", "id"),
        status_keys=("status", "payment_status"),
        amount_keys=("amount",),
    ),
    PayloadShape(
        name="generic",
        order_keys=("order_id", "order_number", "orderNumber"),
        transaction_keys=("transaction_id", "transaction_ID", "id"),
        status_keys=("status", "payment_status"),
        amount_keys=("amount", "amount_paid"),
    ),
)
GENERIC_SHAPE = PAYLOAD_SHAPES[-1]


def extract_field(payload: Mapping[str, Any], keys: Sequence[str]) -> Optional[str]:
    """Return the first non-empty value among ``keys``, as a string."""
    for key in keys:
        value = payload.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def detect_shape(payload: Mapping[str, Any]) -> PayloadShape:
    for shape in PAYLOAD_SHAPES:
        if extract_field(payload, shape.order_keys) is not None:
            return shape
    return GENERIC_SHAPE


def normalize_status(raw_status: Optional[str]) -> str:
    """Map gateway status tokens to "success"; anything else is "failed"."""
    if raw_status and raw_status.strip().lower() in SUCCESS_TOKENS:
        return "success"
    return "failed"


def parse_amount(raw_amount: Optional[str]) -> Optional[Decimal]:
    if raw_amount is None:
        return None
    try:
        return Decimal(raw_amount.replace(",", ""))
    except InvalidOperation:
        return None


def decode_webhook(payload: Mapping[str, Any]) -> schemas.WebhookEvent:
    """
    Decode a gateway callback into the canonical event record.

    Never raises on missing fields; absent values come back as ``None``.
    """
    shape = detect_shape(payload)
    raw_status = extract_field(payload, shape.status_keys)
    return schemas.WebhookEvent(
        shape=shape.name,
        order_reference=extract_field(payload, shape.order_keys),
        transaction_id=extract_field(payload, shape.transaction_keys),
        raw_status=raw_status,
        status=normalize_status(raw_status),
        amount=parse_amount(extract_field(payload, shape.amount_keys)),
        payload=dict(payload),
    )


def parse_payload(raw_body: bytes) -> Dict[str, Any]:
    """
    Read a webhook body sent either as JSON or as a form.

    Raises:
        ValidationError: the body is neither a JSON object nor a form
    """
    text = raw_body.decode("utf-8", errors="replace").strip()
    if not text:
        raise ValidationError("payload", "Webhook body is empty")

    try:
        data = json.loads(text)
    except ValueError:
        data = dict(parse_qsl(text, keep_blank_values=True))

    if isinstance(data, list) and len(data) == 1:
        data = data[0]
    if not isinstance(data, dict) or not data:
        raise ValidationError("payload", "Webhook body is not a JSON object or form")
    return data


def compute_signature(secret_key: str, raw_body: bytes) -> str:
    return hmac.new(secret_key.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


@dataclass
class _Reconciled:
    result: schemas.WebhookResult
    notify_phone: Optional[str] = None
    notify_order_number: Optional[str] = None


class WebhookReconciler:
    """Applies gateway callbacks to orders and payments."""

    def __init__(self, settings: Settings, dispatcher: NotificationDispatcher):
        self.secret_key = settings.moneyspace_secret_key
        self.configured = settings.gateway_configured
        self.dispatcher = dispatcher
        self._notifications: Set[asyncio.Task] = set()

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> None:
        """
        Check the HMAC-SHA256 of the raw body against the signature header.

        Skipped when gateway credentials are not configured.

        Raises:
            InvalidSignature: signature missing or wrong
        """
        if not self.configured:
            logger.warning("Gateway credentials not configured; skipping webhook signature check")
            return

        provided = (signature or "").strip()
        if provided.lower().startswith(SIGNATURE_PREFIX):
            provided = provided[len(SIGNATURE_PREFIX):]
        if not provided:
            raise InvalidSignature("Missing webhook signature")

        expected = compute_signature(self.secret_key, raw_body)
        if not hmac.compare_digest(expected, provided.lower()):
            raise InvalidSignature("Webhook signature mismatch")

    async def handle_webhook(
        self,
        db: Session,
        raw_body: bytes,
        signature: Optional[str],
    ) -> schemas.WebhookResult:
        """
        Verify, decode and apply one gateway callback.

        Never raises. Failures come back as ``success=False`` with an error
        code so the HTTP layer can answer with a status the gateway retries.

        Args:
            db: Database session
            raw_body: Request body exactly as received
            signature: Value of the gateway signature header, if any

        Returns:
            Reconciliation outcome
        """
        try:
            self.verify_signature(raw_body, signature)
            event = decode_webhook(parse_payload(raw_body))
            logger.info(
                f"Webhook received: shape={event.shape} order={event.order_reference} "
                f"status={event.raw_status} transaction={event.transaction_id}"
            )
            reconciled = self.reconcile(db, event)
        except OrderNotFound as e:
            logger.error(f"Webhook for unknown order {e.reference}; the callback may be misrouted or the order lost")
            return schemas.WebhookResult(success=False, error=e.code)
        except InvalidSignature as e:
            logger.warning(f"Webhook rejected: {e}")
            return schemas.WebhookResult(success=False, error=e.code)
        except StorefrontError as e:
            logger.error(f"Webhook processing failed ({e.code}): {e}")
            return schemas.WebhookResult(success=False, error=e.code)
        except Exception as e:
            logger.exception(f"Unexpected error while processing webhook: {e}")
            return schemas.WebhookResult(success=False, error="internal_error")

        if reconciled.notify_phone is not None:
            self._schedule_notification(reconciled.notify_phone, reconciled.notify_order_number)
        return reconciled.result

    def reconcile(self, db: Session, event: schemas.WebhookEvent) -> _Reconciled:
        """
        Apply a decoded event in one transaction.

        Orders already paid or failed are left untouched; the redelivery is
        only recorded on the timeline and never notifies again.

        Raises:
            ValidationError: the event carries no order reference
            OrderNotFound: no order matches the reference
        """
        if not event.order_reference:
            raise ValidationError("order_id", "Webhook payload has no order reference")

        order = crud.get_order_by_reference(db, event.order_reference)
        if order is None:
            raise OrderNotFound(event.order_reference)

        order_id = order.id
        order_number = order.order_number
        phone = order.customer_phone
        current_status = order.payment_status
        new_status = "paid" if event.status == "success" else "failed"

        if current_status != "pending":
            return self._record_redelivery(db, order_id, order_number, current_status, event)

        try:
            if event.amount is not None and event.amount != Decimal(order.total_amount):
                logger.warning(
                    f"Webhook amount {event.amount} differs from order {order_number} total {order.total_amount}"
                )
                crud.add_order_event(
                    db,
                    order_id=order_id,
                    event_type="amount_mismatch",
                    description=f"Gateway reported {event.amount}, order total is {order.total_amount}",
                    old_value=str(order.total_amount),
                    new_value=str(event.amount),
                )

            payment = crud.get_latest_payment_for_order(db, order_id)
            if payment is None:
                logger.warning(f"Order {order_number} has no payment row; updating order status only")
            else:
                crud.update_payment(
                    db,
                    payment,
                    status=event.status,
                    gateway_transaction_id=event.transaction_id,
                    raw_response=event.payload,
                )

            applied = crud.update_order_payment_status(db, order_id, new_status)
            if not applied:
                # Another delivery moved the order first
                db.rollback()
                refreshed = crud.get_order(db, order_id)
                return self._record_redelivery(db, order_id, order_number, refreshed.payment_status, event)

            crud.add_order_event(
                db,
                order_id=order_id,
                event_type="payment_reconciled",
                description=f"Gateway reported '{event.raw_status}' (transaction {event.transaction_id})",
                old_value="pending",
                new_value=new_status,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info(f"Order {order_number} payment status pending -> {new_status}")
        result = schemas.WebhookResult(success=True, order_id=order_id)
        if new_status == "paid":
            return _Reconciled(result, notify_phone=phone, notify_order_number=order_number)
        return _Reconciled(result)

    def _record_redelivery(
        self,
        db: Session,
        order_id: int,
        order_number: str,
        current_status: str,
        event: schemas.WebhookEvent,
    ) -> _Reconciled:
        logger.warning(
            f"Webhook redelivered for order {order_number} already '{current_status}' "
            f"(gateway status '{event.raw_status}'); ignoring"
        )
        try:
            crud.add_order_event(
                db,
                order_id=order_id,
                event_type="webhook_redelivered",
                description=f"Ignored gateway status '{event.raw_status}' (transaction {event.transaction_id})",
                old_value=current_status,
                new_value=current_status,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        return _Reconciled(schemas.WebhookResult(success=True, order_id=order_id, duplicate=True))

    def _schedule_notification(self, phone: str, order_number: str) -> None:
        task = asyncio.create_task(self._notify(phone, order_number))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def _notify(self, phone: str, order_number: str) -> None:
        try:
            await self.dispatcher.send_payment_success_sms(phone, order_number)
        except NotificationError as e:
            logger.error(f"Payment notification for order {order_number} not delivered ({e.code}): {e}")
        except Exception as e:
            logger.exception(f"Unexpected error notifying order {order_number}: {e}")

    async def wait_for_notifications(self) -> None:
        """Wait for notifications still in flight."""
        if self._notifications:
            await asyncio.gather(*list(self._notifications), return_exceptions=True)
