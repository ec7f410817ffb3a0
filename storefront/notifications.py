"""
Customer notifications.

Normalizes the customer's phone number, renders the payment confirmation
and hands it to the SMS provider. Every attempt is written to ``sms_logs``.
Callers treat this as best effort: failures are raised to the caller, which
logs them and moves on.
"""
import asyncio
import logging
import re
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from . import crud
from .clients.sms_client import MailbitClient, mask_phone
from .config import Settings
from .errors import InvalidPhoneFormat, NotificationError, RequestSetupError

logger = logging.getLogger(__name__)

SUBSCRIBER_DIGITS = 9
_SEPARATORS = re.compile(r"[\s\-\.\(\)]")


def normalize_phone(phone: str, country_code: str = "66") -> str:
    """
    Convert a local or international phone number to ``<cc><9 digits>``.

    "081-234-5678", "+66 81 234 5678" and "812345678" all become
    "66812345678".

    Raises:
        InvalidPhoneFormat: the result does not match ``^<cc>\\d{9}$``
    """
    if not phone:
        raise InvalidPhoneFormat(phone)

    normalized = _SEPARATORS.sub("", phone)
    if normalized.startswith("+"):
        normalized = normalized[1:]

    if normalized.startswith("0"):
        normalized = country_code + normalized[1:]
    elif not (normalized.startswith(country_code) and len(normalized) == len(country_code) + SUBSCRIBER_DIGITS):
        normalized = country_code + normalized

    if not re.fullmatch(rf"{re.escape(country_code)}\d{{{SUBSCRIBER_DIGITS}}}", normalized):
        raise InvalidPhoneFormat(phone)
    return normalized


class NotificationDispatcher:
    """Sends payment notifications through the SMS provider."""

    def __init__(
        self,
        settings: Settings,
        sms_client: Optional[MailbitClient] = None,
        session_factory: Optional[Callable[[], Session]] = None,
    ):
        self.country_code = settings.sms_country_code
        self.template = settings.sms_payment_success_template
        self.sms_client = sms_client or MailbitClient(settings)
        self._session_factory = session_factory

    def render_payment_success(self, order_number: str) -> str:
        return self.template.format(order_number=order_number)

    async def send_payment_success_sms(self, phone: str, order_number: str) -> Dict[str, Any]:
        """
        Tell the customer their payment went through.

        Args:
            phone: Customer phone as stored on the order
            order_number: Order business key

        Returns:
            The provider's raw response

        Raises:
            InvalidPhoneFormat: the phone number cannot be normalized
            RequestSetupError: bad input or missing provider credentials
            ProviderRejected / ProviderUnreachable: provider failure
        """
        if not order_number or not order_number.strip():
            raise RequestSetupError("Order number is required for the payment SMS")
        message = self.render_payment_success(order_number)

        try:
            normalized = normalize_phone(phone, self.country_code)
            response = await self.sms_client.send(normalized, message)
        except NotificationError as e:
            logger.error(f"Payment SMS for {order_number} to {mask_phone(phone)} failed: {e.code}: {e}")
            await asyncio.to_thread(self._record, phone, message, "failed", f"{e.code}: {e}")
            raise

        await asyncio.to_thread(self._record, normalized, message, "sent")
        logger.info(f"Payment SMS for {order_number} sent to {mask_phone(normalized)}")
        return response

    def _record(self, phone: str, message: str, status: str, error: Optional[str] = None) -> None:
        """Write one sms_logs row. Blocking; callers run it in a worker thread."""
        if self._session_factory is None:
            return
        db = self._session_factory()
        try:
            crud.insert_sms_log(db, phone=(phone or "")[:20], message=message, status=status, error=error)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.warning(f"Could not write SMS log: {e}")
        finally:
            db.close()
