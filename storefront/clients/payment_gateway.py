"""
HTTP client for the MoneySpace payment gateway.

This module builds transaction requests for an order, sends them to the
gateway and normalizes the answer into a ``TransactionResult``. When the
gateway credentials are not configured no request is made and a clearly
marked fallback result is returned instead.
"""
import logging
import re
import time
from decimal import Decimal
from typing import Any, Dict, Literal, Optional, Tuple

import httpx
from pydantic import BaseModel

from .. import models
from ..config import Settings
from ..errors import (
    GatewayError,
    GatewayProtocolError,
    GatewayRejected,
    GatewayUnreachable,
)

logger = logging.getLogger(__name__)

GATEWAY_NAME = "moneyspace"
CREATE_TRANSACTION_PATH = "/CreateTransactionID"
MAX_REFERENCE_LENGTH = 20

# Form first; the same request goes out as JSON if the gateway refuses the encoding
REQUEST_ENCODINGS = ("form", "json")
RETRY_WITH_NEXT_ENCODING = {400, 415}

PAYMENT_TYPES = {
    "qr": "qrnone",
    "card": "card",
}

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


class TransactionResult(BaseModel):
    """
    Normalized gateway answer.

    ``mode`` is "fallback" when no real transaction exists; the
    ``payment_url`` is then a fragment that cannot redirect anywhere.
    """
    mode: Literal["live", "fallback"]
    transaction_id: str
    payment_url: str
    qr_code_url: Optional[str] = None
    fallback_reason: Optional[str] = None

    @property
    def is_fallback(self) -> bool:
        return self.mode == "fallback"


def sanitize_reference(order_number: str) -> str:
    """Order reference as the gateway accepts it: alphanumerics only, at most 20 chars."""
    return _NON_ALNUM.sub("", order_number)[:MAX_REFERENCE_LENGTH]


def split_name(full_name: str) -> Tuple[str, str]:
    parts = (full_name or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def format_amount(amount) -> str:
    return f"{Decimal(str(amount)).quantize(Decimal('0.01'))}"


def gateway_name(method: str) -> str:
    return f"{GATEWAY_NAME}_{method}"


class MoneySpaceClient:
    """Creates payment transactions on MoneySpace."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = settings.moneyspace_base_url.rstrip("/")
        self.secret_id = settings.moneyspace_secret_id
        self.secret_key = settings.moneyspace_secret_key
        self.timeout = settings.gateway_timeout_seconds
        self.frontend_url = settings.frontend_url.rstrip("/")
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.secret_id and self.secret_key)

    def build_request(self, order: models.Order, method: str) -> Dict[str, str]:
        """
        Build the CreateTransactionID form for an order.

        Args:
            order: Order being paid
            method: "qr" or "card"

        Returns:
            Request fields as strings
        """
        firstname, lastname = split_name(order.customer_name)
        address = " ".join(
            part for part in (
                order.shipping_address_line,
                order.subdistrict,
                order.district,
                order.province,
                order.postal_code,
            ) if part
        )
        order_query = f"order={order.order_number}"
        return {
            "secret_id": self.secret_id,
            "secret_key": self.secret_key,
            "firstname": firstname,
            "lastname": lastname,
            "email": order.customer_email or "",
            "phone": order.customer_phone or "",
            "amount": format_amount(order.total_amount),
            "currency": "THB",
            "description": f"Order {order.order_number}",
            "address": address,
            "message": "",
            "feeType": "include",
            "order_id": sanitize_reference(order.order_number),
            "payment_type": PAYMENT_TYPES[method],
            "success_Url": f"{self.frontend_url}/payment/success?{order_query}",
            "fail_Url": f"{self.frontend_url}/payment/fail?{order_query}",
            "cancel_Url": f"{self.frontend_url}/payment/cancel?{order_query}",
            "agreement": "1",
        }

    async def create_transaction(
        self,
        order: models.Order,
        method: str,
        payment_id: Optional[int] = None,
    ) -> TransactionResult:
        """
        Create a gateway transaction for an order.

        Args:
            order: Order being paid
            method: "qr" or "card"
            payment_id: Local payment row, used to label fallback results

        Returns:
            A live result, or a fallback result when credentials are missing

        Raises:
            GatewayUnreachable: network error or timeout
            GatewayError: non-2xx answer
            GatewayRejected: gateway reported ``status: error``
            GatewayProtocolError: success answer without the expected fields
        """
        if not self.configured:
            logger.warning(f"MoneySpace credentials not configured; order {order.order_number} uses fallback mode")
            return self.fallback_transaction(payment_id, reason="unconfigured")

        payload = self.build_request(order, method)
        logger.info(
            f"Creating MoneySpace transaction for {order.order_number}: "
            f"amount={payload['amount']} type={payload['payment_type']}"
        )
        body = await self._post(payload)
        result = self.parse_response(body, method)
        logger.info(f"MoneySpace transaction {result.transaction_id} created for {order.order_number}")
        return result

    def fallback_transaction(self, payment_id: Optional[int], reason: str) -> TransactionResult:
        """Synthetic result used when the gateway is unconfigured or failed."""
        token = f"MOCK-{payment_id if payment_id is not None else 0}-{int(time.time() * 1000)}"
        return TransactionResult(
            mode="fallback",
            transaction_id=token,
            payment_url=f"#fallback-{token}",
            fallback_reason=reason,
        )

    async def _post(self, payload: Dict[str, str]) -> Any:
        url = f"{self.base_url}{CREATE_TRANSACTION_PATH}"
        headers = {"Accept": "application/json"}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt, encoding in enumerate(REQUEST_ENCODINGS, start=1):
                try:
                    if encoding == "form":
                        response = await client.post(url, data=payload, headers=headers)
                    else:
                        response = await client.post(url, json=payload, headers=headers)
                except httpx.TimeoutException as e:
                    raise GatewayUnreachable(f"MoneySpace request timed out after {self.timeout}s: {e}") from e
                except httpx.TransportError as e:
                    raise GatewayUnreachable(f"Cannot connect to MoneySpace at {self.base_url}: {e}") from e

                is_last = attempt == len(REQUEST_ENCODINGS)
                if response.status_code in RETRY_WITH_NEXT_ENCODING and not is_last:
                    logger.warning(
                        f"MoneySpace refused {encoding} request (HTTP {response.status_code}); "
                        f"retrying with {REQUEST_ENCODINGS[attempt]}"
                    )
                    continue

                if not response.is_success:
                    raise GatewayError(
                        f"MoneySpace answered HTTP {response.status_code}: {response.text[:200]}",
                        http_status=response.status_code,
                    )

                try:
                    return response.json()
                except ValueError as e:
                    raise GatewayProtocolError(f"MoneySpace returned a non-JSON body: {response.text[:200]}") from e

    def parse_response(self, body: Any, method: str) -> TransactionResult:
        """
        Normalize a CreateTransactionID answer.

        The gateway sometimes wraps its object in a one-element array.
        """
        if isinstance(body, list):
            if not body:
                raise GatewayProtocolError("MoneySpace returned an empty array")
            body = body[0]
        if not isinstance(body, dict):
            raise GatewayProtocolError(f"Unexpected MoneySpace response type: {type(body).__name__}")

        status = str(body.get("status") or "").lower()
        if status and status != "success":
            message = body.get("description") or body.get("message") or f"status {status}"
            raise GatewayRejected(f"MoneySpace rejected the transaction: {message}")

        transaction_id = body.get("transaction_ID") or body.get("transaction_id")
        if not transaction_id:
            raise GatewayProtocolError("MoneySpace response has no transaction_ID")

        link_payment = body.get("link_payment")
        qr_image = body.get("image_qrprom")
        if method == "card" and not link_payment:
            raise GatewayProtocolError("MoneySpace card response has no link_payment")
        if method == "qr" and not (qr_image or link_payment):
            raise GatewayProtocolError("MoneySpace QR response has neither image_qrprom nor link_payment")

        return TransactionResult(
            mode="live",
            transaction_id=str(transaction_id),
            payment_url=link_payment or qr_image,
            qr_code_url=qr_image if method == "qr" else None,
        )
