"""
HTTP client for the MailBIT SMS provider.

Sends one message to one already-normalized phone number and classifies
failures by where they happened: before the request left, after it was
sent without an answer, or in the provider's answer.
"""
import logging
from typing import Any, Dict, Optional

import httpx

from ..config import Settings
from ..errors import ProviderRejected, ProviderUnreachable, RequestSetupError

logger = logging.getLogger(__name__)

SEND_SMS_PATH = "/api/v2/SendSMS"

# UCS2 so Thai text survives
UNICODE_DATA_CODING = "08"


def mask_phone(phone: str) -> str:
    if not phone or len(phone) < 8:
        return "****"
    return f"{phone[:4]}****{phone[-3:]}"


def _error_message(data: Any, default: str) -> str:
    if isinstance(data, dict):
        for key in ("message", "error", "ErrorDescription"):
            if data.get(key):
                return str(data[key])
    return default


class MailbitClient:
    """Thin wrapper around the MailBIT v2 SendSMS endpoint."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = settings.mailbit_base_url.rstrip("/")
        self.api_key = settings.mailbit_api_key
        self.client_id = settings.mailbit_client_id
        self.sender_id = settings.mailbit_sender_id
        self.timeout = settings.sms_timeout_seconds
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.client_id)

    async def send(self, phone: str, message: str) -> Dict[str, Any]:
        """
        Send an SMS.

        Args:
            phone: Country-code prefixed number, e.g. "66812345678"
            message: Message body

        Returns:
            The provider's JSON response

        Raises:
            RequestSetupError: credentials missing or the request could not be built
            ProviderUnreachable: the request was sent but no response came back
            ProviderRejected: the provider answered with an error
        """
        if not self.configured:
            raise RequestSetupError("MailBIT credentials not configured (MAILBIT_API_KEY, MAILBIT_CLIENT_ID)")
        if not message:
            raise RequestSetupError("SMS message body is empty")

        payload = {
            "ApiKey": self.api_key,
            "ClientId": self.client_id,
            "SenderId": self.sender_id,
            "Message": message,
            "MobileNumbers": phone,
            "Is_Unicode": True,
            "Is_Flash": False,
            "DataCoding": UNICODE_DATA_CODING,
        }
        url = f"{self.base_url}{SEND_SMS_PATH}"
        logger.info(f"Sending SMS to {mask_phone(phone)} via MailBIT ({len(message)} chars)")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers={"Accept": "application/json"},
                )
        except (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError) as e:
            raise ProviderUnreachable(f"No response from MailBIT at {self.base_url}: {e}") from e
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            raise RequestSetupError(f"Invalid MailBIT endpoint {url}: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderUnreachable(f"MailBIT request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}

        if not response.is_success:
            raise ProviderRejected(
                _error_message(data, f"MailBIT API error: HTTP {response.status_code}")
            )

        error_code = data.get("ErrorCode") if isinstance(data, dict) else None
        if error_code not in (None, 0, "0"):
            raise ProviderRejected(_error_message(data, f"MailBIT error code {error_code}"))

        logger.info(f"MailBIT accepted SMS to {mask_phone(phone)}")
        return data
