"""Out-of-band delivery of one-time codes.

A channel reports delivery success or failure. A failed delivery never
invalidates the credential that was being delivered.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

import httpx

from .secrets import MaskedSecret

logger = logging.getLogger(__name__)

DEFAULT_SMS_TIMEOUT = 10.0


class DeliveryStatus(Enum):
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass
class DeliveryResult:
    status: DeliveryStatus
    provider_message_id: str | None = None
    error: str | None = None

    @property
    def delivered(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED


def mask_destination(destination: str) -> str:
    """Keep only the last four characters of a phone number or address."""
    if len(destination) <= 4:
        return "***"
    return f"***{destination[-4:]}"


class NotificationChannel(ABC):
    @abstractmethod
    async def send(self, destination: str, message: str) -> DeliveryResult:
        pass


class LoggingChannel(NotificationChannel):
    """Development channel that writes the message to the log instead of sending it."""

    def __init__(self, include_body: bool = False):
        self._include_body = include_body
        self.sent: list[tuple[str, str]] = []

    async def send(self, destination: str, message: str) -> DeliveryResult:
        self.sent.append((destination, message))
        if self._include_body:
            logger.info("Notification to %s: %s", mask_destination(destination), message)
        else:
            logger.info("Notification queued for %s", mask_destination(destination))
        return DeliveryResult(status=DeliveryStatus.DELIVERED)


class HttpSmsChannel(NotificationChannel):
    """SMS delivery through a Twilio-compatible REST gateway."""

    def __init__(
        self,
        base_url: str,
        account_sid: str,
        auth_token: MaskedSecret,
        from_number: str,
        timeout: float = DEFAULT_SMS_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._timeout = timeout
        self._transport = transport

    def _messages_url(self) -> str:
        return f"{self._base_url}/Accounts/{self._account_sid}/Messages.json"

    async def send(self, destination: str, message: str) -> DeliveryResult:
        masked = mask_destination(destination)
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    self._messages_url(),
                    data={"To": destination, "From": self._from_number, "Body": message},
                    auth=(self._account_sid, self._auth_token.get_value()),
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "SMS gateway rejected message to %s: HTTP %d", masked, e.response.status_code
            )
            return DeliveryResult(
                status=DeliveryStatus.FAILED, error=f"HTTP {e.response.status_code}"
            )
        except httpx.HTTPError as e:
            logger.error("SMS delivery to %s failed: %s", masked, type(e).__name__)
            return DeliveryResult(status=DeliveryStatus.FAILED, error=type(e).__name__)

        message_id = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            message_id = body.get("sid")
        else:
            logger.debug("SMS gateway response carried no message id")

        logger.info("SMS delivered to %s", masked)
        return DeliveryResult(status=DeliveryStatus.DELIVERED, provider_message_id=message_id)
