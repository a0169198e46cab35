"""
SMS provider interface
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

# Normalized delivery states
PENDING = "pending"
SENT = "sent"
DELIVERED = "delivered"
FAILED = "failed"


@dataclass
class SendResult:
    success: bool
    message_id: str
    provider: str
    error: Optional[str] = None


@dataclass
class DeliveryStatus:
    message_id: str
    status: str
    timestamp: datetime
    error: Optional[str] = None


@dataclass
class DeliveryReceipt:
    message_id: str
    status: str
    delivered_at: Optional[datetime] = None
    failure_reason: Optional[str] = None


@dataclass
class BalanceInfo:
    balance: float
    currency: str

    @property
    def formatted_balance(self) -> str:
        return f"{self.balance:.2f} {self.currency}"


class WebhookPayloadError(ValueError):
    """Raised when a delivery webhook payload cannot be interpreted"""
    pass


class SMSProvider(ABC):
    """
    Abstract SMS provider.

    Providers are ordered by ``priority`` (lower is tried first); ``name``
    must be unique across the registered providers.
    """

    name: str = ""
    priority: int = 100

    @abstractmethod
    async def send(
        self,
        to: str,
        message: str,
        sender: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> SendResult:
        """
        Send a message.

        Vendor failures are reported as ``SendResult(success=False)`` rather
        than raised.

        Args:
            to: Destination phone in E.164 format
            message: Message body
            sender: Optional sender override
            callback_url: Optional delivery receipt webhook URL

        Returns:
            SendResult with the vendor message id on success
        """

    @abstractmethod
    async def check_status(self, message_id: str) -> DeliveryStatus:
        ...

    @abstractmethod
    def parse_delivery_webhook(self, payload: Dict[str, Any]) -> DeliveryReceipt:
        """
        Parse a delivery receipt webhook body.

        Raises:
            WebhookPayloadError: If the payload has no message identifier
        """

    async def get_balance(self) -> BalanceInfo:
        return BalanceInfo(balance=0.0, currency="Credits")

    async def aclose(self) -> None:
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r} priority={self.priority}>"
