"""
Console SMS provider for dev environments
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ...core.config import settings
from ...utils.phone import mask_phone
from .base import DeliveryReceipt, DeliveryStatus, SendResult, SMSProvider, WebhookPayloadError, DELIVERED

logger = logging.getLogger(__name__)


class ConsoleSMSProvider(SMSProvider):
    """
    Logs messages instead of sending them.

    Registered last (priority 99) when SMS_STUB_PROVIDER=true so local setups
    without vendor credentials still complete the SMS flow.
    """

    name = "console"
    priority = 99

    def __init__(self):
        env = str(getattr(settings, "ENV", "dev")).lower()
        if env in ("prod", "production"):
            logger.warning("[SMS][Console] WARNING: Console provider enabled in production! This should not happen.")
        else:
            logger.info(f"[SMS][Console] Console provider enabled for environment: {env}")

    async def send(self, to, message, sender=None, callback_url=None) -> SendResult:
        message_id = f"console-{uuid.uuid4().hex[:12]}"
        logger.info(f"[SMS][Console] To {mask_phone(to)}: {message}")
        return SendResult(success=True, message_id=message_id, provider=self.name)

    async def check_status(self, message_id: str) -> DeliveryStatus:
        return DeliveryStatus(message_id=message_id, status=DELIVERED, timestamp=datetime.now(timezone.utc))

    def parse_delivery_webhook(self, payload: Dict[str, Any]) -> DeliveryReceipt:
        message_id: Optional[str] = payload.get("message_id")
        if not message_id:
            raise WebhookPayloadError("Missing message_id in console webhook payload")
        return DeliveryReceipt(message_id=message_id, status=payload.get("status") or DELIVERED)
