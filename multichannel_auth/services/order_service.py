"""
Order confirmation codes sent by SMS
"""
import hmac
import json
import logging
import time
from typing import Optional

from ..core.errors import InternalError, ValidationError
from ..core.queue import JobQueue
from ..core.store import KeyValueStore
from ..utils.phone import is_valid_e164, mask_phone
from ..workers.sms_worker import SMSJob, enqueue_sms
from .otp_service import OTPService

logger = logging.getLogger(__name__)

ORDER_OTP_TTL_SECONDS = 600
ORDER_OTP_MESSAGE = (
    "Your order #{order_number} confirmation code is: {code}. "
    "This code expires in {minutes} minutes."
)


class OrderConfirmationService:
    """One-shot confirmation codes keyed by order id"""

    def __init__(
        self,
        store: KeyValueStore,
        otp_service: OTPService,
        sms_queue: JobQueue,
        sms_callback_url: Optional[str] = None,
        ttl_seconds: int = ORDER_OTP_TTL_SECONDS,
    ):
        self._store = store
        self.otp = otp_service
        self.sms_queue = sms_queue
        self.sms_callback_url = sms_callback_url
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(order_id: str) -> str:
        return f"order_otp:{order_id}"

    async def generate_order_otp(self, order_id: str, order_number: str, phone: str) -> str:
        """
        Create a confirmation code for an order and queue it to the customer.

        Returns:
            Queued job id

        Raises:
            ValidationError: Missing order id or bad phone
            InternalError: Store or queue failure
        """
        if not order_id:
            raise ValidationError.for_field("order_id", "Order ID is required")
        if not is_valid_e164(phone):
            raise ValidationError.for_field("phone", "Invalid phone number format")

        code = self.otp.generate()
        record = {"code": code, "phone": phone, "createdAt": int(time.time() * 1000)}

        try:
            await self._store.set(self._key(order_id), json.dumps(record), ttl=self.ttl_seconds)
            job = await enqueue_sms(
                self.sms_queue,
                SMSJob(
                    phone=phone,
                    message=ORDER_OTP_MESSAGE.format(
                        order_number=order_number,
                        code=code,
                        minutes=self.ttl_seconds // 60,
                    ),
                    callback_url=self.sms_callback_url,
                ),
            )
        except Exception as e:
            logger.error(f"[Order] Failed to issue confirmation code for order {order_id}: {e}")
            raise InternalError("Failed to send order confirmation code")

        logger.info(f"[Order] Confirmation code for order {order_id} queued to {mask_phone(phone)}")
        return job.id

    async def verify_order_otp(self, order_id: str, code: str) -> bool:
        """Check and consume an order code. Only one caller can win a given code."""
        key = self._key(order_id)
        try:
            raw = await self._store.get(key)
            if raw is None:
                logger.warning(f"[Order] No live confirmation code for order {order_id}")
                return False

            record = json.loads(raw)
            if not hmac.compare_digest(str(record.get("code", "")), str(code or "")):
                logger.warning(f"[Order] Invalid confirmation code for order {order_id}")
                return False

            if await self._store.delete(key) != 1:
                return False
        except Exception as e:
            logger.error(f"[Order] Failed to verify confirmation code for order {order_id}: {e}")
            raise InternalError("Failed to verify order confirmation code")

        logger.info(f"[Order] Order {order_id} confirmed")
        return True
