"""
SMS worker

Pulls SMS jobs from the queue and sends them through the SMS service. A failed
send raises so the queue applies its retry/backoff policy.
"""
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from ..core.queue import Job, JobQueue
from ..services.sms.base import SendResult
from ..services.sms_service import SMSService
from ..utils.phone import mask_phone

logger = logging.getLogger(__name__)


class SMSDeliveryError(Exception):
    """Raised by the worker when every provider failed for a job"""
    pass


@dataclass
class SMSJob:
    phone: str
    message: str
    attempt_number: int = 1
    provider: Optional[str] = None  # last provider used, for rotation
    callback_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SMSJob":
        return cls(
            phone=data["phone"],
            message=data["message"],
            attempt_number=int(data.get("attempt_number") or 1),
            provider=data.get("provider"),
            callback_url=data.get("callback_url"),
        )


async def enqueue_sms(queue: JobQueue, sms_job: SMSJob) -> Job:
    """Hand an SMS to the queue for delivery"""
    job = await queue.enqueue(sms_job.to_dict())
    logger.info(f"[SMSWorker] Queued SMS job {job.id} for {mask_phone(sms_job.phone)}")
    return job


class SMSWorker:
    """Worker pool that processes SMS jobs"""

    def __init__(self, queue: JobQueue, sms_service: SMSService, concurrency: int = 4):
        self.queue = queue
        self.sms_service = sms_service
        self.concurrency = concurrency
        self.running = False

        self.queue.on("completed", self._on_completed)
        self.queue.on("failed", self._on_failed)

    async def handle(self, job: Job) -> SendResult:
        sms_job = SMSJob.from_dict(job.data)
        attempt = sms_job.attempt_number + job.attempts_made

        logger.info(
            f"[SMSWorker] Processing job {job.id} for {mask_phone(sms_job.phone)} "
            f"(attempt {job.attempt_number}/{job.max_attempts})"
        )

        result = await self.sms_service.send_sms(
            sms_job.phone,
            sms_job.message,
            callback_url=sms_job.callback_url,
            attempt_number=attempt,
            last_provider=sms_job.provider,
        )

        if not result.success:
            will_retry = job.attempt_number < job.max_attempts
            logger.error(
                f"[SMSWorker] Job {job.id} send failed for {mask_phone(sms_job.phone)} "
                f"(will_retry={will_retry}): {result.error}"
            )
            raise SMSDeliveryError(result.error or "SMS send failed")

        return result

    async def _on_completed(self, job: Job, result: SendResult) -> None:
        logger.info(
            f"[SMSWorker] Job {job.id} delivered via {result.provider} "
            f"(message_id={result.message_id}, retried={job.attempts_made > 0})"
        )

    async def _on_failed(self, job: Job, error: Exception) -> None:
        logger.error(
            f"[SMSWorker] Job {job.id} for {mask_phone(job.data.get('phone', ''))} "
            f"exhausted {job.attempts_made} attempts and was parked: {error}"
        )

    async def start(self):
        """Start the SMS worker pool"""
        if self.running:
            logger.warning("SMS worker is already running")
            return

        self.queue.process(self.handle, concurrency=self.concurrency)
        self.running = True
        logger.info(f"SMS worker started ({self.concurrency} workers)")

    async def stop(self):
        """Stop the SMS worker pool"""
        if not self.running:
            return

        self.running = False
        await self.queue.close()
        logger.info("SMS worker stopped")
