"""
SMS delivery receipt webhooks
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from ..dependencies import get_sms_service
from ..services.sms import WebhookPayloadError
from ..services.sms_service import SMSService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


async def _read_payload(request: Request) -> dict:
    # Twilio posts form data, sms.to posts JSON
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON payload")
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON payload")
        return body
    form = await request.form()
    return dict(form)


@router.post("/sms-dlr/{provider}")
async def sms_delivery_receipt(provider: str, request: Request, sms: SMSService = Depends(get_sms_service)):
    """Record a delivery receipt from an SMS vendor"""
    payload = await _read_payload(request)

    try:
        receipt = await sms.handle_delivery_webhook(provider, payload)
    except KeyError:
        logger.warning(f"[Webhook] Delivery receipt for unknown provider {provider}")
        raise HTTPException(status_code=404, detail="Unknown provider")
    except WebhookPayloadError as e:
        logger.warning(f"[Webhook] Rejected {provider} delivery receipt: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"[Webhook] {provider} message {receipt.message_id} is {receipt.status}")
    return {"received": True, "message_id": receipt.message_id, "status": receipt.status}
