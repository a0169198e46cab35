"""
Order confirmation code routes
"""
from fastapi import APIRouter, Depends

from ..core.errors import AuthenticationError
from ..dependencies import get_order_service
from ..schemas.auth import OrderCodeRequest, OrderConfirmRequest
from ..services.order_service import OrderConfirmationService

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.post("/{order_id}/confirmation-code")
async def send_order_code(
    order_id: str,
    payload: OrderCodeRequest,
    orders: OrderConfirmationService = Depends(get_order_service),
):
    job_id = await orders.generate_order_otp(order_id, payload.order_number, payload.phone)
    return {"success": True, "job_id": job_id, "expires_in": orders.ttl_seconds}


@router.post("/{order_id}/confirm")
async def confirm_order(
    order_id: str,
    payload: OrderConfirmRequest,
    orders: OrderConfirmationService = Depends(get_order_service),
):
    if not await orders.verify_order_otp(order_id, payload.code):
        raise AuthenticationError("Invalid or expired confirmation code")
    return {"success": True, "order_id": order_id}
