"""
Storefront authentication routes: SMS OTP, email/password, OAuth and sessions
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse

from ..core.config import settings
from ..schemas.auth import (
    AuthResponse,
    EmailLoginRequest,
    SendOTPRequest,
    SendOTPResponse,
    SessionRequest,
    SessionResponse,
    VerifyOTPRequest,
)
from ..dependencies import get_auth_service
from ..services.auth_service import AuthService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

RETURN_TO_COOKIE = "oauth_return_to"
SESSION_COOKIE = "auth_session"


@router.post("/sms/send", response_model=SendOTPResponse)
async def send_sms_code(payload: SendOTPRequest, auth: AuthService = Depends(get_auth_service)):
    result = await auth.send_otp(payload.phone, resend=payload.resend)
    return SendOTPResponse(expires_in=result.expires_in, resend_after=result.resend_after)


@router.post("/sms/verify", response_model=AuthResponse)
async def verify_sms_code(payload: VerifyOTPRequest, auth: AuthService = Depends(get_auth_service)):
    result = await auth.verify_otp(payload.phone, payload.code, return_to=payload.return_to)
    return result.to_dict()


@router.post("/email/login", response_model=AuthResponse)
async def email_login(payload: EmailLoginRequest, auth: AuthService = Depends(get_auth_service)):
    result = await auth.login_with_email(payload.email, payload.password, return_to=payload.return_to)
    return result.to_dict()


@router.get("/oauth/{provider}")
async def oauth_start(provider: str, return_to: Optional[str] = None, auth: AuthService = Depends(get_auth_service)):
    """Redirect the browser to the provider's consent screen"""
    flow = auth.initiate_oauth(provider, settings.oauth_redirect_uri(provider))
    response = RedirectResponse(flow["authorization_url"], status_code=302)
    if return_to:
        response.set_cookie(
            RETURN_TO_COOKIE,
            return_to,
            max_age=settings.OAUTH_STATE_TTL_MINUTES * 60,
            httponly=True,
            secure=not settings.is_local,
            samesite="lax",
        )
    return response


@router.get("/oauth/{provider}/callback")
async def oauth_callback(
    provider: str,
    request: Request,
    code: str = "",
    state: str = "",
    auth: AuthService = Depends(get_auth_service),
):
    """Finish the OAuth flow and hand the customer to the storefront"""
    result = await auth.complete_oauth(
        provider,
        code,
        state,
        settings.oauth_redirect_uri(provider),
        return_to=request.cookies.get(RETURN_TO_COOKIE),
    )
    response = RedirectResponse(result.multipass_url, status_code=302)
    response.delete_cookie(RETURN_TO_COOKIE)
    if result.session_id:
        response.set_cookie(
            SESSION_COOKIE,
            result.session_id,
            max_age=settings.SESSION_TTL_SECONDS,
            httponly=True,
            secure=not settings.is_local,
            samesite="lax",
        )
    return response


@router.post("/session/validate", response_model=SessionResponse)
async def validate_session(payload: SessionRequest, auth: AuthService = Depends(get_auth_service)):
    """Exchange a live session for a fresh storefront login URL"""
    multipass_url = await auth.restore_session(payload.session_id, return_to=payload.return_to)
    return SessionResponse(valid=True, multipass_url=multipass_url)


@router.post("/session/logout")
async def logout(payload: SessionRequest, auth: AuthService = Depends(get_auth_service)):
    await auth.logout(payload.session_id)
    return {"success": True}
