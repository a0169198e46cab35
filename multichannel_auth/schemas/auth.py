from typing import Optional

from pydantic import BaseModel


class SendOTPRequest(BaseModel):
    phone: str
    resend: bool = False


class SendOTPResponse(BaseModel):
    success: bool = True
    message: str = "Verification code sent"
    expires_in: int
    resend_after: int


class VerifyOTPRequest(BaseModel):
    phone: str
    code: str
    return_to: Optional[str] = None


class EmailLoginRequest(BaseModel):
    email: str
    password: str
    return_to: Optional[str] = None


class CustomerOut(BaseModel):
    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class AuthResponse(BaseModel):
    success: bool = True
    multipass_url: str
    session_id: Optional[str] = None
    customer: CustomerOut


class SessionRequest(BaseModel):
    session_id: str
    return_to: Optional[str] = None


class SessionResponse(BaseModel):
    valid: bool
    multipass_url: Optional[str] = None


class OrderCodeRequest(BaseModel):
    order_number: str
    phone: str


class OrderConfirmRequest(BaseModel):
    code: str
