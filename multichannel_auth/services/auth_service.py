"""
Authentication orchestrator for the SMS, email/password and OAuth flows

Every successful login ends with a Multipass URL for the storefront and a
session id for the customer.
"""
import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Optional

from ..core.config import Tenant
from ..core.errors import (
    AuthServiceError,
    AuthenticationError,
    ExternalServiceError,
    InternalError,
    RateLimitedError,
    ValidationError,
)
from ..core.queue import JobQueue
from ..core.security import hash_password, verify_password
from ..utils.email import is_valid_email, mask_email, normalize_email
from ..utils.phone import is_valid_e164, mask_phone
from ..workers.sms_worker import SMSJob, enqueue_sms
from .customers import Customer, CustomerDirectory
from .multipass import MultipassPayload, MultipassService
from .oauth_service import OAuthService
from .otp_service import OTPService
from .session_service import SessionService

logger = logging.getLogger(__name__)

OTP_MESSAGE = "Your verification code is: {code}. Valid for {minutes} minutes."
INVALID_CODE_MESSAGE = "Invalid or expired verification code"
INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
# Set at creation by email registration; a successful email login is the only other writer
EMAIL_AUTH_TAG = "email-auth"


@dataclass
class SendOTPResult:
    job_id: str
    expires_in: int
    resend_after: int


@dataclass
class AuthResult:
    multipass_url: str
    customer: Customer
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "multipass_url": self.multipass_url,
            "session_id": self.session_id,
            "customer": {
                "id": self.customer.id,
                "email": self.customer.email,
                "first_name": self.customer.first_name,
                "last_name": self.customer.last_name,
            },
        }


class AuthService:
    """
    Composes the OTP engine, SMS queue, customer directory, Multipass and
    session services into the login flows.
    """

    def __init__(
        self,
        otp_service: OTPService,
        sms_queue: JobQueue,
        customers: CustomerDirectory,
        multipass: MultipassService,
        sessions: SessionService,
        oauth: OAuthService,
        tenant: Optional[Tenant] = None,
        sms_callback_url: Optional[str] = None,
    ):
        self.otp = otp_service
        self.sms_queue = sms_queue
        self.customers = customers
        self.multipass = multipass
        self.sessions = sessions
        self.oauth = oauth
        self.tenant = tenant
        self.sms_callback_url = sms_callback_url

    # Validation
    @staticmethod
    def validate_phone(phone: str) -> None:
        if not is_valid_e164(phone):
            raise ValidationError.for_field(
                "phone", "Invalid phone number format. Please use E.164 format (e.g., +12025551234)"
            )

    def validate_code(self, code: str) -> None:
        if not isinstance(code, str) or not re.fullmatch(rf"\d{{{self.otp.otp_length}}}", code):
            raise ValidationError.for_field("code", f"Code must be {self.otp.otp_length} digits")

    @staticmethod
    def validate_credentials(email: str, password: str) -> None:
        details = []
        if not is_valid_email(email):
            details.append({"field": "email", "message": "Invalid email format"})
        if not password:
            details.append({"field": "password", "message": "Password is required"})
        if details:
            raise ValidationError("Invalid login request", details=details)

    # SMS flow
    async def send_otp(self, phone: str, resend: bool = False) -> SendOTPResult:
        """
        Issue a code and queue the SMS.

        Gates, in order: resend cooldown, send-attempt window, verification
        block, send block.

        Raises:
            ValidationError: Phone is not E.164
            RateLimitedError: A gate refused the send
            InternalError: The code could not be stored or queued
        """
        self.validate_phone(phone)
        logger.info(f"[Auth] OTP requested for {mask_phone(phone)} (resend={resend})")

        cooldown = await self.otp.can_resend(phone)
        if not cooldown.allowed:
            raise RateLimitedError(
                f"Please wait {cooldown.retry_after} seconds before requesting a new code.",
                retry_after=cooldown.retry_after,
            )

        window = await self.otp.track_send_attempt(phone)
        if not window.allowed:
            raise RateLimitedError(
                "Too many code requests. Please try again later.",
                retry_after=window.retry_after,
            )

        if await self.otp.is_blocked(phone):
            raise RateLimitedError(
                "Too many failed attempts. Please try again later.",
                retry_after=self.otp.block_duration,
            )

        if await self.otp.is_send_blocked(phone):
            raise RateLimitedError(
                "Too many code requests. Please try again later.",
                retry_after=self.otp.send_block_duration,
            )

        await self.otp.record_send_time(phone)

        code = self.otp.generate()
        await self.otp.store(phone, code)

        message = OTP_MESSAGE.format(code=code, minutes=max(1, self.otp.otp_ttl // 60))
        try:
            job = await enqueue_sms(
                self.sms_queue,
                SMSJob(
                    phone=phone,
                    message=message,
                    attempt_number=2 if resend else 1,
                    callback_url=self.sms_callback_url,
                ),
            )
        except Exception as e:
            logger.error(f"[Auth] Failed to queue SMS for {mask_phone(phone)}: {e}")
            raise InternalError("Failed to send verification code")

        return SendOTPResult(
            job_id=job.id,
            expires_in=self.otp.otp_ttl,
            resend_after=self.otp.resend_cooldown,
        )

    async def verify_otp(
        self,
        phone: str,
        code: str,
        return_to: Optional[str] = None,
        tenant: Optional[Tenant] = None,
    ) -> AuthResult:
        """
        Verify a code, find or create the customer and log them in.

        Raises:
            ValidationError: Malformed phone or code
            RateLimitedError: Phone is blocked after too many failures
            AuthenticationError: Wrong or expired code
        """
        self.validate_phone(phone)
        self.validate_code(code)

        if await self.otp.is_blocked(phone):
            raise RateLimitedError(
                "Too many failed attempts. Please try again later.",
                retry_after=self.otp.block_duration,
            )

        if not await self.otp.verify(phone, code):
            raise AuthenticationError(INVALID_CODE_MESSAGE)

        customer = await self._directory(self.customers.find_by_phone(phone))
        if customer is None:
            customer = await self._directory(self.customers.create(phone=phone, tags=["sms-auth"]))
            logger.info(f"[Auth] Created customer {customer.id} for {mask_phone(phone)}")

        await self._annotate(self.customers.set_auth_method(customer.id, "sms"), customer)
        await self._annotate(self.customers.set_phone_verified(customer.id, True), customer)
        await self._annotate(self.customers.set_last_login(customer.id), customer)

        result = await self._complete_login(customer, return_to, tenant)
        logger.info(f"[Auth] SMS login succeeded for customer {customer.id} ({mask_phone(phone)})")
        return result

    # Email flow
    async def login_with_email(
        self,
        email: str,
        password: str,
        return_to: Optional[str] = None,
        tenant: Optional[Tenant] = None,
    ) -> AuthResult:
        """
        Log in with email and password, registering unknown emails.

        Raises:
            ValidationError: Malformed email or empty password
            AuthenticationError: Wrong credentials (never says which part)
        """
        self.validate_credentials(email, password)
        email = normalize_email(email)

        customer = await self._directory(self.customers.find_by_email(email))

        if customer is None:
            password_hash = await asyncio.to_thread(hash_password, password)
            customer = await self._directory(self.customers.create(email=email, tags=[EMAIL_AUTH_TAG]))
            await self._directory(self.customers.set_password_hash(customer.id, password_hash))
            logger.info(f"[Auth] Registered customer {customer.id} ({mask_email(email)})")
        else:
            stored_hash = await self._directory(self.customers.get_password_hash(customer.id))
            if not stored_hash and EMAIL_AUTH_TAG in customer.tags:
                # Registered here but the hash write failed: finish the registration
                password_hash = await asyncio.to_thread(hash_password, password)
                await self._directory(self.customers.set_password_hash(customer.id, password_hash))
                logger.info(f"[Auth] Completed registration for customer {customer.id} ({mask_email(email)})")
            elif not await self._check_password(password, stored_hash):
                logger.warning(f"[Auth] Email login rejected for {mask_email(email)}")
                raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)

        await self._annotate(self.customers.set_auth_method(customer.id, "email"), customer)
        await self._annotate(self.customers.set_last_login(customer.id), customer)

        result = await self._complete_login(customer, return_to, tenant)
        logger.info(f"[Auth] Email login succeeded for customer {customer.id} ({mask_email(email)})")
        return result

    @staticmethod
    async def _check_password(password: str, stored_hash: Optional[str]) -> bool:
        """Fails closed: no hash or any verification error is a mismatch"""
        if not stored_hash:
            return False
        try:
            return await asyncio.to_thread(verify_password, password, stored_hash)
        except Exception as e:
            logger.error(f"[Auth] Password verification error: {e}")
            return False

    # OAuth flow
    def initiate_oauth(self, provider: str, redirect_uri: str) -> Dict[str, str]:
        return self.oauth.initiate_oauth(provider, redirect_uri)

    async def complete_oauth(
        self,
        provider: str,
        code: str,
        state: str,
        redirect_uri: str,
        return_to: Optional[str] = None,
        tenant: Optional[Tenant] = None,
    ) -> AuthResult:
        """
        Finish an OAuth login and sign the customer in by email.

        Raises:
            ValidationError: Unknown provider or missing code
            AuthenticationError: Bad state, or the profile has no email
            ExternalServiceError: Provider or directory failure
        """
        profile = await self.oauth.handle_callback(provider, code, state, redirect_uri)
        if not profile.email:
            logger.warning(f"[Auth] {provider} profile {profile.id} has no email")
            raise AuthenticationError("OAuth login failed")

        email = normalize_email(profile.email)
        customer = await self._directory(self.customers.find_by_email(email))
        if customer is None:
            customer = await self._directory(
                self.customers.create(
                    email=email,
                    phone=profile.phone,
                    first_name=profile.first_name,
                    last_name=profile.last_name,
                    tags=[f"{provider}-auth"],
                )
            )
            logger.info(f"[Auth] Created customer {customer.id} from {provider} profile")

        await self._annotate(self.customers.set_auth_method(customer.id, provider), customer)
        await self._annotate(self.customers.set_last_login(customer.id), customer)

        result = await self._complete_login(customer, return_to, tenant)
        logger.info(f"[Auth] {provider} login succeeded for customer {customer.id} ({mask_email(email)})")
        return result

    # Sessions
    async def restore_session(
        self,
        session_id: str,
        return_to: Optional[str] = None,
        tenant: Optional[Tenant] = None,
    ) -> str:
        """
        Issue a fresh Multipass URL for a live session and extend it.

        Raises:
            AuthenticationError: Session missing or expired
        """
        record = await self.sessions.validate_session(session_id)
        if record is None:
            raise AuthenticationError("Session expired")

        await self.sessions.refresh_session(session_id)
        customer = Customer(id=record.customerId, email=record.customerEmail)
        return self._issue_multipass_url(customer, return_to, self._resolve_tenant(tenant))

    async def logout(self, session_id: str) -> None:
        await self.sessions.invalidate_session(session_id)

    # Helpers
    def _resolve_tenant(self, tenant: Optional[Tenant]) -> Tenant:
        tenant = tenant or self.tenant
        if tenant is None:
            logger.error("[Auth] No storefront tenant configured (SHOP_DOMAIN / MULTIPASS_SECRET)")
            raise InternalError()
        return tenant

    @staticmethod
    def _customer_email(customer: Customer) -> str:
        # Phone-only customers still need an email for Multipass
        return customer.email or f"{customer.phone}@phone.local"

    def _issue_multipass_url(self, customer: Customer, return_to: Optional[str], tenant: Tenant) -> str:
        payload = MultipassPayload(
            email=self._customer_email(customer),
            first_name=customer.first_name,
            last_name=customer.last_name,
            identifier=customer.id,
        )
        try:
            return self.multipass.build_redirect_url(tenant, payload, return_to)
        except Exception as e:
            # Fail closed
            logger.error(f"[Auth] Multipass generation failed for customer {customer.id}: {e}")
            raise InternalError()

    async def _complete_login(self, customer: Customer, return_to: Optional[str], tenant: Optional[Tenant]) -> AuthResult:
        tenant = self._resolve_tenant(tenant)
        multipass_url = self._issue_multipass_url(customer, return_to, tenant)

        session_id = None
        try:
            session_id = await self.sessions.create_session(
                tenant.shop_domain, customer.id, self._customer_email(customer)
            )
        except Exception as e:
            # The Multipass URL already logs the customer in
            logger.error(f"[Auth] Failed to create session for customer {customer.id}: {e}")

        return AuthResult(multipass_url=multipass_url, customer=customer, session_id=session_id)

    @staticmethod
    async def _directory(call: Awaitable):
        """Await a directory call, mapping unexpected failures to ExternalServiceError"""
        try:
            return await call
        except AuthServiceError:
            raise
        except Exception as e:
            logger.error(f"[Auth] Customer directory call failed: {e}")
            raise ExternalServiceError()

    @staticmethod
    async def _annotate(call: Awaitable, customer: Customer) -> None:
        """Best-effort customer metadata update"""
        try:
            await call
        except Exception as e:
            logger.warning(f"[Auth] Failed to update metadata for customer {customer.id}: {e}")
