from pydantic import BaseModel
import os
from functools import lru_cache
from typing import Optional


class Tenant(BaseModel):
    """A storefront the service issues hand-off tokens for."""
    shop_domain: str
    multipass_secret: str


class Settings(BaseModel):
    ENV: str = os.getenv("ENV", "dev")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Store / queue backend
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    # memory backend is for local development only, state is lost on restart
    STORE_BACKEND: str = os.getenv("STORE_BACKEND", "redis")  # redis | memory

    # Public URL of this service (used for SMS delivery callbacks and OAuth redirects)
    APP_URL: str = os.getenv("APP_URL", "http://localhost:8000")

    # Storefront / Multipass
    SHOP_DOMAIN: str = os.getenv("SHOP_DOMAIN", "")
    MULTIPASS_SECRET: str = os.getenv("MULTIPASS_SECRET", "")
    SHOPIFY_ADMIN_TOKEN: str = os.getenv("SHOPIFY_ADMIN_TOKEN", "")
    SHOPIFY_API_VERSION: str = os.getenv("SHOPIFY_API_VERSION", "2024-01")

    # OTP policy
    OTP_LENGTH: int = int(os.getenv("OTP_LENGTH", "6"))
    OTP_TTL_SECONDS: int = int(os.getenv("OTP_TTL_SECONDS", "300"))  # 5 minutes
    OTP_MAX_ATTEMPTS: int = int(os.getenv("OTP_MAX_ATTEMPTS", "5"))
    OTP_BLOCK_DURATION_SECONDS: int = int(os.getenv("OTP_BLOCK_DURATION_SECONDS", "900"))  # 15 minutes

    # SMS send policy
    SMS_RESEND_COOLDOWN_SECONDS: int = int(os.getenv("SMS_RESEND_COOLDOWN_SECONDS", "30"))
    SMS_MAX_SEND_ATTEMPTS: int = int(os.getenv("SMS_MAX_SEND_ATTEMPTS", "3"))
    SMS_SEND_ATTEMPTS_WINDOW_SECONDS: int = int(os.getenv("SMS_SEND_ATTEMPTS_WINDOW_SECONDS", "600"))
    SMS_SEND_BLOCK_DURATION_SECONDS: int = int(os.getenv("SMS_SEND_BLOCK_DURATION_SECONDS", "600"))
    SMS_LAST_PROVIDER_TTL_SECONDS: int = int(os.getenv("SMS_LAST_PROVIDER_TTL_SECONDS", "3600"))
    SMS_DELIVERY_TTL_SECONDS: int = int(os.getenv("SMS_DELIVERY_TTL_SECONDS", "86400"))

    # SMS job queue
    SMS_JOB_ATTEMPTS: int = int(os.getenv("SMS_JOB_ATTEMPTS", "3"))
    SMS_JOB_BACKOFF_SECONDS: float = float(os.getenv("SMS_JOB_BACKOFF_SECONDS", "1"))
    SMS_WORKER_CONCURRENCY: int = int(os.getenv("SMS_WORKER_CONCURRENCY", "4"))

    # SMS vendors
    SMS_TO_API_KEY: str = os.getenv("SMS_TO_API_KEY", "")
    SMS_TO_SENDER_ID: str = os.getenv("SMS_TO_SENDER_ID", "")
    TWILIO_ACCOUNT_SID: str = os.getenv("TWILIO_ACCOUNT_SID", "")
    TWILIO_AUTH_TOKEN: str = os.getenv("TWILIO_AUTH_TOKEN", "")
    TWILIO_FROM_NUMBER: str = os.getenv("TWILIO_FROM_NUMBER", "")
    # Console provider for local development (never enable in prod)
    SMS_STUB_PROVIDER: bool = os.getenv("SMS_STUB_PROVIDER", "false").lower() == "true"

    # HTTP rate limiting
    RATE_LIMIT_MAX_REQUESTS: int = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "10"))
    RATE_LIMIT_WINDOW_SECONDS: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))

    # Sessions
    SESSION_TTL_SECONDS: int = int(os.getenv("SESSION_TTL_SECONDS", "86400"))  # 24 hours

    # Passwords
    PASSWORD_HASH_ROUNDS: int = int(os.getenv("PASSWORD_HASH_ROUNDS", "12"))

    # OAuth
    GOOGLE_CLIENT_ID: str = os.getenv("GOOGLE_CLIENT_ID", "")
    GOOGLE_CLIENT_SECRET: str = os.getenv("GOOGLE_CLIENT_SECRET", "")
    OAUTH_STATE_SECRET: str = os.getenv("OAUTH_STATE_SECRET", "dev-oauth-state-change-me")
    OAUTH_STATE_TTL_MINUTES: int = int(os.getenv("OAUTH_STATE_TTL_MINUTES", "10"))
    ALGORITHM: str = "HS256"

    @property
    def is_local(self) -> bool:
        return self.ENV.lower() in {"local", "dev", "test"}

    @property
    def google_oauth_enabled(self) -> bool:
        return bool(self.GOOGLE_CLIENT_ID and self.GOOGLE_CLIENT_SECRET)

    @property
    def sms_callback_url(self) -> str:
        """Delivery receipt webhook URL handed to SMS vendors."""
        return f"{self.APP_URL.rstrip('/')}/api/webhooks/sms-dlr"

    def oauth_redirect_uri(self, provider: str) -> str:
        return f"{self.APP_URL.rstrip('/')}/api/auth/oauth/{provider}/callback"

    def default_tenant(self) -> Optional[Tenant]:
        """
        Tenant for single-store deployments.

        Returns None when the shop domain or Multipass secret is missing, in
        which case logins cannot complete.
        """
        if not self.SHOP_DOMAIN or not self.MULTIPASS_SECRET:
            return None
        return Tenant(shop_domain=self.SHOP_DOMAIN, multipass_secret=self.MULTIPASS_SECRET)


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
