"""
Composition root: builds every service from settings and owns their lifecycle
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .core.config import Settings, Tenant
from .core.queue import InMemoryJobQueue, JobQueue, RedisJobQueue
from .core.store import KeyValueStore, RedisStore, create_store
from .services.auth_service import AuthService
from .services.customers import CustomerDirectory, ShopifyCustomerDirectory
from .services.multipass import MultipassService
from .services.oauth import GoogleOAuthProvider, OAuthProvider
from .services.oauth_service import OAuthService
from .services.order_service import OrderConfirmationService
from .services.otp_service import OTPService
from .services.rate_limit import RateLimiter
from .services.session_service import SessionService
from .services.sms import ConsoleSMSProvider, SMSProvider, build_sms_providers
from .services.sms_service import SMSService
from .workers.sms_worker import SMSWorker

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    store: KeyValueStore
    sms_queue: JobQueue
    sms_service: SMSService
    sms_worker: SMSWorker
    otp_service: OTPService
    rate_limiter: RateLimiter
    sessions: SessionService
    multipass: MultipassService
    oauth: OAuthService
    customers: CustomerDirectory
    auth_service: AuthService
    orders: OrderConfirmationService
    tenant: Optional[Tenant] = None
    start_worker: bool = True
    _started: bool = field(default=False, repr=False)

    async def startup(self) -> None:
        """Connect to the store, recover in-flight jobs and start the SMS worker"""
        if self._started:
            return

        try:
            await self.store.ping()
            logger.info("Store connection verified")
        except Exception as e:
            if self.settings.is_local:
                logger.warning(f"Store connection failed in local/dev environment: {e}")
            else:
                logger.error(f"Store connection failed: {e}")
                raise

        if isinstance(self.sms_queue, RedisJobQueue):
            recovered = await self.sms_queue.requeue_active()
            if recovered:
                logger.info(f"Requeued {recovered} SMS jobs left active by a previous process")

        if self.tenant is None:
            logger.warning("SHOP_DOMAIN / MULTIPASS_SECRET not set; logins cannot complete")

        if self.start_worker:
            await self.sms_worker.start()
        self._started = True

    async def shutdown(self) -> None:
        """Stop the worker and close outbound clients. Errors are logged, not raised."""
        steps = [
            ("SMS worker", self.sms_worker.stop),
            ("SMS providers", self.sms_service.aclose),
            ("OAuth providers", self.oauth.aclose),
        ]
        if hasattr(self.customers, "aclose"):
            steps.append(("customer directory", self.customers.aclose))
        steps.append(("store", self.store.close))

        for name, close in steps:
            try:
                await close()
                logger.info(f"Closed {name}")
            except Exception as e:
                logger.error(f"Shutdown error closing {name}: {e}")
        self._started = False


def build_sms_queue(settings: Settings, store: KeyValueStore) -> JobQueue:
    options = dict(attempts=settings.SMS_JOB_ATTEMPTS, backoff_seconds=settings.SMS_JOB_BACKOFF_SECONDS)
    if isinstance(store, RedisStore):
        return RedisJobQueue(store.client, "sms", **options)
    return InMemoryJobQueue("sms", **options)


def build_container(
    settings: Settings,
    store: Optional[KeyValueStore] = None,
    customers: Optional[CustomerDirectory] = None,
    sms_providers: Optional[Sequence[SMSProvider]] = None,
    oauth_providers: Optional[Sequence[OAuthProvider]] = None,
    sms_queue: Optional[JobQueue] = None,
    start_worker: bool = True,
) -> Container:
    """
    Wire the services together.

    Any collaborator can be injected; the rest are built from settings.

    Raises:
        RuntimeError: No SMS provider or customer directory could be configured
    """
    store = store or create_store(settings.STORE_BACKEND, settings.REDIS_URL)
    sms_queue = sms_queue or build_sms_queue(settings, store)

    providers: List[SMSProvider] = list(sms_providers) if sms_providers is not None else build_sms_providers(settings)
    if not providers:
        if not settings.is_local:
            raise RuntimeError("No SMS provider configured (SMS_TO_* or TWILIO_*)")
        logger.warning("No SMS provider configured; falling back to console provider")
        providers = [ConsoleSMSProvider()]

    if customers is None:
        if not settings.SHOP_DOMAIN or not settings.SHOPIFY_ADMIN_TOKEN:
            raise RuntimeError("SHOP_DOMAIN and SHOPIFY_ADMIN_TOKEN are required for the customer directory")
        customers = ShopifyCustomerDirectory(
            settings.SHOP_DOMAIN,
            settings.SHOPIFY_ADMIN_TOKEN,
            api_version=settings.SHOPIFY_API_VERSION,
        )

    oauth = OAuthService()
    if oauth_providers is not None:
        for provider in oauth_providers:
            oauth.register_provider(provider)
    elif settings.google_oauth_enabled:
        oauth.register_provider(GoogleOAuthProvider(settings.GOOGLE_CLIENT_ID, settings.GOOGLE_CLIENT_SECRET))

    tenant = settings.default_tenant()
    sms_service = SMSService(
        providers,
        store,
        delivery_ttl=settings.SMS_DELIVERY_TTL_SECONDS,
        last_provider_ttl=settings.SMS_LAST_PROVIDER_TTL_SECONDS,
    )
    otp_service = OTPService.from_settings(store, settings)
    sessions = SessionService(store, ttl_seconds=settings.SESSION_TTL_SECONDS)
    multipass = MultipassService()

    auth_service = AuthService(
        otp_service,
        sms_queue,
        customers,
        multipass,
        sessions,
        oauth,
        tenant=tenant,
        sms_callback_url=settings.sms_callback_url,
    )

    return Container(
        settings=settings,
        store=store,
        sms_queue=sms_queue,
        sms_service=sms_service,
        sms_worker=SMSWorker(sms_queue, sms_service, concurrency=settings.SMS_WORKER_CONCURRENCY),
        otp_service=otp_service,
        rate_limiter=RateLimiter(
            store,
            max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        ),
        sessions=sessions,
        multipass=multipass,
        oauth=oauth,
        customers=customers,
        auth_service=auth_service,
        orders=OrderConfirmationService(
            store,
            otp_service,
            sms_queue,
            sms_callback_url=settings.sms_callback_url,
        ),
        tenant=tenant,
        start_worker=start_worker,
    )
