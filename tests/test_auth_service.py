"""
Login flows end to end over in-memory infrastructure
"""
from unittest.mock import AsyncMock

import httpx
import pytest

from multichannel_auth.core.errors import (
    AuthenticationError,
    ExternalServiceError,
    InternalError,
    RateLimitedError,
    ValidationError,
)
from multichannel_auth.core.security import hash_password
from multichannel_auth.services.auth_service import AuthService
from multichannel_auth.services.oauth import GoogleOAuthProvider
from multichannel_auth.services.sms_service import SMSService
from multichannel_auth.workers.sms_worker import SMSWorker

from tests.helpers.fakes import TEST_PHONE, TEST_SECRET, TEST_SHOP, ScriptedSMSProvider
from tests.test_oauth import REDIRECT_URI, google_handler

CALLBACK_URL = "https://auth.example.com/api/webhooks/sms-dlr"


@pytest.fixture
def sms_provider():
    return ScriptedSMSProvider("sms.to", 1)


@pytest.fixture
def auth(otp_service, queue, customers, multipass, sessions, oauth, tenant):
    return AuthService(
        otp_service,
        queue,
        customers,
        multipass,
        sessions,
        oauth,
        tenant=tenant,
        sms_callback_url=CALLBACK_URL,
    )


@pytest.fixture
def worker(queue, sms_provider, store):
    return SMSWorker(queue, SMSService([sms_provider], store))


async def _deliver_code(queue, worker, sms_provider) -> str:
    """Run the queued SMS job and pull the code out of the message"""
    assert await queue.run_once(worker.handle)
    message = sms_provider.sent[-1]["message"]
    return message.split(": ")[1].split(".")[0]


class TestSendOTP:
    @pytest.mark.asyncio
    async def test_queues_sms_with_code(self, auth, queue, worker, sms_provider):
        result = await auth.send_otp(TEST_PHONE)

        assert result.expires_in == 300
        assert result.resend_after == 30
        job = await queue.get_job(result.job_id)
        assert job.data["phone"] == TEST_PHONE
        assert job.data["attempt_number"] == 1
        assert job.data["callback_url"] == CALLBACK_URL

        code = await _deliver_code(queue, worker, sms_provider)
        assert len(code) == 6 and code.isdigit()
        assert sms_provider.sent[-1]["message"] == f"Your verification code is: {code}. Valid for 5 minutes."

    @pytest.mark.asyncio
    async def test_invalid_phone(self, auth, queue):
        with pytest.raises(ValidationError) as exc:
            await auth.send_otp("2025551234")
        assert exc.value.details[0]["field"] == "phone"
        assert (await queue.counts())["waiting"] == 0

    @pytest.mark.asyncio
    async def test_cooldown_between_sends(self, auth):
        await auth.send_otp(TEST_PHONE)

        with pytest.raises(RateLimitedError) as exc:
            await auth.send_otp(TEST_PHONE, resend=True)
        assert 1 <= exc.value.retry_after <= 30

    @pytest.mark.asyncio
    async def test_resend_marks_rotation(self, auth, store, queue):
        await auth.send_otp(TEST_PHONE)
        await store.delete(f"otp:lastsend:{TEST_PHONE}")

        result = await auth.send_otp(TEST_PHONE, resend=True)

        assert (await queue.get_job(result.job_id)).data["attempt_number"] == 2

    @pytest.mark.asyncio
    async def test_fourth_send_in_window_rejected(self, auth, store):
        for _ in range(3):
            await auth.send_otp(TEST_PHONE)
            await store.delete(f"otp:lastsend:{TEST_PHONE}")

        with pytest.raises(RateLimitedError) as exc:
            await auth.send_otp(TEST_PHONE)
        assert 595 <= exc.value.retry_after <= 600

    @pytest.mark.asyncio
    async def test_blocked_phone_cannot_request_codes(self, auth, otp_service):
        for _ in range(5):
            await otp_service.verify(TEST_PHONE, "000000")

        with pytest.raises(RateLimitedError) as exc:
            await auth.send_otp(TEST_PHONE)
        assert exc.value.retry_after == 900

    @pytest.mark.asyncio
    async def test_blocked_phone_with_trailing_newline_rejected(self, auth, otp_service, queue):
        for _ in range(5):
            await otp_service.verify(TEST_PHONE, "000000")

        with pytest.raises(ValidationError):
            await auth.send_otp(TEST_PHONE + "\n")
        assert (await queue.counts())["waiting"] == 0

    @pytest.mark.asyncio
    async def test_queue_failure_is_internal_error(self, auth, queue):
        queue.enqueue = AsyncMock(side_effect=ConnectionError("redis down"))
        with pytest.raises(InternalError):
            await auth.send_otp(TEST_PHONE)


class TestVerifyOTP:
    @pytest.mark.asyncio
    async def test_new_customer_end_to_end(self, auth, queue, worker, sms_provider, customers, multipass, sessions):
        await auth.send_otp(TEST_PHONE)
        code = await _deliver_code(queue, worker, sms_provider)

        result = await auth.verify_otp(TEST_PHONE, code, return_to="/account")

        prefix = f"https://{TEST_SHOP}/account/login/multipass/"
        assert result.multipass_url.startswith(prefix)
        data = multipass.decode_token(TEST_SECRET, result.multipass_url[len(prefix):])
        assert data["email"] == f"{TEST_PHONE}@phone.local"
        assert data["identifier"] == result.customer.id
        assert data["return_to"] == "/account"

        customer = customers.customers[result.customer.id]
        assert customer.phone == TEST_PHONE
        assert "sms-auth" in customer.tags
        assert customers.metadata[customer.id] == {
            "auth_method": "sms",
            "phone_verified": True,
            "last_login": True,
        }

        session = await sessions.validate_session(result.session_id)
        assert session.customerId == customer.id
        assert session.shop == TEST_SHOP

    @pytest.mark.asyncio
    async def test_existing_customer_uses_their_email(self, auth, otp_service, customers, multipass):
        existing = await customers.create(email="jane.doe@example.com", phone=TEST_PHONE, first_name="Jane")
        await otp_service.store(TEST_PHONE, "123456")

        result = await auth.verify_otp(TEST_PHONE, "123456")

        assert result.customer.id == existing.id
        assert len(customers.customers) == 1
        token = result.multipass_url.rsplit("/", 1)[1]
        data = multipass.decode_token(TEST_SECRET, token)
        assert data["email"] == "jane.doe@example.com"
        assert data["first_name"] == "Jane"

    @pytest.mark.asyncio
    async def test_code_is_single_use(self, auth, otp_service):
        await otp_service.store(TEST_PHONE, "123456")
        await auth.verify_otp(TEST_PHONE, "123456")

        with pytest.raises(AuthenticationError):
            await auth.verify_otp(TEST_PHONE, "123456")

    @pytest.mark.asyncio
    async def test_wrong_code(self, auth, otp_service, customers):
        await otp_service.store(TEST_PHONE, "123456")

        with pytest.raises(AuthenticationError) as exc:
            await auth.verify_otp(TEST_PHONE, "654321")
        assert exc.value.message == "Invalid or expired verification code"
        assert customers.customers == {}

    @pytest.mark.asyncio
    async def test_malformed_code(self, auth):
        with pytest.raises(ValidationError):
            await auth.verify_otp(TEST_PHONE, "12ab56")
        with pytest.raises(ValidationError):
            await auth.verify_otp(TEST_PHONE, "12345")

    @pytest.mark.asyncio
    async def test_blocked_after_five_failures(self, auth, otp_service):
        await otp_service.store(TEST_PHONE, "123456")
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await auth.verify_otp(TEST_PHONE, "000000")

        with pytest.raises(RateLimitedError) as exc:
            await auth.verify_otp(TEST_PHONE, "123456")
        assert exc.value.retry_after == 900

    @pytest.mark.asyncio
    async def test_metadata_failure_does_not_block_login(self, auth, otp_service, customers):
        customers.set_phone_verified = AsyncMock(side_effect=RuntimeError("metafield API down"))
        await otp_service.store(TEST_PHONE, "123456")

        result = await auth.verify_otp(TEST_PHONE, "123456")

        assert result.multipass_url

    @pytest.mark.asyncio
    async def test_directory_failure_is_external_error(self, auth, otp_service, customers):
        customers.find_by_phone = AsyncMock(side_effect=httpx.ConnectError("reset"))
        await otp_service.store(TEST_PHONE, "123456")

        with pytest.raises(ExternalServiceError):
            await auth.verify_otp(TEST_PHONE, "123456")

    @pytest.mark.asyncio
    async def test_missing_tenant_fails_closed(self, otp_service, queue, customers, multipass, sessions, oauth):
        auth = AuthService(otp_service, queue, customers, multipass, sessions, oauth, tenant=None)
        await otp_service.store(TEST_PHONE, "123456")

        with pytest.raises(InternalError):
            await auth.verify_otp(TEST_PHONE, "123456")


class TestEmailLogin:
    @pytest.mark.asyncio
    async def test_registers_unknown_email(self, auth, customers):
        result = await auth.login_with_email("Jane.Doe@Example.com", "correct horse")

        customer = customers.customers[result.customer.id]
        assert customer.email == "jane.doe@example.com"
        assert "email-auth" in customer.tags
        stored = customers.password_hashes[customer.id]
        assert stored.startswith("$2b$")
        assert "correct horse" not in stored
        assert customers.metadata[customer.id]["auth_method"] == "email"

    @pytest.mark.asyncio
    async def test_existing_customer_correct_password(self, auth, customers):
        customer = await customers.create(email="jane.doe@example.com")
        customers.password_hashes[customer.id] = hash_password("s3cret!")

        result = await auth.login_with_email("jane.doe@example.com", "s3cret!")

        assert result.customer.id == customer.id
        assert result.session_id

    @pytest.mark.asyncio
    async def test_wrong_password(self, auth, customers):
        customer = await customers.create(email="jane.doe@example.com")
        customers.password_hashes[customer.id] = hash_password("s3cret!")

        with pytest.raises(AuthenticationError) as exc:
            await auth.login_with_email("jane.doe@example.com", "guess")
        assert exc.value.message == "Invalid email or password"

    @pytest.mark.asyncio
    async def test_existing_customer_without_password(self, auth, customers):
        await customers.create(email="jane.doe@example.com")

        with pytest.raises(AuthenticationError) as exc:
            await auth.login_with_email("jane.doe@example.com", "anything")
        assert exc.value.message == "Invalid email or password"

    @pytest.mark.asyncio
    async def test_failed_hash_write_then_retry(self, auth, customers):
        customers.set_password_hash = AsyncMock(side_effect=RuntimeError("metafield API down"))
        with pytest.raises(ExternalServiceError):
            await auth.login_with_email("jane@example.com", "Secret123!")
        del customers.set_password_hash

        result = await auth.login_with_email("jane@example.com", "Secret123!")

        assert len(customers.customers) == 1
        assert customers.password_hashes[result.customer.id].startswith("$2b$")
        with pytest.raises(AuthenticationError):
            await auth.login_with_email("jane@example.com", "someone-else")

    @pytest.mark.asyncio
    async def test_corrupt_hash_fails_closed(self, auth, customers):
        customer = await customers.create(email="jane.doe@example.com")
        customers.password_hashes[customer.id] = "not-a-bcrypt-hash"

        with pytest.raises(AuthenticationError):
            await auth.login_with_email("jane.doe@example.com", "anything")

    @pytest.mark.asyncio
    async def test_validation_lists_each_field(self, auth):
        with pytest.raises(ValidationError) as exc:
            await auth.login_with_email("not-an-email", "")
        fields = {d["field"] for d in exc.value.details}
        assert fields == {"email", "password"}


class TestOAuthLogin:
    @pytest.fixture
    def google_auth(self, auth, oauth):
        client = httpx.AsyncClient(transport=httpx.MockTransport(google_handler))
        oauth.register_provider(GoogleOAuthProvider("client-id", "client-secret", client=client))
        return auth

    @pytest.mark.asyncio
    async def test_creates_customer_from_profile(self, google_auth, customers, multipass):
        state = google_auth.initiate_oauth("google", REDIRECT_URI)["state"]

        result = await google_auth.complete_oauth("google", "auth-code", state, REDIRECT_URI)

        customer = customers.customers[result.customer.id]
        assert customer.email == "jane.doe@gmail.com"
        assert customer.first_name == "Jane"
        assert "google-auth" in customer.tags
        assert customers.metadata[customer.id]["auth_method"] == "google"
        token = result.multipass_url.rsplit("/", 1)[1]
        assert multipass.decode_token(TEST_SECRET, token)["email"] == "jane.doe@gmail.com"

    @pytest.mark.asyncio
    async def test_links_existing_customer_by_email(self, google_auth, customers):
        existing = await customers.create(email="jane.doe@gmail.com")
        state = google_auth.initiate_oauth("google", REDIRECT_URI)["state"]

        result = await google_auth.complete_oauth("google", "auth-code", state, REDIRECT_URI)

        assert result.customer.id == existing.id
        assert len(customers.customers) == 1

    @pytest.mark.asyncio
    async def test_bad_state(self, google_auth):
        with pytest.raises(AuthenticationError):
            await google_auth.complete_oauth("google", "auth-code", "forged", REDIRECT_URI)


class TestSessions:
    @pytest.mark.asyncio
    async def test_restore_and_logout(self, auth, otp_service):
        await otp_service.store(TEST_PHONE, "123456")
        login = await auth.verify_otp(TEST_PHONE, "123456")

        url = await auth.restore_session(login.session_id, return_to="/cart")
        assert url.startswith(f"https://{TEST_SHOP}/account/login/multipass/")

        await auth.logout(login.session_id)
        with pytest.raises(AuthenticationError):
            await auth.restore_session(login.session_id)
