"""
SMS vendor adapters: sms.to over HTTP, Twilio through its SDK, console stub
"""
import json
from unittest.mock import MagicMock

import httpx
import pytest
from twilio.base.exceptions import TwilioException

from multichannel_auth.services.sms import ConsoleSMSProvider, SmsToProvider, TwilioProvider, WebhookPayloadError
from multichannel_auth.services.sms.base import DELIVERED, FAILED, PENDING, SENT

from tests.helpers.fakes import TEST_PHONE


def _sms_to(handler) -> SmsToProvider:
    client = httpx.AsyncClient(base_url=SmsToProvider.API_BASE_URL, transport=httpx.MockTransport(handler))
    return SmsToProvider("test-api-key", "SHOP", client=client)


class TestSmsTo:
    @pytest.mark.asyncio
    async def test_send_success(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["path"] = request.url.path
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "message_id": "msg-123"})

        provider = _sms_to(handler)
        result = await provider.send(TEST_PHONE, "Your code is 123456", callback_url="https://app/dlr/sms.to")

        assert result.success is True
        assert result.message_id == "msg-123"
        assert result.provider == "sms.to"
        assert captured["path"] == "/sms/send"
        assert captured["auth"] == "Bearer test-api-key"
        assert captured["body"] == {
            "to": TEST_PHONE,
            "message": "Your code is 123456",
            "sender_id": "SHOP",
            "callback_url": "https://app/dlr/sms.to",
        }

    @pytest.mark.asyncio
    async def test_send_http_error_is_a_failed_result(self):
        provider = _sms_to(lambda request: httpx.Response(503, text="unavailable"))

        result = await provider.send(TEST_PHONE, "hi")

        assert result.success is False
        assert "503" in result.error

    @pytest.mark.asyncio
    async def test_send_without_message_id_fails(self):
        provider = _sms_to(lambda request: httpx.Response(200, json={"success": True}))

        result = await provider.send(TEST_PHONE, "hi")

        assert result.success is False
        assert result.error == "Invalid response from SMS provider"

    @pytest.mark.asyncio
    async def test_check_status_maps_vendor_states(self):
        provider = _sms_to(lambda request: httpx.Response(200, json={"status": "DELIVERED"}))

        status = await provider.check_status("msg-123")

        assert status.status == DELIVERED

    @pytest.mark.asyncio
    async def test_balance(self):
        provider = _sms_to(lambda request: httpx.Response(200, json={"balance": 12.5, "currency": "EUR"}))

        balance = await provider.get_balance()

        assert balance.balance == 12.5
        assert balance.formatted_balance == "12.50 EUR"

    def test_parse_delivery_webhook(self):
        provider = SmsToProvider("key", "SHOP")

        receipt = provider.parse_delivery_webhook(
            {"messageId": "msg-1", "status": "failed", "error": "unreachable"}
        )
        assert receipt.message_id == "msg-1"
        assert receipt.status == FAILED
        assert receipt.failure_reason == "unreachable"

        assert provider.parse_delivery_webhook({"id": "msg-2", "status": "weird"}).status == PENDING

        with pytest.raises(WebhookPayloadError):
            provider.parse_delivery_webhook({"status": "delivered"})

    def test_requires_credentials(self):
        with pytest.raises(ValueError):
            SmsToProvider("", "SHOP")
        with pytest.raises(ValueError):
            SmsToProvider("key", "")


class TestTwilio:
    def _provider(self):
        client = MagicMock()
        return TwilioProvider("ACtest", "token", "+15550001111", client=client), client

    @pytest.mark.asyncio
    async def test_send_success(self):
        provider, client = self._provider()
        client.messages.create.return_value = MagicMock(sid="SM123")

        result = await provider.send(TEST_PHONE, "hi", callback_url="https://app/dlr/twilio")

        assert result.success is True
        assert result.message_id == "SM123"
        assert result.provider == "twilio"
        client.messages.create.assert_called_once_with(
            body="hi", from_="+15550001111", to=TEST_PHONE, status_callback="https://app/dlr/twilio"
        )

    @pytest.mark.asyncio
    async def test_send_failure(self):
        provider, client = self._provider()
        client.messages.create.side_effect = TwilioException("rejected")

        result = await provider.send(TEST_PHONE, "hi")

        assert result.success is False
        assert "rejected" in result.error

    def test_parse_delivery_webhook(self):
        provider, _ = self._provider()

        receipt = provider.parse_delivery_webhook(
            {"MessageSid": "SM1", "MessageStatus": "undelivered", "ErrorCode": "30003"}
        )
        assert receipt.status == FAILED
        assert receipt.failure_reason.startswith("Error 30003")

        delivered = provider.parse_delivery_webhook({"SmsSid": "SM2", "SmsStatus": "delivered"})
        assert delivered.status == DELIVERED
        assert delivered.delivered_at is not None

        assert provider.parse_delivery_webhook({"MessageSid": "SM3", "MessageStatus": "sent"}).status == SENT

        with pytest.raises(WebhookPayloadError):
            provider.parse_delivery_webhook({"MessageStatus": "sent"})

    def test_priority_can_be_overridden(self):
        provider = TwilioProvider("ACtest", "token", "+15550001111", client=MagicMock(), priority=1)
        assert provider.priority == 1


@pytest.mark.asyncio
async def test_console_provider_always_succeeds():
    provider = ConsoleSMSProvider()

    result = await provider.send(TEST_PHONE, "Your verification code is: 123456")

    assert result.success is True
    assert result.message_id.startswith("console-")
    assert provider.priority == 99


@pytest.mark.asyncio
async def test_console_provider_masks_destination(caplog):
    provider = ConsoleSMSProvider()

    with caplog.at_level("INFO", logger="multichannel_auth.services.sms.stub_provider"):
        await provider.send(TEST_PHONE, "Your verification code is: 123456")

    assert TEST_PHONE not in caplog.text
    assert "***1234" in caplog.text
    assert "123456" in caplog.text
