"""
Shopify customer directory over the Admin REST API
"""
import json

import httpx
import pytest

from multichannel_auth.core.errors import ExternalServiceError
from multichannel_auth.services.customers import Customer, ShopifyCustomerDirectory

from tests.helpers.fakes import TEST_PHONE, TEST_SHOP

BASE_URL = f"https://{TEST_SHOP}/admin/api/2024-01"

CUSTOMER = {
    "id": 1001,
    "email": "jane.doe@example.com",
    "phone": TEST_PHONE,
    "first_name": "Jane",
    "last_name": "Doe",
    "tags": "vip, sms-auth",
}


class FakeShopify:
    """Scripted Admin API: queue responses, record requests"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)


def _directory(shopify: FakeShopify) -> ShopifyCustomerDirectory:
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(shopify))
    return ShopifyCustomerDirectory(TEST_SHOP, "shpat_test", client=client, initial_delay=0)


def test_customer_from_api_splits_tags():
    customer = Customer.from_api(CUSTOMER)
    assert customer.id == "1001"
    assert customer.tags == ["vip", "sms-auth"]


@pytest.mark.asyncio
async def test_find_by_phone():
    shopify = FakeShopify(httpx.Response(200, json={"customers": [CUSTOMER]}))
    directory = _directory(shopify)

    customer = await directory.find_by_phone(TEST_PHONE)

    assert customer.id == "1001"
    request = shopify.requests[0]
    assert request.url.path == "/admin/api/2024-01/customers/search.json"
    assert request.url.params["query"] == f"phone:{TEST_PHONE}"
    assert request.headers["X-Shopify-Access-Token"] == "shpat_test"


@pytest.mark.asyncio
async def test_find_by_email_not_found():
    directory = _directory(FakeShopify(httpx.Response(200, json={"customers": []})))
    assert await directory.find_by_email("nobody@example.com") is None


@pytest.mark.asyncio
async def test_create_customer():
    shopify = FakeShopify(httpx.Response(201, json={"customer": {**CUSTOMER, "email": None, "tags": "sms-auth"}}))
    directory = _directory(shopify)

    customer = await directory.create(phone=TEST_PHONE, tags=["sms-auth"])

    assert customer.phone == TEST_PHONE
    body = json.loads(shopify.requests[0].content)
    assert body["customer"]["phone"] == TEST_PHONE
    assert body["customer"]["tags"] == "sms-auth"
    assert "email" not in body["customer"]


@pytest.mark.asyncio
async def test_retries_on_429_and_5xx():
    shopify = FakeShopify(
        httpx.Response(429, json={"errors": "Exceeded 2 calls per second"}),
        httpx.Response(502, text="bad gateway"),
        httpx.Response(200, json={"customers": [CUSTOMER]}),
    )
    directory = _directory(shopify)

    customer = await directory.find_by_email("jane.doe@example.com")

    assert customer.id == "1001"
    assert len(shopify.requests) == 3


@pytest.mark.asyncio
async def test_gives_up_after_three_attempts():
    shopify = FakeShopify(*[httpx.Response(503) for _ in range(3)])
    directory = _directory(shopify)

    with pytest.raises(ExternalServiceError):
        await directory.find_by_email("jane.doe@example.com")
    assert len(shopify.requests) == 3


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    shopify = FakeShopify(httpx.Response(422, json={"errors": {"phone": ["is invalid"]}}))
    directory = _directory(shopify)

    with pytest.raises(ExternalServiceError):
        await directory.create(phone="+1")
    assert len(shopify.requests) == 1


@pytest.mark.asyncio
async def test_set_auth_method_writes_metafield_and_tag():
    shopify = FakeShopify(
        httpx.Response(201, json={"metafield": {"id": 1}}),
        httpx.Response(200, json={"customer": CUSTOMER}),
        httpx.Response(200, json={"customer": {**CUSTOMER, "tags": "vip, sms-auth, email-auth"}}),
    )
    directory = _directory(shopify)

    await directory.set_auth_method("1001", "email")

    metafield = json.loads(shopify.requests[0].content)["metafield"]
    assert metafield["namespace"] == "auth_app"
    assert metafield["key"] == "auth_method"
    assert metafield["value"] == "email"

    update = json.loads(shopify.requests[2].content)["customer"]
    assert update["tags"] == "vip, sms-auth, email-auth"


@pytest.mark.asyncio
async def test_add_existing_tag_is_a_noop():
    shopify = FakeShopify(httpx.Response(200, json={"customer": CUSTOMER}))
    directory = _directory(shopify)

    await directory.add_tag("1001", "vip")

    assert len(shopify.requests) == 1


@pytest.mark.asyncio
async def test_password_hash_metafield():
    shopify = FakeShopify(
        httpx.Response(200, json={"metafields": [{"key": "password_hash", "value": "$2b$12$hash"}]}),
        httpx.Response(200, json={"metafields": []}),
    )
    directory = _directory(shopify)

    assert await directory.get_password_hash("1001") == "$2b$12$hash"
    assert await directory.get_password_hash("1002") is None
