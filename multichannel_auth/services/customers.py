"""
Customer directory: the storefront platform's customer records

CustomerDirectory is the contract the login flows depend on.
ShopifyCustomerDirectory implements it against the Shopify Admin REST API.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from ..core.errors import ExternalServiceError
from ..core.retry import retry_with_backoff
from ..utils.email import mask_email
from ..utils.phone import mask_phone

logger = logging.getLogger(__name__)

METAFIELD_NAMESPACE = "auth_app"


@dataclass
class Customer:
    id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Customer":
        raw_tags = data.get("tags") or ""
        if isinstance(raw_tags, str):
            tags = [t.strip() for t in raw_tags.split(",") if t.strip()]
        else:
            tags = list(raw_tags)
        return cls(
            id=str(data["id"]),
            email=data.get("email"),
            phone=data.get("phone"),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            tags=tags,
        )


class CustomerDirectory(ABC):
    """Find, create and annotate storefront customers"""

    @abstractmethod
    async def find_by_email(self, email: str) -> Optional[Customer]:
        ...

    @abstractmethod
    async def find_by_phone(self, phone: str) -> Optional[Customer]:
        ...

    @abstractmethod
    async def create(
        self,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Customer:
        ...

    @abstractmethod
    async def update(self, customer_id: str, **fields: Any) -> Customer:
        ...

    @abstractmethod
    async def add_tag(self, customer_id: str, tag: str) -> None:
        ...

    @abstractmethod
    async def set_auth_method(self, customer_id: str, method: str) -> None:
        ...

    @abstractmethod
    async def set_phone_verified(self, customer_id: str, verified: bool = True) -> None:
        ...

    @abstractmethod
    async def set_last_login(self, customer_id: str) -> None:
        ...

    @abstractmethod
    async def get_password_hash(self, customer_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set_password_hash(self, customer_id: str, password_hash: str) -> None:
        ...


class ShopifyCustomerDirectory(CustomerDirectory):
    """
    Shopify Admin REST API client.

    Every request is retried on 429, 5xx and connection errors with capped
    exponential backoff; anything left over surfaces as ExternalServiceError.
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = "2024-01",
        client: Optional[httpx.AsyncClient] = None,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
    ):
        if not shop_domain or not access_token:
            raise ValueError("Shopify shop domain and admin token are required")

        self.base_url = f"https://{shop_domain}/admin/api/{api_version}"
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=10.0)
        self._owns_client = client is None
        self._headers = {
            "X-Shopify-Access-Token": access_token,
            "Content-Type": "application/json",
        }

    async def _send(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        response = await self._client.request(method, path, headers=self._headers, **kwargs)
        response.raise_for_status()
        return response.json() if response.content else {}

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            return await retry_with_backoff(
                self._send,
                method,
                path,
                max_attempts=self.max_attempts,
                initial_delay=self.initial_delay,
                **kwargs
            )
        except httpx.HTTPStatusError as e:
            logger.error(
                f"[Customers] {method} {path} failed: HTTP {e.response.status_code} {e.response.text[:200]}"
            )
            raise ExternalServiceError()
        except httpx.HTTPError as e:
            logger.error(f"[Customers] {method} {path} failed: {e}")
            raise ExternalServiceError()

    async def _search(self, query: str) -> Optional[Customer]:
        data = await self._request("GET", "/customers/search.json", params={"query": query, "limit": 1})
        customers = data.get("customers") or []
        return Customer.from_api(customers[0]) if customers else None

    async def find_by_email(self, email: str) -> Optional[Customer]:
        customer = await self._search(f"email:{email}")
        logger.info(f"[Customers] Lookup by email {mask_email(email)}: {'found' if customer else 'not found'}")
        return customer

    async def find_by_phone(self, phone: str) -> Optional[Customer]:
        customer = await self._search(f"phone:{phone}")
        logger.info(f"[Customers] Lookup by phone {mask_phone(phone)}: {'found' if customer else 'not found'}")
        return customer

    async def create(self, email=None, phone=None, first_name=None, last_name=None, tags=None) -> Customer:
        body: Dict[str, Any] = {
            "email": email,
            "phone": phone,
            "first_name": first_name,
            "last_name": last_name,
            "verified_email": False,
        }
        if tags:
            body["tags"] = ", ".join(tags)
        body = {k: v for k, v in body.items() if v is not None}

        data = await self._request("POST", "/customers.json", json={"customer": body})
        customer = Customer.from_api(data["customer"])
        logger.info(f"[Customers] Created customer {customer.id}")
        return customer

    async def update(self, customer_id: str, **fields: Any) -> Customer:
        if isinstance(fields.get("tags"), list):
            fields["tags"] = ", ".join(fields["tags"])
        data = await self._request(
            "PUT", f"/customers/{customer_id}.json", json={"customer": {"id": customer_id, **fields}}
        )
        return Customer.from_api(data["customer"])

    async def add_tag(self, customer_id: str, tag: str) -> None:
        data = await self._request("GET", f"/customers/{customer_id}.json")
        customer = Customer.from_api(data["customer"])
        if tag in customer.tags:
            return
        await self.update(customer_id, tags=customer.tags + [tag])

    async def _set_metafield(self, customer_id: str, key: str, value: str, value_type: str) -> None:
        await self._request(
            "POST",
            f"/customers/{customer_id}/metafields.json",
            json={
                "metafield": {
                    "namespace": METAFIELD_NAMESPACE,
                    "key": key,
                    "value": value,
                    "type": value_type,
                }
            },
        )

    async def set_auth_method(self, customer_id: str, method: str) -> None:
        await self._set_metafield(customer_id, "auth_method", method, "single_line_text_field")
        await self.add_tag(customer_id, f"{method}-auth")

    async def set_phone_verified(self, customer_id: str, verified: bool = True) -> None:
        await self._set_metafield(customer_id, "phone_verified", "true" if verified else "false", "boolean")

    async def set_last_login(self, customer_id: str) -> None:
        await self._set_metafield(
            customer_id, "last_login", datetime.now(timezone.utc).isoformat(), "date_time"
        )

    async def get_password_hash(self, customer_id: str) -> Optional[str]:
        data = await self._request(
            "GET",
            f"/customers/{customer_id}/metafields.json",
            params={"namespace": METAFIELD_NAMESPACE, "key": "password_hash"},
        )
        for metafield in data.get("metafields") or []:
            if metafield.get("key") == "password_hash":
                return metafield.get("value")
        return None

    async def set_password_hash(self, customer_id: str, password_hash: str) -> None:
        await self._set_metafield(customer_id, "password_hash", password_hash, "single_line_text_field")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
