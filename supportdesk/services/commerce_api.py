"""iKAS commerce API client.

Handles:
- OAuth client-credentials token exchange (store-specific endpoint)
- Paged listing of refund-requested orders via the admin GraphQL API
- Single order lookup by order number

HTTP status mapping: 401/403 → AuthError, 429 → RateLimitError,
5xx / timeouts / connection errors → TransientIntegrationError,
other 4xx → PermanentValidationError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from supportdesk.core.config import settings
from supportdesk.core.exceptions import (
    AuthError,
    PermanentValidationError,
    RateLimitError,
    TransientIntegrationError,
)
from supportdesk.jobs.utils import safe_url

logger = logging.getLogger(__name__)

# HTTP client settings
HTTPX_TIMEOUT = httpx.Timeout(20.0, connect=5.0)

REFUND_REQUESTED = "REFUND_REQUESTED"

ORDER_FIELDS = """
    id
    orderNumber
    status
    orderPackageStatus
    currencyCode
    totalFinalPrice
    orderedAt
    updatedAt
    customer {
      id
      email
      firstName
      lastName
      phone
    }
"""

LIST_ORDERS_QUERY = f"""
  query ListOrders($pagination: PaginationInput, $orderPackageStatus: OrderPackageStatusEnumInputFilter, $updatedAt: DateFilterInput) {{
    listOrder(pagination: $pagination, orderPackageStatus: $orderPackageStatus, updatedAt: $updatedAt, sort: "updatedAt") {{
      hasNext
      page
      data {{{ORDER_FIELDS}}}
    }}
  }}
"""

GET_ORDER_BY_NUMBER_QUERY = f"""
  query GetOrder($orderNumber: String!) {{
    listOrder(orderNumber: {{ eq: $orderNumber }}, pagination: {{ page: 1, limit: 1 }}) {{
      data {{{ORDER_FIELDS}
        orderLineItems {{
          quantity
          finalPrice
          variant {{
            name
          }}
        }}
        orderPackages {{
          orderPackageFulfillStatus
          trackingInfo {{
            trackingNumber
            trackingLink
            cargoCompany
          }}
        }}
      }}
    }}
  }}
"""


@dataclass
class TokenGrant:
    access_token: str
    expires_in: int


@dataclass
class OrderFilter:
    order_package_status: str = REFUND_REQUESTED
    updated_since: datetime | None = None
    page_size: int = 100


@dataclass
class OrderPage:
    items: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None


def parse_provider_datetime(value: Any) -> datetime | None:
    """iKAS timestamps are epoch milliseconds; ISO strings are accepted too."""
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable provider timestamp %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _retry_after_seconds(response: httpx.Response) -> int:
    raw = response.headers.get("Retry-After", "")
    if raw.isdigit():
        return int(raw)
    return settings.RATE_LIMIT_RETRY_SECONDS


def raise_for_provider_status(response: httpx.Response, provider: str) -> None:
    """Translate an HTTP error status into the integration error taxonomy."""
    status = response.status_code
    if response.is_success:
        return
    detail = response.text[:300]
    if status in (401, 403):
        raise AuthError(f"{provider} rejected credentials ({status})")
    if status == 429:
        raise RateLimitError(f"{provider} rate limited", retry_after=_retry_after_seconds(response))
    if status >= 500:
        raise TransientIntegrationError(f"{provider} {status}: {detail}")
    raise PermanentValidationError(f"{provider} {status}: {detail}")


def decode_json_object(response: httpx.Response, provider: str) -> dict:
    """JSON object body of a 2xx response; anything else is a transient gateway fault."""
    try:
        body = response.json()
    except ValueError as exc:
        raise TransientIntegrationError(
            f"{provider} returned a non-JSON body: {response.text[:100]!r}"
        ) from exc
    if not isinstance(body, dict):
        raise TransientIntegrationError(f"{provider} returned {type(body).__name__}, expected an object")
    return body


class CommerceClient:
    """iKAS admin API client. Tokens are managed by TokenManager, not here."""

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        store_name: str | None = None,
        api_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.client_id = client_id if client_id is not None else settings.IKAS_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else settings.IKAS_CLIENT_SECRET
        self.store_name = store_name if store_name is not None else settings.IKAS_STORE_NAME
        self.api_url = (api_url or settings.IKAS_API_URL).rstrip("/")
        self._transport = transport

    @property
    def token_url(self) -> str:
        return f"https://{self.store_name}.myikas.com/api/admin/oauth/token"

    @property
    def graphql_url(self) -> str:
        return f"{self.api_url}/graphql"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=HTTPX_TIMEOUT, transport=self._transport)

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientIntegrationError(f"iKAS timeout: {safe_url(url)}") from exc
        except httpx.TransportError as exc:
            raise TransientIntegrationError(
                f"iKAS connection failed: {safe_url(url)} ({type(exc).__name__})"
            ) from exc

    # -------------------------------------------------------------------------
    # OAuth
    # -------------------------------------------------------------------------

    async def exchange_token(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
    ) -> TokenGrant:
        """Client-credentials grant."""
        client_id = client_id or self.client_id
        client_secret = client_secret or self.client_secret
        if not (client_id and client_secret and self.store_name):
            raise PermanentValidationError("iKAS credentials not configured")

        response = await self._send(
            "POST",
            self.token_url,
            data={
                "grant_type": "client_credentials",
                "client_id": client_id,
                "client_secret": client_secret,
            },
        )
        # A rejected client secret comes back as 400 invalid_client
        if response.status_code == 400 and "invalid_client" in response.text:
            raise AuthError("iKAS rejected client credentials")
        raise_for_provider_status(response, "iKAS")

        data = decode_json_object(response, "iKAS")
        if not data.get("access_token"):
            raise TransientIntegrationError("iKAS token response had no access_token")
        return TokenGrant(
            access_token=data["access_token"],
            expires_in=int(data.get("expires_in") or 0),
        )

    # -------------------------------------------------------------------------
    # GraphQL
    # -------------------------------------------------------------------------

    async def _graphql(self, token: str, query: str, variables: dict | None = None) -> dict:
        response = await self._send(
            "POST",
            self.graphql_url,
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            json={"query": query, "variables": variables or {}},
        )
        raise_for_provider_status(response, "iKAS")
        body = decode_json_object(response, "iKAS")
        errors = body.get("errors")
        if errors:
            message = "; ".join(str(e.get("message", e)) for e in errors)[:300]
            codes = {str((e.get("extensions") or {}).get("code", "")).upper() for e in errors}
            if codes & {"UNAUTHENTICATED", "UNAUTHORIZED", "FORBIDDEN"}:
                raise AuthError(f"iKAS GraphQL auth error: {message}")
            raise TransientIntegrationError(f"iKAS GraphQL errors: {message}")
        return body.get("data") or {}

    async def list_orders(
        self,
        token: str,
        order_filter: OrderFilter | None = None,
        cursor: str | None = None,
    ) -> OrderPage:
        """One page of orders matching the filter. cursor is the page number."""
        order_filter = order_filter or OrderFilter()
        page = int(cursor) if cursor else 1
        variables: dict[str, Any] = {
            "pagination": {"page": page, "limit": order_filter.page_size},
            "orderPackageStatus": {"eq": order_filter.order_package_status},
        }
        if order_filter.updated_since:
            variables["updatedAt"] = {"gte": int(order_filter.updated_since.timestamp() * 1000)}

        data = await self._graphql(token, LIST_ORDERS_QUERY, variables)
        listing = data.get("listOrder") or {}
        items = listing.get("data") or []
        next_cursor = str(page + 1) if listing.get("hasNext") and items else None
        return OrderPage(items=items, next_cursor=next_cursor)

    async def get_order_by_number(self, token: str, number: str) -> dict | None:
        data = await self._graphql(token, GET_ORDER_BY_NUMBER_QUERY, {"orderNumber": number})
        orders = (data.get("listOrder") or {}).get("data") or []
        if not orders:
            logger.info("iKAS order %s not found", number)
            return None
        return orders[0]
