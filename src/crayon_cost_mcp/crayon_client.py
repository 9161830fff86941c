"""
Crayon API Client - handles all interactions with the Crayon REST API.
Implements OAuth2 password-grant authentication with a shared token cache,
circuit-breaker protected requests, pagination and typed error mapping.
"""

import asyncio
import os
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from .analytics import months_ago_start
from .audit import log
from .circuit_breaker import CircuitBreaker
from .config import DEFAULT_BASE_URL, Settings
from .errors import (
    AuthenticationError,
    ConfigurationError,
    ServiceUnavailableError,
    UpstreamError,
)

TOKEN_REFRESH_MARGIN_SECONDS = 60
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600
MAX_PAGES = 50


@dataclass(frozen=True)
class AuthToken:
    """Bearer token and its absolute expiry (epoch seconds)"""

    value: str
    expires_at: float

    def is_usable(self, now: float, margin: float = TOKEN_REFRESH_MARGIN_SECONDS) -> bool:
        return self.expires_at - margin > now


class TokenCache:
    """
    Caches the upstream bearer token and refreshes it before expiry.

    Concurrent callers that find the token expiring wait on one lock, and the
    first one through refreshes; the rest re-check and reuse its token. The
    cached value is only replaced after a successful fetch.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[AuthToken]],
        clock: Callable[[], float] = time.time,
        refresh_margin: float = TOKEN_REFRESH_MARGIN_SECONDS,
    ):
        self._fetch = fetch
        self._clock = clock
        self._refresh_margin = refresh_margin
        self._token: AuthToken | None = None
        self._lock = asyncio.Lock()

    def _valid_token(self) -> AuthToken | None:
        token = self._token
        if token and token.is_usable(self._clock(), self._refresh_margin):
            return token
        return None

    async def get(self) -> str:
        token = self._valid_token()
        if token:
            return token.value

        async with self._lock:
            # Double-check after acquiring lock
            token = self._valid_token()
            if token:
                return token.value

            fresh = await self._fetch()
            self._token = fresh
            return fresh.value

    def invalidate(self) -> None:
        self._token = None


def _is_client_error(error: BaseException) -> bool:
    return isinstance(error, UpstreamError) and error.is_client_error


class CrayonClient:
    """
    Client for interacting with the Crayon API.
    Handles authentication, circuit breaking and response shaping.
    """

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        username: str | None = None,
        password: str | None = None,
        base_url: str | None = None,
        breaker: CircuitBreaker | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
        allow_missing_credentials: bool = False,
    ):
        """
        Initialize Crayon API client.

        Args:
            client_id: OAuth client ID (or from CRAYON_CLIENT_ID env var)
            client_secret: OAuth client secret (or from CRAYON_CLIENT_SECRET env var)
            username: Resource-owner username (or from CRAYON_USERNAME env var)
            password: Resource-owner password (or from CRAYON_PASSWORD env var)
            base_url: Base URL for the Crayon API (or from CRAYON_API_BASE_URL env var)
            breaker: Shared circuit breaker; a default one is created if omitted
            timeout: HTTP timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
            clock: Wall clock used for token expiry
            allow_missing_credentials: If True, allows initialization without credentials
                                       (for testing/inspection only - API calls will fail)
        """
        self.client_id = client_id or os.getenv("CRAYON_CLIENT_ID")
        self.client_secret = client_secret or os.getenv("CRAYON_CLIENT_SECRET")
        self.username = username or os.getenv("CRAYON_USERNAME")
        self.password = password or os.getenv("CRAYON_PASSWORD")
        self.base_url = base_url or os.getenv("CRAYON_API_BASE_URL") or DEFAULT_BASE_URL

        credentials = [self.client_id, self.client_secret, self.username, self.password]
        if not all(credentials) and not allow_missing_credentials:
            raise ConfigurationError(
                "Crayon credentials not provided. Set CRAYON_CLIENT_ID, CRAYON_CLIENT_SECRET, "
                "CRAYON_USERNAME and CRAYON_PASSWORD environment variables or pass them "
                "to the constructor."
            )

        self.breaker = breaker or CircuitBreaker("crayon-api", error_filter=_is_client_error)
        self.tokens = TokenCache(self._fetch_token, clock=clock)
        self._clock = clock

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> "CrayonClient":
        breaker = CircuitBreaker(
            "crayon-api",
            timeout=settings.api_timeout_ms / 1000,
            error_threshold_percentage=settings.breaker_error_threshold,
            reset_timeout=settings.breaker_reset_timeout_ms / 1000,
            volume_threshold=settings.breaker_volume_threshold,
            error_filter=_is_client_error,
        )
        return cls(
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            username=settings.username,
            password=settings.password,
            base_url=settings.base_url,
            breaker=breaker,
            transport=transport,
            allow_missing_credentials=not settings.has_upstream_credentials,
        )

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # Authentication

    async def authenticate(self) -> str:
        """Return a bearer token, refreshing it when within 60s of expiry."""
        return await self.tokens.get()

    async def _fetch_token(self) -> AuthToken:
        if not all([self.client_id, self.client_secret, self.username, self.password]):
            raise AuthenticationError("Authentication failed: Crayon credentials not configured")

        try:
            response = await self.client.post(
                "/connect/token",
                data={
                    "grant_type": "password",
                    "username": self.username,
                    "password": self.password,
                },
                auth=(self.client_id, self.client_secret),
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise AuthenticationError(
                f"Authentication failed: token endpoint returned {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise AuthenticationError(f"Authentication failed: {e}") from e

        # Crayon answers in PascalCase on some deployments
        value = payload.get("access_token") or payload.get("AccessToken")
        if not value:
            raise AuthenticationError("Authentication failed: no access token in response")
        expires_in = (
            payload.get("expires_in") or payload.get("ExpiresIn") or DEFAULT_TOKEN_LIFETIME_SECONDS
        )

        log.info("upstream_token_refreshed", expires_in=expires_in)
        return AuthToken(value=value, expires_at=self._clock() + float(expires_in))

    # Request plumbing

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Authenticated request through the circuit breaker, returning decoded JSON."""

        async def send() -> Any:
            token = await self.tokens.get()
            try:
                response = await self.client.request(
                    method,
                    path,
                    params=params,
                    json=json,
                    headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.TimeoutException as e:
                raise ServiceUnavailableError(
                    f"Request timeout calling {method} {path}", reason="timeout"
                ) from e
            except httpx.RequestError as e:
                raise ServiceUnavailableError(
                    f"Connection to Crayon API failed: {e}", reason="connection"
                ) from e

            if response.status_code == 401:
                self.tokens.invalidate()

            if response.is_error:
                raise UpstreamError(
                    f"Crayon API error {response.status_code} on {method} {path}",
                    status_code=response.status_code,
                )

            if not response.content:
                return {}
            return response.json()

        return await self.breaker.execute(send)

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self._request("GET", path, params=params)

    @staticmethod
    def _params(**values: Any) -> dict[str, Any]:
        """Drop unset query parameters."""
        return {k: v for k, v in values.items() if v is not None}

    async def _collect_pages(
        self,
        fetch_page: Callable[[int, int], Awaitable[dict[str, Any]]],
        page_size: int = 100,
    ) -> dict[str, Any]:
        """Walk page/pageSize until TotalHits items are collected."""
        items: list[dict[str, Any]] = []
        total: int | None = None

        for page in range(1, MAX_PAGES + 1):
            data = await fetch_page(page, page_size)
            batch = data.get("Items") or []
            items.extend(batch)
            total = data.get("TotalHits") or len(items)
            if not batch or len(items) >= total or len(batch) < page_size:
                break
        else:
            log.warning("pagination_truncated", max_pages=MAX_PAGES, collected=len(items))

        return {"Items": items, "TotalHits": total if total is not None else len(items)}

    # Billing

    async def get_billing_statements(
        self,
        organization_id: int,
        invoice_profile_id: int | None = None,
        provision_type: str | None = None,
        from_date: str | None = None,
        to_date: str | None = None,
        page: int | None = None,
        page_size: int | None = None,
    ) -> dict[str, Any]:
        """Billing statements for an organization with optional filters"""
        params = self._params(
            organizationId=organization_id,
            invoiceProfileId=invoice_profile_id,
            provisionType=provision_type,
            **{"from": from_date, "to": to_date},
            page=page,
            pageSize=page_size,
        )
        return await self._get("/billingstatements/", params)

    async def get_grouped_billing_statements(
        self,
        organization_id: int,
        invoice_profile_id: int | None = None,
        provision_type: str | None = None,
        from_date: str | None = None,
        to_date: str | None = None,
    ) -> dict[str, Any]:
        """Billing statements grouped by billing cycle"""
        params = self._params(
            organizationId=organization_id,
            invoiceProfileId=invoice_profile_id,
            provisionType=provision_type,
            **{"from": from_date, "to": to_date},
        )
        return await self._get("/billingstatements/grouped", params)

    async def get_historical_billing(
        self,
        organization_id: int,
        months_back: int = 6,
        invoice_profile_id: int | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Grouped billing statements for the last `months_back` months.

        The start boundary is snapped to the first day of the starting month at
        00:00:00 so billing periods straddling month boundaries are included.
        """
        start, end = months_ago_start(months_back, now)
        return await self.get_grouped_billing_statements(
            organization_id,
            invoice_profile_id=invoice_profile_id,
            from_date=start.isoformat(),
            to_date=end.isoformat(),
        )

    async def get_invoices(
        self, organization_id: int, page: int | None = None, page_size: int | None = None
    ) -> dict[str, Any]:
        params = self._params(organizationId=organization_id, page=page, pageSize=page_size)
        return await self._get("/invoices/", params)

    async def get_all_invoices(self, organization_id: int) -> dict[str, Any]:
        return await self._collect_pages(
            lambda page, size: self.get_invoices(organization_id, page, size)
        )

    async def get_invoice_profiles(self, organization_id: int) -> dict[str, Any]:
        return await self._get("/invoiceprofiles/", {"organizationId": organization_id})

    async def get_organizations(self) -> dict[str, Any]:
        return await self._get("/organizations/")

    # Subscriptions

    async def get_subscriptions(
        self,
        organization_id: int | None = None,
        page: int | None = None,
        page_size: int | None = None,
    ) -> dict[str, Any]:
        params = self._params(organizationId=organization_id, page=page, pageSize=page_size)
        return await self._get("/subscriptions/", params)

    async def get_all_subscriptions(self, organization_id: int | None = None) -> dict[str, Any]:
        return await self._collect_pages(
            lambda page, size: self.get_subscriptions(organization_id, page, size)
        )

    async def get_subscription(self, subscription_id: int) -> dict[str, Any]:
        return await self._get(f"/subscriptions/{subscription_id}")

    async def get_subscription_tags(self, subscription_id: int) -> Any:
        return await self._get(f"/subscriptions/{subscription_id}/tags")

    async def update_subscription_tags(self, subscription_id: int, tags: dict[str, str]) -> Any:
        """Replace the full tag set of a subscription."""
        return await self._request("PUT", f"/subscriptions/{subscription_id}/tags", json=tags)

    # Tenants and Azure

    async def get_customer_tenants(self, organization_id: int | None = None) -> dict[str, Any]:
        return await self._get("/customertenants/", self._params(organizationId=organization_id))

    async def get_azure_subscriptions(self, customer_tenant_id: int) -> dict[str, Any]:
        """
        Azure subscriptions for a customer tenant.

        Resolves the tenant's Azure plan first. A tenant without an Azure plan
        (404, or a plan without Id) yields an empty result rather than an error.
        """
        empty = {
            "Items": [],
            "TotalHits": 0,
            "message": f"No Azure Plan found for customer tenant {customer_tenant_id}",
        }
        try:
            plan = await self._get(f"/customertenants/{customer_tenant_id}/azurePlan/")
        except UpstreamError as e:
            if e.status_code == 404:
                return empty
            raise

        if not plan or not plan.get("Id"):
            return empty

        try:
            return await self.get_azure_plan_subscriptions(plan["Id"])
        except UpstreamError as e:
            if e.status_code == 404:
                return empty
            raise

    async def get_azure_plan(self, azure_plan_id: int) -> dict[str, Any]:
        return await self._get(f"/AzurePlans/{azure_plan_id}")

    async def get_azure_plan_subscriptions(self, azure_plan_id: int) -> dict[str, Any]:
        return await self._get(f"/AzurePlans/{azure_plan_id}/azureSubscriptions/")

    async def get_azure_usage(
        self,
        azure_plan_id: int,
        subscription_id: int,
        year: int,
        month: int,
        include_bom: bool | None = None,
    ) -> dict[str, Any]:
        """Monthly usage export (SAS URI to a CSV file)"""
        params: dict[str, Any] = {"year": year, "month": month}
        if include_bom is not None:
            params["includeBom"] = "1" if include_bom else "0"
        return await self._get(
            f"/AzureUsage/{azure_plan_id}/azureSubscriptions/{subscription_id}/monthlyUsage",
            params,
        )

    async def get_usage_cost_by_organization(
        self, organization_id: int, from_date: str, to_date: str
    ) -> dict[str, Any]:
        return await self._get(
            f"/usagecost/organization/{organization_id}/", {"from": from_date, "to": to_date}
        )

    async def get_usage_cost_by_subscription(
        self, azure_plan_id: int, subscription_id: int, from_date: str, to_date: str
    ) -> dict[str, Any]:
        return await self._get(
            f"/usagecost/resellerCustomer/{azure_plan_id}/subscription/{subscription_id}"
            "/category/azure/",
            {"from": from_date, "to": to_date},
        )


__all__ = ["AuthToken", "CrayonClient", "TokenCache"]
