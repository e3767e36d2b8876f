"""Blackbaud SKY API adapter -- constituents as donors, gifts as donations.

SKY API list endpoints return {"count", "value", "next_link"}; the full
next_link URL is used as the opaque page token. Requests carry both the
OAuth bearer token and the Bb-Api-Subscription-Key header.

No project fetch and no upload capabilities.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import httpx
import structlog

from src.givesync.crm.adapter import CRMAdapter
from src.givesync.crm.exceptions import CRMAPIError
from src.givesync.crm.field_mapping import (
    map_blackbaud_constituent,
    map_blackbaud_gift,
    map_page,
)
from src.givesync.crm.http import raise_for_vendor_status, vendor_retry
from src.givesync.crm.schemas import (
    CanonicalDonation,
    CanonicalDonor,
    OAuthTokens,
    PaginatedResponse,
    PaginationParams,
)

logger = structlog.get_logger(__name__)


class BlackbaudAdapter(CRMAdapter):
    """CRM adapter for Blackbaud Raiser's Edge NXT via the SKY API.

    Args:
        client_id: OAuth application id.
        client_secret: OAuth application secret.
        subscription_key: SKY developer subscription key.
        default_currency: Currency assigned to gifts (SKY gifts carry none).
        transport: Optional httpx transport (tests inject httpx.MockTransport).
    """

    name = "blackbaud"
    display_name = "Blackbaud"

    BASE_URL = "https://api.sky.blackbaud.com"
    AUTH_URL = "https://oauth2.sky.blackbaud.com"
    TIMEOUT = 30.0

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        subscription_key: str,
        default_currency: str = "USD",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._subscription_key = subscription_key
        self._default_currency = default_currency
        self._transport = transport

        if not (client_id and client_secret and subscription_key):
            logger.warning("blackbaud.credentials_not_configured")

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client for one request."""
        return httpx.AsyncClient(timeout=self.TIMEOUT, transport=self._transport)

    def _headers(self, access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Bb-Api-Subscription-Key": self._subscription_key,
            "Content-Type": "application/json",
        }

    @vendor_retry
    async def _get(self, path_or_url: str, access_token: str, action: str) -> dict[str, Any]:
        """GET a SKY API path or an absolute next_link URL."""
        url = path_or_url if path_or_url.startswith("http") else f"{self.BASE_URL}{path_or_url}"
        async with self._client() as client:
            response = await client.get(url, headers=self._headers(access_token))
            raise_for_vendor_status(self.name, response, action)
            return response.json()

    @vendor_retry
    async def _post_token(self, form: dict[str, str], action: str) -> OAuthTokens:
        async with self._client() as client:
            response = await client.post(
                f"{self.AUTH_URL}/token",
                data={**form, "client_id": self._client_id, "client_secret": self._client_secret},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            raise_for_vendor_status(self.name, response, action)
            data = response.json()

        expires_in = data.get("expires_in")
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=(
                datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
                if expires_in is not None
                else None
            ),
            scope=data.get("scope"),
            token_type=data.get("token_type"),
        )

    # ── Fetch ─────────────────────────────────────────────────────────────

    async def fetch_donors(
        self,
        access_token: str,
        params: PaginationParams,
        metadata: dict[str, Any] | None = None,
    ) -> PaginatedResponse[CanonicalDonor]:
        """Fetch one page of constituents."""
        url = params.page_token or f"/constituent/v1/constituents?limit={params.limit}"
        data = await self._get(url, access_token, "fetch constituents")
        next_link = data.get("next_link")
        donors, failures = map_page(data.get("value", []), map_blackbaud_constituent, "id")
        return PaginatedResponse[CanonicalDonor](
            data=donors,
            failures=failures,
            has_more=bool(next_link),
            next_page_token=next_link,
            total_count=data.get("count"),
        )

    async def fetch_donations(
        self,
        access_token: str,
        params: PaginationParams,
        metadata: dict[str, Any] | None = None,
    ) -> PaginatedResponse[CanonicalDonation]:
        """Fetch one page of gifts."""
        url = params.page_token or f"/gift/v1/gifts?limit={params.limit}"
        data = await self._get(url, access_token, "fetch gifts")
        next_link = data.get("next_link")
        donations, failures = map_page(
            data.get("value", []),
            lambda item: map_blackbaud_gift(item, self._default_currency),
            "id",
        )
        return PaginatedResponse[CanonicalDonation](
            data=donations,
            failures=failures,
            has_more=bool(next_link),
            next_page_token=next_link,
            total_count=data.get("count"),
        )

    async def get_donor_by_id(self, access_token: str, external_id: str) -> CanonicalDonor | None:
        """Fetch a single constituent, or None if it no longer exists."""
        try:
            data = await self._get(
                f"/constituent/v1/constituents/{external_id}", access_token, "fetch constituent"
            )
        except CRMAPIError as exc:
            if exc.status_code == 404:
                return None
            raise
        return map_blackbaud_constituent(data)

    # ── OAuth ─────────────────────────────────────────────────────────────

    def get_authorization_url(self, state: str, redirect_uri: str) -> str:
        query = urlencode(
            {
                "client_id": self._client_id,
                "response_type": "code",
                "redirect_uri": redirect_uri,
                "state": state,
            }
        )
        return f"{self.AUTH_URL}/authorization?{query}"

    async def exchange_auth_code(
        self, code: str, redirect_uri: str, state: str | None = None
    ) -> OAuthTokens:
        return await self._post_token(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri},
            "exchange authorization code",
        )

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        return await self._post_token(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "refresh access token",
        )

    async def validate_token(
        self, access_token: str, metadata: dict[str, Any] | None = None
    ) -> bool:
        try:
            await self._get("/constituent/v1/constituents?limit=1", access_token, "validate token")
        except (CRMAPIError, httpx.HTTPError):
            return False
        return True
