"""OAuth provider definitions for Shopify, Google Drive, Dropbox and Figma."""

import re
from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel

from app.core.config import settings
from app.core.errors import ValidationError
from app.core.http import http_session

SHOP_DOMAIN_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*\.myshopify\.com$")


class TokenResponse(BaseModel):
    """OAuth token response."""

    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None
    scope: str | None = None

    def expires_at(self, now: datetime | None = None) -> datetime | None:
        if self.expires_in is None:
            return None
        return (now or datetime.now(UTC)) + timedelta(seconds=self.expires_in)


class OAuthProvider(ABC):
    """Base class for OAuth providers.

    Subclasses mostly declare URLs and scopes; Shopify overrides the URL
    builders because its endpoints live on the merchant's shop domain.
    """

    name: str = "base"
    authorization_url: str = ""
    token_url: str = ""
    revoke_url: str | None = None
    scopes: list[str] = []
    scope_separator: str = " "
    supports_refresh: bool = True
    extra_auth_params: dict[str, str] = {}

    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        self.http_client = http_client

    @property
    @abstractmethod
    def client_id(self) -> str | None: ...

    @property
    @abstractmethod
    def client_secret(self) -> str | None: ...

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def prepare_context(self, context: dict[str, Any] | None) -> dict[str, Any]:
        """Validate and normalize pre-callback settings stored with the state."""
        return dict(context or {})

    def get_authorization_url(
        self, state: str, redirect_uri: str, context: dict[str, Any] | None = None
    ) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.scope_separator.join(self.scopes),
            "state": state,
            **self.extra_auth_params,
        }
        return f"{self.authorization_url}?{urlencode(params)}"

    async def exchange_code(
        self, code: str, redirect_uri: str, context: dict[str, Any] | None = None
    ) -> TokenResponse:
        return await self._request_token(
            self.token_url,
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
        )

    async def refresh_access_token(
        self, refresh_token: str, context: dict[str, Any] | None = None
    ) -> TokenResponse:
        if not self.supports_refresh:
            raise ValidationError(f"{self.name} tokens cannot be refreshed")
        token = await self._request_token(
            self.token_url,
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        # Providers may omit the refresh token when it is unchanged
        if token.refresh_token is None:
            token.refresh_token = refresh_token
        return token

    async def revoke_token(self, token: str) -> bool:
        """Best-effort revocation; False when the provider has no revoke endpoint."""
        return False

    async def _request_token(self, url: str, data: dict[str, Any]) -> TokenResponse:
        async with http_session(self.http_client, settings.PROVIDER_TIMEOUT) as client:
            response = await client.post(url, data=data, headers={"Accept": "application/json"})
            response.raise_for_status()
            return TokenResponse.model_validate(response.json())


class ShopifyProvider(OAuthProvider):
    name = "shopify"
    scopes = ["read_products", "write_products"]
    scope_separator = ","
    supports_refresh = False  # Offline access tokens never expire

    @property
    def client_id(self) -> str | None:
        return settings.SHOPIFY_CLIENT_ID

    @property
    def client_secret(self) -> str | None:
        return settings.SHOPIFY_CLIENT_SECRET

    @staticmethod
    def normalize_shop_domain(shop: str) -> str:
        domain = shop.strip().lower().removeprefix("https://").removeprefix("http://").rstrip("/")
        if "." not in domain:
            domain = f"{domain}.myshopify.com"
        if not SHOP_DOMAIN_PATTERN.match(domain):
            raise ValidationError(f"Invalid Shopify shop domain: {shop}")
        return domain

    def prepare_context(self, context: dict[str, Any] | None) -> dict[str, Any]:
        prepared = dict(context or {})
        shop = prepared.get("shop_domain")
        if not shop:
            raise ValidationError("A shop domain is required to connect Shopify")
        prepared["shop_domain"] = self.normalize_shop_domain(shop)
        return prepared

    def get_authorization_url(
        self, state: str, redirect_uri: str, context: dict[str, Any] | None = None
    ) -> str:
        shop = self.prepare_context(context)["shop_domain"]
        params = {
            "client_id": self.client_id,
            "scope": self.scope_separator.join(self.scopes),
            "redirect_uri": redirect_uri,
            "state": state,
        }
        return f"https://{shop}/admin/oauth/authorize?{urlencode(params)}"

    async def exchange_code(
        self, code: str, redirect_uri: str, context: dict[str, Any] | None = None
    ) -> TokenResponse:
        shop = self.prepare_context(context)["shop_domain"]
        async with http_session(self.http_client, settings.PROVIDER_TIMEOUT) as client:
            response = await client.post(
                f"https://{shop}/admin/oauth/access_token",
                json={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "code": code,
                },
            )
            response.raise_for_status()
            return TokenResponse.model_validate(response.json())


class GoogleDriveProvider(OAuthProvider):
    name = "google-drive"
    authorization_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    revoke_url = "https://oauth2.googleapis.com/revoke"
    scopes = ["https://www.googleapis.com/auth/drive.file"]
    extra_auth_params = {"access_type": "offline", "prompt": "consent"}

    @property
    def client_id(self) -> str | None:
        return settings.GOOGLE_CLIENT_ID

    @property
    def client_secret(self) -> str | None:
        return settings.GOOGLE_CLIENT_SECRET

    async def revoke_token(self, token: str) -> bool:
        async with http_session(self.http_client, settings.PROVIDER_TIMEOUT) as client:
            response = await client.post(
                self.revoke_url,  # type: ignore[arg-type]
                params={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            return response.is_success


class DropboxProvider(OAuthProvider):
    name = "dropbox"
    authorization_url = "https://www.dropbox.com/oauth2/authorize"
    token_url = "https://api.dropboxapi.com/oauth2/token"
    revoke_url = "https://api.dropboxapi.com/2/auth/token/revoke"
    scopes = ["files.content.write", "files.content.read"]
    extra_auth_params = {"token_access_type": "offline"}

    @property
    def client_id(self) -> str | None:
        return settings.DROPBOX_CLIENT_ID

    @property
    def client_secret(self) -> str | None:
        return settings.DROPBOX_CLIENT_SECRET

    async def revoke_token(self, token: str) -> bool:
        async with http_session(self.http_client, settings.PROVIDER_TIMEOUT) as client:
            response = await client.post(
                self.revoke_url,  # type: ignore[arg-type]
                headers={"Authorization": f"Bearer {token}"},
            )
            return response.is_success


class FigmaProvider(OAuthProvider):
    name = "figma"
    authorization_url = "https://www.figma.com/oauth"
    token_url = "https://www.figma.com/api/oauth/token"
    refresh_url = "https://www.figma.com/api/oauth/refresh"
    scopes = ["file_read"]

    @property
    def client_id(self) -> str | None:
        return settings.FIGMA_CLIENT_ID

    @property
    def client_secret(self) -> str | None:
        return settings.FIGMA_CLIENT_SECRET

    async def refresh_access_token(
        self, refresh_token: str, context: dict[str, Any] | None = None
    ) -> TokenResponse:
        token = await self._request_token(
            self.refresh_url,
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
            },
        )
        if token.refresh_token is None:
            token.refresh_token = refresh_token
        return token


PROVIDERS: dict[str, type[OAuthProvider]] = {
    ShopifyProvider.name: ShopifyProvider,
    GoogleDriveProvider.name: GoogleDriveProvider,
    DropboxProvider.name: DropboxProvider,
    FigmaProvider.name: FigmaProvider,
}


def get_provider(name: str, http_client: httpx.AsyncClient | None = None) -> OAuthProvider:
    provider_cls = PROVIDERS.get(name)
    if provider_cls is None:
        raise ValidationError(f"Unsupported OAuth provider: {name}")
    return provider_cls(http_client=http_client)
