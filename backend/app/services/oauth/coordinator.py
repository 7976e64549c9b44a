"""Server side of the OAuth connect/disconnect lifecycle."""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import httpx
import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    IntegrationDisconnectedError,
    IntegrationNotConfiguredError,
    InvalidOAuthStateError,
    MockupSuiteError,
    ValidationError,
    categorize_error,
)
from app.core.vault import TokenVault
from app.db.base import Clock, utcnow
from app.models.integration import Integration
from app.models.oauth_state import OAuthState
from app.models.user_integration import UserIntegrationConnection
from app.services.oauth.providers import OAuthProvider, TokenResponse, get_provider

logger = structlog.get_logger()


@dataclass(frozen=True)
class AuthorizationRequest:
    auth_url: str
    state: str
    expires_at: datetime


class OAuthCoordinator:
    """Drives initiate, callback, refresh and disconnect for every platform.

    Each step commits on its own: the relational store only promises per-row
    atomicity, so the state row is consumed before the code exchange starts.
    """

    def __init__(
        self,
        db: AsyncSession,
        vault: TokenVault | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock = utcnow,
        state_ttl: int | None = None,
    ) -> None:
        self.db = db
        self.vault = vault or TokenVault()
        self.http_client = http_client
        self.clock = clock
        self.state_ttl = state_ttl or settings.OAUTH_STATE_TTL_SECONDS

    async def _commit(self, operation: str) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.warning("oauth_write_failed", operation=operation, error=str(exc))
            raise categorize_error(exc) from exc

    async def _get_integration(self, integration_id: str) -> Integration:
        integration = await self.db.get(Integration, integration_id)
        if integration is None:
            raise ValidationError(f"Unknown integration: {integration_id}")
        if not integration.is_available:
            raise ValidationError(f"{integration.name} is not available yet")
        return integration

    def _provider_for(self, integration: Integration) -> OAuthProvider:
        provider = get_provider(integration.oauth_provider or integration.id, self.http_client)
        if not provider.is_configured:
            raise IntegrationNotConfiguredError(
                f"OAuth credentials for {integration.name} are not configured",
                details={"integration_id": integration.id},
            )
        return provider

    async def initiate(
        self,
        user_id: int,
        integration_id: str,
        platform_settings: dict[str, Any] | None = None,
    ) -> AuthorizationRequest:
        """Persist a fresh state and build the provider authorization URL."""
        integration = await self._get_integration(integration_id)
        provider = self._provider_for(integration)
        context = provider.prepare_context(platform_settings)

        state = secrets.token_urlsafe(32)
        expires_at = self.clock() + timedelta(seconds=self.state_ttl)
        self.db.add(
            OAuthState(
                state=state,
                user_id=user_id,
                integration_id=integration.id,
                settings=context or None,
                expires_at=expires_at,
            )
        )
        await self._commit("initiate")

        auth_url = provider.get_authorization_url(state, settings.oauth_redirect_uri, context)
        logger.info("oauth_initiated", user_id=user_id, integration_id=integration.id)
        return AuthorizationRequest(auth_url=auth_url, state=state, expires_at=expires_at)

    async def _consume_state(self, state: str) -> OAuthState:
        """Delete the state row and return it; fails closed when unusable."""
        oauth_state = await self.db.get(OAuthState, state)
        if oauth_state is None:
            logger.warning("oauth_state_missing")
            raise InvalidOAuthStateError()

        await self.db.delete(oauth_state)
        await self._commit("consume_state")

        if oauth_state.is_expired(self.clock()):
            logger.warning(
                "oauth_state_expired",
                user_id=oauth_state.user_id,
                integration_id=oauth_state.integration_id,
            )
            raise InvalidOAuthStateError(details={"integration_id": oauth_state.integration_id})
        return oauth_state

    async def callback(
        self, code: str, state: str, shop: str | None = None
    ) -> UserIntegrationConnection:
        """Consume ``state``, exchange ``code`` and upsert the connection."""
        oauth_state = await self._consume_state(state)
        integration_id = oauth_state.integration_id
        context = dict(oauth_state.settings or {})

        try:
            integration = await self._get_integration(integration_id)
            provider = self._provider_for(integration)
            if shop is not None and "shop_domain" in context:
                if provider.prepare_context({"shop_domain": shop})["shop_domain"] != context["shop_domain"]:
                    raise InvalidOAuthStateError("Shop does not match the authorization request")
            token = await provider.exchange_code(code, settings.oauth_redirect_uri, context)
        except Exception as exc:
            error = categorize_error(exc)
            error.details.setdefault("integration_id", integration_id)
            logger.warning(
                "oauth_exchange_failed",
                user_id=oauth_state.user_id,
                integration_id=integration_id,
                kind=error.kind.value,
            )
            if error is exc:
                raise
            raise error from exc

        connection = await self._upsert_connection(oauth_state.user_id, integration_id, token, context)
        logger.info("oauth_connected", user_id=oauth_state.user_id, integration_id=integration_id)
        return connection

    async def abandon(self, state: str) -> str | None:
        """Consume the state of an authorization the user denied.

        Returns the integration it was for, or None for an unknown state.
        """
        oauth_state = await self.db.get(OAuthState, state)
        if oauth_state is None:
            return None
        integration_id = oauth_state.integration_id
        await self.db.delete(oauth_state)
        await self._commit("abandon")
        logger.info("oauth_denied", user_id=oauth_state.user_id, integration_id=integration_id)
        return integration_id

    async def _upsert_connection(
        self,
        user_id: int,
        integration_id: str,
        token: TokenResponse,
        context: dict[str, Any],
    ) -> UserIntegrationConnection:
        values = {
            "access_token": self.vault.encrypt(token.access_token),
            "refresh_token": self.vault.encrypt_optional(token.refresh_token),
            "token_expires_at": token.expires_at(self.clock()),
            "settings": context,
        }

        for attempt in range(2):
            existing = await self.get_connection(user_id, integration_id)
            if existing is not None:
                for field, value in values.items():
                    setattr(existing, field, value)
                existing.connected_at = self.clock()
                existing.updated_at = self.clock()
                await self._commit("reconnect")
                return existing

            connection = UserIntegrationConnection(
                user_id=user_id, integration_id=integration_id, **values
            )
            self.db.add(connection)
            try:
                await self.db.commit()
            except IntegrityError as exc:
                # A concurrent callback inserted first; reconnecting overwrites
                await self.db.rollback()
                if attempt:
                    raise categorize_error(exc) from exc
                continue
            except SQLAlchemyError as exc:
                await self.db.rollback()
                logger.warning("oauth_write_failed", operation="connect", error=str(exc))
                raise categorize_error(exc) from exc
            return connection

        raise AssertionError("unreachable")

    async def get_connection(
        self, user_id: int, integration_id: str
    ) -> UserIntegrationConnection | None:
        result = await self.db.execute(
            select(UserIntegrationConnection).where(
                UserIntegrationConnection.user_id == user_id,
                UserIntegrationConnection.integration_id == integration_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_connections(self, user_id: int) -> list[UserIntegrationConnection]:
        result = await self.db.execute(
            select(UserIntegrationConnection).where(UserIntegrationConnection.user_id == user_id)
        )
        return list(result.scalars().all())

    async def refresh(self, connection: UserIntegrationConnection) -> UserIntegrationConnection:
        """Refresh an expired token; any failure means the user must reconnect."""
        try:
            integration = await self._get_integration(connection.integration_id)
            provider = self._provider_for(integration)
            refresh_token = self.vault.decrypt_optional(connection.refresh_token)
            if not refresh_token or not provider.supports_refresh:
                raise IntegrationDisconnectedError("No refresh token available")
            token = await provider.refresh_access_token(refresh_token, connection.settings)
        except Exception as exc:
            error = categorize_error(exc)
            logger.warning(
                "oauth_refresh_failed",
                user_id=connection.user_id,
                integration_id=connection.integration_id,
                kind=error.kind.value,
            )
            raise IntegrationDisconnectedError(
                details={"integration_id": connection.integration_id, "cause": error.kind.value}
            ) from exc

        connection.access_token = self.vault.encrypt(token.access_token)
        connection.refresh_token = self.vault.encrypt_optional(token.refresh_token)
        connection.token_expires_at = token.expires_at(self.clock())
        connection.updated_at = self.clock()
        await self._commit("refresh")
        logger.info(
            "oauth_token_refreshed",
            user_id=connection.user_id,
            integration_id=connection.integration_id,
        )
        return connection

    async def disconnect(self, user_id: int, integration_id: str) -> bool:
        """Revoke (best effort) and delete the connection.

        Returns False when there was nothing to disconnect.
        """
        connection = await self.get_connection(user_id, integration_id)
        if connection is None:
            return False

        try:
            integration = await self.db.get(Integration, integration_id)
            provider_name = integration.oauth_provider if integration else None
            provider = get_provider(provider_name or integration_id, self.http_client)
            revoked = await provider.revoke_token(self.vault.decrypt(connection.access_token))
            logger.info("oauth_token_revoked", integration_id=integration_id, revoked=revoked)
        except (MockupSuiteError, httpx.HTTPError) as exc:
            logger.warning(
                "oauth_revoke_failed", integration_id=integration_id, error_type=type(exc).__name__
            )

        await self.db.delete(connection)
        await self._commit("disconnect")
        logger.info("oauth_disconnected", user_id=user_id, integration_id=integration_id)
        return True

    async def purge_expired_states(self) -> int:
        result = await self.db.execute(delete(OAuthState).where(OAuthState.expires_at <= self.clock()))
        await self._commit("purge_expired_states")
        return result.rowcount or 0
