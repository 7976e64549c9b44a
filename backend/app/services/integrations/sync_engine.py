"""Run platform operations against a user's connected integration."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx
import structlog
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    ErrorKind,
    IntegrationDisconnectedError,
    MockupSuiteError,
    ValidationError,
    categorize_error,
)
from app.core.http import http_session
from app.core.vault import TokenVault
from app.db.base import Clock, utcnow
from app.models.user_integration import UserIntegrationConnection
from app.services.integrations.platforms import PlatformHandler, SyncContext, get_handler
from app.services.oauth.coordinator import OAuthCoordinator

logger = structlog.get_logger()


@dataclass
class SyncOutcome:
    integration_id: str
    operation: str
    data: dict[str, Any] = field(default_factory=dict)
    synced_at: datetime | None = None


class IntegrationSyncEngine:
    """Resolves the connection, refreshes expired tokens, then dispatches.

    A refresh failure, a missing connection, or a provider rejecting the
    token all surface as ``IntegrationDisconnectedError`` so the client can
    prompt for reconnection.
    """

    def __init__(
        self,
        db: AsyncSession,
        vault: TokenVault | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock = utcnow,
        handlers: dict[str, PlatformHandler] | None = None,
    ) -> None:
        self.db = db
        self.vault = vault or TokenVault()
        self.http_client = http_client
        self.clock = clock
        self.handlers = handlers
        self.coordinator = OAuthCoordinator(db, self.vault, http_client=http_client, clock=clock)

    def _handler(self, integration_id: str) -> PlatformHandler:
        if self.handlers is not None and integration_id in self.handlers:
            return self.handlers[integration_id]
        return get_handler(integration_id)

    async def _resolve_connection(
        self, user_id: int, integration_id: str
    ) -> UserIntegrationConnection:
        connection = await self.coordinator.get_connection(user_id, integration_id)
        if connection is None:
            raise IntegrationDisconnectedError(
                f"{integration_id} is not connected", details={"integration_id": integration_id}
            )
        if connection.is_token_expired(self.clock()):
            logger.info("oauth_token_expired", user_id=user_id, integration_id=integration_id)
            connection = await self.coordinator.refresh(connection)
        return connection

    async def sync(
        self,
        user_id: int,
        integration_id: str,
        operation: str,
        params: dict[str, Any] | None = None,
    ) -> SyncOutcome:
        handler = self._handler(integration_id)
        if not handler.supports(operation):
            raise ValidationError(f"{integration_id} does not support '{operation}'")

        connection = await self._resolve_connection(user_id, integration_id)
        connection_id = connection.id
        access_token = self.vault.decrypt(connection.access_token)

        async with http_session(self.http_client, settings.PROVIDER_TIMEOUT) as client:
            ctx = SyncContext(
                db=self.db,
                user_id=user_id,
                integration_id=integration_id,
                access_token=access_token,
                settings=dict(connection.settings or {}),
                client=client,
            )
            try:
                data = await handler.run(operation, ctx, params or {})
            except MockupSuiteError:
                raise
            except Exception as exc:
                error = categorize_error(exc)
                logger.warning(
                    "integration_sync_failed",
                    user_id=user_id,
                    integration_id=integration_id,
                    operation=operation,
                    kind=error.kind.value,
                )
                if error.kind == ErrorKind.AUTH:
                    raise IntegrationDisconnectedError(
                        details={"integration_id": integration_id}
                    ) from exc
                raise error from exc

        synced_at = self.clock()
        try:
            await self.db.execute(
                update(UserIntegrationConnection)
                .where(UserIntegrationConnection.id == connection_id)
                .values(last_synced_at=synced_at)
            )
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            raise categorize_error(exc) from exc

        logger.info(
            "integration_synced",
            user_id=user_id,
            integration_id=integration_id,
            operation=operation,
        )
        return SyncOutcome(integration_id, operation, data, synced_at)
