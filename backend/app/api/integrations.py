"""API endpoints for third-party integrations (connect, callback, sync)."""

import json
from datetime import datetime
from typing import Any
from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy import select

from app.api.deps import DbSession, Vault
from app.core.auth import CurrentUser
from app.core.config import settings
from app.core.errors import MockupSuiteError
from app.core.limiter import limiter
from app.models.integration import Integration
from app.services.integrations.sync_engine import IntegrationSyncEngine
from app.services.oauth.coordinator import OAuthCoordinator
from app.services.oauth.handshake import outcome_to_message, parse_redirect_params

router = APIRouter(prefix="/integrations", tags=["integrations"])
logger = structlog.get_logger()


class IntegrationResponse(BaseModel):
    """Catalog entry with the user's connection state (tokens never included)."""

    id: str
    name: str
    category: str
    description: str | None
    status: str
    connected: bool
    connected_at: datetime | None = None
    last_synced_at: datetime | None = None
    settings: dict[str, Any] = Field(default_factory=dict)


class ConnectRequest(BaseModel):
    platform_settings: dict[str, Any] | None = Field(
        None, description="Platform-specific settings, e.g. {'shop_domain': 'acme.myshopify.com'}"
    )


class ConnectResponse(BaseModel):
    auth_url: str
    state: str
    expires_at: datetime


class SyncRequest(BaseModel):
    operation: str = Field(..., description="Platform operation, e.g. 'import_products'")
    params: dict[str, Any] = Field(default_factory=dict)


class SyncResponse(BaseModel):
    integration_id: str
    operation: str
    data: dict[str, Any]
    synced_at: datetime | None


def _app_callback_url(**params: str) -> str:
    return f"{settings.APP_ORIGIN}/integrations/callback?{urlencode(params)}"


@router.get("", response_model=list[IntegrationResponse])
async def list_integrations(current_user: CurrentUser, db: DbSession, vault: Vault) -> list[IntegrationResponse]:
    """List the integration catalog with the user's connections."""
    result = await db.execute(select(Integration).order_by(Integration.name))
    catalog = result.scalars().all()
    connections = {
        c.integration_id: c for c in await OAuthCoordinator(db, vault).list_connections(current_user.id)
    }

    responses = []
    for integration in catalog:
        connection = connections.get(integration.id)
        responses.append(
            IntegrationResponse(
                id=integration.id,
                name=integration.name,
                category=integration.category,
                description=integration.description,
                status=integration.status,
                connected=connection is not None,
                connected_at=connection.connected_at if connection else None,
                last_synced_at=connection.last_synced_at if connection else None,
                settings=dict(connection.settings or {}) if connection else {},
            )
        )
    return responses


@router.post("/{integration_id}/connect", response_model=ConnectResponse)
@limiter.limit("20/minute")
async def connect_integration(
    integration_id: str,
    request: Request,  # Required for rate limiter
    current_user: CurrentUser,
    db: DbSession,
    vault: Vault,
    body: ConnectRequest | None = None,
) -> ConnectResponse:
    """Start an OAuth connect; the client opens ``auth_url`` in a popup or redirects."""
    auth = await OAuthCoordinator(db, vault).initiate(
        current_user.id, integration_id, body.platform_settings if body else None
    )
    return ConnectResponse(auth_url=auth.auth_url, state=auth.state, expires_at=auth.expires_at)


@router.get("/oauth/callback")
async def oauth_callback(
    db: DbSession,
    vault: Vault,
    state: str = Query(...),
    code: str | None = Query(default=None),
    shop: str | None = Query(default=None),
    error: str | None = Query(default=None),
) -> RedirectResponse:
    """Provider redirect target; hands the outcome back to the app's callback view."""
    coordinator = OAuthCoordinator(db, vault)

    if error or not code:
        platform = await coordinator.abandon(state)
        logger.warning("oauth_provider_error", integration_id=platform, error=error)
        return RedirectResponse(
            url=_app_callback_url(error=error or "missing_code", platform=platform or "")
        )

    try:
        connection = await coordinator.callback(code, state, shop=shop)
    except MockupSuiteError as exc:
        return RedirectResponse(
            url=_app_callback_url(
                error=exc.kind.value, platform=str(exc.details.get("integration_id", ""))
            )
        )

    return RedirectResponse(url=_app_callback_url(success="true", platform=connection.integration_id))


@router.get("/oauth/complete", response_class=HTMLResponse)
async def oauth_complete(request: Request) -> HTMLResponse:
    """Popup landing page that posts the outcome to its opener and closes."""
    message = outcome_to_message(parse_redirect_params(dict(request.query_params)))
    payload = json.dumps(message).replace("</", "<\\/")
    origin = json.dumps(settings.APP_ORIGIN)
    return HTMLResponse(
        "<!doctype html><html><body><script>"
        f"if (window.opener) {{ window.opener.postMessage({payload}, {origin}); }}"
        "window.close();"
        "</script></body></html>"
    )


@router.delete("/{integration_id}")
async def disconnect_integration(
    integration_id: str, current_user: CurrentUser, db: DbSession, vault: Vault
) -> dict[str, bool]:
    disconnected = await OAuthCoordinator(db, vault).disconnect(current_user.id, integration_id)
    return {"disconnected": disconnected}


@router.post("/{integration_id}/sync", response_model=SyncResponse)
async def sync_integration(
    integration_id: str,
    body: SyncRequest,
    current_user: CurrentUser,
    db: DbSession,
    vault: Vault,
) -> SyncResponse:
    """Run a platform operation on the user's connection."""
    outcome = await IntegrationSyncEngine(db, vault).sync(
        current_user.id, integration_id, body.operation, body.params
    )
    return SyncResponse(
        integration_id=outcome.integration_id,
        operation=outcome.operation,
        data=outcome.data,
        synced_at=outcome.synced_at,
    )
