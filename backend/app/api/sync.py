"""API endpoints for the offline sync queue."""

from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.api.deps import DbSession, RedisClient
from app.core.auth import CurrentUser
from app.core.errors import ValidationError
from app.services.offline_queue import (
    ConnectivityMonitor,
    MutationResult,
    OfflineQueueStore,
    OfflineSyncService,
    PendingChange,
    QueueStatus,
    SqlChangeApplier,
    SyncResult,
)
from app.services.remote_store import SqlRemoteStore

router = APIRouter(prefix="/sync", tags=["sync"])


class ConnectivityRequest(BaseModel):
    online: bool


class ConnectivityResponse(BaseModel):
    changed: bool
    status: QueueStatus


def get_offline_sync(current_user: CurrentUser, db: DbSession, redis: RedisClient) -> OfflineSyncService:
    return OfflineSyncService(
        current_user.id,
        OfflineQueueStore(redis, current_user.id),
        SqlChangeApplier(SqlRemoteStore(db)),
        ConnectivityMonitor(redis, current_user.id),
    )


OfflineSync = Annotated[OfflineSyncService, Depends(get_offline_sync)]


@router.get("/status", response_model=QueueStatus)
async def get_status(service: OfflineSync) -> QueueStatus:
    return await service.status()


@router.post("/connectivity", response_model=ConnectivityResponse)
async def set_connectivity(body: ConnectivityRequest, service: OfflineSync) -> ConnectivityResponse:
    """Report a connectivity transition; coming online replays the queue."""
    changed = await service.set_online(body.online)
    return ConnectivityResponse(changed=changed, status=await service.status())


@router.post("/changes", response_model=MutationResult)
async def submit_change(change: PendingChange, service: OfflineSync) -> MutationResult:
    """Apply a write now, or queue it while offline."""
    return await service.mutate(change)


@router.post("/retry", response_model=SyncResult)
async def retry_sync(service: OfflineSync) -> SyncResult:
    return await service.retry()


@router.delete("/issues/{issue_id}")
async def dismiss_issue(issue_id: str, service: OfflineSync) -> dict[str, bool]:
    if not await service.dismiss_issue(issue_id):
        raise ValidationError(f"Sync issue {issue_id} not found")
    return {"dismissed": True}
