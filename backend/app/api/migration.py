"""API endpoints for migrating legacy device-local data into the account."""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from app.api.deps import DbSession, RedisClient, Storage
from app.core.auth import CurrentUser
from app.services.migration import LegacyData, LegacyLocalStore, MigrationResult, MigrationService
from app.services.remote_store import SqlRemoteStore

router = APIRouter(prefix="/migration", tags=["migration"])
logger = structlog.get_logger()


class MigrationStatus(BaseModel):
    has_legacy_data: bool


class LegacyBackup(BaseModel):
    backup: str


def get_legacy_store(current_user: CurrentUser, redis: RedisClient) -> LegacyLocalStore:
    return LegacyLocalStore(redis, current_user.id)


Legacy = Annotated[LegacyLocalStore, Depends(get_legacy_store)]


@router.get("/status", response_model=MigrationStatus)
async def get_migration_status(legacy: Legacy) -> MigrationStatus:
    return MigrationStatus(has_legacy_data=await legacy.has_legacy_data())


@router.put("/legacy", status_code=status.HTTP_204_NO_CONTENT)
async def stage_legacy_data(body: LegacyData, legacy: Legacy) -> None:
    """Stage the device's local projects, brand kit and templates."""
    await legacy.save(body)


@router.get("/legacy/backup", response_model=LegacyBackup)
async def backup_legacy_data(legacy: Legacy) -> LegacyBackup:
    return LegacyBackup(backup=await legacy.backup())


@router.post("/legacy/restore", status_code=status.HTTP_204_NO_CONTENT)
async def restore_legacy_data(body: LegacyBackup, legacy: Legacy) -> None:
    await legacy.restore(body.backup)


@router.delete("/legacy", status_code=status.HTTP_204_NO_CONTENT)
async def clear_legacy_data(current_user: CurrentUser, legacy: Legacy) -> None:
    """Clear staged data once the client has accepted the migration result."""
    await legacy.clear()
    logger.info("legacy_data_cleared", user_id=current_user.id)


@router.post("/run", response_model=MigrationResult)
async def run_migration(
    current_user: CurrentUser, db: DbSession, storage: Storage, legacy: Legacy
) -> MigrationResult:
    service = MigrationService(SqlRemoteStore(db), storage, legacy)
    return await service.migrate(current_user.id)
