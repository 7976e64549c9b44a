"""Offline sync queue.

Writes made while a device is offline are queued per user in Redis and
replayed strictly in order once it is back online. A change that keeps
failing transiently holds the head of the queue so later changes to the same
entity never overtake it. A change the server rejects outright is dropped
from the queue and kept as a dismissible sync issue.

Known limitation: changes from two devices to the same entity are applied in
arrival order; there is no conflict resolution.
"""

import asyncio
import uuid
import weakref
from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import StrEnum
from functools import partial
from typing import Annotated, Any, Literal, Protocol

import structlog
from pydantic import BaseModel, Field
from redis.asyncio import Redis

from app.core.errors import ErrorKind, MockupSuiteError, ValidationError, categorize_error
from app.core.retry import PROGRAMMING_ERRORS, REPLAY_POLICY, RetryPolicy, retry_async
from app.db.base import utcnow
from app.services.remote_store import SqlRemoteStore

logger = structlog.get_logger()

OFFLINE_MESSAGE = "Device is offline"


class EntityType(StrEnum):
    PROJECT = "project"
    MOCKUP = "mockup"
    BRAND_KIT = "brand_kit"
    PROMPT_TEMPLATE = "prompt_template"


class ChangeOperation(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class PendingRef(BaseModel):
    """An entity created offline, known only by its client-side temp id."""

    kind: Literal["pending"] = "pending"
    temp_id: str


class CommittedRef(BaseModel):
    kind: Literal["committed"] = "committed"
    id: str


EntityRef = Annotated[PendingRef | CommittedRef, Field(discriminator="kind")]


class PendingChange(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    entity_type: EntityType
    operation: ChangeOperation
    target: EntityRef | None = None
    parent: EntityRef | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    attempt_count: int = 0
    last_error: str | None = None


class SyncIssue(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    change_id: str
    entity_type: EntityType
    operation: ChangeOperation
    kind: ErrorKind
    message: str
    created_at: datetime = Field(default_factory=utcnow)


class SyncResult(BaseModel):
    success: bool
    synced: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)


class MutationResult(BaseModel):
    queued: bool
    entity_id: str | None = None
    change_id: str | None = None


class QueueStatus(BaseModel):
    online: bool
    pending: int
    issues: list[SyncIssue]


ConnectivityListener = Callable[[bool], Awaitable[None]]


class ConnectivityMonitor:
    """Per-user online flag; listeners fire only on transitions."""

    def __init__(self, redis: Redis, user_id: int) -> None:
        self.redis = redis
        self.user_id = user_id
        self._listeners: list[ConnectivityListener] = []

    @property
    def _key(self) -> str:
        return f"connectivity:{self.user_id}"

    async def is_online(self) -> bool:
        value = await self.redis.get(self._key)
        # Unknown devices are assumed online
        return value is None or value in (b"1", "1")

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    async def set_online(self, online: bool) -> bool:
        """Persist the flag; returns True when it changed."""
        was_online = await self.is_online()
        await self.redis.set(self._key, "1" if online else "0")
        if was_online == online:
            return False

        logger.info("connectivity_changed", user_id=self.user_id, online=online)
        for listener in list(self._listeners):
            await listener(online)
        return True


class OfflineQueueStore:
    """Redis persistence: FIFO list, temp id map, sync issues."""

    def __init__(self, redis: Redis, user_id: int) -> None:
        self.redis = redis
        self.user_id = user_id
        self.queue_key = f"offline_queue:{user_id}"
        self.ids_key = f"offline_queue:{user_id}:ids"
        self.issues_key = f"offline_queue:{user_id}:issues"

    async def enqueue(self, change: PendingChange) -> None:
        await self.redis.rpush(self.queue_key, change.model_dump_json())

    async def peek(self) -> PendingChange | None:
        raw = await self.redis.lindex(self.queue_key, 0)
        return None if raw is None else PendingChange.model_validate_json(raw)

    async def replace_head(self, change: PendingChange) -> None:
        await self.redis.lset(self.queue_key, 0, change.model_dump_json())

    async def pop_head(self) -> None:
        await self.redis.lpop(self.queue_key)

    async def pending(self) -> list[PendingChange]:
        raw_items = await self.redis.lrange(self.queue_key, 0, -1)
        return [PendingChange.model_validate_json(raw) for raw in raw_items]

    async def length(self) -> int:
        return await self.redis.llen(self.queue_key)

    async def map_temp_id(self, temp_id: str, real_id: str) -> None:
        await self.redis.hset(self.ids_key, temp_id, real_id)

    async def resolve(self, ref: PendingRef | CommittedRef | None) -> str | None:
        if ref is None:
            return None
        if isinstance(ref, CommittedRef):
            return ref.id
        real_id = await self.redis.hget(self.ids_key, ref.temp_id)
        if isinstance(real_id, bytes):
            real_id = real_id.decode()
        return real_id

    async def add_issue(self, issue: SyncIssue) -> None:
        await self.redis.hset(self.issues_key, issue.id, issue.model_dump_json())

    async def issues(self) -> list[SyncIssue]:
        raw = await self.redis.hvals(self.issues_key)
        return sorted((SyncIssue.model_validate_json(item) for item in raw), key=lambda i: i.created_at)

    async def dismiss_issue(self, issue_id: str) -> bool:
        return bool(await self.redis.hdel(self.issues_key, issue_id))


class RemoteDataStore(Protocol):
    async def apply(
        self, user_id: int, change: PendingChange, target_id: str | None, parent_id: str | None
    ) -> str | None: ...


class SqlChangeApplier:
    """Applies a queued change through ``SqlRemoteStore``; returns the created id."""

    def __init__(self, store: SqlRemoteStore) -> None:
        self.store = store

    async def apply(
        self, user_id: int, change: PendingChange, target_id: str | None, parent_id: str | None
    ) -> str | None:
        op = change.operation
        payload = change.payload

        if change.entity_type == EntityType.BRAND_KIT:
            if op == ChangeOperation.DELETE:
                await self.store.delete_brand_kit(user_id)
                return None
            return str((await self.store.upsert_brand_kit(user_id, payload)).id)

        if op == ChangeOperation.CREATE:
            if change.entity_type == EntityType.PROJECT:
                return str((await self.store.create_project(user_id, payload)).id)
            if change.entity_type == EntityType.MOCKUP:
                if parent_id is None:
                    raise ValidationError("Mockup has no project to belong to")
                return str((await self.store.create_mockup(user_id, parent_id, payload)).id)
            return str((await self.store.create_template(user_id, payload)).id)

        if target_id is None:
            raise ValidationError(f"Cannot {op.value} a {change.entity_type.value} that was never created")

        if change.entity_type == EntityType.PROJECT:
            if op == ChangeOperation.UPDATE:
                await self.store.update_project(user_id, target_id, payload)
            else:
                await self.store.delete_project(user_id, target_id)
        elif change.entity_type == EntityType.MOCKUP:
            if op == ChangeOperation.UPDATE:
                raise ValidationError("Mockups cannot be updated")
            await self.store.delete_mockup(user_id, target_id)
        elif op == ChangeOperation.UPDATE:
            await self.store.update_template(user_id, target_id, payload)
        else:
            await self.store.delete_template(user_id, target_id)
        return target_id


# Replays for one user never interleave within a process. A lock lives only
# while a replay holds or awaits it.
_replay_locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()


def _replay_lock(user_id: int) -> asyncio.Lock:
    lock = _replay_locks.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _replay_locks[user_id] = lock
    return lock


class OfflineSyncService:
    def __init__(
        self,
        user_id: int,
        queue: OfflineQueueStore,
        remote: RemoteDataStore,
        monitor: ConnectivityMonitor,
        *,
        policy: RetryPolicy = REPLAY_POLICY,
    ) -> None:
        self.user_id = user_id
        self.queue = queue
        self.remote = remote
        self.monitor = monitor
        self.policy = policy
        monitor.subscribe(self._on_connectivity_change)

    async def _apply(self, change: PendingChange) -> str | None:
        target_id = await self.queue.resolve(change.target)
        parent_id = await self.queue.resolve(change.parent)
        if change.parent is not None and parent_id is None:
            raise ValidationError("Parent entity was never created")

        entity_id = await self.remote.apply(self.user_id, change, target_id, parent_id)
        if (
            change.operation == ChangeOperation.CREATE
            and isinstance(change.target, PendingRef)
            and entity_id is not None
        ):
            await self.queue.map_temp_id(change.target.temp_id, entity_id)
        return entity_id

    async def mutate(self, change: PendingChange) -> MutationResult:
        """Write now when online, otherwise (or on a network failure) queue it."""
        if not await self.monitor.is_online():
            await self.queue.enqueue(change)
            logger.info("change_queued_offline", user_id=self.user_id, change_id=change.id)
            return MutationResult(queued=True, change_id=change.id)

        if await self.queue.length():
            # Never overtake changes still waiting in the queue
            await self.queue.enqueue(change)
            await self.replay()
            return MutationResult(
                queued=True, entity_id=await self.queue.resolve(change.target), change_id=change.id
            )

        try:
            entity_id = await self._apply(change)
        except PROGRAMMING_ERRORS:
            raise
        except Exception as exc:
            error = exc if isinstance(exc, MockupSuiteError) else categorize_error(exc)
            if error.kind != ErrorKind.NETWORK:
                if error is exc:
                    raise
                raise error from exc
            await self.queue.enqueue(change.model_copy(update={"last_error": error.message}))
            logger.info("change_queued_after_network_error", user_id=self.user_id, change_id=change.id)
            return MutationResult(queued=True, change_id=change.id)

        return MutationResult(queued=False, entity_id=entity_id, change_id=change.id)

    async def replay(self) -> SyncResult:
        """Drain the queue in order, stopping at the first transient failure."""
        if not await self.monitor.is_online():
            return SyncResult(success=False, errors=[OFFLINE_MESSAGE])

        synced = 0
        failed = 0
        errors: list[str] = []

        async with _replay_lock(self.user_id):
            while (change := await self.queue.peek()) is not None:
                try:
                    await retry_async(
                        partial(self._apply, change),
                        self.policy,
                        operation_name="offline_replay",
                    )
                except MockupSuiteError as error:
                    failed += 1
                    errors.append(f"{change.entity_type.value} {change.operation.value}: {error.message}")

                    if error.retryable:
                        await self.queue.replace_head(
                            change.model_copy(
                                update={
                                    "attempt_count": change.attempt_count + 1,
                                    "last_error": error.message,
                                }
                            )
                        )
                        logger.warning(
                            "offline_replay_paused",
                            user_id=self.user_id,
                            change_id=change.id,
                            kind=error.kind.value,
                        )
                        break

                    await self.queue.pop_head()
                    await self.queue.add_issue(
                        SyncIssue(
                            change_id=change.id,
                            entity_type=change.entity_type,
                            operation=change.operation,
                            kind=error.kind,
                            message=error.message,
                        )
                    )
                    logger.warning(
                        "offline_change_rejected",
                        user_id=self.user_id,
                        change_id=change.id,
                        kind=error.kind.value,
                    )
                    continue

                await self.queue.pop_head()
                synced += 1

        logger.info("offline_replay_finished", user_id=self.user_id, synced=synced, failed=failed)
        return SyncResult(success=failed == 0, synced=synced, failed=failed, errors=errors)

    async def retry(self) -> SyncResult:
        """Manual retry: the same pass the online transition triggers."""
        return await self.replay()

    async def set_online(self, online: bool) -> bool:
        return await self.monitor.set_online(online)

    async def _on_connectivity_change(self, online: bool) -> None:
        if online and await self.queue.length():
            await self.replay()

    async def status(self) -> QueueStatus:
        return QueueStatus(
            online=await self.monitor.is_online(),
            pending=await self.queue.length(),
            issues=await self.queue.issues(),
        )

    async def dismiss_issue(self, issue_id: str) -> bool:
        return await self.queue.dismiss_issue(issue_id)
