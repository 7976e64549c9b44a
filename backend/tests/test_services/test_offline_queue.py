"""Tests for the offline sync queue."""

import gc
import uuid
from typing import Any

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ErrorKind, NetworkError, ValidationError
from app.core.retry import RetryPolicy
from app.models.project import Mockup, Project
from app.models.user import User
from app.services.offline_queue import (
    OFFLINE_MESSAGE,
    ChangeOperation,
    CommittedRef,
    ConnectivityMonitor,
    EntityType,
    OfflineQueueStore,
    OfflineSyncService,
    PendingChange,
    PendingRef,
    SqlChangeApplier,
    _replay_locks,
)
from app.services.remote_store import SqlRemoteStore

FAST = RetryPolicy(max_attempts=2, base_delay=0.001, max_delay=0.001)
USER_ID = 7


class FakeRemote:
    """Records applied changes; ``failures`` maps a payload name to errors to raise in turn."""

    def __init__(self) -> None:
        self.applied: list[str] = []
        self.failures: dict[str, list[Exception]] = {}

    async def apply(
        self, user_id: int, change: PendingChange, target_id: str | None, parent_id: str | None
    ) -> str | None:
        name = change.payload.get("name", "")
        pending = self.failures.get(name)
        if pending:
            raise pending.pop(0)
        self.applied.append(name)
        if change.operation == ChangeOperation.CREATE:
            return f"real-{name}"
        return target_id


def project_change(name: str, temp_id: str | None = None) -> PendingChange:
    return PendingChange(
        entity_type=EntityType.PROJECT,
        operation=ChangeOperation.CREATE,
        target=PendingRef(temp_id=temp_id) if temp_id else None,
        payload={"name": name},
    )


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def service(test_redis: Any, remote: FakeRemote) -> OfflineSyncService:
    return OfflineSyncService(
        USER_ID,
        OfflineQueueStore(test_redis, USER_ID),
        remote,
        ConnectivityMonitor(test_redis, USER_ID),
        policy=FAST,
    )


class TestReplay:
    """Test in-order replay with head-of-line blocking."""

    @pytest.mark.asyncio
    async def test_rejected_change_becomes_issue(self, service: OfflineSyncService, remote: FakeRemote) -> None:
        for name in ("A", "B", "C"):
            await service.queue.enqueue(project_change(name))
        remote.failures["B"] = [ValidationError("name already taken")]

        result = await service.replay()

        assert result.success is False
        assert (result.synced, result.failed) == (2, 1)
        assert remote.applied == ["A", "C"]
        issues = await service.queue.issues()
        assert len(issues) == 1
        assert issues[0].kind == ErrorKind.VALIDATION
        assert issues[0].message == "name already taken"
        assert await service.queue.length() == 0

    @pytest.mark.asyncio
    async def test_transient_failure_holds_the_head(
        self, service: OfflineSyncService, remote: FakeRemote
    ) -> None:
        for name in ("A", "B", "C"):
            await service.queue.enqueue(project_change(name))
        remote.failures["B"] = [NetworkError("timed out"), NetworkError("timed out")]

        result = await service.replay()

        assert (result.synced, result.failed) == (1, 1)
        assert remote.applied == ["A"]
        pending = await service.queue.pending()
        assert [c.payload["name"] for c in pending] == ["B", "C"]
        assert pending[0].attempt_count == 1
        assert pending[0].last_error == "timed out"
        assert await service.queue.issues() == []

    @pytest.mark.asyncio
    async def test_transient_failure_recovers_within_pass(
        self, service: OfflineSyncService, remote: FakeRemote
    ) -> None:
        await service.queue.enqueue(project_change("A"))
        remote.failures["A"] = [NetworkError("blip")]

        result = await service.replay()

        assert result.success is True
        assert result.synced == 1

    @pytest.mark.asyncio
    async def test_replay_lock_released_after_pass(self, service: OfflineSyncService) -> None:
        await service.queue.enqueue(project_change("A"))

        await service.replay()
        gc.collect()

        assert USER_ID not in _replay_locks

    @pytest.mark.asyncio
    async def test_offline_replay_does_nothing(self, service: OfflineSyncService, remote: FakeRemote) -> None:
        await service.queue.enqueue(project_change("A"))
        await service.monitor.set_online(False)

        result = await service.replay()

        assert result.success is False
        assert result.errors == [OFFLINE_MESSAGE]
        assert remote.applied == []
        assert await service.queue.length() == 1

    @pytest.mark.asyncio
    async def test_temp_ids_resolve_for_later_changes(
        self, service: OfflineSyncService, remote: FakeRemote
    ) -> None:
        await service.queue.enqueue(project_change("A", temp_id="tmp-1"))
        await service.queue.enqueue(
            PendingChange(
                entity_type=EntityType.PROJECT,
                operation=ChangeOperation.UPDATE,
                target=PendingRef(temp_id="tmp-1"),
                payload={"name": "A2"},
            )
        )

        await service.replay()

        assert await service.queue.resolve(PendingRef(temp_id="tmp-1")) == "real-A"
        assert remote.applied == ["A", "A2"]

    @pytest.mark.asyncio
    async def test_child_of_unsynced_parent_is_rejected(self, service: OfflineSyncService) -> None:
        await service.queue.enqueue(
            PendingChange(
                entity_type=EntityType.MOCKUP,
                operation=ChangeOperation.CREATE,
                parent=PendingRef(temp_id="never-created"),
                payload={"image_path": "x.png"},
            )
        )

        result = await service.replay()

        assert result.failed == 1
        assert len(await service.queue.issues()) == 1


class TestMutate:
    """Test the write-or-queue entry point."""

    @pytest.mark.asyncio
    async def test_online_applies_directly(self, service: OfflineSyncService) -> None:
        result = await service.mutate(project_change("A"))

        assert result.queued is False
        assert result.entity_id == "real-A"

    @pytest.mark.asyncio
    async def test_offline_queues(self, service: OfflineSyncService, remote: FakeRemote) -> None:
        await service.monitor.set_online(False)

        result = await service.mutate(project_change("A"))

        assert result.queued is True
        assert remote.applied == []
        assert await service.queue.length() == 1

    @pytest.mark.asyncio
    async def test_network_failure_queues(self, service: OfflineSyncService, remote: FakeRemote) -> None:
        remote.failures["A"] = [NetworkError("connection reset")]

        result = await service.mutate(project_change("A"))

        assert result.queued is True
        pending = await service.queue.pending()
        assert pending[0].last_error == "connection reset"

    @pytest.mark.asyncio
    async def test_validation_failure_raises(self, service: OfflineSyncService, remote: FakeRemote) -> None:
        remote.failures["A"] = [ValidationError("bad name")]

        with pytest.raises(ValidationError):
            await service.mutate(project_change("A"))

        assert await service.queue.length() == 0

    @pytest.mark.asyncio
    async def test_never_overtakes_queued_changes(
        self, service: OfflineSyncService, remote: FakeRemote
    ) -> None:
        await service.queue.enqueue(project_change("A"))

        result = await service.mutate(project_change("B"))

        assert result.queued is True
        assert remote.applied == ["A", "B"]


class TestConnectivity:
    @pytest.mark.asyncio
    async def test_unknown_device_is_online(self, service: OfflineSyncService) -> None:
        assert await service.monitor.is_online() is True

    @pytest.mark.asyncio
    async def test_coming_online_replays(self, service: OfflineSyncService, remote: FakeRemote) -> None:
        await service.set_online(False)
        await service.mutate(project_change("A"))

        changed = await service.set_online(True)

        assert changed is True
        assert remote.applied == ["A"]
        assert (await service.status()).pending == 0

    @pytest.mark.asyncio
    async def test_repeated_state_is_not_a_transition(self, service: OfflineSyncService) -> None:
        assert await service.set_online(True) is False

    @pytest.mark.asyncio
    async def test_dismiss_issue(self, service: OfflineSyncService, remote: FakeRemote) -> None:
        await service.queue.enqueue(project_change("A"))
        remote.failures["A"] = [ValidationError("rejected")]
        await service.replay()
        issue = (await service.status()).issues[0]

        assert await service.dismiss_issue(issue.id) is True
        assert await service.dismiss_issue(issue.id) is False
        assert (await service.status()).issues == []


class TestSqlChangeApplier:
    """Test replay against the real row store."""

    @pytest.mark.asyncio
    async def test_project_and_child_mockup_created_offline(
        self, test_session: AsyncSession, test_redis: Any, test_user: User
    ) -> None:
        user_id = test_user.id
        service = OfflineSyncService(
            user_id,
            OfflineQueueStore(test_redis, user_id),
            SqlChangeApplier(SqlRemoteStore(test_session)),
            ConnectivityMonitor(test_redis, user_id),
            policy=FAST,
        )
        await service.set_online(False)
        await service.mutate(project_change("Offline project", temp_id="tmp-p"))
        await service.mutate(
            PendingChange(
                entity_type=EntityType.MOCKUP,
                operation=ChangeOperation.CREATE,
                target=PendingRef(temp_id="tmp-m"),
                parent=PendingRef(temp_id="tmp-p"),
                payload={"image_path": f"{user_id}/mockups/a.png"},
            )
        )

        await service.set_online(True)

        project = (await test_session.execute(select(Project))).scalar_one()
        mockup = (await test_session.execute(select(Mockup))).scalar_one()
        assert project.name == "Offline project"
        assert mockup.project_id == project.id
        assert await service.queue.resolve(PendingRef(temp_id="tmp-p")) == str(project.id)

    @pytest.mark.asyncio
    async def test_update_of_missing_row_is_rejected(
        self, test_session: AsyncSession, test_redis: Any, test_user: User
    ) -> None:
        user_id = test_user.id
        service = OfflineSyncService(
            user_id,
            OfflineQueueStore(test_redis, user_id),
            SqlChangeApplier(SqlRemoteStore(test_session)),
            ConnectivityMonitor(test_redis, user_id),
            policy=FAST,
        )
        await service.queue.enqueue(
            PendingChange(
                entity_type=EntityType.PROJECT,
                operation=ChangeOperation.UPDATE,
                target=CommittedRef(id=str(uuid.uuid4())),
                payload={"name": "Renamed"},
            )
        )

        result = await service.replay()

        assert result.failed == 1
        assert (await service.queue.issues())[0].kind == ErrorKind.VALIDATION
