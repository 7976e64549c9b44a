"""Tests for the quota and credit gate."""

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ErrorKind, MockupSuiteError, QuotaError, ValidationError
from app.models.subscription import CreditTransaction, Subscription, UsageLog
from app.models.user import User
from app.services.plans import BILLING_PERIOD, OperationKind
from app.services.quota import QuotaGate, quota_cache_key

IMAGE = OperationKind.IMAGE_GENERATION


class MutableClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def gate(test_session: AsyncSession, test_redis: Any, clock: MutableClock) -> QuotaGate:
    return QuotaGate(test_session, redis=test_redis, clock=clock)


@pytest_asyncio.fixture
async def user_id(test_user: User) -> int:
    return test_user.id


class TestCanPerform:
    """Test the read-only pre-flight check."""

    @pytest.mark.asyncio
    async def test_no_subscription_no_credits(self, gate: QuotaGate, user_id: int) -> None:
        decision = await gate.check(user_id, IMAGE)

        assert decision.allowed is False
        assert decision.reason == ErrorKind.NO_CREDITS

    @pytest.mark.asyncio
    async def test_active_plan_with_quota(self, gate: QuotaGate, user_id: int) -> None:
        await gate.change_plan(user_id, "starter")

        assert await gate.can_perform(user_id, IMAGE) is True

    @pytest.mark.asyncio
    async def test_exhausted_quota(self, gate: QuotaGate, user_id: int, test_session: AsyncSession) -> None:
        await gate.change_plan(user_id, "free")
        for _ in range(5):
            await gate.decrement(user_id, IMAGE)

        decision = await gate.check(user_id, IMAGE)
        assert decision.allowed is False
        assert decision.reason == ErrorKind.QUOTA_EXCEEDED

    @pytest.mark.asyncio
    async def test_expired_subscription(self, gate: QuotaGate, user_id: int, clock: MutableClock) -> None:
        await gate.change_plan(user_id, "pro")
        clock.now += BILLING_PERIOD + timedelta(seconds=1)

        decision = await gate.check(user_id, IMAGE)
        assert decision.allowed is False
        assert decision.reason == ErrorKind.SUBSCRIPTION_EXPIRED

    @pytest.mark.asyncio
    async def test_credits_count_even_when_expired(
        self, gate: QuotaGate, user_id: int, clock: MutableClock
    ) -> None:
        await gate.change_plan(user_id, "pro")
        await gate.purchase_credits(user_id, "small")
        clock.now += BILLING_PERIOD + timedelta(days=1)

        assert await gate.can_perform(user_id, IMAGE) is True

    @pytest.mark.asyncio
    async def test_ensure_can_perform_raises_denial_kind(self, gate: QuotaGate, user_id: int) -> None:
        with pytest.raises(QuotaError) as exc_info:
            await gate.ensure_can_perform(user_id, IMAGE)
        assert exc_info.value.kind == ErrorKind.NO_CREDITS

    @pytest.mark.asyncio
    async def test_check_does_not_mutate(self, gate: QuotaGate, user_id: int) -> None:
        await gate.change_plan(user_id, "free")

        for _ in range(3):
            await gate.check(user_id, IMAGE)

        snapshot = await gate.snapshot(user_id, use_cache=False)
        assert snapshot.remaining_quota == 5


class TestDecrement:
    """Test post-success consumption."""

    @pytest.mark.asyncio
    async def test_quota_before_credits(
        self, gate: QuotaGate, user_id: int, test_session: AsyncSession
    ) -> None:
        await gate.change_plan(user_id, "free")
        await gate.add_credits(user_id, 2)

        snapshot = await gate.decrement(user_id, IMAGE)

        assert snapshot.remaining_quota == 4
        assert snapshot.credit_balance == 2

    @pytest.mark.asyncio
    async def test_credits_after_quota_runs_out(
        self, gate: QuotaGate, user_id: int, test_session: AsyncSession
    ) -> None:
        await gate.change_plan(user_id, "free")
        await gate.add_credits(user_id, 2)

        snapshot = await gate.decrement(user_id, IMAGE, 6)

        assert snapshot.remaining_quota == 0
        assert snapshot.credit_balance == 1

        usage = (await test_session.execute(select(UsageLog))).scalars().all()
        assert [(u.quota_used, u.credits_used) for u in usage] == [(5, 1)]
        transactions = (
            await test_session.execute(select(CreditTransaction).order_by(CreditTransaction.id))
        ).scalars().all()
        assert [t.amount for t in transactions] == [2, -1]

    @pytest.mark.asyncio
    async def test_never_below_zero(self, gate: QuotaGate, user_id: int) -> None:
        await gate.change_plan(user_id, "free")

        snapshot = await gate.decrement(user_id, IMAGE, 50)

        assert snapshot.remaining_quota == 0
        assert snapshot.credit_balance == 0

    @pytest.mark.asyncio
    async def test_remaining_is_monotonic(self, gate: QuotaGate, user_id: int) -> None:
        await gate.change_plan(user_id, "free")
        seen = []
        for _ in range(7):
            seen.append((await gate.decrement(user_id, IMAGE)).remaining_quota)

        assert seen == [4, 3, 2, 1, 0, 0, 0]

    @pytest.mark.asyncio
    async def test_expired_period_uses_only_credits(
        self, gate: QuotaGate, user_id: int, clock: MutableClock
    ) -> None:
        await gate.change_plan(user_id, "starter")
        await gate.add_credits(user_id, 3)
        clock.now += BILLING_PERIOD * 2

        snapshot = await gate.decrement(user_id, OperationKind.VIDEO_GENERATION)

        assert snapshot.remaining_quota == 50
        assert snapshot.credit_balance == 2

    @pytest.mark.asyncio
    async def test_amount_must_be_positive(self, gate: QuotaGate, user_id: int) -> None:
        with pytest.raises(ValidationError):
            await gate.decrement(user_id, IMAGE, 0)

    @pytest.mark.asyncio
    async def test_failed_write_rolls_back(
        self, gate: QuotaGate, test_session: AsyncSession, user_id: int
    ) -> None:
        await gate.change_plan(user_id, "starter")
        await test_session.execute(
            text(
                "CREATE TRIGGER usage_logs_unavailable BEFORE INSERT ON usage_logs "
                "BEGIN SELECT RAISE(ABORT, 'usage ledger unavailable'); END"
            )
        )
        await test_session.commit()

        with pytest.raises(MockupSuiteError):
            await gate.decrement(user_id, IMAGE)

        # Session is usable and nothing was charged
        snapshot = await gate.snapshot(user_id, use_cache=False)
        assert snapshot.remaining_quota == snapshot.monthly_quota
        assert (await test_session.execute(select(UsageLog))).scalars().all() == []


class TestLedger:
    @pytest.mark.asyncio
    async def test_change_plan_resets_period(
        self, gate: QuotaGate, user_id: int, clock: MutableClock
    ) -> None:
        await gate.change_plan(user_id, "free")
        await gate.decrement(user_id, IMAGE)

        snapshot = await gate.change_plan(user_id, "business")

        assert snapshot.plan_id == "business"
        assert snapshot.remaining_quota == snapshot.monthly_quota == 700
        assert snapshot.current_period_end == clock.now + BILLING_PERIOD

    @pytest.mark.asyncio
    async def test_ensure_subscription_provisions_free_once(
        self, gate: QuotaGate, user_id: int, test_session: AsyncSession
    ) -> None:
        first = await gate.ensure_subscription(user_id)
        await gate.decrement(user_id, IMAGE)
        second = await gate.ensure_subscription(user_id)

        assert first.plan_id == "free"
        assert second.remaining_quota == 4
        rows = (await test_session.execute(select(Subscription))).scalars().all()
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_renew_period(self, gate: QuotaGate, user_id: int, clock: MutableClock) -> None:
        await gate.change_plan(user_id, "starter")
        await gate.decrement(user_id, IMAGE, 10)
        clock.now += BILLING_PERIOD

        snapshot = await gate.renew_period(user_id)

        assert snapshot.remaining_quota == 50
        assert snapshot.in_period is True

    @pytest.mark.asyncio
    async def test_user_plan_defaults_to_free(self, gate: QuotaGate, user_id: int) -> None:
        assert (await gate.user_plan(user_id)).has_watermark is True

        await gate.change_plan(user_id, "pro")
        assert (await gate.user_plan(user_id)).has_watermark is False

    @pytest.mark.asyncio
    async def test_unknown_package(self, gate: QuotaGate, user_id: int) -> None:
        with pytest.raises(ValidationError):
            await gate.purchase_credits(user_id, "huge")


class TestSnapshotCache:
    @pytest.mark.asyncio
    async def test_snapshot_is_cached_and_invalidated(
        self, gate: QuotaGate, user_id: int, test_redis: Any
    ) -> None:
        await gate.change_plan(user_id, "free")
        await gate.snapshot(user_id)
        assert await test_redis.exists(quota_cache_key(user_id))

        await gate.decrement(user_id, IMAGE)

        assert (await gate.snapshot(user_id)).remaining_quota == 4

    @pytest.mark.asyncio
    async def test_lapsed_cached_snapshot_is_reloaded(
        self, gate: QuotaGate, user_id: int, clock: MutableClock
    ) -> None:
        await gate.change_plan(user_id, "pro")
        cached = await gate.snapshot(user_id)
        assert cached.in_period

        clock.now += BILLING_PERIOD + timedelta(seconds=1)

        assert (await gate.snapshot(user_id)).in_period is False
