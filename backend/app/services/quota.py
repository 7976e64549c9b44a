"""Quota and credit gate wrapped around every billable AI operation.

``can_perform`` is read-only. ``decrement`` runs only after the provider
returned usable output and is best-effort: callers log its failure and
still deliver the output.
"""

from datetime import datetime

import structlog
from pydantic import BaseModel
from redis.asyncio import Redis
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import cache_delete, cache_get_json, cache_set_json
from app.core.errors import ErrorKind, QuotaError, ValidationError, categorize_error
from app.core.retry import QUOTA_CHECK_POLICY, RetryPolicy, retry_async
from app.db.base import Clock, as_utc, utcnow
from app.models.subscription import (
    CreditBalance,
    CreditTransaction,
    CreditTransactionType,
    Subscription,
    SubscriptionStatus,
    UsageLog,
)
from app.services.plans import (
    BILLING_PERIOD,
    FREE_PLAN,
    OperationKind,
    Plan,
    get_credit_package,
    get_plan,
)

logger = structlog.get_logger()

QUOTA_CACHE_TTL = 60


def quota_cache_key(user_id: int) -> str:
    return f"quota:{user_id}"


class QuotaSnapshot(BaseModel):
    """Point-in-time view of one user's ledger."""

    user_id: int
    plan_id: str
    has_subscription: bool
    status: str | None = None
    monthly_quota: int = 0
    remaining_quota: int = 0
    credit_balance: int = 0
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    in_period: bool = False

    @property
    def usable_quota(self) -> int:
        return self.remaining_quota if self.in_period else 0

    @property
    def has_capacity(self) -> bool:
        return self.usable_quota > 0 or self.credit_balance > 0


class GateDecision(BaseModel):
    allowed: bool
    operation: OperationKind
    reason: ErrorKind | None = None
    snapshot: QuotaSnapshot


class QuotaGate:
    """Pre-flight check, post-success decrement and ledger mutations."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        redis: Redis | None = None,
        clock: Clock = utcnow,
        retry_policy: RetryPolicy = QUOTA_CHECK_POLICY,
    ) -> None:
        self.db = db
        self.redis = redis
        self.clock = clock
        self.retry_policy = retry_policy

    async def _subscription(self, user_id: int) -> Subscription | None:
        result = await self.db.execute(select(Subscription).where(Subscription.user_id == user_id))
        return result.scalar_one_or_none()

    async def _credit_balance(self, user_id: int) -> CreditBalance | None:
        result = await self.db.execute(select(CreditBalance).where(CreditBalance.user_id == user_id))
        return result.scalar_one_or_none()

    async def _load_snapshot(self, user_id: int) -> QuotaSnapshot:
        subscription = await self._subscription(user_id)
        balance = await self._credit_balance(user_id)
        credits = balance.balance if balance else 0

        if subscription is None:
            return QuotaSnapshot(
                user_id=user_id,
                plan_id=FREE_PLAN.id,
                has_subscription=False,
                credit_balance=credits,
            )

        return QuotaSnapshot(
            user_id=user_id,
            plan_id=subscription.plan_id,
            has_subscription=True,
            status=subscription.status,
            monthly_quota=subscription.monthly_quota,
            remaining_quota=subscription.remaining_quota,
            credit_balance=credits,
            current_period_start=as_utc(subscription.current_period_start),
            current_period_end=as_utc(subscription.current_period_end),
            in_period=subscription.is_in_period(self.clock()),
        )

    async def snapshot(self, user_id: int, *, use_cache: bool = True) -> QuotaSnapshot:
        if use_cache and self.redis is not None:
            cached = await cache_get_json(self.redis, quota_cache_key(user_id))
            if cached is not None:
                snapshot = QuotaSnapshot.model_validate(cached)
                # Period may have lapsed since caching
                if snapshot.current_period_end is None or snapshot.current_period_end > self.clock():
                    return snapshot

        snapshot = await self._load_snapshot(user_id)
        if self.redis is not None:
            await cache_set_json(
                self.redis, quota_cache_key(user_id), snapshot.model_dump(mode="json"), QUOTA_CACHE_TTL
            )
        return snapshot

    async def _invalidate(self, user_id: int) -> None:
        if self.redis is not None:
            await cache_delete(self.redis, quota_cache_key(user_id))

    async def _commit(self, user_id: int, operation: str) -> None:
        """Commit a ledger mutation, rolling back on failure so the session stays usable."""
        try:
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.warning("quota_write_failed", user_id=user_id, operation=operation, error=str(exc))
            raise categorize_error(exc) from exc
        await self._invalidate(user_id)

    async def check(self, user_id: int, kind: OperationKind) -> GateDecision:
        """Evaluate the gate, retrying transient read failures."""
        snapshot = await retry_async(
            lambda: self.snapshot(user_id),
            self.retry_policy,
            operation_name="quota_check",
        )
        if snapshot.has_capacity:
            return GateDecision(allowed=True, operation=kind, snapshot=snapshot)

        if not snapshot.has_subscription:
            reason = ErrorKind.NO_CREDITS
        elif not snapshot.in_period:
            reason = ErrorKind.SUBSCRIPTION_EXPIRED
        else:
            reason = ErrorKind.QUOTA_EXCEEDED
        return GateDecision(allowed=False, operation=kind, reason=reason, snapshot=snapshot)

    async def can_perform(self, user_id: int, kind: OperationKind) -> bool:
        return (await self.check(user_id, kind)).allowed

    async def ensure_can_perform(self, user_id: int, kind: OperationKind) -> QuotaSnapshot:
        """Raise the denial as a quota-family error; never upgrades or charges."""
        decision = await self.check(user_id, kind)
        if not decision.allowed:
            logger.info(
                "quota_gate_denied",
                user_id=user_id,
                operation=kind.value,
                reason=decision.reason.value if decision.reason else None,
            )
            raise QuotaError(kind=decision.reason, details={"operation": kind.value})
        return decision.snapshot

    async def decrement(self, user_id: int, kind: OperationKind, amount: int = 1) -> QuotaSnapshot:
        """Consume quota first, then credits; never drives either below zero."""
        if amount < 1:
            raise ValidationError("Decrement amount must be positive")

        now = self.clock()
        outstanding = amount
        quota_used = 0
        credits_used = 0

        subscription = await self._subscription(user_id)
        if subscription is not None and subscription.is_in_period(now):
            quota_used = min(subscription.remaining_quota, outstanding)
            subscription.remaining_quota -= quota_used
            outstanding -= quota_used

        if outstanding:
            balance = await self._credit_balance(user_id)
            if balance is not None and balance.balance > 0:
                credits_used = min(balance.balance, outstanding)
                balance.balance -= credits_used
                outstanding -= credits_used
                self.db.add(
                    CreditTransaction(
                        user_id=user_id,
                        transaction_type=CreditTransactionType.USAGE.value,
                        amount=-credits_used,
                        operation_kind=kind.value,
                    )
                )

        if outstanding:
            logger.warning(
                "quota_decrement_clamped", user_id=user_id, operation=kind.value, unpaid=outstanding
            )

        self.db.add(
            UsageLog(
                user_id=user_id,
                operation_kind=kind.value,
                quota_used=quota_used,
                credits_used=credits_used,
            )
        )
        await self._commit(user_id, "decrement")

        logger.info(
            "quota_decremented",
            user_id=user_id,
            operation=kind.value,
            quota_used=quota_used,
            credits_used=credits_used,
        )
        return await self.snapshot(user_id, use_cache=False)

    async def user_plan(self, user_id: int) -> Plan:
        """Plan governing post-processing; no subscription means free behavior."""
        subscription = await self._subscription(user_id)
        if subscription is None or not subscription.is_in_period(self.clock()):
            return FREE_PLAN
        return get_plan(subscription.plan_id)

    async def change_plan(self, user_id: int, plan_id: str) -> QuotaSnapshot:
        """Switch plan and start a fresh period with a full quota."""
        plan = get_plan(plan_id)
        now = self.clock()
        subscription = await self._subscription(user_id)
        if subscription is None:
            subscription = Subscription(user_id=user_id)
            self.db.add(subscription)

        subscription.plan_id = plan.id
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.monthly_quota = plan.monthly_quota
        subscription.remaining_quota = plan.monthly_quota
        subscription.current_period_start = now
        subscription.current_period_end = now + BILLING_PERIOD
        await self._commit(user_id, "change_plan")

        logger.info("subscription_plan_changed", user_id=user_id, plan_id=plan.id)
        return await self.snapshot(user_id, use_cache=False)

    async def ensure_subscription(self, user_id: int) -> QuotaSnapshot:
        """Provision the free plan for users who have never had a subscription."""
        if await self._subscription(user_id) is None:
            return await self.change_plan(user_id, FREE_PLAN.id)
        return await self.snapshot(user_id)

    async def renew_period(self, user_id: int) -> QuotaSnapshot:
        """Start the next billing period on the current plan."""
        subscription = await self._subscription(user_id)
        if subscription is None:
            raise ValidationError("No subscription to renew")
        return await self.change_plan(user_id, subscription.plan_id)

    async def add_credits(
        self, user_id: int, amount: int, *, package_id: str | None = None
    ) -> QuotaSnapshot:
        if amount < 1:
            raise ValidationError("Credit amount must be positive")

        balance = await self._credit_balance(user_id)
        if balance is None:
            balance = CreditBalance(user_id=user_id, balance=0)
            self.db.add(balance)
        balance.balance += amount
        self.db.add(
            CreditTransaction(
                user_id=user_id,
                transaction_type=CreditTransactionType.PURCHASE.value,
                amount=amount,
                package_id=package_id,
            )
        )
        await self._commit(user_id, "add_credits")

        logger.info("credits_added", user_id=user_id, amount=amount, package_id=package_id)
        return await self.snapshot(user_id, use_cache=False)

    async def purchase_credits(self, user_id: int, package_id: str) -> QuotaSnapshot:
        package = get_credit_package(package_id)
        return await self.add_credits(user_id, package.credits, package_id=package.id)
