"""Durable per-user handoff keys between client components.

Each key has exactly one writer and exactly one consumer. The consumer
reads and clears the value in a single ``GETDEL`` so a value is handed off
at most once.
"""

import json
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from redis.asyncio import Redis

from app.core.config import settings

logger = logging.getLogger(__name__)


class HandoffKey(StrEnum):
    PENDING_PAYMENT_TOKEN = "pending_payment_token"
    PENDING_PAYMENT_TIMESTAMP = "pending_payment_timestamp"
    PENDING_PAYMENT_PLAN = "pending_payment_plan"
    COMPLETED_PAYMENT_TOKEN = "completed_payment_token"
    CURRENT_VIEW = "current_view"
    PENDING_UPLOADED_IMAGE = "pending_uploaded_image"


@dataclass(frozen=True)
class Ownership:
    writer: str
    consumer: str


OWNERSHIP: dict[HandoffKey, Ownership] = {
    HandoffKey.PENDING_PAYMENT_TOKEN: Ownership("checkout", "payment_callback"),
    HandoffKey.PENDING_PAYMENT_TIMESTAMP: Ownership("checkout", "payment_callback"),
    HandoffKey.PENDING_PAYMENT_PLAN: Ownership("checkout", "payment_callback"),
    HandoffKey.COMPLETED_PAYMENT_TOKEN: Ownership("payment_callback", "subscription_view"),
    HandoffKey.CURRENT_VIEW: Ownership("navigation", "app_shell"),
    HandoffKey.PENDING_UPLOADED_IMAGE: Ownership("uploader", "generator"),
}


class HandoffOwnershipError(RuntimeError):
    """A component touched a handoff key it does not own."""


class HandoffStore:
    """Per-user handoff keys stored in Redis."""

    def __init__(self, redis: Redis, user_id: int, *, ttl: int | None = None) -> None:
        self.redis = redis
        self.user_id = user_id
        self.ttl = ttl or settings.HANDOFF_TTL_SECONDS

    def _redis_key(self, key: HandoffKey) -> str:
        return f"handoff:{self.user_id}:{key.value}"

    async def write(self, key: HandoffKey, value: Any, *, component: str) -> None:
        if OWNERSHIP[key].writer != component:
            raise HandoffOwnershipError(f"{component} may not write {key.value}")
        await self.redis.setex(self._redis_key(key), self.ttl, json.dumps(value))
        logger.debug("Handoff %s written by %s for user %s", key.value, component, self.user_id)

    async def consume(self, key: HandoffKey, *, component: str) -> Any | None:
        """Read and clear a key; None when nothing was handed off."""
        if OWNERSHIP[key].consumer != component:
            raise HandoffOwnershipError(f"{component} may not consume {key.value}")
        raw = await self.redis.getdel(self._redis_key(key))
        if raw is None:
            return None
        logger.debug("Handoff %s consumed by %s for user %s", key.value, component, self.user_id)
        return json.loads(raw)

    async def peek(self, key: HandoffKey) -> Any | None:
        raw = await self.redis.get(self._redis_key(key))
        return None if raw is None else json.loads(raw)
