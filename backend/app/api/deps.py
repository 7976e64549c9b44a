"""Shared FastAPI dependencies that assemble services per request."""

from typing import Annotated

from fastapi import Depends
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import CurrentUser
from app.core.handoff import HandoffStore
from app.core.vault import TokenVault, get_token_vault
from app.db.redis import get_redis
from app.db.session import get_db
from app.services.generation import GeminiProvider, GenerationProvider
from app.services.payments import HttpPaymentGateway, PaymentGateway
from app.services.quota import QuotaGate
from app.services.storage import ObjectStorage, get_storage

DbSession = Annotated[AsyncSession, Depends(get_db)]
RedisClient = Annotated[Redis, Depends(get_redis)]
Vault = Annotated[TokenVault, Depends(get_token_vault)]
Storage = Annotated[ObjectStorage, Depends(get_storage)]


def get_generation_provider() -> GenerationProvider:
    return GeminiProvider()


def get_payment_gateway() -> PaymentGateway:
    return HttpPaymentGateway()


Provider = Annotated[GenerationProvider, Depends(get_generation_provider)]
Gateway = Annotated[PaymentGateway, Depends(get_payment_gateway)]


def get_quota_gate(db: DbSession, redis: RedisClient) -> QuotaGate:
    return QuotaGate(db, redis=redis)


Gate = Annotated[QuotaGate, Depends(get_quota_gate)]


def get_handoff(current_user: CurrentUser, redis: RedisClient) -> HandoffStore:
    return HandoffStore(redis, current_user.id)


Handoff = Annotated[HandoffStore, Depends(get_handoff)]
