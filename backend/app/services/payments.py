"""Checkout for plan changes and credit packages.

The gateway hosts the payment page. ``begin_checkout`` hands the pending
token to the callback through the handoff keys; ``complete_checkout``
verifies the token, applies the purchase and only then consumes the keys,
so a callback that failed transiently can be retried with the same token.
"""

from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Protocol

import httpx
import structlog
from pydantic import BaseModel

from app.core.config import settings
from app.core.errors import (
    ErrorKind,
    MockupSuiteError,
    NetworkError,
    PaymentError,
    ValidationError,
)
from app.core.handoff import HandoffKey, HandoffStore
from app.core.http import http_session
from app.core.retry import PAYMENT_POLICY, RetryPolicy, retry_async
from app.db.base import Clock, as_utc, utcnow
from app.services.plans import CURRENCY, FREE_PLAN, get_credit_package, get_plan
from app.services.quota import QuotaGate, QuotaSnapshot

logger = structlog.get_logger()

# Gateway messages that identify a specific payment failure
PAYMENT_MESSAGE_HINTS: tuple[tuple[tuple[str, ...], ErrorKind], ...] = (
    (("insufficient", "yetersiz"), ErrorKind.INSUFFICIENT_FUNDS),
    (("card", "kart"), ErrorKind.INVALID_CARD),
    (("cancel",), ErrorKind.PAYMENT_CANCELLED),
)


def payment_kind_from_message(message: str | None) -> ErrorKind:
    lowered = (message or "").lower()
    for hints, kind in PAYMENT_MESSAGE_HINTS:
        if any(hint in lowered for hint in hints):
            return kind
    return ErrorKind.PAYMENT_FAILED


class PaymentType(StrEnum):
    SUBSCRIPTION = "subscription"
    CREDIT = "credit"


class CheckoutSession(BaseModel):
    token: str
    payment_page_url: str
    payment_type: PaymentType
    item_id: str
    amount: int
    currency: str = CURRENCY


class PaymentVerification(BaseModel):
    success: bool
    status: str
    payment_id: str | None = None
    error_message: str | None = None


class PaymentOutcome(BaseModel):
    payment_type: PaymentType
    item_id: str
    payment_id: str | None = None
    quota: QuotaSnapshot


class PaymentGateway(Protocol):
    async def initialize(
        self, user_id: int, payment_type: PaymentType, item_id: str, amount: int, conversation_id: str
    ) -> CheckoutSession: ...

    async def verify(self, token: str, conversation_id: str) -> PaymentVerification: ...


class HttpPaymentGateway:
    """Hosted-checkout gateway reached over HTTPS."""

    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        self.http_client = http_client

    async def _post(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {settings.PAYMENT_API_KEY}"} if settings.PAYMENT_API_KEY else {}
        async with http_session(self.http_client, settings.PAYMENT_TIMEOUT) as client:
            try:
                response = await client.post(url, json=body, headers=headers)
            except httpx.TransportError as exc:
                raise NetworkError("Payment service unreachable") from exc

        if response.status_code >= 500:
            raise PaymentError(details={"status_code": response.status_code})
        try:
            data = response.json()
        except ValueError:
            raise PaymentError("Payment service returned an invalid response") from None
        if response.status_code >= 400:
            message = data.get("error") if isinstance(data, dict) else None
            raise PaymentError(message, kind=payment_kind_from_message(message))
        return data

    async def initialize(
        self, user_id: int, payment_type: PaymentType, item_id: str, amount: int, conversation_id: str
    ) -> CheckoutSession:
        data = await self._post(
            settings.PAYMENT_CHECKOUT_URL,
            {
                "action": "initialize",
                "userId": user_id,
                "type": payment_type.value,
                "itemId": item_id,
                "amount": amount,
                "currency": CURRENCY,
                "conversationId": conversation_id,
                "callbackUrl": f"{settings.APP_ORIGIN}/payment/callback",
            },
        )
        if not data.get("success") or not data.get("token"):
            raise PaymentError(data.get("error"), kind=payment_kind_from_message(data.get("error")))
        return CheckoutSession(
            token=data["token"],
            payment_page_url=data.get("paymentPageUrl", ""),
            payment_type=payment_type,
            item_id=item_id,
            amount=amount,
        )

    async def verify(self, token: str, conversation_id: str) -> PaymentVerification:
        data = await self._post(
            settings.PAYMENT_VERIFY_URL,
            {"action": "verify", "token": token, "conversationId": conversation_id},
        )
        return PaymentVerification(
            success=bool(data.get("success")),
            status=str(data.get("status", "unknown")),
            payment_id=data.get("paymentId"),
            error_message=data.get("errorMessage"),
        )


class PaymentService:
    def __init__(
        self,
        gate: QuotaGate,
        handoff: HandoffStore,
        gateway: PaymentGateway,
        *,
        clock: Clock = utcnow,
        policy: RetryPolicy = PAYMENT_POLICY,
    ) -> None:
        self.gate = gate
        self.handoff = handoff
        self.gateway = gateway
        self.clock = clock
        self.policy = policy

    @staticmethod
    def _price(payment_type: PaymentType, item_id: str) -> int:
        if payment_type == PaymentType.SUBSCRIPTION:
            plan = get_plan(item_id)
            if plan.id == FREE_PLAN.id:
                raise ValidationError("The free plan does not need a checkout")
            return plan.price
        return get_credit_package(item_id).price

    async def begin_checkout(self, user_id: int, payment_type: PaymentType, item_id: str) -> CheckoutSession:
        amount = self._price(payment_type, item_id)
        now = self.clock()
        conversation_id = f"{user_id}-{int(now.timestamp() * 1000)}"

        session = await retry_async(
            lambda: self.gateway.initialize(user_id, payment_type, item_id, amount, conversation_id),
            self.policy,
            operation_name="payment_initialize",
        )

        await self.handoff.write(HandoffKey.PENDING_PAYMENT_TOKEN, session.token, component="checkout")
        await self.handoff.write(
            HandoffKey.PENDING_PAYMENT_TIMESTAMP, now.isoformat(), component="checkout"
        )
        await self.handoff.write(
            HandoffKey.PENDING_PAYMENT_PLAN,
            {"type": payment_type.value, "item_id": item_id, "conversation_id": conversation_id},
            component="checkout",
        )
        logger.info("checkout_started", user_id=user_id, payment_type=payment_type.value, item_id=item_id)
        return session

    async def _clear_pending(self) -> None:
        for key in (
            HandoffKey.PENDING_PAYMENT_TOKEN,
            HandoffKey.PENDING_PAYMENT_TIMESTAMP,
            HandoffKey.PENDING_PAYMENT_PLAN,
        ):
            await self.handoff.consume(key, component="payment_callback")

    async def complete_checkout(self, user_id: int, token: str) -> PaymentOutcome:
        """Verify the pending payment, apply the purchase, then clear it."""
        pending_token = await self.handoff.peek(HandoffKey.PENDING_PAYMENT_TOKEN)
        started_at = await self.handoff.peek(HandoffKey.PENDING_PAYMENT_TIMESTAMP)
        pending = await self.handoff.peek(HandoffKey.PENDING_PAYMENT_PLAN)

        if pending_token is None or pending_token != token or not pending:
            raise ValidationError("No pending payment matches this callback")

        if started_at is not None:
            age = self.clock() - as_utc(datetime.fromisoformat(started_at))
            if age > timedelta(seconds=settings.PENDING_PAYMENT_MAX_AGE_SECONDS):
                await self._clear_pending()
                raise PaymentError("The pending payment has expired", kind=ErrorKind.PAYMENT_CANCELLED)

        payment_type = PaymentType(pending["type"])
        item_id = pending["item_id"]

        verification = await retry_async(
            lambda: self.gateway.verify(token, pending.get("conversation_id", "")),
            self.policy,
            operation_name="payment_verify",
        )
        if not verification.success:
            kind = payment_kind_from_message(verification.error_message or verification.status)
            logger.warning("payment_not_verified", user_id=user_id, kind=kind.value, status=verification.status)
            await self._clear_pending()
            raise PaymentError(verification.error_message, kind=kind)

        try:
            if payment_type == PaymentType.SUBSCRIPTION:
                quota = await self.gate.change_plan(user_id, item_id)
            else:
                quota = await self.gate.purchase_credits(user_id, item_id)
        except MockupSuiteError:
            logger.error(
                "payment_apply_failed",
                user_id=user_id,
                payment_id=verification.payment_id,
                item_id=item_id,
            )
            raise

        await self._clear_pending()
        await self.handoff.write(HandoffKey.COMPLETED_PAYMENT_TOKEN, token, component="payment_callback")
        logger.info(
            "checkout_completed",
            user_id=user_id,
            payment_type=payment_type.value,
            item_id=item_id,
            payment_id=verification.payment_id,
        )
        return PaymentOutcome(
            payment_type=payment_type, item_id=item_id, payment_id=verification.payment_id, quota=quota
        )

    async def take_completed_payment(self) -> str | None:
        """Read-and-clear the completed token for the subscription view."""
        return await self.handoff.consume(HandoffKey.COMPLETED_PAYMENT_TOKEN, component="subscription_view")
