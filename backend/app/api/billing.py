"""API endpoints for plans, quota and checkout."""

from dataclasses import asdict

from fastapi import APIRouter, Query
from pydantic import BaseModel

from app.api.deps import Gate, Gateway, Handoff
from app.core.auth import CurrentUser
from app.services.payments import CheckoutSession, PaymentOutcome, PaymentService, PaymentType
from app.services.plans import CREDIT_PACKAGES, CURRENCY, SUBSCRIPTION_PLANS, OperationKind
from app.services.quota import GateDecision, QuotaSnapshot

router = APIRouter(prefix="/billing", tags=["billing"])


class PlanResponse(BaseModel):
    id: str
    name: str
    monthly_quota: int
    max_resolution: int
    has_watermark: bool
    price: int


class CreditPackageResponse(BaseModel):
    id: str
    credits: int
    price: int
    price_per_image: float


class CatalogResponse(BaseModel):
    currency: str
    plans: list[PlanResponse]
    credit_packages: list[CreditPackageResponse]


class CheckoutRequest(BaseModel):
    payment_type: PaymentType
    item_id: str


class CompleteCheckoutRequest(BaseModel):
    token: str


class CompletedPaymentResponse(BaseModel):
    token: str | None


@router.get("/catalog", response_model=CatalogResponse)
async def get_catalog() -> CatalogResponse:
    return CatalogResponse(
        currency=CURRENCY,
        plans=[PlanResponse(**asdict(plan)) for plan in SUBSCRIPTION_PLANS.values()],
        credit_packages=[
            CreditPackageResponse(
                id=package.id,
                credits=package.credits,
                price=package.price,
                price_per_image=package.price_per_image,
            )
            for package in CREDIT_PACKAGES.values()
        ],
    )


@router.get("/quota", response_model=QuotaSnapshot)
async def get_quota(current_user: CurrentUser, gate: Gate) -> QuotaSnapshot:
    """Current ledger; first access provisions the free plan."""
    return await gate.ensure_subscription(current_user.id)


@router.get("/quota/check", response_model=GateDecision)
async def check_quota(
    current_user: CurrentUser,
    gate: Gate,
    operation: OperationKind = Query(OperationKind.IMAGE_GENERATION),
) -> GateDecision:
    return await gate.check(current_user.id, operation)


@router.post("/checkout", response_model=CheckoutSession)
async def begin_checkout(
    body: CheckoutRequest, current_user: CurrentUser, gate: Gate, handoff: Handoff, gateway: Gateway
) -> CheckoutSession:
    service = PaymentService(gate, handoff, gateway)
    return await service.begin_checkout(current_user.id, body.payment_type, body.item_id)


@router.post("/checkout/complete", response_model=PaymentOutcome)
async def complete_checkout(
    body: CompleteCheckoutRequest, current_user: CurrentUser, gate: Gate, handoff: Handoff, gateway: Gateway
) -> PaymentOutcome:
    service = PaymentService(gate, handoff, gateway)
    return await service.complete_checkout(current_user.id, body.token)


@router.get("/checkout/completed", response_model=CompletedPaymentResponse)
async def take_completed_payment(
    current_user: CurrentUser, gate: Gate, handoff: Handoff, gateway: Gateway
) -> CompletedPaymentResponse:
    """Read-and-clear the token of the last completed payment."""
    service = PaymentService(gate, handoff, gateway)
    return CompletedPaymentResponse(token=await service.take_completed_payment())
