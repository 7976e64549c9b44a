"""Subscription plans, credit packages and billable operation kinds."""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from app.core.errors import ValidationError

BILLING_PERIOD = timedelta(days=30)
CURRENCY = "TRY"


class OperationKind(str, Enum):
    IMAGE_GENERATION = "image_generation"
    VIDEO_GENERATION = "video_generation"
    BACKGROUND_REMOVAL = "background_removal"


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    monthly_quota: int
    max_resolution: int
    has_watermark: bool
    price: int


@dataclass(frozen=True)
class CreditPackage:
    id: str
    credits: int
    price: int

    @property
    def price_per_image(self) -> float:
        return round(self.price / self.credits, 2)


SUBSCRIPTION_PLANS: dict[str, Plan] = {
    "free": Plan("free", "Free", monthly_quota=5, max_resolution=512, has_watermark=True, price=0),
    "starter": Plan("starter", "Starter", monthly_quota=50, max_resolution=2048, has_watermark=False, price=299),
    "pro": Plan("pro", "Pro", monthly_quota=200, max_resolution=4096, has_watermark=False, price=649),
    "business": Plan(
        "business", "Business", monthly_quota=700, max_resolution=4096, has_watermark=False, price=1199
    ),
}

CREDIT_PACKAGES: dict[str, CreditPackage] = {
    "small": CreditPackage("small", credits=3, price=25),
    "medium": CreditPackage("medium", credits=15, price=100),
    "large": CreditPackage("large", credits=40, price=250),
}

FREE_PLAN = SUBSCRIPTION_PLANS["free"]


def get_plan(plan_id: str) -> Plan:
    try:
        return SUBSCRIPTION_PLANS[plan_id]
    except KeyError:
        raise ValidationError(f"Unknown plan: {plan_id}") from None


def get_credit_package(package_id: str) -> CreditPackage:
    try:
        return CREDIT_PACKAGES[package_id]
    except KeyError:
        raise ValidationError(f"Unknown credit package: {package_id}") from None
