"""Tests for billing endpoints."""

import pytest
from httpx import AsyncClient

from tests.fakes import FakeGateway


class TestCatalogAndQuota:
    @pytest.mark.asyncio
    async def test_catalog_is_public(self, test_client: AsyncClient) -> None:
        response = await test_client.get("/api/v1/billing/catalog")

        assert response.status_code == 200
        data = response.json()
        assert data["currency"] == "TRY"
        assert [plan["id"] for plan in data["plans"]] == ["free", "starter", "pro", "business"]
        assert data["credit_packages"][0] == {"id": "small", "credits": 3, "price": 25, "price_per_image": 8.33}

    @pytest.mark.asyncio
    async def test_check_without_subscription(
        self, test_client: AsyncClient, auth_headers: dict[str, str]
    ) -> None:
        response = await test_client.get(
            "/api/v1/billing/quota/check", params={"operation": "image_generation"}, headers=auth_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["allowed"] is False
        assert data["reason"] == "no_credits"

    @pytest.mark.asyncio
    async def test_quota_provisions_free_plan(
        self, test_client: AsyncClient, auth_headers: dict[str, str]
    ) -> None:
        response = await test_client.get("/api/v1/billing/quota", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["plan_id"] == "free"
        assert data["remaining_quota"] == 5

        check = await test_client.get("/api/v1/billing/quota/check", headers=auth_headers)
        assert check.json()["allowed"] is True


class TestCheckoutEndpoints:
    """Test checkout through the HTTP surface."""

    @pytest.mark.asyncio
    async def test_credit_checkout_flow(
        self, test_client: AsyncClient, auth_headers: dict[str, str], fake_gateway: FakeGateway
    ) -> None:
        begin = await test_client.post(
            "/api/v1/billing/checkout",
            json={"payment_type": "credit", "item_id": "large"},
            headers=auth_headers,
        )
        assert begin.status_code == 200
        token = begin.json()["token"]

        complete = await test_client.post(
            "/api/v1/billing/checkout/complete", json={"token": token}, headers=auth_headers
        )
        assert complete.status_code == 200
        assert complete.json()["quota"]["credit_balance"] == 40

        taken = await test_client.get("/api/v1/billing/checkout/completed", headers=auth_headers)
        assert taken.json() == {"token": token}
        again = await test_client.get("/api/v1/billing/checkout/completed", headers=auth_headers)
        assert again.json() == {"token": None}

    @pytest.mark.asyncio
    async def test_complete_without_pending_payment(
        self, test_client: AsyncClient, auth_headers: dict[str, str]
    ) -> None:
        response = await test_client.post(
            "/api/v1/billing/checkout/complete", json={"token": "tok-1"}, headers=auth_headers
        )

        assert response.status_code == 422
        assert response.json()["error"]["kind"] == "validation"

    @pytest.mark.asyncio
    async def test_unknown_plan(self, test_client: AsyncClient, auth_headers: dict[str, str]) -> None:
        response = await test_client.post(
            "/api/v1/billing/checkout",
            json={"payment_type": "subscription", "item_id": "platinum"},
            headers=auth_headers,
        )

        assert response.status_code == 422
        assert response.json()["error"]["retryable"] is False
