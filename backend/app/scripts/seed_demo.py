"""Seed a demo account for local development.

Creates the integration catalog, a demo user on the Pro plan with a few
purchased credits, one project and one prompt template, then prints a bearer
token for the API.

Usage:
    cd backend
    uv run python -m app.scripts.seed_demo
"""

import asyncio
from datetime import timedelta

from sqlalchemy import select

from app.core.auth import create_access_token
from app.db.seed import sync_integration_catalog
from app.db.session import AsyncSessionLocal
from app.models.project import Project
from app.models.prompt_template import PromptTemplate
from app.models.user import User
from app.services.quota import QuotaGate

DEMO_USER_EMAIL = "demo@mockupsuite.app"
DEMO_USER_NAME = "Demo User"
DEMO_PLAN = "pro"
DEMO_CREDIT_PACKAGE = "small"


async def create_demo_user() -> int:
    async with AsyncSessionLocal() as db:
        result = await db.execute(select(User).where(User.email == DEMO_USER_EMAIL))
        user = result.scalar_one_or_none()
        if user:
            print(f"Demo user already exists: {user.email} (ID: {user.id})")
            return user.id

        user = User(email=DEMO_USER_EMAIL, full_name=DEMO_USER_NAME, is_active=True)
        db.add(user)
        await db.commit()
        print(f"Created demo user: {user.email} (ID: {user.id})")

        gate = QuotaGate(db)
        await gate.change_plan(user.id, DEMO_PLAN)
        await gate.purchase_credits(user.id, DEMO_CREDIT_PACKAGE)

        db.add(Project(user_id=user.id, name="Ceramic mug", prompt="A mug on a sunlit kitchen counter"))
        db.add(PromptTemplate(user_id=user.id, text="Product on a marble table, soft daylight"))
        await db.commit()
        return user.id


async def main() -> None:
    """Run the demo seeder."""
    print("=" * 50)
    print("MockupSuite Demo Seeder")
    print("=" * 50)

    async with AsyncSessionLocal() as db:
        count = await sync_integration_catalog(db)
    print(f"Integration catalog: {count} entries")

    user_id = await create_demo_user()

    print("-" * 50)
    print(f"  Email: {DEMO_USER_EMAIL}")
    print(f"  Token: {create_access_token(user_id, timedelta(days=7))}")
    print("=" * 50)


if __name__ == "__main__":
    asyncio.run(main())
