"""Tests for the User model and ownership-related rows."""

from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.base import utcnow
from app.models.oauth_state import OAuthState
from app.models.project import Mockup, Project
from app.models.subscription import Subscription
from app.models.user import User


class TestUserModel:
    """Test User model creation and validation."""

    @pytest.mark.asyncio
    async def test_create_user_success(
        self,
        test_session: AsyncSession,
        sample_user_data: dict[str, Any],
    ) -> None:
        """Test creating a user with all fields."""
        user = User(**sample_user_data)
        test_session.add(user)
        await test_session.commit()
        await test_session.refresh(user)

        assert user.id is not None
        assert user.email == sample_user_data["email"]
        assert user.full_name == sample_user_data["full_name"]
        assert user.is_active is True
        assert user.created_at is not None
        assert user.updated_at is not None

    @pytest.mark.asyncio
    async def test_user_defaults(self, test_session: AsyncSession) -> None:
        user = User(email="minimal@example.com")
        test_session.add(user)
        await test_session.commit()
        await test_session.refresh(user)

        assert user.full_name is None
        assert user.is_active is True

    @pytest.mark.asyncio
    async def test_user_email_unique_constraint(self, test_session: AsyncSession) -> None:
        """Test that email must be unique."""
        test_session.add(User(email="duplicate@example.com"))
        await test_session.commit()

        test_session.add(User(email="duplicate@example.com"))
        with pytest.raises(IntegrityError):
            await test_session.commit()

    @pytest.mark.asyncio
    async def test_user_email_required(self, test_session: AsyncSession) -> None:
        test_session.add(User(full_name="No Email"))
        with pytest.raises(IntegrityError):
            await test_session.commit()

    @pytest.mark.asyncio
    async def test_deleting_user_removes_projects(
        self, test_session: AsyncSession, test_user: User
    ) -> None:
        user_id = test_user.id
        project = Project(user_id=user_id, name="Mugs")
        test_session.add(project)
        await test_session.flush()
        test_session.add(Mockup(project_id=project.id, user_id=user_id, image_path="1/mockups/a.png"))
        await test_session.commit()
        test_session.expunge_all()

        await test_session.execute(delete(User).where(User.id == user_id))
        await test_session.commit()

        assert (await test_session.execute(select(Project))).first() is None
        assert (await test_session.execute(select(Mockup))).first() is None


class TestOAuthStateModel:
    def test_is_expired(self) -> None:
        now = utcnow()
        state = OAuthState(state="s", user_id=1, integration_id="google-drive", expires_at=now)

        assert state.is_expired(now - timedelta(seconds=1)) is False
        assert state.is_expired(now + timedelta(seconds=1)) is True


class TestSubscriptionModel:
    def test_is_in_period(self) -> None:
        now = utcnow()
        subscription = Subscription(
            user_id=1,
            plan_id="free",
            status="active",
            monthly_quota=5,
            remaining_quota=5,
            current_period_start=now - timedelta(days=1),
            current_period_end=now + timedelta(days=29),
        )

        assert subscription.is_in_period(now) is True
        assert subscription.is_in_period(now + timedelta(days=30)) is False
