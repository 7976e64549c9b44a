"""Single-use OAuth CSRF state."""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, as_utc, utcnow


class OAuthState(Base):
    """Binds one authorization attempt to a user and integration.

    Deleted at callback whatever the outcome; orphans expire via ``expires_at``.
    """

    __tablename__ = "oauth_states"

    state: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    integration_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("integrations.id"), nullable=False
    )
    settings: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Pre-callback context (e.g., shop domain)"
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    def is_expired(self, now: datetime | None = None) -> bool:
        return as_utc(self.expires_at) <= (now or datetime.now(UTC))
