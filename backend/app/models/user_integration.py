"""Per-user OAuth connection to an integration."""

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, as_utc, utcnow

if TYPE_CHECKING:
    from app.models.integration import Integration
    from app.models.user import User


class UserIntegrationConnection(Base):
    """Encrypted OAuth grant linking one user to one integration.

    Token columns only ever hold vault cipher text.
    """

    __tablename__ = "user_integrations"
    __table_args__ = (
        UniqueConstraint("user_id", "integration_id", name="uq_user_integrations_user_integration"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    integration_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("integrations.id"), nullable=False, index=True
    )

    access_token: Mapped[str] = mapped_column(Text, nullable=False, comment="Encrypted access token")
    refresh_token: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Encrypted refresh token"
    )
    token_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Null when the provider never expires tokens"
    )
    settings: Mapped[dict[str, Any]] = mapped_column(
        JSON, default=dict, nullable=False, comment="Platform settings (shop domain, folder id)"
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    connected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="integrations")
    integration: Mapped["Integration"] = relationship("Integration", lazy="selectin")

    def is_token_expired(self, now: datetime | None = None) -> bool:
        if self.token_expires_at is None:
            return False
        return as_utc(self.token_expires_at) <= (now or datetime.now(UTC))

    def __repr__(self) -> str:
        return (
            f"<UserIntegrationConnection(user_id={self.user_id}, "
            f"integration={self.integration_id})>"
        )
