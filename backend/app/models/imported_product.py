"""Products imported from e-commerce integrations."""

import uuid
from typing import Any

from sqlalchemy import JSON, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin


class ImportedProduct(Base, TimestampMixin):
    """A remote product mirrored locally.

    Keyed by (user, platform, remote id) so re-syncing updates in place.
    """

    __tablename__ = "imported_products"
    __table_args__ = (
        UniqueConstraint("user_id", "platform", "remote_id", name="uq_imported_products_remote"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    platform: Mapped[str] = mapped_column(String(50), nullable=False)
    remote_id: Mapped[str] = mapped_column(String(100), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    vendor: Mapped[str | None] = mapped_column(String(255), nullable=True)
    product_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    handle: Mapped[str | None] = mapped_column(String(255), nullable=True)
    images: Mapped[list[Any]] = mapped_column(JSON, default=list, nullable=False)
    variants: Mapped[list[Any]] = mapped_column(JSON, default=list, nullable=False)
    product_metadata: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
