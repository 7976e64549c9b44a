"""Brand kit model."""

from typing import Any

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin


class BrandKit(Base, TimestampMixin):
    """Logo and colors applied to generated output. One per user."""

    __tablename__ = "brand_kits"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False, index=True
    )
    logo_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    use_watermark: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    colors: Mapped[list[Any]] = mapped_column(JSON, default=list, nullable=False)
