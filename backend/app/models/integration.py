"""Third-party platform catalog."""

from enum import Enum

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class IntegrationStatus(str, Enum):
    ACTIVE = "active"
    COMING_SOON = "coming_soon"


class IntegrationCategory(str, Enum):
    ECOMMERCE = "ecommerce"
    STORAGE = "storage"
    DESIGN = "design"


class Integration(Base):
    """Reference row for a connectable platform. Seeded, never edited by users."""

    __tablename__ = "integrations"

    id: Mapped[str] = mapped_column(
        String(50), primary_key=True, comment="Platform slug (e.g., 'shopify', 'google-drive')"
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(String(30), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=IntegrationStatus.ACTIVE.value, nullable=False
    )
    oauth_provider: Mapped[str | None] = mapped_column(
        String(50), nullable=True, comment="Key into the OAuth provider registry"
    )

    @property
    def is_available(self) -> bool:
        return self.status == IntegrationStatus.ACTIVE.value and self.oauth_provider is not None

    def __repr__(self) -> str:
        return f"<Integration(id={self.id}, status={self.status})>"


INTEGRATION_CATALOG: list[dict[str, str | None]] = [
    {
        "id": "shopify",
        "name": "Shopify",
        "category": IntegrationCategory.ECOMMERCE.value,
        "description": "Import products and publish mockups to your store.",
        "status": IntegrationStatus.ACTIVE.value,
        "oauth_provider": "shopify",
    },
    {
        "id": "google-drive",
        "name": "Google Drive",
        "category": IntegrationCategory.STORAGE.value,
        "description": "Save generated mockups to Drive folders.",
        "status": IntegrationStatus.ACTIVE.value,
        "oauth_provider": "google-drive",
    },
    {
        "id": "dropbox",
        "name": "Dropbox",
        "category": IntegrationCategory.STORAGE.value,
        "description": "Save generated mockups to Dropbox.",
        "status": IntegrationStatus.ACTIVE.value,
        "oauth_provider": "dropbox",
    },
    {
        "id": "figma",
        "name": "Figma",
        "category": IntegrationCategory.DESIGN.value,
        "description": "Import designs straight from Figma files.",
        "status": IntegrationStatus.ACTIVE.value,
        "oauth_provider": "figma",
    },
    {
        "id": "etsy",
        "name": "Etsy",
        "category": IntegrationCategory.ECOMMERCE.value,
        "description": "Publish mockups to Etsy listings.",
        "status": IntegrationStatus.COMING_SOON.value,
        "oauth_provider": None,
    },
]
