"""SQLAlchemy models."""

from app.models.brand_kit import BrandKit
from app.models.imported_product import ImportedProduct
from app.models.integration import Integration
from app.models.oauth_state import OAuthState
from app.models.project import Mockup, Project
from app.models.prompt_template import PromptTemplate
from app.models.subscription import CreditBalance, CreditTransaction, Subscription, UsageLog
from app.models.user import User
from app.models.user_integration import UserIntegrationConnection

__all__ = [
    "BrandKit",
    "CreditBalance",
    "CreditTransaction",
    "ImportedProduct",
    "Integration",
    "Mockup",
    "OAuthState",
    "Project",
    "PromptTemplate",
    "Subscription",
    "UsageLog",
    "User",
    "UserIntegrationConnection",
]
