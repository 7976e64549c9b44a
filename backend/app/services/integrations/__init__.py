"""Platform operations (Shopify, Google Drive, Dropbox, Figma) on connected integrations."""

from app.services.integrations.sync_engine import IntegrationSyncEngine, SyncOutcome

__all__ = ["IntegrationSyncEngine", "SyncOutcome"]
