"""OAuth connection lifecycle for third-party platforms.

This module provides:
- OAuthCoordinator: server-side initiate / callback / refresh / disconnect
- OAuthHandshake: client-side popup or redirect handshake state machine
- Provider definitions for Shopify, Google Drive, Dropbox and Figma
"""

from app.services.oauth.coordinator import AuthorizationRequest, OAuthCoordinator
from app.services.oauth.handshake import (
    HandshakeOutcome,
    HandshakeState,
    MessageChannel,
    OAuthHandshake,
)
from app.services.oauth.providers import OAuthProvider, TokenResponse, get_provider

__all__ = [
    "AuthorizationRequest",
    "HandshakeOutcome",
    "HandshakeState",
    "MessageChannel",
    "OAuthCoordinator",
    "OAuthHandshake",
    "OAuthProvider",
    "TokenResponse",
    "get_provider",
]
