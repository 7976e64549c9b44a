"""Error taxonomy shared by every MockupSuite component.

Collaborator failures (HTTP providers, the database, Redis, image decoding)
are categorized into an ``ErrorKind`` before they leave a component, so
callers branch on the kind and never on provider-specific shapes.
Retryability is a property of the kind.
"""

import asyncio
import logging
from enum import StrEnum
from typing import Any

import httpx
import pydantic
from PIL import UnidentifiedImageError
from redis import exceptions as redis_exceptions
from sqlalchemy import exc as sa_exc

logger = logging.getLogger(__name__)


class ErrorKind(StrEnum):
    AUTH = "auth"
    NETWORK = "network"
    DATABASE = "database"
    STORAGE = "storage"
    VALIDATION = "validation"
    QUOTA_EXCEEDED = "quota_exceeded"
    NO_CREDITS = "no_credits"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CANCELLED = "payment_cancelled"
    INVALID_CARD = "invalid_card"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    PAYMENT_ERROR = "payment_error"
    INTEGRATION_DISCONNECTED = "integration_disconnected"
    INTEGRATION_NOT_CONFIGURED = "integration_not_configured"
    INVALID_OAUTH_STATE = "invalid_oauth_state"
    GENERATION_TIMEOUT = "generation_timeout"
    CONTENT_POLICY_BLOCKED = "content_policy_blocked"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.DATABASE, ErrorKind.PAYMENT_ERROR})

USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.AUTH: "Your session has expired. Please sign in again.",
    ErrorKind.NETWORK: "Network error. Please check your connection and try again.",
    ErrorKind.DATABASE: "We could not save your changes. Please try again.",
    ErrorKind.STORAGE: "The file could not be stored. Please try again.",
    ErrorKind.VALIDATION: "Some of the provided information is invalid.",
    ErrorKind.QUOTA_EXCEEDED: "You have used all generations included in your plan.",
    ErrorKind.NO_CREDITS: "You have no credits left. Purchase credits or upgrade your plan.",
    ErrorKind.SUBSCRIPTION_EXPIRED: "Your subscription has expired. Please renew to continue.",
    ErrorKind.PAYMENT_FAILED: "The payment could not be completed.",
    ErrorKind.PAYMENT_CANCELLED: "The payment was cancelled.",
    ErrorKind.INVALID_CARD: "The card details are invalid.",
    ErrorKind.INSUFFICIENT_FUNDS: "The card has insufficient funds.",
    ErrorKind.PAYMENT_ERROR: "The payment service is unavailable. Please try again.",
    ErrorKind.INTEGRATION_DISCONNECTED: "The integration was disconnected. Please reconnect it.",
    ErrorKind.INTEGRATION_NOT_CONFIGURED: "This integration is not available right now.",
    ErrorKind.INVALID_OAUTH_STATE: "The authorization request is invalid or has expired. Please try again.",
    ErrorKind.GENERATION_TIMEOUT: "Generation took too long and was stopped. Please try again.",
    ErrorKind.CONTENT_POLICY_BLOCKED: "The request was blocked by the content policy. Try a different prompt.",
    ErrorKind.UNKNOWN: "Something went wrong. Please try again.",
}

HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.AUTH: 401,
    ErrorKind.NETWORK: 503,
    ErrorKind.DATABASE: 503,
    ErrorKind.STORAGE: 502,
    ErrorKind.VALIDATION: 422,
    ErrorKind.QUOTA_EXCEEDED: 402,
    ErrorKind.NO_CREDITS: 402,
    ErrorKind.SUBSCRIPTION_EXPIRED: 402,
    ErrorKind.PAYMENT_FAILED: 402,
    ErrorKind.PAYMENT_CANCELLED: 409,
    ErrorKind.INVALID_CARD: 402,
    ErrorKind.INSUFFICIENT_FUNDS: 402,
    ErrorKind.PAYMENT_ERROR: 503,
    ErrorKind.INTEGRATION_DISCONNECTED: 409,
    ErrorKind.INTEGRATION_NOT_CONFIGURED: 503,
    ErrorKind.INVALID_OAUTH_STATE: 400,
    ErrorKind.GENERATION_TIMEOUT: 504,
    ErrorKind.CONTENT_POLICY_BLOCKED: 422,
    ErrorKind.UNKNOWN: 500,
}


class MockupSuiteError(Exception):
    """Base class for categorized errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str | None = None,
        *,
        kind: ErrorKind | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        if kind is not None:
            self.kind = kind
        self.message = message or USER_MESSAGES[self.kind]
        self.details = details or {}
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return is_retryable(self.kind)

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self.kind]

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(kind={self.kind.value}, message={self.message!r})>"


class AuthError(MockupSuiteError):
    kind = ErrorKind.AUTH


class NetworkError(MockupSuiteError):
    kind = ErrorKind.NETWORK


class DatabaseError(MockupSuiteError):
    kind = ErrorKind.DATABASE


class StorageError(MockupSuiteError):
    kind = ErrorKind.STORAGE


class ValidationError(MockupSuiteError):
    kind = ErrorKind.VALIDATION


class QuotaError(MockupSuiteError):
    """Quota-family denial (quota exceeded, no credits, expired subscription)."""

    kind = ErrorKind.QUOTA_EXCEEDED


class PaymentError(MockupSuiteError):
    """Payment-family failure; the kind tells which."""

    kind = ErrorKind.PAYMENT_ERROR


class IntegrationDisconnectedError(MockupSuiteError):
    kind = ErrorKind.INTEGRATION_DISCONNECTED


class IntegrationNotConfiguredError(MockupSuiteError):
    kind = ErrorKind.INTEGRATION_NOT_CONFIGURED


class InvalidOAuthStateError(MockupSuiteError):
    kind = ErrorKind.INVALID_OAUTH_STATE


class GenerationTimeoutError(MockupSuiteError):
    kind = ErrorKind.GENERATION_TIMEOUT


class ContentPolicyBlockedError(MockupSuiteError):
    kind = ErrorKind.CONTENT_POLICY_BLOCKED


def is_retryable(kind: ErrorKind) -> bool:
    """Return True when errors of this kind may succeed on a later attempt."""
    return kind in RETRYABLE_KINDS


# Ordered: first matching keyword wins
_MESSAGE_HINTS: tuple[tuple[tuple[str, ...], ErrorKind], ...] = (
    (("safety", "recitation", "blocked by policy"), ErrorKind.CONTENT_POLICY_BLOCKED),
    (("insufficient funds",), ErrorKind.INSUFFICIENT_FUNDS),
    (("invalid card", "card declined"), ErrorKind.INVALID_CARD),
    (("quota",), ErrorKind.QUOTA_EXCEEDED),
    (("unauthorized", "jwt", "invalid token", "forbidden"), ErrorKind.AUTH),
    (("network", "fetch", "connection", "timed out", "timeout"), ErrorKind.NETWORK),
    (("bucket", "storage"), ErrorKind.STORAGE),
    (("payment",), ErrorKind.PAYMENT_ERROR),
    (("invalid", "required", "must be"), ErrorKind.VALIDATION),
)


def _kind_for_status(status_code: int) -> ErrorKind:
    if status_code in (401, 403):
        return ErrorKind.AUTH
    if status_code in (400, 404, 409, 422):
        return ErrorKind.VALIDATION
    if status_code == 413:
        return ErrorKind.STORAGE
    if status_code in (408, 429, 502, 503, 504):
        return ErrorKind.NETWORK
    if status_code >= 500:
        return ErrorKind.DATABASE
    return ErrorKind.UNKNOWN


def _kind_from_message(message: str) -> ErrorKind:
    lowered = message.lower()
    for keywords, kind in _MESSAGE_HINTS:
        if any(keyword in lowered for keyword in keywords):
            return kind
    return ErrorKind.UNKNOWN


def categorize_error(error: BaseException) -> MockupSuiteError:
    """Map any collaborator error onto the taxonomy.

    Already-categorized errors are returned unchanged. The original error is
    kept as ``__cause__`` so logs still show the provider's traceback.
    """
    if isinstance(error, MockupSuiteError):
        return error

    kind = ErrorKind.UNKNOWN
    message = str(error) or type(error).__name__
    details: dict[str, Any] = {"error_type": type(error).__name__}

    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        kind = _kind_for_status(status_code)
        details["status_code"] = status_code
        message = f"{error.request.method} {error.request.url.host} returned {status_code}"
    elif isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        kind = ErrorKind.NETWORK
    elif isinstance(error, sa_exc.IntegrityError):
        kind = ErrorKind.VALIDATION
    elif isinstance(error, sa_exc.SQLAlchemyError):
        kind = ErrorKind.DATABASE
    elif isinstance(error, (redis_exceptions.ConnectionError, redis_exceptions.TimeoutError)):
        kind = ErrorKind.NETWORK
    elif isinstance(error, redis_exceptions.RedisError):
        kind = ErrorKind.DATABASE
    elif isinstance(error, (UnidentifiedImageError, pydantic.ValidationError)):
        kind = ErrorKind.VALIDATION
    elif isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        kind = ErrorKind.NETWORK
    else:
        kind = _kind_from_message(message)

    categorized = MockupSuiteError(message, kind=kind, details=details)
    categorized.__cause__ = error
    logger.debug("Categorized %s as %s", type(error).__name__, kind.value)
    return categorized
