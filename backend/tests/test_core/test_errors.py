"""Tests for the error taxonomy and categorization."""

import asyncio

import httpx
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from app.core.errors import (
    RETRYABLE_KINDS,
    USER_MESSAGES,
    ErrorKind,
    MockupSuiteError,
    NetworkError,
    QuotaError,
    categorize_error,
    is_retryable,
)


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.example.com/v1/things")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError("error", request=request, response=response)


class TestErrorKinds:
    def test_every_kind_has_a_user_message(self) -> None:
        assert set(USER_MESSAGES) == set(ErrorKind)

    def test_retryable_kinds(self) -> None:
        assert RETRYABLE_KINDS == {ErrorKind.NETWORK, ErrorKind.DATABASE, ErrorKind.PAYMENT_ERROR}
        assert is_retryable(ErrorKind.NETWORK)
        assert not is_retryable(ErrorKind.VALIDATION)
        assert not is_retryable(ErrorKind.QUOTA_EXCEEDED)

    def test_kind_override_on_family_error(self) -> None:
        error = QuotaError(kind=ErrorKind.NO_CREDITS)

        assert error.kind == ErrorKind.NO_CREDITS
        assert error.message == USER_MESSAGES[ErrorKind.NO_CREDITS]
        assert error.status_code == 402

    def test_to_dict(self) -> None:
        assert NetworkError("down").to_dict() == {"kind": "network", "message": "down", "retryable": True}


class TestCategorizeError:
    """Test mapping collaborator errors onto the taxonomy."""

    def test_already_categorized_is_unchanged(self) -> None:
        error = NetworkError()

        assert categorize_error(error) is error

    @pytest.mark.parametrize(
        ("status_code", "kind"),
        [
            (401, ErrorKind.AUTH),
            (403, ErrorKind.AUTH),
            (404, ErrorKind.VALIDATION),
            (422, ErrorKind.VALIDATION),
            (413, ErrorKind.STORAGE),
            (429, ErrorKind.NETWORK),
            (503, ErrorKind.NETWORK),
            (500, ErrorKind.DATABASE),
        ],
    )
    def test_http_status(self, status_code: int, kind: ErrorKind) -> None:
        error = categorize_error(_status_error(status_code))

        assert error.kind == kind
        assert error.details["status_code"] == status_code
        assert "api.example.com" in error.message

    def test_transport_errors_are_network(self) -> None:
        assert categorize_error(httpx.ConnectTimeout("slow")).kind == ErrorKind.NETWORK
        assert categorize_error(asyncio.TimeoutError()).kind == ErrorKind.NETWORK

    def test_database_errors(self) -> None:
        integrity = IntegrityError("INSERT", {}, Exception("unique"))
        operational = OperationalError("SELECT", {}, Exception("gone"))

        assert categorize_error(integrity).kind == ErrorKind.VALIDATION
        assert categorize_error(operational).kind == ErrorKind.DATABASE

    @pytest.mark.parametrize(
        ("message", "kind"),
        [
            ("Response blocked by SAFETY filter", ErrorKind.CONTENT_POLICY_BLOCKED),
            ("Card declined by issuer", ErrorKind.INVALID_CARD),
            ("JWT expired", ErrorKind.AUTH),
            ("Failed to fetch", ErrorKind.NETWORK),
            ("bucket not found", ErrorKind.STORAGE),
            ("name is required", ErrorKind.VALIDATION),
            ("something odd", ErrorKind.UNKNOWN),
        ],
    )
    def test_message_hints(self, message: str, kind: ErrorKind) -> None:
        assert categorize_error(RuntimeError(message)).kind == kind

    def test_cause_is_preserved(self) -> None:
        original = RuntimeError("boom")
        error = categorize_error(original)

        assert isinstance(error, MockupSuiteError)
        assert error.__cause__ is original
        assert error.details["error_type"] == "RuntimeError"
