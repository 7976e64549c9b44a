"""Exponential-backoff retry shared by payments, quota checks and the offline queue."""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.core.errors import ErrorKind, MockupSuiteError, categorize_error, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Bugs in our own code are never categorized or retried
PROGRAMMING_ERRORS: tuple[type[BaseException], ...] = (
    TypeError,
    AttributeError,
    NameError,
    AssertionError,
    NotImplementedError,
)


def retry_on_retryable_kind(error: MockupSuiteError) -> bool:
    return is_retryable(error.kind)


def retry_on_kinds(*kinds: ErrorKind) -> Callable[[MockupSuiteError], bool]:
    """Build a predicate that retries only the given kinds."""
    allowed = frozenset(kinds)

    def predicate(error: MockupSuiteError) -> bool:
        return error.kind in allowed

    return predicate


@dataclass(frozen=True)
class RetryPolicy:
    """Parameters for one call site.

    Delays are in seconds. The wait before attempt ``n + 1`` is
    ``min(base_delay * multiplier ** (n - 1), max_delay)``.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0
    should_retry: Callable[[MockupSuiteError], bool] = field(default=retry_on_retryable_kind)

    def delay(self, attempt: int) -> float:
        """Backoff after the given (1-based) failed attempt."""
        return min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)

    def with_overrides(self, **changes: object) -> "RetryPolicy":
        return replace(self, **changes)  # type: ignore[arg-type]


DEFAULT_POLICY = RetryPolicy()

PAYMENT_POLICY = RetryPolicy(
    max_attempts=2,
    base_delay=2.0,
    max_delay=5.0,
    should_retry=retry_on_kinds(ErrorKind.NETWORK, ErrorKind.PAYMENT_ERROR),
)

QUOTA_CHECK_POLICY = RetryPolicy(
    max_attempts=2,
    base_delay=0.5,
    max_delay=2.0,
    should_retry=retry_on_kinds(ErrorKind.NETWORK, ErrorKind.DATABASE),
)

# Offline replay: short in-pass retries, the queue itself carries the rest
REPLAY_POLICY = RetryPolicy(max_attempts=2, base_delay=0.5, max_delay=4.0)


def _should_retry(policy: RetryPolicy) -> Callable[[BaseException], bool]:
    def predicate(error: BaseException) -> bool:
        return isinstance(error, MockupSuiteError) and policy.should_retry(error)

    return predicate


def _log_retry(operation_name: str) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Retrying %s after attempt %s failed (%s), sleeping %.2fs",
            operation_name,
            retry_state.attempt_number,
            getattr(error, "kind", "unknown"),
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
        )

    return before_sleep


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_POLICY,
    *,
    operation_name: str = "operation",
) -> T:
    """Run ``operation`` with exponential backoff.

    Raw errors are categorized before the policy's predicate sees them, and
    the categorized error is raised once attempts are exhausted or the
    predicate declines.
    """

    async def categorized_call() -> T:
        try:
            return await operation()
        except PROGRAMMING_ERRORS:
            raise
        except Exception as exc:
            raise categorize_error(exc) from exc

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(
            multiplier=policy.base_delay,
            exp_base=policy.multiplier,
            max=policy.max_delay,
        ),
        retry=retry_if_exception(_should_retry(policy)),
        before_sleep=_log_retry(operation_name),
        reraise=True,
    )

    async for attempt in retrying:
        with attempt:
            return await categorized_call()

    raise AssertionError("unreachable: tenacity reraises on exhaustion")
