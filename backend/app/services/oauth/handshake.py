"""Client side of the OAuth handshake.

The authorization page runs either in a popup, which reports back through
a window message, or as a full-page redirect that lands on a callback view
with query parameters. Both transports end in a ``HandshakeOutcome``.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Annotated, Any, Literal, Protocol

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Authorization was cancelled"
POPUP_BLOCKED_MESSAGE = "The authorization window could not be opened. Please allow popups."
TIMEOUT_MESSAGE = "Authorization timed out"


class HandshakeState(StrEnum):
    IDLE = "idle"
    INITIATING = "initiating"
    AWAITING_PROVIDER = "awaiting_provider"
    EXCHANGING = "exchanging"
    CONNECTED = "connected"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({HandshakeState.CONNECTED, HandshakeState.FAILED, HandshakeState.CANCELLED})


class OAuthSuccessMessage(BaseModel):
    type: Literal["oauth_success"]
    platform: str


class OAuthErrorMessage(BaseModel):
    type: Literal["oauth_error"]
    error: str
    platform: str | None = None


OAuthMessage = Annotated[OAuthSuccessMessage | OAuthErrorMessage, Field(discriminator="type")]
_message_adapter: TypeAdapter[OAuthSuccessMessage | OAuthErrorMessage] = TypeAdapter(OAuthMessage)


def parse_message(payload: Mapping[str, Any]) -> OAuthSuccessMessage | OAuthErrorMessage | None:
    """Parse a window message payload, None when it is not an OAuth message."""
    try:
        return _message_adapter.validate_python(dict(payload))
    except PydanticValidationError:
        return None


class MessageChannel:
    """Cross-window message channel with an origin allowlist.

    ``post`` delivers a message; ``wait_for`` awaits one matching message or
    times out. Messages from origins outside the allowlist are dropped.
    """

    def __init__(self, allowed_origins: set[str] | frozenset[str]) -> None:
        self.allowed_origins = frozenset(origin.rstrip("/") for origin in allowed_origins)
        self._waiters: list[tuple[Callable[[Any], bool], asyncio.Future[Any]]] = []

    def post(self, payload: Mapping[str, Any], origin: str) -> bool:
        """Deliver a raw message; returns True when some waiter took it."""
        if origin.rstrip("/") not in self.allowed_origins:
            logger.warning("Dropped window message from untrusted origin %s", origin)
            return False

        message = parse_message(payload)
        if message is None:
            logger.debug("Ignored non-OAuth window message")
            return False

        for waiter in list(self._waiters):
            predicate, future = waiter
            if not future.done() and predicate(message):
                future.set_result(message)
                self._waiters.remove(waiter)
                return True
        return False

    async def wait_for(
        self, predicate: Callable[[Any], bool], timeout: float | None
    ) -> OAuthSuccessMessage | OAuthErrorMessage | None:
        """Await the next matching message; None on timeout."""
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        waiter = (predicate, future)
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(future, timeout)
        except TimeoutError:
            return None
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)


class PopupHandle(Protocol):
    """What the coordinator needs from an opened authorization window."""

    @property
    def closed(self) -> bool: ...

    def close(self) -> None: ...


class PopupClosedWatcher:
    """Cancellation token derived from polling ``popup.closed``."""

    def __init__(self, popup: PopupHandle, interval: float = 0.5) -> None:
        self.popup = popup
        self.interval = interval
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def wait(self) -> None:
        """Return once the popup has been closed."""
        while not self.popup.closed:
            await asyncio.sleep(self.interval)
        self._cancelled.set()


@dataclass(frozen=True)
class HandshakeOutcome:
    state: HandshakeState
    platform: str | None = None
    error: str | None = None

    @property
    def connected(self) -> bool:
        return self.state == HandshakeState.CONNECTED


def parse_redirect_params(params: Mapping[str, str]) -> HandshakeOutcome:
    """Interpret the callback view's query string (``success``/``error``/``platform``)."""
    platform = params.get("platform") or None
    if params.get("success") == "true":
        return HandshakeOutcome(HandshakeState.CONNECTED, platform=platform)
    return HandshakeOutcome(
        HandshakeState.FAILED,
        platform=platform,
        error=params.get("error") or "Authorization failed",
    )


def outcome_to_message(outcome: HandshakeOutcome) -> dict[str, Any]:
    """Build the message the callback page posts back to its opener."""
    if outcome.connected:
        return OAuthSuccessMessage(type="oauth_success", platform=outcome.platform or "").model_dump()
    return OAuthErrorMessage(
        type="oauth_error", error=outcome.error or "Authorization failed", platform=outcome.platform
    ).model_dump(exclude_none=True)


class OAuthHandshake:
    """State machine for one connect attempt from the client's point of view."""

    def __init__(
        self,
        platform: str,
        initiate: Callable[[], Awaitable[str]],
        channel: MessageChannel,
        *,
        confirm: Callable[[str], Awaitable[bool]] | None = None,
        poll_interval: float = 0.5,
        timeout: float = 300.0,
        on_complete: Callable[[HandshakeOutcome], None] | None = None,
    ) -> None:
        self.platform = platform
        self._initiate = initiate
        self.channel = channel
        self._confirm = confirm
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._on_complete = on_complete
        self.state = HandshakeState.IDLE
        self.history: list[HandshakeState] = [HandshakeState.IDLE]

    def _transition(self, state: HandshakeState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Handshake already finished in state {self.state}")
        logger.debug("OAuth handshake %s: %s -> %s", self.platform, self.state, state)
        self.state = state
        self.history.append(state)

    def _finish(self, state: HandshakeState, error: str | None = None) -> HandshakeOutcome:
        self._transition(state)
        outcome = HandshakeOutcome(state, platform=self.platform, error=error)
        if self._on_complete is not None:
            self._on_complete(outcome)
        return outcome

    async def run_popup(self, open_popup: Callable[[str], PopupHandle | None]) -> HandshakeOutcome:
        """Open the authorization URL in a popup and wait for it to report back."""
        self._transition(HandshakeState.INITIATING)
        try:
            auth_url = await self._initiate()
        except Exception as exc:
            logger.warning("OAuth initiate failed for %s: %s", self.platform, exc)
            return self._finish(HandshakeState.FAILED, getattr(exc, "message", str(exc)))

        popup = open_popup(auth_url)
        if popup is None:
            return self._finish(HandshakeState.FAILED, POPUP_BLOCKED_MESSAGE)

        self._transition(HandshakeState.AWAITING_PROVIDER)
        watcher = PopupClosedWatcher(popup, self.poll_interval)
        message_task = asyncio.create_task(
            self.channel.wait_for(
                lambda m: m.platform in (None, self.platform) or m.type == "oauth_error",
                self.timeout,
            )
        )
        closed_task = asyncio.create_task(watcher.wait())

        try:
            done, _ = await asyncio.wait(
                {message_task, closed_task}, return_when=asyncio.FIRST_COMPLETED
            )
            # A message that raced the close still wins
            if message_task in done:
                message = message_task.result()
            else:
                return self._finish(HandshakeState.CANCELLED, CANCELLED_MESSAGE)
        finally:
            for task in (message_task, closed_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(message_task, closed_task, return_exceptions=True)
            if not popup.closed:
                popup.close()

        if message is None:
            return self._finish(HandshakeState.FAILED, TIMEOUT_MESSAGE)
        if isinstance(message, OAuthErrorMessage):
            return self._finish(HandshakeState.FAILED, message.error)

        self._transition(HandshakeState.EXCHANGING)
        if self._confirm is not None and not await self._confirm(self.platform):
            return self._finish(HandshakeState.FAILED, "Connection could not be verified")
        return self._finish(HandshakeState.CONNECTED)

    def complete_from_redirect(self, params: Mapping[str, str]) -> HandshakeOutcome:
        """Finish a full-page redirect flow from the callback view's query string."""
        parsed = parse_redirect_params(params)
        if self.state == HandshakeState.IDLE:
            self._transition(HandshakeState.AWAITING_PROVIDER)
        if parsed.connected:
            self._transition(HandshakeState.EXCHANGING)
        return self._finish(parsed.state, parsed.error)
