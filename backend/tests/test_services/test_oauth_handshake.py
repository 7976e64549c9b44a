"""Tests for the client-side OAuth handshake state machine."""

import asyncio

import pytest

from app.services.oauth.handshake import (
    CANCELLED_MESSAGE,
    POPUP_BLOCKED_MESSAGE,
    TIMEOUT_MESSAGE,
    HandshakeOutcome,
    HandshakeState,
    MessageChannel,
    OAuthHandshake,
    outcome_to_message,
    parse_message,
    parse_redirect_params,
)

APP_ORIGIN = "http://localhost:3000"


class FakePopup:
    def __init__(self) -> None:
        self.closed = False

    def close(self) -> None:
        self.closed = True


def make_handshake(channel: MessageChannel, **kwargs) -> OAuthHandshake:
    async def initiate() -> str:
        return "https://provider.test/authorize?state=abc"

    kwargs.setdefault("poll_interval", 0.01)
    kwargs.setdefault("timeout", 1.0)
    return OAuthHandshake("google-drive", initiate, channel, **kwargs)


class TestMessages:
    def test_parse_success_and_error(self) -> None:
        assert parse_message({"type": "oauth_success", "platform": "figma"}).platform == "figma"
        assert parse_message({"type": "oauth_error", "error": "denied"}).error == "denied"

    def test_non_oauth_messages_ignored(self) -> None:
        assert parse_message({"type": "resize", "width": 10}) is None
        assert parse_message({}) is None

    def test_redirect_params(self) -> None:
        ok = parse_redirect_params({"success": "true", "platform": "dropbox"})
        failed = parse_redirect_params({"error": "access_denied", "platform": "dropbox"})

        assert ok == HandshakeOutcome(HandshakeState.CONNECTED, platform="dropbox")
        assert failed.state == HandshakeState.FAILED
        assert failed.error == "access_denied"

    def test_outcome_to_message(self) -> None:
        assert outcome_to_message(HandshakeOutcome(HandshakeState.CONNECTED, platform="figma")) == {
            "type": "oauth_success",
            "platform": "figma",
        }
        assert outcome_to_message(HandshakeOutcome(HandshakeState.FAILED, error="nope")) == {
            "type": "oauth_error",
            "error": "nope",
        }


class TestMessageChannel:
    @pytest.mark.asyncio
    async def test_untrusted_origin_dropped(self) -> None:
        channel = MessageChannel({APP_ORIGIN})
        waiter = asyncio.create_task(channel.wait_for(lambda m: True, 0.05))
        await asyncio.sleep(0)

        assert channel.post({"type": "oauth_success", "platform": "x"}, "https://evil.test") is False
        assert await waiter is None

    @pytest.mark.asyncio
    async def test_trusted_origin_delivered(self) -> None:
        channel = MessageChannel({APP_ORIGIN + "/"})
        waiter = asyncio.create_task(channel.wait_for(lambda m: True, 1.0))
        await asyncio.sleep(0)

        assert channel.post({"type": "oauth_success", "platform": "x"}, APP_ORIGIN) is True
        assert (await waiter).platform == "x"


class TestPopupHandshake:
    """Test the popup transport."""

    @pytest.mark.asyncio
    async def test_success_message_connects(self) -> None:
        channel = MessageChannel({APP_ORIGIN})
        popup = FakePopup()
        outcomes: list[HandshakeOutcome] = []
        handshake = make_handshake(channel, on_complete=outcomes.append)

        task = asyncio.create_task(handshake.run_popup(lambda url: popup))
        await asyncio.sleep(0.02)
        channel.post({"type": "oauth_success", "platform": "google-drive"}, APP_ORIGIN)
        outcome = await task

        assert outcome.connected
        assert handshake.history == [
            HandshakeState.IDLE,
            HandshakeState.INITIATING,
            HandshakeState.AWAITING_PROVIDER,
            HandshakeState.EXCHANGING,
            HandshakeState.CONNECTED,
        ]
        assert popup.closed
        assert outcomes == [outcome]

    @pytest.mark.asyncio
    async def test_error_message_fails(self) -> None:
        channel = MessageChannel({APP_ORIGIN})
        handshake = make_handshake(channel)

        task = asyncio.create_task(handshake.run_popup(lambda url: FakePopup()))
        await asyncio.sleep(0.02)
        channel.post({"type": "oauth_error", "error": "access_denied"}, APP_ORIGIN)
        outcome = await task

        assert outcome.state == HandshakeState.FAILED
        assert outcome.error == "access_denied"

    @pytest.mark.asyncio
    async def test_closed_popup_cancels(self) -> None:
        channel = MessageChannel({APP_ORIGIN})
        popup = FakePopup()
        handshake = make_handshake(channel)

        task = asyncio.create_task(handshake.run_popup(lambda url: popup))
        await asyncio.sleep(0.02)
        popup.closed = True
        outcome = await task

        assert outcome.state == HandshakeState.CANCELLED
        assert outcome.error == CANCELLED_MESSAGE

    @pytest.mark.asyncio
    async def test_blocked_popup_fails(self) -> None:
        outcome = await make_handshake(MessageChannel({APP_ORIGIN})).run_popup(lambda url: None)

        assert outcome.state == HandshakeState.FAILED
        assert outcome.error == POPUP_BLOCKED_MESSAGE

    @pytest.mark.asyncio
    async def test_timeout_fails(self) -> None:
        handshake = make_handshake(MessageChannel({APP_ORIGIN}), timeout=0.05)

        outcome = await handshake.run_popup(lambda url: FakePopup())

        assert outcome.state == HandshakeState.FAILED
        assert outcome.error == TIMEOUT_MESSAGE

    @pytest.mark.asyncio
    async def test_unverified_connection_fails(self) -> None:
        channel = MessageChannel({APP_ORIGIN})

        async def confirm(platform: str) -> bool:
            return False

        handshake = make_handshake(channel, confirm=confirm)
        task = asyncio.create_task(handshake.run_popup(lambda url: FakePopup()))
        await asyncio.sleep(0.02)
        channel.post({"type": "oauth_success", "platform": "google-drive"}, APP_ORIGIN)

        assert (await task).state == HandshakeState.FAILED

    @pytest.mark.asyncio
    async def test_initiate_failure(self) -> None:
        async def initiate() -> str:
            raise RuntimeError("server down")

        handshake = OAuthHandshake("figma", initiate, MessageChannel({APP_ORIGIN}))
        outcome = await handshake.run_popup(lambda url: FakePopup())

        assert outcome.state == HandshakeState.FAILED
        assert outcome.error == "server down"


class TestRedirectHandshake:
    def test_redirect_success(self) -> None:
        handshake = make_handshake(MessageChannel({APP_ORIGIN}))

        outcome = handshake.complete_from_redirect({"success": "true", "platform": "google-drive"})

        assert outcome.connected
        assert handshake.state == HandshakeState.CONNECTED

    def test_finished_handshake_cannot_restart(self) -> None:
        handshake = make_handshake(MessageChannel({APP_ORIGIN}))
        handshake.complete_from_redirect({"error": "access_denied"})

        with pytest.raises(RuntimeError):
            handshake.complete_from_redirect({"success": "true"})
