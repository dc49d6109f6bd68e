"""Unit tests for relay protocol messages."""

import json

import pytest
from pydantic import ValidationError

from src.azancast.transport.websocket_protocol import (
    AudioMessage,
    CallMessage,
    ErrorMessage,
    HangupMessage,
    IncomingCallMessage,
    RegisterMessage,
    client_message_adapter,
    relay_message_adapter,
)


class TestClientMessages:
    """Test messages sent by transport clients."""

    def test_register_anonymous(self) -> None:
        """Test register without a peer id."""
        message = client_message_adapter.validate_json('{"type": "register"}')
        assert isinstance(message, RegisterMessage)
        assert message.peer_id is None

    def test_call(self) -> None:
        """Test call parsing by type tag."""
        message = client_message_adapter.validate_json(
            '{"type": "call", "call_id": "call-1", "target": "482913"}'
        )
        assert isinstance(message, CallMessage)
        assert message.target == "482913"

    def test_call_requires_target(self) -> None:
        """Test an empty target is rejected."""
        with pytest.raises(ValidationError):
            CallMessage(call_id="call-1", target="")

    def test_hangup_default_reason(self) -> None:
        """Test hang-up reason defaults to closed."""
        assert HangupMessage(call_id="call-1").reason == "closed"

    def test_audio_sequence_positive(self) -> None:
        """Test sequence numbers start at 1."""
        with pytest.raises(ValidationError):
            AudioMessage(call_id="call-1", pcm="", sequence=0)

    @pytest.mark.parametrize(
        "raw",
        [
            '{"type": "bogus"}',
            '{"call_id": "call-1"}',
            "not json",
            '{"type": "registered", "peer_id": "x"}',
        ],
    )
    def test_invalid_client_messages(self, raw: str) -> None:
        """Test unknown or relay-only messages are not accepted from clients."""
        with pytest.raises(ValidationError):
            client_message_adapter.validate_json(raw)


class TestRelayMessages:
    """Test messages sent by the relay."""

    def test_incoming_call(self) -> None:
        """Test incoming call parsing."""
        message = relay_message_adapter.validate_json(
            '{"type": "incoming_call", "call_id": "call-1", "caller": "peer-abc"}'
        )
        assert isinstance(message, IncomingCallMessage)
        assert message.caller == "peer-abc"

    def test_error_serialization(self) -> None:
        """Test error messages carry code, call and peer."""
        message = ErrorMessage(
            code="PEER_UNAVAILABLE",
            message="No peer registered as 482913",
            call_id="call-1",
            peer_id="482913",
        )
        data = json.loads(message.model_dump_json())
        assert data["type"] == "error"
        assert data["code"] == "PEER_UNAVAILABLE"
        assert data["peer_id"] == "482913"

    def test_unknown_error_code(self) -> None:
        """Test error codes are a closed set."""
        with pytest.raises(ValidationError):
            ErrorMessage(code="TEAPOT", message="nope")  # type: ignore[arg-type]
