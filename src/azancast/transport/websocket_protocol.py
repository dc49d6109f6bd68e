"""Relay WebSocket message protocol definitions.

Defines Pydantic models for the JSON messages exchanged between transport
clients and the relay server. Each message carries a ``type`` tag.
"""

from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter


class RegisterMessage(BaseModel):
    """Client → Relay: claim a peer id (None for an anonymous identity)."""

    type: Literal["register"] = "register"
    peer_id: str | None = Field(default=None, description="Requested peer id")


class CallMessage(BaseModel):
    """Client → Relay: ask ``target`` to accept a call."""

    type: Literal["call"] = "call"
    call_id: str = Field(..., min_length=1, description="Caller-chosen call identifier")
    target: str = Field(..., min_length=1, description="Peer id to dial")


class AnswerMessage(BaseModel):
    """Client → Relay: accept an incoming call."""

    type: Literal["answer"] = "answer"
    call_id: str = Field(..., min_length=1)


class HangupMessage(BaseModel):
    """Client ↔ Relay: end a call."""

    type: Literal["hangup"] = "hangup"
    call_id: str = Field(..., min_length=1)
    reason: str = Field(default="closed", description="Reason for hang-up")


class AudioMessage(BaseModel):
    """Client ↔ Relay: 20ms PCM frame on a call, base64-encoded."""

    type: Literal["audio"] = "audio"
    call_id: str = Field(..., min_length=1)
    pcm: str = Field(..., description="Base64-encoded PCM audio (1920 bytes)")
    sample_rate: int = Field(default=48000, description="Sample rate in Hz")
    frame_ms: int = Field(default=20, description="Frame duration in milliseconds")
    sequence: int = Field(..., ge=1, description="Sequence number for frame ordering")


class RegisteredMessage(BaseModel):
    """Relay → Client: registration accepted."""

    type: Literal["registered"] = "registered"
    peer_id: str


class IncomingCallMessage(BaseModel):
    """Relay → Client: another peer is calling."""

    type: Literal["incoming_call"] = "incoming_call"
    call_id: str
    caller: str


class RingingMessage(BaseModel):
    """Relay → Client: the call was delivered to its target."""

    type: Literal["ringing"] = "ringing"
    call_id: str


class AnsweredMessage(BaseModel):
    """Relay → Client: the callee accepted the call."""

    type: Literal["answered"] = "answered"
    call_id: str


ErrorCode = Literal["PEER_UNAVAILABLE", "ID_TAKEN", "INVALID_MESSAGE", "NOT_REGISTERED", "RELAY_FULL"]


class ErrorMessage(BaseModel):
    """Relay → Client: request failed."""

    type: Literal["error"] = "error"
    code: ErrorCode
    message: str = Field(..., description="Error description")
    call_id: str | None = Field(default=None, description="Call the error refers to")
    peer_id: str | None = Field(default=None, description="Peer id the error refers to")


ClientMessage = Annotated[
    RegisterMessage | CallMessage | AnswerMessage | HangupMessage | AudioMessage,
    Field(discriminator="type"),
]

RelayMessage = Annotated[
    RegisteredMessage
    | IncomingCallMessage
    | RingingMessage
    | AnsweredMessage
    | HangupMessage
    | AudioMessage
    | ErrorMessage,
    Field(discriminator="type"),
]

client_message_adapter: TypeAdapter[
    RegisterMessage | CallMessage | AnswerMessage | HangupMessage | AudioMessage
] = TypeAdapter(ClientMessage)

relay_message_adapter: TypeAdapter[
    RegisteredMessage
    | IncomingCallMessage
    | RingingMessage
    | AnsweredMessage
    | HangupMessage
    | AudioMessage
    | ErrorMessage
] = TypeAdapter(RelayMessage)
