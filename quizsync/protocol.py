"""
RelayLink wire protocol.

Every frame is a JSON object tagged by ``type``. Messages are modelled as
pydantic variants of two discriminated unions:

    ClientMessage  client -> Hub   identify, request_sync, submit_response,
                                   ping, get_stats
    HubMessage     Hub -> client   welcome, identified, peer_response,
                                   bulk_update, sync_response, user_joined,
                                   user_disconnected, response_confirmed,
                                   pong, stats, error, server_shutdown

Usage:
    frame = encode(Identify(user_id="u1", display_name="Ada"))
    message = decode_client_message(frame)
"""

from __future__ import annotations

import json
from typing import Annotated, Literal, Union

from pydantic import Field, TypeAdapter, ValidationError

from .errors import ProtocolError
from .models import Response, WireModel, now_ms


class Message(WireModel):
    """Base for all wire messages."""

    type: str


# =============================================================================
# Client -> Hub
# =============================================================================


class Identify(Message):
    type: Literal["identify"] = "identify"
    user_id: str
    display_name: str = "Anonymous"


class RequestSync(Message):
    type: Literal["request_sync"] = "request_sync"


class SubmitResponse(Message):
    """A response submission; the Hub stamps receipt time when timestamp is absent."""

    type: Literal["submit_response"] = "submit_response"
    question_id: str
    answer: str
    reason: str = ""
    user_id: str
    display_name: str = "Anonymous"
    timestamp: int | None = None

    @classmethod
    def from_response(cls, response: Response) -> SubmitResponse:
        return cls(**response.model_dump())

    def to_response(self, received_at: int) -> Response:
        data = self.model_dump(exclude={"type"})
        if data["timestamp"] is None:
            data["timestamp"] = received_at
        return Response(**data)


class Ping(Message):
    type: Literal["ping"] = "ping"


class GetStats(Message):
    type: Literal["get_stats"] = "get_stats"


# =============================================================================
# Hub -> client
# =============================================================================


class Welcome(Message):
    type: Literal["welcome"] = "welcome"
    id: str
    server_time: int
    active_user_count: int
    message: str = "Connected to Local Hub successfully"


class Identified(Message):
    type: Literal["identified"] = "identified"
    success: bool = True
    active_users: list[str] = Field(default_factory=list)


class PeerResponse(Message):
    type: Literal["peer_response"] = "peer_response"
    question_id: str
    answer: str
    reason: str = ""
    user_id: str
    display_name: str = "Anonymous"
    timestamp: int

    @classmethod
    def from_response(cls, response: Response) -> PeerResponse:
        return cls(**response.model_dump())

    def to_response(self) -> Response:
        return Response(**self.model_dump(exclude={"type"}))


class BulkUpdate(Message):
    type: Literal["bulk_update"] = "bulk_update"
    responses: list[Response] = Field(default_factory=list)
    message: str = "Syncing existing classroom data"


class SyncResponse(Message):
    type: Literal["sync_response"] = "sync_response"
    responses: list[Response] = Field(default_factory=list)
    active_users: list[str] = Field(default_factory=list)
    timestamp: int = Field(default_factory=now_ms)


class UserJoined(Message):
    type: Literal["user_joined"] = "user_joined"
    user_id: str
    display_name: str = "Anonymous"
    active_users: int


class UserDisconnected(Message):
    type: Literal["user_disconnected"] = "user_disconnected"
    user_id: str
    display_name: str = "Anonymous"
    active_users: int


class ResponseConfirmed(Message):
    type: Literal["response_confirmed"] = "response_confirmed"
    question_id: str
    success: bool = True


class Pong(Message):
    type: Literal["pong"] = "pong"
    timestamp: int = Field(default_factory=now_ms)


class Stats(Message):
    type: Literal["stats"] = "stats"
    connected_clients: int
    active_users: int
    total_responses: int
    uptime: int  # milliseconds


class Error(Message):
    type: Literal["error"] = "error"
    message: str


class ServerShutdown(Message):
    type: Literal["server_shutdown"] = "server_shutdown"
    message: str = "Local Hub server is shutting down"


ClientMessage = Annotated[
    Union[Identify, RequestSync, SubmitResponse, Ping, GetStats],
    Field(discriminator="type"),
]

HubMessage = Annotated[
    Union[
        Welcome,
        Identified,
        PeerResponse,
        BulkUpdate,
        SyncResponse,
        UserJoined,
        UserDisconnected,
        ResponseConfirmed,
        Pong,
        Stats,
        Error,
        ServerShutdown,
    ],
    Field(discriminator="type"),
]

CLIENT_MESSAGE_TYPES = frozenset(
    {"identify", "request_sync", "submit_response", "ping", "get_stats"}
)
HUB_MESSAGE_TYPES = frozenset(
    {
        "welcome",
        "identified",
        "peer_response",
        "bulk_update",
        "sync_response",
        "user_joined",
        "user_disconnected",
        "response_confirmed",
        "pong",
        "stats",
        "error",
        "server_shutdown",
    }
)

_client_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)
_hub_adapter: TypeAdapter[HubMessage] = TypeAdapter(HubMessage)


# =============================================================================
# Codec
# =============================================================================


def encode(message: Message) -> str:
    """Serialize a message to a JSON text frame."""
    return json.dumps(message.to_wire())


def _decode(raw: str | bytes, known: frozenset[str], adapter: TypeAdapter):
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError("Invalid message format") from e

    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise ProtocolError("Message has no type")

    message_type = data["type"]
    if message_type not in known:
        raise ProtocolError(f"Unknown message type: {message_type}")

    try:
        return adapter.validate_python(data)
    except ValidationError as e:
        raise ProtocolError(
            f"Invalid {message_type} message: {e.error_count()} field error(s)"
        ) from e


def decode_client_message(raw: str | bytes) -> ClientMessage:
    """Parse a frame sent by a client. Raises ProtocolError."""
    return _decode(raw, CLIENT_MESSAGE_TYPES, _client_adapter)


def decode_hub_message(raw: str | bytes) -> HubMessage:
    """Parse a frame sent by the Hub. Raises ProtocolError."""
    return _decode(raw, HUB_MESSAGE_TYPES, _hub_adapter)
