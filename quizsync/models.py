"""
Core data model shared by the client controller and the Hub.

Attributes are snake_case in Python and camelCase on the wire
(``questionId``, ``userId``, ...), matching what classroom clients send.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class WireModel(BaseModel):
    """Base for every model that crosses the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class Response(WireModel):
    """
    One user's recorded answer to one question.

    Identity key is (question_id, user_id). Immutable: a resubmission is a
    new Response that replaces the old one under the same key.
    """

    model_config = ConfigDict(frozen=True)

    question_id: str
    answer: str
    reason: str = ""
    user_id: str
    display_name: str = "Anonymous"
    timestamp: int = Field(default_factory=now_ms)

    @property
    def key(self) -> tuple[str, str]:
        return (self.question_id, self.user_id)

    def is_newer_than(self, other: Response | None) -> bool:
        """Last-write-wins comparison by timestamp (ties favour self)."""
        return other is None or self.timestamp >= other.timestamp


class Identity(WireModel):
    """Signed-in user as reported by the identity provider."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    display_name: str = "Anonymous"


class ConnectionMode(str, Enum):
    """Transport currently used by a client."""

    CLOUD = "cloud"  # Remote authoritative store
    LOCAL_RELAY = "local"  # Classroom Hub over the LAN
    OFFLINE = "offline"  # Local cache only


@dataclass(frozen=True)
class ConnectionState:
    """Read-only snapshot of a controller's connection state."""

    mode: ConnectionMode = ConnectionMode.OFFLINE
    reconnect_attempts: int = 0
    last_known_relay_address: str | None = None

    @property
    def is_connected(self) -> bool:
        return self.mode != ConnectionMode.OFFLINE
