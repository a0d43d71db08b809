"""
Ephemeral classroom session state held by one Hub.

Responses outlive the sockets that delivered them: closing a connection
never deletes its user's responses. Only the retention sweep prunes them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Hashable

from ..models import Response


@dataclass
class ConnectionInfo:
    """Per-socket bookkeeping."""

    id: str
    connected_at: int
    remote_address: str | None = None
    user_id: str | None = None
    display_name: str | None = None
    is_alive: bool = True

    @property
    def is_identified(self) -> bool:
        return self.user_id is not None


@dataclass
class HubSession:
    """
    responses:    question_id -> user_id -> Response
    active_users: user ids identified on an open connection
    connections:  peer -> ConnectionInfo
    """

    started_at: int
    responses: dict[str, dict[str, Response]] = field(default_factory=dict)
    active_users: set[str] = field(default_factory=set)
    connections: dict[Hashable, ConnectionInfo] = field(default_factory=dict)
    total_connections: int = 0

    def store(self, response: Response) -> None:
        """Last write at the Hub wins; timestamps are not compared."""
        self.responses.setdefault(response.question_id, {})[response.user_id] = response

    def all_responses(self) -> list[Response]:
        return [
            response
            for by_user in self.responses.values()
            for response in by_user.values()
        ]

    def get(self, question_id: str, user_id: str) -> Response | None:
        return self.responses.get(question_id, {}).get(user_id)

    @property
    def response_count(self) -> int:
        return sum(len(by_user) for by_user in self.responses.values())

    def prune_older_than(self, cutoff: int) -> int:
        """Drop responses with timestamp < cutoff and any emptied question."""
        removed = 0
        for question_id in list(self.responses):
            by_user = self.responses[question_id]
            for user_id in [u for u, r in by_user.items() if r.timestamp < cutoff]:
                del by_user[user_id]
                removed += 1
            if not by_user:
                del self.responses[question_id]
        return removed

    def stats(self, now: int) -> dict[str, Any]:
        return {
            "connected_clients": len(self.connections),
            "active_users": len(self.active_users),
            "total_responses": self.response_count,
            "uptime": now - self.started_at,
        }
