"""Classroom relay server."""

from .server import Hub, WebSocketPeer, local_ip
from .session import ConnectionInfo, HubSession

__all__ = ["ConnectionInfo", "Hub", "HubSession", "WebSocketPeer", "local_ip"]
