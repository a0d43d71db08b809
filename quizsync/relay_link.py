"""
Client side of the classroom relay.

A RelayLink is one duplex websocket connection to a Hub. It is an
explicit state machine (CONNECTING -> OPEN -> CLOSED) and routes every
inbound frame through a single decode-and-route function. Peer data is
folded into the owner's LocalCache; everything else is observational.

The link never changes connection modes itself: an unexpected close is
reported to the owner through ``on_close``.

Usage:
    link = RelayLink(cache, on_close=handle_close)
    await link.connect("192.168.1.100:8080", identity)
    await link.send(SubmitResponse.from_response(response))
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Callable

from loguru import logger
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from .cache import LocalCache
from .errors import ProtocolError, RelayConnectError
from .models import Identity
from .protocol import (
    BulkUpdate,
    Error,
    GetStats,
    Identified,
    Identify,
    Message,
    PeerResponse,
    Ping,
    Pong,
    RequestSync,
    ResponseConfirmed,
    ServerShutdown,
    Stats,
    SyncResponse,
    UserDisconnected,
    UserJoined,
    Welcome,
    decode_hub_message,
    encode,
)

EventCallback = Callable[[str, dict[str, Any]], None]

DEFAULT_CONNECT_TIMEOUT_MS = 5000


class LinkState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


def relay_url(address: str) -> str:
    """Turn a bare ``host:port`` into a websocket URL."""
    address = address.strip()
    if address.startswith(("ws://", "wss://")):
        return address
    return f"ws://{address}"


class RelayLink:
    """One client's live connection to the Hub."""

    def __init__(
        self,
        cache: LocalCache,
        on_close: Callable[[RelayLink], None] | None = None,
        emit: EventCallback | None = None,
    ):
        self.cache = cache
        self.state = LinkState.CLOSED
        self.address: str | None = None
        self.client_id: str | None = None
        self.active_user_count = 0
        self.active_users: list[str] = []
        self.last_stats: Stats | None = None

        self._on_close = on_close
        self._emit = emit or (lambda event, detail: None)
        self._ws: ClientConnection | None = None
        self._reader: asyncio.Task | None = None
        self._closing = False

        self._routes: dict[type, Callable[[Any], None]] = {
            Welcome: self._on_welcome,
            Identified: self._on_identified,
            PeerResponse: self._on_peer_response,
            BulkUpdate: self._on_bulk_update,
            SyncResponse: self._on_sync_response,
            UserJoined: self._on_user_presence,
            UserDisconnected: self._on_user_presence,
            ResponseConfirmed: self._on_response_confirmed,
            Pong: self._on_pong,
            Stats: self._on_stats,
            Error: self._on_error,
            ServerShutdown: self._on_server_shutdown,
        }

    @property
    def is_open(self) -> bool:
        return self.state == LinkState.OPEN

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(
        self,
        address: str,
        identity: Identity | None = None,
        timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS,
    ) -> None:
        """
        Open the link and queue ``identify`` then ``request_sync``.

        Raises:
            RelayConnectError: on timeout or transport failure
        """
        if self.is_open:
            logger.debug("Already connected to Local Hub")
            return

        url = relay_url(address)
        self.address = address
        self.state = LinkState.CONNECTING
        self._closing = False
        logger.info(f"Connecting to Local Hub at {url}")

        try:
            # wait_for cancels the pending open, so a late handshake never lands
            self._ws = await asyncio.wait_for(
                connect(url, open_timeout=None, ping_interval=None),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError as e:
            self.state = LinkState.CLOSED
            raise RelayConnectError(address, "Connection timeout") from e
        except (OSError, WebSocketException) as e:
            self.state = LinkState.CLOSED
            raise RelayConnectError(address, str(e) or type(e).__name__) from e

        self.state = LinkState.OPEN
        logger.info("Connected to Local Hub")

        if identity is not None:
            await self.send(
                Identify(user_id=identity.user_id, display_name=identity.display_name)
            )
        await self.send(RequestSync())

        self._reader = asyncio.create_task(self._read_loop(self._ws))

    async def close(self) -> None:
        """Close on purpose; the owner's on_close is not called."""
        self._closing = True
        ws = self._ws
        if ws is not None:
            await ws.close()
        reader = self._reader
        if reader is not None and reader is not asyncio.current_task():
            await reader
        self.state = LinkState.CLOSED

    async def _read_loop(self, ws: ClientConnection) -> None:
        try:
            async for raw in ws:
                self.handle_raw(raw)
        except ConnectionClosed as e:
            logger.debug(f"Relay socket closed with error: {e}")
        finally:
            self._ws = None
            self._reader = None
            self.state = LinkState.CLOSED
            if not self._closing:
                logger.info("Disconnected from Local Hub")
                if self._on_close is not None:
                    self._on_close(self)

    # =========================================================================
    # Outbound
    # =========================================================================

    async def send(self, message: Message) -> bool:
        """Send one message. Returns False if the link is not open or the write fails."""
        if self._ws is None or self.state != LinkState.OPEN:
            return False
        try:
            await self._ws.send(encode(message))
            return True
        except ConnectionClosed as e:
            logger.warning(f"Relay send failed: {e}")
            return False

    async def ping(self) -> bool:
        return await self.send(Ping())

    async def request_stats(self) -> bool:
        return await self.send(GetStats())

    # =========================================================================
    # Inbound
    # =========================================================================

    def handle_raw(self, raw: str | bytes) -> None:
        """Decode one frame and route it. Bad frames are logged and dropped."""
        try:
            message = decode_hub_message(raw)
        except ProtocolError as e:
            logger.warning(f"Dropping relay message: {e}")
            return
        self._routes[type(message)](message)

    def _on_welcome(self, message: Welcome) -> None:
        self.client_id = message.id
        self.active_user_count = message.active_user_count
        logger.debug(f"Welcome from Hub as {message.id}")

    def _on_identified(self, message: Identified) -> None:
        self._set_active_users(message.active_users)

    def _on_peer_response(self, message: PeerResponse) -> None:
        response = message.to_response()
        self.cache.put_peer(response)
        self._emit(
            "peer_data_updated",
            {"questionId": response.question_id, "response": response},
        )

    def _on_bulk_update(self, message: BulkUpdate) -> None:
        count = self.cache.merge_peers(message.responses)
        logger.debug(f"Merged {count} peer responses from Hub")
        for question_id in {r.question_id for r in message.responses}:
            self._emit("peer_data_updated", {"questionId": question_id, "response": None})

    def _on_sync_response(self, message: SyncResponse) -> None:
        self._on_bulk_update(BulkUpdate(responses=message.responses))
        self._set_active_users(message.active_users)

    def _on_user_presence(self, message: UserJoined | UserDisconnected) -> None:
        self.active_user_count = message.active_users
        verb = "joined" if isinstance(message, UserJoined) else "left"
        logger.info(f"User {message.display_name} {verb} (active users: {message.active_users})")
        self._emit("active_users_updated", message.to_wire())

    def _on_response_confirmed(self, message: ResponseConfirmed) -> None:
        logger.debug(f"Response confirmed for question: {message.question_id}")

    def _on_pong(self, message: Pong) -> None:
        logger.debug(f"Pong from Hub at {message.timestamp}")

    def _on_stats(self, message: Stats) -> None:
        self.last_stats = message

    def _on_error(self, message: Error) -> None:
        logger.warning(f"Hub reported error: {message.message}")

    def _on_server_shutdown(self, message: ServerShutdown) -> None:
        logger.warning(f"Hub shutting down: {message.message}")

    def _set_active_users(self, users: list[str]) -> None:
        self.active_users = list(users)
        self.active_user_count = len(users)
        self._emit("active_users_updated", {"count": self.active_user_count, "activeUsers": self.active_users})
