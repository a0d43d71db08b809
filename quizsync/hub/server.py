"""
Local Hub websocket server.

Relays quiz responses between classroom devices when there is no internet
connection. The Hub is a pure in-memory relay: every submission is stored
(last write wins, no timestamp comparison) and fanned out to all other
connections, and late joiners get everything stored so far as a
``bulk_update`` as soon as they connect.

All handlers run on one asyncio loop and never await halfway through a
state update, so HubSession is only ever mutated by one handler at a time.
Sends are fire-and-forget: a slow or dead peer never blocks the others.

Besides the websocket endpoint the same port answers:
- GET /health  JSON status for monitoring
- GET /info    plain-text summary with the address students should enter

Usage:
    hub = Hub(get_settings())
    await hub.run()          # until SIGINT/SIGTERM
"""

from __future__ import annotations

import asyncio
import json
import signal
import socket
import uuid
from collections.abc import Awaitable, Callable
from functools import partial
from http import HTTPStatus
from typing import Any, Protocol

from loguru import logger
from websockets.asyncio.server import Server, ServerConnection, broadcast, serve
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request
from websockets.http11 import Response as HTTPResponse

from ..config import Settings, get_settings
from ..errors import ProtocolError
from ..models import now_ms
from ..protocol import (
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
    SubmitResponse,
    SyncResponse,
    UserDisconnected,
    UserJoined,
    Welcome,
    decode_client_message,
    encode,
)
from .session import ConnectionInfo, HubSession


def local_ip() -> str:
    """Best-effort LAN address of this machine."""
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            # UDP connect sends nothing; it only selects the outbound interface
            sock.connect(("10.255.255.255", 1))
            return sock.getsockname()[0]
        except OSError:
            return "localhost"


class Peer(Protocol):
    """What the Hub needs from one client connection."""

    remote_address: str | None

    def send(self, frame: str) -> None:
        """Queue a frame without blocking."""

    async def probe(self, on_pong: Callable[[], None]) -> None:
        """Send a protocol-level ping; call on_pong when answered."""

    def terminate(self) -> None:
        """Drop the connection without a closing handshake."""

    async def close(self) -> None: ...


class WebSocketPeer:
    """Peer backed by a websockets server connection."""

    def __init__(self, ws: ServerConnection):
        self.ws = ws
        address = ws.remote_address
        self.remote_address = f"{address[0]}:{address[1]}" if address else None

    def send(self, frame: str) -> None:
        # broadcast() writes synchronously and skips connections that aren't open
        broadcast([self.ws], frame)

    async def probe(self, on_pong: Callable[[], None]) -> None:
        try:
            pong_waiter = await self.ws.ping()
        except ConnectionClosed:
            return

        def _answered(fut: asyncio.Future) -> None:
            if not fut.cancelled() and fut.exception() is None:
                on_pong()

        pong_waiter.add_done_callback(_answered)

    def terminate(self) -> None:
        self.ws.transport.abort()

    async def close(self) -> None:
        await self.ws.close(1001, "Server shutting down")


class Hub:
    """
    Classroom relay.

    The message, close and sweep entry points below are the only code that
    touches ``self.session``.
    """

    def __init__(self, settings: Settings | None = None, clock: Callable[[], int] = now_ms):
        self.settings = settings or get_settings()
        self.clock = clock
        self.session = HubSession(started_at=clock())

        self._server: Server | None = None
        self._sweeps: list[asyncio.Task] = []
        self._probes: set[asyncio.Task] = set()
        self._stopped: asyncio.Event | None = None
        self._routes: dict[type, Callable[[Any, ConnectionInfo, Any], None]] = {
            Identify: self._on_identify,
            SubmitResponse: self._on_submit_response,
            RequestSync: self._on_request_sync,
            Ping: self._on_ping,
            GetStats: self._on_get_stats,
        }

    # =========================================================================
    # Outbound
    # =========================================================================

    def _send_frame(self, peer: Peer, frame: str) -> None:
        try:
            peer.send(frame)
        except Exception as exc:  # one bad peer must not stop the others
            logger.warning("[ERROR] Send to {} failed: {}", peer.remote_address, exc)

    def send(self, peer: Peer, message: Message) -> None:
        self._send_frame(peer, encode(message))

    def broadcast(self, message: Message, exclude: Peer | None = None) -> None:
        frame = encode(message)
        for peer in list(self.session.connections):
            if peer is not exclude:
                self._send_frame(peer, frame)

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    def accept(self, peer: Peer) -> ConnectionInfo:
        """Register a new connection, greet it and push existing data."""
        info = ConnectionInfo(
            id=f"client_{self.clock()}_{uuid.uuid4().hex[:9]}",
            connected_at=self.clock(),
            remote_address=peer.remote_address,
        )
        self.session.connections[peer] = info
        self.session.total_connections += 1
        logger.info(f"[CONNECT] New client connected: {info.id} from {info.remote_address}")

        self.send(
            peer,
            Welcome(
                id=info.id,
                server_time=self.clock(),
                active_user_count=len(self.session.active_users),
            ),
        )

        # proactive sync: a client that never sends request_sync still converges
        if self.session.responses:
            self.send(peer, BulkUpdate(responses=self.session.all_responses()))

        return info

    def disconnect(self, peer: Peer) -> None:
        """Close handler. Safe to call more than once for the same peer."""
        info = self.session.connections.pop(peer, None)
        if info is None:
            return

        logger.info(f"[DISCONNECT] Client disconnected: {info.id}")
        if info.user_id is not None:
            self.session.active_users.discard(info.user_id)
            self.broadcast(
                UserDisconnected(
                    user_id=info.user_id,
                    display_name=info.display_name or "Anonymous",
                    active_users=len(self.session.active_users),
                )
            )

    # =========================================================================
    # Inbound
    # =========================================================================

    def handle_message(self, peer: Peer, raw: str | bytes) -> None:
        """Decode one frame from `peer` and apply it."""
        info = self.session.connections.get(peer)
        if info is None:
            logger.warning("Message from unregistered connection dropped")
            return

        try:
            message = decode_client_message(raw)
        except ProtocolError as e:
            logger.warning(f"[UNKNOWN] {info.id}: {e}")
            self.send(peer, Error(message=str(e)))
            return

        self._routes[type(message)](peer, info, message)

    def _on_identify(self, peer: Peer, info: ConnectionInfo, message: Identify) -> None:
        if info.user_id is not None and info.user_id != message.user_id:
            self.session.active_users.discard(info.user_id)
        info.user_id = message.user_id
        info.display_name = message.display_name
        self.session.active_users.add(message.user_id)
        logger.info(f"[IDENTIFY] User {message.display_name} ({message.user_id}) identified")

        self.broadcast(
            UserJoined(
                user_id=message.user_id,
                display_name=message.display_name,
                active_users=len(self.session.active_users),
            ),
            exclude=peer,
        )
        self.send(peer, Identified(success=True, active_users=sorted(self.session.active_users)))

    def _on_submit_response(self, peer: Peer, info: ConnectionInfo, message: SubmitResponse) -> None:
        response = message.to_response(received_at=self.clock())
        self.session.store(response)
        logger.info(
            f"[RESPONSE] User {response.display_name} submitted answer "
            f"for question {response.question_id}"
        )

        self.broadcast(PeerResponse.from_response(response), exclude=peer)
        self.send(peer, ResponseConfirmed(question_id=response.question_id, success=True))

    def _on_request_sync(self, peer: Peer, info: ConnectionInfo, message: RequestSync) -> None:
        logger.info(f"[SYNC] User {info.display_name or info.id} requested data sync")
        self.send(peer, self.sync_snapshot())

    def _on_ping(self, peer: Peer, info: ConnectionInfo, message: Ping) -> None:
        self.send(peer, Pong(timestamp=self.clock()))

    def _on_get_stats(self, peer: Peer, info: ConnectionInfo, message: GetStats) -> None:
        self.send(peer, Stats(**self.session.stats(self.clock())))

    def sync_snapshot(self) -> SyncResponse:
        return SyncResponse(
            responses=self.session.all_responses(),
            active_users=sorted(self.session.active_users),
            timestamp=self.clock(),
        )

    # =========================================================================
    # Sweeps
    # =========================================================================

    async def liveness_sweep(self) -> None:
        """
        Terminate connections that missed the previous probe, then probe
        everyone else. A dead socket lingers for at most two periods.
        """
        probes: list[asyncio.Task] = []
        for peer, info in list(self.session.connections.items()):
            if peer not in self.session.connections:
                continue
            if not info.is_alive:
                logger.info(f"[HEARTBEAT] Terminating inactive client: {info.id}")
                peer.terminate()
                self.disconnect(peer)
                continue
            info.is_alive = False
            probes.append(self._start_probe(peer))

        # a peer that stopped reading can hold its ping write forever; the
        # sweep only waits so long and the next one terminates it
        if probes:
            await asyncio.wait(probes, timeout=self.settings.probe_timeout_seconds)

    def _start_probe(self, peer: Peer) -> asyncio.Task:
        task = asyncio.create_task(peer.probe(partial(self._mark_alive, peer)))
        self._probes.add(task)
        task.add_done_callback(self._probe_done)
        return task

    def _probe_done(self, task: asyncio.Task) -> None:
        self._probes.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("[HEARTBEAT] Probe failed: {}", task.exception())

    def _mark_alive(self, peer: Peer) -> None:
        info = self.session.connections.get(peer)
        if info is not None:
            info.is_alive = True

    def retention_sweep(self) -> int:
        """Drop responses older than the retention window."""
        cutoff = self.clock() - self.settings.retention_seconds * 1000
        removed = self.session.prune_older_than(cutoff)
        if removed:
            logger.info(f"[CLEANUP] Removed {removed} old responses")
        return removed

    async def _every(self, seconds: float, sweep: Callable[[], Any], name: str) -> None:
        while True:
            await asyncio.sleep(seconds)
            try:
                result = sweep()
                if isinstance(result, Awaitable):
                    await result
            except Exception as exc:
                logger.error("{} sweep failed: {}", name, exc)

    # =========================================================================
    # HTTP endpoints
    # =========================================================================

    def health(self) -> dict[str, Any]:
        return {
            "status": "healthy",
            "clients": len(self.session.connections),
            "uptime": self.clock() - self.session.started_at,
            "activeUsers": len(self.session.active_users),
        }

    def info_text(self, port: int | None = None) -> str:
        port = port or self.settings.hub_port
        address = f"{local_ip()}:{port}"
        uptime_seconds = (self.clock() - self.session.started_at) // 1000
        return "\n".join(
            [
                "Classroom Local Hub",
                "Status: Running",
                f"WebSocket URL: ws://{address}",
                f"Connected Clients: {len(self.session.connections)}",
                f"Active Users: {len(self.session.active_users)}",
                f"Uptime: {uptime_seconds} seconds",
                f"Students should enter this address when offline: {address}",
                "",
            ]
        )

    def _process_request(self, connection: ServerConnection, request: Request) -> HTTPResponse | None:
        path = request.path.split("?", 1)[0]
        if path == "/health":
            response = connection.respond(HTTPStatus.OK, json.dumps(self.health()))
            del response.headers["Content-Type"]
            response.headers["Content-Type"] = "application/json"
            return response
        if path == "/info":
            return connection.respond(HTTPStatus.OK, self.info_text())
        return None

    # =========================================================================
    # Server lifecycle
    # =========================================================================

    async def _handler(self, ws: ServerConnection) -> None:
        peer = WebSocketPeer(ws)
        self.accept(peer)
        try:
            async for raw in ws:
                self.handle_message(peer, raw)
        except ConnectionClosed as e:
            logger.debug(f"[ERROR] Connection closed abnormally: {e}")
        finally:
            self.disconnect(peer)

    async def start(self, host: str | None = None, port: int | None = None) -> None:
        """Start listening and schedule both sweeps."""
        host = host or self.settings.hub_host
        port = port if port is not None else self.settings.hub_port

        self._stopped = asyncio.Event()
        # liveness is handled by the Hub's own sweep, not the library keepalive
        self._server = await serve(
            self._handler,
            host,
            port,
            process_request=self._process_request,
            ping_interval=None,
        )
        self._sweeps = [
            asyncio.create_task(
                self._every(self.settings.heartbeat_interval_seconds, self.liveness_sweep, "Liveness")
            ),
            asyncio.create_task(
                self._every(self.settings.cleanup_interval_seconds, self.retention_sweep, "Retention")
            ),
        ]
        logger.info(f"Local Hub listening on ws://{host}:{port}")

    @property
    def port(self) -> int | None:
        """Port actually bound (useful when started with port 0)."""
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    async def stop(self) -> None:
        """Notify everyone, close all sockets, stop the sweeps."""
        logger.info("[SHUTDOWN] Shutting down server...")
        for task in self._sweeps:
            task.cancel()
        self._sweeps = []
        for task in list(self._probes):
            task.cancel()

        self.broadcast(ServerShutdown())

        closing = [asyncio.create_task(peer.close()) for peer in list(self.session.connections)]
        if closing:
            _, pending = await asyncio.wait(closing, timeout=self.settings.shutdown_grace_seconds)
            for task in pending:
                task.cancel()

        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        if self._stopped is not None:
            self._stopped.set()
        logger.info("[SHUTDOWN] Server closed")

    async def run(self, host: str | None = None, port: int | None = None) -> None:
        """Serve until SIGINT/SIGTERM."""
        await self.start(host, port)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, lambda: asyncio.ensure_future(self.stop()))
            except NotImplementedError:  # Windows: KeyboardInterrupt reaches the caller
                pass
        await self._stopped.wait()
