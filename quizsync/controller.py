"""
Connection mode controller.

Picks and maintains exactly one active transport for a client:

1. Cloud      - writes go straight to the remote store
2. LocalRelay - writes go to the classroom Hub over a RelayLink
3. Offline    - writes stay in the local cache until the next reconcile

Every submission lands in the LocalCache first, so nothing is lost when
the transport write fails. On every transition into Cloud the queued own
responses are replayed to the remote store (reconcile).

Usage:
    controller = ConnectionModeController(store, identities)
    await controller.start(online=False)
    await controller.connect_to_relay("192.168.1.100:8080")
    await controller.submit_response("Q1", "B", "because")
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from .cache import LAST_RELAY_ADDRESS, LocalCache
from .config import Settings
from .errors import InvalidTransitionError, RelayConnectError, RemoteStoreError
from .models import ConnectionMode, ConnectionState, Identity, Response, now_ms
from .protocol import SubmitResponse
from .reconnect import ReconnectPolicy
from .relay_link import DEFAULT_CONNECT_TIMEOUT_MS, EventCallback, RelayLink
from .remote_store import IdentityProvider, RemoteStore, ResponsesCallback, Unsubscribe

CLOUD = ConnectionMode.CLOUD
LOCAL_RELAY = ConnectionMode.LOCAL_RELAY
OFFLINE = ConnectionMode.OFFLINE

# trigger -> (states it may fire from, target state)
TRANSITIONS: dict[str, tuple[frozenset[ConnectionMode], ConnectionMode]] = {
    "network_restored": (frozenset({OFFLINE, CLOUD, LOCAL_RELAY}), CLOUD),
    "network_lost": (frozenset({CLOUD, LOCAL_RELAY}), OFFLINE),
    "relay_connected": (frozenset({OFFLINE, CLOUD, LOCAL_RELAY}), LOCAL_RELAY),
    "reconnect_exhausted": (frozenset({LOCAL_RELAY}), OFFLINE),
    "sign_out": (frozenset({OFFLINE, CLOUD, LOCAL_RELAY}), OFFLINE),
}


@dataclass
class ReconcileResult:
    """Outcome of replaying own responses to the remote store."""

    successful: int = 0
    failed: int = 0
    failed_keys: list[tuple[str, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.successful + self.failed


class ConnectionModeController:
    """Single authority over a client's connection mode."""

    def __init__(
        self,
        remote: RemoteStore,
        identities: IdentityProvider,
        cache: LocalCache | None = None,
        policy: ReconnectPolicy | None = None,
        connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS,
        link_factory: Callable[..., RelayLink] = RelayLink,
    ):
        self.remote = remote
        self.identities = identities
        self.cache = cache if cache is not None else LocalCache()
        self.policy = policy or ReconnectPolicy()
        self.connect_timeout_ms = connect_timeout_ms

        self._link_factory = link_factory
        self._mode = OFFLINE
        self._online = False
        self._link: RelayLink | None = None
        self._reconnect_attempts = 0
        self._reconnect_task: asyncio.Task | None = None
        self._listeners: list[EventCallback] = []
        self._remote_subscriptions: dict[str, list[Unsubscribe]] = {}
        self._local_watchers: dict[str, list[ResponsesCallback]] = {}

    @classmethod
    def from_settings(
        cls, settings: Settings, remote: RemoteStore, identities: IdentityProvider
    ) -> ConnectionModeController:
        return cls(
            remote,
            identities,
            cache=LocalCache(settings.cache_path),
            policy=ReconnectPolicy.from_settings(settings),
            connect_timeout_ms=settings.connect_timeout_ms,
        )

    # =========================================================================
    # State
    # =========================================================================

    @property
    def mode(self) -> ConnectionMode:
        return self._mode

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def last_known_relay_address(self) -> str | None:
        return self.cache.get_setting(LAST_RELAY_ADDRESS)

    @property
    def state(self) -> ConnectionState:
        return ConnectionState(
            mode=self._mode,
            reconnect_attempts=self._reconnect_attempts,
            last_known_relay_address=self.last_known_relay_address,
        )

    @property
    def active_user_count(self) -> int:
        return self._link.active_user_count if self._link is not None else 0

    def _transition(self, trigger: str) -> None:
        allowed_from, target = TRANSITIONS[trigger]
        previous = self._mode
        if previous not in allowed_from:
            raise InvalidTransitionError(
                f"{trigger} cannot move from {previous.value} to {target.value}"
            )

        if target != LOCAL_RELAY:
            self._cancel_reconnect()

        self._mode = target
        if target != previous:
            logger.info(f"Connection mode: {previous.value} -> {target.value} ({trigger})")
            self._emit("mode_changed", {"mode": target, "previous": previous})

    # =========================================================================
    # Events
    # =========================================================================

    def add_listener(self, callback: EventCallback) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: EventCallback) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _emit(self, event: str, detail: dict[str, Any]) -> None:
        if event == "peer_data_updated":
            question_id = detail.get("questionId")
            for watcher in list(self._local_watchers.get(question_id, [])):
                try:
                    watcher(self.cache.peer_responses(question_id))
                except Exception as exc:
                    logger.warning("Subscription callback failed: {}", exc)

        for listener in list(self._listeners):
            try:
                listener(event, detail)
            except Exception as exc:
                logger.warning("Event listener failed for {}: {}", event, exc)

    # =========================================================================
    # Host signals
    # =========================================================================

    async def start(self, online: bool) -> ReconcileResult | None:
        """Begin in Offline, moving to Cloud right away when possible."""
        self._online = online
        logger.info(
            f"Controller started ({len(self.cache.own_responses())} queued responses)"
        )
        if online:
            return await self.network_restored()
        return None

    async def network_restored(self) -> ReconcileResult | None:
        self._online = True
        logger.info("Network connection restored")
        if not self.identities.is_signed_in():
            logger.info("No user signed in; staying in {} mode", self._mode.value)
            return None

        self._transition("network_restored")
        return await self.reconcile()

    def network_lost(self) -> None:
        self._online = False
        logger.info("Network connection lost")
        if self._mode in (CLOUD, LOCAL_RELAY):
            # an open relay link is left to close on its own
            self._transition("network_lost")

    async def handle_auth_change(self, signed_in: bool) -> ReconcileResult | None:
        if not signed_in:
            await self.sign_out()
            return None
        if self._online:
            return await self.network_restored()
        return None

    async def sign_out(self) -> None:
        logger.info("User signed out")
        self._transition("sign_out")
        self._teardown_subscriptions()
        link, self._link = self._link, None
        if link is not None:
            await link.close()

    async def close(self) -> None:
        self._cancel_reconnect()
        self._teardown_subscriptions()
        link, self._link = self._link, None
        if link is not None:
            await link.close()
        self.cache.close()

    # =========================================================================
    # Local relay
    # =========================================================================

    def _new_link(self) -> RelayLink:
        return self._link_factory(self.cache, on_close=self._on_link_closed, emit=self._emit)

    async def connect_to_relay(self, address: str) -> None:
        """
        Connect to a classroom Hub chosen by the user.

        Raises:
            RelayConnectError: the mode stays what it was. If the previous
                link had already dropped, the reconnect loop restarts
                against the new address.
        """
        self._cancel_reconnect()
        self._reconnect_attempts = 0
        address = address.strip()
        self.cache.set_setting(LAST_RELAY_ADDRESS, address)

        link = self._new_link()
        try:
            await link.connect(address, self.identities.current_identity(), self.connect_timeout_ms)
        except RelayConnectError:
            if self._mode == LOCAL_RELAY and self._link is None:
                # the old link is already gone; back off toward the new address
                self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())
            raise

        previous, self._link = self._link, link
        if previous is not None:
            await previous.close()
        self._transition("relay_connected")

    def _on_link_closed(self, link: RelayLink) -> None:
        if link is not self._link:
            return
        self._link = None
        if self._mode != LOCAL_RELAY:
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        address = self.last_known_relay_address
        while address and self.policy.can_retry(self._reconnect_attempts):
            self._reconnect_attempts += 1
            delay_ms = self.policy.delay_ms(self._reconnect_attempts)
            logger.info(
                f"Attempting to reconnect ({self._reconnect_attempts}/"
                f"{self.policy.max_attempts}) in {delay_ms}ms..."
            )
            self._emit("reconnecting", {"attempt": self._reconnect_attempts, "delayMs": delay_ms})
            await asyncio.sleep(delay_ms / 1000)

            link = self._new_link()
            try:
                await link.connect(address, self.identities.current_identity(), self.connect_timeout_ms)
            except RelayConnectError as e:
                logger.warning(f"Reconnect attempt {self._reconnect_attempts} failed: {e.reason}")
                continue

            self._link = link
            self._reconnect_attempts = 0
            self._reconnect_task = None
            logger.info("Reconnected to Local Hub")
            return

        self._reconnect_task = None
        attempts = self._reconnect_attempts
        self._transition("reconnect_exhausted")
        logger.error("Failed to reconnect to Local Hub. Working offline.")
        self._emit(
            "reconnect_failed",
            {
                "attempts": attempts,
                "message": "Failed to reconnect to Local Hub. Reconnect manually to retry.",
            },
        )

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    # =========================================================================
    # Responses
    # =========================================================================

    async def submit_response(self, question_id: str, answer: str, reason: str = "") -> bool:
        """
        Save a response in every mode.

        Returns:
            True if the transport write (remote store or Hub) succeeded.
            The cache write always happens first and never fails.
        """
        identity = self.identities.current_identity()
        if identity is None:
            logger.error("No user signed in")
            return False

        response = Response(
            question_id=question_id,
            answer=answer,
            reason=reason,
            user_id=identity.user_id,
            display_name=identity.display_name,
            timestamp=now_ms(),
        )
        self.cache.put_own(response)

        saved = False
        if self._mode == CLOUD:
            saved = await self._write_remote(response)
        elif self._mode == LOCAL_RELAY:
            if self._link is not None:
                saved = await self._link.send(SubmitResponse.from_response(response))
        else:
            logger.debug("Saved to local cache (offline mode)")

        self._emit(
            "response_saved",
            {"questionId": question_id, "saved": saved, "mode": self._mode},
        )
        return saved

    async def _write_remote(self, response: Response) -> bool:
        try:
            return await self.remote.write_response(response)
        except RemoteStoreError as e:
            logger.warning(f"Remote write failed, kept for reconcile: {e}")
            return False

    async def get_peer_responses(self, question_id: str) -> list[Response]:
        if self._mode == CLOUD:
            try:
                return await self.remote.query_responses(question_id)
            except RemoteStoreError as e:
                logger.warning(f"{e}; falling back to cached peer responses")
        return self.cache.peer_responses(question_id)

    async def reconcile(self) -> ReconcileResult:
        """Replay this user's queued responses to the remote store."""
        result = ReconcileResult()
        identity = self.identities.current_identity()
        if self._mode != CLOUD or identity is None:
            return result

        pending = self.cache.own_responses(identity.user_id)
        if not pending:
            return result

        logger.info(f"Syncing {len(pending)} cached responses to cloud...")
        outcomes = await asyncio.gather(
            *(self.remote.write_response(response) for response in pending),
            return_exceptions=True,
        )

        for response, outcome in zip(pending, outcomes):
            if outcome is True:
                result.successful += 1
                continue
            result.failed += 1
            result.failed_keys.append(response.key)
            if isinstance(outcome, Exception):
                logger.debug(f"Reconcile write for {response.key} failed: {outcome}")

        logger.info(f"Sync complete: {result.successful} successful, {result.failed} failed")
        self._emit(
            "sync_completed",
            {"successful": result.successful, "failed": result.failed},
        )
        return result

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(self, question_id: str, callback: ResponsesCallback) -> Unsubscribe:
        """Watch a question's peer responses. Returns an unsubscribe function."""
        if self._mode == CLOUD:
            remote_unsubscribe = self.remote.subscribe(question_id, callback)
            self._remote_subscriptions.setdefault(question_id, []).append(remote_unsubscribe)

            def unsubscribe() -> None:
                subscriptions = self._remote_subscriptions.get(question_id, [])
                if remote_unsubscribe in subscriptions:
                    subscriptions.remove(remote_unsubscribe)
                    remote_unsubscribe()

            return unsubscribe

        self._local_watchers.setdefault(question_id, []).append(callback)

        def unsubscribe() -> None:
            watchers = self._local_watchers.get(question_id, [])
            if callback in watchers:
                watchers.remove(callback)

        return unsubscribe

    def unsubscribe(self, question_id: str) -> None:
        for remote_unsubscribe in self._remote_subscriptions.pop(question_id, []):
            remote_unsubscribe()
        self._local_watchers.pop(question_id, None)

    def _teardown_subscriptions(self) -> None:
        for question_id in list(self._remote_subscriptions) + list(self._local_watchers):
            self.unsubscribe(question_id)
