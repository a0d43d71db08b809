"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures and fakes for all tests.
"""
import asyncio
import json
import sys
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from quizsync.config import Settings  # noqa: E402
from quizsync.errors import RelayConnectError, RemoteStoreError, WriteError  # noqa: E402
from quizsync.models import Identity, Response  # noqa: E402
from quizsync.remote_store import RemoteStore, StaticIdentityProvider  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (open local sockets)")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# =============================================================================
# Fakes
# =============================================================================


class FakeClock:
    """Controllable epoch-ms clock."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakePeer:
    """In-memory stand-in for a Hub connection."""

    def __init__(self, name: str = "peer", responsive: bool = True):
        self.remote_address = f"{name}:0"
        self.responsive = responsive
        self.sent: list[dict] = []
        self.pings = 0
        self.terminated = False
        self.closed = False

    def send(self, frame: str) -> None:
        self.sent.append(json.loads(frame))

    async def probe(self, on_pong) -> None:
        self.pings += 1
        if self.responsive:
            on_pong()

    def terminate(self) -> None:
        self.terminated = True

    async def close(self) -> None:
        self.closed = True

    def of_type(self, message_type: str) -> list[dict]:
        return [m for m in self.sent if m["type"] == message_type]

    def clear(self) -> None:
        self.sent.clear()


class FakeRemoteStore(RemoteStore):
    """Remote store that applies last-write-wins by timestamp."""

    def __init__(self):
        self.responses: dict[tuple[str, str], Response] = {}
        self.writes: list[Response] = []
        self.fail_keys: set[tuple[str, str]] = set()
        self.unreachable = False
        self.subscriptions: list[tuple[str, object]] = []

    async def write_response(self, response: Response) -> bool:
        self.writes.append(response)
        if self.unreachable:
            raise WriteError("store unreachable")
        if response.key in self.fail_keys:
            return False
        if response.is_newer_than(self.responses.get(response.key)):
            self.responses[response.key] = response
        return True

    async def query_responses(self, question_id: str) -> list[Response]:
        if self.unreachable:
            raise RemoteStoreError("store unreachable")
        return [r for key, r in self.responses.items() if key[0] == question_id]

    def subscribe(self, question_id, callback):
        token = (question_id, callback)
        self.subscriptions.append(token)

        def unsubscribe():
            if token in self.subscriptions:
                self.subscriptions.remove(token)

        return unsubscribe


class FakeRelayLink:
    """RelayLink double driven by a FakeLinkFactory."""

    def __init__(self, factory, cache, on_close=None, emit=None):
        self.factory = factory
        self.cache = cache
        self.on_close = on_close
        self.emit = emit
        self.address = None
        self.identity = None
        self.is_open = False
        self.closed = False
        self.sent = []
        self.active_user_count = 0

    async def connect(self, address, identity=None, timeout_ms=5000):
        self.address = address
        self.identity = identity
        self.factory.connect_calls += 1
        if self.factory.always_fail or self.factory.fail_next > 0:
            self.factory.fail_next = max(0, self.factory.fail_next - 1)
            raise RelayConnectError(address, "Connection refused")
        self.is_open = True

    async def send(self, message) -> bool:
        if not self.is_open:
            return False
        self.sent.append(message)
        return True

    async def close(self) -> None:
        self.is_open = False
        self.closed = True

    def drop(self) -> None:
        """Simulate the Hub going away."""
        self.is_open = False
        self.on_close(self)

    def receive(self, response: Response) -> None:
        self.cache.put_peer(response)
        self.emit("peer_data_updated", {"questionId": response.question_id, "response": response})


class FakeLinkFactory:
    def __init__(self):
        self.links: list[FakeRelayLink] = []
        self.connect_calls = 0
        self.fail_next = 0
        self.always_fail = False

    def __call__(self, cache, on_close=None, emit=None):
        link = FakeRelayLink(self, cache, on_close=on_close, emit=emit)
        self.links.append(link)
        return link

    @property
    def last(self) -> FakeRelayLink:
        return self.links[-1]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def settings():
    """Settings with short sweeps and no on-disk cache."""
    return Settings(
        hub_host="127.0.0.1",
        hub_port=0,
        heartbeat_interval_seconds=30,
        cleanup_interval_seconds=60,
        retention_seconds=3600,
        shutdown_grace_seconds=1,
        probe_timeout_seconds=0.5,
        connect_timeout_ms=2000,
        cache_path=None,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def identity():
    return Identity(user_id="u1", display_name="Ada")


@pytest.fixture
def identities(identity):
    return StaticIdentityProvider(identity)


@pytest.fixture
def remote_store():
    return FakeRemoteStore()


@pytest.fixture
def link_factory():
    return FakeLinkFactory()


@pytest.fixture
def sample_response():
    """Provide a sample response for testing."""
    return Response(
        question_id="Q1",
        answer="B",
        reason="The sample mean is unbiased",
        user_id="u1",
        display_name="Ada",
        timestamp=100,
    )


@pytest.fixture
def make_peer():
    return FakePeer


@pytest.fixture
def wait_until():
    """Poll an async condition until it holds or the timeout expires."""

    async def _wait_until(predicate, timeout: float = 2.0, interval: float = 0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)

    return _wait_until
