"""
Remote authoritative store and identity provider.

The controller only depends on the two abstract interfaces below. The
store's write path is the single place where last-write-wins by timestamp
is enforced; clients just replay what they have.

HttpRemoteStore is a thin httpx client for a REST deployment of the store:

    POST /api/v1/responses                  write one response
    GET  /api/v1/responses?questionId=Q1    list responses for a question

Usage:
    async with HttpRemoteStore(settings.remote_base_url) as store:
        await store.write_response(response)
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable

import httpx
from loguru import logger

from .errors import RemoteStoreError, WriteError
from .models import Identity, Response

ResponsesCallback = Callable[[list[Response]], None]
Unsubscribe = Callable[[], None]


class RemoteStore(ABC):
    """Interface consumed by the controller."""

    @abstractmethod
    async def write_response(self, response: Response) -> bool:
        """Write one response. False (or WriteError) means it stays queued."""

    @abstractmethod
    async def query_responses(self, question_id: str) -> list[Response]:
        """All responses for a question. Raises RemoteStoreError on failure."""

    @abstractmethod
    def subscribe(self, question_id: str, callback: ResponsesCallback) -> Unsubscribe:
        """Call `callback` with fresh responses whenever the question changes."""


class IdentityProvider(ABC):
    """Yields the signed-in user, or None when signed out."""

    @abstractmethod
    def current_identity(self) -> Identity | None: ...

    def is_signed_in(self) -> bool:
        return self.current_identity() is not None


class StaticIdentityProvider(IdentityProvider):
    """Fixed identity; sign_in/sign_out flip it for tests and kiosks."""

    def __init__(self, identity: Identity | None = None):
        self._identity = identity

    def current_identity(self) -> Identity | None:
        return self._identity

    def sign_in(self, identity: Identity) -> None:
        self._identity = identity

    def sign_out(self) -> None:
        self._identity = None


class HttpRemoteStore(RemoteStore):
    """REST client for the remote response store."""

    responses_endpoint = "/api/v1/responses"

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 10.0,
        poll_interval_seconds: float = 5.0,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["X-API-Key"] = api_key

        self.poll_interval_seconds = poll_interval_seconds
        self.client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout_seconds,
        )
        self._pollers: set[asyncio.Task] = set()

    async def __aenter__(self) -> HttpRemoteStore:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        for task in list(self._pollers):
            task.cancel()
        await self.client.aclose()

    # =========================================================================
    # Writes
    # =========================================================================

    async def write_response(self, response: Response) -> bool:
        """
        Write a response; the server keeps it only if its timestamp wins.

        Raises:
            WriteError: when the store is unreachable
        """
        try:
            result = await self.client.post(
                self.responses_endpoint, json=response.to_wire()
            )
        except httpx.RequestError as e:
            logger.error(f"Connection error writing response {response.key}: {e}")
            raise WriteError(str(e)) from e

        if result.status_code in (200, 201):
            logger.debug(f"Saved response for {response.question_id}")
            return True

        logger.warning(
            f"Remote store rejected response {response.key}: {result.status_code}"
        )
        return False

    # =========================================================================
    # Reads
    # =========================================================================

    async def query_responses(self, question_id: str) -> list[Response]:
        try:
            result = await self.client.get(
                self.responses_endpoint, params={"questionId": question_id}
            )
            result.raise_for_status()
        except httpx.HTTPError as e:
            raise RemoteStoreError(
                f"Failed to fetch responses for {question_id}: {e}"
            ) from e

        return [Response.model_validate(item) for item in result.json().get("responses", [])]

    def subscribe(self, question_id: str, callback: ResponsesCallback) -> Unsubscribe:
        """Poll the question in the background. Must be called inside a running loop."""
        task = asyncio.get_running_loop().create_task(self._poll(question_id, callback))
        self._pollers.add(task)
        task.add_done_callback(self._pollers.discard)
        return task.cancel

    async def _poll(self, question_id: str, callback: ResponsesCallback) -> None:
        last: list[Response] | None = None
        while True:
            try:
                responses = await self.query_responses(question_id)
            except RemoteStoreError as e:
                logger.debug(f"Subscription poll failed: {e}")
            else:
                if responses != last:
                    last = responses
                    callback(responses)
            await asyncio.sleep(self.poll_interval_seconds)
