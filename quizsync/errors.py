"""Exception hierarchy for quizsync."""

from __future__ import annotations


class QuizSyncError(Exception):
    """Base class for every quizsync error."""


class TransportError(QuizSyncError):
    """A socket or transport-level failure."""


class RelayConnectError(TransportError):
    """Opening a relay link failed or timed out."""

    def __init__(self, address: str, reason: str):
        super().__init__(f"Could not connect to relay at {address}: {reason}")
        self.address = address
        self.reason = reason


class ProtocolError(QuizSyncError):
    """A wire message could not be decoded or has an unknown type."""


class RemoteStoreError(QuizSyncError):
    """The remote authoritative store rejected or failed a call."""


class WriteError(RemoteStoreError):
    """A remote write did not go through; the response stays queued."""


class InvalidTransitionError(QuizSyncError):
    """A connection mode transition not allowed from the current state."""
