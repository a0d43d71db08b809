"""
quizsync - offline-first classroom response synchronization.

A client records quiz answers through a ConnectionModeController that
writes to the remote store when online, to a classroom Hub over the LAN
when a relay is available, and to its local cache otherwise. Queued
answers are reconciled with the remote store once connectivity returns.
"""

from .controller import ConnectionModeController, ReconcileResult
from .models import ConnectionMode, ConnectionState, Identity, Response

__version__ = "1.0.0"

__all__ = [
    "ConnectionMode",
    "ConnectionModeController",
    "ConnectionState",
    "Identity",
    "ReconcileResult",
    "Response",
]
