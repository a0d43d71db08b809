"""
Local response cache for a quizsync client.

Holds two maps keyed by (question_id, user_id):
- own: responses submitted on this device, replayed to the remote store
  on the next reconcile pass
- peers: responses observed from others, used for display while on a
  local relay or offline

Also carries a small key-value table (e.g. the last relay address) so
client state survives restarts. Nothing is ever pruned; the cache is
bounded by the number of questions, not by time.

Persistence location defaults to ~/.quizsync/cache.db; pass db_path=None
for a memory-only cache.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from pathlib import Path

from loguru import logger

from .models import Response

OWN = "own_responses"
PEERS = "peer_responses"

LAST_RELAY_ADDRESS = "last_relay_address"


class LocalCache:
    """
    In-memory response maps with optional SQLite write-through.

    Usage:
        cache = LocalCache(Path("cache.db"))
        cache.put_own(response)
        cache.peer_responses("Q1")
    """

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path
        self._own: dict[str, dict[str, Response]] = {}
        self._peers: dict[str, dict[str, Response]] = {}
        self._settings: dict[str, str] = {}
        self._conn: sqlite3.Connection | None = None

        if db_path is not None:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(db_path))
            self._conn.row_factory = sqlite3.Row
            self._init_schema()
            self._load()
            logger.info(f"LocalCache loaded from {db_path}")

    # =========================================================================
    # Persistence
    # =========================================================================

    def _init_schema(self) -> None:
        cursor = self._conn.cursor()
        for table in (OWN, PEERS):
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    question_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    answer TEXT NOT NULL,
                    reason TEXT NOT NULL DEFAULT '',
                    display_name TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    PRIMARY KEY (question_id, user_id)
                )
            """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT
            )
        """)
        self._conn.commit()

    def _load(self) -> None:
        for table, target in ((OWN, self._own), (PEERS, self._peers)):
            for row in self._conn.execute(f"SELECT * FROM {table}"):
                response = Response(
                    question_id=row["question_id"],
                    user_id=row["user_id"],
                    answer=row["answer"],
                    reason=row["reason"],
                    display_name=row["display_name"],
                    timestamp=row["timestamp"],
                )
                target.setdefault(response.question_id, {})[response.user_id] = response

        for row in self._conn.execute("SELECT key, value FROM settings"):
            self._settings[row["key"]] = row["value"]

    def _persist(self, table: str, responses: Iterable[Response]) -> None:
        if self._conn is None:
            return
        self._conn.executemany(
            f"""
            INSERT OR REPLACE INTO {table}
                (question_id, user_id, answer, reason, display_name, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (r.question_id, r.user_id, r.answer, r.reason, r.display_name, r.timestamp)
                for r in responses
            ],
        )
        self._conn.commit()

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # =========================================================================
    # Own responses
    # =========================================================================

    def put_own(self, response: Response) -> None:
        """Record (or replace) one of this device's submissions."""
        self._own.setdefault(response.question_id, {})[response.user_id] = response
        self._persist(OWN, [response])

    def get_own(self, question_id: str, user_id: str) -> Response | None:
        return self._own.get(question_id, {}).get(user_id)

    def own_responses(self, user_id: str | None = None) -> list[Response]:
        """All queued own responses, optionally only those of one user."""
        return [
            response
            for by_user in self._own.values()
            for response in by_user.values()
            if user_id is None or response.user_id == user_id
        ]

    # =========================================================================
    # Peer responses
    # =========================================================================

    def put_peer(self, response: Response) -> None:
        """Store a peer response, overwriting whatever was there for its key."""
        self._peers.setdefault(response.question_id, {})[response.user_id] = response
        self._persist(PEERS, [response])

    def merge_peers(self, responses: Iterable[Response]) -> int:
        """Fold a batch of peer responses in arrival order. Returns the count."""
        batch = list(responses)
        for response in batch:
            self._peers.setdefault(response.question_id, {})[response.user_id] = response
        self._persist(PEERS, batch)
        return len(batch)

    def peer_responses(self, question_id: str) -> list[Response]:
        return list(self._peers.get(question_id, {}).values())

    def peer_question_ids(self) -> list[str]:
        return list(self._peers)

    # =========================================================================
    # Key-value slot
    # =========================================================================

    def get_setting(self, key: str) -> str | None:
        return self._settings.get(key)

    def set_setting(self, key: str, value: str | None) -> None:
        if value is None:
            self._settings.pop(key, None)
            if self._conn is not None:
                self._conn.execute("DELETE FROM settings WHERE key = ?", (key,))
                self._conn.commit()
            return

        self._settings[key] = value
        if self._conn is not None:
            self._conn.execute(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                (key, value),
            )
            self._conn.commit()

    def __len__(self) -> int:
        return sum(len(by_user) for by_user in self._own.values()) + sum(
            len(by_user) for by_user in self._peers.values()
        )
