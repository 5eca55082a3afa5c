"""Durable storage backends for room logs and identities.

Repositories are synchronous; the room store calls them through
``asyncio.to_thread`` so storage I/O never blocks the event loop.

Database Schema (DuckDB backend):
    messages table:
        - room_id, sequence: composite primary key
        - message_id: globally unique message id
        - author_id: identity id of the sender
        - body: JSON-encoded MessageBody
        - created_at: Unix timestamp (seconds)
    identities table:
        - identity_id: primary key
        - display_name, profile_ref
        - last_seen_at: Unix timestamp (seconds)

Thread Safety:
    A DuckDB connection must not be used from two threads at once, so every
    call takes the repository lock.
"""
import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import duckdb

from .schemas import Identity, Message, MessageBody

logger = logging.getLogger(__name__)


class MessageRepository(ABC):
    """Storage interface for room logs and identity profiles."""

    @abstractmethod
    def insert_message(self, message: Message) -> None:
        """Durably store a message. Fails if (roomId, sequence) exists."""

    @abstractmethod
    def bounds(self, room_id: str) -> Tuple[int, int]:
        """Return (oldest, newest) stored sequence, or (0, 0) if empty."""

    @abstractmethod
    def read_range(
        self, room_id: str, after: int, through: Optional[int] = None
    ) -> List[Message]:
        """Messages with ``after < sequence <= through``, ascending."""

    @abstractmethod
    def read_last(self, room_id: str, limit: int) -> List[Message]:
        """The newest ``limit`` messages, ascending."""

    @abstractmethod
    def delete_before(self, room_id: str, sequence: int) -> int:
        """Delete messages with a sequence below ``sequence``; return count."""

    @abstractmethod
    def room_ids(self) -> List[str]:
        """All rooms that have at least one stored message."""

    @abstractmethod
    def upsert_identity(self, identity: Identity, last_seen_at: float) -> None:
        """Insert or update an identity profile."""

    @abstractmethod
    def touch_identity(self, identity_id: str, last_seen_at: float) -> None:
        """Update ``last_seen_at`` for a known identity."""

    @abstractmethod
    def get_identity(self, identity_id: str) -> Optional[Tuple[Identity, float]]:
        """Return (identity, last_seen_at) or None."""

    def close(self) -> None:
        """Release resources held by the backend."""


class InMemoryMessageRepository(MessageRepository):
    """Process-local repository used for tests and ephemeral deployments."""

    def __init__(self) -> None:
        self._messages: Dict[str, Dict[int, Message]] = {}
        self._identities: Dict[str, Tuple[Identity, float]] = {}
        self._lock = threading.Lock()

    def insert_message(self, message: Message) -> None:
        with self._lock:
            log = self._messages.setdefault(message.roomId, {})
            if message.sequence in log:
                raise ValueError(
                    f"Duplicate key (room_id={message.roomId}, sequence={message.sequence})"
                )
            log[message.sequence] = message

    def bounds(self, room_id: str) -> Tuple[int, int]:
        with self._lock:
            log = self._messages.get(room_id)
            if not log:
                return (0, 0)
            return (min(log), max(log))

    def read_range(
        self, room_id: str, after: int, through: Optional[int] = None
    ) -> List[Message]:
        with self._lock:
            log = self._messages.get(room_id, {})
            return [
                log[seq] for seq in sorted(log)
                if seq > after and (through is None or seq <= through)
            ]

    def read_last(self, room_id: str, limit: int) -> List[Message]:
        with self._lock:
            log = self._messages.get(room_id, {})
            return [log[seq] for seq in sorted(log)[-limit:]]

    def delete_before(self, room_id: str, sequence: int) -> int:
        with self._lock:
            log = self._messages.get(room_id, {})
            doomed = [seq for seq in log if seq < sequence]
            for seq in doomed:
                del log[seq]
            return len(doomed)

    def room_ids(self) -> List[str]:
        with self._lock:
            return [room_id for room_id, log in self._messages.items() if log]

    def upsert_identity(self, identity: Identity, last_seen_at: float) -> None:
        with self._lock:
            self._identities[identity.id] = (identity.model_copy(), last_seen_at)

    def touch_identity(self, identity_id: str, last_seen_at: float) -> None:
        with self._lock:
            if identity_id in self._identities:
                identity, _ = self._identities[identity_id]
                self._identities[identity_id] = (identity, last_seen_at)

    def get_identity(self, identity_id: str) -> Optional[Tuple[Identity, float]]:
        with self._lock:
            return self._identities.get(identity_id)


class DuckDBMessageRepository(MessageRepository):
    """DuckDB-backed repository.

    Attributes:
        _db_path: Path to the DuckDB database file (":memory:" for tests).
    """

    _db_path: str = "roomcast.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.Lock()
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create tables if they don't exist (idempotent)."""
        with self._lock:
            conn = self._get_connection()
            conn.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    room_id VARCHAR NOT NULL,
                    sequence BIGINT NOT NULL,
                    message_id VARCHAR NOT NULL,
                    author_id VARCHAR NOT NULL,
                    body VARCHAR NOT NULL,
                    created_at DOUBLE NOT NULL,
                    PRIMARY KEY (room_id, sequence)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS identities (
                    identity_id VARCHAR PRIMARY KEY,
                    display_name VARCHAR NOT NULL,
                    profile_ref VARCHAR,
                    last_seen_at DOUBLE NOT NULL
                )
            """)
        logger.info(f"[Storage] DuckDB repository ready at {self._db_path}")

    @staticmethod
    def _row_to_message(row: tuple) -> Message:
        return Message(
            roomId=row[0],
            sequence=row[1],
            messageId=row[2],
            authorId=row[3],
            body=MessageBody.model_validate_json(row[4]),
            createdAt=row[5],
        )

    def insert_message(self, message: Message) -> None:
        with self._lock:
            self._get_connection().execute(
                """
                INSERT INTO messages (room_id, sequence, message_id, author_id, body, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    message.roomId,
                    message.sequence,
                    message.messageId,
                    message.authorId,
                    message.body.model_dump_json(),
                    message.createdAt,
                ],
            )

    def bounds(self, room_id: str) -> Tuple[int, int]:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT min(sequence), max(sequence) FROM messages WHERE room_id = ?",
                [room_id],
            ).fetchone()
        if not row or row[0] is None:
            return (0, 0)
        return (int(row[0]), int(row[1]))

    def read_range(
        self, room_id: str, after: int, through: Optional[int] = None
    ) -> List[Message]:
        query = """
            SELECT room_id, sequence, message_id, author_id, body, created_at
            FROM messages
            WHERE room_id = ? AND sequence > ?
        """
        params: list = [room_id, after]
        if through is not None:
            query += " AND sequence <= ?"
            params.append(through)
        query += " ORDER BY sequence ASC"
        with self._lock:
            rows = self._get_connection().execute(query, params).fetchall()
        return [self._row_to_message(row) for row in rows]

    def read_last(self, room_id: str, limit: int) -> List[Message]:
        with self._lock:
            rows = self._get_connection().execute(
                """
                SELECT room_id, sequence, message_id, author_id, body, created_at
                FROM messages
                WHERE room_id = ?
                ORDER BY sequence DESC
                LIMIT ?
                """,
                [room_id, limit],
            ).fetchall()
        return [self._row_to_message(row) for row in reversed(rows)]

    def delete_before(self, room_id: str, sequence: int) -> int:
        with self._lock:
            conn = self._get_connection()
            count = conn.execute(
                "SELECT count(*) FROM messages WHERE room_id = ? AND sequence < ?",
                [room_id, sequence],
            ).fetchone()[0]
            if count:
                conn.execute(
                    "DELETE FROM messages WHERE room_id = ? AND sequence < ?",
                    [room_id, sequence],
                )
        return int(count)

    def room_ids(self) -> List[str]:
        with self._lock:
            rows = self._get_connection().execute(
                "SELECT DISTINCT room_id FROM messages ORDER BY room_id"
            ).fetchall()
        return [row[0] for row in rows]

    def upsert_identity(self, identity: Identity, last_seen_at: float) -> None:
        with self._lock:
            self._get_connection().execute(
                """
                INSERT INTO identities (identity_id, display_name, profile_ref, last_seen_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (identity_id) DO UPDATE SET
                    display_name = excluded.display_name,
                    profile_ref = excluded.profile_ref,
                    last_seen_at = excluded.last_seen_at
                """,
                [identity.id, identity.displayName, identity.profileRef, last_seen_at],
            )

    def touch_identity(self, identity_id: str, last_seen_at: float) -> None:
        with self._lock:
            self._get_connection().execute(
                "UPDATE identities SET last_seen_at = ? WHERE identity_id = ?",
                [last_seen_at, identity_id],
            )

    def get_identity(self, identity_id: str) -> Optional[Tuple[Identity, float]]:
        with self._lock:
            row = self._get_connection().execute(
                """
                SELECT identity_id, display_name, profile_ref, last_seen_at
                FROM identities WHERE identity_id = ?
                """,
                [identity_id],
            ).fetchone()
        if not row:
            return None
        identity = Identity(id=row[0], displayName=row[1], profileRef=row[2])
        return (identity, float(row[3]))

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
