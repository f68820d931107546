"""SQLite persistence for turns, summary boards, summaries, chunks and dispatches."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator

import numpy as np

from .embeddings import IndexScope
from .models import (
    ChunkType,
    ConversationSummary,
    DispatchEvent,
    SummaryBoard,
    TriggerState,
    Turn,
    WorkingMemoryChunk,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS turns (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id TEXT NOT NULL,
    agent_id        TEXT NOT NULL,
    owner_id        TEXT NOT NULL,
    seq             INTEGER NOT NULL,
    message_id      TEXT,
    role            TEXT NOT NULL,
    content         TEXT NOT NULL,
    created_at      TEXT NOT NULL,
    UNIQUE(conversation_id, seq),
    UNIQUE(conversation_id, message_id)
);

CREATE TABLE IF NOT EXISTS trigger_state (
    conversation_id      TEXT PRIMARY KEY,
    agent_id             TEXT NOT NULL,
    owner_id             TEXT NOT NULL,
    turns_since_dispatch INTEGER NOT NULL DEFAULT 0,
    update_frequency     INTEGER NOT NULL DEFAULT 5
);

CREATE TABLE IF NOT EXISTS summary_boards (
    conversation_id      TEXT PRIMARY KEY,
    agent_id             TEXT NOT NULL,
    owner_id             TEXT NOT NULL,
    current_summary      TEXT NOT NULL DEFAULT '',
    key_facts            TEXT NOT NULL DEFAULT '[]',
    action_items         TEXT NOT NULL DEFAULT '[]',
    pending_questions    TEXT NOT NULL DEFAULT '[]',
    entities             TEXT NOT NULL DEFAULT '{}',
    topics               TEXT NOT NULL DEFAULT '[]',
    context_notes        TEXT NOT NULL DEFAULT '',
    message_count        INTEGER NOT NULL DEFAULT 0,
    update_frequency     INTEGER NOT NULL DEFAULT 5,
    last_updated         TEXT,
    version              INTEGER NOT NULL DEFAULT 0,
    lease_token          TEXT,
    in_progress_since    TEXT,
    cycles_since_archive INTEGER NOT NULL DEFAULT 0,
    next_chunk_index     INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS conversation_summaries (
    id                  TEXT PRIMARY KEY,
    conversation_id     TEXT NOT NULL,
    agent_id            TEXT NOT NULL,
    owner_id            TEXT NOT NULL,
    summary_text        TEXT NOT NULL,
    key_facts           TEXT NOT NULL DEFAULT '[]',
    entities            TEXT NOT NULL DEFAULT '{}',
    topics              TEXT NOT NULL DEFAULT '[]',
    message_count       INTEGER NOT NULL DEFAULT 0,
    message_range_start INTEGER NOT NULL DEFAULT 0,
    message_range_end   INTEGER NOT NULL DEFAULT 0,
    is_full             INTEGER NOT NULL DEFAULT 0,
    conversation_start  TEXT,
    conversation_end    TEXT,
    embedding           BLOB,
    created_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS working_memory_chunks (
    id                 TEXT PRIMARY KEY,
    conversation_id    TEXT NOT NULL,
    agent_id           TEXT NOT NULL,
    owner_id           TEXT NOT NULL,
    chunk_text         TEXT NOT NULL,
    chunk_index        INTEGER NOT NULL,
    source_message_ids TEXT NOT NULL DEFAULT '[]',
    importance_score   REAL NOT NULL DEFAULT 0.5,
    chunk_type         TEXT NOT NULL DEFAULT 'dialogue',
    embedding          BLOB,
    created_at         TEXT NOT NULL,
    expires_at         TEXT,
    UNIQUE(conversation_id, chunk_index)
);

CREATE TABLE IF NOT EXISTS dispatch_queue (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id TEXT NOT NULL,
    agent_id        TEXT NOT NULL,
    owner_id        TEXT NOT NULL,
    full            INTEGER NOT NULL DEFAULT 0,
    status          TEXT NOT NULL DEFAULT 'pending',
    attempts        INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL,
    claimed_at      TEXT
);

-- Append-only feed of embedded rows, read by processes keeping a local index
CREATE TABLE IF NOT EXISTS index_feed (
    seq     INTEGER PRIMARY KEY AUTOINCREMENT,
    kind    TEXT NOT NULL,
    item_id TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_turns_conversation_seq
    ON turns(conversation_id, seq);
CREATE INDEX IF NOT EXISTS idx_summaries_conversation_created
    ON conversation_summaries(conversation_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_summaries_agent
    ON conversation_summaries(agent_id);
CREATE INDEX IF NOT EXISTS idx_chunks_agent_expires
    ON working_memory_chunks(agent_id, expires_at);
CREATE INDEX IF NOT EXISTS idx_chunks_expires
    ON working_memory_chunks(expires_at);
CREATE INDEX IF NOT EXISTS idx_dispatch_status
    ON dispatch_queue(status, id);
CREATE INDEX IF NOT EXISTS idx_index_feed_item
    ON index_feed(kind, item_id);
"""


def to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime as fixed-width UTC ISO text (sortable as a string)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _encode_vector(vector: np.ndarray | None) -> bytes | None:
    if vector is None:
        return None
    return np.asarray(vector, dtype=np.float32).tobytes()


def _decode_vector(blob: bytes | None) -> np.ndarray | None:
    if blob is None:
        return None
    return np.frombuffer(blob, dtype=np.float32).copy()


class MemoryStore:
    """Persistent storage for the tiered memory system using SQLite.

    Methods commit on their own unless called inside ``transaction()``,
    in which case the enclosing block commits or rolls back as a unit.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the store with a database path.

        Args:
            db_path: Path to the SQLite database file.
        """
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._tx_depth = 0

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the database connection."""
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.db_path, timeout=5.0)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def init_db(self) -> None:
        """Create tables and indexes if they don't exist."""
        conn = self._get_connection()
        conn.executescript(SCHEMA)
        conn.commit()

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Group several store calls into one atomic commit."""
        conn = self._get_connection()
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield conn
            finally:
                self._tx_depth -= 1
            return

        self._tx_depth = 1
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            self._tx_depth = 0

    def _commit(self) -> None:
        if not self._tx_depth:
            self._get_connection().commit()

    # ------------------------------------------------------------------
    # Turns

    def add_turn(self, turn: Turn) -> Turn | None:
        """Append a turn to its conversation's log.

        Returns:
            The stored turn with its seq, or None if a turn with the same
            message_id was already stored.
        """
        conn = self._get_connection()
        if turn.message_id is not None:
            existing = conn.execute(
                "SELECT 1 FROM turns WHERE conversation_id = ? AND message_id = ?",
                (turn.conversation_id, turn.message_id),
            ).fetchone()
            if existing:
                return None

        row = conn.execute(
            "SELECT COALESCE(MAX(seq), 0) AS last_seq FROM turns WHERE conversation_id = ?",
            (turn.conversation_id,),
        ).fetchone()
        seq = row["last_seq"] + 1

        conn.execute(
            """
            INSERT INTO turns
                (conversation_id, agent_id, owner_id, seq, message_id, role, content, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                turn.conversation_id,
                turn.agent_id,
                turn.owner_id,
                seq,
                turn.message_id,
                turn.role,
                turn.content,
                to_iso(turn.created_at),
            ),
        )
        self._commit()
        return Turn(
            conversation_id=turn.conversation_id,
            agent_id=turn.agent_id,
            owner_id=turn.owner_id,
            role=turn.role,
            content=turn.content,
            seq=seq,
            message_id=turn.message_id,
            created_at=turn.created_at,
        )

    def get_turns_after(
        self, conversation_id: str, after_seq: int, limit: int | None = None
    ) -> list[Turn]:
        """Get turns with seq > after_seq in chronological order."""
        conn = self._get_connection()
        sql = "SELECT * FROM turns WHERE conversation_id = ? AND seq > ? ORDER BY seq"
        params: tuple[Any, ...] = (conversation_id, after_seq)
        if limit is not None:
            sql += " LIMIT ?"
            params += (limit,)
        return [self._row_to_turn(row) for row in conn.execute(sql, params).fetchall()]

    def get_all_turns(self, conversation_id: str) -> list[Turn]:
        return self.get_turns_after(conversation_id, 0)

    def get_recent_turns(self, conversation_id: str, limit: int) -> list[Turn]:
        """Get the most recent turns, returned in chronological order."""
        if limit <= 0:
            return []
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM turns WHERE conversation_id = ? ORDER BY seq DESC LIMIT ?",
            (conversation_id, limit),
        ).fetchall()
        return [self._row_to_turn(row) for row in reversed(rows)]

    def get_last_seq(self, conversation_id: str) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COALESCE(MAX(seq), 0) AS last_seq FROM turns WHERE conversation_id = ?",
            (conversation_id,),
        ).fetchone()
        return row["last_seq"]

    # ------------------------------------------------------------------
    # Trigger state

    def get_trigger_state(self, conversation_id: str) -> TriggerState | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM trigger_state WHERE conversation_id = ?", (conversation_id,)
        ).fetchone()
        if row is None:
            return None
        return TriggerState(
            conversation_id=row["conversation_id"],
            agent_id=row["agent_id"],
            owner_id=row["owner_id"],
            turns_since_dispatch=row["turns_since_dispatch"],
            update_frequency=row["update_frequency"],
        )

    def increment_trigger_counter(
        self,
        conversation_id: str,
        agent_id: str,
        owner_id: str,
        default_frequency: int,
    ) -> TriggerState:
        """Count one more turn since the last dispatch and return the new state."""
        conn = self._get_connection()
        row = conn.execute(
            """
            INSERT INTO trigger_state
                (conversation_id, agent_id, owner_id, turns_since_dispatch, update_frequency)
            VALUES (?, ?, ?, 1, ?)
            ON CONFLICT(conversation_id) DO UPDATE SET
                turns_since_dispatch = turns_since_dispatch + 1,
                agent_id = CASE WHEN agent_id = '' THEN excluded.agent_id ELSE agent_id END,
                owner_id = CASE WHEN owner_id = '' THEN excluded.owner_id ELSE owner_id END
            RETURNING *
            """,
            (conversation_id, agent_id, owner_id, default_frequency),
        ).fetchone()
        state = TriggerState(
            conversation_id=row["conversation_id"],
            agent_id=row["agent_id"],
            owner_id=row["owner_id"],
            turns_since_dispatch=row["turns_since_dispatch"],
            update_frequency=row["update_frequency"],
        )
        self._commit()
        return state

    def reset_trigger_counter(self, conversation_id: str) -> None:
        conn = self._get_connection()
        conn.execute(
            "UPDATE trigger_state SET turns_since_dispatch = 0 WHERE conversation_id = ?",
            (conversation_id,),
        )
        self._commit()

    def set_update_frequency(
        self,
        conversation_id: str,
        frequency: int,
        agent_id: str = "",
        owner_id: str = "",
    ) -> None:
        """Store the per-conversation frequency and mirror it on the board."""
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO trigger_state (conversation_id, agent_id, owner_id, update_frequency)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(conversation_id) DO UPDATE SET
                update_frequency = excluded.update_frequency
            """,
            (conversation_id, agent_id, owner_id, frequency),
        )
        conn.execute(
            "UPDATE summary_boards SET update_frequency = ? WHERE conversation_id = ?",
            (frequency, conversation_id),
        )
        self._commit()

    # ------------------------------------------------------------------
    # Summary boards

    def get_board(self, conversation_id: str) -> SummaryBoard | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM summary_boards WHERE conversation_id = ?", (conversation_id,)
        ).fetchone()
        return self._row_to_board(row) if row else None

    def acquire_lease(
        self,
        conversation_id: str,
        agent_id: str,
        owner_id: str,
        token: str,
        now: datetime,
        timeout: timedelta,
        update_frequency: int = 5,
    ) -> bool:
        """Take the per-conversation summarization lease.

        The board is created here if it does not exist yet. A lease held by
        someone else is only taken over once it is older than ``timeout``.

        Returns:
            True if the lease now belongs to ``token``.
        """
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO summary_boards (conversation_id, agent_id, owner_id, update_frequency)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(conversation_id) DO NOTHING
            """,
            (conversation_id, agent_id, owner_id, update_frequency),
        )
        cursor = conn.execute(
            """
            UPDATE summary_boards
            SET lease_token = ?, in_progress_since = ?, version = version + 1
            WHERE conversation_id = ?
              AND (lease_token IS NULL OR in_progress_since IS NULL OR in_progress_since < ?)
            """,
            (token, to_iso(now), conversation_id, to_iso(now - timeout)),
        )
        self._commit()
        return cursor.rowcount == 1

    def release_lease(self, conversation_id: str, token: str) -> bool:
        """Give the lease back. Returns False if it was no longer ours."""
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE summary_boards
            SET lease_token = NULL, in_progress_since = NULL
            WHERE conversation_id = ? AND lease_token = ?
            """,
            (conversation_id, token),
        )
        self._commit()
        return cursor.rowcount == 1

    def save_board(self, board: SummaryBoard, token: str, now: datetime) -> bool:
        """Write board contents if ``token`` still holds the lease.

        Returns:
            False on a write conflict (the lease was reclaimed by someone else).
        """
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE summary_boards SET
                current_summary = ?,
                key_facts = ?,
                action_items = ?,
                pending_questions = ?,
                entities = ?,
                topics = ?,
                context_notes = ?,
                message_count = ?,
                last_updated = ?,
                cycles_since_archive = ?,
                next_chunk_index = ?,
                version = version + 1
            WHERE conversation_id = ? AND lease_token = ?
            """,
            (
                board.current_summary,
                json.dumps(board.key_facts),
                json.dumps(board.action_items),
                json.dumps(board.pending_questions),
                json.dumps(board.entities),
                json.dumps(board.topics),
                board.context_notes,
                board.message_count,
                to_iso(now),
                board.cycles_since_archive,
                board.next_chunk_index,
                board.conversation_id,
                token,
            ),
        )
        self._commit()
        return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Conversation summaries

    def insert_summary(self, summary: ConversationSummary) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO conversation_summaries (
                id, conversation_id, agent_id, owner_id, summary_text, key_facts,
                entities, topics, message_count, message_range_start, message_range_end,
                is_full, conversation_start, conversation_end, embedding, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                summary.id,
                summary.conversation_id,
                summary.agent_id,
                summary.owner_id,
                summary.summary_text,
                json.dumps(summary.key_facts),
                json.dumps(summary.entities),
                json.dumps(summary.topics),
                summary.message_count,
                summary.message_range_start,
                summary.message_range_end,
                int(summary.is_full),
                to_iso(summary.conversation_start),
                to_iso(summary.conversation_end),
                _encode_vector(summary.embedding),
                to_iso(summary.created_at),
            ),
        )
        if summary.embedding is not None:
            self._append_feed(conn, "summary", [summary.id])
        self._commit()

    def get_summary(self, summary_id: str) -> ConversationSummary | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM conversation_summaries WHERE id = ?", (summary_id,)
        ).fetchone()
        return self._row_to_summary(row) if row else None

    def get_summaries(self, summary_ids: list[str]) -> dict[str, ConversationSummary]:
        if not summary_ids:
            return {}
        conn = self._get_connection()
        placeholders = ",".join("?" for _ in summary_ids)
        rows = conn.execute(
            f"SELECT * FROM conversation_summaries WHERE id IN ({placeholders})",
            tuple(summary_ids),
        ).fetchall()
        return {row["id"]: self._row_to_summary(row) for row in rows}

    def latest_summary(self, conversation_id: str) -> ConversationSummary | None:
        """Most recent archived summary of a conversation."""
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT * FROM conversation_summaries
            WHERE conversation_id = ?
            ORDER BY created_at DESC, message_range_end DESC
            LIMIT 1
            """,
            (conversation_id,),
        ).fetchone()
        return self._row_to_summary(row) if row else None

    def list_summaries(self, conversation_id: str) -> list[ConversationSummary]:
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM conversation_summaries
            WHERE conversation_id = ?
            ORDER BY created_at, message_range_end
            """,
            (conversation_id,),
        ).fetchall()
        return [self._row_to_summary(row) for row in rows]

    def iter_summary_vectors(
        self, after_seq: int = 0, upto_seq: int | None = None
    ) -> Iterator[tuple[str, np.ndarray, IndexScope]]:
        """Yield (id, embedding, scope) for archived summaries.

        Args:
            after_seq: Only rows fed after this index feed position.
            upto_seq: Only rows fed up to this position, no bound if None.
        """
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT s.id, s.conversation_id, s.agent_id, s.owner_id, s.embedding
            FROM index_feed AS f
            JOIN conversation_summaries AS s ON s.id = f.item_id
            WHERE f.kind = 'summary' AND f.seq > ? AND (? IS NULL OR f.seq <= ?)
              AND s.embedding IS NOT NULL
            ORDER BY f.seq
            """,
            (after_seq, upto_seq, upto_seq),
        ).fetchall()
        for row in rows:
            yield (
                row["id"],
                _decode_vector(row["embedding"]),
                IndexScope(
                    kind="summary",
                    agent_id=row["agent_id"],
                    conversation_id=row["conversation_id"],
                    owner_id=row["owner_id"],
                ),
            )

    # ------------------------------------------------------------------
    # Working memory chunks

    def insert_chunks(self, chunks: list[WorkingMemoryChunk]) -> int:
        conn = self._get_connection()
        for chunk in chunks:
            conn.execute(
                """
                INSERT INTO working_memory_chunks (
                    id, conversation_id, agent_id, owner_id, chunk_text, chunk_index,
                    source_message_ids, importance_score, chunk_type, embedding,
                    created_at, expires_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    chunk.id,
                    chunk.conversation_id,
                    chunk.agent_id,
                    chunk.owner_id,
                    chunk.chunk_text,
                    chunk.chunk_index,
                    json.dumps(chunk.source_message_ids),
                    chunk.importance_score,
                    chunk.chunk_type.value,
                    _encode_vector(chunk.embedding),
                    to_iso(chunk.created_at),
                    to_iso(chunk.expires_at),
                ),
            )
        self._append_feed(
            conn, "chunk", [chunk.id for chunk in chunks if chunk.embedding is not None]
        )
        self._commit()
        return len(chunks)

    def get_chunks(self, chunk_ids: list[str]) -> dict[str, WorkingMemoryChunk]:
        if not chunk_ids:
            return {}
        conn = self._get_connection()
        placeholders = ",".join("?" for _ in chunk_ids)
        rows = conn.execute(
            f"SELECT * FROM working_memory_chunks WHERE id IN ({placeholders})",
            tuple(chunk_ids),
        ).fetchall()
        return {row["id"]: self._row_to_chunk(row) for row in rows}

    def get_recent_chunks(
        self, conversation_id: str, agent_id: str, now: datetime, limit: int = 5
    ) -> list[WorkingMemoryChunk]:
        """Unexpired chunks of a conversation, newest chunk_index first."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM working_memory_chunks
            WHERE conversation_id = ? AND agent_id = ?
              AND (expires_at IS NULL OR expires_at > ?)
            ORDER BY chunk_index DESC
            LIMIT ?
            """,
            (conversation_id, agent_id, to_iso(now), limit),
        ).fetchall()
        return [self._row_to_chunk(row) for row in rows]

    def delete_chunks(self, chunk_ids: list[str]) -> int:
        if not chunk_ids:
            return 0
        conn = self._get_connection()
        placeholders = ",".join("?" for _ in chunk_ids)
        cursor = conn.execute(
            f"DELETE FROM working_memory_chunks WHERE id IN ({placeholders})",
            tuple(chunk_ids),
        )
        deleted = cursor.rowcount
        self._drop_feed(conn, "chunk", chunk_ids)
        self._commit()
        return deleted

    def delete_expired_chunks(self, now: datetime) -> list[str]:
        """Delete chunks past expires_at. Returns the deleted ids."""
        conn = self._get_connection()
        rows = conn.execute(
            "DELETE FROM working_memory_chunks WHERE expires_at <= ? RETURNING id",
            (to_iso(now),),
        ).fetchall()
        deleted = [row["id"] for row in rows]
        self._drop_feed(conn, "chunk", deleted)
        self._commit()
        return deleted

    def iter_chunk_vectors(
        self, now: datetime, after_seq: int = 0, upto_seq: int | None = None
    ) -> Iterator[tuple[str, np.ndarray, IndexScope]]:
        """Yield (id, embedding, scope) for unexpired chunks.

        ``after_seq`` and ``upto_seq`` bound the index feed positions as in
        ``iter_summary_vectors``.
        """
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT c.id, c.conversation_id, c.agent_id, c.owner_id, c.embedding
            FROM index_feed AS f
            JOIN working_memory_chunks AS c ON c.id = f.item_id
            WHERE f.kind = 'chunk' AND f.seq > ? AND (? IS NULL OR f.seq <= ?)
              AND c.embedding IS NOT NULL
              AND (c.expires_at IS NULL OR c.expires_at > ?)
            ORDER BY f.seq
            """,
            (after_seq, upto_seq, upto_seq, to_iso(now)),
        ).fetchall()
        for row in rows:
            yield (
                row["id"],
                _decode_vector(row["embedding"]),
                IndexScope(
                    kind="chunk",
                    agent_id=row["agent_id"],
                    conversation_id=row["conversation_id"],
                    owner_id=row["owner_id"],
                ),
            )

    # ------------------------------------------------------------------
    # Index feed

    def last_index_seq(self) -> int:
        """Highest index feed position handed out so far, 0 if none."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT seq FROM sqlite_sequence WHERE name = 'index_feed'"
        ).fetchone()
        return row["seq"] if row else 0

    def _append_feed(self, conn: sqlite3.Connection, kind: str, item_ids: list[str]) -> None:
        conn.executemany(
            "INSERT INTO index_feed (kind, item_id) VALUES (?, ?)",
            [(kind, item_id) for item_id in item_ids],
        )

    def _drop_feed(self, conn: sqlite3.Connection, kind: str, item_ids: list[str]) -> None:
        if not item_ids:
            return
        placeholders = ",".join("?" for _ in item_ids)
        conn.execute(
            f"DELETE FROM index_feed WHERE kind = ? AND item_id IN ({placeholders})",
            (kind, *item_ids),
        )

    # ------------------------------------------------------------------
    # Dispatch queue

    def enqueue_dispatch(
        self,
        conversation_id: str,
        agent_id: str,
        owner_id: str,
        full: bool,
        now: datetime,
    ) -> DispatchEvent:
        """Queue a summarization request.

        A pending request for the same conversation is reused (its ``full``
        flag is upgraded if needed) instead of adding a second row.
        """
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT * FROM dispatch_queue
            WHERE conversation_id = ? AND status = 'pending'
            ORDER BY id LIMIT 1
            """,
            (conversation_id,),
        ).fetchone()
        if row is not None:
            if full and not row["full"]:
                conn.execute("UPDATE dispatch_queue SET full = 1 WHERE id = ?", (row["id"],))
            self._commit()
            row = conn.execute("SELECT * FROM dispatch_queue WHERE id = ?", (row["id"],)).fetchone()
            return self._row_to_event(row)

        row = conn.execute(
            """
            INSERT INTO dispatch_queue (conversation_id, agent_id, owner_id, full, created_at)
            VALUES (?, ?, ?, ?, ?)
            RETURNING *
            """,
            (conversation_id, agent_id, owner_id, int(full), to_iso(now)),
        ).fetchone()
        event = self._row_to_event(row)
        self._commit()
        return event

    def claim_next_dispatch(
        self, now: datetime, exclude: set[str] | None = None
    ) -> DispatchEvent | None:
        """Mark the oldest runnable pending request as processing and return it.

        Requests for a conversation that already has one in processing are
        skipped so a conversation's requests run one at a time and in order.
        """
        conn = self._get_connection()
        exclude = exclude or set()
        rows = conn.execute(
            """
            SELECT * FROM dispatch_queue AS q
            WHERE q.status = 'pending'
              AND NOT EXISTS (
                  SELECT 1 FROM dispatch_queue AS p
                  WHERE p.conversation_id = q.conversation_id
                    AND p.status = 'processing'
              )
              AND q.id = (
                  SELECT MIN(id) FROM dispatch_queue AS o
                  WHERE o.conversation_id = q.conversation_id AND o.status = 'pending'
              )
            ORDER BY q.id
            """
        ).fetchall()
        for row in rows:
            if row["conversation_id"] in exclude:
                continue
            cursor = conn.execute(
                """
                UPDATE dispatch_queue
                SET status = 'processing', claimed_at = ?, attempts = attempts + 1
                WHERE id = ? AND status = 'pending'
                """,
                (to_iso(now), row["id"]),
            )
            self._commit()
            if cursor.rowcount == 1:
                claimed = conn.execute(
                    "SELECT * FROM dispatch_queue WHERE id = ?", (row["id"],)
                ).fetchone()
                return self._row_to_event(claimed)
        return None

    def complete_dispatch(self, event_id: int) -> None:
        conn = self._get_connection()
        conn.execute("DELETE FROM dispatch_queue WHERE id = ?", (event_id,))
        self._commit()

    def requeue_stale_dispatches(self, older_than: datetime) -> int:
        """Return processing requests claimed before ``older_than`` to pending."""
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE dispatch_queue SET status = 'pending', claimed_at = NULL
            WHERE status = 'processing' AND claimed_at < ?
            """,
            (to_iso(older_than),),
        )
        self._commit()
        return cursor.rowcount

    def pending_dispatches(self) -> list[DispatchEvent]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM dispatch_queue WHERE status = 'pending' ORDER BY id"
        ).fetchall()
        return [self._row_to_event(row) for row in rows]

    # ------------------------------------------------------------------
    # Row mapping

    def _row_to_turn(self, row: sqlite3.Row) -> Turn:
        return Turn(
            conversation_id=row["conversation_id"],
            agent_id=row["agent_id"],
            owner_id=row["owner_id"],
            role=row["role"],
            content=row["content"],
            seq=row["seq"],
            message_id=row["message_id"],
            created_at=from_iso(row["created_at"]),
        )

    def _row_to_board(self, row: sqlite3.Row) -> SummaryBoard:
        return SummaryBoard(
            conversation_id=row["conversation_id"],
            agent_id=row["agent_id"],
            owner_id=row["owner_id"],
            current_summary=row["current_summary"],
            key_facts=json.loads(row["key_facts"]),
            action_items=json.loads(row["action_items"]),
            pending_questions=json.loads(row["pending_questions"]),
            entities=json.loads(row["entities"]),
            topics=json.loads(row["topics"]),
            context_notes=row["context_notes"],
            message_count=row["message_count"],
            update_frequency=row["update_frequency"],
            last_updated=from_iso(row["last_updated"]),
            version=row["version"],
            lease_token=row["lease_token"],
            in_progress_since=from_iso(row["in_progress_since"]),
            cycles_since_archive=row["cycles_since_archive"],
            next_chunk_index=row["next_chunk_index"],
        )

    def _row_to_summary(self, row: sqlite3.Row) -> ConversationSummary:
        return ConversationSummary(
            id=row["id"],
            conversation_id=row["conversation_id"],
            agent_id=row["agent_id"],
            owner_id=row["owner_id"],
            summary_text=row["summary_text"],
            key_facts=json.loads(row["key_facts"]),
            entities=json.loads(row["entities"]),
            topics=json.loads(row["topics"]),
            message_count=row["message_count"],
            message_range_start=row["message_range_start"],
            message_range_end=row["message_range_end"],
            is_full=bool(row["is_full"]),
            conversation_start=from_iso(row["conversation_start"]),
            conversation_end=from_iso(row["conversation_end"]),
            embedding=_decode_vector(row["embedding"]),
            created_at=from_iso(row["created_at"]),
        )

    def _row_to_chunk(self, row: sqlite3.Row) -> WorkingMemoryChunk:
        return WorkingMemoryChunk(
            id=row["id"],
            conversation_id=row["conversation_id"],
            agent_id=row["agent_id"],
            owner_id=row["owner_id"],
            chunk_text=row["chunk_text"],
            chunk_index=row["chunk_index"],
            source_message_ids=json.loads(row["source_message_ids"]),
            importance_score=row["importance_score"],
            chunk_type=ChunkType(row["chunk_type"]),
            embedding=_decode_vector(row["embedding"]),
            created_at=from_iso(row["created_at"]),
            expires_at=from_iso(row["expires_at"]),
        )

    def _row_to_event(self, row: sqlite3.Row) -> DispatchEvent:
        return DispatchEvent(
            id=row["id"],
            conversation_id=row["conversation_id"],
            agent_id=row["agent_id"],
            owner_id=row["owner_id"],
            full=bool(row["full"]),
            status=row["status"],
            attempts=row["attempts"],
            created_at=from_iso(row["created_at"]),
            claimed_at=from_iso(row["claimed_at"]),
        )
