"""Tests for MemoryStore."""

import sqlite3
from datetime import timedelta
from pathlib import Path

import pytest

from conftest import START, unit
from memboard.memory import (
    ChunkType,
    ConversationSummary,
    MemoryStore,
    Turn,
    WorkingMemoryChunk,
)

TIMEOUT = timedelta(seconds=120)


def make_turn(content: str, conversation_id: str = "c1", **kwargs) -> Turn:
    kwargs.setdefault("created_at", START)
    return Turn(
        conversation_id=conversation_id,
        agent_id="a1",
        owner_id="u1",
        role=kwargs.pop("role", "user"),
        content=content,
        **kwargs,
    )


def make_chunk(chunk_id: str, index: int, expires_in_days: float = 7, **kwargs) -> WorkingMemoryChunk:
    return WorkingMemoryChunk(
        id=chunk_id,
        conversation_id=kwargs.pop("conversation_id", "c1"),
        agent_id="a1",
        owner_id="u1",
        chunk_text=f"chunk {chunk_id}",
        chunk_index=index,
        source_message_ids=["1", "2"],
        importance_score=0.6,
        chunk_type=ChunkType.FACT,
        embedding=unit(1.0),
        created_at=START,
        expires_at=START + timedelta(days=expires_in_days),
    )


class TestMemoryStoreInit:
    """Tests for MemoryStore initialization."""

    def test_creates_db_directory(self, tmp_path: Path):
        """Store creates parent directories if they don't exist."""
        nested_path = tmp_path / "nested" / "dir" / "memory.db"
        store = MemoryStore(nested_path)
        store.init_db()
        assert nested_path.exists()
        store.close()

    @pytest.mark.parametrize(
        "table",
        [
            "turns",
            "trigger_state",
            "summary_boards",
            "conversation_summaries",
            "working_memory_chunks",
            "dispatch_queue",
        ],
    )
    def test_creates_tables(self, store: MemoryStore, table: str):
        conn = store._get_connection()
        cursor = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
        )
        assert cursor.fetchone() is not None

    def test_creates_lookup_indexes(self, store: MemoryStore):
        conn = store._get_connection()
        names = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='index'")
        }
        assert "idx_summaries_conversation_created" in names
        assert "idx_chunks_agent_expires" in names

    def test_init_db_idempotent(self, store: MemoryStore):
        """init_db can be called multiple times."""
        store.init_db()
        store.init_db()


class TestTurns:
    """Tests for the turn log."""

    def test_assigns_increasing_seq(self, store: MemoryStore):
        first = store.add_turn(make_turn("hello"))
        second = store.add_turn(make_turn("again"))
        assert first.seq == 1
        assert second.seq == 2

    def test_seq_is_per_conversation(self, store: MemoryStore):
        store.add_turn(make_turn("hello"))
        other = store.add_turn(make_turn("hi", conversation_id="c2"))
        assert other.seq == 1

    def test_duplicate_message_id_ignored(self, store: MemoryStore):
        assert store.add_turn(make_turn("hello", message_id="m1")) is not None
        assert store.add_turn(make_turn("hello", message_id="m1")) is None
        assert store.get_last_seq("c1") == 1

    def test_turns_without_message_id_never_collide(self, store: MemoryStore):
        store.add_turn(make_turn("same"))
        store.add_turn(make_turn("same"))
        assert store.get_last_seq("c1") == 2

    def test_get_turns_after(self, store: MemoryStore):
        for i in range(5):
            store.add_turn(make_turn(f"turn {i}"))
        turns = store.get_turns_after("c1", 2)
        assert [t.seq for t in turns] == [3, 4, 5]
        assert [t.seq for t in store.get_turns_after("c1", 2, limit=2)] == [3, 4]

    def test_recent_turns_chronological(self, store: MemoryStore):
        for i in range(5):
            store.add_turn(make_turn(f"turn {i}"))
        recent = store.get_recent_turns("c1", 3)
        assert [t.content for t in recent] == ["turn 2", "turn 3", "turn 4"]

    def test_recent_turns_zero_limit(self, store: MemoryStore):
        store.add_turn(make_turn("hello"))
        assert store.get_recent_turns("c1", 0) == []

    def test_timestamps_round_trip_as_utc(self, store: MemoryStore):
        store.add_turn(make_turn("hello"))
        [turn] = store.get_all_turns("c1")
        assert turn.created_at == START
        assert turn.created_at.tzinfo is not None


class TestTriggerState:
    """Tests for the per-conversation turn counter."""

    def test_counter_increments(self, store: MemoryStore):
        store.increment_trigger_counter("c1", "a1", "u1", 5)
        state = store.increment_trigger_counter("c1", "a1", "u1", 5)
        assert state.turns_since_dispatch == 2
        assert state.update_frequency == 5

    def test_reset(self, store: MemoryStore):
        store.increment_trigger_counter("c1", "a1", "u1", 5)
        store.reset_trigger_counter("c1")
        assert store.get_trigger_state("c1").turns_since_dispatch == 0

    def test_set_update_frequency_mirrors_board(self, store: MemoryStore):
        store.acquire_lease("c1", "a1", "u1", "t", START, TIMEOUT)
        store.set_update_frequency("c1", 3, "a1", "u1")
        assert store.get_trigger_state("c1").update_frequency == 3
        assert store.get_board("c1").update_frequency == 3

    def test_frequency_survives_counter_updates(self, store: MemoryStore):
        store.set_update_frequency("c1", 2, "a1", "u1")
        state = store.increment_trigger_counter("c1", "a1", "u1", 5)
        assert state.update_frequency == 2


class TestBoardLease:
    """Tests for the board lease and conditional writes."""

    def test_acquire_creates_board_lazily(self, store: MemoryStore):
        assert store.get_board("c1") is None
        assert store.acquire_lease("c1", "a1", "u1", "t1", START, TIMEOUT)
        board = store.get_board("c1")
        assert board.lease_token == "t1"
        assert board.message_count == 0

    def test_single_board_per_conversation(self, store: MemoryStore):
        store.acquire_lease("c1", "a1", "u1", "t1", START, TIMEOUT)
        store.release_lease("c1", "t1")
        store.acquire_lease("c1", "a1", "u1", "t2", START, TIMEOUT)
        conn = store._get_connection()
        count = conn.execute(
            "SELECT COUNT(*) FROM summary_boards WHERE conversation_id = 'c1'"
        ).fetchone()[0]
        assert count == 1

    def test_second_acquire_rejected(self, store: MemoryStore):
        assert store.acquire_lease("c1", "a1", "u1", "t1", START, TIMEOUT)
        assert not store.acquire_lease("c1", "a1", "u1", "t2", START, TIMEOUT)

    def test_stale_lease_reclaimed(self, store: MemoryStore):
        store.acquire_lease("c1", "a1", "u1", "t1", START, TIMEOUT)
        later = START + TIMEOUT + timedelta(seconds=1)
        assert store.acquire_lease("c1", "a1", "u1", "t2", later, TIMEOUT)
        assert store.get_board("c1").lease_token == "t2"

    def test_release_frees_lease(self, store: MemoryStore):
        store.acquire_lease("c1", "a1", "u1", "t1", START, TIMEOUT)
        assert store.release_lease("c1", "t1")
        assert store.acquire_lease("c1", "a1", "u1", "t2", START, TIMEOUT)

    def test_release_with_wrong_token(self, store: MemoryStore):
        store.acquire_lease("c1", "a1", "u1", "t1", START, TIMEOUT)
        assert not store.release_lease("c1", "other")
        assert store.get_board("c1").lease_token == "t1"

    def test_save_board_requires_lease(self, store: MemoryStore):
        store.acquire_lease("c1", "a1", "u1", "t1", START, TIMEOUT)
        board = store.get_board("c1")
        board.current_summary = "updated"
        board.key_facts = ["fact one"]
        board.entities = {"people": ["Ana"]}

        assert not store.save_board(board, "wrong", START)
        assert store.get_board("c1").current_summary == ""

        assert store.save_board(board, "t1", START)
        saved = store.get_board("c1")
        assert saved.current_summary == "updated"
        assert saved.key_facts == ["fact one"]
        assert saved.entities == {"people": ["Ana"]}
        assert saved.last_updated == START

    def test_version_bumped_on_writes(self, store: MemoryStore):
        store.acquire_lease("c1", "a1", "u1", "t1", START, TIMEOUT)
        before = store.get_board("c1").version
        store.save_board(store.get_board("c1"), "t1", START)
        assert store.get_board("c1").version == before + 1


class TestTransaction:
    """Tests for grouped writes."""

    def test_rollback_on_error(self, store: MemoryStore):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.add_turn(make_turn("lost"))
                raise RuntimeError("boom")
        assert store.get_last_seq("c1") == 0

    def test_commit_on_success(self, store: MemoryStore, config):
        with store.transaction():
            store.add_turn(make_turn("kept"))
            store.increment_trigger_counter("c1", "a1", "u1", 5)

        # A second connection sees the committed rows.
        other = sqlite3.connect(config.db_path)
        try:
            assert other.execute("SELECT COUNT(*) FROM turns").fetchone()[0] == 1
        finally:
            other.close()

    def test_nested_transactions_commit_once(self, store: MemoryStore):
        with pytest.raises(ValueError):
            with store.transaction():
                store.add_turn(make_turn("outer"))
                with store.transaction():
                    store.add_turn(make_turn("inner"))
                raise ValueError("outer fails")
        assert store.get_last_seq("c1") == 0


class TestSummaries:
    """Tests for archived summaries."""

    def make_summary(self, summary_id: str, minutes: int) -> ConversationSummary:
        return ConversationSummary(
            id=summary_id,
            conversation_id="c1",
            agent_id="a1",
            owner_id="u1",
            summary_text=f"summary {summary_id}",
            key_facts=["fact"],
            entities={"places": ["Lisbon"]},
            topics=["travel"],
            message_count=5,
            message_range_start=1,
            message_range_end=5,
            is_full=False,
            embedding=unit(0.0, 1.0),
            created_at=START + timedelta(minutes=minutes),
        )

    def test_insert_and_get(self, store: MemoryStore):
        store.insert_summary(self.make_summary("s1", 0))
        summary = store.get_summary("s1")
        assert summary.summary_text == "summary s1"
        assert summary.entities == {"places": ["Lisbon"]}
        assert summary.embedding.tolist() == unit(0.0, 1.0).tolist()

    def test_latest_summary(self, store: MemoryStore):
        store.insert_summary(self.make_summary("old", 0))
        store.insert_summary(self.make_summary("new", 10))
        assert store.latest_summary("c1").id == "new"
        assert [s.id for s in store.list_summaries("c1")] == ["old", "new"]

    def test_latest_summary_missing(self, store: MemoryStore):
        assert store.latest_summary("c1") is None

    def test_iter_summary_vectors(self, store: MemoryStore):
        store.insert_summary(self.make_summary("s1", 0))
        [(summary_id, vector, scope)] = list(store.iter_summary_vectors())
        assert summary_id == "s1"
        assert scope.kind == "summary"
        assert scope.agent_id == "a1"
        assert vector.shape == (8,)


class TestChunks:
    """Tests for working memory chunks."""

    def test_chunk_index_unique_per_conversation(self, store: MemoryStore):
        store.insert_chunks([make_chunk("k1", 0)])
        with pytest.raises(sqlite3.IntegrityError):
            store.insert_chunks([make_chunk("k2", 0)])

    def test_recent_chunks_skip_expired(self, store: MemoryStore):
        store.insert_chunks([make_chunk("k1", 0, expires_in_days=1), make_chunk("k2", 1)])
        recent = store.get_recent_chunks("c1", "a1", START + timedelta(days=2))
        assert [c.id for c in recent] == ["k2"]

    def test_recent_chunks_newest_first(self, store: MemoryStore):
        store.insert_chunks([make_chunk(f"k{i}", i) for i in range(7)])
        recent = store.get_recent_chunks("c1", "a1", START, limit=5)
        assert [c.chunk_index for c in recent] == [6, 5, 4, 3, 2]

    def test_delete_expired_returns_ids(self, store: MemoryStore):
        store.insert_chunks([make_chunk("k1", 0, expires_in_days=1), make_chunk("k2", 1)])
        deleted = store.delete_expired_chunks(START + timedelta(days=2))
        assert deleted == ["k1"]
        assert set(store.get_chunks(["k1", "k2"])) == {"k2"}

    def test_round_trip(self, store: MemoryStore):
        store.insert_chunks([make_chunk("k1", 0)])
        chunk = store.get_chunks(["k1"])["k1"]
        assert chunk.chunk_type == ChunkType.FACT
        assert chunk.source_message_ids == ["1", "2"]
        assert chunk.expires_at == START + timedelta(days=7)

    def test_iter_chunk_vectors_skips_expired(self, store: MemoryStore):
        store.insert_chunks([make_chunk("k1", 0, expires_in_days=1), make_chunk("k2", 1)])
        ids = [item_id for item_id, _, _ in store.iter_chunk_vectors(START + timedelta(days=2))]
        assert ids == ["k2"]

    def test_index_feed_positions(self, store: MemoryStore):
        assert store.last_index_seq() == 0
        store.insert_chunks([make_chunk("k1", 0), make_chunk("k2", 1)])
        first = store.last_index_seq()
        store.insert_chunks([make_chunk("k3", 2)])

        newer = [item_id for item_id, _, _ in store.iter_chunk_vectors(START, after_seq=first)]
        older = [item_id for item_id, _, _ in store.iter_chunk_vectors(START, upto_seq=first)]

        assert newer == ["k3"]
        assert older == ["k1", "k2"]
        assert store.last_index_seq() == first + 1

    def test_index_feed_positions_never_reused(self, store: MemoryStore):
        """Deleting the newest chunk does not hand its feed position out again."""
        store.insert_chunks([make_chunk("k1", 0)])
        seen = store.last_index_seq()
        store.delete_chunks(["k1"])
        store.insert_chunks([make_chunk("k2", 1)])

        newer = [item_id for item_id, _, _ in store.iter_chunk_vectors(START, after_seq=seen)]
        assert newer == ["k2"]


class TestDispatchQueue:
    """Tests for the durable dispatch queue."""

    def test_pending_event_coalesces(self, store: MemoryStore):
        first = store.enqueue_dispatch("c1", "a1", "u1", full=False, now=START)
        second = store.enqueue_dispatch("c1", "a1", "u1", full=True, now=START)
        assert first.id == second.id
        assert second.full is True
        assert len(store.pending_dispatches()) == 1

    def test_full_flag_never_downgraded(self, store: MemoryStore):
        store.enqueue_dispatch("c1", "a1", "u1", full=True, now=START)
        event = store.enqueue_dispatch("c1", "a1", "u1", full=False, now=START)
        assert event.full is True

    def test_claim_oldest_first(self, store: MemoryStore):
        store.enqueue_dispatch("c1", "a1", "u1", full=False, now=START)
        store.enqueue_dispatch("c2", "a1", "u1", full=False, now=START)
        event = store.claim_next_dispatch(START)
        assert event.conversation_id == "c1"
        assert event.status == "processing"
        assert event.attempts == 1

    def test_conversation_in_processing_is_skipped(self, store: MemoryStore):
        store.enqueue_dispatch("c1", "a1", "u1", full=False, now=START)
        store.claim_next_dispatch(START)
        # A new request for c1 queues behind the running one.
        store.enqueue_dispatch("c1", "a1", "u1", full=False, now=START)
        store.enqueue_dispatch("c2", "a1", "u1", full=False, now=START)
        event = store.claim_next_dispatch(START)
        assert event.conversation_id == "c2"
        assert store.claim_next_dispatch(START) is None

    def test_claim_respects_exclude(self, store: MemoryStore):
        store.enqueue_dispatch("c1", "a1", "u1", full=False, now=START)
        assert store.claim_next_dispatch(START, exclude={"c1"}) is None

    def test_complete_removes_event(self, store: MemoryStore):
        store.enqueue_dispatch("c1", "a1", "u1", full=False, now=START)
        event = store.claim_next_dispatch(START)
        store.complete_dispatch(event.id)
        assert store.claim_next_dispatch(START) is None
        assert store.pending_dispatches() == []

    def test_requeue_stale(self, store: MemoryStore):
        store.enqueue_dispatch("c1", "a1", "u1", full=False, now=START)
        store.claim_next_dispatch(START)
        assert store.requeue_stale_dispatches(START - timedelta(seconds=1)) == 0
        assert store.requeue_stale_dispatches(START + timedelta(seconds=1)) == 1
        event = store.claim_next_dispatch(START)
        assert event.attempts == 2
