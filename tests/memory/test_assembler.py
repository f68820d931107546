"""Tests for the ContextAssembler."""

import dataclasses
import sqlite3
from datetime import timedelta
from unittest.mock import Mock

import pytest

from conftest import START, write_board
from memboard.memory import ContextAssembler, MemoryStore, SearchHit, Turn
from memboard.memory.assembler import TIER_HISTORY, TIER_RECALL, TIER_WORKING_MEMORY
from memboard.memory.tokens import estimate_message_tokens


def add_turn(store: MemoryStore, content: str, role: str = "user", conversation_id: str = "c1"):
    seq = store.get_last_seq(conversation_id) + 1
    store.add_turn(
        Turn(
            conversation_id=conversation_id,
            agent_id="a1",
            owner_id="u1",
            role=role,
            content=content,
            created_at=START + timedelta(minutes=seq),
        )
    )


def add_turns(store: MemoryStore, count: int) -> None:
    for i in range(count):
        add_turn(store, f"turn {i}", role="user" if i % 2 == 0 else "assistant")


class TestBudget:
    """Tests for token budget enforcement."""

    def test_tiers_fit_in_what_fixed_parts_leave(
        self, assembler: ContextAssembler, store: MemoryStore
    ):
        """With 800 fixed tokens of 4000, tiers get at most 3200."""
        add_turn(store, "y" * 20000)
        for i in range(40):
            add_turn(store, "x" * 396, role="assistant" if i % 2 else "user")
        system = "s" * (796 * 4)

        result = assembler.assemble("c1", "a1", "u1", "", system_instructions=system)

        assert result.fixed_tokens == 800 + estimate_message_tokens("")
        assert result.tokens_used <= 4000
        assert result.tokens_used - result.fixed_tokens <= 3200
        assert all("y" * 100 not in m["content"] for m in result.messages)
        # 103 tokens per turn, 3196 available.
        assert result.history_turns == 31

    def test_oversized_turn_stops_history(self, assembler: ContextAssembler, store: MemoryStore):
        add_turn(store, "old question")
        add_turn(store, "z" * 40000, role="assistant")
        add_turn(store, "recent question")

        result = assembler.assemble("c1", "a1", "u1", "next")

        contents = [m["content"] for m in result.messages]
        assert contents == ["recent question", "next"]

    def test_budget_override(self, assembler: ContextAssembler, store: MemoryStore):
        add_turns(store, 10)
        result = assembler.assemble("c1", "a1", "u1", "hello", token_budget=30)
        assert result.tokens_used <= 30
        assert result.history_turns < 10

    def test_fixed_parts_over_budget(self, assembler: ContextAssembler, store: MemoryStore):
        add_turns(store, 3)
        result = assembler.assemble("c1", "a1", "u1", "q" * 400, token_budget=50)
        assert result.messages == [{"role": "user", "content": "q" * 400}]
        assert result.tiers == []


class TestTiers:
    """Tests for tier selection and ordering."""

    def test_message_order(self, assembler: ContextAssembler, store: MemoryStore):
        write_board(store, current_summary="Planning a trip.", message_count=2)
        add_turn(store, "Where should I go?")
        add_turn(store, "Lisbon is nice.", role="assistant")
        hits = [SearchHit("summary", "s1", "c0", "Last year: Porto.", 0.9, START)]

        result = assembler.assemble(
            "c1",
            "a1",
            "u1",
            "Book it",
            system_instructions="You are helpful.",
            extra_context="User prefers trains.",
            recall_hits=hits,
        )

        assert [m["role"] for m in result.messages] == [
            "system",
            "system",
            "system",
            "user",
            "assistant",
            "system",
            "user",
        ]
        assert result.messages[0]["content"] == "You are helpful."
        assert result.messages[1]["content"] == "User prefers trains."
        assert "Summary: Planning a trip." in result.messages[2]["content"]
        assert "Last year: Porto." in result.messages[5]["content"]
        assert result.messages[-1] == {"role": "user", "content": "Book it"}
        assert result.tiers == [TIER_WORKING_MEMORY, TIER_HISTORY, TIER_RECALL]

    def test_never_summarized_conversation(self, assembler: ContextAssembler, store: MemoryStore):
        """A conversation without a board gets history and no working memory block."""
        add_turns(store, 3)

        result = assembler.assemble("c1", "a1", "u1", "hello")

        assert TIER_WORKING_MEMORY not in result.tiers
        assert result.history_turns == 3
        assert not any("CONVERSATION CONTEXT" in m["content"] for m in result.messages)

    def test_history_widens_without_working_memory(
        self, assembler: ContextAssembler, store: MemoryStore
    ):
        add_turns(store, 50)

        without_board = assembler.assemble("c1", "a1", "u1", "hello", token_budget=100000)
        write_board(store, current_summary="Summary.")
        with_board = assembler.assemble("c1", "a1", "u1", "hello", token_budget=100000)

        assert without_board.history_turns == 40
        assert with_board.history_turns == 20

    def test_agent_history_size(self, store: MemoryStore, manager, config):
        config = dataclasses.replace(config, agent_history_sizes={"a1": 3})
        assembler = ContextAssembler(store, manager, config=config)
        write_board(store, current_summary="Summary.")
        add_turns(store, 10)

        assert assembler.assemble("c1", "a1", "u1", "hi").history_turns == 3

    def test_oversized_working_block_skipped(self, assembler: ContextAssembler, store: MemoryStore):
        write_board(store, current_summary="w " * 5000)
        add_turns(store, 2)

        result = assembler.assemble("c1", "a1", "u1", "hello", token_budget=500)

        assert TIER_WORKING_MEMORY not in result.tiers
        assert result.history_turns == 2

    def test_current_user_turn_not_repeated(self, assembler: ContextAssembler, store: MemoryStore):
        add_turn(store, "earlier", role="assistant")
        add_turn(store, "What time is it?")

        result = assembler.assemble("c1", "a1", "u1", "What time is it?")

        contents = [m["content"] for m in result.messages]
        assert contents == ["earlier", "What time is it?"]

    def test_tool_turns_sent_as_assistant(self, assembler: ContextAssembler, store: MemoryStore):
        add_turn(store, "run it")
        add_turn(store, "exit code 0", role="tool")

        result = assembler.assemble("c1", "a1", "u1", "thanks")

        assert result.messages[1] == {"role": "assistant", "content": "exit code 0"}

    def test_recall_skipped_when_over_budget(self, assembler: ContextAssembler):
        hits = [SearchHit("chunk", "k1", "c1", "r" * 4000, 0.8, START)]
        result = assembler.assemble("c1", "a1", "u1", "hello", recall_hits=hits, token_budget=200)
        assert TIER_RECALL not in result.tiers
        assert len(result.messages) == 1


class TestDegradedStore:
    """Tests for a failing memory store."""

    def test_minimal_context(
        self, assembler: ContextAssembler, store: MemoryStore, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setattr(
            store, "get_board", Mock(side_effect=sqlite3.OperationalError("database is locked"))
        )

        result = assembler.assemble(
            "c1", "a1", "u1", "hello", system_instructions="You are helpful."
        )

        assert result.minimal
        assert result.messages == [
            {"role": "system", "content": "You are helpful."},
            {"role": "user", "content": "hello"},
        ]
        assert result.tokens_used == result.fixed_tokens
