"""Tests for ConversationRepository (SQLite)."""

import asyncio
from pathlib import Path

import pytest

from tool_loop_agent.core.types import ConversationStatus, Role
from tool_loop_agent.storage.conversation_repo import ConversationRepository
from tool_loop_agent.storage.database import Database
from tool_loop_agent.storage.models import Attachment, Conversation, Message, ToolCallRecord


@pytest.fixture
async def conversation(repo: ConversationRepository) -> Conversation:
    created = await repo.create_conversation(Conversation(user_id="alice", model="test-model"))
    assert created is not None
    return created


async def _add(repo: ConversationRepository, conversation_id: str, role: Role, content: str) -> Message:
    message = await repo.create_message(Message(conversation_id=conversation_id, role=role, content=content))
    assert message is not None
    return message


# -- Conversations -----------------------------------------------------------


async def test_create_and_get_conversation(repo: ConversationRepository) -> None:
    created = await repo.create_conversation(Conversation(
        user_id="alice",
        model="test-model",
        title="Hello",
        system_prompt="Be brief.",
        temperature=0.2,
        metadata={"source": "test"},
    ))

    fetched = await repo.get_conversation(created.id)
    assert fetched is not None
    assert fetched.title == "Hello"
    assert fetched.system_prompt == "Be brief."
    assert fetched.temperature == 0.2
    assert fetched.status is ConversationStatus.ACTIVE
    assert fetched.metadata == {"source": "test"}
    assert fetched.total_input_tokens == 0
    assert fetched.last_message_at is None


async def test_get_conversation_not_found(repo: ConversationRepository) -> None:
    assert await repo.get_conversation("nonexistent") is None


async def test_update_conversation(repo: ConversationRepository, conversation: Conversation) -> None:
    updated = await repo.update_conversation(
        conversation.id, title="Renamed", status=ConversationStatus.ARCHIVED
    )

    assert updated.title == "Renamed"
    assert updated.status is ConversationStatus.ARCHIVED
    assert updated.updated_at >= conversation.updated_at


async def test_update_conversation_rejects_counters(
    repo: ConversationRepository, conversation: Conversation
) -> None:
    assert await repo.update_conversation(conversation.id, total_input_tokens=99) is None
    fetched = await repo.get_conversation(conversation.id)
    assert fetched.total_input_tokens == 0


async def test_update_missing_conversation(repo: ConversationRepository) -> None:
    assert await repo.update_conversation("nonexistent", title="x") is None


async def test_list_conversations_hides_deleted(repo: ConversationRepository) -> None:
    a = await repo.create_conversation(Conversation(user_id="alice", model="m", title="A"))
    b = await repo.create_conversation(Conversation(user_id="alice", model="m", title="B"))
    await repo.create_conversation(Conversation(user_id="bob", model="m", title="Bob's"))
    await repo.update_conversation(b.id, status=ConversationStatus.DELETED)

    listed = await repo.list_conversations("alice")
    assert [c.id for c in listed] == [a.id]

    deleted = await repo.list_conversations("alice", status=ConversationStatus.DELETED)
    assert [c.id for c in deleted] == [b.id]


async def test_list_conversations_most_recent_first(repo: ConversationRepository) -> None:
    older = await repo.create_conversation(Conversation(user_id="alice", model="m", title="Old"))
    newer = await repo.create_conversation(Conversation(user_id="alice", model="m", title="New"))
    await repo.add_token_usage(older.id, 1, 1)

    listed = await repo.list_conversations("alice")
    assert [c.id for c in listed] == [older.id, newer.id]


async def test_add_token_usage_accumulates(
    repo: ConversationRepository, conversation: Conversation
) -> None:
    assert await repo.add_token_usage(conversation.id, 100, 40)
    assert await repo.add_token_usage(conversation.id, 30, 5)

    fetched = await repo.get_conversation(conversation.id)
    assert fetched.total_input_tokens == 130
    assert fetched.total_output_tokens == 45
    assert fetched.last_message_at is not None


async def test_add_token_usage_missing_conversation(repo: ConversationRepository) -> None:
    assert await repo.add_token_usage("nonexistent", 1, 1) is False


# -- Messages ----------------------------------------------------------------


async def test_sequence_numbers_are_gap_free(
    repo: ConversationRepository, conversation: Conversation
) -> None:
    for i in range(5):
        await _add(repo, conversation.id, Role.USER, f"message {i}")

    messages = await repo.get_messages(conversation.id)
    assert [m.sequence_number for m in messages] == [1, 2, 3, 4, 5]
    assert [m.content for m in messages] == [f"message {i}" for i in range(5)]


async def test_concurrent_appends_get_distinct_sequences(
    repo: ConversationRepository, conversation: Conversation
) -> None:
    results = await asyncio.gather(*(
        repo.create_message(Message(conversation_id=conversation.id, role=Role.USER, content=str(i)))
        for i in range(20)
    ))

    assert all(r is not None for r in results)
    assert sorted(r.sequence_number for r in results) == list(range(1, 21))
    stored = await repo.get_messages(conversation.id)
    assert [m.sequence_number for m in stored] == list(range(1, 21))


async def test_sequences_are_per_conversation(repo: ConversationRepository) -> None:
    a = await repo.create_conversation(Conversation(user_id="alice", model="m"))
    b = await repo.create_conversation(Conversation(user_id="alice", model="m"))

    await _add(repo, a.id, Role.USER, "a1")
    first_b = await _add(repo, b.id, Role.USER, "b1")
    second_a = await _add(repo, a.id, Role.USER, "a2")

    assert first_b.sequence_number == 1
    assert second_a.sequence_number == 2


async def test_tool_calls_round_trip(repo: ConversationRepository, conversation: Conversation) -> None:
    record = ToolCallRecord(
        id="toolu_1",
        name="calculate",
        arguments={"expression": "2+2"},
        outcome={"result": {"expression": "2+2", "result": 4}},
        duration_ms=1.5,
    )
    await repo.create_message(Message(
        conversation_id=conversation.id,
        role=Role.ASSISTANT,
        tool_calls=[record],
        model="test-model",
        input_tokens=12,
        output_tokens=7,
        metadata={"stop_reason": "tool_use"},
    ))

    [stored] = await repo.get_messages(conversation.id)
    assert stored.content is None
    assert stored.tool_calls == [record]
    assert stored.input_tokens == 12
    assert stored.metadata == {"stop_reason": "tool_use"}


async def test_create_message_for_missing_conversation_fails_closed(repo: ConversationRepository) -> None:
    result = await repo.create_message(Message(conversation_id="nonexistent", role=Role.USER, content="x"))
    assert result is None


async def test_update_message_tokens(repo: ConversationRepository, conversation: Conversation) -> None:
    message = await _add(repo, conversation.id, Role.ASSISTANT, "hi")

    assert await repo.update_message_tokens(message.id, 11, 3)
    [stored] = await repo.get_messages(conversation.id)
    assert (stored.input_tokens, stored.output_tokens) == (11, 3)
    assert await repo.update_message_tokens("nonexistent", 1, 1) is False


async def test_search_messages(repo: ConversationRepository, conversation: Conversation) -> None:
    await _add(repo, conversation.id, Role.USER, "What is the weather in Berlin?")
    await _add(repo, conversation.id, Role.ASSISTANT, "It is sunny.")
    other = await repo.create_conversation(Conversation(user_id="bob", model="m"))
    await _add(repo, other.id, Role.USER, "Berlin trip plans")

    hits = await repo.search_messages("alice", "berlin")
    assert [m.content for m in hits] == ["What is the weather in Berlin?"]


async def test_search_skips_deleted_conversations(
    repo: ConversationRepository, conversation: Conversation
) -> None:
    await _add(repo, conversation.id, Role.USER, "secret recipe")
    await repo.update_conversation(conversation.id, status=ConversationStatus.DELETED)

    assert await repo.search_messages("alice", "recipe") == []


# -- Attachments -------------------------------------------------------------


async def test_attachments(repo: ConversationRepository, conversation: Conversation) -> None:
    message = await _add(repo, conversation.id, Role.USER, "see attached")
    saved = await repo.create_attachment(Attachment(
        conversation_id=conversation.id,
        message_id=message.id,
        name="report.pdf",
        file_url="https://files.test/report.pdf",
        file_type="application/pdf",
        file_size=2048,
    ))

    assert saved.id
    [stored] = await repo.get_attachments(conversation.id)
    assert stored.name == "report.pdf"
    assert stored.message_id == message.id
    assert stored.file_size == 2048


# -- Branching ---------------------------------------------------------------


async def test_branch_copies_prefix(repo: ConversationRepository, conversation: Conversation) -> None:
    for content in ("one", "two", "three"):
        await _add(repo, conversation.id, Role.USER, content)
    await repo.add_token_usage(conversation.id, 50, 20)

    branch = await repo.branch_conversation(conversation.id, 2, title="Fork")

    assert branch.id != conversation.id
    assert branch.title == "Fork"
    assert branch.metadata["branched_from"] == conversation.id
    assert branch.metadata["branch_sequence"] == 2
    assert branch.total_input_tokens == 0

    copied = await repo.get_messages(branch.id)
    source = await repo.get_messages(conversation.id)
    assert [m.content for m in copied] == ["one", "two"]
    assert [m.sequence_number for m in copied] == [1, 2]
    assert {m.id for m in copied}.isdisjoint({m.id for m in source})


async def test_branch_is_independent_of_source(
    repo: ConversationRepository, conversation: Conversation
) -> None:
    await _add(repo, conversation.id, Role.USER, "shared")
    branch = await repo.branch_conversation(conversation.id, 1)

    await _add(repo, branch.id, Role.USER, "only in branch")
    await _add(repo, conversation.id, Role.USER, "only in source")

    assert [m.content for m in await repo.get_messages(branch.id)] == ["shared", "only in branch"]
    assert [m.content for m in await repo.get_messages(conversation.id)] == ["shared", "only in source"]


async def test_branch_remaps_attachments(repo: ConversationRepository, conversation: Conversation) -> None:
    first = await _add(repo, conversation.id, Role.USER, "with file")
    second = await _add(repo, conversation.id, Role.USER, "later file")
    for message, name in ((first, "a.txt"), (second, "b.txt")):
        await repo.create_attachment(Attachment(
            conversation_id=conversation.id, message_id=message.id, name=name, file_url=f"file://{name}"
        ))

    branch = await repo.branch_conversation(conversation.id, 1)

    [copied_message] = await repo.get_messages(branch.id)
    [copied_attachment] = await repo.get_attachments(branch.id)
    assert copied_attachment.name == "a.txt"
    assert copied_attachment.message_id == copied_message.id
    assert len(await repo.get_attachments(conversation.id)) == 2


async def test_branch_missing_source(repo: ConversationRepository) -> None:
    assert await repo.branch_conversation("nonexistent", 1) is None


# -- Schema ------------------------------------------------------------------


async def test_reopen_keeps_data(tmp_path: Path) -> None:
    path = str(tmp_path / "reopen.db")
    first = Database(path)
    await first.initialize()
    created = await ConversationRepository(first).create_conversation(
        Conversation(user_id="alice", model="m", title="Persisted")
    )
    await first.close()

    second = Database(path)
    await second.initialize()
    fetched = await ConversationRepository(second).get_conversation(created.id)
    await second.close()
    assert fetched.title == "Persisted"
