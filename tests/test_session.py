"""Tests for the per-conversation turn session manager."""

import asyncio

import pytest

from tool_loop_agent.core.session import TurnSessionManager
from tool_loop_agent.core.types import BusyPolicy
from tool_loop_agent.errors import ConversationBusyError


def test_new_turn_ids_are_unique() -> None:
    ids = {TurnSessionManager.new_turn_id() for _ in range(100)}
    assert len(ids) == 100


def test_reject_policy_refuses_second_claim() -> None:
    sessions = TurnSessionManager(BusyPolicy.REJECT)
    sessions.claim("c1", "t1")

    with pytest.raises(ConversationBusyError) as exc_info:
        sessions.claim("c1", "t2")

    assert exc_info.value.conversation_id == "c1"
    assert sessions.active_turns("c1") == ["t1"]


def test_reject_policy_allows_other_conversations() -> None:
    sessions = TurnSessionManager(BusyPolicy.REJECT)
    sessions.claim("c1", "t1")
    sessions.claim("c2", "t2")

    assert sessions.is_busy("c1")
    assert sessions.is_busy("c2")


def test_release_frees_conversation() -> None:
    sessions = TurnSessionManager(BusyPolicy.REJECT)
    sessions.claim("c1", "t1")
    sessions.release("c1", "t1")

    assert not sessions.is_busy("c1")
    sessions.claim("c1", "t2")


async def test_queue_policy_serializes_turns() -> None:
    sessions = TurnSessionManager(BusyPolicy.QUEUE)
    order: list[str] = []

    async def turn(turn_id: str) -> None:
        async with sessions.hold("c1", turn_id):
            order.append(f"{turn_id}:start")
            await asyncio.sleep(0.01)
            order.append(f"{turn_id}:end")

    sessions.claim("c1", "t1")
    sessions.claim("c1", "t2")
    await asyncio.gather(turn("t1"), turn("t2"))

    assert order == ["t1:start", "t1:end", "t2:start", "t2:end"]
    assert not sessions.is_busy("c1")


async def test_hold_releases_claim_on_error() -> None:
    sessions = TurnSessionManager(BusyPolicy.REJECT)
    sessions.claim("c1", "t1")

    with pytest.raises(RuntimeError):
        async with sessions.hold("c1", "t1"):
            raise RuntimeError("turn blew up")

    assert not sessions.is_busy("c1")
