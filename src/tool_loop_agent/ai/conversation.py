"""Convert the stored transcript into Anthropic API message format."""

from __future__ import annotations

from typing import Any

from tool_loop_agent.core.types import Role
from tool_loop_agent.storage.models import Message


def build_messages(history: list[Message]) -> list[dict[str, Any]]:
    """Convert stored messages into Anthropic API messages.

    - tool-role results become ``tool_result`` blocks inside a user message;
    - orphaned results (produced after their turn was cancelled) are left out,
      and so are tool calls that never got a result fed back;
    - system-role entries are skipped, the system prompt travels separately,
      and so are user entries with no text;
    - consecutive entries with the same API role are merged, so a retried
      user message after a failed turn does not break role alternation.
    """
    answered = {
        m.tool_call_id
        for m in history
        if m.role == Role.TOOL and m.tool_call_id and not m.is_orphaned
    }
    advertised: set[str] = set()
    messages: list[dict[str, Any]] = []

    for record in history:
        if record.role == Role.USER:
            if record.content:
                _append(messages, "user", [{"type": "text", "text": record.content}])

        elif record.role == Role.ASSISTANT:
            blocks: list[dict[str, Any]] = []
            if record.content:
                blocks.append({"type": "text", "text": record.content})
            for call in record.tool_calls:
                if call.id not in answered:
                    continue
                advertised.add(call.id)
                blocks.append({
                    "type": "tool_use",
                    "id": call.id,
                    "name": call.name,
                    "input": call.arguments,
                })
            if blocks:
                _append(messages, "assistant", blocks)

        elif record.role == Role.TOOL:
            if record.is_orphaned or record.tool_call_id not in advertised:
                continue
            _append(messages, "user", [{
                "type": "tool_result",
                "tool_use_id": record.tool_call_id,
                "content": record.content or "",
                "is_error": bool(record.metadata.get("is_error")),
            }])

    return [_collapse(m) for m in messages]


def _append(messages: list[dict[str, Any]], role: str, blocks: list[dict[str, Any]]) -> None:
    if messages and messages[-1]["role"] == role:
        messages[-1]["content"].extend(blocks)
    else:
        messages.append({"role": role, "content": list(blocks)})


def _collapse(message: dict[str, Any]) -> dict[str, Any]:
    """Use plain string content when a message is a single text block."""
    content = message["content"]
    if len(content) == 1 and content[0]["type"] == "text":
        return {"role": message["role"], "content": content[0]["text"]}
    return message
