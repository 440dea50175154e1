"""CLI entry point for tool-loop-agent."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from typing import Any, Awaitable, Callable

from tool_loop_agent.app import AgentApp
from tool_loop_agent.config import AppConfig, load_config
from tool_loop_agent.core.types import ConversationStatus, EventType
from tool_loop_agent.errors import AgentError
from tool_loop_agent.log import setup_logging


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c", "--config", default="config.yaml", help="Path to config file"
    )
    parser.add_argument(
        "-e", "--env", default=".env", help="Path to .env file"
    )
    parser.add_argument(
        "-u", "--user", default=None, help="User id (defaults to config default_user)"
    )


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="tool-loop-agent",
        description="Tool-using Claude agent with persistent conversations",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # chat command
    chat_parser = subparsers.add_parser("chat", help="Run one turn and stream it to stdout")
    _add_config_args(chat_parser)
    chat_parser.add_argument("message", help="User message")
    chat_parser.add_argument(
        "--conversation", default=None, help="Continue an existing conversation"
    )
    chat_parser.add_argument("--model", default=None, help="Override the model")
    chat_parser.add_argument("--max-steps", type=int, default=None, help="Override max_steps")
    chat_parser.add_argument(
        "--tools", default=None, help="Comma-separated tool names to expose ('' for none)"
    )
    chat_parser.add_argument(
        "--json", action="store_true", help="Print raw events as JSON lines"
    )

    # history command
    history_parser = subparsers.add_parser("history", help="Show a conversation transcript")
    _add_config_args(history_parser)
    history_parser.add_argument("conversation_id")

    # list command
    list_parser = subparsers.add_parser("list", help="List conversations")
    _add_config_args(list_parser)
    list_parser.add_argument(
        "--status",
        choices=[s.value for s in ConversationStatus],
        default=None,
        help="Filter by status (deleted ones are hidden otherwise)",
    )
    list_parser.add_argument("--limit", type=int, default=50)

    # search command
    search_parser = subparsers.add_parser("search", help="Full-text search over messages")
    _add_config_args(search_parser)
    search_parser.add_argument("query")
    search_parser.add_argument("--limit", type=int, default=20)

    # branch command
    branch_parser = subparsers.add_parser("branch", help="Copy a conversation into a new one")
    _add_config_args(branch_parser)
    branch_parser.add_argument("conversation_id")
    branch_parser.add_argument(
        "--at", type=int, default=None, help="Last sequence number to copy (default: all)"
    )
    branch_parser.add_argument("--title", default=None)

    # rename / archive / unarchive / delete commands
    rename_parser = subparsers.add_parser("rename", help="Rename a conversation")
    _add_config_args(rename_parser)
    rename_parser.add_argument("conversation_id")
    rename_parser.add_argument("title")

    for name, help_text in (
        ("archive", "Archive a conversation"),
        ("unarchive", "Reactivate an archived conversation"),
        ("delete", "Soft-delete a conversation"),
    ):
        status_parser = subparsers.add_parser(name, help=help_text)
        _add_config_args(status_parser)
        status_parser.add_argument("conversation_id")

    # tools command
    tools_parser = subparsers.add_parser("tools", help="List registered tools")
    _add_config_args(tools_parser)

    # config-check command
    check_parser = subparsers.add_parser("config-check", help="Validate configuration")
    _add_config_args(check_parser)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "config-check":
        _check_config(args.config, args.env)
        return

    config = _load(args.config, args.env)
    setup_logging(config.log_level)
    user_id = args.user or config.default_user

    commands: dict[str, Callable[[AgentApp], Awaitable[None]]] = {
        "chat": lambda app: _chat(app, user_id, args),
        "history": lambda app: _history(app, user_id, args.conversation_id),
        "list": lambda app: _list(app, user_id, args.status, args.limit),
        "search": lambda app: _search(app, user_id, args.query, args.limit),
        "branch": lambda app: _branch(app, user_id, args.conversation_id, args.at, args.title),
        "rename": lambda app: _show(app.service.rename(user_id, args.conversation_id, args.title)),
        "archive": lambda app: _show(app.service.archive(user_id, args.conversation_id)),
        "unarchive": lambda app: _show(app.service.unarchive(user_id, args.conversation_id)),
        "delete": lambda app: _show(app.service.delete(user_id, args.conversation_id)),
        "tools": _tools,
    }
    try:
        asyncio.run(_with_app(config, commands[args.command]))
    except AgentError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def _load(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    config = _load(config_path, env_path)
    agent = config.agent
    print(f"Configuration valid: {config_path}")
    print(f"  Data directory: {config.data_dir}")
    print(f"  Storage: {config.storage.db_path}")
    print(f"  Model backend: {'anthropic' if config.anthropic else '(not configured)'}")
    print(f"  Model: {agent.model} (temperature={agent.temperature}, max_tokens={agent.max_tokens})")
    print(f"  Max steps: {agent.max_steps}")
    print(f"  Tools: {', '.join(agent.tools) if agent.tools else '(all registered)'}")
    print(f"  Timeouts: tool={agent.tool_timeout}s turn={agent.turn_timeout}s")
    print(f"  Busy policy: {agent.busy_policy.value}")


async def _with_app(config: AppConfig, command: Callable[[AgentApp], Awaitable[None]]) -> None:
    app = AgentApp(config)
    await app.start()
    try:
        await command(app)
    finally:
        await app.stop()


async def _chat(app: AgentApp, user_id: str, args: argparse.Namespace) -> None:
    overrides: dict[str, Any] = {}
    if args.model:
        overrides["model"] = args.model
    if args.max_steps:
        overrides["max_steps"] = args.max_steps
    if args.tools is not None:
        overrides["tools"] = [t.strip() for t in args.tools.split(",") if t.strip()]

    stream = await app.service.start_turn(user_id, {
        "conversation_id": args.conversation,
        "messages": [{"role": "user", "content": args.message}],
        "config": overrides or None,
    })

    # Ctrl+C cancels the turn; tools already running still finish and are recorded.
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, stream.cancel)
    except NotImplementedError:
        # Windows doesn't support add_signal_handler
        signal.signal(signal.SIGINT, lambda s, f: stream.cancel())

    exit_code = 0
    async for event in stream:
        if args.json:
            print(json.dumps(event.to_dict(), default=str), flush=True)
            continue
        data = event.data
        if event.type is EventType.TEXT_DELTA:
            print(data["text"], end="", flush=True)
        elif event.type is EventType.TOOL_CALL_STARTED:
            print(f"\n[tool] {data['tool_name']}({json.dumps(data['arguments'], default=str)})")
        elif event.type is EventType.TOOL_CALL_RESULT:
            label = "error" if data["is_error"] else "result"
            print(f"[tool] {data['tool_name']} {label}: {json.dumps(data['result'], default=str)}")
        elif event.type is EventType.TURN_FAILED:
            print(f"\n[failed] {data.get('error')}", file=sys.stderr)
            exit_code = 1
        elif event.type is EventType.TURN_CANCELLED:
            print("\n[cancelled]", file=sys.stderr)
            exit_code = 130
        elif event.type is EventType.TURN_DONE:
            print()
            print(
                f"[{data['state']}] steps={data['steps']} "
                f"tokens={data['input_tokens']}/{data['output_tokens']}",
                file=sys.stderr,
            )
    await stream.wait()
    print(f"conversation: {stream.conversation_id}")
    if exit_code:
        sys.exit(exit_code)


async def _history(app: AgentApp, user_id: str, conversation_id: str) -> None:
    view = await app.service.get_conversation(user_id, conversation_id)
    c = view.conversation
    print(f"{c.title} [{c.status.value}] model={c.model}")
    print(f"  tokens: {c.total_input_tokens} in / {c.total_output_tokens} out")
    if c.metadata.get("branched_from"):
        print(f"  branched from {c.metadata['branched_from']} at #{c.metadata['branch_sequence']}")
    print()
    for m in view.messages:
        flags = " (orphaned)" if m.is_orphaned else ""
        print(f"#{m.sequence_number} {m.role.value}{flags}")
        if m.content:
            print(f"  {m.content}")
        for tc in m.tool_calls:
            print(f"  -> {tc.name}({json.dumps(tc.arguments, default=str)}) id={tc.id}")
    for a in view.attachments:
        print(f"attachment: {a.name} {a.file_url}")


async def _list(app: AgentApp, user_id: str, status: str | None, limit: int) -> None:
    conversations = await app.service.list_conversations(
        user_id, status=ConversationStatus(status) if status else None, limit=limit
    )
    if not conversations:
        print("(no conversations)")
    for c in conversations:
        last = (c.last_message_at or c.created_at).strftime("%Y-%m-%d %H:%M")
        print(f"{c.id}  {last}  [{c.status.value}]  {c.title}")


async def _search(app: AgentApp, user_id: str, query: str, limit: int) -> None:
    for m in await app.service.search(user_id, query, limit=limit):
        print(f"{m.conversation_id} #{m.sequence_number} {m.role.value}: {m.content}")


async def _branch(
    app: AgentApp, user_id: str, conversation_id: str, at: int | None, title: str | None
) -> None:
    branch = await app.service.branch(user_id, conversation_id, at_sequence=at, title=title)
    print(f"Created branch {branch.id}: {branch.title}")


async def _show(pending: Awaitable[Any]) -> None:
    c = await pending
    print(f"{c.id}  [{c.status.value}]  {c.title}")


async def _tools(app: AgentApp) -> None:
    for tool in app.tool_registry.describe():
        print(f"{tool['name']}: {tool['description']}")
        for prop, schema in tool["input_schema"].get("properties", {}).items():
            print(f"    {prop}: {schema.get('type', 'any')}")


if __name__ == "__main__":
    main()
