"""Parse Claude Code JSONL transcript lines into activity events."""
from __future__ import annotations

import json
import logging
import os
from typing import Any

from agentwatch.observability import record_parser_failure
from agentwatch.parsers.events import (
    AssistantOutput,
    SubToolFinished,
    SubToolStarted,
    ToolFinished,
    ToolStarted,
    TranscriptEvent,
    TurnEnded,
    TurnRestarted,
)

logger = logging.getLogger("agentwatch.parser")

_BASH_COMMAND_DISPLAY_MAX_LENGTH = 30
_TASK_DESCRIPTION_DISPLAY_MAX_LENGTH = 40
_ELLIPSIS = "…"

# Tools that delegate work to a sub-session.
SUBAGENT_TOOLS = frozenset({"Task", "Agent"})

# Tools that legitimately stay open while the agent waits on a human or a
# sub-session, so they never count as a pending permission prompt.
PERMISSION_EXEMPT_TOOLS = frozenset({"Task", "Agent", "AskUserQuestion"})

_TURN_END_SUBTYPES = {"turn_duration"}


def _basename(value: Any) -> str:
    return os.path.basename(value) if isinstance(value, str) else ""


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + _ELLIPSIS if len(text) > limit else text


def format_tool_status(tool_name: str, tool_input: dict[str, Any]) -> str:
    """Human-readable status line for a tool invocation."""
    if tool_name == "Read":
        return f"Reading {_basename(tool_input.get('file_path'))}"
    if tool_name == "Edit":
        return f"Editing {_basename(tool_input.get('file_path'))}"
    if tool_name == "Write":
        return f"Writing {_basename(tool_input.get('file_path'))}"
    if tool_name == "Bash":
        command = tool_input.get("command")
        command = command if isinstance(command, str) else ""
        return f"Running: {_truncate(command, _BASH_COMMAND_DISPLAY_MAX_LENGTH)}"
    if tool_name == "Glob":
        return "Searching files"
    if tool_name == "Grep":
        return "Searching code"
    if tool_name == "WebFetch":
        return "Fetching web content"
    if tool_name == "WebSearch":
        return "Searching the web"
    if tool_name in SUBAGENT_TOOLS:
        description = tool_input.get("description")
        if isinstance(description, str) and description.strip():
            return f"Subtask: {_truncate(description.strip(), _TASK_DESCRIPTION_DISPLAY_MAX_LENGTH)}"
        return "Running subtask"
    if tool_name == "AskUserQuestion":
        return "Waiting for your answer"
    if tool_name == "EnterPlanMode":
        return "Planning"
    if tool_name == "NotebookEdit":
        return "Editing notebook"
    return f"Using {tool_name or 'tool'}"


def _content_blocks(message: Any) -> Any:
    if not isinstance(message, dict):
        return None
    return message.get("content")


def _tool_use_blocks(content: Any) -> list[dict[str, Any]]:
    if not isinstance(content, list):
        return []
    return [
        block
        for block in content
        if isinstance(block, dict)
        and block.get("type") == "tool_use"
        and isinstance(block.get("id"), str)
        and block.get("id")
    ]


def _tool_result_ids(content: Any) -> list[str]:
    if not isinstance(content, list):
        return []
    ids: list[str] = []
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "tool_result":
            continue
        tool_use_id = block.get("tool_use_id")
        if isinstance(tool_use_id, str) and tool_use_id:
            ids.append(tool_use_id)
    return ids


def _has_tool_result(content: Any) -> bool:
    return isinstance(content, list) and any(
        isinstance(block, dict) and block.get("type") == "tool_result" for block in content
    )


def _is_prompt(content: Any) -> bool:
    if isinstance(content, str):
        return bool(content.strip())
    if isinstance(content, list):
        return any(isinstance(block, dict) and block.get("type") != "tool_result" for block in content)
    return False


def _tool_started(block: dict[str, Any]) -> tuple[str, str, str]:
    name = str(block.get("name") or "")
    tool_input = block.get("input")
    status = format_tool_status(name, tool_input if isinstance(tool_input, dict) else {})
    return block["id"], name, status


def _parse_agent_progress(record: dict[str, Any]) -> list[TranscriptEvent]:
    parent_id = record.get("parentToolUseID")
    data = record.get("data")
    if not isinstance(parent_id, str) or not parent_id or not isinstance(data, dict):
        return []
    if data.get("type") != "agent_progress":
        return []

    nested = data.get("message")
    if not isinstance(nested, dict):
        return []
    # The nested record is shaped like a transcript record; older builds put
    # the content one level higher.
    content = _content_blocks(nested.get("message")) or nested.get("content")

    events: list[TranscriptEvent] = []
    if nested.get("type") == "assistant":
        for block in _tool_use_blocks(content):
            tool_id, name, status = _tool_started(block)
            events.append(SubToolStarted(parent_id, tool_id, name, status))
    elif nested.get("type") == "user":
        for tool_id in _tool_result_ids(content):
            events.append(SubToolFinished(parent_id, tool_id))
    return events


def parse_record(record: dict[str, Any]) -> list[TranscriptEvent]:
    """Translate one decoded transcript record into events."""
    rec_type = record.get("type")

    if rec_type == "assistant":
        events: list[TranscriptEvent] = [AssistantOutput()]
        for block in _tool_use_blocks(_content_blocks(record.get("message"))):
            events.append(ToolStarted(*_tool_started(block)))
        return events

    if rec_type == "user":
        if record.get("isMeta"):
            return []
        content = _content_blocks(record.get("message"))
        if _has_tool_result(content):
            return [ToolFinished(tool_id) for tool_id in _tool_result_ids(content)]
        if _is_prompt(content):
            return [TurnRestarted()]
        return []

    if rec_type == "system" and record.get("subtype") in _TURN_END_SUBTYPES:
        return [TurnEnded()]

    if rec_type == "progress":
        return _parse_agent_progress(record)

    logger.debug("Ignoring transcript record type=%s", rec_type)
    return []


def parse_line(line: str) -> list[TranscriptEvent]:
    """Parse one transcript line. Malformed or unknown records yield no events."""
    text = line.strip()
    if not text:
        return []
    try:
        record = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        logger.debug("Dropping malformed transcript line (%d chars)", len(text))
        record_parser_failure("claude_code")
        return []
    if not isinstance(record, dict):
        return []
    try:
        return parse_record(record)
    except Exception as exc:  # noqa: BLE001
        logger.debug("Dropping unparseable transcript record: %s", exc)
        record_parser_failure("claude_code")
        return []
