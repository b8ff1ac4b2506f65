"""Domain events produced from transcript records."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class AssistantOutput:
    """The assistant wrote a record (text, tool calls or both)."""


@dataclass(frozen=True)
class ToolStarted:
    invocation_id: str
    tool_name: str
    status_text: str


@dataclass(frozen=True)
class ToolFinished:
    invocation_id: str


@dataclass(frozen=True)
class SubToolStarted:
    """A tool started inside a delegated sub-session, nested under ``parent_id``."""

    parent_id: str
    invocation_id: str
    tool_name: str
    status_text: str


@dataclass(frozen=True)
class SubToolFinished:
    parent_id: str
    invocation_id: str


@dataclass(frozen=True)
class TurnRestarted:
    """The human submitted a new prompt."""


@dataclass(frozen=True)
class TurnEnded:
    """The transcript carried an explicit end-of-turn record."""


TranscriptEvent = Union[
    AssistantOutput, ToolStarted, ToolFinished, SubToolStarted, SubToolFinished, TurnRestarted, TurnEnded
]
