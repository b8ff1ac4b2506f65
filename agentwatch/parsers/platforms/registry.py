"""Transcript parser registry for platform-specific implementations."""
from __future__ import annotations

from pathlib import Path

from agentwatch.parsers.events import TranscriptEvent
from agentwatch.parsers.platforms.claude_code import parser as claude_code_parser


def parse_transcript_line(path: Path | str, line: str) -> list[TranscriptEvent]:
    """Parse one transcript line by delegating to the matching platform parser.

    Current implementation routes Claude Code `.jsonl` transcripts to the
    Claude-specific parser module. Additional platforms can be registered here.
    """
    if Path(path).suffix.lower() == ".jsonl":
        return claude_code_parser.parse_line(line)
    return []
