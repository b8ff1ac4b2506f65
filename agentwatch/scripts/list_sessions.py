#!/usr/bin/env python3
"""List recently active Claude Code sessions across all projects.

Usage:
  agentwatch-sessions
  agentwatch-sessions --max-age 3600
  agentwatch-sessions --json
"""
from __future__ import annotations

import argparse
import json
import time
from datetime import datetime
from pathlib import Path

from agentwatch import config
from agentwatch.discovery import discover_active_sessions, project_label


def _format_age(seconds: float) -> str:
    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    return f"{seconds // 3600}h{(seconds % 3600) // 60:02d}m"


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--projects-dir", default=str(config.CLAUDE_PROJECTS_DIR))
    parser.add_argument(
        "--max-age",
        type=float,
        default=config.DISCOVERY_MAX_AGE_SECONDS,
        help="Only list logs written within this many seconds",
    )
    parser.add_argument("--json", action="store_true")
    args = parser.parse_args(argv)

    now = time.time()
    logs = discover_active_sessions(Path(args.projects_dir).expanduser(), max_age_seconds=args.max_age, now=now)

    if args.json:
        payload = [
            {
                "sessionKey": log.session_key,
                "logPath": str(log.path),
                "projectDir": str(log.project_dir),
                "projectLabel": project_label(log.project_dir),
                "lastModified": datetime.fromtimestamp(log.modified_at).isoformat(timespec="seconds"),
                "size": log.size,
            }
            for log in logs
        ]
        print(json.dumps(payload, indent=2))
        return 0

    if not logs:
        print("No recently active sessions.")
        return 0

    for log in logs:
        print(f"{_format_age(log.age(now)):>7}  {project_label(log.project_dir):<24}  {log.session_key}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
