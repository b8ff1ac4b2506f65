"""agentwatch configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


# Where Claude Code writes one directory of transcripts per workspace
CLAUDE_PROJECTS_DIR = Path(
    os.getenv("AGENTWATCH_CLAUDE_PROJECTS_DIR", str(Path.home() / ".claude" / "projects"))
).expanduser()

# Workspace whose sessions are auto-discovered when a client connects
WORKSPACE_PATH = os.getenv("AGENTWATCH_WORKSPACE", os.getcwd())

# Persistence
STATE_DIR = Path(os.getenv("AGENTWATCH_STATE_DIR", str(Path.home() / ".agentwatch"))).expanduser()
SESSIONS_FILE = STATE_DIR / "sessions.json"

# Tailing
FILE_POLL_INTERVAL_SECONDS = _env_float("AGENTWATCH_FILE_POLL_INTERVAL_SECONDS", 2.0)
WATCH_DEBOUNCE_MS = _env_int("AGENTWATCH_WATCH_DEBOUNCE_MS", 200)

# Discovery and cleanup
PROJECT_SCAN_INTERVAL_SECONDS = _env_float("AGENTWATCH_PROJECT_SCAN_INTERVAL_SECONDS", 1.0)
CLEANUP_INTERVAL_SECONDS = _env_float("AGENTWATCH_CLEANUP_INTERVAL_SECONDS", 10.0)
ACTIVE_WINDOW_SECONDS = _env_float("AGENTWATCH_ACTIVE_WINDOW_SECONDS", 5 * 60)
SUBAGENT_WINDOW_SECONDS = _env_float("AGENTWATCH_SUBAGENT_WINDOW_SECONDS", 30)
SESSION_STALE_SECONDS = _env_float("AGENTWATCH_SESSION_STALE_SECONDS", 5 * 60)
DISCOVERY_MAX_AGE_SECONDS = _env_float("AGENTWATCH_DISCOVERY_MAX_AGE_SECONDS", 24 * 60 * 60)

# State machine timing
TOOL_DONE_DELAY_SECONDS = _env_float("AGENTWATCH_TOOL_DONE_DELAY_SECONDS", 0.3)
PERMISSION_DELAY_SECONDS = _env_float("AGENTWATCH_PERMISSION_DELAY_SECONDS", 7.0)
TEXT_IDLE_DELAY_SECONDS = _env_float("AGENTWATCH_TEXT_IDLE_DELAY_SECONDS", 5.0)
TOOL_IDLE_DELAY_SECONDS = _env_float("AGENTWATCH_TOOL_IDLE_DELAY_SECONDS", 60.0)

# Outbound notifications
NOTIFICATION_QUEUE_SIZE = _env_int("AGENTWATCH_NOTIFICATION_QUEUE_SIZE", 1000)

# Observability
OTEL_ENABLED = _env_bool("AGENTWATCH_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("AGENTWATCH_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("AGENTWATCH_OTEL_SERVICE_NAME", "agentwatch")
PROM_PORT = _env_int("AGENTWATCH_PROM_PORT", 9464)

# Server settings
HOST = os.getenv("AGENTWATCH_HOST", "127.0.0.1")
PORT = int(os.getenv("AGENTWATCH_PORT", "8000"))

# CORS
FRONTEND_ORIGIN = os.getenv("AGENTWATCH_FRONTEND_ORIGIN", "http://localhost:3000")
