"""Pydantic models matching the client protocol and the persisted session file."""
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Literal, Optional

# ── Persistence ─────────────────────────────────────────────────────

class PersistedSession(BaseModel):
    id: int
    sessionKey: str
    logPath: str
    projectDir: str


# ── REST payloads ───────────────────────────────────────────────────

class ToolActivity(BaseModel):
    toolId: str
    toolName: str = ""
    status: str = ""
    parentToolId: Optional[str] = None


class SessionSummary(BaseModel):
    id: int
    sessionKey: str
    logPath: str
    projectDir: str
    projectLabel: str = ""
    isSubagent: bool = False
    parentSessionKey: Optional[str] = None
    status: str = "active"  # "active" | "waiting" | "permission"
    focused: bool = False
    fileOffset: int = 0
    tools: list[ToolActivity] = Field(default_factory=list)


class CreateSessionRequest(BaseModel):
    sessionKey: str
    logPath: str
    projectDir: Optional[str] = None
    pid: Optional[int] = None


class FocusSessionRequest(BaseModel):
    id: Optional[int] = None


class CloseSessionRequest(BaseModel):
    id: int


class DiscoveredSessionInfo(BaseModel):
    sessionKey: str
    logPath: str
    projectDir: str
    projectLabel: str = ""
    isSubagent: bool = False
    lastModified: float = 0.0
    size: int = 0
    tracked: bool = False


# ── Outbound notifications ──────────────────────────────────────────

class SessionMeta(BaseModel):
    sessionKey: str
    projectLabel: str = ""
    projectDir: str = ""
    isSubagent: bool = False
    parentSessionKey: Optional[str] = None


class AgentCreated(BaseModel):
    type: Literal["agentCreated"] = "agentCreated"
    id: int
    sessionKey: str
    projectLabel: str = ""
    isSubagent: bool = False


class AgentClosed(BaseModel):
    type: Literal["agentClosed"] = "agentClosed"
    id: int


class AgentReassigned(BaseModel):
    type: Literal["agentReassigned"] = "agentReassigned"
    id: int
    sessionKey: str
    logPath: str


class ExistingAgents(BaseModel):
    type: Literal["existingAgents"] = "existingAgents"
    agents: list[int] = Field(default_factory=list)
    agentMeta: dict[str, SessionMeta] = Field(default_factory=dict)


class AgentToolStart(BaseModel):
    type: Literal["agentToolStart"] = "agentToolStart"
    id: int
    toolId: str
    toolName: str = ""
    status: str = ""


class AgentToolDone(BaseModel):
    type: Literal["agentToolDone"] = "agentToolDone"
    id: int
    toolId: str


class AgentToolsClear(BaseModel):
    type: Literal["agentToolsClear"] = "agentToolsClear"
    id: int


class AgentStatus(BaseModel):
    type: Literal["agentStatus"] = "agentStatus"
    id: int
    status: Literal["active", "waiting"]


class AgentToolPermission(BaseModel):
    type: Literal["agentToolPermission"] = "agentToolPermission"
    id: int
    toolIds: list[str] = Field(default_factory=list)


class AgentToolPermissionClear(BaseModel):
    type: Literal["agentToolPermissionClear"] = "agentToolPermissionClear"
    id: int


class SubagentToolStart(BaseModel):
    type: Literal["subagentToolStart"] = "subagentToolStart"
    id: int
    parentToolId: str
    toolId: str
    toolName: str = ""
    status: str = ""


class SubagentToolDone(BaseModel):
    type: Literal["subagentToolDone"] = "subagentToolDone"
    id: int
    parentToolId: str
    toolId: str


class SubagentClear(BaseModel):
    type: Literal["subagentClear"] = "subagentClear"
    id: int
    parentToolId: str


class SubagentToolPermission(BaseModel):
    type: Literal["subagentToolPermission"] = "subagentToolPermission"
    id: int
    parentToolId: str
