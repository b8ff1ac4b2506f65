import json
import tempfile
import types
import unittest
from pathlib import Path

from fastapi import HTTPException
from pydantic import BaseModel

from agentwatch.models import CreateSessionRequest, FocusSessionRequest
from agentwatch.routers import sessions as sessions_router
from agentwatch.session_registry import SessionRegistry
from agentwatch.state_machine import SessionStateMachine
from agentwatch.tailer import LogTailer


class _RecordingNotifier:
    def __init__(self) -> None:
        self.messages: list[dict] = []

    def post(self, message: BaseModel) -> None:
        self.messages.append(message.model_dump())


class SessionsRouterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.base = Path(tmpdir.name)
        self.project_dir = self.base / "projects" / "-work-app"
        self.project_dir.mkdir(parents=True)

        self.notifier = _RecordingNotifier()
        machine = SessionStateMachine(self.notifier, tool_done_delay=0, permission_delay=60, text_idle_delay=60, tool_idle_delay=60)
        self.registry = SessionRegistry(
            self.notifier,
            storage_path=self.base / "state" / "sessions.json",
            workspace_path=str(self.base / "workspace"),
            projects_root=self.base / "projects",
            state_machine=machine,
            tailer=LogTailer(machine.process_lines, poll_interval=60, use_notifications=False),
        )
        self.addAsyncCleanup(self.registry.stop)
        self.request = types.SimpleNamespace(
            app=types.SimpleNamespace(state=types.SimpleNamespace(session_registry=self.registry))
        )

    def _write_log(self, name: str, content: str = "") -> Path:
        path = self.project_dir / name
        path.write_text(content, encoding="utf-8")
        return path

    async def test_registry_must_be_initialized(self) -> None:
        request = types.SimpleNamespace(app=types.SimpleNamespace(state=types.SimpleNamespace()))
        with self.assertRaises(HTTPException) as ctx:
            sessions_router.list_sessions(request)
        self.assertEqual(ctx.exception.status_code, 503)

    async def test_create_list_and_get(self) -> None:
        log = self._write_log(
            "abc.jsonl",
            json.dumps(
                {
                    "type": "assistant",
                    "message": {"content": [{"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "ls"}}]},
                }
            )
            + "\n",
        )

        created = sessions_router.create_session(
            self.request, CreateSessionRequest(sessionKey="abc", logPath=str(log), projectDir=str(self.project_dir))
        )
        self.assertEqual(created.sessionKey, "abc")
        self.assertEqual(created.projectLabel, "app")

        listed = sessions_router.list_sessions(self.request)
        self.assertEqual([s.id for s in listed], [created.id])
        self.assertEqual(listed[0].tools[0].status, "Running: ls")

        fetched = sessions_router.get_session(self.request, created.id)
        self.assertEqual(fetched.fileOffset, log.stat().st_size)
        self.assertIn(self.project_dir, self.registry.project_dirs)

    async def test_create_rejects_duplicates_and_non_transcripts(self) -> None:
        log = self._write_log("abc.jsonl")
        body = CreateSessionRequest(sessionKey="abc", logPath=str(log))
        sessions_router.create_session(self.request, body)

        with self.assertRaises(HTTPException) as ctx:
            sessions_router.create_session(self.request, body)
        self.assertEqual(ctx.exception.status_code, 409)

        with self.assertRaises(HTTPException) as ctx:
            sessions_router.create_session(
                self.request, CreateSessionRequest(sessionKey="x", logPath=str(self.project_dir / "notes.txt"))
            )
        self.assertEqual(ctx.exception.status_code, 400)

    async def test_unknown_session_is_404(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            sessions_router.get_session(self.request, 99)
        self.assertEqual(ctx.exception.status_code, 404)

        with self.assertRaises(HTTPException) as ctx:
            sessions_router.close_session(self.request, 99)
        self.assertEqual(ctx.exception.status_code, 404)

        with self.assertRaises(HTTPException) as ctx:
            sessions_router.focus_session(self.request, FocusSessionRequest(id=99))
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_focus_close_and_resync(self) -> None:
        created = sessions_router.create_session(
            self.request, CreateSessionRequest(sessionKey="abc", logPath=str(self._write_log("abc.jsonl")))
        )

        self.assertEqual(sessions_router.focus_session(self.request, FocusSessionRequest(id=created.id)), {"focusedId": created.id})
        self.assertTrue(sessions_router.get_session(self.request, created.id).focused)

        self.assertEqual(sessions_router.resync(self.request), {"sessions": 1})
        self.assertEqual(self.notifier.messages[-1]["type"], "existingAgents")

        self.assertEqual(sessions_router.close_session(self.request, created.id), {"status": "closed", "id": created.id})
        self.assertEqual(sessions_router.list_sessions(self.request), [])

    async def test_discover_marks_tracked_logs(self) -> None:
        tracked = self._write_log("tracked.jsonl")
        self._write_log("untracked.jsonl")
        sessions_router.create_session(self.request, CreateSessionRequest(sessionKey="tracked", logPath=str(tracked)))

        found = sessions_router.discover_sessions(self.request, max_age=3600)

        by_key = {info.sessionKey: info for info in found}
        self.assertEqual(set(by_key), {"tracked", "untracked"})
        self.assertTrue(by_key["tracked"].tracked)
        self.assertFalse(by_key["untracked"].tracked)
        self.assertEqual(by_key["untracked"].projectLabel, "app")


if __name__ == "__main__":
    unittest.main()
