import asyncio
import json
import unittest

from pydantic import BaseModel

from agentwatch.sessions import TrackedSession
from agentwatch.state_machine import SessionStateMachine


class _RecordingNotifier:
    def __init__(self) -> None:
        self.messages: list[dict] = []

    def post(self, message: BaseModel) -> None:
        self.messages.append(message.model_dump())

    def of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.messages if m["type"] == msg_type]

    def types(self) -> list[str]:
        return [m["type"] for m in self.messages]


def _tool_use(tool_id: str, name: str, tool_input: dict | None = None) -> str:
    return json.dumps(
        {
            "type": "assistant",
            "message": {"content": [{"type": "tool_use", "id": tool_id, "name": name, "input": tool_input or {}}]},
        }
    )


def _tool_result(tool_id: str) -> str:
    return json.dumps({"type": "user", "message": {"content": [{"type": "tool_result", "tool_use_id": tool_id}]}})


def _sub_tool_use(parent_id: str, tool_id: str, name: str) -> str:
    return json.dumps(
        {
            "type": "progress",
            "parentToolUseID": parent_id,
            "data": {
                "type": "agent_progress",
                "message": {
                    "type": "assistant",
                    "message": {"content": [{"type": "tool_use", "id": tool_id, "name": name, "input": {}}]},
                },
            },
        }
    )


_TURN_END = json.dumps({"type": "system", "subtype": "turn_duration", "durationMs": 1200})
_PROMPT = json.dumps({"type": "user", "message": {"content": "try again"}})
_TEXT = json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "Done."}]}})
_SNAPSHOT = json.dumps({"type": "file-history-snapshot", "messageId": "m1", "snapshot": {}})
_SUMMARY = json.dumps({"type": "summary", "summary": "Refactor build", "leafUuid": "u1"})


class SessionStateMachineTests(unittest.IsolatedAsyncioTestCase):
    def _machine(self, **delays) -> SessionStateMachine:
        settings = {
            "tool_done_delay": 0,
            "permission_delay": 60,
            "text_idle_delay": 60,
            "tool_idle_delay": 60,
        }
        settings.update(delays)
        self.notifier = _RecordingNotifier()
        return SessionStateMachine(self.notifier, **settings)

    def _session(self) -> TrackedSession:
        session = TrackedSession(
            id=1,
            session_key="abc",
            project_dir="/tmp/projects/-work-app",
            log_path="/tmp/projects/-work-app/abc.jsonl",
        )
        self.addCleanup(session.timers.cancel_all)
        return session

    async def test_read_tool_start_reports_status(self) -> None:
        machine = self._machine()
        session = self._session()

        machine.process_lines(session, [_tool_use("t1", "Read", {"file_path": "/a/App.tsx"})])

        starts = self.notifier.of_type("agentToolStart")
        self.assertEqual(len(starts), 1)
        self.assertEqual(starts[0]["toolId"], "t1")
        self.assertEqual(starts[0]["status"], "Reading App.tsx")
        self.assertEqual(session.active_tool_ids, {"t1"})

    async def test_tool_result_sends_done_after_delay(self) -> None:
        machine = self._machine(tool_done_delay=0.03)
        session = self._session()
        machine.process_lines(session, [_tool_use("t1", "Read", {"file_path": "/a/App.tsx"})])

        machine.process_lines(session, [_tool_result("t1")])
        self.assertEqual(session.active_tool_ids, set())
        self.assertEqual(self.notifier.of_type("agentToolDone"), [])

        await asyncio.sleep(0.08)
        self.assertEqual(self.notifier.of_type("agentToolDone"), [{"type": "agentToolDone", "id": 1, "toolId": "t1"}])

    async def test_duplicate_and_unknown_ids_are_ignored(self) -> None:
        machine = self._machine()
        session = self._session()
        machine.process_lines(session, [_tool_use("t1", "Bash"), _tool_use("t1", "Bash")])
        machine.process_lines(session, [_tool_result("t1"), _tool_result("t1"), _tool_result("nope")])

        self.assertEqual(len(self.notifier.of_type("agentToolStart")), 1)
        self.assertEqual(len(self.notifier.of_type("agentToolDone")), 1)
        self.assertEqual(session.active_tool_ids, set())

    async def test_turn_end_with_no_tools_enters_waiting_once(self) -> None:
        machine = self._machine()
        session = self._session()

        machine.process_lines(session, [_TURN_END])
        machine.process_lines(session, [_TURN_END])

        self.assertTrue(session.is_waiting)
        self.assertEqual(self.notifier.of_type("agentStatus"), [{"type": "agentStatus", "id": 1, "status": "waiting"}])

    async def test_turn_end_with_tools_in_flight_waits_for_results(self) -> None:
        machine = self._machine()
        session = self._session()
        machine.process_lines(session, [_tool_use("t1", "Bash", {"command": "make"}), _TURN_END])
        self.assertFalse(session.is_waiting)
        self.assertTrue(session.turn_end_pending)

        machine.process_lines(session, [_tool_result("t1")])
        self.assertTrue(session.is_waiting)
        self.assertEqual(self.notifier.of_type("agentStatus")[-1]["status"], "waiting")

    async def test_new_output_leaves_waiting(self) -> None:
        machine = self._machine()
        session = self._session()
        machine.process_lines(session, [_TURN_END])

        machine.process_lines(session, [_PROMPT])

        self.assertFalse(session.is_waiting)
        statuses = [m["status"] for m in self.notifier.of_type("agentStatus")]
        self.assertEqual(statuses, ["waiting", "active"])

    async def test_bookkeeping_records_keep_session_waiting(self) -> None:
        machine = self._machine()
        session = self._session()
        machine.process_lines(session, [_TURN_END])

        machine.process_lines(session, [_SNAPSHOT])
        machine.process_lines(session, [_SUMMARY, _SNAPSHOT])

        self.assertTrue(session.is_waiting)
        self.assertEqual([m["status"] for m in self.notifier.of_type("agentStatus")], ["waiting"])

        machine.process_lines(session, [_SNAPSHOT, _TEXT])
        self.assertFalse(session.is_waiting)
        self.assertEqual([m["status"] for m in self.notifier.of_type("agentStatus")], ["waiting", "active"])

    async def test_bookkeeping_records_keep_permission_flag(self) -> None:
        machine = self._machine(permission_delay=0.02)
        session = self._session()
        machine.process_lines(session, [_tool_use("t1", "Bash", {"command": "rm -rf build"})])
        await asyncio.sleep(0.06)
        self.assertTrue(session.permission_requested)

        machine.process_lines(session, [_SNAPSHOT])

        self.assertTrue(session.permission_requested)
        self.assertEqual(self.notifier.of_type("agentToolPermissionClear"), [])

    async def test_prompt_clears_in_flight_tools(self) -> None:
        machine = self._machine()
        session = self._session()
        machine.process_lines(session, [_tool_use("t1", "Bash"), _tool_use("t2", "Read")])

        machine.process_lines(session, [_PROMPT])

        self.assertEqual(session.active_tool_ids, set())
        self.assertEqual(session.active_tool_statuses, {})
        self.assertIn("agentToolsClear", self.notifier.types())

    async def test_text_idle_timer_marks_waiting(self) -> None:
        machine = self._machine(text_idle_delay=0.02)
        session = self._session()

        machine.process_lines(session, [_TEXT])
        self.assertFalse(session.is_waiting)

        await asyncio.sleep(0.06)
        self.assertTrue(session.is_waiting)
        self.assertEqual(self.notifier.of_type("agentStatus")[-1]["status"], "waiting")

    async def test_tool_turn_uses_longer_idle_delay(self) -> None:
        machine = self._machine(text_idle_delay=0.02, tool_idle_delay=60)
        session = self._session()
        machine.process_lines(session, [_tool_use("t1", "Read", {"file_path": "/a/x.py"})])
        machine.process_lines(session, [_tool_result("t1"), _TEXT])

        await asyncio.sleep(0.06)
        self.assertFalse(session.is_waiting)

    async def test_stalled_tool_raises_permission(self) -> None:
        machine = self._machine(permission_delay=0.02)
        session = self._session()
        machine.process_lines(session, [_tool_use("t1", "Bash", {"command": "rm -rf build"})])

        await asyncio.sleep(0.06)
        self.assertTrue(session.permission_requested)
        self.assertEqual(session.status, "permission")
        self.assertEqual(self.notifier.of_type("agentToolPermission")[0]["toolIds"], ["t1"])

        machine.process_lines(session, [_tool_result("t1")])
        self.assertFalse(session.permission_requested)
        self.assertEqual(len(self.notifier.of_type("agentToolPermissionClear")), 1)

    async def test_exempt_tools_never_raise_permission(self) -> None:
        machine = self._machine(permission_delay=0.02)
        session = self._session()
        machine.process_lines(
            session,
            [_tool_use("t1", "Task", {"description": "explore"}), _tool_use("t2", "AskUserQuestion")],
        )

        await asyncio.sleep(0.06)
        self.assertFalse(session.permission_requested)
        self.assertEqual(self.notifier.of_type("agentToolPermission"), [])

    async def test_stalled_sub_tool_flags_parent(self) -> None:
        machine = self._machine(permission_delay=0.02)
        session = self._session()
        machine.process_lines(session, [_tool_use("task-1", "Task", {"description": "explore"})])
        machine.process_lines(session, [_sub_tool_use("task-1", "s1", "Bash")])

        await asyncio.sleep(0.06)
        self.assertEqual(
            self.notifier.of_type("subagentToolPermission"),
            [{"type": "subagentToolPermission", "id": 1, "parentToolId": "task-1"}],
        )

    async def test_sub_tools_are_nested_and_cleared_with_parent(self) -> None:
        machine = self._machine()
        session = self._session()
        machine.process_lines(session, [_tool_use("task-1", "Task", {"description": "explore"})])
        machine.process_lines(session, [_sub_tool_use("task-1", "s1", "Grep"), _sub_tool_use("ghost", "s2", "Read")])

        sub_starts = self.notifier.of_type("subagentToolStart")
        self.assertEqual(len(sub_starts), 1)
        self.assertEqual(sub_starts[0]["parentToolId"], "task-1")
        self.assertEqual(session.active_subagent_tool_ids, {"task-1": {"s1"}})

        machine.process_lines(session, [_tool_result("task-1")])
        self.assertEqual(session.active_subagent_tool_ids, {})
        self.assertEqual(self.notifier.of_type("subagentClear"), [{"type": "subagentClear", "id": 1, "parentToolId": "task-1"}])

    async def test_resend_status_replays_in_flight_tools(self) -> None:
        machine = self._machine()
        session = self._session()
        machine.process_lines(session, [_tool_use("t1", "Edit", {"file_path": "/a/b.py"})])
        self.notifier.messages.clear()

        machine.resend_status(session)

        self.assertEqual(
            self.notifier.messages,
            [{"type": "agentToolStart", "id": 1, "toolId": "t1", "toolName": "Edit", "status": "Editing b.py"}],
        )


if __name__ == "__main__":
    unittest.main()
