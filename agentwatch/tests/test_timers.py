import asyncio
import unittest

from agentwatch.timers import SessionTimers


class SessionTimersTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.timers = SessionTimers()
        self.addCleanup(self.timers.cancel_all)
        self.fired: list[str] = []

    async def test_rearming_replaces_pending_timer(self) -> None:
        self.timers.arm_waiting_timer(0.02, self.fired.append, "first")
        self.timers.arm_waiting_timer(0.02, self.fired.append, "second")
        self.assertEqual(len(self.timers), 1)

        await asyncio.sleep(0.06)
        self.assertEqual(self.fired, ["second"])
        self.assertEqual(len(self.timers), 0)

    async def test_cancel_prevents_callback(self) -> None:
        self.timers.arm_permission_timer(0.02, self.fired.append, "permission")
        self.assertTrue(self.timers.cancel_permission_timer())
        self.assertFalse(self.timers.cancel_permission_timer())

        await asyncio.sleep(0.05)
        self.assertEqual(self.fired, [])

    async def test_zero_delay_runs_immediately(self) -> None:
        self.timers.arm("now", 0, self.fired.append, "now")
        self.assertEqual(self.fired, ["now"])
        self.assertFalse(self.timers.is_armed("now"))

    async def test_tool_done_notifications_are_independent(self) -> None:
        self.timers.schedule_tool_done("t1", 0.02, self.fired.append, "t1")
        self.timers.schedule_tool_done("t2", 0.02, self.fired.append, "t2")
        self.timers.arm_waiting_timer(0.02, self.fired.append, "waiting")

        self.timers.cancel_tool_done_notifications()
        await asyncio.sleep(0.05)
        self.assertEqual(self.fired, ["waiting"])

    async def test_failing_callback_is_contained(self) -> None:
        def _boom() -> None:
            raise RuntimeError("boom")

        self.timers.arm("bad", 0.01, _boom)
        self.timers.arm("good", 0.02, self.fired.append, "good")
        with self.assertLogs("agentwatch.timers", level="ERROR"):
            await asyncio.sleep(0.05)
        self.assertEqual(self.fired, ["good"])


if __name__ == "__main__":
    unittest.main()
