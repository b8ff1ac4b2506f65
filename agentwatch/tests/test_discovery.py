import os
import tempfile
import time
import unittest
from pathlib import Path

from agentwatch.discovery import (
    DiscoveryScanner,
    classify_log_file,
    discover_active_sessions,
    encode_workspace_path,
    project_dir_for_workspace,
    project_label,
)


class DiscoveryTests(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name) / "projects"
        self.project_dir = self.root / "-work-app"
        self.project_dir.mkdir(parents=True)
        self.now = time.time()

    def _write_log(self, relative: str, age: float = 0.0, content: str = "{}\n") -> Path:
        path = self.project_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        mtime = self.now - age
        os.utime(path, (mtime, mtime))
        return path

    def test_encode_workspace_path(self) -> None:
        self.assertEqual(encode_workspace_path("/home/me/app"), "-home-me-app")
        self.assertEqual(encode_workspace_path("C:\\code\\app"), "C--code-app")

    def test_project_dir_for_workspace_matches_normalized_name(self) -> None:
        fuzzy = self.root / "-srv-my-repo"
        fuzzy.mkdir()
        self.assertEqual(project_dir_for_workspace("/srv/my_repo", self.root), fuzzy)
        self.assertEqual(project_dir_for_workspace("/work/app", self.root), self.project_dir)
        self.assertEqual(project_dir_for_workspace("/nope", self.root), self.root / "-nope")
        self.assertIsNone(project_dir_for_workspace("", self.root))

    def test_project_label_falls_back_to_last_segment(self) -> None:
        self.assertEqual(project_label(self.project_dir), "app")
        self.assertEqual(project_label(Path("/x/plain")), "plain")

    def test_classify_primary_and_subagent_logs(self) -> None:
        primary = classify_log_file(self._write_log("abc.jsonl"))
        assert primary is not None
        self.assertFalse(primary.is_subagent)
        self.assertEqual(primary.session_key, "abc")
        self.assertEqual(primary.project_dir, self.project_dir)

        sub = classify_log_file(self._write_log("abc/subagents/agent-1.jsonl"))
        assert sub is not None
        self.assertTrue(sub.is_subagent)
        self.assertEqual(sub.parent_session_key, "abc")
        self.assertEqual(sub.project_dir, self.project_dir)

        self.assertIsNone(classify_log_file(self.project_dir / "missing.jsonl"))

    def test_scan_reports_only_new_recent_logs(self) -> None:
        self._write_log("existing.jsonl")
        scanner = DiscoveryScanner(active_window=300, subagent_window=30)
        self.assertEqual(scanner.seed(self.project_dir), 1)
        self.assertEqual(scanner.seed(self.project_dir), 0)
        self.assertEqual(scanner.scan(self.project_dir, now=self.now), [])

        fresh = self._write_log("fresh.jsonl")
        old = self._write_log("old.jsonl", age=3600)
        self._write_log("fresh/subagents/agent-1.jsonl", age=60)

        found = scanner.scan(self.project_dir, now=self.now)
        self.assertEqual([log.path for log in found], [fresh])
        self.assertIn(old, scanner.known_files)
        self.assertEqual(scanner.scan(self.project_dir, now=self.now), [])

    def test_find_active_ignores_known_set_but_honors_exclude(self) -> None:
        tracked = self._write_log("tracked.jsonl")
        other = self._write_log("other.jsonl", age=10)
        self._write_log("stale.jsonl", age=3600)
        scanner = DiscoveryScanner(active_window=300, subagent_window=30)
        scanner.seed(self.project_dir)

        active = scanner.find_active(self.project_dir, exclude=[tracked], now=self.now)
        self.assertEqual([log.path for log in active], [other])

    def test_discover_active_sessions_across_projects(self) -> None:
        self._write_log("a.jsonl", age=100)
        self._write_log("b.jsonl", age=10)
        self._write_log("ancient.jsonl", age=3 * 86400)
        other_project = self.root / "-work-lib"
        other_project.mkdir()
        (other_project / "c.jsonl").write_text("{}\n", encoding="utf-8")
        (self.root / "stray.txt").write_text("", encoding="utf-8")

        logs = discover_active_sessions(self.root, max_age_seconds=86400, now=self.now + 1)
        self.assertEqual([log.session_key for log in logs], ["c", "b", "a"])
        self.assertEqual(discover_active_sessions(self.root / "missing"), [])


if __name__ == "__main__":
    unittest.main()
