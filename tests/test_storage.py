import json
import tempfile
import unittest
from pathlib import Path

from chatbridge.storage import append_log, create_run_context, status_payload, tail_lines, write_status


class StorageTests(unittest.TestCase):
    def test_run_contexts_are_unique(self) -> None:
        with tempfile.TemporaryDirectory(dir=".") as tmp:
            runs_dir = Path(tmp)
            first = create_run_context(runs_dir)
            second = create_run_context(runs_dir)
            self.assertNotEqual(first.run_id, second.run_id)
            self.assertTrue(first.run_dir.is_dir())
            self.assertEqual(first.bridge_log, first.run_dir / "bridge.log")

    def test_status_roundtrip_and_empty_state(self) -> None:
        with tempfile.TemporaryDirectory(dir=".") as tmp:
            runs_dir = Path(tmp)
            self.assertEqual(status_payload(runs_dir), {"status": "no-sessions"})
            write_status(runs_dir, session_id="s1", state="failed", run_dir=runs_dir / "s1", error="timeout", queue_depth=0)
            payload = json.loads((runs_dir / "status.json").read_text(encoding="utf-8"))
            self.assertEqual(status_payload(runs_dir), payload)
        self.assertEqual(payload["state"], "failed")
        self.assertEqual(payload["error"], "timeout")
        self.assertEqual(payload["queue_depth"], 0)

    def test_append_log_and_tail(self) -> None:
        with tempfile.TemporaryDirectory(dir=".") as tmp:
            log = Path(tmp) / "nested" / "bridge.log"
            for idx in range(5):
                append_log(log, f"state=step{idx}\n")
            lines = tail_lines(log, 2)
            self.assertEqual(len(lines), 2)
            self.assertTrue(lines[-1].endswith(" state=step4"))
            self.assertEqual(tail_lines(Path(tmp) / "missing.log", 3), [])


if __name__ == "__main__":
    unittest.main()
