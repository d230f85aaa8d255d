"""Runs the injected watch logic in a real headless Chromium against a static page."""

import unittest
from typing import Any

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from chatbridge.constants import BINDING_NAME
from chatbridge.surface_scripts import CANCEL_WATCH_JS, WATCH_JS, PageSelectors, build_page_script


FIXTURE_HTML = """
<html><head><title>fixture</title></head>
<body><main id="chat"></main></body></html>
"""

SHOW_STOP_JS = """() => {
  if (document.getElementById('stop')) return;
  const btn = document.createElement('button');
  btn.id = 'stop';
  btn.setAttribute('aria-label', 'Stop');
  btn.textContent = 'Stop';
  document.body.appendChild(btn);
}"""
HIDE_STOP_JS = "() => { const btn = document.getElementById('stop'); if (btn) btn.remove(); }"
ADD_ANSWER_JS = """(text) => {
  const host = document.createElement('model-response');
  const md = document.createElement('div');
  md.className = 'markdown';
  md.textContent = text;
  host.appendChild(md);
  document.getElementById('chat').appendChild(host);
}"""


class PageWatchTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls._playwright = sync_playwright().start()
        try:
            cls._browser = cls._playwright.chromium.launch(headless=True)
        except PlaywrightError as exc:
            cls._playwright.stop()
            raise unittest.SkipTest(f"chromium not installed: {str(exc).splitlines()[0]}")

    @classmethod
    def tearDownClass(cls) -> None:
        cls._browser.close()
        cls._playwright.stop()

    def setUp(self) -> None:
        self.messages: list[dict[str, Any]] = []
        self.page = self._browser.new_page()
        self.addCleanup(self.page.close)
        self.page.expose_binding(BINDING_NAME, lambda _source, payload: self.messages.append(payload))
        self.page.set_content(FIXTURE_HTML)
        self.page.add_script_tag(content=build_page_script(PageSelectors()))

    def _watch(self, session_id: str, *, debounce_ms: int, soft_ms: int, hard_ms: int) -> None:
        self.page.evaluate(
            WATCH_JS,
            [session_id, {"debounceMs": debounce_ms, "softMs": soft_ms, "hardMs": hard_ms}],
        )
        self.addCleanup(self.page.evaluate, CANCEL_WATCH_JS)

    def _posted(self, session_id: str, msg_type: str) -> list[dict[str, Any]]:
        return [m for m in self.messages if m.get("id") == session_id and m.get("type") == msg_type]

    def _pump_until(self, predicate, timeout_ms: int) -> bool:
        waited = 0
        while waited < timeout_ms:
            if predicate():
                return True
            self.page.wait_for_timeout(50)
            waited += 50
        return predicate()

    def test_flicker_cancels_the_debounce(self) -> None:
        self._watch("s1", debounce_ms=700, soft_ms=10000, hard_ms=20000)
        self.page.evaluate(SHOW_STOP_JS)
        self.assertTrue(self._pump_until(lambda: self._posted("s1", "STATUS"), 2000))
        self.assertEqual(self._posted("s1", "STATUS")[0]["status"], "generating")

        self.page.evaluate(HIDE_STOP_JS)
        self.page.wait_for_timeout(200)
        self.page.evaluate(SHOW_STOP_JS)
        self.page.wait_for_timeout(1000)
        self.assertEqual(self._posted("s1", "GEMINI_RESPONSE"), [])

        self.page.evaluate(ADD_ANSWER_JS, "4")
        self.page.evaluate(HIDE_STOP_JS)
        self.assertTrue(self._pump_until(lambda: self._posted("s1", "GEMINI_RESPONSE"), 3000))

        result = self._posted("s1", "GEMINI_RESPONSE")
        self.assertEqual(len(result), 1)
        self.assertEqual(result[0]["reason"], "debounce")
        self.assertTrue(result[0]["started"])
        containers = [c for c in result[0]["candidates"] if c["source"] == "container"]
        self.assertIn("4", [c["text"] for c in containers])
        self.assertEqual(len(self._posted("s1", "STATUS")), 1)

    def test_missing_indicator_only_ends_at_the_soft_ceiling(self) -> None:
        self._watch("s2", debounce_ms=100, soft_ms=1500, hard_ms=20000)
        self.page.wait_for_timeout(700)
        self.assertEqual(self._posted("s2", "GEMINI_RESPONSE"), [])

        self.assertTrue(self._pump_until(lambda: self._posted("s2", "GEMINI_RESPONSE"), 3000))
        result = self._posted("s2", "GEMINI_RESPONSE")[0]
        self.assertEqual(result["reason"], "soft_timeout")
        self.assertFalse(result["started"])
        self.assertEqual(result["candidates"], [])

    def test_hard_ceiling_collects_while_still_generating(self) -> None:
        self.page.evaluate(ADD_ANSWER_JS, "partial answer")
        self._watch("s3", debounce_ms=100, soft_ms=500, hard_ms=900)
        self.page.evaluate(SHOW_STOP_JS)

        self.assertTrue(self._pump_until(lambda: self._posted("s3", "GEMINI_RESPONSE"), 3000))
        result = self._posted("s3", "GEMINI_RESPONSE")[0]
        self.assertEqual(result["reason"], "hard_timeout")
        self.assertTrue(result["started"])
        self.assertIn("partial answer", [c["text"] for c in result["candidates"]])

    def test_messages_carry_the_watched_session_id(self) -> None:
        self._watch("old", debounce_ms=100, soft_ms=10000, hard_ms=20000)
        self._watch("new", debounce_ms=100, soft_ms=10000, hard_ms=20000)
        self.page.evaluate(SHOW_STOP_JS)
        self.assertTrue(self._pump_until(lambda: self._posted("new", "STATUS"), 2000))
        self.assertEqual(self._posted("old", "STATUS"), [])


if __name__ == "__main__":
    unittest.main()
