"""Automation surface: one persistent Chromium page driven through Playwright.

Playwright's sync API is bound to the thread that started it, so every method
here must be called from the session worker thread.
"""

from __future__ import annotations

import time
from pathlib import Path
from threading import Lock
from typing import Any, Callable
from urllib.parse import urlparse

from chatbridge.constants import (
    BINDING_NAME,
    DEFAULT_COOKIE_DOMAIN,
    MSG_LOGIN_STATUS,
    MSG_STATUS,
    TITLE_MARK,
)
from chatbridge.errors import InjectionScriptError, NotReady
from chatbridge.storage import append_log
from chatbridge.surface_scripts import CHECK_LOGIN_JS, PageSelectors, build_page_script
from chatbridge.web_common import parse_cookie_string, safe_page_title


MessageHandler = Callable[[dict[str, Any]], None]

_COOKIE_LIFETIME_SECONDS = 365 * 24 * 3600


class AutomationSurface:
    def __init__(
        self,
        *,
        target_url: str,
        user_data_dir: Path,
        selectors: PageSelectors,
        headless: bool = False,
        cookies: str = "",
        cookie_domain: str = DEFAULT_COOKIE_DOMAIN,
        log_path: Path | None = None,
    ) -> None:
        self.target_url = target_url
        self.user_data_dir = user_data_dir
        self.selectors = selectors
        self.headless = headless
        self._cookies = cookies
        self._cookie_domain = cookie_domain
        self._log_path = log_path
        self._handlers: list[MessageHandler] = []
        self._handlers_lock = Lock()
        self._playwright: Any = None
        self._context: Any = None
        self._page: Any = None
        self.loaded = False
        self.logged_in = False
        self.last_status = ""

    def start(self) -> None:
        from playwright.sync_api import sync_playwright

        self.user_data_dir.mkdir(parents=True, exist_ok=True)
        self._playwright = sync_playwright().start()
        self._context = _launch_context(
            self._playwright,
            user_data_dir=self.user_data_dir,
            headless=self.headless,
        )
        self._context.expose_binding(BINDING_NAME, self._on_binding)
        self._context.add_init_script(build_page_script(self.selectors))
        if self._cookies.strip():
            self.inject_cookies(self._cookies)
        self._page = self._context.pages[0] if self._context.pages else self._context.new_page()
        self.load(self.target_url)

    def close(self) -> None:
        try:
            if self._context is not None:
                self._context.close()
        finally:
            self._context = None
            self._page = None
            if self._playwright is not None:
                self._playwright.stop()
                self._playwright = None
            self.loaded = False

    def load(self, url: str) -> None:
        if self._page is None:
            raise NotReady("automation surface has not been started")
        from playwright.sync_api import Error as PlaywrightError

        self.loaded = False
        try:
            self._page.goto(url, wait_until="domcontentloaded", timeout=45000)
        except PlaywrightError as exc:
            self._log(f"load_failed url={url} error={exc}")
            raise NotReady(f"could not load {url}: {exc}") from exc
        self.loaded = True
        self._log(f"loaded url={self._page.url} title={self.page_title()!r}")

    def inject_cookies(self, raw: str) -> int:
        cookies = parse_cookie_string(
            raw,
            domain=self._cookie_domain,
            expires=time.time() + _COOKIE_LIFETIME_SECONDS,
        )
        if cookies:
            self._context.add_cookies(cookies)
        self._log(f"cookies_injected count={len(cookies)}")
        return len(cookies)

    def evaluate_script(self, code: str, arg: Any = None) -> Any:
        if self._page is None:
            raise NotReady("automation surface has not been started")
        from playwright.sync_api import Error as PlaywrightError

        try:
            if arg is None:
                return self._page.evaluate(code)
            return self._page.evaluate(code, arg)
        except PlaywrightError as exc:
            raise InjectionScriptError("page script raised", detail=str(exc).splitlines()[0]) from exc

    def on_message(self, handler: MessageHandler) -> Callable[[], None]:
        with self._handlers_lock:
            self._handlers.append(handler)

        def unsubscribe() -> None:
            with self._handlers_lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return unsubscribe

    def pump(self, ms: int) -> None:
        """Yield to Playwright so binding callbacks from the page get dispatched."""
        if self._page is None:
            time.sleep(ms / 1000.0)
            return
        self._page.wait_for_timeout(ms)

    def press_paste(self) -> None:
        self._page.keyboard.press("Control+V")

    def insert_text(self, text: str) -> None:
        """Type into the focused element without going through the OS clipboard."""
        if self._page is None:
            raise NotReady("automation surface has not been started")
        self._page.keyboard.insert_text(text)

    def is_ready(self) -> bool:
        if self._page is None or not self.loaded:
            return False
        host = urlparse(self._page.url).hostname or ""
        if host.startswith("accounts."):
            self.logged_in = False
            return False
        try:
            result = self.evaluate_script(CHECK_LOGIN_JS)
        except InjectionScriptError:
            return False
        if result is None:
            # Page script not installed yet (e.g. still navigating).
            return False
        self.logged_in = bool(result)
        return self.logged_in

    def window_title_hint(self) -> str:
        return TITLE_MARK.strip()

    def page_title(self) -> str:
        return safe_page_title(self._page)

    def _on_binding(self, _source: Any, payload: Any) -> None:
        if not isinstance(payload, dict):
            return
        msg_type = str(payload.get("type", ""))
        if msg_type == MSG_LOGIN_STATUS:
            self.logged_in = bool(payload.get("loggedIn", False))
        elif msg_type == MSG_STATUS:
            self.last_status = str(payload.get("status", ""))
        with self._handlers_lock:
            handlers = list(self._handlers)
        for handler in handlers:
            handler(payload)

    def _log(self, message: str) -> None:
        if self._log_path is not None:
            append_log(self._log_path, f"surface {message}")


def _launch_context(playwright_obj: Any, *, user_data_dir: Path, headless: bool) -> Any:
    kwargs: dict[str, Any] = {
        "headless": headless,
        "viewport": {"width": 1280, "height": 860},
        "args": [
            "--window-size=1280,860",
            "--window-position=80,60",
            "--disable-blink-features=AutomationControlled",
        ],
    }
    try:
        return playwright_obj.chromium.launch_persistent_context(str(user_data_dir), channel="chrome", **kwargs)
    except Exception:
        return playwright_obj.chromium.launch_persistent_context(str(user_data_dir), **kwargs)
