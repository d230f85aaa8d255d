"""OS clipboard access for prompt injection."""

from __future__ import annotations

import time
from typing import Callable

import pyperclip

from chatbridge.errors import InjectionScriptError


class Clipboard:
    """Write-then-read-back clipboard wrapper that remembers what it replaced."""

    def __init__(
        self,
        *,
        copy: Callable[[str], None] = pyperclip.copy,
        paste: Callable[[], str] = pyperclip.paste,
        verify_attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._copy = copy
        self._paste = paste
        self._verify_attempts = max(1, verify_attempts)
        self._sleep = sleep

    def snapshot(self) -> str | None:
        try:
            return self._paste()
        except pyperclip.PyperclipException:
            return None

    def write(self, text: str) -> None:
        try:
            for _attempt in range(self._verify_attempts):
                self._copy(text)
                self._sleep(0.06)
                if self._paste() == text:
                    return
        except pyperclip.PyperclipException as exc:
            raise InjectionScriptError("clipboard unavailable", detail=str(exc)) from exc
        raise InjectionScriptError("clipboard write not confirmed by read-back")

    def restore(self, previous: str | None) -> None:
        if previous is None:
            return
        self._copy(previous)
