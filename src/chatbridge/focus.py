"""Focus arbitration: borrow OS input focus for the automation surface and give it back."""

from __future__ import annotations

import os
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from typing import Callable

from chatbridge.errors import FocusAcquisitionFailed


@dataclass
class FocusToken:
    surface_window: str = ""
    previous_window: str = ""
    acquired: bool = False
    released: bool = False
    acquired_at: float = 0.0
    notes: list[str] = field(default_factory=list)


class FocusArbiter:
    """Capability interface; subclasses talk to a concrete window system."""

    name = "base"
    # False when the surface has to type the prompt itself; the OS clipboard is left alone.
    owns_os_paste = True

    def acquire(self) -> FocusToken:
        raise NotImplementedError

    def paste(self, token: FocusToken) -> bool:
        """Send a synthetic paste. Returns False when the caller must paste itself."""
        raise NotImplementedError

    def release(self, token: FocusToken) -> None:
        raise NotImplementedError


class NullFocusArbiter(FocusArbiter):
    """Headless arbiter: no OS focus to take, the surface types the prompt through its own keyboard."""

    name = "null"
    owns_os_paste = False

    def acquire(self) -> FocusToken:
        return FocusToken(acquired=True, acquired_at=time.monotonic())

    def paste(self, token: FocusToken) -> bool:
        return False

    def release(self, token: FocusToken) -> None:
        token.released = True


class X11FocusArbiter(FocusArbiter):
    """Focus control through wmctrl/xdotool.

    Release hides the surface, waits ``settle_ms`` and only then re-activates
    the window recorded at acquisition. Activating the previous window in the
    same instant as hiding the surface can wedge some window managers.
    """

    name = "x11"

    def __init__(
        self,
        title_hint: Callable[[], str],
        *,
        settle_ms: int = 300,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._title_hint = title_hint
        self._settle_seconds = max(0, settle_ms) / 1000.0
        self._sleep = sleep

    @staticmethod
    def available() -> bool:
        if not os.getenv("DISPLAY"):
            return False
        return bool(shutil.which("xdotool")) and bool(shutil.which("wmctrl"))

    def acquire(self) -> FocusToken:
        token = FocusToken()
        try:
            token.surface_window = self._find_surface_window()
            if not token.surface_window:
                raise FocusAcquisitionFailed(
                    f"surface window not found (title hint: {self._title_hint()!r})"
                )
            active = _active_window()
            if active and active != token.surface_window:
                token.previous_window = active

            proc = _run_cmd(["wmctrl", "-ia", token.surface_window])
            if proc.returncode != 0:
                raise FocusAcquisitionFailed(proc.stderr.strip() or "wmctrl -ia failed")
            self._sleep(self._settle_seconds)

            focused = _active_window()
            if focused != token.surface_window:
                raise FocusAcquisitionFailed(
                    f"window manager did not settle: active={focused or 'none'} "
                    f"expected={token.surface_window}"
                )
        except FocusAcquisitionFailed:
            self.release(token)
            raise
        token.acquired = True
        token.acquired_at = time.monotonic()
        return token

    def paste(self, token: FocusToken) -> bool:
        if not token.acquired or token.released:
            raise FocusAcquisitionFailed("paste requested without holding focus")
        if _active_window() != token.surface_window:
            # Something stole focus after acquisition; take it back once.
            _run_cmd(["wmctrl", "-ia", token.surface_window])
            self._sleep(self._settle_seconds)
            if _active_window() != token.surface_window:
                raise FocusAcquisitionFailed("focus lost before paste")
        proc = _run_cmd(["xdotool", "key", "--clearmodifiers", "ctrl+v"])
        if proc.returncode != 0:
            raise FocusAcquisitionFailed(proc.stderr.strip() or "xdotool key ctrl+v failed")
        return True

    def release(self, token: FocusToken) -> None:
        if token.released:
            return
        token.released = True
        if token.surface_window:
            proc = _run_cmd(["xdotool", "windowminimize", token.surface_window])
            if proc.returncode != 0:
                token.notes.append(proc.stderr.strip() or "windowminimize failed")
        self._sleep(self._settle_seconds)

        previous = token.previous_window
        if not previous:
            return
        if not _window_visible(previous):
            token.notes.append(f"previous window {previous} gone; leaving focus to the window manager")
            return
        proc = _run_cmd(["wmctrl", "-ia", previous])
        if proc.returncode != 0:
            token.notes.append(proc.stderr.strip() or f"wmctrl -ia {previous} failed")

    def _find_surface_window(self) -> str:
        hint = self._title_hint().strip().lower()
        if not hint:
            return ""
        for window_id, title in _list_windows().items():
            if hint in title.lower():
                return window_id
        return ""


def build_focus_arbiter(
    backend: str,
    *,
    headless: bool,
    title_hint: Callable[[], str],
    settle_ms: int,
) -> FocusArbiter:
    if backend == "null" or headless:
        return NullFocusArbiter()
    if backend == "x11":
        if not X11FocusArbiter.available():
            raise SystemExit("Focus backend x11 requires DISPLAY plus the xdotool and wmctrl binaries.")
        return X11FocusArbiter(title_hint, settle_ms=settle_ms)
    if X11FocusArbiter.available():
        return X11FocusArbiter(title_hint, settle_ms=settle_ms)
    return NullFocusArbiter()


def normalize_window_id(raw: str) -> str:
    text = str(raw or "").strip().lower()
    if not text:
        return ""
    try:
        return f"0x{int(text, 0):08x}"
    except ValueError:
        return ""


def _active_window() -> str:
    proc = _run_cmd(["xdotool", "getactivewindow"])
    if proc.returncode != 0:
        return ""
    return normalize_window_id(proc.stdout)


def _list_windows() -> dict[str, str]:
    proc = _run_cmd(["wmctrl", "-l"])
    if proc.returncode != 0:
        return {}
    out: dict[str, str] = {}
    for line in proc.stdout.splitlines():
        parts = line.split(None, 3)
        if len(parts) < 3:
            continue
        window_id = normalize_window_id(parts[0])
        if window_id:
            out[window_id] = parts[3].strip() if len(parts) > 3 else ""
    return out


def _window_visible(window_id: str) -> bool:
    if window_id not in _list_windows():
        return False
    proc = _run_cmd(["xwininfo", "-id", window_id])
    if proc.returncode == 127:
        return True
    if proc.returncode != 0:
        return False
    return "IsViewable" in proc.stdout


def _run_cmd(cmd: list[str], timeout_seconds: float = 5.0) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            cmd,
            text=True,
            capture_output=True,
            timeout=timeout_seconds,
            check=False,
        )
    except FileNotFoundError:
        return subprocess.CompletedProcess(cmd, 127, "", f"{cmd[0]} not installed")
    except subprocess.TimeoutExpired:
        return subprocess.CompletedProcess(cmd, 124, "", f"{cmd[0]} timed out")
