"""Per-request session state machine and the single automation worker."""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator

from chatbridge.clipboard import Clipboard
from chatbridge.config import DetectorConfig
from chatbridge.constants import (
    DEFAULT_MODEL,
    MODEL_LABELS,
    STATE_COMPLETED,
    STATE_FAILED,
    STATE_FOCUS_ACQUIRING,
    STATE_IDLE,
    STATE_INJECTING,
    STATE_QUEUED,
    STATE_WATCHING,
)
from chatbridge.detector import CompletionDetector
from chatbridge.errors import (
    BridgeError,
    FocusAcquisitionFailed,
    InjectionScriptError,
    LedgerUnavailable,
    NotReady,
    SessionCancelled,
)
from chatbridge.focus import FocusArbiter, FocusToken
from chatbridge.models import ExtractedAnswer
from chatbridge.noise import NoiseFilter
from chatbridge.storage import RUNS_DIR, RunContext, append_log, create_run_context, write_json, write_status
from chatbridge.surface_scripts import FOCUS_INPUT_JS, INPUT_LENGTH_JS, NEW_CHAT_JS, SUBMIT_JS, SWITCH_MODEL_JS


_TEXT = "text"
_ERROR = "error"
_DONE = "done"

_PASTE_SETTLE_MS = 150


@dataclass
class Session:
    id: str
    prompt: str
    model: str
    run: RunContext
    state: str = STATE_QUEUED
    created_at: float = 0.0
    started_at: float = 0.0
    focus_acquired_at: float = 0.0
    finished_at: float = 0.0
    answer: str = ""
    extraction: ExtractedAnswer | None = None
    error: BridgeError | None = None
    _events: "queue.Queue[tuple[str, Any]]" = field(default_factory=queue.Queue, repr=False)
    _cancelled: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def stream(
        self,
        *,
        poll_seconds: float = 0.25,
        should_abort: Callable[[], bool] | None = None,
    ) -> Iterator[str]:
        """Yield answer text increments; raise the session's BridgeError on failure.

        ``should_abort`` is checked between polls; when it returns True the
        session is cancelled and the iterator ends without a result.
        """
        while True:
            try:
                kind, payload = self._events.get(timeout=poll_seconds)
            except queue.Empty:
                if should_abort is not None and should_abort():
                    self.cancel()
                    return
                continue
            if kind == _TEXT:
                yield payload
            elif kind == _ERROR:
                raise payload
            else:
                return

    def _deliver_text(self, text: str) -> None:
        self._events.put((_TEXT, text))
        self._events.put((_DONE, None))

    def _deliver_error(self, error: BridgeError) -> None:
        self._events.put((_ERROR, error))


@dataclass
class _Held:
    token: FocusToken | None = None
    clipboard_taken: bool = False
    previous_clipboard: str | None = None


class SessionController:
    """Owns the automation surface; runs sessions one at a time in FIFO order.

    The worker thread is the only thread that touches the surface, the
    clipboard and the focus arbiter. ``start`` launches it and the surface is
    started from inside it.
    """

    def __init__(
        self,
        surface: Any,
        arbiter: FocusArbiter,
        *,
        clipboard: Clipboard | None = None,
        noise_filter: NoiseFilter | None = None,
        detector_config: DetectorConfig | None = None,
        generic_min_length: int = 20,
        runs_dir: Path = RUNS_DIR,
        new_chat: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._surface = surface
        self._arbiter = arbiter
        self._clipboard = clipboard or Clipboard()
        self._noise = noise_filter or NoiseFilter()
        self._detector_cfg = detector_config or DetectorConfig()
        self._generic_min_length = generic_min_length
        self._runs_dir = runs_dir
        self._new_chat = new_chat
        self._clock = clock
        self._server_log = runs_dir / "server.log"
        self._queue: "queue.Queue[Session | None]" = queue.Queue()
        self._lock = threading.Lock()
        self._pending = 0
        self._active: Session | None = None
        self._thread: threading.Thread | None = None
        self._started = threading.Event()
        self._startup_error = ""

    @property
    def active_session(self) -> Session | None:
        with self._lock:
            return self._active

    @property
    def queue_depth(self) -> int:
        with self._lock:
            return self._pending

    def start(self, *, wait_seconds: float = 60.0) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._worker_loop, name="chatbridge-worker", daemon=True)
        self._thread.start()
        self._started.wait(timeout=wait_seconds)

    def stop(self, *, wait_seconds: float = 10.0) -> None:
        if self._thread is None:
            return
        self._queue.put(None)
        self._thread.join(timeout=wait_seconds)
        self._thread = None

    def submit(self, prompt: str, model: str = DEFAULT_MODEL) -> Session:
        try:
            run = create_run_context(self._runs_dir)
            session = Session(id=run.run_id, prompt=prompt, model=model, run=run, created_at=self._clock())
            write_json(run.prompt_path, {"session_id": session.id, "model": model, "prompt": prompt})
        except OSError as exc:
            self._log(self._server_log, f"session_rejected error={exc}")
            raise LedgerUnavailable(f"could not create session ledger under {self._runs_dir}: {exc}") from exc
        with self._lock:
            self._pending += 1
            depth = self._pending
        self._log(run.bridge_log, f"state={STATE_QUEUED} model={model} prompt_chars={len(prompt)}")
        self._log(self._server_log, f"session_queued id={session.id} queue_depth={depth}")
        self._queue.put(session)
        return session

    def _worker_loop(self) -> None:
        try:
            self._surface.start()
            self._log(self._server_log, "surface_started")
        except Exception as exc:
            self._startup_error = f"{type(exc).__name__}: {exc}"
            self._log(self._server_log, f"surface_start_failed error={self._startup_error}")
        finally:
            self._started.set()
        try:
            while True:
                session = self._queue.get()
                if session is None:
                    break
                with self._lock:
                    self._pending -= 1
                try:
                    self._run_session(session)
                except Exception as exc:
                    detail = f"{type(exc).__name__}: {exc}"
                    self._log(self._server_log, f"worker_error id={session.id} error={detail}")
                    session._deliver_error(InjectionScriptError("unexpected worker failure", detail=detail))
        finally:
            try:
                self._surface.close()
            except Exception as exc:
                self._log(self._server_log, f"surface_close_failed error={exc}")

    def _run_session(self, session: Session) -> None:
        if session.cancelled:
            session.finished_at = self._clock()
            self._finish(session, error=SessionCancelled())
            return

        with self._lock:
            self._active = session
        held = _Held()
        answer: ExtractedAnswer | None = None
        error: BridgeError | None = None
        session.started_at = self._clock()
        try:
            answer = self._drive(session, held)
        except BridgeError as exc:
            error = exc
        except Exception as exc:
            error = InjectionScriptError("unexpected automation failure", detail=f"{type(exc).__name__}: {exc}")
        finally:
            try:
                self._cleanup(session, held)
            finally:
                session.finished_at = self._clock()
                with self._lock:
                    self._active = None
        self._finish(session, answer=answer, error=error)

    def _drive(self, session: Session, held: _Held) -> ExtractedAnswer:
        self._transition(session, STATE_FOCUS_ACQUIRING)
        session.focus_acquired_at = self._clock()
        self._ensure_ready()
        detector = CompletionDetector(
            self._surface,
            self._noise,
            self._detector_cfg,
            generic_min_length=self._generic_min_length,
            clock=self._clock,
            log=lambda message: self._log(session.run.bridge_log, message),
        )
        self._prepare_page(session)
        baseline = detector.baseline()
        held.token = self._acquire_focus(session)

        self._transition(session, STATE_INJECTING)
        if self._arbiter.owns_os_paste:
            held.previous_clipboard = self._clipboard.snapshot()
            held.clipboard_taken = True
            self._clipboard.write(session.prompt)
            if not self._arbiter.paste(held.token):
                self._surface.press_paste()
            via = "clipboard"
        else:
            self._surface.insert_text(session.prompt)
            via = "keyboard"
        self._surface.pump(_PASTE_SETTLE_MS)
        length = self._surface.evaluate_script(INPUT_LENGTH_JS)
        if not isinstance(length, (int, float)) or length <= 0:
            raise InjectionScriptError("paste did not reach the input box", detail=f"input_length={length}")
        how = self._surface.evaluate_script(SUBMIT_JS)
        self._log(session.run.bridge_log, f"submitted via={how} input={via} input_length={int(length)}")

        self._transition(session, STATE_WATCHING)
        return detector.run(
            session.id,
            baseline=baseline,
            on_phase=lambda state: self._transition(session, state),
        )

    def _ensure_ready(self) -> None:
        if self._startup_error:
            raise NotReady(f"Automation surface failed to start: {self._startup_error}")
        if not self._surface.is_ready():
            raise NotReady()

    def _prepare_page(self, session: Session) -> None:
        log = session.run.bridge_log
        if self._new_chat:
            opened = self._surface.evaluate_script(NEW_CHAT_JS)
            self._log(log, f"new_chat={'yes' if opened else 'not-found'}")
        labels = _model_labels(session.model)
        if labels:
            try:
                switched = self._surface.evaluate_script(SWITCH_MODEL_JS, list(labels))
            except InjectionScriptError as exc:
                switched = False
                self._log(log, f"model_switch_error={exc.message}")
            self._log(log, f"model_switch model={session.model} switched={bool(switched)}")
        self._surface.evaluate_script(FOCUS_INPUT_JS)

    def _acquire_focus(self, session: Session) -> FocusToken:
        try:
            return self._arbiter.acquire()
        except FocusAcquisitionFailed as exc:
            self._log(session.run.bridge_log, f"focus_retry reason={exc.message}")
        return self._arbiter.acquire()

    def _cleanup(self, session: Session, held: _Held) -> None:
        log = session.run.bridge_log
        if held.token is not None:
            try:
                self._arbiter.release(held.token)
            except Exception as exc:
                self._log(log, f"focus_release_failed error={exc}")
            for note in held.token.notes:
                self._log(log, f"focus_note {note}")
        if held.clipboard_taken:
            try:
                self._clipboard.restore(held.previous_clipboard)
            except Exception as exc:
                self._log(log, f"clipboard_restore_failed error={exc}")

    def _transition(self, session: Session, state: str, *, error: str = "") -> None:
        session.state = state
        self._log(session.run.bridge_log, f"state={state}")
        try:
            write_status(
                self._runs_dir,
                session_id=session.id,
                state=state,
                run_dir=session.run.run_dir,
                error=error,
                queue_depth=self.queue_depth,
            )
        except OSError as exc:
            self._log(self._server_log, f"status_write_failed id={session.id} error={exc}")

    def _finish(
        self,
        session: Session,
        *,
        answer: ExtractedAnswer | None = None,
        error: BridgeError | None = None,
    ) -> None:
        """Record the outcome, then hand it to the waiting client.

        Delivery happens even when the ledger cannot be written.
        """
        try:
            self._record_outcome(session, answer=answer, error=error)
        finally:
            if session.cancelled and not isinstance(error, SessionCancelled):
                self._log(session.run.bridge_log, "result_discarded reason=client_gone")
            elif error is not None:
                session._deliver_error(error)
            else:
                session._deliver_text(session.answer)
            self._log(session.run.bridge_log, f"controller={STATE_IDLE}")

    def _record_outcome(
        self,
        session: Session,
        *,
        answer: ExtractedAnswer | None,
        error: BridgeError | None,
    ) -> None:
        if error is None:
            session.extraction = answer
            session.answer = answer.text if answer is not None else ""
            self._transition(session, STATE_COMPLETED)
        else:
            session.error = error
            self._log(session.run.bridge_log, f"error={error.code} message={error.message}")
            self._transition(session, STATE_FAILED, error=error.code)

        report: dict[str, Any] = {
            "session_id": session.id,
            "model": session.model,
            "state": session.state,
            "answer": session.answer,
            "extraction": session.extraction.to_dict() if session.extraction is not None else None,
            "error": error.to_dict() if error is not None else None,
            "cancelled": session.cancelled,
            "duration_seconds": round(max(0.0, session.finished_at - session.started_at), 3)
            if session.started_at
            else 0.0,
        }
        try:
            write_json(session.run.report_path, report)
        except OSError as exc:
            self._log(self._server_log, f"report_write_failed id={session.id} error={exc}")
        self._log(
            self._server_log,
            f"session_finished id={session.id} state={session.state}"
            + (f" error={error.code}" if error is not None else ""),
        )

    @staticmethod
    def _log(path: Path, message: str) -> None:
        try:
            append_log(path, message)
        except OSError:
            return


def _model_labels(model: str) -> tuple[str, ...]:
    low = str(model or "").lower()
    for family, labels in MODEL_LABELS.items():
        if family in low:
            return labels
    return ()
