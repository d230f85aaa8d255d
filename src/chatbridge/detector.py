"""Completion detection and answer extraction.

The page script watches the generation indicator and reports raw candidate
texts; choosing the answer happens here so the heuristics stay testable.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Iterable

from chatbridge.config import DetectorConfig
from chatbridge.constants import MSG_RESPONSE, MSG_STATUS, STATE_EXTRACTING, SYSTEM_DIRECTIVE
from chatbridge.detector_watchdog import (
    DetectorWatchState,
    evaluate_timeout,
    mark_started,
)
from chatbridge.errors import BridgeError, BridgeTimeout, EmptyResponse, InjectionScriptError
from chatbridge.models import AnswerCandidate, ExtractedAnswer
from chatbridge.noise import NoiseFilter
from chatbridge.surface_scripts import CANCEL_WATCH_JS, COLLECT_JS, WATCH_JS
from chatbridge.web_common import collapse_ws


def container_baseline(raw_candidates: Iterable[Any]) -> dict[int, int]:
    """Per container rank, the number of matches already on the page."""
    baseline: dict[int, int] = {}
    for cand in _parse_candidates(raw_candidates):
        if cand.source != "container":
            continue
        baseline[cand.rank] = max(baseline.get(cand.rank, 0), cand.order + 1)
    return baseline


def extract_answer(
    raw_candidates: Iterable[Any],
    noise_filter: NoiseFilter,
    *,
    generic_min_length: int = 20,
    baseline: dict[int, int] | None = None,
) -> ExtractedAnswer:
    """Pick the answer text out of collected candidates.

    Container matches win over the generic scan. Within containers the first
    selector (lowest rank) that yields clean text wins, preferring the most
    recently appended element. Elements that existed before submission
    (``baseline``) are ignored.
    """
    candidates = _parse_candidates(raw_candidates)
    baseline = baseline or {}
    fallback = ""

    containers = [
        cand
        for cand in candidates
        if cand.source == "container" and cand.order >= baseline.get(cand.rank, 0)
    ]
    for rank in sorted({cand.rank for cand in containers}):
        ranked = sorted(
            (cand for cand in containers if cand.rank == rank),
            key=lambda cand: cand.order,
            reverse=True,
        )
        for cand in ranked:
            text = noise_filter.strip_boilerplate(cand.text)
            if not text:
                continue
            if noise_filter.is_noise(text) or _is_prompt_echo(text):
                fallback = fallback or text
                continue
            return ExtractedAnswer(text=text, noisy=False, source=f"container:{rank}")

    generic = sorted(
        (cand for cand in candidates if cand.source == "generic" and not cand.has_input),
        key=lambda cand: cand.order,
        reverse=True,
    )
    for cand in generic:
        text = noise_filter.strip_boilerplate(cand.text)
        if len(text) < generic_min_length:
            continue
        if noise_filter.is_noise(text) or _is_prompt_echo(text):
            fallback = fallback or text
            continue
        return ExtractedAnswer(text=text, noisy=False, source="generic")

    return ExtractedAnswer(text=fallback, noisy=True, source="")


class CompletionDetector:
    """Waits for one session's generation to settle and extracts the answer.

    Must run on the thread that owns the surface; ``surface.pump`` is what lets
    page messages reach the handler registered here.
    """

    def __init__(
        self,
        surface: Any,
        noise_filter: NoiseFilter,
        config: DetectorConfig,
        *,
        generic_min_length: int = 20,
        clock: Callable[[], float] = time.monotonic,
        log: Callable[[str], None] | None = None,
    ) -> None:
        self._surface = surface
        self._noise = noise_filter
        self._cfg = config
        self._generic_min_length = generic_min_length
        self._clock = clock
        self._log = log or (lambda _msg: None)

    def baseline(self) -> dict[int, int]:
        try:
            raw = self._surface.evaluate_script(COLLECT_JS)
        except InjectionScriptError as exc:
            self._log(f"baseline_collect_failed error={exc.message}")
            return {}
        return container_baseline(raw or [])

    def run(
        self,
        session_id: str,
        *,
        baseline: dict[int, int] | None = None,
        on_phase: Callable[[str], None] | None = None,
    ) -> ExtractedAnswer:
        inbox: list[dict[str, Any]] = []

        def handler(message: dict[str, Any]) -> None:
            if message.get("type") not in {MSG_RESPONSE, MSG_STATUS}:
                return
            if "id" in message and message.get("id") != session_id:
                self._log(f"late_message_discarded id={message.get('id')} type={message.get('type')}")
                return
            inbox.append(message)

        unsubscribe = self._surface.on_message(handler)
        try:
            state = DetectorWatchState(begin_ts=self._clock())
            self._surface.evaluate_script(
                WATCH_JS,
                [
                    session_id,
                    {
                        "debounceMs": self._cfg.debounce_ms,
                        "softMs": int(self._cfg.soft_ceiling_seconds * 1000),
                        "hardMs": int(self._cfg.hard_ceiling_seconds * 1000),
                    },
                ],
            )
            while True:
                self._surface.pump(self._cfg.poll_ms)
                now = self._clock()
                while inbox:
                    message = inbox.pop(0)
                    if message.get("type") == MSG_STATUS:
                        if message.get("status") == "generating":
                            mark_started(state, now_ts=now)
                            self._log(f"generation_started id={session_id}")
                        continue
                    return self._resolve(message, state, baseline=baseline, on_phase=on_phase)

                reason = evaluate_timeout(state, cfg=self._cfg, now_ts=now)
                if reason == BridgeTimeout.NEVER_STARTED:
                    raise BridgeTimeout(reason, self._cfg.soft_ceiling_seconds)
                if reason == BridgeTimeout.RAN_TOO_LONG:
                    return self._final_collect(baseline=baseline, on_phase=on_phase)
        finally:
            unsubscribe()
            try:
                self._surface.evaluate_script(CANCEL_WATCH_JS)
            except BridgeError as exc:
                self._log(f"cancel_watch_failed error={exc.message}")

    def _resolve(
        self,
        message: dict[str, Any],
        state: DetectorWatchState,
        *,
        baseline: dict[int, int] | None,
        on_phase: Callable[[str], None] | None,
    ) -> ExtractedAnswer:
        if message.get("error"):
            raise InjectionScriptError("watch script failed", detail=str(message.get("detail", "")))
        reason = str(message.get("reason", ""))
        started = bool(message.get("started", state.started))
        if not started and reason == "soft_timeout":
            raise BridgeTimeout(BridgeTimeout.NEVER_STARTED, self._cfg.soft_ceiling_seconds)

        if on_phase is not None:
            on_phase(STATE_EXTRACTING)
        answer = extract_answer(
            message.get("candidates") or [],
            self._noise,
            generic_min_length=self._generic_min_length,
            baseline=baseline,
        )
        self._log(f"extracted reason={reason} source={answer.source or '-'} usable={answer.usable}")
        if answer.usable:
            return answer
        if reason == "hard_timeout":
            raise BridgeTimeout(BridgeTimeout.RAN_TOO_LONG, self._cfg.hard_ceiling_seconds)
        raise EmptyResponse()

    def _final_collect(
        self,
        *,
        baseline: dict[int, int] | None,
        on_phase: Callable[[str], None] | None,
    ) -> ExtractedAnswer:
        if on_phase is not None:
            on_phase(STATE_EXTRACTING)
        raw = self._surface.evaluate_script(COLLECT_JS) or []
        answer = extract_answer(
            raw,
            self._noise,
            generic_min_length=self._generic_min_length,
            baseline=baseline,
        )
        self._log(f"hard_ceiling_collect source={answer.source or '-'} usable={answer.usable}")
        if answer.usable:
            return answer
        raise BridgeTimeout(BridgeTimeout.RAN_TOO_LONG, self._cfg.hard_ceiling_seconds)


def _parse_candidates(raw_candidates: Iterable[Any]) -> list[AnswerCandidate]:
    out: list[AnswerCandidate] = []
    for item in raw_candidates or []:
        if not isinstance(item, dict):
            continue
        try:
            out.append(AnswerCandidate.from_dict(item))
        except (TypeError, ValueError):
            continue
    return out


def _is_prompt_echo(text: str) -> bool:
    return collapse_ws(SYSTEM_DIRECTIVE)[:60].lower() in collapse_ws(text).lower()
