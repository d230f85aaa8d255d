"""Ceiling state and evaluation helpers for the completion wait loop."""

from __future__ import annotations

from dataclasses import dataclass

from chatbridge.config import DetectorConfig


@dataclass
class DetectorWatchState:
    begin_ts: float
    started: bool = False
    started_ts: float = 0.0


def mark_started(state: DetectorWatchState, *, now_ts: float) -> None:
    if not state.started:
        state.started = True
        state.started_ts = now_ts


def evaluate_timeout(state: DetectorWatchState, *, cfg: DetectorConfig, now_ts: float) -> str:
    elapsed = now_ts - state.begin_ts
    if elapsed > max(0.1, cfg.hard_ceiling_seconds):
        return "ran_too_long"
    if not state.started and elapsed > max(0.1, cfg.soft_ceiling_seconds):
        return "never_started"
    return ""

