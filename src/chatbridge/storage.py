"""File storage helpers for session ledgers and server logs."""

from __future__ import annotations

import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any


RUNS_DIR = Path("runs")

_WRITE_LOCK = Lock()


@dataclass(frozen=True)
class RunContext:
    run_id: str
    run_dir: Path
    bridge_log: Path
    prompt_path: Path
    report_path: Path


def create_run_context(runs_dir: Path = RUNS_DIR) -> RunContext:
    runs_dir.mkdir(parents=True, exist_ok=True)
    run_dir: Path | None = None
    run_id = ""
    for _attempt in range(100):
        base = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        run_id = f"{base}-{secrets.token_hex(3)}"
        candidate = runs_dir / run_id
        if candidate.exists():
            continue
        candidate.mkdir(parents=True, exist_ok=False)
        run_dir = candidate
        break
    if run_dir is None:
        raise RuntimeError("Could not allocate unique run directory")
    return RunContext(
        run_id=run_id,
        run_dir=run_dir,
        bridge_log=run_dir / "bridge.log",
        prompt_path=run_dir / "prompt.json",
        report_path=run_dir / "report.json",
    )


def append_log(path: Path, message: str) -> None:
    stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    path.parent.mkdir(parents=True, exist_ok=True)
    with _WRITE_LOCK, path.open("a", encoding="utf-8") as fh:
        fh.write(f"{stamp} {message.rstrip()}\n")


def write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with _WRITE_LOCK, path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, ensure_ascii=False)
        fh.write("\n")


def write_status(
    runs_dir: Path,
    *,
    session_id: str,
    state: str,
    run_dir: Path,
    error: str = "",
    queue_depth: int | None = None,
) -> None:
    payload: dict[str, Any] = {
        "session_id": session_id,
        "state": state,
        "run_dir": str(run_dir),
        "updated_at_utc": datetime.now(timezone.utc).isoformat(),
    }
    if error:
        payload["error"] = error
    if queue_depth is not None:
        payload["queue_depth"] = queue_depth
    write_json(runs_dir / "status.json", payload)


def status_payload(runs_dir: Path = RUNS_DIR) -> dict[str, Any]:
    path = runs_dir / "status.json"
    if not path.exists():
        return {"status": "no-sessions"}
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def tail_lines(path: Path, line_count: int) -> list[str]:
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8") as fh:
        lines = fh.readlines()
    return [line.rstrip("\n") for line in lines[-line_count:]]
