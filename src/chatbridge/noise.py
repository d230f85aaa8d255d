"""Noise heuristics for answer extraction.

The patterns are hand-tuned against one chat UI and are kept as data: the
defaults live in ``chatbridge.constants`` and any of them can be replaced from
a JSON file::

    {
      "login_patterns": ["\\\\bsign in\\\\b"],
      "upsell_patterns": [],
      "stub_patterns": ["^show thinking$"],
      "boilerplate_prefixes": ["Show thinking"],
      "boilerplate_suffix_patterns": ["Gemini can make mistakes.*$"],
      "selectors": {"containers": ["model-response .markdown"]}
    }
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from chatbridge.constants import (
    BANNER_MAX_LENGTH,
    BOILERPLATE_PREFIXES,
    BOILERPLATE_SUFFIX_PATTERNS,
    LOGIN_BANNER_PATTERNS,
    STUB_MAX_LENGTH,
    STUB_PATTERNS,
    UPSELL_PATTERNS,
)
from chatbridge.web_common import collapse_ws


@dataclass
class NoiseFilter:
    login_patterns: tuple[str, ...] = LOGIN_BANNER_PATTERNS
    upsell_patterns: tuple[str, ...] = UPSELL_PATTERNS
    stub_patterns: tuple[str, ...] = STUB_PATTERNS
    banner_max_length: int = BANNER_MAX_LENGTH
    stub_max_length: int = STUB_MAX_LENGTH
    boilerplate_prefixes: tuple[str, ...] = BOILERPLATE_PREFIXES
    boilerplate_suffix_patterns: tuple[str, ...] = BOILERPLATE_SUFFIX_PATTERNS
    _compiled: dict[str, list[re.Pattern[str]]] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        self._compiled = {
            "login": _compile_all(self.login_patterns),
            "upsell": _compile_all(self.upsell_patterns),
            "stub": _compile_all(self.stub_patterns),
            "suffix": [
                re.compile(pattern, re.IGNORECASE | re.MULTILINE | re.DOTALL)
                for pattern in self.boilerplate_suffix_patterns
            ],
        }

    def classify(self, text: str) -> str:
        """Return the noise reason for ``text`` or "" when it looks like an answer."""
        flat = collapse_ws(text)
        if not flat:
            return "empty"
        low = flat.lower()
        if len(flat) <= self.stub_max_length and _any_match(self._compiled["stub"], low):
            return "stub"
        if len(flat) <= self.banner_max_length:
            if _any_match(self._compiled["login"], low):
                return "login_banner"
            if _any_match(self._compiled["upsell"], low):
                return "upsell"
        return ""

    def is_noise(self, text: str) -> bool:
        return bool(self.classify(text))

    def strip_boilerplate(self, text: str) -> str:
        cleaned = str(text or "").strip()
        changed = True
        while changed and cleaned:
            changed = False
            for prefix in self.boilerplate_prefixes:
                if prefix and cleaned.lower().startswith(prefix.lower()):
                    cleaned = cleaned[len(prefix):].lstrip(" :\n\t")
                    changed = True
        for pattern in self._compiled["suffix"]:
            cleaned = pattern.sub("", cleaned)
        return cleaned.strip()


def load_overrides(path: Path | None) -> dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        raise SystemExit(f"Noise pattern file not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise SystemExit(f"Noise pattern file is not valid JSON: {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise SystemExit(f"Noise pattern file must hold a JSON object: {path}")
    return payload


def noise_filter_from_overrides(overrides: dict[str, Any]) -> NoiseFilter:
    kwargs: dict[str, Any] = {}
    for key in (
        "login_patterns",
        "upsell_patterns",
        "stub_patterns",
        "boilerplate_prefixes",
        "boilerplate_suffix_patterns",
    ):
        if key in overrides:
            kwargs[key] = _expect_str_tuple(overrides, key)
    for key in ("banner_max_length", "stub_max_length"):
        if key in overrides:
            kwargs[key] = int(overrides[key])
    return NoiseFilter(**kwargs)


def _expect_str_tuple(payload: dict[str, Any], key: str) -> tuple[str, ...]:
    value = payload[key]
    if not isinstance(value, list) or any(not isinstance(item, str) for item in value):
        raise SystemExit(f"'{key}' must be a list of strings")
    return tuple(value)


def _compile_all(patterns: tuple[str, ...]) -> list[re.Pattern[str]]:
    return [re.compile(pattern, re.IGNORECASE) for pattern in patterns]


def _any_match(patterns: list[re.Pattern[str]], text: str) -> bool:
    return any(pattern.search(text) for pattern in patterns)
