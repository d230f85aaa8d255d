"""Shared helpers for the automation surface and extraction modules."""

from __future__ import annotations

import importlib.util
from typing import Any
from urllib.parse import urlparse


def collapse_ws(value: object) -> str:
    return " ".join(str(value or "").split())


def is_valid_url(text: str) -> bool:
    try:
        parsed = urlparse(text)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def playwright_available() -> bool:
    return importlib.util.find_spec("playwright.sync_api") is not None


def parse_cookie_string(raw: str, *, domain: str, expires: float) -> list[dict[str, Any]]:
    """Turn a ``name=value; name=value`` header string into Playwright cookies."""
    cookies: list[dict[str, Any]] = []
    for component in str(raw or "").split(";"):
        if "=" not in component:
            continue
        name, value = component.split("=", 1)
        name = name.strip()
        value = value.strip()
        if not name:
            continue
        cookies.append(
            {
                "name": name,
                "value": value,
                "domain": domain,
                "path": "/",
                "secure": True,
                "expires": expires,
            }
        )
    return cookies


def safe_page_title(page: object) -> str:
    title_attr = getattr(page, "title", None)
    if not callable(title_attr):
        return ""
    try:
        value = title_attr()
    except Exception:
        return ""
    return str(value or "")
