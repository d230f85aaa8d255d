"""Request and answer models with strict parsing of chat-completion bodies."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from chatbridge.constants import DEFAULT_MODEL, PROMPT_SEPARATOR, SYSTEM_DIRECTIVE


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str


@dataclass(frozen=True)
class IncomingRequest:
    messages: list[ChatMessage]
    model: str

    @classmethod
    def from_dict(cls, payload: Any) -> "IncomingRequest":
        if not isinstance(payload, dict):
            raise ValueError("Request body must be a JSON object")
        raw_messages = payload.get("messages")
        if not isinstance(raw_messages, list):
            raise ValueError("'messages' must be a list")

        messages: list[ChatMessage] = []
        for idx, item in enumerate(raw_messages):
            if not isinstance(item, dict):
                raise ValueError(f"messages[{idx}] must be an object")
            content = _coerce_content(item.get("content"))
            if content is None:
                continue
            messages.append(ChatMessage(role=str(item.get("role", "user") or "user"), content=content))

        model = payload.get("model", DEFAULT_MODEL)
        if not isinstance(model, str) or not model.strip():
            model = DEFAULT_MODEL
        return cls(messages=messages, model=model.strip())

    def flattened_prompt(self) -> str:
        return build_prompt([message.content for message in self.messages])


def build_prompt(contents: list[str]) -> str:
    """Join every message content in order, behind the fresh-request directive."""
    return SYSTEM_DIRECTIVE + PROMPT_SEPARATOR + PROMPT_SEPARATOR.join(contents)


def _coerce_content(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = [
            str(part.get("text", ""))
            for part in value
            if isinstance(part, dict) and part.get("type") == "text"
        ]
        return "\n".join(parts) if parts else None
    return None


@dataclass(frozen=True)
class AnswerCandidate:
    source: str
    rank: int
    order: int
    text: str
    has_input: bool = False

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "AnswerCandidate":
        return cls(
            source=str(payload.get("source", "generic") or "generic"),
            rank=int(payload.get("rank", 0) or 0),
            order=int(payload.get("order", 0) or 0),
            text=str(payload.get("text", "") or ""),
            has_input=bool(payload.get("hasInput", False)),
        )


@dataclass(frozen=True)
class ExtractedAnswer:
    text: str
    noisy: bool
    source: str = ""

    @property
    def usable(self) -> bool:
        return not self.noisy and bool(self.text.strip())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
