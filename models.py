"""Data model shared by the decoder, transformer and emitter."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


class Phase(str, enum.Enum):
    """Upstream phase tag of a pushed event."""

    THINKING = "thinking"
    ANSWER = "answer"
    DONE = "done"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> Phase:
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.OTHER


class RenderingMode(str, enum.Enum):
    """How thinking output is exposed to OpenAI clients."""

    TAGGED = "tagged"  # <think>...</think>
    ANNOTATED = "annotated"  # <details type="reasoning">...</details>
    VERBOSE = "verbose"  # details + <div> body + thought duration summary

    @classmethod
    def parse(cls, value: str) -> RenderingMode:
        """Parse a mode name; accepts the legacy names think/pure/raw."""
        v = (value or "").strip().lower()
        aliases = {"think": cls.TAGGED, "pure": cls.ANNOTATED, "raw": cls.VERBOSE}
        if v in aliases:
            return aliases[v]
        try:
            return cls(v)
        except ValueError:
            raise ValueError(
                f"THINK_TAGS_MODE must be one of think/pure/raw or "
                f"tagged/annotated/verbose, got {value!r}"
            ) from None


@dataclass(frozen=True)
class ErrorInfo:
    """Error payload reported inside an upstream event."""

    detail: str
    code: int = 0

    @classmethod
    def from_value(cls, value: Any) -> Optional[ErrorInfo]:
        if isinstance(value, dict):
            code = value.get("code")
            try:
                code = int(code) if code is not None else 0
            except (TypeError, ValueError):
                code = 0
            detail = value.get("detail") or value.get("message") or ""
            return cls(detail=str(detail), code=code)
        if isinstance(value, str):
            return cls(detail=value)
        return None


@dataclass(frozen=True)
class ChatEvent:
    """One decoded upstream event."""

    phase: Phase
    fragment: str = ""
    is_final: bool = False
    error: Optional[ErrorInfo] = None
    usage: Optional[Dict[str, Any]] = None


@dataclass
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


def _flatten_content(content: Any) -> str:
    """Flatten OpenAI content (string or list of text parts) into plain text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: List[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                text = part.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "\n".join(parts)
    raise ValueError("message content must be a string or a list of text parts")


@dataclass
class ChatCompletionRequest:
    """Inbound OpenAI chat completion request."""

    model: str
    messages: List[ChatMessage]
    stream: bool = False
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    @classmethod
    def from_payload(cls, body: Any) -> ChatCompletionRequest:
        """
        Validate a decoded JSON body.

        Raises ValueError with a client-facing message on malformed input.
        """
        if not isinstance(body, dict):
            raise ValueError("Invalid JSON body: expected object")

        raw_messages = body.get("messages")
        if not isinstance(raw_messages, list):
            raise ValueError("Invalid request: 'messages' field must be an array")
        if not raw_messages:
            raise ValueError("Invalid request: 'messages' array cannot be empty")

        messages: List[ChatMessage] = []
        for i, m in enumerate(raw_messages):
            if not isinstance(m, dict):
                raise ValueError(f"Invalid request: messages[{i}] must be an object")
            role = m.get("role")
            if not isinstance(role, str) or not role:
                raise ValueError(f"Invalid request: messages[{i}].role must be a string")
            messages.append(ChatMessage(role=role, content=_flatten_content(m.get("content"))))

        temperature = body.get("temperature")
        if temperature is not None and not isinstance(temperature, (int, float)):
            raise ValueError("Invalid request: 'temperature' must be a number")
        max_tokens = body.get("max_tokens")
        if max_tokens is not None and not isinstance(max_tokens, int):
            raise ValueError("Invalid request: 'max_tokens' must be an integer")

        return cls(
            model=str(body.get("model") or ""),
            messages=messages,
            stream=bool(body.get("stream", False)),
            temperature=float(temperature) if temperature is not None else None,
            max_tokens=max_tokens,
        )
