"""Upstream event decoding and OpenAI-style SSE emission."""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import (
    Any,
    AsyncGenerator,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Optional,
    Tuple,
)

from models import ChatEvent, ErrorInfo, Phase, RenderingMode
from transformer import ContentTransformer

log = logging.getLogger("zai_proxy")

DATA_PREFIX = "data:"
FINISH_REASON = "stop"

ErrorAccessor = Callable[[Dict[str, Any]], Any]


def _nested(obj: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


# Checked in order; the first present error wins.
ERROR_ACCESSORS: Tuple[ErrorAccessor, ...] = (
    lambda obj: _nested(obj, "error"),
    lambda obj: _nested(obj, "data", "error"),
    lambda obj: _nested(obj, "data", "data", "error"),
)


def is_done_data_line(line: str) -> bool:
    """True for the upstream's end-of-stream sentinel, whitespace tolerated."""
    if not line.startswith(DATA_PREFIX):
        return False
    return line[len(DATA_PREFIX):].strip() == "[DONE]"


def find_error(obj: Dict[str, Any]) -> Optional[ErrorInfo]:
    """Return the first error found in top-level, data, then data.data."""
    for accessor in ERROR_ACCESSORS:
        value = accessor(obj)
        if value is None:
            continue
        err = ErrorInfo.from_value(value)
        if err is not None:
            return err
    return None


def decode_event_line(line: str) -> Optional[ChatEvent]:
    """
    Decode one upstream line into a ChatEvent.

    Returns None for lines that carry nothing: non-data lines, empty
    payloads, [DONE], and payloads that are not a JSON object (logged).
    """
    line = line.rstrip("\r\n")
    if not line.startswith(DATA_PREFIX) or is_done_data_line(line):
        return None
    payload = line[len(DATA_PREFIX):].strip()
    if not payload:
        return None

    try:
        obj = json.loads(payload)
    except json.JSONDecodeError as e:
        log.warning("Skipping malformed upstream event: %s payload=%r", e, payload[:200])
        return None
    if not isinstance(obj, dict):
        log.warning("Skipping non-object upstream event: payload=%r", payload[:200])
        return None

    data = obj.get("data")
    if not isinstance(data, dict):
        data = {}

    phase = Phase.parse(data.get("phase"))
    delta = data.get("delta_content")
    edit = data.get("edit_content")
    fragment = delta if isinstance(delta, str) and delta else edit
    if not isinstance(fragment, str):
        fragment = ""

    usage = data.get("usage")
    return ChatEvent(
        phase=phase,
        fragment=fragment,
        is_final=bool(data.get("done")) or phase is Phase.DONE,
        error=find_error(obj),
        usage=usage if isinstance(usage, dict) and usage else None,
    )


def sse_data(obj: Dict[str, Any]) -> bytes:
    """Encode dict as an SSE data event; keeps non-ASCII and markup unescaped."""
    return ("data: " + json.dumps(obj, ensure_ascii=False) + "\n\n").encode("utf-8")


def sse_done() -> bytes:
    """SSE [DONE] event."""
    return b"data: [DONE]\n\n"


class ResponseEmitter:
    """Turn upstream lines into OpenAI chat completion output for one request."""

    def __init__(
        self,
        model: str,
        mode: RenderingMode,
        completion_id: str | None = None,
    ) -> None:
        self.model = model
        self.completion_id = completion_id or f"chatcmpl-{uuid.uuid4().hex}"
        self.transformer = ContentTransformer(mode)
        self.usage: Optional[Dict[str, Any]] = None

    def _chunk(
        self,
        delta: Dict[str, Any],
        finish_reason: str | None = None,
    ) -> Dict[str, Any]:
        chunk: Dict[str, Any] = {
            "id": self.completion_id,
            "object": "chat.completion.chunk",
            "created": int(time.time()),
            "model": self.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }
        if finish_reason is not None and self.usage:
            chunk["usage"] = self.usage
        return chunk

    def role_frame(self) -> bytes:
        return sse_data(self._chunk({"role": "assistant"}))

    def content_frame(self, content: str) -> bytes:
        return sse_data(self._chunk({"content": content}))

    def finish_frame(self) -> bytes:
        return sse_data(self._chunk({}, FINISH_REASON))

    async def events(self, lines: AsyncIterator[str]) -> AsyncIterator[ChatEvent]:
        """Decode upstream lines, skipping the ones that carry no event."""
        async for line in lines:
            event = decode_event_line(line)
            if event is None:
                continue
            log.debug(
                "Upstream event id=%s phase=%s fragment_len=%d done=%s",
                self.completion_id,
                event.phase.value,
                len(event.fragment),
                event.is_final,
            )
            if event.usage:
                self.usage = event.usage
            yield event

    async def stream(
        self,
        lines: AsyncIterator[str],
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncGenerator[bytes, None]:
        """
        Emit role frame, content frames, then finish frame and [DONE].

        Finish frame and [DONE] are written exactly once, whether the upstream
        completed, reported an error, or simply ran out of lines.
        """
        yield self.role_frame()

        completed = False
        async for event in self.events(lines):
            if event.error is not None:
                log.warning(
                    "Upstream error id=%s code=%s detail=%s",
                    self.completion_id,
                    event.error.code,
                    event.error.detail,
                )
                completed = True
                break

            content = self.transformer.extract(event)
            if content:
                yield self.content_frame(content)

            if event.is_final:
                log.debug("Completion signal received id=%s", self.completion_id)
                completed = True
                break

            if is_disconnected is not None and await is_disconnected():
                log.info("Client disconnected, stopping stream id=%s", self.completion_id)
                return

        if not completed:
            log.warning(
                "Upstream stream ended without completion signal id=%s", self.completion_id
            )
        yield self.finish_frame()
        yield sse_done()

    async def aggregate(self, lines: AsyncIterator[str]) -> Dict[str, Any]:
        """Collect the whole answer and build a chat.completion object."""
        parts = []
        completed = False
        async for event in self.events(lines):
            if event.error is not None:
                log.warning(
                    "Upstream error id=%s code=%s detail=%s",
                    self.completion_id,
                    event.error.code,
                    event.error.detail,
                )
                completed = True
                break
            content = self.transformer.extract(event)
            if content:
                parts.append(content)
            if event.is_final:
                completed = True
                break

        if not completed:
            log.warning(
                "Upstream stream ended without completion signal id=%s", self.completion_id
            )
        full = "".join(parts)
        log.debug("Collected response id=%s length=%d", self.completion_id, len(full))

        return {
            "id": self.completion_id,
            "object": "chat.completion",
            "created": int(time.time()),
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": full},
                    "finish_reason": FINISH_REASON,
                }
            ],
            "usage": self.usage
            or {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
        }
