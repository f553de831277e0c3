from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

import httpx

from ref_assist.hooks.security import mask_sensitive_text

from .errors import ChatApiError, RequestCancelledError
from .models import ChatDelta

ChunkCallback = Callable[[str, str], None]
T = TypeVar("T")


@dataclass
class StreamFrame:
    delta: str = ""
    model: str | None = None
    error: str | None = None


class StreamAccumulator:
    """Collects deltas across frames and remembers the last model and error seen."""

    def __init__(self) -> None:
        self.content = ""
        self.model: str | None = None
        self.error: str | None = None

    def feed(self, frame: StreamFrame) -> ChatDelta | None:
        if frame.model:
            self.model = frame.model
        if frame.error:
            self.error = frame.error
            return None
        if not frame.delta:
            return None
        self.content += frame.delta
        return ChatDelta(delta=frame.delta, accumulated=self.content)

    def raise_for_error(self) -> None:
        # A mid-stream error only fails the call when nothing was produced.
        if self.error and not self.content:
            raise ChatApiError(self.error)


def decode_sse_line(line: str) -> Any | None:
    stripped = line.strip()
    if not stripped.startswith("data:"):
        return None
    data = stripped[5:].strip()
    if not data or data == "[DONE]":
        return None
    try:
        return json.loads(data)
    except json.JSONDecodeError:
        return None


def decode_ndjson_line(line: str) -> Any | None:
    stripped = line.strip()
    if not stripped:
        return None
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        return None


def openai_frame(payload: Any) -> StreamFrame:
    if not isinstance(payload, dict):
        return StreamFrame()
    frame = StreamFrame(model=_text(payload.get("model")) or None)
    error = frame_error(payload)
    if error:
        frame.error = error
        return frame
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        delta = choices[0].get("delta")
        if isinstance(delta, dict):
            frame.delta = _text(delta.get("content"))
    return frame


def ollama_chat_frame(payload: Any) -> StreamFrame:
    if not isinstance(payload, dict):
        return StreamFrame()
    frame = StreamFrame(model=_text(payload.get("model")) or None, error=frame_error(payload))
    message = payload.get("message")
    if frame.error is None and isinstance(message, dict):
        frame.delta = _text(message.get("content"))
    return frame


def ollama_generate_frame(payload: Any) -> StreamFrame:
    if not isinstance(payload, dict):
        return StreamFrame()
    frame = StreamFrame(model=_text(payload.get("model")) or None, error=frame_error(payload))
    if frame.error is None:
        frame.delta = _text(payload.get("response"))
    return frame


def frame_error(payload: dict[str, Any]) -> str | None:
    error = payload.get("error")
    if not error:
        return None
    if isinstance(error, dict):
        message = error.get("message")
        text = message if isinstance(message, str) and message else json.dumps(error, ensure_ascii=True)
    else:
        text = str(error)
    return mask_sensitive_text(text)


async def read_text_and_close(response: httpx.Response, signal: asyncio.Event | None = None) -> str:
    try:
        await until_cancelled(response.aread(), signal)
    finally:
        await response.aclose()
    return response.text


def ensure_not_cancelled(signal: asyncio.Event | None) -> None:
    if signal is not None and signal.is_set():
        raise RequestCancelledError()


async def until_cancelled(operation: Awaitable[T], signal: asyncio.Event | None) -> T:
    """Await a network operation, abandoning it as soon as ``signal`` is set."""
    if signal is None:
        return await operation
    task = asyncio.ensure_future(operation)
    waiter = asyncio.ensure_future(signal.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            await asyncio.wait({task})
    if task.cancelled():
        raise RequestCancelledError()
    return task.result()


async def iter_stream_deltas(
    response: httpx.Response,
    *,
    decode: Callable[[str], Any | None],
    to_frame: Callable[[Any], StreamFrame],
    accumulator: StreamAccumulator,
    signal: asyncio.Event | None = None,
) -> AsyncIterator[ChatDelta]:
    lines = response.aiter_lines()
    while True:
        ensure_not_cancelled(signal)
        line = await until_cancelled(anext(lines, None), signal)
        if line is None:
            return
        payload = decode(line)
        if payload is None:
            continue
        delta = accumulator.feed(to_frame(payload))
        if delta is not None:
            yield delta


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""
