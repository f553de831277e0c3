from __future__ import annotations

import asyncio
from contextlib import aclosing
from typing import Any, AsyncIterator, Callable

import httpx

from ref_assist.hooks.observability import EventLogger
from ref_assist.hooks.security import mask_sensitive_text

from .errors import (
    AssistantError,
    LocalProviderError,
    ProtocolError,
    ProviderUnavailableError,
    RequestCancelledError,
)
from .messages import MessageInput, coerce_messages, normalize_messages_for_ollama, normalize_messages_for_openai
from .models import AssistantConfig, ChatDelta, ChatResult, ConnectionStatus, LocalModelInfo, ProviderKind
from .streaming import (
    ChunkCallback,
    StreamAccumulator,
    StreamFrame,
    decode_ndjson_line,
    decode_sse_line,
    ensure_not_cancelled,
    iter_stream_deltas,
    ollama_chat_frame,
    ollama_generate_frame,
    openai_frame,
    read_text_and_close,
    until_cancelled,
)

LMSTUDIO_NOT_RUNNING_HINT = "Not running. Start Local Server in LM Studio app (Developer tab)."
PROVIDER_LABELS = {
    ProviderKind.OLLAMA: "Ollama",
    ProviderKind.LMSTUDIO: "LM Studio",
}
JSON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}


class LocalModelClient:
    """Self-hosted chat providers: Ollama (NDJSON) and LM Studio (OpenAI-compatible SSE)."""

    def __init__(
        self,
        config: AssistantConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: EventLogger | None = None,
    ) -> None:
        self.config = config or AssistantConfig()
        self.transport = transport
        self.logger = logger or EventLogger()

    async def check_connection(self, provider: ProviderKind | str) -> ConnectionStatus:
        kind = _local_provider(provider)
        url = self._url(kind, "/api/tags" if kind == ProviderKind.OLLAMA else "/v1/models")
        try:
            async with self._client() as client:
                response = await client.get(url, headers=JSON_HEADERS)
        except httpx.HTTPError as exc:
            error = str(exc) or exc.__class__.__name__
            if kind == ProviderKind.LMSTUDIO and isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout)):
                error = LMSTUDIO_NOT_RUNNING_HINT
            return self._status(kind, connected=False, error=error)

        if response.status_code >= 400:
            return self._status(kind, connected=False, error=f"Server returned {response.status_code}")
        try:
            payload = response.json()
        except ValueError:
            return self._status(kind, connected=False, error="Invalid JSON response from server")
        return self._status(kind, connected=True, models=parse_local_models(kind, payload))

    async def list_models(self, provider: ProviderKind | str) -> list[LocalModelInfo]:
        status = await self.check_connection(provider)
        return status.models if status.connected else []

    async def chat(
        self,
        *,
        provider: ProviderKind | str,
        model: str,
        messages: MessageInput,
        stream: bool = True,
        on_chunk: ChunkCallback | None = None,
        signal: asyncio.Event | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ChatResult:
        kind = _local_provider(provider)
        path, body = self._chat_request(kind, model, messages, stream, temperature, max_tokens)
        if not stream:
            payload = await self._post_json(kind, path, body, signal)
            return ChatResult(
                content=_completion_text(kind, payload),
                model=str(payload.get("model") or model),
                raw=payload,
            )

        accumulator = StreamAccumulator()
        deltas = self._stream(kind, path, body, accumulator, signal)
        async with aclosing(deltas):
            async for delta in deltas:
                if on_chunk is not None:
                    on_chunk(delta.delta, delta.accumulated)
        return ChatResult(content=accumulator.content, model=accumulator.model or model)

    async def stream_chat(
        self,
        *,
        provider: ProviderKind | str,
        model: str,
        messages: MessageInput,
        signal: asyncio.Event | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[ChatDelta]:
        kind = _local_provider(provider)
        path, body = self._chat_request(kind, model, messages, True, temperature, max_tokens)
        deltas = self._stream(kind, path, body, StreamAccumulator(), signal)
        async with aclosing(deltas):
            async for delta in deltas:
                yield delta

    async def generate(
        self,
        *,
        model: str,
        prompt: str,
        stream: bool = False,
        on_chunk: ChunkCallback | None = None,
        signal: asyncio.Event | None = None,
    ) -> ChatResult:
        body = {"model": model, "prompt": prompt, "stream": stream}
        if not stream:
            payload = await self._post_json(ProviderKind.OLLAMA, "/api/generate", body, signal)
            response_text = payload.get("response")
            return ChatResult(
                content=response_text if isinstance(response_text, str) else "",
                model=str(payload.get("model") or model),
                raw=payload,
            )

        accumulator = StreamAccumulator()
        deltas = self._stream(ProviderKind.OLLAMA, "/api/generate", body, accumulator, signal)
        async with aclosing(deltas):
            async for delta in deltas:
                if on_chunk is not None:
                    on_chunk(delta.delta, delta.accumulated)
        return ChatResult(content=accumulator.content, model=accumulator.model or model)

    def _chat_request(
        self,
        kind: ProviderKind,
        model: str,
        messages: MessageInput,
        stream: bool,
        temperature: float | None,
        max_tokens: int | None,
    ) -> tuple[str, dict[str, Any]]:
        chat_messages = coerce_messages(messages)
        temp = self.config.temperature if temperature is None else temperature
        tokens = self.config.max_tokens if max_tokens is None else max_tokens
        if kind == ProviderKind.OLLAMA:
            return "/api/chat", {
                "model": model,
                "messages": normalize_messages_for_ollama(chat_messages),
                "stream": stream,
                "options": {"temperature": temp, "num_predict": tokens},
            }
        return "/v1/chat/completions", {
            "model": model,
            "messages": normalize_messages_for_openai(chat_messages),
            "stream": stream,
            "temperature": temp,
            "max_tokens": tokens,
        }

    async def _stream(
        self,
        kind: ProviderKind,
        path: str,
        body: dict[str, Any],
        accumulator: StreamAccumulator,
        signal: asyncio.Event | None,
    ) -> AsyncIterator[ChatDelta]:
        decode, to_frame = _stream_dialect(kind, path)
        self.logger.on_chat_call(kind.value, body["model"], "start", stream=True)
        try:
            async with self._client() as client:
                response = await self._send(client, kind, path, body, signal)
                try:
                    async for delta in iter_stream_deltas(
                        response,
                        decode=decode,
                        to_frame=to_frame,
                        accumulator=accumulator,
                        signal=signal,
                    ):
                        yield delta
                except httpx.HTTPError as exc:
                    raise ProviderUnavailableError(f"{PROVIDER_LABELS[kind]} stream interrupted: {exc}") from exc
                finally:
                    await response.aclose()
            accumulator.raise_for_error()
        except RequestCancelledError:
            self.logger.on_chat_call(kind.value, body["model"], "cancelled")
            raise
        except AssistantError as exc:
            self.logger.on_chat_call(kind.value, body["model"], "error", error=str(exc))
            raise
        self.logger.on_chat_call(kind.value, body["model"], "done", chars=len(accumulator.content))

    async def _post_json(
        self,
        kind: ProviderKind,
        path: str,
        body: dict[str, Any],
        signal: asyncio.Event | None,
    ) -> dict[str, Any]:
        self.logger.on_chat_call(kind.value, body["model"], "start", stream=False)
        async with self._client() as client:
            response = await self._send(client, kind, path, body, signal)
            try:
                await until_cancelled(response.aread(), signal)
            except httpx.HTTPError as exc:
                raise ProviderUnavailableError(f"{PROVIDER_LABELS[kind]} request failed: {exc}") from exc
            finally:
                await response.aclose()
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProtocolError(f"{PROVIDER_LABELS[kind]} returned a non-JSON response") from exc
        if not isinstance(payload, dict):
            raise ProtocolError(f"{PROVIDER_LABELS[kind]} returned an unexpected response")
        self.logger.on_chat_call(kind.value, body["model"], "done")
        return payload

    async def _send(
        self,
        client: httpx.AsyncClient,
        kind: ProviderKind,
        path: str,
        body: dict[str, Any],
        signal: asyncio.Event | None,
    ) -> httpx.Response:
        ensure_not_cancelled(signal)
        request = client.build_request(
            "POST",
            self._url(kind, path),
            headers={"Content-Type": "application/json"},
            json=body,
        )
        try:
            response = await until_cancelled(client.send(request, stream=True), signal)
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(f"{PROVIDER_LABELS[kind]} request failed: {exc}") from exc
        if response.status_code >= 400:
            text = await read_text_and_close(response, signal)
            raise LocalProviderError(
                mask_sensitive_text(f"{PROVIDER_LABELS[kind]} error: {response.status_code} - {text}"),
                status_code=response.status_code,
            )
        return response

    def _status(
        self,
        kind: ProviderKind,
        *,
        connected: bool,
        models: list[LocalModelInfo] | None = None,
        error: str | None = None,
    ) -> ConnectionStatus:
        self.logger.on_chat_call(kind.value, "", "probe", connected=connected, error=error)
        return ConnectionStatus(provider=kind, connected=connected, models=models or [], error=error)

    def _url(self, kind: ProviderKind, path: str) -> str:
        return f"{self.config.endpoint_for(kind)}{path}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.request_timeout_seconds),
            transport=self.transport,
        )


def parse_local_models(provider: ProviderKind, payload: Any) -> list[LocalModelInfo]:
    if not isinstance(payload, dict):
        return []
    models: list[LocalModelInfo] = []
    if provider == ProviderKind.OLLAMA:
        for row in payload.get("models") or []:
            if not isinstance(row, dict) or not isinstance(row.get("name"), str):
                continue
            size = row.get("size")
            modified_at = row.get("modified_at")
            models.append(
                LocalModelInfo(
                    id=row["name"],
                    name=row["name"],
                    size=size if isinstance(size, int) and not isinstance(size, bool) else None,
                    modified_at=modified_at if isinstance(modified_at, str) else None,
                )
            )
        return models
    for row in payload.get("data") or []:
        if isinstance(row, dict) and isinstance(row.get("id"), str):
            models.append(LocalModelInfo(id=row["id"], name=row["id"]))
    return models


def _local_provider(provider: ProviderKind | str) -> ProviderKind:
    try:
        kind = ProviderKind(provider)
    except ValueError as exc:
        raise ValueError(f"Unknown provider: {provider}") from exc
    if not kind.is_local:
        raise ValueError(f"Unknown provider: {kind.value}")
    return kind


def _stream_dialect(
    kind: ProviderKind,
    path: str,
) -> tuple[Callable[[str], Any | None], Callable[[Any], StreamFrame]]:
    if kind == ProviderKind.LMSTUDIO:
        return decode_sse_line, openai_frame
    if path == "/api/generate":
        return decode_ndjson_line, ollama_generate_frame
    return decode_ndjson_line, ollama_chat_frame


def _completion_text(kind: ProviderKind, payload: dict[str, Any]) -> str:
    if kind == ProviderKind.OLLAMA:
        message = payload.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        return content if isinstance(content, str) else ""
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return message["content"]
    return ""
