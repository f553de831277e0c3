from __future__ import annotations

import asyncio
import json
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from ref_assist.hooks.observability import EventLogger
from ref_assist.hooks.security import mask_sensitive_text

from .device_flow import DeviceFlowClient
from .errors import (
    AssistantError,
    ChatApiError,
    ChatAuthenticationError,
    ModelUnavailableError,
    ProtocolError,
    ProviderUnavailableError,
    RequestCancelledError,
)
from .messages import MessageInput, coerce_messages, has_vision_request, normalize_messages_for_openai
from .model_catalog import ModelCatalogResolver
from .models import ChatDelta, ChatMessage, ChatResult
from .provider_auth import build_copilot_headers
from .streaming import (
    ChunkCallback,
    StreamAccumulator,
    decode_sse_line,
    ensure_not_cancelled,
    iter_stream_deltas,
    openai_frame,
    read_text_and_close,
    until_cancelled,
)

COPILOT_CHAT_URL = "https://api.githubcopilot.com/chat/completions"
MODEL_REJECTION_STATUSES = frozenset({400, 404, 422})
MODEL_REJECTION_MARKERS = ("model", "invalid", "unsupported")
ERROR_TEXT_LIMIT = 200


@dataclass
class _Exchange:
    requested_model: str = ""
    header_model: str | None = None
    accumulator: StreamAccumulator = field(default_factory=StreamAccumulator)

    @property
    def result_model(self) -> str:
        return self.header_model or self.accumulator.model or self.requested_model


class CopilotChatClient:
    """
    Chat completions against the Copilot API.

    Every call refreshes the session token on demand, resolves the requested model
    against the live catalog and retries once with a substitute when the provider
    rejects the model.
    """

    def __init__(
        self,
        auth: DeviceFlowClient,
        catalog: ModelCatalogResolver,
        *,
        chat_url: str = COPILOT_CHAT_URL,
        temperature: float = 0.3,
        max_tokens: int = 2000,
        request_timeout_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: EventLogger | None = None,
    ) -> None:
        self.auth = auth
        self.catalog = catalog
        self.chat_url = chat_url
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.request_timeout_seconds = request_timeout_seconds
        self.transport = transport
        self.logger = logger or auth.logger

    async def chat(
        self,
        *,
        model: str | None,
        messages: MessageInput,
        stream: bool = True,
        on_chunk: ChunkCallback | None = None,
        signal: asyncio.Event | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ChatResult:
        if not stream:
            return await self._complete(
                model=model,
                messages=messages,
                signal=signal,
                temperature=temperature,
                max_tokens=max_tokens,
            )

        exchange = _Exchange()
        deltas = self._stream(
            exchange,
            model=model,
            messages=messages,
            signal=signal,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        async with aclosing(deltas):
            async for delta in deltas:
                if on_chunk is not None:
                    on_chunk(delta.delta, delta.accumulated)
        return ChatResult(content=exchange.accumulator.content, model=exchange.result_model)

    async def stream_chat(
        self,
        *,
        model: str | None,
        messages: MessageInput,
        signal: asyncio.Event | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[ChatDelta]:
        deltas = self._stream(
            _Exchange(),
            model=model,
            messages=messages,
            signal=signal,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        async with aclosing(deltas):
            async for delta in deltas:
                yield delta

    async def simple_chat(self, model: str | None, prompt: str, system_prompt: str | None = None) -> str:
        messages: list[ChatMessage] = []
        if system_prompt:
            messages.append(ChatMessage(role="system", text=system_prompt))
        messages.append(ChatMessage(role="user", text=prompt))
        result = await self.chat(model=model, messages=messages, stream=False)
        return result.content

    async def _stream(
        self,
        exchange: _Exchange,
        *,
        model: str | None,
        messages: MessageInput,
        signal: asyncio.Event | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> AsyncIterator[ChatDelta]:
        body, headers = await self._prepare(
            model=model,
            messages=messages,
            stream=True,
            signal=signal,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        self.logger.on_chat_call("copilot", body["model"], "start", stream=True)
        try:
            async with self._client() as client:
                response = await self._open(client, body, headers, signal)
                exchange.requested_model = body["model"]
                exchange.header_model = response.headers.get("x-model") or None
                try:
                    async for delta in iter_stream_deltas(
                        response,
                        decode=decode_sse_line,
                        to_frame=openai_frame,
                        accumulator=exchange.accumulator,
                        signal=signal,
                    ):
                        yield delta
                except httpx.HTTPError as exc:
                    raise ProviderUnavailableError(f"Copilot stream interrupted: {exc}") from exc
                finally:
                    await response.aclose()
            exchange.accumulator.raise_for_error()
        except RequestCancelledError:
            self.logger.on_chat_call("copilot", body["model"], "cancelled")
            raise
        except AssistantError as exc:
            self.logger.on_chat_call("copilot", body["model"], "error", error=str(exc))
            raise
        self.logger.on_chat_call(
            "copilot",
            exchange.result_model,
            "done",
            chars=len(exchange.accumulator.content),
        )

    async def _complete(
        self,
        *,
        model: str | None,
        messages: MessageInput,
        signal: asyncio.Event | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> ChatResult:
        body, headers = await self._prepare(
            model=model,
            messages=messages,
            stream=False,
            signal=signal,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        self.logger.on_chat_call("copilot", body["model"], "start", stream=False)
        async with self._client() as client:
            response = await self._open(client, body, headers, signal)
            try:
                await until_cancelled(response.aread(), signal)
            except httpx.HTTPError as exc:
                raise ProviderUnavailableError(f"Copilot request failed: {exc}") from exc
            finally:
                await response.aclose()

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProtocolError("Copilot returned a non-JSON response") from exc
        if not isinstance(payload, dict):
            raise ProtocolError("Copilot returned an unexpected response")
        result_model = payload.get("model") or response.headers.get("x-model") or body["model"]
        result = ChatResult(content=_message_content(payload), model=str(result_model), raw=payload)
        self.logger.on_chat_call("copilot", result.model, "done", chars=len(result.content))
        return result

    async def _prepare(
        self,
        *,
        model: str | None,
        messages: MessageInput,
        stream: bool,
        signal: asyncio.Event | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> tuple[dict[str, Any], dict[str, str]]:
        ensure_not_cancelled(signal)
        session_token = await until_cancelled(self.auth.get_session_token(), signal)
        resolved_model = await until_cancelled(self.catalog.resolve_model(model), signal)
        wire_messages = normalize_messages_for_openai(coerce_messages(messages))
        headers = build_copilot_headers(
            session_token,
            stream=stream,
            vision=has_vision_request(wire_messages),
        )
        body: dict[str, Any] = {
            "model": resolved_model,
            "messages": wire_messages,
            "stream": stream,
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": self.max_tokens if max_tokens is None else max_tokens,
        }
        return body, headers

    async def _open(
        self,
        client: httpx.AsyncClient,
        body: dict[str, Any],
        headers: dict[str, str],
        signal: asyncio.Event | None,
    ) -> httpx.Response:
        response = await self._send(client, body, headers, signal)
        if response.status_code < 400:
            return response

        text = await read_text_and_close(response, signal)
        if not should_retry_with_fallback(response.status_code, text):
            raise _api_error(response.status_code, text)

        rejected = body["model"]
        fallback = await until_cancelled(self.catalog.find_fallback_model(rejected), signal)
        if not fallback or fallback == rejected:
            raise ModelUnavailableError(
                format_api_error(response.status_code, text),
                model=rejected,
                status_code=response.status_code,
            )

        self.logger.on_chat_call("copilot", fallback, "retry_fallback", rejected=rejected)
        body["model"] = fallback
        response = await self._send(client, body, headers, signal)
        if response.status_code < 400:
            return response

        text = await read_text_and_close(response, signal)
        if should_retry_with_fallback(response.status_code, text):
            raise ModelUnavailableError(
                format_api_error(response.status_code, text),
                model=fallback,
                status_code=response.status_code,
            )
        raise _api_error(response.status_code, text)

    async def _send(
        self,
        client: httpx.AsyncClient,
        body: dict[str, Any],
        headers: dict[str, str],
        signal: asyncio.Event | None,
    ) -> httpx.Response:
        ensure_not_cancelled(signal)
        request = client.build_request("POST", self.chat_url, headers=headers, json=body)
        try:
            return await until_cancelled(client.send(request, stream=True), signal)
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(f"Copilot request failed: {exc}") from exc

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.request_timeout_seconds),
            transport=self.transport,
        )


def should_retry_with_fallback(status_code: int, text: str) -> bool:
    if status_code not in MODEL_REJECTION_STATUSES:
        return False
    lowered = (text or "").lower()
    return any(marker in lowered for marker in MODEL_REJECTION_MARKERS)


def format_api_error(status_code: int, text: str) -> str:
    if status_code == 401:
        return "Copilot API error (401): Authentication failed. Please reconnect to GitHub Copilot."
    if status_code == 403:
        return (
            "Copilot API error (403): Access denied. "
            "Please ensure you have an active GitHub Copilot subscription."
        )

    message = _json_error_message(text)
    if message is None:
        message = text or "Unknown error"
        if len(message) > ERROR_TEXT_LIMIT:
            message = message[:ERROR_TEXT_LIMIT] + "..."
    return mask_sensitive_text(f"Copilot API error ({status_code}): {message}")


def _api_error(status_code: int, text: str) -> ChatApiError:
    message = format_api_error(status_code, text)
    if status_code in {401, 403}:
        return ChatAuthenticationError(message, status_code=status_code)
    return ChatApiError(message, status_code=status_code)


def _json_error_message(text: str) -> str | None:
    trimmed = (text or "").strip()
    if not trimmed.startswith(("{", "[")):
        return None
    try:
        payload = json.loads(trimmed)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str) and error["message"]:
        return error["message"]
    if isinstance(payload.get("message"), str) and payload["message"]:
        return payload["message"]
    if error:
        return error if isinstance(error, str) else json.dumps(error, ensure_ascii=True)
    return None


def _message_content(payload: dict[str, Any]) -> str:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    return content if isinstance(content, str) else ""
