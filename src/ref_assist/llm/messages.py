from __future__ import annotations

import base64
from typing import Any, Iterable, Mapping

from .models import ChatMessage

MessageInput = Iterable[ChatMessage | Mapping[str, Any]]


def coerce_messages(messages: MessageInput) -> list[ChatMessage]:
    result: list[ChatMessage] = []
    for message in messages:
        if isinstance(message, ChatMessage):
            result.append(message)
        else:
            result.append(ChatMessage.model_validate(dict(message)))
    return result


def normalize_messages_for_openai(messages: Iterable[ChatMessage]) -> list[dict[str, Any]]:
    """OpenAI-compatible wire shape; image-bearing messages become text + image_url parts."""
    normalized: list[dict[str, Any]] = []
    for message in messages:
        if not message.images:
            normalized.append({"role": message.role, "content": message.text})
            continue
        parts: list[dict[str, Any]] = [{"type": "text", "text": message.text}]
        parts.extend({"type": "image_url", "image_url": {"url": image}} for image in message.images)
        normalized.append({"role": message.role, "content": parts})
    return normalized


def normalize_messages_for_ollama(messages: Iterable[ChatMessage]) -> list[dict[str, Any]]:
    normalized: list[dict[str, Any]] = []
    for message in messages:
        row: dict[str, Any] = {"role": message.role, "content": message.text}
        if message.images:
            row["images"] = [strip_data_url_prefix(image) for image in message.images]
        normalized.append(row)
    return normalized


def has_vision_request(messages: Iterable[dict[str, Any]]) -> bool:
    for message in messages:
        content = message.get("content")
        if isinstance(content, list) and any(
            isinstance(part, dict) and part.get("type") == "image_url" for part in content
        ):
            return True
    return False


def strip_data_url_prefix(value: str) -> str:
    if not value:
        return ""
    _, separator, payload = value.partition(",")
    return payload if separator else value


def encode_image_data_url(data: bytes, mime_type: str = "image/png") -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"
