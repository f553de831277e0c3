from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Sequence

import httpx

from ref_assist.hooks.observability import EventLogger

from .provider_auth import build_copilot_headers

COPILOT_MODELS_URLS = (
    "https://api.githubcopilot.com/models",
    "https://api.githubcopilot.com/chat/models",
)
FALLBACK_MODELS = (
    "claude-sonnet-4.5",
    "gpt-5",
    "gpt-5-mini",
    "gpt-4.1",
    "gemini-2.5-pro",
)
DEFAULT_CATALOG_TTL_SECONDS = 300

TokenProvider = Callable[[], Awaitable[str]]


@dataclass
class ModelCatalogCache:
    ttl_seconds: int = DEFAULT_CATALOG_TTL_SECONDS
    model_ids: list[str] = field(default_factory=list)
    fetched_at: datetime | None = None

    def is_fresh(self, now: datetime | None = None) -> bool:
        if self.fetched_at is None or not self.model_ids:
            return False
        current = now or datetime.now(timezone.utc)
        return current - self.fetched_at < timedelta(seconds=self.ttl_seconds)

    def update(self, model_ids: list[str], now: datetime | None = None) -> None:
        self.model_ids = list(model_ids)
        self.fetched_at = now or datetime.now(timezone.utc)

    def clear(self) -> None:
        self.model_ids = []
        self.fetched_at = None


class ModelCatalogResolver:
    """Caches the Copilot model catalog and picks substitutes for unavailable models."""

    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        ttl_seconds: int = DEFAULT_CATALOG_TTL_SECONDS,
        catalog_urls: Sequence[str] = COPILOT_MODELS_URLS,
        fallback_models: Sequence[str] = FALLBACK_MODELS,
        request_timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: EventLogger | None = None,
    ) -> None:
        self.token_provider = token_provider
        self.catalog_urls = tuple(catalog_urls)
        self.fallback_models = tuple(fallback_models)
        self.request_timeout_seconds = request_timeout_seconds
        self.transport = transport
        self.logger = logger or EventLogger()
        self.cache = ModelCatalogCache(ttl_seconds=max(0, ttl_seconds))

    async def get_available_models(self) -> list[str]:
        if self.cache.is_fresh():
            return list(self.cache.model_ids)

        models: list[str] = []
        try:
            token = await self.token_provider()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.on_catalog("token_unavailable", error=str(exc))
        else:
            models = await self._fetch_catalog(token)

        if not models:
            self.logger.on_catalog("fallback", models=len(self.fallback_models))
            models = list(self.fallback_models)
        self.cache.update(models)
        return list(models)

    async def resolve_model(self, requested: str | None) -> str:
        available = await self.get_available_models()
        if not available:
            return requested or (self.fallback_models[0] if self.fallback_models else "")
        if requested and requested in available:
            return requested
        fallback = pick_fallback_model(available, self.fallback_models)
        if requested and fallback and fallback != requested:
            self.logger.on_catalog("model_substituted", requested=requested, model=fallback)
        return fallback or requested or available[0]

    async def find_fallback_model(self, current: str | None) -> str | None:
        available = await self.get_available_models()
        if available:
            fallback = pick_fallback_model(available, self.fallback_models)
            if fallback and fallback != current:
                return fallback
        for candidate in self.fallback_models:
            if candidate != current:
                return candidate
        return None

    def invalidate(self) -> None:
        self.cache.clear()
        self.logger.on_catalog("invalidated")

    async def _fetch_catalog(self, token: str) -> list[str]:
        headers = build_copilot_headers(token, content_type=False)
        timeout = httpx.Timeout(self.request_timeout_seconds)
        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            for url in self.catalog_urls:
                try:
                    response = await client.get(url, headers=headers)
                except httpx.HTTPError as exc:
                    self.logger.on_catalog("endpoint_failed", url=url, error=str(exc))
                    continue
                if response.status_code >= 400:
                    self.logger.on_catalog("endpoint_failed", url=url, status=response.status_code)
                    continue
                text = response.text.strip()
                if not text.startswith(("{", "[")):
                    self.logger.on_catalog("endpoint_failed", url=url, error="non-JSON body")
                    continue
                try:
                    payload = json.loads(text)
                except json.JSONDecodeError:
                    self.logger.on_catalog("endpoint_failed", url=url, error="invalid JSON")
                    continue
                models = extract_model_ids(payload)
                if models:
                    self.logger.on_catalog("fetched", url=url, models=len(models))
                    return models
        return []


def extract_model_ids(payload: Any) -> list[str]:
    if isinstance(payload, list):
        rows: Any = payload
    elif isinstance(payload, dict) and isinstance(payload.get("data"), list):
        rows = payload["data"]
    elif isinstance(payload, dict) and isinstance(payload.get("models"), list):
        rows = payload["models"]
    else:
        return []

    ids: list[str] = []
    for row in rows:
        if isinstance(row, str):
            if row:
                ids.append(row)
            continue
        if not isinstance(row, dict):
            continue
        for key in ("id", "model", "name"):
            value = row.get(key)
            if isinstance(value, str) and value:
                ids.append(value)
                break
    return ids


def pick_fallback_model(available: Sequence[str], ranking: Sequence[str] = FALLBACK_MODELS) -> str | None:
    for candidate in ranking:
        if candidate in available:
            return candidate
    return available[0] if available else None
