from __future__ import annotations

import asyncio
from contextlib import aclosing
from typing import AsyncIterator

import httpx

from ref_assist.hooks.observability import EventLogger

from .copilot_client import CopilotChatClient
from .device_flow import DeviceFlowClient
from .local_client import LocalModelClient
from .messages import MessageInput
from .model_catalog import ModelCatalogResolver
from .models import AssistantConfig, ChatDelta, ChatResult, ModelSelection, ProviderKind
from .router import ProviderRouter
from .secret_store import SecretStore, build_secret_store
from .streaming import ChunkCallback
from .vault import CredentialVault


class ChatService:
    """Entry point for collaborators: picks provider and model, then dispatches the chat."""

    def __init__(
        self,
        config: AssistantConfig,
        *,
        auth: DeviceFlowClient,
        catalog: ModelCatalogResolver,
        copilot: CopilotChatClient,
        local: LocalModelClient,
        router: ProviderRouter | None = None,
    ) -> None:
        self.config = config
        self.auth = auth
        self.catalog = catalog
        self.copilot = copilot
        self.local = local
        self.router = router or ProviderRouter(config)

    def select(
        self,
        *,
        task: str | None = None,
        provider: ProviderKind | str | None = None,
        model: str | None = None,
    ) -> ModelSelection:
        return self.router.select(task=task, provider_override=provider, model_override=model)

    async def send(
        self,
        messages: MessageInput,
        *,
        task: str | None = None,
        provider: ProviderKind | str | None = None,
        model: str | None = None,
        stream: bool | None = None,
        on_chunk: ChunkCallback | None = None,
        signal: asyncio.Event | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ChatResult:
        selection = self.select(task=task, provider=provider, model=model)
        use_stream = self.config.streaming_enabled if stream is None else stream
        if selection.provider.is_local:
            return await self.local.chat(
                provider=selection.provider,
                model=selection.model,
                messages=messages,
                stream=use_stream,
                on_chunk=on_chunk,
                signal=signal,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        return await self.copilot.chat(
            model=selection.model,
            messages=messages,
            stream=use_stream,
            on_chunk=on_chunk,
            signal=signal,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    async def stream(
        self,
        messages: MessageInput,
        *,
        task: str | None = None,
        provider: ProviderKind | str | None = None,
        model: str | None = None,
        signal: asyncio.Event | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[ChatDelta]:
        selection = self.select(task=task, provider=provider, model=model)
        if selection.provider.is_local:
            deltas = self.local.stream_chat(
                provider=selection.provider,
                model=selection.model,
                messages=messages,
                signal=signal,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        else:
            deltas = self.copilot.stream_chat(
                model=selection.model,
                messages=messages,
                signal=signal,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        async with aclosing(deltas):
            async for delta in deltas:
                yield delta


def build_chat_service(
    config: AssistantConfig,
    *,
    store: SecretStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    logger: EventLogger | None = None,
) -> ChatService:
    events = logger or EventLogger()
    vault = CredentialVault(
        store if store is not None else build_secret_store(config.secret_backend, path=config.secret_path),
        logger=events,
    )
    auth = DeviceFlowClient(
        vault,
        refresh_leeway_seconds=config.session_refresh_leeway_seconds,
        transport=transport,
        logger=events,
    )
    catalog = ModelCatalogResolver(
        auth.get_session_token,
        ttl_seconds=config.catalog_ttl_seconds,
        transport=transport,
        logger=events,
    )
    copilot = CopilotChatClient(
        auth,
        catalog,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
        request_timeout_seconds=config.request_timeout_seconds,
        transport=transport,
        logger=events,
    )
    local = LocalModelClient(config, transport=transport, logger=events)
    return ChatService(config, auth=auth, catalog=catalog, copilot=copilot, local=local)
