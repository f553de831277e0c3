from __future__ import annotations

import json
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import StreamingResponse

from ref_assist.api.schemas import (
    ChatRequest,
    ChatResponse,
    DisconnectResponse,
    LocalStatusResponse,
    ModelCatalogResponse,
    ModelRegistryResponse,
    SessionStatusResponse,
)
from ref_assist.llm import model_registry
from ref_assist.llm.errors import (
    AssistantError,
    ChatAuthenticationError,
    ProviderUnavailableError,
    ReauthenticationRequiredError,
)
from ref_assist.llm.models import ChatDelta, ProviderKind
from ref_assist.llm.service import ChatService, build_chat_service
from ref_assist.settings import load_config


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (ReauthenticationRequiredError, ChatAuthenticationError)):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, ProviderUnavailableError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, AssistantError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _sse(event: str, payload: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=True)}\n\n"


def create_app(service: ChatService | None = None) -> FastAPI:
    chat_service = service or build_chat_service(load_config())

    app = FastAPI(title="Ref Assist API", version="0.1.0")
    app.state.chat_service = chat_service

    @app.get("/auth/session", response_model=SessionStatusResponse)
    async def get_session() -> SessionStatusResponse:
        connected = await chat_service.auth.has_valid_session()
        return SessionStatusResponse(connected=connected, user=chat_service.auth.stored_user())

    @app.post("/auth/disconnect", response_model=DisconnectResponse)
    async def disconnect() -> DisconnectResponse:
        chat_service.auth.disconnect()
        return DisconnectResponse()

    @app.get("/llm/models", response_model=ModelCatalogResponse)
    async def list_models(force_refresh: bool = Query(default=False)) -> ModelCatalogResponse:
        if force_refresh:
            chat_service.catalog.invalidate()
        models = await chat_service.catalog.get_available_models()
        return ModelCatalogResponse(models=models, ttl_seconds=chat_service.catalog.cache.ttl_seconds)

    @app.get("/llm/registry", response_model=ModelRegistryResponse)
    async def list_registry() -> ModelRegistryResponse:
        return ModelRegistryResponse(
            default_model=model_registry.get_default_model().id,
            models=model_registry.list_models(),
        )

    @app.post("/chat", response_model=ChatResponse)
    async def chat(payload: ChatRequest):
        try:
            selection = chat_service.select(task=payload.task, provider=payload.provider, model=payload.model)
        except ValueError as exc:
            raise _http_error(exc) from exc

        if not payload.stream:
            try:
                result = await chat_service.send(
                    payload.messages,
                    provider=selection.provider,
                    model=selection.model,
                    stream=False,
                    temperature=payload.temperature,
                    max_tokens=payload.max_tokens,
                )
            except (AssistantError, ValueError) as exc:
                raise _http_error(exc) from exc
            return ChatResponse(provider=selection.provider, model=result.model, content=result.content)

        deltas = chat_service.stream(
            payload.messages,
            provider=selection.provider,
            model=selection.model,
            temperature=payload.temperature,
            max_tokens=payload.max_tokens,
        )
        # Errors before the first delta map to a status code.
        try:
            first: ChatDelta | None = await anext(deltas, None)
        except (AssistantError, ValueError) as exc:
            raise _http_error(exc) from exc

        async def event_generator() -> AsyncIterator[str]:
            accumulated = ""
            try:
                if first is not None:
                    accumulated = first.accumulated
                    yield _sse("delta", {"delta": first.delta})
                async for delta in deltas:
                    accumulated = delta.accumulated
                    yield _sse("delta", {"delta": delta.delta})
            except AssistantError as exc:
                yield _sse("error", {"message": str(exc)})
                return
            finally:
                await deltas.aclose()
            yield _sse("done", {"provider": selection.provider.value, "content": accumulated})

        return StreamingResponse(event_generator(), media_type="text/event-stream")

    @app.get("/local/{provider}/status", response_model=LocalStatusResponse)
    async def local_status(provider: ProviderKind) -> LocalStatusResponse:
        if not provider.is_local:
            raise HTTPException(status_code=400, detail=f"not a local provider: {provider.value}")
        status = await chat_service.local.check_connection(provider)
        return LocalStatusResponse.model_validate(status.model_dump())

    return app


app = create_app()
