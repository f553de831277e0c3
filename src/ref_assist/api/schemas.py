from __future__ import annotations

from pydantic import BaseModel, Field

from ref_assist.llm.models import ChatMessage, GitHubUser, LocalModelInfo, ModelInfo, ProviderKind


class SessionStatusResponse(BaseModel):
    connected: bool
    user: GitHubUser | None = None


class DisconnectResponse(BaseModel):
    disconnected: bool = True


class ModelCatalogResponse(BaseModel):
    models: list[str] = Field(default_factory=list)
    ttl_seconds: int


class ModelRegistryResponse(BaseModel):
    default_model: str
    models: list[ModelInfo] = Field(default_factory=list)


class ChatRequest(BaseModel):
    messages: list[ChatMessage] = Field(min_length=1)
    task: str | None = None
    provider: ProviderKind | None = None
    model: str | None = None
    stream: bool = False
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, ge=1)


class ChatResponse(BaseModel):
    provider: ProviderKind
    model: str
    content: str


class LocalStatusResponse(BaseModel):
    provider: ProviderKind
    connected: bool
    models: list[LocalModelInfo] = Field(default_factory=list)
    error: str | None = None
