from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


class ProviderKind(str, Enum):
    COPILOT = "copilot"
    OLLAMA = "ollama"
    LMSTUDIO = "lmstudio"

    @property
    def is_local(self) -> bool:
        return self in {ProviderKind.OLLAMA, ProviderKind.LMSTUDIO}


class DeviceFlowState(str, Enum):
    IDLE = "idle"
    CODE_REQUESTED = "code_requested"
    AWAITING_APPROVAL = "awaiting_approval"
    EXCHANGING = "exchanging"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    FAILED = "failed"


class CredentialRecord(BaseModel):
    realm: str
    secret: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    stored_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class DeviceCode(BaseModel):
    user_code: str
    verification_uri: str
    expires_in: int


class SessionToken(BaseModel):
    value: str
    expires_at: datetime

    @classmethod
    def from_token_response(cls, payload: dict[str, Any]) -> "SessionToken":
        expires_at = payload.get("expires_at")
        if isinstance(expires_at, (int, float)) and not isinstance(expires_at, bool):
            expiry = datetime.fromtimestamp(float(expires_at), tz=timezone.utc)
        else:
            refresh_in = payload.get("refresh_in")
            seconds = int(refresh_in) if isinstance(refresh_in, int) else 1500
            expiry = datetime.now(timezone.utc) + timedelta(seconds=seconds)
        return cls(value=payload["token"], expires_at=expiry)


class GitHubUser(BaseModel):
    id: int | None = None
    login: str | None = None
    name: str | None = None
    avatar_url: str | None = None


class AuthResult(BaseModel):
    access_token: str
    session_token: SessionToken
    user: GitHubUser | None = None


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    text: str = Field(default="", validation_alias=AliasChoices("text", "content"))
    images: tuple[str, ...] = ()

    @field_validator("text", mode="before")
    @classmethod
    def _none_text_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("images", mode="before")
    @classmethod
    def _none_images_to_empty(cls, value: Any) -> Any:
        return () if value is None else value


@dataclass(frozen=True)
class ChatDelta:
    delta: str
    accumulated: str


class ChatResult(BaseModel):
    content: str
    model: str
    raw: dict[str, Any] | None = None


class LocalModelInfo(BaseModel):
    id: str
    name: str
    size: int | None = None
    modified_at: str | None = None


class ConnectionStatus(BaseModel):
    provider: ProviderKind
    connected: bool
    models: list[LocalModelInfo] = Field(default_factory=list)
    error: str | None = None


class ModelInfo(BaseModel):
    id: str
    name: str
    vendor: str
    description: str = ""
    premium: float = 1.0
    default: bool = False


@dataclass(frozen=True)
class ModelSelection:
    provider: ProviderKind
    model: str


class AssistantConfig(BaseModel):
    default_provider: ProviderKind = ProviderKind.COPILOT
    default_model: str | None = "grok-code-fast-1"
    task_models: dict[str, str] = Field(default_factory=dict)
    temperature: float = 0.3
    max_tokens: int = 2000
    ollama_endpoint: str = "http://localhost:11434"
    ollama_model: str | None = None
    lmstudio_endpoint: str = "http://localhost:1234"
    lmstudio_model: str | None = None
    translate_language: str = "zh"
    streaming_enabled: bool = True
    request_timeout_seconds: float = 60.0
    catalog_ttl_seconds: int = 300
    session_refresh_leeway_seconds: int = 300
    secret_backend: Literal["keyring", "file", "memory"] = "keyring"
    secret_path: str | None = None

    @field_validator("ollama_endpoint", "lmstudio_endpoint")
    @classmethod
    def _validate_endpoint(cls, value: str) -> str:
        cleaned = value.strip().rstrip("/")
        if not cleaned.startswith(("http://", "https://")):
            raise ValueError(f"endpoint must be an http(s) URL: {value}")
        return cleaned

    @model_validator(mode="after")
    def validate_ranges(self) -> "AssistantConfig":
        if not 0.0 <= self.temperature <= 2.0:
            raise ValueError("temperature must be between 0 and 2")
        if self.max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")
        if self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        if self.catalog_ttl_seconds < 0:
            raise ValueError("catalog_ttl_seconds must be >= 0")
        if self.session_refresh_leeway_seconds < 0:
            raise ValueError("session_refresh_leeway_seconds must be >= 0")
        return self

    def endpoint_for(self, provider: ProviderKind) -> str:
        if provider == ProviderKind.OLLAMA:
            return self.ollama_endpoint
        if provider == ProviderKind.LMSTUDIO:
            return self.lmstudio_endpoint
        raise ValueError(f"no local endpoint for provider: {provider.value}")
