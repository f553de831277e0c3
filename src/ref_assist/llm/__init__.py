"""Copilot device login, credential vault, model catalog and streaming chat clients."""

from .copilot_client import CopilotChatClient, format_api_error, should_retry_with_fallback
from .device_flow import DeviceFlowClient
from .errors import (
    AccessDeniedError,
    AssistantError,
    AuthenticationInProgressError,
    ChatApiError,
    ChatAuthenticationError,
    CopilotTokenError,
    DeviceCodeExpiredError,
    DeviceFlowCancelledError,
    DeviceFlowError,
    LocalProviderError,
    ModelUnavailableError,
    ProtocolError,
    ProviderUnavailableError,
    ReauthenticationRequiredError,
    RequestCancelledError,
)
from .local_client import LocalModelClient
from .model_catalog import ModelCatalogResolver, extract_model_ids, pick_fallback_model
from .models import (
    AssistantConfig,
    AuthResult,
    ChatDelta,
    ChatMessage,
    ChatResult,
    ConnectionStatus,
    CredentialRecord,
    DeviceCode,
    DeviceFlowState,
    GitHubUser,
    LocalModelInfo,
    ModelInfo,
    ModelSelection,
    ProviderKind,
    SessionToken,
)
from .router import ProviderRouter
from .secret_store import FileSecretStore, KeyringSecretStore, MemorySecretStore, SecretStore
from .service import ChatService, build_chat_service
from .vault import COPILOT_SESSION_REALM, GITHUB_TOKEN_REALM, CredentialVault

__all__ = [
    "AccessDeniedError",
    "AssistantConfig",
    "AssistantError",
    "AuthResult",
    "AuthenticationInProgressError",
    "build_chat_service",
    "ChatApiError",
    "ChatAuthenticationError",
    "ChatDelta",
    "ChatMessage",
    "ChatResult",
    "ChatService",
    "ConnectionStatus",
    "COPILOT_SESSION_REALM",
    "CopilotChatClient",
    "CopilotTokenError",
    "CredentialRecord",
    "CredentialVault",
    "DeviceCode",
    "DeviceCodeExpiredError",
    "DeviceFlowCancelledError",
    "DeviceFlowClient",
    "DeviceFlowError",
    "DeviceFlowState",
    "extract_model_ids",
    "FileSecretStore",
    "format_api_error",
    "GITHUB_TOKEN_REALM",
    "GitHubUser",
    "KeyringSecretStore",
    "LocalModelClient",
    "LocalModelInfo",
    "LocalProviderError",
    "MemorySecretStore",
    "ModelCatalogResolver",
    "ModelInfo",
    "ModelSelection",
    "ModelUnavailableError",
    "pick_fallback_model",
    "ProtocolError",
    "ProviderKind",
    "ProviderRouter",
    "ProviderUnavailableError",
    "ReauthenticationRequiredError",
    "RequestCancelledError",
    "SecretStore",
    "SessionToken",
    "should_retry_with_fallback",
]
