from __future__ import annotations


class AssistantError(RuntimeError):
    """Base class for provider, auth and protocol failures with user-facing messages."""


class ProviderUnavailableError(AssistantError):
    pass


class ProtocolError(AssistantError):
    pass


class DeviceFlowError(AssistantError):
    pass


class DeviceCodeExpiredError(DeviceFlowError):
    def __init__(self, message: str = "Device code expired. Please try again.") -> None:
        super().__init__(message)


class AccessDeniedError(DeviceFlowError):
    def __init__(self, message: str = "Access denied by user.") -> None:
        super().__init__(message)


class DeviceFlowCancelledError(DeviceFlowError):
    def __init__(self, message: str = "Device authorization was cancelled.") -> None:
        super().__init__(message)


class AuthenticationInProgressError(DeviceFlowError):
    def __init__(self, message: str = "Authentication is already in progress.") -> None:
        super().__init__(message)


class CopilotTokenError(AssistantError):
    def __init__(self, message: str, *, kind: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


class ReauthenticationRequiredError(AssistantError):
    def __init__(
        self,
        message: str = "GitHub session expired. Please reconnect to GitHub Copilot.",
    ) -> None:
        super().__init__(message)


class ChatApiError(AssistantError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ChatAuthenticationError(ChatApiError):
    pass


class ModelUnavailableError(ChatApiError):
    def __init__(self, message: str, *, model: str, status_code: int | None = None) -> None:
        super().__init__(message, status_code=status_code)
        self.model = model


class LocalProviderError(ChatApiError):
    pass


class RequestCancelledError(Exception):
    """Raised when the caller's cancellation signal fires; not a provider failure."""

    def __init__(self, message: str = "Request cancelled.") -> None:
        super().__init__(message)
