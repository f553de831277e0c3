"""Provider sessions and streaming chat completions for the reference assistant."""

from .llm import AssistantConfig, ChatService, build_chat_service
from .settings import load_config

__all__ = [
    "AssistantConfig",
    "build_chat_service",
    "ChatService",
    "load_config",
]
