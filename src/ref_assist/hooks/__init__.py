"""Observability hooks and secret masking."""

from .observability import EventLogger, HookEvent
from .security import mask_sensitive_text, mask_payload

__all__ = [
    "EventLogger",
    "HookEvent",
    "mask_payload",
    "mask_sensitive_text",
]
