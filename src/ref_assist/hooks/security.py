from __future__ import annotations

import re
from typing import Any

SECRET_PATTERNS = [
    re.compile(r"\bgh[opsu]_[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bgithub_pat_[A-Za-z0-9_]{20,}\b"),
    re.compile(r"\btid=[^\s\"']+"),
    re.compile(r"\bsk-[A-Za-z0-9_-]{20,}\b"),
    re.compile(r"\bBearer\s+[A-Za-z0-9._\-=;:]{20,}", re.IGNORECASE),
]


def mask_sensitive_text(text: str) -> str:
    masked = text
    for pattern in SECRET_PATTERNS:
        masked = pattern.sub("[REDACTED]", masked)
    return masked


def mask_payload(payload: dict[str, Any]) -> dict[str, Any]:
    masked: dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, str):
            masked[key] = mask_sensitive_text(value)
        elif isinstance(value, dict):
            masked[key] = mask_payload(value)
        else:
            masked[key] = value
    return masked
