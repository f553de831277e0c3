from __future__ import annotations

import os
from typing import Any, Mapping

from ref_assist.llm.models import AssistantConfig

ENV_PREFIX = "REF_ASSIST_"
TASK_MODEL_PREFIX = f"{ENV_PREFIX}TASK_MODEL_"

_FIELD_ENV = {
    "default_provider": "DEFAULT_PROVIDER",
    "default_model": "DEFAULT_MODEL",
    "temperature": "TEMPERATURE",
    "max_tokens": "MAX_TOKENS",
    "ollama_endpoint": "OLLAMA_ENDPOINT",
    "ollama_model": "OLLAMA_MODEL",
    "lmstudio_endpoint": "LMSTUDIO_ENDPOINT",
    "lmstudio_model": "LMSTUDIO_MODEL",
    "translate_language": "TRANSLATE_LANGUAGE",
    "request_timeout_seconds": "HTTP_TIMEOUT_SECONDS",
    "catalog_ttl_seconds": "MODEL_CATALOG_TTL_SECONDS",
    "session_refresh_leeway_seconds": "SESSION_REFRESH_LEEWAY_SECONDS",
    "secret_backend": "SECRET_BACKEND",
    "secret_path": "SECRET_PATH",
}


def _env_text(env: Mapping[str, str], name: str) -> str | None:
    value = env.get(f"{ENV_PREFIX}{name}")
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _env_flag(env: Mapping[str, str], name: str, default: str = "0") -> bool:
    return (env.get(f"{ENV_PREFIX}{name}") or default).strip() == "1"


def load_config(environ: Mapping[str, str] | None = None) -> AssistantConfig:
    env = environ if environ is not None else os.environ
    values: dict[str, Any] = {}
    for field_name, env_name in _FIELD_ENV.items():
        value = _env_text(env, env_name)
        if value is not None:
            values[field_name] = value

    values["streaming_enabled"] = _env_flag(env, "STREAMING", "1")
    task_models = {
        key.removeprefix(TASK_MODEL_PREFIX).lower(): value.strip()
        for key, value in env.items()
        if key.startswith(TASK_MODEL_PREFIX) and value.strip()
    }
    if task_models:
        values["task_models"] = task_models
    return AssistantConfig.model_validate(values)
