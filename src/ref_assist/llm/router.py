from __future__ import annotations

from . import model_registry
from .models import AssistantConfig, ModelSelection, ProviderKind

FALLBACK_DEFAULT_MODEL = "grok-code-fast-1"
TASK_ALIASES = {
    "summarize": "summarize",
    "keypoints": "keypoints",
    "keyfindings": "keypoints",
    "findings": "findings",
    "methods": "methods",
    "methodology": "methods",
    "compare": "compare",
    "translate": "translate",
    "explain": "explain",
    "define": "define",
    "paraphrase": "paraphrase",
}


def normalize_task_id(task: str | None) -> str | None:
    if not task:
        return None
    return TASK_ALIASES.get(str(task).strip().lower())


class ProviderRouter:
    def __init__(self, config: AssistantConfig) -> None:
        self.config = config

    def select(
        self,
        task: str | None = None,
        provider_override: ProviderKind | str | None = None,
        model_override: str | None = None,
    ) -> ModelSelection:
        provider = ProviderKind(provider_override) if provider_override else self.config.default_provider
        model = (
            model_override
            or self.task_model(task, provider)
            or self.default_model(provider)
            or FALLBACK_DEFAULT_MODEL
        )
        return ModelSelection(provider=provider, model=model)

    def task_model(self, task: str | None, provider: ProviderKind) -> str | None:
        normalized = normalize_task_id(task)
        if normalized is None:
            return None
        model = self.config.task_models.get(normalized)
        if not model:
            return None
        # Copilot task models must be known to the registry.
        if provider == ProviderKind.COPILOT and model_registry.get_model(model) is None:
            return None
        return model

    def default_model(self, provider: ProviderKind) -> str | None:
        if provider == ProviderKind.OLLAMA and self.config.ollama_model:
            return self.config.ollama_model
        if provider == ProviderKind.LMSTUDIO and self.config.lmstudio_model:
            return self.config.lmstudio_model
        if self.config.default_model:
            return self.config.default_model
        if provider == ProviderKind.COPILOT:
            return model_registry.get_default_model().id
        return None
