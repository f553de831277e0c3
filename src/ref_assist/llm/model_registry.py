from __future__ import annotations

from .models import ModelInfo

VENDOR_DISPLAY_NAMES = {
    "anthropic": "Anthropic",
    "google": "Google",
    "openai": "OpenAI",
    "xai": "xAI",
    "other": "Other",
}

COPILOT_MODELS: tuple[ModelInfo, ...] = (
    ModelInfo(
        id="claude-sonnet-4.5",
        name="Claude Sonnet 4.5",
        vendor="anthropic",
        description="Latest Claude Sonnet - balanced performance",
        premium=1,
        default=True,
    ),
    ModelInfo(
        id="claude-sonnet-4",
        name="Claude Sonnet 4",
        vendor="anthropic",
        description="Previous Claude Sonnet - reliable and fast",
        premium=1,
    ),
    ModelInfo(
        id="claude-opus-4.5",
        name="Claude Opus 4.5",
        vendor="anthropic",
        description="Most capable Claude model",
        premium=3,
    ),
    ModelInfo(
        id="claude-opus-4.1",
        name="Claude Opus 4.1",
        vendor="anthropic",
        description="Powerful reasoning and analysis",
        premium=10,
    ),
    ModelInfo(
        id="claude-haiku-4.5",
        name="Claude Haiku 4.5",
        vendor="anthropic",
        description="Fast and cost-effective",
        premium=0.33,
    ),
    ModelInfo(
        id="gemini-2.5-pro",
        name="Gemini 2.5 Pro",
        vendor="google",
        description="Google's advanced reasoning model",
        premium=1,
    ),
    ModelInfo(
        id="gemini-3-pro",
        name="Gemini 3 Pro",
        vendor="google",
        description="Latest Gemini - preview",
        premium=1,
    ),
    ModelInfo(
        id="gemini-3-flash",
        name="Gemini 3 Flash",
        vendor="google",
        description="Fast Gemini model - preview",
        premium=0.33,
    ),
    ModelInfo(id="gpt-4.1", name="GPT-4.1", vendor="openai", description="Smartest non-reasoning model", premium=0),
    ModelInfo(id="gpt-5", name="GPT-5", vendor="openai", description="Intelligent reasoning model", premium=1),
    ModelInfo(id="gpt-5-mini", name="GPT-5 Mini", vendor="openai", description="Fast and cost-efficient", premium=0),
    ModelInfo(id="gpt-5.1", name="GPT-5.1", vendor="openai", description="Previous GPT-5 iteration", premium=1),
    ModelInfo(
        id="gpt-5.1-codex",
        name="GPT-5.1 Codex",
        vendor="openai",
        description="Optimized for agentic coding",
        premium=1,
    ),
    ModelInfo(
        id="gpt-5.1-codex-mini",
        name="GPT-5.1 Codex Mini",
        vendor="openai",
        description="Smaller, cost-effective version",
        premium=0.33,
    ),
    ModelInfo(
        id="gpt-5.1-codex-max",
        name="GPT-5.1 Codex Max",
        vendor="openai",
        description="Most intelligent coding model for long-horizon tasks",
        premium=1,
    ),
    ModelInfo(
        id="gpt-5.2",
        name="GPT-5.2",
        vendor="openai",
        description="Best for coding and agentic tasks",
        premium=1,
    ),
    ModelInfo(id="gpt-5-codex", name="GPT-5 Codex", vendor="openai", description="Previous Codex generation", premium=1),
    ModelInfo(
        id="grok-code-fast-1",
        name="Grok Code Fast 1",
        vendor="xai",
        description="xAI's fast coding model",
        premium=0.25,
    ),
    ModelInfo(id="raptor-mini", name="Raptor mini", vendor="other", description="Fine-tuned GPT-5 mini", premium=0),
)


def list_models() -> list[ModelInfo]:
    return [model.model_copy() for model in COPILOT_MODELS]


def get_model(model_id: str) -> ModelInfo | None:
    for model in COPILOT_MODELS:
        if model.id == model_id:
            return model.model_copy()
    return None


def get_default_model() -> ModelInfo:
    for model in COPILOT_MODELS:
        if model.default:
            return model.model_copy()
    return COPILOT_MODELS[0].model_copy()


def models_by_vendor() -> dict[str, list[ModelInfo]]:
    grouped: dict[str, list[ModelInfo]] = {}
    for model in COPILOT_MODELS:
        grouped.setdefault(model.vendor, []).append(model.model_copy())
    return grouped


def vendor_display_name(vendor: str) -> str:
    return VENDOR_DISPLAY_NAMES.get(vendor, vendor)
