from __future__ import annotations

from dataclasses import dataclass
import logging

from concierge.core.config import Settings, get_settings
from concierge.core.errors import ProvisioningPreconditionError


logger = logging.getLogger(__name__)

MODEL_KEY_MISSING_MESSAGE = "No AI model provider is configured. Please contact support."

# Only consulted when the platform falls back to the aggregator key.
AGGREGATOR_MODELS = {
    "starter": "meta-llama/llama-3.3-70b-instruct:free",
    "pro": "anthropic/claude-3.5-haiku",
    "business": "anthropic/claude-3.5-sonnet",
}

ANTHROPIC_PREFIX = "sk-ant-"
OPENAI_PREFIX = "sk-"


@dataclass(frozen=True)
class ModelKeySelection:
    provider: str
    env_var: str
    api_key: str
    model: str | None
    source: str

    def __repr__(self) -> str:
        # Keep key material out of logs and tracebacks.
        return (
            f"ModelKeySelection(provider={self.provider!r}, env_var={self.env_var!r}, "
            f"model={self.model!r}, source={self.source!r})"
        )


def provider_for_customer_key(api_key: str) -> tuple[str, str]:
    # Order matters: the Anthropic prefix is itself an "sk-" prefix.
    if api_key.startswith(ANTHROPIC_PREFIX):
        return "anthropic", "ANTHROPIC_API_KEY"
    if api_key.startswith(OPENAI_PREFIX):
        return "openai", "OPENAI_API_KEY"
    return "openai-compatible", "OPENAI_API_KEY"


def select_model_key(
    *,
    tier: str,
    custom_api_key: str | None = None,
    settings: Settings | None = None,
) -> ModelKeySelection:
    """Pick the model credential an instance is deployed with.

    A customer-supplied key always wins and never routes through the
    aggregator. Otherwise platform keys are tried in priority order
    (Anthropic, OpenAI, OpenRouter); only the OpenRouter fallback picks a
    model, from ``AGGREGATOR_MODELS`` by tier.
    """
    settings = settings or get_settings()
    custom = (custom_api_key or "").strip()
    if custom:
        provider, env_var = provider_for_customer_key(custom)
        return ModelKeySelection(
            provider=provider,
            env_var=env_var,
            api_key=custom,
            model=None,
            source="customer",
        )

    if settings.anthropic_api_key:
        return ModelKeySelection(
            provider="anthropic",
            env_var="ANTHROPIC_API_KEY",
            api_key=settings.anthropic_api_key,
            model=None,
            source="platform",
        )
    if settings.openai_api_key:
        return ModelKeySelection(
            provider="openai",
            env_var="OPENAI_API_KEY",
            api_key=settings.openai_api_key,
            model=None,
            source="platform",
        )
    if settings.openrouter_api_key:
        return ModelKeySelection(
            provider="openrouter",
            env_var="OPENROUTER_API_KEY",
            api_key=settings.openrouter_api_key,
            model=AGGREGATOR_MODELS[tier],
            source="platform",
        )

    logger.error("model_key_unavailable tier=%s", tier)
    raise ProvisioningPreconditionError(MODEL_KEY_MISSING_MESSAGE)
