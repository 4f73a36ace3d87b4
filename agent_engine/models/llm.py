"""Provider configuration and model-side data types."""

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, model_validator


class ProviderType(StrEnum):
    """Closed set of model backends the engine knows how to talk to."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OLLAMA = "ollama"
    GOOGLE = "google"
    PERPLEXITY = "perplexity"
    LOCAL = "local"
    OPENAI_COMPATIBLE = "openai-compatible"


# Accepted spellings that map onto one of the tags above
PROVIDER_ALIASES: dict[str, ProviderType] = {
    "vllm": ProviderType.OPENAI_COMPATIBLE,
    "openai_compatible": ProviderType.OPENAI_COMPATIBLE,
    "gemini": ProviderType.GOOGLE,
}


def infer_provider_type(base_url: str | None, model: str | None) -> ProviderType:
    """Guess the provider from the endpoint URL and model name."""
    url = (base_url or "").lower()
    name = (model or "").lower()

    if "anthropic" in url or "claude" in name:
        return ProviderType.ANTHROPIC
    if "perplexity" in url or "sonar" in name:
        return ProviderType.PERPLEXITY
    if "generativelanguage" in url or "gemini" in name:
        return ProviderType.GOOGLE
    if "11434" in url or "ollama" in url:
        return ProviderType.OLLAMA
    if "api.openai.com" in url:
        return ProviderType.OPENAI
    return ProviderType.OPENAI_COMPATIBLE


class ProviderConfig(BaseModel):
    """Immutable model backend configuration for one agent."""

    model_config = ConfigDict(frozen=True)

    type: ProviderType | None = None
    base_url: str = ""
    model: str
    api_key: str | None = None
    temperature: float = 0.7
    max_tokens: int = 4000
    display_name: str | None = None

    @model_validator(mode="before")
    @classmethod
    def resolve_type(cls, data):
        """Normalize aliases and infer the provider when it is not given."""
        if not isinstance(data, dict):
            return data

        raw_type = data.get("type")
        if isinstance(raw_type, str) and raw_type.lower() in PROVIDER_ALIASES:
            data = {**data, "type": PROVIDER_ALIASES[raw_type.lower()]}
        elif not raw_type:
            data = {**data, "type": infer_provider_type(data.get("base_url"), data.get("model"))}
        return data

    @property
    def provider(self) -> ProviderType:
        """Resolved provider tag (never None after validation)."""
        return self.type or ProviderType.OPENAI_COMPATIBLE

    @property
    def label(self) -> str:
        """Name recorded on assistant messages."""
        return self.display_name or self.model
