"""Environment-driven settings."""

import os
from dataclasses import dataclass, field

from agent_engine.models.llm import ProviderConfig, ProviderType

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant. When a tool can answer the user's request, call it; "
    "otherwise answer directly and concisely."
)

# Provider-specific keys consulted when AGENT_API_KEY is unset
PROVIDER_KEY_VARIABLES: dict[ProviderType, str] = {
    ProviderType.ANTHROPIC: "ANTHROPIC_API_KEY",
    ProviderType.OPENAI: "OPENAI_API_KEY",
    ProviderType.GOOGLE: "GOOGLE_API_KEY",
    ProviderType.PERPLEXITY: "PERPLEXITY_API_KEY",
}


@dataclass
class AgentSettings:
    """Runtime settings for the agent service."""

    provider: str | None = None
    model: str = "claude-sonnet-4-5"
    base_url: str = ""
    api_key: str | None = None
    temperature: float = 0.7
    max_tokens: int = 4000
    max_turns: int = 10
    stream_buffer: int = 64
    requests_per_minute: int = 50
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    local_server_url: str = "http://localhost:8080"
    known_tools: frozenset[str] = field(default_factory=frozenset)

    def provider_config(self) -> ProviderConfig:
        """Build the provider configuration, resolving the API key fallback."""
        config = ProviderConfig(
            type=self.provider,
            base_url=self.base_url,
            model=self.model,
            api_key=self.api_key,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        if config.api_key is None and config.provider in PROVIDER_KEY_VARIABLES:
            fallback = os.getenv(PROVIDER_KEY_VARIABLES[config.provider])
            if fallback:
                config = config.model_copy(update={"api_key": fallback})
        return config


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {value!r}") from e


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {value!r}") from e


def load_settings() -> AgentSettings:
    """Read settings from ``AGENT_*`` environment variables.

    Raises:
        ValueError: If a numeric variable cannot be parsed
    """
    defaults = AgentSettings()
    known_tools = os.getenv("AGENT_KNOWN_TOOLS", "")

    return AgentSettings(
        provider=os.getenv("AGENT_PROVIDER") or None,
        model=os.getenv("AGENT_MODEL", defaults.model),
        base_url=os.getenv("AGENT_BASE_URL", defaults.base_url),
        api_key=os.getenv("AGENT_API_KEY") or None,
        temperature=_float_env("AGENT_TEMPERATURE", defaults.temperature),
        max_tokens=_int_env("AGENT_MAX_TOKENS", defaults.max_tokens),
        max_turns=_int_env("AGENT_MAX_TURNS", defaults.max_turns),
        stream_buffer=_int_env("AGENT_STREAM_BUFFER", defaults.stream_buffer),
        requests_per_minute=_int_env("AGENT_REQUESTS_PER_MINUTE", defaults.requests_per_minute),
        system_prompt=os.getenv("AGENT_SYSTEM_PROMPT", defaults.system_prompt),
        local_server_url=os.getenv("AGENT_LOCAL_SERVER_URL", defaults.local_server_url),
        known_tools=frozenset(name.strip() for name in known_tools.split(",") if name.strip()),
    )
