"""Construction of LangChain chat models from a provider configuration."""

from typing import Any

from langchain_core.language_models import BaseChatModel

from agent_engine.clients.local import ChatLocalModel, LocalModelManager
from agent_engine.models.llm import ProviderConfig, ProviderType
from agent_engine.utils.logging import get_logger

logger = get_logger(__name__)

PERPLEXITY_BASE_URL = "https://api.perplexity.ai"
RELATIVE_API_HOST = "http://localhost:3001"


def supports_tool_binding(provider: ProviderType) -> bool:
    """Whether native tool binding is attempted for this provider.

    Ollama models are driven through text-embedded tool calls only.
    """
    return provider != ProviderType.OLLAMA


def resolve_base_url(base_url: str) -> str:
    """Resolve server-relative ``/api/...`` endpoints against the local host."""
    if base_url.startswith("/api/"):
        return f"{RELATIVE_API_HOST}{base_url}"
    return base_url


def create_chat_model(
    config: ProviderConfig,
    *,
    local_manager: LocalModelManager | None = None,
    thread_id: str | None = None,
    disable_functions: bool = False,
    disable_chat_history: bool = False,
) -> BaseChatModel:
    """Build a chat model for the configured provider.

    Provider SDK integrations are imported lazily so that only the ones in
    use need to be importable.

    Raises:
        ValueError: If a local model is requested without a model manager.
    """
    provider = config.provider
    common: dict[str, Any] = {"temperature": config.temperature, "max_tokens": config.max_tokens}

    if provider == ProviderType.ANTHROPIC:
        from langchain_anthropic import ChatAnthropic

        logger.info(f"Building ChatAnthropic (model={config.model})")
        return ChatAnthropic(model=config.model, api_key=config.api_key, **common)

    if provider == ProviderType.OPENAI:
        from langchain_openai import ChatOpenAI

        logger.info(f"Building ChatOpenAI (model={config.model})")
        return ChatOpenAI(model=config.model, api_key=config.api_key, **common)

    if provider == ProviderType.PERPLEXITY:
        from langchain_openai import ChatOpenAI

        logger.info(f"Building Perplexity chat model (model={config.model})")
        return ChatOpenAI(
            model=config.model,
            api_key=config.api_key,
            base_url=config.base_url or PERPLEXITY_BASE_URL,
            **common,
        )

    if provider == ProviderType.OLLAMA:
        from langchain_ollama import ChatOllama

        logger.info(f"Building ChatOllama (model={config.model})")
        return ChatOllama(
            model=config.model,
            base_url=config.base_url or None,
            temperature=config.temperature,
            num_predict=config.max_tokens,
        )

    if provider == ProviderType.GOOGLE:
        from langchain_google_genai import ChatGoogleGenerativeAI

        logger.info(f"Building ChatGoogleGenerativeAI (model={config.model})")
        return ChatGoogleGenerativeAI(
            model=config.model,
            google_api_key=config.api_key,
            temperature=config.temperature,
            max_output_tokens=config.max_tokens,
        )

    if provider == ProviderType.LOCAL:
        if local_manager is None:
            raise ValueError("A LocalModelManager is required for local models")

        logger.info(f"Building ChatLocalModel (model={config.model})")
        return ChatLocalModel(
            manager=local_manager,
            model_name=config.model,
            thread_id=thread_id,
            disable_functions=disable_functions,
            disable_chat_history=disable_chat_history,
            **common,
        )

    from langchain_openai import ChatOpenAI

    logger.info(f"Building OpenAI-compatible chat model (model={config.model}, base_url={config.base_url})")
    return ChatOpenAI(
        model=config.model,
        api_key=config.api_key or "dummy-key",
        base_url=resolve_base_url(config.base_url) or None,
        **common,
    )
