"""Locally hosted models: lifecycle ownership and a LangChain chat adapter."""

import asyncio
import json
from collections.abc import AsyncIterator, Sequence
from typing import Any, Protocol

import httpx
from langchain_core.callbacks import AsyncCallbackManagerForLLMRun, CallbackManagerForLLMRun
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage
from langchain_core.outputs import ChatGeneration, ChatGenerationChunk, ChatResult
from pydantic import ConfigDict, Field

from agent_engine.models.messages import content_to_text
from agent_engine.utils.logging import get_logger

logger = get_logger(__name__)

ROLE_NAMES = {"human": "user", "ai": "assistant", "system": "system"}


class LocalModelBackend(Protocol):
    """A model that has been loaded and can generate text."""

    model_id: str

    def stream(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[str]: ...

    async def close(self) -> None: ...


class ModelLoader(Protocol):
    async def load(self, model_id: str) -> LocalModelBackend: ...


class LocalModelManager:
    """Owns the one local model loaded in this process.

    ``load`` transfers ownership: the previously loaded model is closed before
    the new one is loaded. Loading the model that is already current is a
    no-op.
    """

    def __init__(self, loader: ModelLoader):
        self.loader = loader
        self._backend: LocalModelBackend | None = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> str | None:
        """Identifier of the loaded model, if any."""
        return self._backend.model_id if self._backend else None

    async def load(self, model_id: str) -> LocalModelBackend:
        async with self._lock:
            if self._backend is not None and self._backend.model_id == model_id:
                return self._backend

            await self._release()
            logger.info(f"Loading local model {model_id}")
            self._backend = await self.loader.load(model_id)
            return self._backend

    async def unload(self) -> None:
        async with self._lock:
            await self._release()

    async def _release(self) -> None:
        if self._backend is None:
            return
        backend, self._backend = self._backend, None
        logger.info(f"Unloading local model {backend.model_id}")
        await backend.close()


class HttpModelBackend:
    """A model served by a local OpenAI-compatible completion server."""

    def __init__(self, model_id: str, base_url: str, client: httpx.AsyncClient):
        self.model_id = model_id
        self.base_url = base_url.rstrip("/")
        self.client = client

    async def stream(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[str]:
        payload: dict[str, Any] = {
            "model": self.model_id,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": True,
        }
        if tools:
            payload["tools"] = tools

        async with self.client.stream("POST", f"{self.base_url}/v1/chat/completions", json=payload) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue

                data_str = line[6:]
                if data_str == "[DONE]":
                    break

                try:
                    data = json.loads(data_str)
                except json.JSONDecodeError:
                    logger.warning(f"Skipping unparseable stream line: {data_str[:200]}")
                    continue

                for choice in data.get("choices", []):
                    text = (choice.get("delta") or {}).get("content")
                    if text:
                        yield text

    async def close(self) -> None:
        await self.client.aclose()


class HttpModelLoader:
    """Loads models by pointing a fresh HTTP client at a local server."""

    def __init__(self, base_url: str = "http://localhost:8080", timeout: float = 120.0):
        self.base_url = base_url
        self.timeout = timeout

    async def load(self, model_id: str) -> HttpModelBackend:
        client = httpx.AsyncClient(timeout=self.timeout)
        return HttpModelBackend(model_id, self.base_url, client)


def to_local_messages(messages: Sequence[BaseMessage], disable_chat_history: bool = False) -> list[dict[str, str]]:
    """Flatten LangChain messages to role/content dicts for a local model."""
    formatted = [
        {"role": ROLE_NAMES.get(message.type, "user"), "content": content_to_text(message.content)}
        for message in messages
    ]
    if not disable_chat_history:
        return formatted

    system = [m for m in formatted if m["role"] == "system"]
    last_user = [m for m in formatted if m["role"] == "user"][-1:]
    return system + last_user


class ChatLocalModel(BaseChatModel):
    """LangChain chat model that generates through a ``LocalModelManager``."""

    model_config = ConfigDict(arbitrary_types_allowed=True, protected_namespaces=())

    manager: LocalModelManager = Field(exclude=True)
    model_name: str
    temperature: float = 0.7
    max_tokens: int = 4000
    thread_id: str | None = None
    disable_functions: bool = False
    disable_chat_history: bool = False
    tools: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def _llm_type(self) -> str:
        return "local-llm"

    @property
    def _identifying_params(self) -> dict[str, Any]:
        return {"model_name": self.model_name, "temperature": self.temperature, "max_tokens": self.max_tokens}

    def bind_tools(self, tools: Sequence[Any], **kwargs: Any) -> "ChatLocalModel":
        """Return a copy that advertises ``tools`` (function spec dicts) to the model."""
        specs = [tool if isinstance(tool, dict) else tool.to_function_spec() for tool in tools]
        return self.model_copy(update={"tools": specs})

    def _generate(
        self,
        messages: list[BaseMessage],
        stop: list[str] | None = None,
        run_manager: CallbackManagerForLLMRun | None = None,
        **kwargs: Any,
    ) -> ChatResult:
        raise NotImplementedError("ChatLocalModel only supports async generation")

    async def _astream(
        self,
        messages: list[BaseMessage],
        stop: list[str] | None = None,
        run_manager: AsyncCallbackManagerForLLMRun | None = None,
        **kwargs: Any,
    ) -> AsyncIterator[ChatGenerationChunk]:
        backend = await self.manager.load(self.model_name)
        stream = backend.stream(
            to_local_messages(messages, self.disable_chat_history),
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            tools=None if self.disable_functions else self.tools or None,
        )
        async for text in stream:
            chunk = ChatGenerationChunk(message=AIMessageChunk(content=text))
            if run_manager:
                await run_manager.on_llm_new_token(text, chunk=chunk)
            yield chunk

    async def _agenerate(
        self,
        messages: list[BaseMessage],
        stop: list[str] | None = None,
        run_manager: AsyncCallbackManagerForLLMRun | None = None,
        **kwargs: Any,
    ) -> ChatResult:
        parts = [chunk.text async for chunk in self._astream(messages, stop, run_manager, **kwargs)]
        return ChatResult(generations=[ChatGeneration(message=AIMessage(content="".join(parts)))])
