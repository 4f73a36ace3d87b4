"""Agent service: turns a user message into a finished assistant reply."""

import asyncio
from dataclasses import dataclass, field

from langchain_core.language_models import BaseChatModel

from agent_engine.clients.local import HttpModelLoader, LocalModelManager
from agent_engine.clients.providers import create_chat_model, supports_tool_binding
from agent_engine.clients.rate_limit import ModelRateLimiter
from agent_engine.models.llm import ProviderConfig, ProviderType
from agent_engine.models.messages import (
    ConversationMessage,
    ImageAttachment,
    MessageStatus,
    NoteAttachment,
)
from agent_engine.services.cancellation import CancellationController
from agent_engine.services.content_store import ContentStore
from agent_engine.services.conversation_store import InMemoryConversationStore
from agent_engine.services.formatter import MessageFormatter
from agent_engine.services.notifier import EventBroadcaster
from agent_engine.services.response_loop import StreamingResponseLoop, UpdateCallback
from agent_engine.services.tool_execution import ToolExecutionCoordinator
from agent_engine.services.tool_parser import ToolCallParser
from agent_engine.tools.registry import MCPToolRegistry, ToolRegistry
from agent_engine.utils.config import AgentSettings, load_settings
from agent_engine.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ProcessOptions:
    """Per-call options for ``AgentService.process_message``."""

    images: list[ImageAttachment] = field(default_factory=list)
    notes: list[NoteAttachment] = field(default_factory=list)
    on_update: UpdateCallback | None = None
    user_message_id: str | None = None
    include_prior_conversation: bool = True
    signal: asyncio.Event | None = None
    max_turns: int | None = None
    disable_functions: bool = False
    disable_chat_history: bool = False


class AgentService:
    """Conversation agent bound to one provider configuration.

    Owns the thread-level operations and runs one ``StreamingResponseLoop``
    per incoming user message. Pending replies can be cancelled by message id.
    """

    def __init__(
        self,
        provider_config: ProviderConfig,
        *,
        system_prompt: str,
        store: InMemoryConversationStore | None = None,
        broadcaster: EventBroadcaster | None = None,
        registry: ToolRegistry | None = None,
        content_store: ContentStore | None = None,
        chat_model: BaseChatModel | None = None,
        local_manager: LocalModelManager | None = None,
        parser: ToolCallParser | None = None,
        rate_limiter: ModelRateLimiter | None = None,
        max_turns: int = 10,
        stream_buffer: int = 64,
    ):
        """Initialize agent service.

        Args:
            provider_config: Model backend configuration
            system_prompt: System prompt sent at the start of every request
            store: Conversation store (defaults to a fresh in-memory store)
            broadcaster: Event broadcaster for thread subscribers
            registry: Tool registry; no tools are offered when omitted
            content_store: Large-content store used to resolve tool output references
            chat_model: Pre-built chat model, bypassing the provider factory
            local_manager: Local model lifecycle manager for ``local`` providers
            parser: Parser for tool calls embedded in reply text
            rate_limiter: Limiter applied before each model turn
            max_turns: Default cap on model turns per reply
            stream_buffer: Capacity of the chunk channel between model and loop
        """
        self.provider_config = provider_config
        self.system_prompt = system_prompt
        self.store = store or InMemoryConversationStore()
        self.broadcaster = broadcaster or EventBroadcaster()
        self.registry = registry
        self.coordinator = ToolExecutionCoordinator(registry or MCPToolRegistry(), content_store)
        self.parser = parser or ToolCallParser()
        self.rate_limiter = rate_limiter
        self.local_manager = local_manager
        self.max_turns = max_turns
        self.stream_buffer = stream_buffer
        self.formatter = MessageFormatter(self.store, provider_config.provider, system_prompt)

        self._chat_model = chat_model
        self._active: dict[str, CancellationController] = {}

        logger.info(f"AgentService initialized for {provider_config.provider} model {provider_config.model}")

    @classmethod
    def from_settings(cls, settings: AgentSettings | None = None, **kwargs) -> "AgentService":
        """Build a service from environment settings."""
        settings = settings or load_settings()
        config = settings.provider_config()

        local_manager = kwargs.pop("local_manager", None)
        if local_manager is None and config.provider == ProviderType.LOCAL:
            local_manager = LocalModelManager(HttpModelLoader(settings.local_server_url))

        parser = kwargs.pop("parser", None)
        if parser is None and settings.known_tools:
            parser = ToolCallParser(settings.known_tools)

        return cls(
            config,
            system_prompt=settings.system_prompt,
            local_manager=local_manager,
            parser=parser,
            rate_limiter=ModelRateLimiter(requests_per_minute=settings.requests_per_minute),
            max_turns=settings.max_turns,
            stream_buffer=settings.stream_buffer,
            **kwargs,
        )

    async def process_message(
        self, thread_id: str | None, user_text: str, options: ProcessOptions | None = None
    ) -> ConversationMessage:
        """Process a user message and return the finalized assistant reply.

        Model failures and cancellation are reported through the reply's
        ``status`` (``failed`` / ``cancelled``) rather than raised.

        Args:
            thread_id: Thread to post into; created when missing
            user_text: The user's message text
            options: Attachments, callbacks and per-call overrides

        Returns:
            The assistant message in a terminal status

        Raises:
            ValueError: If the user text or system prompt is invalid
        """
        options = options or ProcessOptions()

        if not isinstance(user_text, str):
            raise ValueError(f"Invalid user message: received {type(user_text).__name__} instead of str")
        if not user_text.strip() and not options.images and not options.notes:
            raise ValueError("User message must not be empty")
        if not self.system_prompt.strip():
            raise ValueError("System prompt is empty")

        max_turns = options.max_turns if options.max_turns is not None else self.max_turns
        if max_turns < 1:
            raise ValueError(f"max_turns must be at least 1, got {max_turns}")

        thread_id = await self.store.create_thread(thread_id)
        await self._add_user_message(thread_id, user_text, options)

        assistant = ConversationMessage(
            role="assistant",
            status=MessageStatus.PENDING,
            model=self.provider_config.label,
        )
        await self.store.add_message(thread_id, assistant)
        self.broadcaster.broadcast_message_create(thread_id, assistant.model_copy(deep=True))

        controller = CancellationController(options.signal)
        self._active[assistant.id] = controller

        loop = StreamingResponseLoop(
            thread_id=thread_id,
            message=assistant,
            store=self.store,
            broadcaster=self.broadcaster,
            coordinator=self.coordinator,
            parser=self.parser,
            controller=controller,
            provider=self.provider_config.provider,
            rate_limiter=self.rate_limiter,
            rate_limit_key=f"{self.provider_config.provider}:{self.provider_config.model}",
            on_update=options.on_update,
            max_turns=max_turns,
            stream_buffer=self.stream_buffer,
        )

        try:
            try:
                messages = await self.formatter.format(thread_id, options.include_prior_conversation)
                model = self._prepare_model(thread_id, options)
            except Exception as e:
                return await loop.fail(e)

            return await loop.run(model, messages)
        finally:
            self._active.pop(assistant.id, None)

    async def _add_user_message(self, thread_id: str, user_text: str, options: ProcessOptions) -> None:
        if options.user_message_id:
            existing = await self.store.get_message(thread_id, options.user_message_id)
            if existing is not None:
                logger.debug(f"Reusing stored user message {existing.id}")
                return

        user_message = ConversationMessage(
            role="user",
            content=user_text,
            images=options.images,
            notes=options.notes,
        )
        if options.user_message_id:
            user_message.id = options.user_message_id

        await self.store.add_message(thread_id, user_message)
        self.broadcaster.broadcast_message_create(thread_id, user_message.model_copy(deep=True))
        logger.info(f"Added user message {user_message.id} to thread {thread_id}: {user_text[:50]}...")

    def _prepare_model(self, thread_id: str, options: ProcessOptions):
        """Get the chat model for this call, with tools bound when applicable."""
        provider = self.provider_config.provider

        if self._chat_model is not None:
            model = self._chat_model
        elif provider == ProviderType.LOCAL:
            # Local models are per thread so the backend can keep session history
            model = create_chat_model(
                self.provider_config,
                local_manager=self.local_manager,
                thread_id=thread_id,
                disable_functions=options.disable_functions,
                disable_chat_history=options.disable_chat_history,
            )
        else:
            self._chat_model = create_chat_model(self.provider_config)
            model = self._chat_model

        schemas = self.registry.get_tools() if self.registry is not None else []
        if not schemas or options.disable_functions or not supports_tool_binding(provider):
            return model

        try:
            return model.bind_tools([schema.to_function_spec() for schema in schemas])
        except NotImplementedError:
            logger.warning(f"{type(model).__name__} does not support tool binding; relying on text tool calls")
            return model

    async def get_conversation(self, thread_id: str) -> list[ConversationMessage]:
        """Get a thread's messages without system messages."""
        messages = await self.store.get_thread_messages(thread_id)
        return [m for m in messages if m.role != "system"]

    async def delete_message(self, thread_id: str, message_id: str) -> bool:
        deleted = await self.store.delete_message(thread_id, message_id)
        if deleted:
            logger.info(f"Deleted message {message_id} from thread {thread_id}")
        return deleted

    async def cancel_message(self, thread_id: str, message_id: str) -> bool:
        """Cancel a pending reply.

        Returns:
            True if the message was pending and is now being cancelled
        """
        message = await self.store.get_message(thread_id, message_id)
        if message is None or not message.is_pending:
            return False

        controller = self._active.get(message_id)
        if controller is not None:
            controller.cancel(f"message {message_id} cancelled by user")
            return True

        # Pending with no running loop, e.g. left over from an interrupted process
        message.finalize(MessageStatus.CANCELLED)
        await self.store.save_message(thread_id, message)
        self.broadcaster.broadcast_thread_update(thread_id, message)
        return True

    async def clear_conversation(self, thread_id: str) -> None:
        await self.store.clear_thread(thread_id)
        logger.info(f"Cleared thread {thread_id}")

    async def load_conversation(self, thread_id: str, messages: list[ConversationMessage]) -> None:
        """Replace a thread's contents with the given non-system messages."""
        await self.store.create_thread(thread_id)
        await self.store.clear_thread(thread_id)
        for message in messages:
            if message.role != "system":
                await self.store.add_message(thread_id, message.model_copy(deep=True))

    async def delete_thread(self, thread_id: str) -> bool:
        for message in await self.store.get_thread_messages(thread_id):
            controller = self._active.get(message.id)
            if controller is not None:
                controller.cancel(f"thread {thread_id} deleted")
        return await self.store.delete_thread(thread_id)
