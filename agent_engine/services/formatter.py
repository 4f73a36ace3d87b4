"""Conversion of stored conversation history into provider message lists.

Everything provider-specific lives in pure functions keyed by ``ProviderType``;
``MessageFormatter`` only fetches the history and picks the system prompt.
"""

import re
from typing import Any, Protocol

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from agent_engine.models.llm import ProviderType
from agent_engine.models.messages import ConversationMessage, ImageAttachment, NoteAttachment, content_to_text
from agent_engine.utils.logging import get_logger

logger = get_logger(__name__)

DATA_URL_PATTERN = re.compile(r"^data:([^;,]+)?(?:;[^,]*)?,(.*)$", re.DOTALL)

EMPTY_THREAD_PROMPT = "Please continue with the conversation."
TRAILING_USER_PROMPT = "Please provide your response."


class MessageSource(Protocol):
    async def get_thread_messages(self, thread_id: str) -> list[ConversationMessage]: ...


def format_notes(notes: list[NoteAttachment]) -> str:
    """Render note attachments as text appended to the message body."""
    blocks = []
    for note in notes:
        source = f"\nfrom node: {note.node_label}" if note.node_label else ""
        blocks.append(f"\n\n--- ATTACHED NOTES: {note.title} ---{source}\n{note.content}\n--- END NOTES ---")
    return "".join(blocks)


def to_data_url(image: ImageAttachment) -> str | None:
    data = image.image_data()
    if not data:
        return None
    if data.startswith("data:"):
        return data
    return f"data:{image.mime_type or 'image/jpeg'};base64,{data}"


def format_image(image: ImageAttachment, provider: ProviderType) -> dict[str, Any] | None:
    """Build one image content part, or None when the image cannot be sent."""
    if provider == ProviderType.PERPLEXITY:
        return None

    data_url = to_data_url(image)
    if data_url is None:
        logger.warning(f"Image {image.id} has neither full image nor thumbnail data; sending text only")
        return None

    if provider == ProviderType.ANTHROPIC:
        media_type = image.mime_type or "image/jpeg"
        data = data_url
        match = DATA_URL_PATTERN.match(data_url)
        if match:
            media_type = match.group(1) or media_type
            data = match.group(2)
        return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}

    if provider == ProviderType.OLLAMA:
        return {"type": "image_url", "image_url": data_url}

    return {"type": "image_url", "image_url": {"url": data_url}}


def format_user_message(message: ConversationMessage, provider: ProviderType) -> HumanMessage | None:
    """Format a user message; None when nothing would be sent."""
    text = message.content + format_notes(message.notes)

    image_parts = []
    for image in message.images:
        part = format_image(image, provider)
        if part is not None:
            image_parts.append(part)

    if not image_parts:
        return HumanMessage(content=text) if text.strip() else None

    parts: list[dict[str, Any]] = []
    if text.strip():
        parts.append({"type": "text", "text": text})
    parts.extend(image_parts)
    return HumanMessage(content=parts)


def format_conversation_message(message: ConversationMessage, provider: ProviderType) -> BaseMessage | None:
    if message.role == "user":
        return format_user_message(message, provider)
    if not message.content.strip():
        return None
    if message.role == "assistant":
        return AIMessage(content=message.content)
    return HumanMessage(content=message.content)


def build_system_message(system_prompt: str, stored_system: list[str]) -> SystemMessage:
    sections = [system_prompt] if system_prompt.strip() else []
    for content in stored_system:
        if content.strip() and content not in sections:
            sections.append(content)
    return SystemMessage(content="\n\n".join(sections))


def format_messages(
    history: list[ConversationMessage],
    provider: ProviderType,
    system_prompt: str,
    include_prior_conversation: bool = True,
) -> list[BaseMessage]:
    """Convert stored history into the outbound message list for a provider.

    The result always starts with exactly one system message. Empty messages
    are dropped and Perplexity lists are forced into strict alternation.
    """
    stored_system = [m.content for m in history if m.role == "system"]
    conversation = [m for m in history if m.role != "system"]

    if not include_prior_conversation:
        latest_user = next((m for m in reversed(conversation) if m.role == "user"), None)
        conversation = [latest_user] if latest_user else []

    formatted: list[BaseMessage] = []
    for message in conversation:
        converted = format_conversation_message(message, provider)
        if converted is not None:
            formatted.append(converted)

    system_message = build_system_message(system_prompt, stored_system)

    if provider == ProviderType.PERPLEXITY:
        return enforce_alternation(system_message, formatted)
    return [system_message, *formatted]


def _same_role(a: BaseMessage, b: BaseMessage) -> bool:
    return isinstance(a, HumanMessage) == isinstance(b, HumanMessage)


def _merged(first: BaseMessage, second: BaseMessage) -> BaseMessage:
    text = f"{content_to_text(first.content)}\n\n{content_to_text(second.content)}"
    return HumanMessage(content=text) if isinstance(first, HumanMessage) else AIMessage(content=text)


def enforce_alternation(system_message: SystemMessage, messages: list[BaseMessage]) -> list[BaseMessage]:
    """Make a message list acceptable to providers that demand strict turns.

    Consecutive same-role messages are merged, the conversation starts with
    and ends on a human message. With no conversation at all only the system
    message is returned.
    """
    if not messages:
        return [system_message]

    merged: list[BaseMessage] = []
    for message in messages:
        if merged and _same_role(merged[-1], message):
            merged[-1] = _merged(merged[-1], message)
        else:
            merged.append(message)

    if not isinstance(merged[0], HumanMessage):
        if len(merged) > 1:
            # merged alternates, so merged[1] is the first human message
            preamble = content_to_text(merged[0].content)
            first_user = content_to_text(merged[1].content)
            merged = [
                HumanMessage(content=f"[Previous assistant response: {preamble}]\n\n{first_user}"),
                *merged[2:],
            ]
        else:
            merged.insert(0, HumanMessage(content=EMPTY_THREAD_PROMPT))

    result: list[BaseMessage] = [system_message, *merged]

    if not isinstance(result[-1], HumanMessage):
        result.append(HumanMessage(content=TRAILING_USER_PROMPT))

    return result


class MessageFormatter:
    """Builds the outbound message list for a thread."""

    def __init__(self, store: MessageSource, provider: ProviderType, system_prompt: str):
        self.store = store
        self.provider = provider
        self.system_prompt = system_prompt

    async def format(self, thread_id: str, include_prior_conversation: bool = True) -> list[BaseMessage]:
        history = await self.store.get_thread_messages(thread_id)
        messages = format_messages(history, self.provider, self.system_prompt, include_prior_conversation)
        logger.debug(f"Formatted {len(messages)} message(s) for thread {thread_id} ({self.provider})")
        return messages
