"""Tests for data models."""

import json

import pytest
from langchain_core.messages import AIMessageChunk
from pydantic import ValidationError

from agent_engine.models.conversation import MessageRequest
from agent_engine.models.llm import ProviderConfig, ProviderType, infer_provider_type
from agent_engine.models.messages import (
    ConversationMessage,
    MessageStatus,
    StreamChunk,
    TokenMetrics,
    ToolOutcome,
    ToolResult,
    content_to_text,
)
from agent_engine.services.errors import InvalidStatusTransition


class TestProviderConfig:
    """Tests for provider configuration."""

    def test_explicit_type(self):
        """Test an explicit provider type is kept."""
        config = ProviderConfig(type="anthropic", model="claude-sonnet-4-5")
        assert config.provider == ProviderType.ANTHROPIC
        assert config.temperature == 0.7
        assert config.max_tokens == 4000

    def test_vllm_alias(self):
        """Test vllm is accepted as openai-compatible."""
        config = ProviderConfig(type="vllm", model="llama", base_url="http://gpu:8000/v1")
        assert config.provider == ProviderType.OPENAI_COMPATIBLE

    @pytest.mark.parametrize(
        ("base_url", "model", "expected"),
        [
            ("https://api.anthropic.com", "x", ProviderType.ANTHROPIC),
            ("", "claude-3-haiku", ProviderType.ANTHROPIC),
            ("https://api.perplexity.ai", "x", ProviderType.PERPLEXITY),
            ("", "sonar-pro", ProviderType.PERPLEXITY),
            ("https://generativelanguage.googleapis.com", "x", ProviderType.GOOGLE),
            ("http://localhost:11434", "llama3", ProviderType.OLLAMA),
            ("https://api.openai.com/v1", "gpt-4o", ProviderType.OPENAI),
            ("http://gpu-box:8000/v1", "mistral", ProviderType.OPENAI_COMPATIBLE),
        ],
    )
    def test_provider_inference(self, base_url, model, expected):
        """Test the provider is inferred from URL and model name."""
        assert infer_provider_type(base_url, model) == expected
        assert ProviderConfig(base_url=base_url, model=model).provider == expected

    def test_config_is_frozen(self):
        """Test provider configs are immutable."""
        config = ProviderConfig(type="openai", model="gpt-4o")
        with pytest.raises(ValidationError):
            config.model = "gpt-4o-mini"

    def test_label_prefers_display_name(self):
        """Test the label recorded on replies."""
        assert ProviderConfig(type="openai", model="gpt-4o").label == "gpt-4o"
        assert ProviderConfig(type="openai", model="gpt-4o", display_name="GPT").label == "GPT"


class TestConversationMessage:
    """Tests for conversation messages and their status lifecycle."""

    def test_defaults(self):
        """Test a new message is completed with no tool data."""
        message = ConversationMessage(role="user", content="Hello")
        assert message.status == MessageStatus.COMPLETED
        assert message.tool_calls is None
        assert message.tool_results is None
        assert message.id

    def test_pending_to_terminal(self):
        """Test a pending message can be finalized once."""
        message = ConversationMessage(role="assistant", status=MessageStatus.PENDING)

        message.finalize(MessageStatus.CANCELLED)

        assert message.status == MessageStatus.CANCELLED
        assert not message.is_pending

    def test_terminal_status_is_final(self):
        """Test finalized messages cannot change status again."""
        message = ConversationMessage(role="assistant", status=MessageStatus.PENDING)
        message.finalize(MessageStatus.COMPLETED)

        with pytest.raises(InvalidStatusTransition):
            message.finalize(MessageStatus.CANCELLED)

    def test_cannot_finalize_to_pending(self):
        """Test pending is not a valid target status."""
        message = ConversationMessage(role="assistant", status=MessageStatus.PENDING)

        with pytest.raises(ValueError):
            message.finalize(MessageStatus.PENDING)

    def test_tool_results_are_append_only(self):
        """Test appending tool results keeps earlier ones."""
        message = ConversationMessage(role="assistant", status=MessageStatus.PENDING)
        first = ToolResult(id="1", name="a", result=ToolOutcome(success=True, output="x"))
        second = ToolResult(id="2", name="b", result=ToolOutcome(success=False, error="nope"))

        message.append_tool_results([first])
        message.append_tool_results([second])

        assert [r.id for r in message.tool_results] == ["1", "2"]

    def test_json_round_trip_keeps_status(self):
        """Test serialized messages carry status as a string."""
        message = ConversationMessage(role="assistant", status=MessageStatus.FAILED, content="oops")
        data = json.loads(message.model_dump_json())

        assert data["status"] == "failed"
        assert ConversationMessage.model_validate(data).status == MessageStatus.FAILED


class TestToolResult:
    """Tests for rendering tool results as text."""

    def test_error_text(self):
        result = ToolResult(id="1", name="t", result=ToolOutcome(success=False, error="boom"))
        assert result.as_text() == "Error: boom"

    def test_string_output(self):
        result = ToolResult(id="1", name="t", result=ToolOutcome(success=True, output="file contents"))
        assert result.as_text() == "file contents"

    def test_dict_output_prefers_content(self):
        result = ToolResult(id="1", name="t", result=ToolOutcome(success=True, output={"content": "c", "text": "t"}))
        assert result.as_text() == "c"

    def test_dict_output_key_values(self):
        result = ToolResult(id="1", name="t", result=ToolOutcome(success=True, output={"rows": 3, "ok": True}))
        assert result.as_text() == "rows: 3, ok: True"


class TestStreamChunk:
    """Tests for normalizing model stream chunks."""

    def test_from_string(self):
        assert StreamChunk.from_message_chunk("hi").text == "hi"

    def test_from_ai_message_chunk_with_citations(self):
        """Test text and citations are read from LangChain chunks."""
        chunk = AIMessageChunk(content="Paris", additional_kwargs={"citations": ["https://example.com"]})

        stream_chunk = StreamChunk.from_message_chunk(chunk)

        assert stream_chunk.text == "Paris"
        assert stream_chunk.citations == ["https://example.com"]

    def test_from_ai_message_chunk_with_structured_content(self):
        """Test structured content parts are flattened to text."""
        chunk = AIMessageChunk(
            content=[{"type": "text", "text": "Hello ", "index": 0}, {"type": "input_json_delta", "partial_json": "{"}]
        )

        assert StreamChunk.from_message_chunk(chunk).text == "Hello "


class TestContentToText:
    """Tests for structured content normalization."""

    def test_string(self):
        assert content_to_text("abc") == "abc"

    def test_list_of_parts(self):
        assert content_to_text(["a", {"type": "text", "text": "b"}, {"type": "image_url"}]) == "ab"

    def test_object_text_then_content(self):
        assert content_to_text({"text": "t"}) == "t"
        assert content_to_text({"content": "c"}) == "c"

    def test_none(self):
        assert content_to_text(None) == ""


class TestTokenMetrics:
    """Tests for token metrics."""

    def test_measure(self):
        metrics = TokenMetrics.measure(total_tokens=100, duration_ms=2000)
        assert metrics.tokens_per_second == 50.0

    def test_zero_duration(self):
        assert TokenMetrics.measure(total_tokens=10, duration_ms=0).tokens_per_second == 0.0


class TestApiModels:
    """Tests for HTTP request models."""

    def test_message_request_defaults(self):
        request = MessageRequest.model_validate({"content": "Hello"})
        assert request.include_prior_conversation is True
        assert request.images == []
        assert request.max_turns is None

    def test_message_request_rejects_zero_turns(self):
        with pytest.raises(ValidationError):
            MessageRequest(content="Hello", max_turns=0)
