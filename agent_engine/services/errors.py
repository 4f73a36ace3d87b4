"""Error taxonomy and user-facing error classification."""

from dataclasses import dataclass
from enum import StrEnum

import anthropic
import httpx

from agent_engine.utils.logging import get_logger

logger = get_logger(__name__)


class AgentError(Exception):
    """Base error type for orchestration failures."""


class ToolCallParseError(AgentError):
    """Malformed tool-call JSON embedded in a model reply."""


class ToolExecutionError(AgentError):
    """A single tool call failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class ModelInvocationError(AgentError):
    """The model backend failed while generating a turn."""


class CancellationError(AgentError):
    """Processing was aborted by the caller."""


class InvalidStatusTransition(AgentError, ValueError):
    """A message status change that would leave a terminal state."""


class ErrorCategory(StrEnum):
    """Stable, user-facing failure categories."""

    RATE_LIMIT = "rate_limit"
    SERVICE_UNAVAILABLE = "service_unavailable"
    REQUEST_FAILED = "request_failed"
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    MODEL_NOT_AVAILABLE = "model_not_available"
    TIMEOUT = "timeout"
    CREDITS_EXHAUSTED = "credits_exhausted"
    UNKNOWN = "unknown"


USER_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.RATE_LIMIT: (
        "**Rate Limit Exceeded**\n\nToo many requests were sent. Please wait a moment before trying again."
    ),
    ErrorCategory.SERVICE_UNAVAILABLE: (
        "**Service Unavailable**\n\nMultiple request formats were tried but all failed. Please try again later."
    ),
    ErrorCategory.REQUEST_FAILED: (
        "**Request Failed**\n\nThe service may be temporarily unavailable. Please try again later."
    ),
    ErrorCategory.NETWORK: (
        "**Network Error**\n\nA connection problem occurred. Please check your connection and try again."
    ),
    ErrorCategory.AUTHENTICATION: (
        "**Authentication Error**\n\nThe API key may be invalid or expired. Please check your API configuration."
    ),
    ErrorCategory.MODEL_NOT_AVAILABLE: (
        "**Model Not Available**\n\nThe requested model is not available. Please try a different model."
    ),
    ErrorCategory.TIMEOUT: "**Request Timeout**\n\nThe request took too long to complete. Please try again.",
    ErrorCategory.CREDITS_EXHAUSTED: (
        "**API Credits Exhausted**\n\nYour API credits have run out. "
        "Please check your billing dashboard or switch to a different model."
    ),
}


@dataclass(frozen=True)
class ClassifiedError:
    """A raw failure mapped onto the user-facing taxonomy."""

    category: ErrorCategory
    user_message: str


@dataclass(frozen=True)
class _Rule:
    all_of: tuple[str, ...]
    any_of: tuple[str, ...]
    category: ErrorCategory

    def matches(self, text: str) -> bool:
        if not all(needle in text for needle in self.all_of):
            return False
        return not self.any_of or any(needle in text for needle in self.any_of)


# First match wins
_RULES: tuple[_Rule, ...] = (
    _Rule((), ("rate limit", "rate_limit"), ErrorCategory.RATE_LIMIT),
    _Rule(("http 400", "all fallback urls failed"), (), ErrorCategory.SERVICE_UNAVAILABLE),
    _Rule(("http 400",), (), ErrorCategory.REQUEST_FAILED),
    _Rule(
        (),
        ("failed to fetch", "network error", "connection error", "connection refused"),
        ErrorCategory.NETWORK,
    ),
    _Rule(
        (),
        ("unauthorized", "authentication", "invalid api key", "invalid x-api-key"),
        ErrorCategory.AUTHENTICATION,
    ),
    _Rule((), ("model not found", "model_not_found"), ErrorCategory.MODEL_NOT_AVAILABLE),
    _Rule((), ("timeout", "timed out"), ErrorCategory.TIMEOUT),
    _Rule((), ("credit balance is too low",), ErrorCategory.CREDITS_EXHAUSTED),
)

# SDK exception types, checked before any message matching; subclasses first
_TYPED_RULES: tuple[tuple[type[BaseException], ErrorCategory], ...] = (
    (anthropic.RateLimitError, ErrorCategory.RATE_LIMIT),
    (anthropic.AuthenticationError, ErrorCategory.AUTHENTICATION),
    (anthropic.PermissionDeniedError, ErrorCategory.AUTHENTICATION),
    (anthropic.NotFoundError, ErrorCategory.MODEL_NOT_AVAILABLE),
    (anthropic.APITimeoutError, ErrorCategory.TIMEOUT),
    (anthropic.APIConnectionError, ErrorCategory.NETWORK),
    (httpx.TimeoutException, ErrorCategory.TIMEOUT),
    (httpx.ConnectError, ErrorCategory.NETWORK),
)


def _error_chain(raw_error: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = raw_error
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__
    return chain


def _error_text(raw_error: BaseException | str | object) -> str:
    if isinstance(raw_error, BaseException):
        text = str(raw_error)
        cause = raw_error.__cause__
        if cause is not None and str(cause) and str(cause) not in text:
            text = f"{text}: {cause}"
        return text or type(raw_error).__name__
    return str(raw_error)


class ErrorClassifier:
    """Map raw failures to a small, stable set of user-facing messages."""

    def classify(self, raw_error: BaseException | str | object) -> ClassifiedError:
        """Classify an exception or error string.

        Known SDK exception types (anywhere in the ``__cause__`` chain) are
        recognized first. Otherwise matching is a case-insensitive substring
        search against an ordered rule set; unrecognized errors surface their
        raw message.
        """
        raw_message = _error_text(raw_error)

        if isinstance(raw_error, BaseException):
            for error in _error_chain(raw_error):
                for error_type, category in _TYPED_RULES:
                    if isinstance(error, error_type):
                        logger.debug(f"Classified {type(error).__name__} as {category}")
                        return ClassifiedError(category=category, user_message=USER_MESSAGES[category])

        lowered = raw_message.lower()
        for rule in _RULES:
            if rule.matches(lowered):
                logger.debug(f"Classified error as {rule.category}: {raw_message}")
                return ClassifiedError(category=rule.category, user_message=USER_MESSAGES[rule.category])

        return ClassifiedError(
            category=ErrorCategory.UNKNOWN,
            user_message=(
                f"**Error Occurred**\n\nSomething went wrong: {raw_message}\n\n"
                "Please try again or check your settings."
            ),
        )


error_classifier = ErrorClassifier()
