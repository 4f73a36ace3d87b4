"""In-memory large-content reference store."""

import hashlib
from typing import Protocol

from pydantic import BaseModel

from agent_engine.utils.logging import get_logger

logger = get_logger(__name__)

REFERENCE_PREFIX = "lfs://"


class ContentSummary(BaseModel):
    """Summary shown in place of content too large to inline."""

    summary: str
    original_size: int
    key_points: list[str] | None = None


class ContentStore(Protocol):
    """What the tool coordinator needs from a large-content store."""

    def is_reference(self, token: str) -> bool: ...

    def retrieve(self, token: str) -> str | None: ...

    def get_summary(self, token: str) -> ContentSummary | None: ...


class LargeContentStore:
    """Content-addressed store handing out ``lfs://<id>`` references."""

    def __init__(self, max_memory_bytes: int = 10 * 1024 * 1024):
        self.max_memory_bytes = max_memory_bytes
        self._content: dict[str, str] = {}
        self._summaries: dict[str, ContentSummary] = {}
        self._memory_used = 0

    def is_reference(self, token: str) -> bool:
        return isinstance(token, str) and token.startswith(REFERENCE_PREFIX)

    def store(self, content: str, summary: ContentSummary | None = None) -> str:
        """Store content and return its reference token."""
        content_id = hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]
        reference = f"{REFERENCE_PREFIX}{content_id}"

        if content_id not in self._content:
            if self._memory_used + len(content) > self.max_memory_bytes:
                raise ValueError(f"Large content store is full ({self._memory_used} bytes used)")
            self._content[content_id] = content
            self._memory_used += len(content)

        if summary is not None:
            self._summaries[content_id] = summary

        logger.debug(f"Stored {len(content)} characters as {reference}")
        return reference

    def retrieve(self, token: str) -> str | None:
        if not self.is_reference(token):
            return None
        return self._content.get(token.removeprefix(REFERENCE_PREFIX))

    def get_summary(self, token: str) -> ContentSummary | None:
        if not self.is_reference(token):
            return None
        return self._summaries.get(token.removeprefix(REFERENCE_PREFIX))


def format_summary_block(summary: ContentSummary, reference: str) -> str:
    """Render a large-content summary for the model and the user."""
    key_points = ""
    if summary.key_points:
        bullets = "\n".join(f"- {point}" for point in summary.key_points)
        key_points = f"\n\n**Key Points:**\n{bullets}"

    return (
        f"**Large Content Summary** ({summary.original_size} characters)\n\n"
        f"{summary.summary}{key_points}\n\n"
        f"*Full content available: {reference}*"
    )
