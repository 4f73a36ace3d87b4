"""Token estimation helpers."""

import tiktoken

from agent_engine.utils.logging import get_logger

logger = get_logger(__name__)

_tokenizer: tiktoken.Encoding | None = None
_tokenizer_loaded = False


def _get_tokenizer() -> tiktoken.Encoding | None:
    global _tokenizer, _tokenizer_loaded
    if not _tokenizer_loaded:
        _tokenizer_loaded = True
        try:
            # Close enough for every provider we talk to
            _tokenizer = tiktoken.get_encoding("cl100k_base")
        except Exception as e:
            logger.warning(f"Tokenizer unavailable, falling back to character estimate: {e}")
            _tokenizer = None
    return _tokenizer


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a piece of text.

    Falls back to roughly four characters per token when no tokenizer
    can be loaded (e.g. offline without a cached encoding).
    """
    if not text:
        return 0

    tokenizer = _get_tokenizer()
    try:
        return len(tokenizer.encode(text)) if tokenizer else max(1, len(text) // 4)
    except Exception:
        return max(1, len(text) // 4)
