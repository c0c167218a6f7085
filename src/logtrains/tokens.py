"""
Token counting strategies.

The Window Assembler never embeds a tokenizer. It receives a counter, so the
counting strategy can follow the target model without touching assembly.

Every counter must return at most the UTF-8 byte length of its input. The
assembler uses that bound to accept small selections without counting.
"""

import logging
import math
from typing import Any, Protocol, runtime_checkable

from logtrains.schema import TokenCounterKind

logger = logging.getLogger(__name__)

# Average characters per token for English text and log output
DEFAULT_CHARS_PER_TOKEN = 4.0


@runtime_checkable
class TokenCounter(Protocol):
    """Anything that can measure text in tokens; plain functions qualify."""

    def __call__(self, text: str) -> int: ...


class CharTokenCounter:
    """
    Character heuristic: one token per ``chars_per_token`` characters.

    Cheap and deterministic; rounds up so short fragments never count as free.
    """

    def __init__(self, chars_per_token: float = DEFAULT_CHARS_PER_TOKEN) -> None:
        if chars_per_token < 1:
            raise ValueError("chars_per_token must be at least 1")
        self.chars_per_token = chars_per_token

    def count(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)

    def __call__(self, text: str) -> int:
        return self.count(text)

    def __repr__(self) -> str:
        return f"CharTokenCounter(chars_per_token={self.chars_per_token})"


class WordTokenCounter:
    """One token per whitespace-delimited word."""

    def count(self, text: str) -> int:
        return len(text.split())

    def __call__(self, text: str) -> int:
        return self.count(text)

    def __repr__(self) -> str:
        return "WordTokenCounter()"


class TiktokenCounter:
    """
    BPE token counts through tiktoken.

    The encoding is loaded on first use; tiktoken may need to fetch the
    vocabulary file the first time an encoding is requested.
    """

    def __init__(self, encoding: str = "cl100k_base") -> None:
        self.encoding_name = encoding
        self._encoder: Any = None

    def _get_encoder(self) -> Any:
        if self._encoder is None:
            import tiktoken

            self._encoder = tiktoken.get_encoding(self.encoding_name)
            logger.debug("Loaded tiktoken encoding %s", self.encoding_name)
        return self._encoder

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._get_encoder().encode(text, disallowed_special=()))

    def __call__(self, text: str) -> int:
        return self.count(text)

    def __repr__(self) -> str:
        return f"TiktokenCounter(encoding={self.encoding_name!r})"


def make_token_counter(kind: TokenCounterKind | str) -> TokenCounter:
    """Build the counter named in configuration."""
    kind = TokenCounterKind(kind)
    if kind == TokenCounterKind.WORDS:
        return WordTokenCounter()
    if kind == TokenCounterKind.TIKTOKEN:
        return TiktokenCounter()
    return CharTokenCounter()
