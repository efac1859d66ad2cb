"""Token counting for message budgeting."""

import logging
from typing import Optional, Protocol

import tiktoken

from minichat.exceptions import CollaboratorFailure

logger = logging.getLogger(__name__)


class Tokenizer(Protocol):
    """Anything that turns text into a deterministic token count."""

    def count(self, text: str) -> int: ...


class TokenCounter:
    """Count tokens with a tiktoken encoding.

    The same counter is used for budgeting context and for the token counts
    stored on messages, so both always agree.
    """

    def __init__(self, encoding_name: str = "cl100k_base", allow_unknown: bool = False):
        """Initialize token counter.

        Args:
            encoding_name: tiktoken encoding (e.g., "cl100k_base", "o200k_base")
            allow_unknown: Count text as zero tokens instead of failing when the
                encoding cannot be loaded or applied
        """
        self.encoding_name = encoding_name
        self.allow_unknown = allow_unknown
        self._encoding: Optional[tiktoken.Encoding] = None

    @property
    def encoding(self) -> tiktoken.Encoding:
        """Load the encoding on first use."""
        if self._encoding is None:
            try:
                self._encoding = tiktoken.get_encoding(self.encoding_name)
            except Exception as e:
                raise CollaboratorFailure(
                    "tokenizer", f"cannot load encoding {self.encoding_name!r}: {e}"
                ) from e
            logger.debug(f"Using tiktoken encoding {self.encoding_name}")
        return self._encoding

    def count(self, text: str) -> int:
        """Count tokens in text.

        Args:
            text: Text to count tokens for

        Returns:
            Number of tokens

        Raises:
            CollaboratorFailure: If tiktoken fails and allow_unknown is off
        """
        if not text:
            return 0

        try:
            return len(self.encoding.encode(text))
        except CollaboratorFailure:
            if self.allow_unknown:
                logger.warning("Tokenizer unavailable, counting text as zero tokens")
                return 0
            raise
        except Exception as e:
            if self.allow_unknown:
                logger.warning(f"tiktoken encoding failed: {e}, counting as zero tokens")
                return 0
            raise CollaboratorFailure("tokenizer", str(e)) from e


def get_default_tokenizer() -> TokenCounter:
    """Build the tokenizer described by the global settings."""
    from minichat.config import settings

    return TokenCounter(
        encoding_name=settings.tokenizer_encoding,
        allow_unknown=settings.tokenizer_allow_unknown,
    )
