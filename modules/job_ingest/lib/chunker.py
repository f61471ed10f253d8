"""
Token-budgeted chunking.

Text is split into overlapping chunks that each fit the model's context window
once the prompt template (and completion allowance) is added. Token counting is
a pluggable policy: the model's own BPE encoding via tiktoken, a
character-count approximation, or a whitespace word splitter. All three are
lossless, so joining every chunk's `fresh_text` reproduces the input exactly.
"""

from __future__ import annotations

import math
import re
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from typing import Any

import tiktoken
from tiktoken.model import encoding_name_for_model

from .errors import ConfigError
from .models import Chunk

_WORD_RE = re.compile(r"\S+\s*|\s+")

# Used by chunk_strategy="tiktoken" when tiktoken does not know the model.
FALLBACK_ENCODING = "o200k_base"


class Tokenizer(ABC):
    """Splits text into tokens whose concatenation equals the input."""

    name: str = ""

    @abstractmethod
    def tokenize(self, text: str) -> list[str]:
        raise NotImplementedError

    def count(self, text: str) -> int:
        return len(self.tokenize(text))


class CharTokenizer(Tokenizer):
    """Approximates model tokens as fixed runs of `chars_per_token` characters."""

    name = "chars"

    def __init__(self, chars_per_token: int = 4) -> None:
        if chars_per_token <= 0:
            raise ConfigError("'chars_per_token' must be >= 1.")
        self.chars_per_token = int(chars_per_token)

    def tokenize(self, text: str) -> list[str]:
        n = self.chars_per_token
        return [text[i : i + n] for i in range(0, len(text), n)]

    def count(self, text: str) -> int:
        return math.ceil(len(text) / self.chars_per_token)


class WordTokenizer(Tokenizer):
    """One token per word, trailing whitespace attached to the word before it."""

    name = "words"

    def tokenize(self, text: str) -> list[str]:
        return _WORD_RE.findall(text)


class TiktokenTokenizer(Tokenizer):
    """
    Counts the tokens the model itself will see, using tiktoken's BPE encoding.

    The encoding is loaded on first use (tiktoken downloads and caches its
    ranks file), so constructing one never touches the network. Token pieces
    are cut out of the input at the offsets tiktoken reports; a token that
    starts inside a multi-byte character is attributed to that character, so
    the pieces always join back to the input.
    """

    name = "tiktoken"

    def __init__(self, encoding_name: str = FALLBACK_ENCODING) -> None:
        self.encoding_name = encoding_name
        self._encoding: Any = None
        self._lock = threading.Lock()

    @classmethod
    def for_model(cls, model: str | None) -> TiktokenTokenizer:
        return cls(model_encoding(model) or FALLBACK_ENCODING)

    @property
    def encoding(self) -> Any:
        with self._lock:
            if self._encoding is None:
                self._encoding = tiktoken.get_encoding(self.encoding_name)
            return self._encoding

    def _encode(self, text: str) -> list[int]:
        # Page text may legitimately contain "<|endoftext|>"; count it as plain text.
        return self.encoding.encode(text, disallowed_special=())

    def tokenize(self, text: str) -> list[str]:
        if not text:
            return []
        _, offsets = self.encoding.decode_with_offsets(self._encode(text))
        bounds = list(offsets[1:]) + [len(text)]
        pieces = [text[start:end] for start, end in zip(offsets, bounds)]
        # Tokens sharing one character yield empty pieces; they still count.
        return pieces

    def count(self, text: str) -> int:
        return len(self._encode(text)) if text else 0


def model_encoding(model: str | None) -> str | None:
    """tiktoken's encoding name for `model`, or None when tiktoken does not know it."""
    if not model:
        return None
    try:
        return encoding_name_for_model(model)
    except KeyError:
        return None


def make_tokenizer(strategy: str, *, chars_per_token: int = 4, model: str | None = None) -> Tokenizer:
    """
    "tiktoken" uses the model's encoding (o200k_base when the model is unknown);
    "auto" uses it only for models tiktoken knows and falls back to "chars".
    """
    key = (strategy or "").strip().lower()
    if key == "chars":
        return CharTokenizer(chars_per_token)
    if key == "words":
        return WordTokenizer()
    if key == "tiktoken":
        return TiktokenTokenizer.for_model(model)
    if key == "auto":
        encoding = model_encoding(model)
        return TiktokenTokenizer(encoding) if encoding else CharTokenizer(chars_per_token)
    raise ConfigError(
        f"Unknown chunk strategy {strategy!r} (expected 'auto', 'tiktoken', 'chars' or 'words')."
    )


class ChunkSequence:
    """
    Lazy, finite, restartable sequence of chunks.
    Tokenization happens on each iteration, so iterating twice gives identical output.
    """

    def __init__(self, text: str, tokenizer: Tokenizer, max_per_chunk: int, overlap: int) -> None:
        self._text = text
        self._tokenizer = tokenizer
        self._max = max_per_chunk
        self._overlap = overlap

    def __iter__(self) -> Iterator[Chunk]:
        if not self._text:
            return
        tokens = self._tokenizer.tokenize(self._text)
        n = len(tokens)
        start = 0
        index = 0
        overlap_here = 0
        while start < n:
            end = min(start + self._max, n)
            window = tokens[start:end]
            overlap_chars = sum(len(t) for t in window[:overlap_here])
            yield Chunk(
                index=index,
                text="".join(window),
                token_count=len(window),
                overlap_tokens=overlap_here,
                overlap_chars=overlap_chars,
            )
            if end >= n:
                return
            start = end - self._overlap
            overlap_here = self._overlap
            index += 1


class TokenBudgetChunker:
    def __init__(self, tokenizer: Tokenizer | None = None) -> None:
        self.tokenizer = tokenizer or CharTokenizer()

    def chunk(
        self,
        text: str,
        context_window: int,
        prompt_overhead_tokens: int,
        overlap_tokens: int,
    ) -> ChunkSequence:
        """
        Build the chunk sequence for `text`.

        Raises ConfigError when the window leaves no room for content, or when the
        overlap would stop the window from advancing.
        """
        max_per_chunk = int(context_window) - int(prompt_overhead_tokens)
        if max_per_chunk <= 0:
            raise ConfigError(
                f"context_window ({context_window}) must exceed prompt_overhead_tokens ({prompt_overhead_tokens})."
            )
        if overlap_tokens < 0:
            raise ConfigError("'overlap_tokens' must be >= 0.")
        if overlap_tokens >= max_per_chunk:
            raise ConfigError(
                f"'overlap_tokens' ({overlap_tokens}) must be smaller than the per-chunk budget ({max_per_chunk})."
            )
        return ChunkSequence(text or "", self.tokenizer, max_per_chunk, int(overlap_tokens))
