"""Token estimators used to size conversation chunks.

Any object with a ``count_tokens(text) -> int`` method can be handed to the
chunker. The heuristic one is the default; tiktoken is available when closer
numbers are wanted.
"""

from __future__ import annotations

import math

import tiktoken


class HeuristicTokenizer:
    """Approximate count: one token per ~4 characters."""

    CHARS_PER_TOKEN = 4

    def count_tokens(self, text: str) -> int:
        return math.ceil(len(text or "") / self.CHARS_PER_TOKEN)


class TiktokenTokenizer:
    """Count tokens with a tiktoken encoding (loaded on first use)."""

    def __init__(self, encoding_name: str = "cl100k_base"):
        self.encoding_name = encoding_name
        self._encoder = None

    @property
    def encoder(self) -> tiktoken.Encoding:
        if self._encoder is None:
            self._encoder = tiktoken.get_encoding(self.encoding_name)
        return self._encoder

    def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        return len(self.encoder.encode(text))


TOKENIZERS = {
    "heuristic": HeuristicTokenizer,
    "tiktoken": TiktokenTokenizer,
}


def get_tokenizer(name: str = "heuristic"):
    """Look up a tokenizer by its CLI name."""
    try:
        return TOKENIZERS[name]()
    except KeyError:
        raise ValueError(f"Unknown tokenizer {name!r}; choose from {sorted(TOKENIZERS)}") from None
