"""Shared fixtures: a deterministic stand-in for the sentence-transformers model."""

from __future__ import annotations

import math
import re
import zlib

import pytest


class HashingEmbedder:
    """Bag-of-words hashed into a fixed number of buckets, L2-normalised.

    Identical texts embed identically; texts with no shared words are close
    to orthogonal. Exposes the one method the stores call, ``encode``.
    """

    def __init__(self, dim: int = 384):
        self.dim = dim
        self.calls = 0

    def encode(self, text: str) -> list[float]:
        self.calls += 1
        vector = [0.0] * self.dim
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            vector[zlib.crc32(word.encode()) % self.dim] += 1.0
        if not any(vector):
            vector[0] = 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector]


@pytest.fixture
def embedder():
    return HashingEmbedder()
