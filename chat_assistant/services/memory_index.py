"""Hash-embedding index used to rank locally stored memories."""

from __future__ import annotations

import hashlib
import math
import re
from collections.abc import Iterable

DEFAULT_HASH_DIMENSIONS = 256
_WORD_RE = re.compile(r"[a-z0-9]+")
# Memory labels such as "User likes:" carry no meaning for ranking.
_LABEL_WORDS = frozenset({"user", "assistant", "insight"})


def embed_memory_text(text: str, *, dimensions: int = DEFAULT_HASH_DIMENSIONS) -> list[float]:
    """Project ``text`` into a unit vector by hashing each word into a few buckets."""

    words = [word for word in _WORD_RE.findall((text or "").lower()) if word not in _LABEL_WORDS]
    vector = [0.0] * max(1, dimensions)
    for word in words:
        digest = hashlib.sha256(word.encode("utf-8")).digest()
        for slot in range(8):
            bucket = digest[slot] % len(vector)
            sign = -1.0 if digest[slot + 8] & 1 else 1.0
            vector[bucket] += sign * (0.5 + digest[slot + 16] / 255.0)
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0.0:
        return vector
    return [value / norm for value in vector]


def similarity(left: list[float], right: list[float]) -> float:
    """Cosine similarity of two unit vectors, mapped into [0, 1]."""

    if len(left) != len(right):
        return 0.0
    if not any(left) or not any(right):
        return 0.0
    cosine = sum(a * b for a, b in zip(left, right))
    return max(0.0, min(1.0, (cosine + 1.0) / 2.0))


class HashEmbeddingIndex:
    """Vectors keyed by memory id."""

    def __init__(self, dimensions: int = DEFAULT_HASH_DIMENSIONS) -> None:
        self.dimensions = dimensions
        self._vectors: dict[str, list[float]] = {}

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, key: object) -> bool:
        return key in self._vectors

    def add(self, key: str, text: str) -> None:
        self._vectors[key] = embed_memory_text(text, dimensions=self.dimensions)

    def discard(self, key: str) -> bool:
        return self._vectors.pop(key, None) is not None

    def score(self, query: str, keys: Iterable[str]) -> dict[str, float]:
        """Return the similarity of ``query`` to each indexed key in ``keys``."""

        query_vector = embed_memory_text(query, dimensions=self.dimensions)
        return {
            key: similarity(query_vector, self._vectors[key])
            for key in keys
            if key in self._vectors
        }
