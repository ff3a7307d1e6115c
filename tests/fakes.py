"""Test doubles for the embedding and completion providers."""

import hashlib
import re
from typing import Dict, List, Optional

import numpy as np

from core.interfaces import ICompletionProvider
from infrastructure.embedding_services import BatchingEmbeddingService, l2_normalize

_TOKEN_RE = re.compile(r"\w+")

THREE_SENTENCES = (
    "The compressor must be inspected every six months by a technician. "
    "Replace the hydraulic filter before restarting the pump assembly. "
    "Always log safety incidents in the maintenance portal within a day."
)
MIDDLE_SENTENCE = "Replace the hydraulic filter before restarting the pump assembly."


class HashingEmbeddingService(BatchingEmbeddingService):
    """
    Bag-of-words vectors: every token is hashed into one of `dimension` buckets.

    Identical texts get identical unit vectors, so a verbatim query scores a
    similarity of 1.0 against its own chunk.
    """

    def __init__(self, dimension: int = 256, batch_size: int = 4):
        super().__init__(batch_size=batch_size)
        self.size = dimension
        self.calls: List[List[str]] = []

    def _vector(self, text: str) -> np.ndarray:
        vector = np.zeros(self.size, dtype="float32")
        for token in _TOKEN_RE.findall(text.lower()):
            bucket = int(hashlib.md5(token.encode()).hexdigest(), 16) % self.size
            vector[bucket] += 1.0
        return vector

    async def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        return l2_normalize(np.stack([self._vector(t) for t in texts])).tolist()


class FailingEmbeddingService(BatchingEmbeddingService):
    """Raises the given error on every call"""

    def __init__(self, error: Exception):
        super().__init__(batch_size=8)
        self.error = error
        self.attempts = 0

    async def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.attempts += 1
        raise self.error


class FakeCompletionProvider(ICompletionProvider):
    """Returns a canned reply or raises a canned error; records prompts"""

    def __init__(self, reply: str = "Here is what I found.", error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.prompts: List[List[Dict[str, str]]] = []

    async def complete(self, messages: List[Dict[str, str]]) -> str:
        self.prompts.append(messages)
        if self.error is not None:
            raise self.error
        return self.reply
