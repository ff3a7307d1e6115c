"""Embedding generation with batching and L2 normalization for consistent similarity scoring"""
import asyncio
import logging
import numpy as np
from abc import abstractmethod
from typing import Any, List, Optional

import requests
from sentence_transformers import SentenceTransformer

from core.domain import ProviderErrorCode
from core.exceptions import EmbeddingProviderError, embedding_error_for
from core.interfaces import IEmbeddingService
from config import settings
from utils.common import parse_provider_error

logger = logging.getLogger(settings.LOGGER_NAME)


def l2_normalize(arr: np.ndarray) -> np.ndarray:
    """
    L2 normalize vectors to unit length (||v|| = 1).

    With unit vectors the chunk store's squared L2 distance d relates to
    cosine similarity as d = 2(1 - cos), so similarity = 1 - d/2.

    Args:
        arr: (N, D) array of N vectors with D dimensions
    """
    norms = np.linalg.norm(arr, axis=1, keepdims=True)
    norms[norms == 0] = 1e-12  # Avoid division by zero
    return arr / norms


class BatchingEmbeddingService(IEmbeddingService):
    """
    Splits inputs into provider-sized batches and stitches results back in order.

    Provider errors are raised as EmbeddingProviderError and never retried here;
    the caller (job queue or request handler) owns retry policy.
    """

    def __init__(self, batch_size: int = 64):
        self.batch_size = max(1, batch_size)
        self.dimension: Optional[int] = None

    @abstractmethod
    async def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Provider call for one batch"""
        raise NotImplementedError

    def _check_batch(self, texts: List[str], vectors: List[List[float]]) -> None:
        if len(vectors) != len(texts):
            raise EmbeddingProviderError(
                f"Provider returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        for vector in vectors:
            if self.dimension is None:
                self.dimension = len(vector)
            elif len(vector) != self.dimension:
                raise EmbeddingProviderError(
                    f"Embedding dimension changed from {self.dimension} to {len(vector)}"
                )

    async def generate_embeddings(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []

        vectors: List[List[float]] = []
        for offset in range(0, len(texts), self.batch_size):
            batch = texts[offset:offset + self.batch_size]
            batch_vectors = await self._embed_batch(batch)
            self._check_batch(batch, batch_vectors)
            vectors.extend(batch_vectors)

        logger.debug(f"Embedded {len(texts)} texts in {-(-len(texts) // self.batch_size)} batch(es)")
        return vectors

    async def generate_embedding(self, text: str) -> List[float]:
        vectors = await self.generate_embeddings([text])
        return vectors[0]


class SentenceTransformerEmbedding(BatchingEmbeddingService):
    """
    Local sentence-transformers model with L2 normalization (unit vectors).
    """

    _model: Optional[SentenceTransformer] = None  # Singleton cache

    def __init__(
        self,
        model_name: str = "paraphrase-multilingual-mpnet-base-v2",
        batch_size: int = 64,
        model: Optional[Any] = None,
    ):
        """Initializes the service, loading the heavy model only once."""
        super().__init__(batch_size=batch_size)

        if model is not None:
            self.model = model
            return

        if SentenceTransformerEmbedding._model is None:
            try:
                logger.info(f"Attempting to load model {model_name} from local cache...")
                SentenceTransformerEmbedding._model = SentenceTransformer(
                    model_name,
                    local_files_only=True
                )
                logger.info(f"Successfully loaded {model_name} from local cache.")

            except Exception as e:
                logger.warning(
                    f"Model {model_name} not found in cache. Attempting online download. "
                    f"This may take a few minutes. Error: {e}"
                )
                SentenceTransformerEmbedding._model = SentenceTransformer(model_name)
                logger.info(f"Successfully downloaded and loaded {model_name}.")

        self.model = SentenceTransformerEmbedding._model

    async def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        try:
            raw = await asyncio.to_thread(
                self.model.encode,
                texts,
                batch_size=self.batch_size,
                convert_to_tensor=False
            )
        except Exception as e:
            logger.error(f"Local embedding model failed: {e}")
            raise EmbeddingProviderError(f"Local embedding model failed: {e}") from e

        normalized = l2_normalize(np.array(raw, dtype="float32").reshape(len(texts), -1))
        return normalized.tolist()


class OpenAIEmbeddingService(BatchingEmbeddingService):
    """
    OpenAI-compatible /embeddings endpoint over HTTP.

    HTTP failures are mapped to ProviderErrorCode (authentication, quota, rate limit).
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str = "",
        batch_size: int = 64,
        timeout: int = settings.REQUEST_TIMEOUT,
    ):
        super().__init__(batch_size=batch_size)
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout

    def _post(self, texts: List[str]) -> List[List[float]]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = requests.post(
                f"{self.base_url}/embeddings",
                json={"model": self.model, "input": texts, "encoding_format": "float"},
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise EmbeddingProviderError(
                f"Embedding request timed out after {self.timeout} seconds",
                code=ProviderErrorCode.TIMEOUT,
            ) from e
        except requests.exceptions.ConnectionError as e:
            raise EmbeddingProviderError(
                f"Cannot connect to embedding provider at {self.base_url}",
                code=ProviderErrorCode.UNAVAILABLE,
            ) from e

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = None
            code = ProviderErrorCode.from_string(parse_provider_error(response.status_code, payload))
            logger.error(f"Embedding provider returned {response.status_code}: {response.text[:200]}")
            raise embedding_error_for(
                code, f"Embedding provider error {response.status_code}", response.status_code
            )

        data = sorted(response.json().get("data", []), key=lambda item: item.get("index", 0))
        if not data:
            return []
        vectors = np.array([item["embedding"] for item in data], dtype="float32")
        return l2_normalize(vectors).tolist()

    async def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        return await asyncio.to_thread(self._post, texts)
