"""Embedding providers for scoped memory.

Two providers implement the EmbeddingProvider protocol:
- EmbeddingService: local sentence-transformers model, lazy-loaded on first
  use and run in a worker thread so it never blocks the event loop
- ApiEmbeddingService: OpenAI-compatible HTTP endpoint via httpx

Both raise EmbeddingFailure instead of provider-specific errors so that the
store path can fall back to keyword-only records.
"""

from __future__ import annotations

import asyncio
import struct

import httpx
import numpy as np
from loguru import logger

from .config import EmbeddingConfig
from .exceptions import EmbeddingFailure


class EmbeddingService:
    """Embedding service using sentence-transformers.

    Features:
    - Lazy model loading (only when first embedding is requested)
    - Batch encoding for efficiency
    - Serialization helpers for SQLite BLOB storage
    """

    def __init__(self, config: EmbeddingConfig | None = None):
        """Initialize embedding service.

        Args:
            config: Embedding configuration
        """
        self._config = config or EmbeddingConfig()
        self._model = None
        self._dimension = self._config.dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    def _ensure_model(self) -> None:
        """Lazy-load the sentence-transformers model."""
        if self._model is not None:
            return

        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError(
                "sentence-transformers is required for EmbeddingService. "
                "Install with: pip install 'scoped-memory[local]'"
            )

        logger.info(f"Loading embedding model: {self._config.model}")
        self._model = SentenceTransformer(
            self._config.model,
            trust_remote_code=self._config.trust_remote_code,
        )
        self._dimension = self._model.get_sentence_embedding_dimension()
        logger.info(f"Embedding model loaded: dim={self._dimension}")

    def encode(self, texts: list[str]) -> list[list[float]]:
        """Encode texts into normalized embedding vectors.

        Args:
            texts: List of text strings to encode

        Returns:
            List of embedding vectors (each a list of floats)
        """
        if not texts:
            return []

        self._ensure_model()

        embeddings: np.ndarray = self._model.encode(
            texts, batch_size=32, show_progress_bar=False,
            normalize_embeddings=True,
        )
        return embeddings.tolist()

    def encode_single(self, text: str) -> list[float]:
        results = self.encode([text])
        return results[0] if results else []

    async def embed(self, text: str) -> list[float]:
        """Encode one text off the event loop under the configured timeout.

        Raises:
            EmbeddingFailure: On model errors, empty output or timeout.
        """
        try:
            vector = await asyncio.wait_for(
                asyncio.to_thread(self.encode_single, text),
                timeout=self._config.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise EmbeddingFailure(
                f"embedding timed out after {self._config.timeout_seconds}s"
            ) from e
        except Exception as e:
            raise EmbeddingFailure(f"embedding failed: {e}") from e

        if not vector:
            raise EmbeddingFailure("embedding model returned an empty vector")
        return vector

    async def close(self) -> None:
        """Release the loaded model; it is reloaded on next use."""
        self._model = None

    @staticmethod
    def serialize_embedding(embedding: list[float]) -> bytes:
        """Serialize embedding to bytes for SQLite BLOB storage.

        Args:
            embedding: Embedding vector as list of floats

        Returns:
            Packed bytes (little-endian float32)
        """
        return struct.pack(f"<{len(embedding)}f", *embedding)

    @staticmethod
    def deserialize_embedding(blob: bytes) -> list[float]:
        """Deserialize embedding from SQLite BLOB.

        Args:
            blob: Packed bytes from SQLite

        Returns:
            Embedding vector as list of floats
        """
        count = len(blob) // 4  # float32 = 4 bytes
        return list(struct.unpack(f"<{count}f", blob))

    @staticmethod
    def cosine_similarity(a: list[float], b: list[float]) -> float:
        """Compute cosine similarity between two vectors.

        Vectors from other providers are not guaranteed to be normalized,
        so both norms are applied.

        Returns:
            Cosine similarity score (-1.0 to 1.0), 0.0 for mismatched or
            zero vectors
        """
        if not a or not b or len(a) != len(b):
            return 0.0
        va = np.asarray(a, dtype=np.float32)
        vb = np.asarray(b, dtype=np.float32)
        norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
        if norm == 0.0:
            return 0.0
        return float(np.dot(va, vb) / norm)


class ApiEmbeddingService:
    """Embedding provider backed by an OpenAI-compatible /embeddings endpoint."""

    def __init__(
        self,
        config: EmbeddingConfig,
        client: httpx.AsyncClient | None = None,
    ):
        if not config.api_url or not config.api_key:
            raise ValueError(
                "API embedding provider requires 'api_url' and 'api_key' in config"
            )
        self._config = config
        self._client = client
        self._owns_client = client is None
        self._dimension = config.dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._config.timeout_seconds)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this provider created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def embed(self, text: str) -> list[float]:
        try:
            response = await self._get_client().post(
                self._config.api_url,
                headers={"Authorization": f"Bearer {self._config.api_key}"},
                json={
                    "input": text,
                    "model": self._config.model,
                    "dimensions": self._dimension,
                },
            )
            response.raise_for_status()
            data = response.json()
            vector = data["data"][0]["embedding"][: self._dimension]
        except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
            raise EmbeddingFailure(f"embedding API error: {e}") from e

        if not vector:
            raise EmbeddingFailure("embedding API returned an empty vector")
        return vector


def create_embedding_provider(config: EmbeddingConfig | None = None):
    """Build the provider named by ``config.provider``."""
    config = config or EmbeddingConfig()
    if config.provider == "api":
        return ApiEmbeddingService(config)
    return EmbeddingService(config)
