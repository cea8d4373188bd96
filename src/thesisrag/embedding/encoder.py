"""Embedding providers and vector helpers."""

from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Sequence

import httpx
import numpy as np

from thesisrag.errors import DimensionMismatch, InvalidVector, ProviderFailure

DEFAULT_MODEL = "text-embedding-3-small"
DEFAULT_BASE_URL = "https://api.openai.com/v1"
MAX_BATCH_SIZE = 2048
MOCK_DIMENSION = 1536

logger = logging.getLogger(__name__)


def model_dimension(model_name: str) -> int:
    """text-embedding-3-large has 3072 dimensions, the small model 1536."""
    return 3072 if "large" in model_name else 1536


@dataclass(slots=True)
class EmbeddingConfig:
    model_name: str = DEFAULT_MODEL
    api_key: str | None = None
    base_url: str = DEFAULT_BASE_URL
    timeout: float = 60.0
    max_batch_size: int = MAX_BATCH_SIZE


class EmbeddingProvider(ABC):
    """Common interface of every embedding backend."""

    dimensionality: int
    mode: str

    @abstractmethod
    async def generate_embedding(self, text: str) -> List[float]:
        """Embed a single text."""

    @abstractmethod
    async def generate_batch_embeddings(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed several texts, preserving input order."""


class OpenAIEmbeddings(EmbeddingProvider):
    """Client for an OpenAI-compatible ``/embeddings`` endpoint.

    Requests larger than ``max_batch_size`` inputs are split and sent one
    after the other. Errors are not retried here.
    """

    mode = "openai"

    def __init__(
        self,
        config: EmbeddingConfig,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not config.api_key:
            raise ValueError("An API key is required for the OpenAI embedding provider")
        self.config = config
        self.dimensionality = model_dimension(config.model_name)
        self._client = client

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.config.base_url.rstrip('/')}/embeddings"
        headers = {"Authorization": f"Bearer {self.config.api_key}"}
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                    response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("Embedding request failed: %s", exc)
            raise ProviderFailure(f"Embedding API error: {exc}") from exc

        if not response.is_success:
            raise ProviderFailure(
                f"Embedding API error: {provider_error_message(response)}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderFailure(f"Embedding API returned invalid JSON: {exc}") from exc

    async def generate_embedding(self, text: str) -> List[float]:
        data = await self._post({"input": text, "model": self.config.model_name})
        return _embeddings_from(data, expected=1)[0]

    async def generate_batch_embeddings(self, texts: Sequence[str]) -> List[List[float]]:
        texts = list(texts)
        embeddings: List[List[float]] = []
        step = max(self.config.max_batch_size, 1)
        for start in range(0, len(texts), step):
            batch = texts[start : start + step]
            logger.debug("Embedding batch of %d texts (offset %d)", len(batch), start)
            data = await self._post({"input": batch, "model": self.config.model_name})
            embeddings.extend(_embeddings_from(data, expected=len(batch)))
        return embeddings


def _embeddings_from(data: Any, *, expected: int) -> List[List[float]]:
    """Pull the vectors out of an ``/embeddings`` response body."""
    try:
        vectors = [[float(x) for x in item["embedding"]] for item in data["data"]]
    except (KeyError, IndexError, TypeError, ValueError) as exc:
        raise ProviderFailure(f"Malformed embedding response: {exc!r}") from exc
    if len(vectors) != expected:
        raise ProviderFailure(f"Expected {expected} embeddings, provider returned {len(vectors)}")
    return vectors


def provider_error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = (body.get("error") or {}).get("message")
        if message:
            return str(message)
    return response.reason_phrase or f"HTTP {response.status_code}"


class MockEmbeddings(EmbeddingProvider):
    """Deterministic pseudo-random unit vectors, for development and tests.

    The same text always maps to the same vector, but the vectors carry no
    meaning: similarity scores between different texts are noise.
    """

    mode = "mock"
    _warned = False

    def __init__(self, dimensionality: int = MOCK_DIMENSION) -> None:
        self.dimensionality = dimensionality
        if not MockEmbeddings._warned:
            logger.warning(
                "Using mock embeddings: vectors are not semantically meaningful"
            )
            MockEmbeddings._warned = True

    def _vector(self, text: str) -> List[float]:
        seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
        rng = np.random.default_rng(seed)
        return normalize_embedding(rng.random(self.dimensionality) - 0.5)

    async def generate_embedding(self, text: str) -> List[float]:
        return self._vector(text)

    async def generate_batch_embeddings(self, texts: Sequence[str]) -> List[List[float]]:
        return [self._vector(text) for text in texts]


def create_embedding_provider(
    provider: str = "mock",
    *,
    api_key: str | None = None,
    model_name: str = DEFAULT_MODEL,
    timeout: float = 60.0,
    client: httpx.AsyncClient | None = None,
) -> EmbeddingProvider:
    """Pick the embedding backend; a real provider without a key falls back to mock."""
    if provider in ("openai", "real"):
        if not api_key:
            logger.warning("OpenAI API key not provided, falling back to mock embeddings")
            return MockEmbeddings()
        config = EmbeddingConfig(model_name=model_name, api_key=api_key, timeout=timeout)
        return OpenAIEmbeddings(config, client=client)
    return MockEmbeddings()


def normalize_embedding(embedding: Sequence[float]) -> List[float]:
    """Scale a vector to unit length."""
    vector = np.asarray(embedding, dtype="float64")
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        raise InvalidVector("Cannot normalize a zero-norm vector")
    return (vector / norm).tolist()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between two vectors; 0.0 if either is all zeros."""
    if len(a) != len(b):
        raise DimensionMismatch(
            f"Embeddings must have the same dimensionality ({len(a)} != {len(b)})"
        )
    va = np.asarray(a, dtype="float64")
    vb = np.asarray(b, dtype="float64")
    denominator = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denominator == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denominator)


def centroid(vectors: Sequence[Sequence[float]]) -> List[float]:
    """Component-wise mean of equally sized vectors."""
    if not vectors:
        raise ValueError("Cannot compute the centroid of no vectors")
    length = len(vectors[0])
    if any(len(vector) != length for vector in vectors):
        raise DimensionMismatch("All vectors must share the same dimensionality")
    return np.mean(np.asarray(vectors, dtype="float64"), axis=0).tolist()
