"""
Embedding Service

Calls an OpenAI-compatible embeddings endpoint and returns L2-normalized
vectors. The HTTP client is injected so tests and the orchestrator can share
one connection pool.
"""

import logging
from typing import List, Optional

import httpx
import numpy as np

from .errors import Stage, UpstreamMalformed, UpstreamTimeout, RetrievalError
from .retry import request_with_retry

logger = logging.getLogger("enspira.common.embedding_service")


class EmbeddingService:
    """
    Embedding client for Enspira.

    Embedding is an idempotent read, so requests are retried with
    exponential backoff.
    """

    def __init__(
        self,
        endpoint: str,
        model: str = "",
        api_key: str = "",
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_attempts: int = 3,
        backoff_seconds: float = 0.5,
    ):
        self._endpoint = endpoint.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._timeout = timeout
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http_client is None
        self._retry_attempts = retry_attempts
        self._backoff_seconds = backoff_seconds

    @property
    def model(self) -> str:
        return self._model

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a list of texts.

        Args:
            texts: List of strings to embed

        Returns:
            List of embedding vectors (L2 normalized), one per input
        """
        if not texts:
            return []

        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        body = {"input": texts}
        if self._model:
            body["model"] = self._model

        try:
            response = await request_with_retry(
                self._http,
                "POST",
                f"{self._endpoint}/embeddings",
                headers=headers,
                json_body=body,
                timeout=self._timeout,
                attempts=self._retry_attempts,
                backoff_seconds=self._backoff_seconds,
            )
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(
                f"Embedding request timed out after {self._timeout}s",
                stage=Stage.EMBED,
            ) from e
        except httpx.HTTPError as e:
            raise RetrievalError(f"Embedding request failed: {e}", stage=Stage.EMBED) from e

        vectors = self._parse_response(response, expected=len(texts))
        logger.debug("Embedded %d texts (dim=%d)", len(texts), len(vectors[0]))
        return vectors

    async def embed_single(self, text: str) -> List[float]:
        """
        Generate embedding for a single text.

        Args:
            text: String to embed

        Returns:
            Embedding vector (L2 normalized)
        """
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")

        embeddings = await self.embed([text])
        return embeddings[0]

    def _parse_response(self, response: httpx.Response, expected: int) -> List[List[float]]:
        try:
            data = response.json()
            items = sorted(data["data"], key=lambda item: item.get("index", 0))
            matrix = np.array([item["embedding"] for item in items], dtype=np.float64)
        except (ValueError, KeyError, TypeError) as e:
            raise UpstreamMalformed(
                f"Unexpected embedding response: {e}",
                stage=Stage.EMBED,
                details={"body": response.text[:200]},
            ) from e

        if matrix.ndim != 2 or matrix.shape[0] != expected:
            raise UpstreamMalformed(
                f"Expected {expected} embeddings, got shape {matrix.shape}",
                stage=Stage.EMBED,
            )

        return normalize(matrix).tolist()

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()


def normalize(matrix: np.ndarray) -> np.ndarray:
    """L2-normalize each row; zero rows are left as zeros."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms
