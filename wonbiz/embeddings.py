"""Text embeddings through a Voyage-compatible HTTP API."""

from __future__ import annotations

import logging
from typing import List, Optional, Protocol

import httpx

from .errors import UpstreamFailure, UpstreamUnavailable, ValidationError
from .http import borrow_client, error_detail
from .models import Config

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...


class VoyageEmbeddings:
    """Fixed-dimension embeddings; dimensionality is decided by ``config.embedding_model``."""

    def __init__(self, config: Config, client: Optional[httpx.AsyncClient] = None) -> None:
        self.model = config.embedding_model
        self._api_key = config.voyage_api_key
        self._url = f"{config.voyage_base_url.rstrip('/')}/embeddings"
        self._timeout = config.provider_timeout
        self._client = client

    async def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise ValidationError("Text is required for embedding generation")
        if not self._api_key:
            raise UpstreamUnavailable("VOYAGE_API_KEY not configured")

        async with borrow_client(self._client, self._timeout) as client:
            try:
                response = await client.post(
                    self._url,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                    json={"input": text, "model": self.model},
                )
            except httpx.HTTPError as exc:
                raise UpstreamFailure(f"Embedding generation failed: {exc}") from exc
        if response.status_code >= 400:
            raise UpstreamFailure(f"Embedding generation failed: {error_detail(response)}", response.status_code)

        try:
            vector = response.json()["data"][0]["embedding"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise UpstreamFailure("Embedding response did not contain a vector") from exc
        logger.debug("Embedded %d chars into %d dimensions", len(text), len(vector))
        return [float(value) for value in vector]
