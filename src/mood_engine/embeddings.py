"""Client for the text-understanding service's embedding endpoint."""

from __future__ import annotations

import httpx
import structlog

from mood_engine.config import Settings, get_settings
from mood_engine.errors import EmbeddingServiceError

logger = structlog.get_logger(__name__)


class EmbeddingClient:
    """Turn raw text into an embedding via an OpenAI-compatible HTTP API.

    ``transport`` lets tests substitute an :class:`httpx.MockTransport`.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._transport = transport

    async def embed(self, text: str) -> list[float]:
        s = self._settings
        headers = {"Content-Type": "application/json"}
        if s.embedding_api_key:
            headers["Authorization"] = f"Bearer {s.embedding_api_key}"

        try:
            async with httpx.AsyncClient(timeout=s.embedding_timeout, transport=self._transport) as client:
                resp = await client.post(
                    s.embedding_api_url,
                    headers=headers,
                    json={
                        "model": s.embedding_model,
                        "input": text,
                        "dimensions": s.embedding_dimensions,
                    },
                )
        except httpx.HTTPError as exc:
            logger.error("embedding.request_failed", error=str(exc))
            raise EmbeddingServiceError(f"Embedding request failed: {exc}") from exc

        if resp.status_code != 200:
            logger.error("embedding.bad_status", status=resp.status_code)
            raise EmbeddingServiceError(f"Embedding service returned HTTP {resp.status_code}.")

        try:
            vector = resp.json()["data"][0]["embedding"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise EmbeddingServiceError("Malformed embedding response.") from exc

        logger.debug("embedding.created", dimensions=len(vector))
        return [float(v) for v in vector]
