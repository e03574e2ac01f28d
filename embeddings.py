"""Embedding client for prompt-bank (Ollama or Google GenAI)."""

from __future__ import annotations

import asyncio
import os
import sys
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np
import requests

from config import CONFIG, Config
from errors import EmbeddingError

if TYPE_CHECKING:
    from google.genai import Client as GenAIClient

DIMENSION_PROBE = "dimension probe"
SUPPORTED_PROVIDERS = frozenset({"ollama", "google"})

_lock = threading.Lock()


def _get_api_key() -> str:
    """Get API key from environment or secrets file."""
    key = os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")
    if key:
        return key
    secrets_path = Path.home() / ".secrets" / "GOOGLE_API_KEY"
    if secrets_path.exists():
        return secrets_path.read_text().strip()
    raise EmbeddingError(
        "GOOGLE_API_KEY not found. Set environment variable or create ~/.secrets/GOOGLE_API_KEY"
    )


def parse_embedding(payload: Any) -> list[float]:
    """Pull a numeric vector out of a provider response.

    Accepts ``{"embedding": [...]}``, ``{"embeddings": [[...]]}`` and
    responses whose ``embeddings[0]`` carries a ``values`` attribute.
    """
    values: Any = None
    if isinstance(payload, dict):
        if isinstance(payload.get("embedding"), list):
            values = payload["embedding"]
        elif isinstance(payload.get("embeddings"), list) and payload["embeddings"]:
            first = payload["embeddings"][0]
            values = first.get("values") if isinstance(first, dict) else first
    else:
        embeddings = getattr(payload, "embeddings", None)
        if embeddings:
            values = getattr(embeddings[0], "values", None)

    if not isinstance(values, (list, tuple)) or not values:
        raise EmbeddingError(f"Unexpected embedding response shape: {str(payload)[:500]}")
    if any(isinstance(v, bool) or not isinstance(v, (int, float)) for v in values):
        raise EmbeddingError("Embedding response contains non-numeric values")

    vector = np.asarray(values, dtype=np.float64)
    if not np.all(np.isfinite(vector)):
        raise EmbeddingError("Embedding response contains non-finite values")
    return vector.tolist()


class EmbeddingClient:
    """Calls the configured embedding model and remembers its dimensionality."""

    def __init__(self, config: Config = CONFIG) -> None:
        provider = config.embedding_provider.lower()
        if provider not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"Unknown embedding provider '{config.embedding_provider}'. "
                f"Valid: {sorted(SUPPORTED_PROVIDERS)}"
            )
        self.config = config
        self.provider = provider
        self._genai_client: GenAIClient | None = None
        self._dimension: int | None = None
        self._dimension_lock = asyncio.Lock()

    @property
    def model_id(self) -> str:
        return self.config.embedding_model

    @property
    def known_dimension(self) -> int | None:
        return self._dimension

    def _get_genai_client(self) -> GenAIClient:
        """Get or create the GenAI client (thread-safe)."""
        if self._genai_client is None:
            with _lock:
                if self._genai_client is None:  # Double-check after acquiring lock
                    from google import genai

                    self._genai_client = genai.Client(api_key=_get_api_key())
        return self._genai_client

    def _invoke_ollama(self, text: str) -> Any:
        response = requests.post(
            f"{self.config.ollama_base_url}/api/embeddings",
            json={"model": self.config.embedding_model, "prompt": text},
            timeout=self.config.embedding_timeout,
        )
        response.raise_for_status()
        return response.json()

    def _invoke_google(self, text: str) -> Any:
        from google.genai import types

        return self._get_genai_client().models.embed_content(
            model=self.config.embedding_model,
            contents=text,
            config=types.EmbedContentConfig(task_type="SEMANTIC_SIMILARITY"),
        )

    def _invoke(self, text: str) -> Any:
        """Single provider round trip returning the raw payload."""
        if self.provider == "google":
            return self._invoke_google(text)
        return self._invoke_ollama(text)

    def embed_sync(self, text: str) -> list[float]:
        try:
            payload = self._invoke(text)
        except EmbeddingError:
            raise
        except Exception as e:
            print(f"[prompt-bank] {self.provider} embedding error: {e}", file=sys.stderr)
            raise EmbeddingError(f"{self.provider} embedding call failed: {e}") from e
        return parse_embedding(payload)

    async def embed(self, text: str) -> list[float]:
        """Embed ``text`` without blocking the event loop. No retries."""
        return await asyncio.to_thread(self.embed_sync, text)

    async def dimension(self) -> int:
        """Vector size of the model, probed once per client.

        Concurrent first callers wait on the same probe; a failed probe is
        not remembered so the next caller tries again.
        """
        if self._dimension is None:
            async with self._dimension_lock:
                if self._dimension is None:  # Double-check after acquiring lock
                    vector = await self.embed(DIMENSION_PROBE)
                    self._dimension = len(vector)
                    print(
                        f"[prompt-bank] Embedding dimension for {self.model_id}: {self._dimension}",
                        file=sys.stderr,
                    )
        return self._dimension
