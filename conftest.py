"""Shared fixtures: an isolated LanceDB directory and an offline embedder."""

import hashlib
import re
from dataclasses import replace

import pytest

from config import CONFIG, Config
from embeddings import EmbeddingClient
from vector_store import PromptStore

TOKEN = re.compile(r"[a-z0-9]+")


def bag_of_words(text: str, size: int) -> list[float]:
    """Deterministic stand-in for a semantic embedding: hashed word counts."""
    vector = [0.0] * size
    for token in TOKEN.findall(text.lower()):
        slot = int(hashlib.sha256(token.encode()).hexdigest()[:8], 16) % size
        vector[slot] += 1.0
    if not any(vector):
        vector[0] = 1.0
    return vector


class FakeEmbeddingClient(EmbeddingClient):
    """EmbeddingClient whose provider call never leaves the process."""

    def __init__(self, config: Config, size: int = 64, fail_on: str | None = None) -> None:
        super().__init__(config)
        self.size = size
        self.fail_on = fail_on
        self.calls: list[str] = []

    def _invoke(self, text: str):
        self.calls.append(text)
        if self.fail_on and self.fail_on in text:
            raise RuntimeError("embedding service unavailable")
        return {"embedding": bag_of_words(text, self.size)}


@pytest.fixture
def config(tmp_path) -> Config:
    return replace(
        CONFIG,
        db_uri=str(tmp_path / "lancedb"),
        db_api_key=None,
        embedding_provider="ollama",
        default_user_id=None,
        per_session_users=False,
    )


@pytest.fixture
def embedder(config) -> FakeEmbeddingClient:
    return FakeEmbeddingClient(config)


@pytest.fixture
def store(config, embedder) -> PromptStore:
    return PromptStore(config, embedder=embedder)
