"""Server configuration for prompt-bank."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

LOCAL_USER_ID = "local"  # identity when there is no token, configured user or per-session mode


@dataclass(frozen=True, slots=True)
class Config:
    """Server configuration with sensible defaults."""

    db_uri: str = os.environ.get(
        "PROMPT_BANK_DB_URI", str(Path.home() / ".prompt-bank" / "lancedb")
    )
    db_api_key: str | None = os.environ.get("LANCEDB_API_KEY")  # LanceDB Cloud only
    db_region: str = os.environ.get("LANCEDB_REGION", "us-east-1")
    embedding_provider: str = os.environ.get("EMBEDDING_PROVIDER", "ollama")  # ollama | google
    embedding_model: str = os.environ.get("EMBEDDING_MODEL", "qwen3-embedding:0.6b")
    ollama_base_url: str = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")
    embedding_timeout: float = float(os.environ.get("EMBEDDING_TIMEOUT", "30"))
    schema_version: int = 1
    preview_length: int = 160
    max_top_k: int = 200
    default_limit: int = 4
    max_limit: int = 50
    candidate_multiplier: int = 5
    max_batch_size: int = 50
    max_distance: float = float(os.environ.get("PROMPT_MAX_DISTANCE", "0.8"))
    distance_delta: float = float(os.environ.get("PROMPT_DISTANCE_DELTA", "0.08"))
    default_user_id: str | None = os.environ.get("PROMPT_BANK_USER_ID")
    per_session_users: bool = os.environ.get("PROMPT_BANK_PER_SESSION", "") in ("1", "true")
    transport: str = os.environ.get("MCP_TRANSPORT", "stdio")  # stdio | sse | streamable-http
    host: str = os.environ.get("MCP_HOST", "127.0.0.1")
    port: int = int(os.environ.get("MCP_PORT", "8000"))


CONFIG = Config()
