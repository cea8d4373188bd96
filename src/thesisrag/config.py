"""Application configuration defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from thesisrag.embedding.encoder import DEFAULT_MODEL

REAL_PROVIDERS = ("openai", "real")


def _get_default_db_path() -> Path:
    """Local store used when no BaaS URL is configured."""
    local_db = Path("data/thesisrag.db")
    if local_db.exists():
        return local_db
    return Path.home() / ".thesisrag" / "thesisrag.db"


@dataclass(slots=True)
class AppConfig:
    embedding_provider: str = "mock"
    api_key: str | None = None
    model_name: str = DEFAULT_MODEL
    chunk_size: int = 1000
    chunk_overlap: int = 200
    search_limit: int = 5
    similarity_threshold: float = 0.7
    hybrid_semantic_weight: float = 0.7
    hybrid_keyword_weight: float = 0.3
    batch_size: int = 10

    # Backend-as-a-service endpoints
    supabase_url: str | None = None
    supabase_key: str | None = None
    storage_bucket: str = "documents"
    text_search_config: str = "french"
    db_path: Path | None = None

    min_text_chars: int = 100
    min_paragraph_chars: int = 50
    signed_url_ttl: int = 3600
    request_timeout: float = 60.0
    chat_model: str = "gpt-4-turbo-preview"

    def __post_init__(self) -> None:
        if self.db_path is None:
            self.db_path = _get_default_db_path()
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be less than "
                f"chunk_size ({self.chunk_size})"
            )

    @property
    def embedding_mode(self) -> str:
        """Effective embedding backend: a real provider needs an API key."""
        if self.embedding_provider in REAL_PROVIDERS and self.api_key:
            return "openai"
        return "mock"

    @property
    def uses_remote_store(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    def resolve_db_path(self, base_dir: Path | None = None) -> Path:
        if self.db_path is None:
            self.db_path = _get_default_db_path()
        if Path(self.db_path).is_absolute() or base_dir is None:
            return Path(self.db_path)
        return base_dir / self.db_path

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "AppConfig":
        """Build a config from ``THESISRAG_*``, ``OPENAI_*`` and ``SUPABASE_*`` variables."""
        env = os.environ if environ is None else environ
        api_key = env.get("OPENAI_API_KEY") or None
        provider = env.get("THESISRAG_EMBEDDING_PROVIDER") or ("openai" if api_key else "mock")
        db_path = env.get("THESISRAG_DB_PATH")

        return cls(
            embedding_provider=provider,
            api_key=api_key,
            model_name=env.get("THESISRAG_EMBEDDING_MODEL", DEFAULT_MODEL),
            chunk_size=int(env.get("THESISRAG_CHUNK_SIZE", "1000")),
            chunk_overlap=int(env.get("THESISRAG_CHUNK_OVERLAP", "200")),
            search_limit=int(env.get("THESISRAG_SEARCH_LIMIT", "5")),
            similarity_threshold=float(env.get("THESISRAG_SIMILARITY_THRESHOLD", "0.7")),
            hybrid_semantic_weight=float(env.get("THESISRAG_SEMANTIC_WEIGHT", "0.7")),
            hybrid_keyword_weight=float(env.get("THESISRAG_KEYWORD_WEIGHT", "0.3")),
            batch_size=int(env.get("THESISRAG_BATCH_SIZE", "10")),
            supabase_url=env.get("SUPABASE_URL") or None,
            supabase_key=env.get("SUPABASE_KEY") or None,
            storage_bucket=env.get("THESISRAG_STORAGE_BUCKET", "documents"),
            text_search_config=env.get("THESISRAG_TEXT_SEARCH_CONFIG", "french"),
            db_path=Path(db_path) if db_path else None,
            request_timeout=float(env.get("THESISRAG_REQUEST_TIMEOUT", "60")),
            chat_model=env.get("THESISRAG_CHAT_MODEL", "gpt-4-turbo-preview"),
        )
