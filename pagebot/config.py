"""Runtime settings resolved from the environment."""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclasses.dataclass(frozen=True)
class Settings:
    """Pipeline configuration shared by the HTTP app and the workers."""

    database_url: str | None = None
    redis_url: str | None = None
    queue_backend: str = "memory"
    encryption_key: str | None = None
    app_secret: str | None = None
    webhook_verify_token: str | None = None
    app_env: str = "development"
    graph_api_version: str = "v18.0"
    graph_api_timeout: float = 10.0
    deliver_max_attempts: int = 3
    deliver_backoff_seconds: float = 2.0
    job_lease_seconds: float = 300.0
    bot_duplicate_window_seconds: float = 5.0
    reply_temperature_cap: float = 0.2
    rag_search_limit: int = 3
    rag_min_similarity: float = 0.1
    memory_max_messages: int = 10
    memory_summary_threshold: int = 8
    memory_keep_recent: int = 4
    worker_concurrency: int = 2
    embedding_model: str = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"
    start_workers: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with development defaults."""

    redis_url = os.getenv("REDIS_URL") or None
    backend = os.getenv("QUEUE_BACKEND") or ("redis" if redis_url else "memory")
    return Settings(
        database_url=os.getenv("DATABASE_URL") or None,
        redis_url=redis_url,
        queue_backend=backend.lower(),
        encryption_key=os.getenv("ENCRYPTION_KEY") or None,
        app_secret=os.getenv("FB_APP_SECRET") or None,
        webhook_verify_token=os.getenv("WEBHOOK_VERIFY_TOKEN") or None,
        app_env=os.getenv("APP_ENV", "development"),
        graph_api_version=os.getenv("GRAPH_API_VERSION", "v18.0"),
        graph_api_timeout=float(os.getenv("GRAPH_API_TIMEOUT", "10")),
        deliver_max_attempts=int(os.getenv("DELIVER_MAX_ATTEMPTS", "3")),
        deliver_backoff_seconds=float(os.getenv("DELIVER_BACKOFF_SECONDS", "2")),
        job_lease_seconds=float(os.getenv("JOB_LEASE_SECONDS", "300")),
        bot_duplicate_window_seconds=float(
            os.getenv("BOT_DUPLICATE_WINDOW_SECONDS", "5")
        ),
        reply_temperature_cap=float(os.getenv("REPLY_TEMPERATURE_CAP", "0.2")),
        rag_search_limit=int(os.getenv("RAG_SEARCH_LIMIT", "3")),
        rag_min_similarity=float(os.getenv("RAG_MIN_SIMILARITY", "0.1")),
        memory_max_messages=int(os.getenv("MEMORY_MAX_MESSAGES", "10")),
        memory_summary_threshold=int(os.getenv("MEMORY_SUMMARY_THRESHOLD", "8")),
        memory_keep_recent=int(os.getenv("MEMORY_KEEP_RECENT", "4")),
        worker_concurrency=int(os.getenv("WORKER_CONCURRENCY", "2")),
        embedding_model=os.getenv(
            "EMBEDDING_MODEL",
            "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2",
        ),
        start_workers=_flag("START_WORKERS", "true"),
    )


def reset_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_settings.cache_clear()
