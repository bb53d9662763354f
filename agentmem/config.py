"""
Shared configuration for the agent memory engine.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

LOG_LEVEL = os.environ.get("AGENTMEM_LOG_LEVEL", "INFO").strip().upper()

logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO))
logger = logging.getLogger("agentmem")


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_optional(env_name: str) -> Optional[str]:
    value = os.environ.get(env_name)
    if value is None or not value.strip():
        return None
    return value.strip()


# Database settings
SQLITE_PATH = os.environ.get(
    "SQLITE_PATH",
    os.path.join(os.path.expanduser("~"), ".agentmem", "memory.db"),
)
DATABASE_URL = os.environ.get("DATABASE_URL")
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", True)

# Embedding settings
EMBEDDING_PROVIDER = os.environ.get("EMBEDDING_PROVIDER", "local").strip().lower()
EMBEDDING_MODEL = _get_optional("EMBEDDING_MODEL")
EMBEDDING_DIMENSIONS = _get_int("EMBEDDING_DIMENSIONS", 384)
EMBEDDING_API_KEY = _get_optional("EMBEDDING_API_KEY")
EMBEDDING_BASE_URL = _get_optional("EMBEDDING_BASE_URL")
LOCAL_EMBEDDING_MODEL = os.environ.get("LOCAL_EMBEDDING_MODEL", "all-MiniLM-L6-v2").strip()
LOCAL_EMBEDDING_DIM = 384
MAX_EMBEDDING_TEXT_LENGTH = _get_int("AGENTMEM_MAX_EMBEDDING_TEXT_LENGTH", 8000)

# Embedding retry/backoff
EMBEDDING_TIMEOUT_SECONDS = _get_float("EMBEDDING_TIMEOUT_SECONDS", 30.0)
EMBEDDING_RETRY_MAX = _get_int("EMBEDDING_RETRY_MAX", 2)
EMBEDDING_RETRY_BACKOFF_SECONDS = _get_float("EMBEDDING_RETRY_BACKOFF_SECONDS", 0.5)
EMBEDDING_RETRY_JITTER_SECONDS = _get_float("EMBEDDING_RETRY_JITTER_SECONDS", 0.25)
EMBEDDING_FAILURE_THRESHOLD = _get_int("EMBEDDING_FAILURE_THRESHOLD", 5)
EMBEDDING_COOLDOWN_SECONDS = _get_int("EMBEDDING_COOLDOWN_SECONDS", 60)
EMBEDDING_HEALTHCHECK_ENABLED = _get_bool("EMBEDDING_HEALTHCHECK_ENABLED", True)

# Decision engine
SIMILARITY_THRESHOLD = _get_float("SIMILARITY_THRESHOLD", 0.4)
SAME_CATEGORY_THRESHOLD = _get_float("SAME_CATEGORY_THRESHOLD", 0.25)
CONFLICT_SIMILARITY_THRESHOLD = _get_float("CONFLICT_SIMILARITY_THRESHOLD", 0.8)
DECISION_TEMPERATURE = _get_float("DECISION_TEMPERATURE", 0.1)
DECISION_MAX_TOKENS = _get_int("DECISION_MAX_TOKENS", 800)
CHAT_TIMEOUT_SECONDS = _get_float("CHAT_TIMEOUT_SECONDS", 60.0)
CHAT_PROVIDER = _get_optional("CHAT_PROVIDER")
CHAT_API_KEY = _get_optional("CHAT_API_KEY")
CHAT_BASE_URL = _get_optional("CHAT_BASE_URL")
CHAT_MODEL = _get_optional("CHAT_MODEL")

# Retrieval
FACT_SEARCH_LIMIT = _get_int("FACT_SEARCH_LIMIT", 10)
FACT_SEARCH_MIN_SIMILARITY = _get_float("FACT_SEARCH_MIN_SIMILARITY", 0.3)
FACT_CATEGORY_MAX_EXPANSION = _get_int("FACT_CATEGORY_MAX_EXPANSION", 5)
MAX_RESULT_LIMIT = _get_int("AGENTMEM_MAX_RESULT_LIMIT", 100)
MAX_TEXT_LENGTH = _get_int("AGENTMEM_MAX_TEXT_LENGTH", 8000)
MAX_SHORT_TEXT_LENGTH = _get_int("AGENTMEM_MAX_SHORT_TEXT_LENGTH", 255)

# Decay
DECAY_INTERVAL_SECONDS = _get_int("DECAY_INTERVAL_SECONDS", 4 * 60 * 60)
MIN_DECAY_INTERVAL_SECONDS = 60 * 60
MAX_DECAY_INTERVAL_SECONDS = 24 * 60 * 60
DECAY_RUN_ON_START = _get_bool("DECAY_RUN_ON_START", True)
DECAY_ENABLED = _get_bool("DECAY_ENABLED", True)

# Server
SERVER_HOST = os.environ.get("AGENTMEM_HOST", "127.0.0.1").strip()
SERVER_PORT = _get_int("AGENTMEM_PORT", 8080)

# Knowledge graph
MEMORY_AUTO_LINK = _get_bool("MEMORY_AUTO_LINK", True)
LINK_SIMILARITY_THRESHOLD = _get_float("LINK_SIMILARITY_THRESHOLD", 0.85)
RELATED_SIMILARITY_THRESHOLD = _get_float("RELATED_SIMILARITY_THRESHOLD", 0.6)
LINK_CANDIDATE_LIMIT = _get_int("LINK_CANDIDATE_LIMIT", 100)

SUPPORTED_EMBEDDING_PROVIDERS = {"openai", "zhipu", "gemini", "local"}


@dataclass
class EmbeddingSettings:
    """Active embedding-provider configuration handed over by the settings store."""

    provider: str = "local"
    model: Optional[str] = None
    dimensions: int = 384
    api_key_override: Optional[str] = None
    base_url_override: Optional[str] = None
    local_model: str = "all-MiniLM-L6-v2"

    @classmethod
    def from_env(cls) -> "EmbeddingSettings":
        return cls(
            provider=EMBEDDING_PROVIDER,
            model=EMBEDDING_MODEL,
            dimensions=EMBEDDING_DIMENSIONS,
            api_key_override=EMBEDDING_API_KEY,
            base_url_override=EMBEDDING_BASE_URL,
            local_model=LOCAL_EMBEDDING_MODEL,
        )


def clamp_decay_interval(seconds: float) -> float:
    return max(MIN_DECAY_INTERVAL_SECONDS, min(MAX_DECAY_INTERVAL_SECONDS, seconds))


def validate_and_prepare_config() -> None:
    """Validate configuration and apply derived settings at startup."""
    global DATABASE_URL

    errors = []
    if EMBEDDING_PROVIDER not in SUPPORTED_EMBEDDING_PROVIDERS:
        errors.append(
            "EMBEDDING_PROVIDER must be one of: "
            + ", ".join(sorted(SUPPORTED_EMBEDDING_PROVIDERS))
        )
    if EMBEDDING_DIMENSIONS <= 0:
        errors.append("EMBEDDING_DIMENSIONS must be positive")
    if not 0.0 <= SAME_CATEGORY_THRESHOLD <= 1.0 or not 0.0 <= SIMILARITY_THRESHOLD <= 1.0:
        errors.append("similarity thresholds must be between 0.0 and 1.0")

    if not DATABASE_URL:
        if not SQLITE_PATH:
            errors.append("SQLITE_PATH environment variable is required")
        else:
            os.makedirs(os.path.dirname(os.path.abspath(SQLITE_PATH)), exist_ok=True)
            DATABASE_URL = f"sqlite:///{SQLITE_PATH}"

    if EMBEDDING_PROVIDER != "local" and not EMBEDDING_API_KEY:
        logger.warning(
            "EMBEDDING_API_KEY is not set; remote embeddings will fall back to the local model."
        )

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))
