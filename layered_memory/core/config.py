"""
Layered memory configuration.
Environment-driven settings for the tier stores, vector overlay, cache TTLs
and the insight notifier.
"""

import os
from pathlib import Path

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/layered_memory.db")

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Vector overlay configuration
VECTOR_PROVIDER = os.getenv("VECTOR_PROVIDER", "memory")  # memory|faiss
EMBED_PROVIDER = os.getenv("EMBED_PROVIDER", "hash")  # hash|sentence
EMBED_MODEL_NAME = os.getenv("EMBED_MODEL_NAME", "all-MiniLM-L6-v2")
EMBED_DIM = int(os.getenv("EMBED_DIM", "384"))
EMBED_TIMEOUT_SEC = float(os.getenv("EMBED_TIMEOUT_SEC", "10"))

# Pattern analyzer configuration
ANALYZER_PROVIDER = os.getenv("ANALYZER_PROVIDER", "heuristic")  # heuristic|ollama
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "llama3.2:latest")
OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
ANALYZER_TIMEOUT_SEC = float(os.getenv("ANALYZER_TIMEOUT_SEC", "30"))
INSIGHT_SAMPLE_LIMIT = int(os.getenv("INSIGHT_SAMPLE_LIMIT", "100"))
NOTIFIER_MAX_WORKERS = int(os.getenv("NOTIFIER_MAX_WORKERS", "4"))

# Query defaults
DEFAULT_QUERY_LIMIT = 50
GLOBAL_DIRECT_THRESHOLD = 0.5   # direct global queries
GLOBAL_MERGED_THRESHOLD = 0.2   # global tier merged into a search
GLOBAL_RAW_THRESHOLD = 0.3      # raw retrieval for analysis
CONTEXT_GLOBAL_LIMIT = 20       # cap on global contribution to a contextual read
DEFAULT_SIMILARITY_THRESHOLD = 0.7
DEFAULT_SEARCH_LIMIT = 10

# Cache TTLs (seconds)
PATTERN_CACHE_TTL_SEC = int(os.getenv("PATTERN_CACHE_TTL_SEC", "900"))
INDUSTRY_CACHE_TTL_SEC = int(os.getenv("INDUSTRY_CACHE_TTL_SEC", "1800"))
DEEP_ANALYSIS_CACHE_TTL_SEC = int(os.getenv("DEEP_ANALYSIS_CACHE_TTL_SEC", "3600"))

# Categories that may be promoted to the global tier
LEARNABLE_CATEGORIES = frozenset({"SuccessfulOutput", "InteractionPattern", "ClientFeedback"})

# Metadata keys stripped before a record reaches the global tier
IDENTIFYING_METADATA_KEYS = ("userId", "ownerId", "userEmail", "email", "name", "clientName", "projectName")

VERSION = "1.0.0"


def get_vector_store(dimension: int = None):
    """Get configured vector store implementation."""
    dimension = dimension or EMBED_DIM
    provider = os.getenv("VECTOR_PROVIDER", VECTOR_PROVIDER)

    if provider == "faiss":
        from ..vector.faiss_store import FaissVectorStore
        return FaissVectorStore(dimension=dimension)

    # Default to memory store for unknown providers
    from ..vector.index import SimpleInMemoryVectorStore
    return SimpleInMemoryVectorStore(dimension=dimension)


def get_embedding_provider():
    """Get configured embedding provider implementation."""
    provider = os.getenv("EMBED_PROVIDER", EMBED_PROVIDER)

    if provider == "sentence":
        from ..vector.embeddings import SentenceTransformerEmbedding
        return SentenceTransformerEmbedding(EMBED_MODEL_NAME)

    from ..vector.embeddings import DeterministicHashEmbedding
    return DeterministicHashEmbedding(dimension=EMBED_DIM)


def get_insight_analyzer():
    """Get configured pattern analyzer implementation."""
    provider = os.getenv("ANALYZER_PROVIDER", ANALYZER_PROVIDER)

    if provider == "ollama":
        from .analyzer import OllamaInsightAnalyzer
        return OllamaInsightAnalyzer(model_name=OLLAMA_MODEL, host=OLLAMA_HOST,
                                     timeout_sec=ANALYZER_TIMEOUT_SEC)

    from .analyzer import HeuristicInsightAnalyzer
    return HeuristicInsightAnalyzer()


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def validate_memory_config():
    """Validate memory configuration and return any issues."""
    issues = []

    if VECTOR_PROVIDER not in ["memory", "faiss"]:
        issues.append(f"Invalid VECTOR_PROVIDER: {VECTOR_PROVIDER}")

    if EMBED_PROVIDER not in ["hash", "sentence"]:
        issues.append(f"Invalid EMBED_PROVIDER: {EMBED_PROVIDER}")

    if ANALYZER_PROVIDER not in ["heuristic", "ollama"]:
        issues.append(f"Invalid ANALYZER_PROVIDER: {ANALYZER_PROVIDER}")

    if EMBED_DIM < 1:
        issues.append("EMBED_DIM must be >= 1")

    if EMBED_TIMEOUT_SEC <= 0 or ANALYZER_TIMEOUT_SEC <= 0:
        issues.append("Timeouts must be > 0 seconds")

    if NOTIFIER_MAX_WORKERS < 1:
        issues.append("NOTIFIER_MAX_WORKERS must be >= 1")

    for name, ttl in (("PATTERN_CACHE_TTL_SEC", PATTERN_CACHE_TTL_SEC),
                      ("INDUSTRY_CACHE_TTL_SEC", INDUSTRY_CACHE_TTL_SEC),
                      ("DEEP_ANALYSIS_CACHE_TTL_SEC", DEEP_ANALYSIS_CACHE_TTL_SEC)):
        if ttl < 1:
            issues.append(f"{name} must be >= 1")

    return issues
