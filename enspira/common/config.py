"""
Configuration Management for Enspira

Loads configuration from ~/.enspira/config.json and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field

logger = logging.getLogger("enspira.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".enspira"
CONFIG_PATH = CONFIG_DIR / "config.json"
DOCUMENTS_DIR = CONFIG_DIR / "documents"


@dataclass
class MilvusConfig:
    """Vector store connection and collection layout"""
    uri: str = "http://localhost:19530"
    token: str = ""
    db_name: str = ""
    collection_prefix: str = "enspira"
    dimension: int = 1024
    index_type: str = "IVF_FLAT"
    nlist: int = 1024
    nprobe: int = 64
    key_max_length: int = 2048
    text_max_length: int = 8192


@dataclass
class EmbeddingConfig:
    """OpenAI-compatible embedding endpoint"""
    endpoint: str = "http://localhost:8080/v1"
    model: str = "BAAI/bge-m3"
    api_key: str = ""
    timeout: float = 30.0


@dataclass
class RerankConfig:
    """Relevance oracle and tier thresholds.

    Thresholds are calibrated to the oracle's output distribution and
    must be revisited whenever the reranking model changes.
    """
    endpoint: str = "http://localhost:8080/v1"
    model: str = "BAAI/bge-reranker-v2-m3"
    api_key: str = ""
    timeout: float = 30.0
    high_threshold: float = 6.0
    acceptable_threshold: float = 4.5
    low_threshold: float = 1.4
    moderate_threshold: float = 5.0
    min_high_count: int = 2
    max_below_acceptable_fraction: float = 0.6
    min_selected: int = 3
    fallback_top_n: int = 5
    rewrite_query: bool = False


@dataclass
class LLMConfig:
    """LLM provider used for query inference, rewrite and summaries"""
    provider: str = "openai"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-haiku-4-5-20251001"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = ""  # any OpenAI-compatible server
    google_api_key: str = ""
    google_model: str = "gemini-2.0-flash"
    timeout: float = 60.0


@dataclass
class WebSearchConfig:
    """Web search provider and page extraction"""
    provider: str = "brave"  # "brave" or "tavily"
    brave_api_key: str = ""
    tavily_api_key: str = ""
    max_results: int = 3
    request_timeout: float = 15.0
    fetch_timeout: float = 10.0
    extraction_service_url: str = ""  # empty: extract locally
    default_freshness: str = "py"
    max_page_chars: int = 12000


@dataclass
class RetrieverConfig:
    """Retrieval orchestrator configuration"""
    topk: int = 10
    score_threshold: float = 0.0
    allow_augmentation: bool = True
    deadline_seconds: float = 0.0  # 0 disables the call deadline
    retry_attempts: int = 3
    backoff_seconds: float = 0.5


@dataclass
class IngestConfig:
    """Bulk ingestion configuration"""
    documents_dir: str = str(DOCUMENTS_DIR)
    batch_size: int = 32


@dataclass
class EnspiraConfig:
    """Main Enspira configuration"""
    milvus: MilvusConfig = field(default_factory=MilvusConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    rerank: RerankConfig = field(default_factory=RerankConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    web: WebSearchConfig = field(default_factory=WebSearchConfig)
    retriever: RetrieverConfig = field(default_factory=RetrieverConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _parse_section(cls, data: dict, name: str):
    """Build a section dataclass, ignoring unknown keys and keeping defaults."""
    section_data = data.get(name) or {}
    defaults = cls()
    kwargs = {}
    for key in defaults.__dataclass_fields__:
        if key in section_data:
            kwargs[key] = section_data[key]
    return cls(**kwargs)


def _parse_milvus_config(data: dict) -> MilvusConfig:
    """Parse milvus section from config dict"""
    milvus_data = data.get("milvus", {})
    cfg = _parse_section(MilvusConfig, data, "milvus")
    # Older configs used "address"
    if "uri" not in milvus_data and milvus_data.get("address"):
        cfg.uri = milvus_data["address"]
    return cfg


def _parse_rerank_config(data: dict) -> RerankConfig:
    """Parse rerank section, accepting the nested ``thresholds`` form."""
    cfg = _parse_section(RerankConfig, data, "rerank")
    thresholds = (data.get("rerank") or {}).get("thresholds") or {}
    for tier in ("high", "acceptable", "low", "moderate"):
        if tier in thresholds:
            setattr(cfg, f"{tier}_threshold", float(thresholds[tier]))
    return cfg


def load_config() -> EnspiraConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.enspira/config.json)
    3. Default values
    """
    config = EnspiraConfig()

    # Load from config file if exists
    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.milvus = _parse_milvus_config(data)
            config.embedding = _parse_section(EmbeddingConfig, data, "embedding")
            config.rerank = _parse_rerank_config(data)
            config.llm = _parse_section(LLMConfig, data, "llm")
            config.web = _parse_section(WebSearchConfig, data, "web")
            config.retriever = _parse_section(RetrieverConfig, data, "retriever")
            config.ingest = _parse_section(IngestConfig, data, "ingest")
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Failed to load config file %s: %s", CONFIG_PATH, e)

    # Plain string overrides
    _env_map = {
        "MILVUS_URI": ("milvus", "uri"),
        "MILVUS_TOKEN": ("milvus", "token"),
        "MILVUS_DB_NAME": ("milvus", "db_name"),
        "EMBEDDING_ENDPOINT": ("embedding", "endpoint"),
        "EMBEDDING_MODEL": ("embedding", "model"),
        "EMBEDDING_API_KEY": ("embedding", "api_key"),
        "RERANKING_ENDPOINT": ("rerank", "endpoint"),
        "RERANKING_MODEL": ("rerank", "model"),
        "RERANKING_API_KEY": ("rerank", "api_key"),
        "BRAVE_API_KEY": ("web", "brave_api_key"),
        "TAVILY_API_KEY": ("web", "tavily_api_key"),
        "WEB_SEARCH_PROVIDER": ("web", "provider"),
        "EXTRACTION_SERVICE_URL": ("web", "extraction_service_url"),
        "ENSPIRA_DOCUMENTS_DIR": ("ingest", "documents_dir"),
    }
    for env_var, (section, attr) in _env_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(getattr(config, section), attr, val)
            config._env_sourced_keys.add(f"{section}.{attr}")

    if os.getenv("MILVUS_DIMENSION"):
        config.milvus.dimension = int(os.getenv("MILVUS_DIMENSION"))
    if os.getenv("RETRIEVER_TOPK"):
        config.retriever.topk = int(os.getenv("RETRIEVER_TOPK"))
    if os.getenv("RETRIEVER_DEADLINE"):
        config.retriever.deadline_seconds = float(os.getenv("RETRIEVER_DEADLINE"))
    if os.getenv("ENSPIRA_ALLOW_AUGMENTATION"):
        config.retriever.allow_augmentation = (
            os.getenv("ENSPIRA_ALLOW_AUGMENTATION").lower() in ("true", "1", "yes")
        )

    # LLM env var overrides (target config.llm, track env-sourced keys)
    _env_llm_map = {
        "ANTHROPIC_API_KEY": "anthropic_api_key",
        "ANTHROPIC_MODEL": "anthropic_model",
        "OPENAI_API_KEY": "openai_api_key",
        "OPENAI_MODEL": "openai_model",
        "OPENAI_BASE_URL": "openai_base_url",
        "GOOGLE_API_KEY": "google_api_key",
        "GEMINI_API_KEY": "google_api_key",
        "GOOGLE_MODEL": "google_model",
        "ENSPIRA_LLM_PROVIDER": "provider",
    }
    for env_var, attr in _env_llm_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(config.llm, attr, val)
            config._env_sourced_keys.add(f"llm.{attr}")

    return config


# Fields that must never be persisted when they came from the environment
_SECRET_FIELDS = {
    "milvus.token",
    "embedding.api_key",
    "rerank.api_key",
    "web.brave_api_key",
    "web.tavily_api_key",
    "llm.anthropic_api_key",
    "llm.openai_api_key",
    "llm.google_api_key",
}


def _section_dict(section, name: str, env_sourced: set) -> dict:
    out = {}
    for key in section.__dataclass_fields__:
        value = getattr(section, key)
        if f"{name}.{key}" in env_sourced and f"{name}.{key}" in _SECRET_FIELDS:
            value = ""
        out[key] = value
    return out


def save_config(config: EnspiraConfig) -> None:
    """Save configuration to file.

    Secret fields that were sourced from environment variables are written
    as empty strings so that secrets are not persisted to disk.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    env_sourced = getattr(config, "_env_sourced_keys", set())
    data = {
        name: _section_dict(getattr(config, name), name, env_sourced)
        for name in ("milvus", "embedding", "rerank", "llm", "web", "retriever", "ingest")
    }

    with open(CONFIG_PATH, "w") as f:
        json.dump(data, f, indent=2)

    # Set secure permissions
    CONFIG_PATH.chmod(0o600)
