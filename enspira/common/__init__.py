"""
Enspira Common Module

Shared infrastructure for the retriever and ingestion paths.
"""

from .config import EnspiraConfig, load_config
from .embedding_service import EmbeddingService
from .errors import (
    RetrievalError,
    ConfigurationError,
    ProvisioningError,
    UpstreamTimeout,
    UpstreamMalformed,
    NoDataError,
    PartialExtractionFailure,
    Stage,
)
from .llm_client import LLMClient
from .milvus_client import MilvusStore
from .vector_gateway import TenantVectorGateway

__all__ = [
    "EnspiraConfig",
    "load_config",
    "EmbeddingService",
    "LLMClient",
    "MilvusStore",
    "TenantVectorGateway",
    "RetrievalError",
    "ConfigurationError",
    "ProvisioningError",
    "UpstreamTimeout",
    "UpstreamMalformed",
    "NoDataError",
    "PartialExtractionFailure",
    "Stage",
]
