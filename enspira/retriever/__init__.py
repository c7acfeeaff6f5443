"""
Retriever - Knowledge Context Retrieval

Finds, scores and, when needed, augments the knowledge attached to a reply.

Key Components:
- Searcher: Similarity search over a tenant's collection
- Reranker: Tiered relevance scoring and sufficiency signals
- WebAugmenter: Web search, extraction, summary and write-back
- RetrievalOrchestrator: The per-message entry point

Pipeline:
1. Embed the message
2. Search the tenant's collection for the requested kind
3. Rerank candidates against the message
4. Augment from the web when stored knowledge is thin
"""

from .searcher import Searcher, SearchCandidate
from .reranker import Reranker, RerankClient, RerankResult, RerankThresholds, RerankTier
from .web_augmenter import WebAugmenter, SearchQuery, AugmentationResult
from .orchestrator import RetrievalOrchestrator, RankedContext, ContextStatus, NEUTRAL_CONTEXT

__all__ = [
    "Searcher",
    "SearchCandidate",
    "Reranker",
    "RerankClient",
    "RerankResult",
    "RerankThresholds",
    "RerankTier",
    "WebAugmenter",
    "SearchQuery",
    "AugmentationResult",
    "RetrievalOrchestrator",
    "RankedContext",
    "ContextStatus",
    "NEUTRAL_CONTEXT",
]
