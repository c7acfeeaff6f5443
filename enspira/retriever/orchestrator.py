"""
Retrieval Orchestrator

Public entry point of the pipeline:

1. Embed the message
2. Make sure the tenant's collection is ready
3. Check the embedding dimension against the collection
4. Similarity search
5. No candidates: augment from the web if allowed, else "no context"
6. Rerank; augment when the reranker says stored knowledge is thin
7. Return reranked entries followed by the augmentation entry

Failures never escape as exceptions (cancellation excepted); they come back
as a RankedContext with a typed error that renders as neutral context.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional

import httpx

from ..common.config import EnspiraConfig, RetrieverConfig
from ..common.embedding_service import EmbeddingService
from ..common.errors import ConfigurationError, RetrievalError, Stage, UpstreamTimeout
from ..common.llm_client import LLMClient
from ..common.milvus_client import MilvusStore
from ..common.schemas.records import KnowledgeKind
from ..common.vector_gateway import TenantVectorGateway
from .page_extractor import PageExtractor
from .reranker import RerankClient, Reranker, RerankResult, RerankThresholds
from .searcher import Searcher
from .web_augmenter import AugmentationResult, WebAugmenter
from .web_search import build_search_provider

logger = logging.getLogger("enspira.retriever.orchestrator")

NEUTRAL_CONTEXT = "- No additional information to provide.\n"


class ContextStatus(str, Enum):
    OK = "ok"
    AUGMENTED = "augmented"
    NO_CONTEXT = "no_context"
    DEGRADED = "degraded"  # usable context, but a stage failed along the way
    FAILED = "failed"


@dataclass
class ContextEntry:
    """One piece of context attached to the prompt"""
    text: str
    source: str  # "store" or "web"
    key: str = ""
    similarity: Optional[float] = None
    relevance_score: Optional[float] = None
    tier: Optional[str] = None
    source_urls: List[str] = field(default_factory=list)


@dataclass
class RankedContext:
    entries: List[ContextEntry] = field(default_factory=list)
    status: ContextStatus = ContextStatus.OK
    error: Optional[RetrievalError] = None
    warnings: List[RetrievalError] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.entries

    def render(self) -> str:
        """Context text for the prompt; the neutral marker when empty."""
        if not self.entries:
            return NEUTRAL_CONTEXT
        return "\n".join(entry.text for entry in self.entries)

    def to_dict(self) -> Dict:
        return {
            "status": self.status.value,
            "context": self.render(),
            "entries": [
                {
                    "source": e.source,
                    "key": e.key,
                    "similarity": e.similarity,
                    "relevance_score": e.relevance_score,
                    "tier": e.tier,
                    "source_urls": e.source_urls,
                }
                for e in self.entries
            ],
            "error": self.error.to_dict() if self.error else None,
            "warnings": [w.to_dict() for w in self.warnings],
        }


@dataclass
class _Progress:
    """Stage a single call is in, so a deadline can name it"""
    stage: Stage = Stage.EMBED

    def advance(self, stage: Stage) -> None:
        self.stage = stage


def _store_entries(result: RerankResult) -> List[ContextEntry]:
    return [
        ContextEntry(
            text=r.text,
            source="store",
            key=r.candidate.key,
            similarity=r.candidate.similarity,
            relevance_score=r.relevance_score,
            tier=r.tier.value if r.tier else None,
        )
        for r in result.primary
    ]


def _web_entry(result: AugmentationResult) -> ContextEntry:
    return ContextEntry(
        text=result.summary_text,
        source="web",
        key=result.subject,
        source_urls=list(result.source_urls),
    )


class RetrievalOrchestrator:
    """
    Composes embedding, gateway, search, rerank and augmentation per call.

    Holds no lock across a call; only the gateway's per-collection guard is
    ever taken, during provisioning and writes.
    """

    def __init__(
        self,
        embedding_service: EmbeddingService,
        gateway: TenantVectorGateway,
        searcher: Searcher,
        reranker: Reranker,
        augmenter: Optional[WebAugmenter] = None,
        config: Optional[RetrieverConfig] = None,
    ):
        self._embedding = embedding_service
        self._gateway = gateway
        self._searcher = searcher
        self._reranker = reranker
        self._augmenter = augmenter
        self._config = config or RetrieverConfig()
        self._closers: List = []

    @classmethod
    def from_config(cls, config: EnspiraConfig) -> "RetrievalOrchestrator":
        """Wire the full pipeline from configuration."""
        http = httpx.AsyncClient(timeout=config.embedding.timeout, follow_redirects=True)
        retry = config.retriever

        embedding = EmbeddingService(
            endpoint=config.embedding.endpoint,
            model=config.embedding.model,
            api_key=config.embedding.api_key,
            timeout=config.embedding.timeout,
            http_client=http,
            retry_attempts=retry.retry_attempts,
            backoff_seconds=retry.backoff_seconds,
        )
        store = MilvusStore(uri=config.milvus.uri, token=config.milvus.token, db_name=config.milvus.db_name)
        gateway = TenantVectorGateway(store, config.milvus)
        searcher = Searcher(
            gateway,
            nprobe=config.milvus.nprobe,
            retry_attempts=retry.retry_attempts,
            backoff_seconds=retry.backoff_seconds,
        )
        llm = LLMClient.from_config(config.llm)
        reranker = Reranker(
            RerankClient(
                endpoint=config.rerank.endpoint,
                model=config.rerank.model,
                api_key=config.rerank.api_key,
                timeout=config.rerank.timeout,
                http_client=http,
            ),
            thresholds=RerankThresholds.from_config(config.rerank),
            llm_client=llm,
            rewrite_query=config.rerank.rewrite_query,
        )
        augmenter = WebAugmenter(
            llm_client=llm,
            search_provider=build_search_provider(config.web, http),
            extractor=PageExtractor(
                http_client=http,
                fetch_timeout=config.web.fetch_timeout,
                extraction_service_url=config.web.extraction_service_url,
                max_page_chars=config.web.max_page_chars,
            ),
            embedding_service=embedding,
            gateway=gateway,
            max_results=config.web.max_results,
            default_freshness=config.web.default_freshness,
            text_max_length=config.milvus.text_max_length,
        )

        orchestrator = cls(embedding, gateway, searcher, reranker, augmenter, config.retriever)
        orchestrator._closers = [http.aclose, llm.close, store.close]
        return orchestrator

    @property
    def gateway(self) -> TenantVectorGateway:
        return self._gateway

    @property
    def embedding(self) -> EmbeddingService:
        return self._embedding

    async def aclose(self) -> None:
        for close in self._closers:
            try:
                await close()
            except Exception as e:
                logger.warning("Error while closing pipeline resource: %s", e)

    async def retrieve_context(
        self,
        message: str,
        tenant: str,
        kind: KnowledgeKind = KnowledgeKind.KNOWLEDGE,
        top_k: Optional[int] = None,
        allow_augmentation: Optional[bool] = None,
        deadline: Optional[float] = None,
    ) -> RankedContext:
        """
        Retrieve curated context for a message.

        Args:
            message: The incoming message
            tenant: Tenant id
            kind: Knowledge kind to search
            top_k: Candidates to fetch (default from config)
            allow_augmentation: Permit web augmentation (default from config)
            deadline: Seconds before the call gives up (default from config; 0 disables)

        Returns:
            RankedContext; never raises except on cancellation
        """
        top_k = top_k or self._config.topk
        if allow_augmentation is None:
            allow_augmentation = self._config.allow_augmentation
        if deadline is None:
            deadline = self._config.deadline_seconds

        progress = _Progress()
        try:
            if deadline and deadline > 0:
                return await asyncio.wait_for(
                    self._retrieve(message, tenant, kind, top_k, allow_augmentation, progress),
                    timeout=deadline,
                )
            return await self._retrieve(message, tenant, kind, top_k, allow_augmentation, progress)
        except asyncio.TimeoutError:
            logger.warning(
                "Retrieval for tenant %s exceeded its %.1fs deadline during %s",
                tenant, deadline, progress.stage.value,
            )
            return RankedContext(
                status=ContextStatus.FAILED,
                error=UpstreamTimeout(
                    f"Retrieval exceeded its {deadline}s deadline",
                    stage=progress.stage,
                    details={"tenant": tenant, "kind": kind.value},
                ),
            )
        except RetrievalError as e:
            logger.warning("Retrieval failed for tenant %s: %s", tenant, e)
            return RankedContext(status=ContextStatus.FAILED, error=e)
        except Exception as e:
            logger.error("Unexpected retrieval error for tenant %s: %s", tenant, e, exc_info=True)
            return RankedContext(
                status=ContextStatus.FAILED,
                error=RetrievalError(f"Unexpected error: {e}", stage=Stage.SEARCH),
            )

    async def _retrieve(
        self,
        message: str,
        tenant: str,
        kind: KnowledgeKind,
        top_k: int,
        allow_augmentation: bool,
        progress: _Progress,
    ) -> RankedContext:
        if not message or not message.strip():
            return RankedContext(status=ContextStatus.NO_CONTEXT)

        progress.advance(Stage.EMBED)
        vector = await self._embedding.embed_single(message)
        progress.advance(Stage.PROVISION)
        info = await self._gateway.ensure_ready(tenant, kind)

        if len(vector) != info.dimension:
            raise ConfigurationError(
                f"Embedding dimension {len(vector)} does not match collection "
                f"'{info.name}' dimension {info.dimension}",
                stage=Stage.DIMENSION,
                details={"expected": info.dimension, "actual": len(vector)},
            )

        progress.advance(Stage.SEARCH)
        candidates = await self._searcher.search(
            tenant,
            kind,
            vector,
            top_k=top_k,
            score_threshold=self._config.score_threshold,
        )
        can_augment = allow_augmentation and self._augmenter is not None

        if not candidates:
            logger.info("No stored candidates for tenant %s (%s)", tenant, kind.value)
            if not can_augment:
                return RankedContext(status=ContextStatus.NO_CONTEXT)
            return await self._augment_into(RankedContext(), message, tenant, progress)

        progress.advance(Stage.RERANK)
        result = await self._reranker.rerank(message, candidates, augmentation_requested=can_augment)
        context = RankedContext(entries=_store_entries(result))
        if result.error is not None:
            context.warnings.append(result.error)
            context.status = ContextStatus.DEGRADED

        if result.augment and can_augment:
            context = await self._augment_into(context, message, tenant, progress)
        return context

    async def _augment_into(
        self,
        context: RankedContext,
        message: str,
        tenant: str,
        progress: _Progress,
    ) -> RankedContext:
        """Append a web augmentation entry; stage failures degrade instead of failing."""
        try:
            augmentation = await self._augmenter.augment(message, tenant, on_stage=progress.advance)
        except RetrievalError as e:
            logger.warning("Augmentation failed for tenant %s: %s", tenant, e)
            context.warnings.append(e)
            context.status = ContextStatus.DEGRADED
            return context
        except Exception as e:
            logger.error("Unexpected augmentation error for tenant %s: %s", tenant, e, exc_info=True)
            context.warnings.append(RetrievalError(f"Augmentation failed: {e}", stage=Stage.INFER))
            context.status = ContextStatus.DEGRADED
            return context

        if augmentation is None:
            if context.is_empty:
                context.status = ContextStatus.NO_CONTEXT
            return context

        context.entries.append(_web_entry(augmentation))
        context.warnings.extend(augmentation.warnings)
        if context.status != ContextStatus.DEGRADED:
            context.status = ContextStatus.AUGMENTED
        return context

    async def retrieve_all(
        self,
        message: str,
        tenant: str,
        kinds: Iterable[KnowledgeKind] = (KnowledgeKind.KNOWLEDGE, KnowledgeKind.CHAT, KnowledgeKind.VOICE),
        top_k: Optional[int] = None,
        allow_augmentation: Optional[bool] = None,
    ) -> Dict[KnowledgeKind, RankedContext]:
        """Retrieve several kinds concurrently. Only general knowledge is augmented."""
        kinds = list(kinds)
        results = await asyncio.gather(*(
            self.retrieve_context(
                message,
                tenant,
                kind,
                top_k=top_k,
                allow_augmentation=allow_augmentation if kind == KnowledgeKind.KNOWLEDGE else False,
            )
            for kind in kinds
        ))
        return dict(zip(kinds, results))
