"""
Searcher

Nearest-neighbor search over one tenant's collection of a given kind.
The caller supplies an already-normalized query vector; results come back
as candidates ordered by descending cosine similarity.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..common.errors import RetrievalError, Stage
from ..common.retry import retry_async
from ..common.schemas.records import KnowledgeKind, record_from_row
from ..common.vector_gateway import TenantVectorGateway

logger = logging.getLogger("enspira.retriever.searcher")


@dataclass
class SearchCandidate:
    """A stored record returned by similarity search, not yet relevance-checked"""
    key: str
    kind: KnowledgeKind
    tenant_id: str
    similarity: float
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def record(self):
        """Typed record variant rebuilt from the payload."""
        return record_from_row(self.kind, self.tenant_id, self.payload)

    @property
    def text(self) -> str:
        """Context text, or "" when the payload carries none."""
        try:
            return self.record.context_text.strip()
        except ValueError:
            # Payload does not validate as this kind's record
            return str(self.payload.get("text_content") or self.payload.get("summary") or "").strip()


class Searcher:
    """
    Similarity search client.

    Search is an idempotent read and is retried with exponential backoff.
    """

    def __init__(
        self,
        gateway: TenantVectorGateway,
        nprobe: int = 64,
        retry_attempts: int = 3,
        backoff_seconds: float = 0.5,
    ):
        self._gateway = gateway
        self._nprobe = nprobe
        self._retry_attempts = retry_attempts
        self._backoff_seconds = backoff_seconds

    async def search(
        self,
        tenant: str,
        kind: KnowledgeKind,
        query_vector: List[float],
        fields: Optional[List[str]] = None,
        top_k: int = 10,
        score_threshold: float = 0.0,
    ) -> List[SearchCandidate]:
        """
        Search for records similar to ``query_vector``.

        Args:
            tenant: Tenant id
            kind: Knowledge kind to search
            query_vector: Normalized, dimension-matched query embedding
            fields: Output fields (defaults to every scalar field of the kind)
            top_k: Maximum number of candidates
            score_threshold: Minimum cosine similarity to keep

        Returns:
            Candidates sorted by similarity, possibly empty
        """
        info = await self._gateway.ensure_ready(tenant, kind)
        spec = self._gateway.spec_for(kind)
        output_fields = fields or spec.output_fields
        if spec.key_field not in output_fields:
            output_fields = [spec.key_field, *output_fields]

        async def _search():
            return await self._gateway.store.search(
                info.name,
                query_vector,
                limit=top_k,
                output_fields=output_fields,
                nprobe=self._nprobe,
                vector_field=spec.vector_field,
            )

        try:
            hits = await retry_async(
                _search,
                attempts=self._retry_attempts,
                backoff_seconds=self._backoff_seconds,
                retryable=lambda exc: not isinstance(exc, RetrievalError),
                label=f"search {info.name}",
            )
        except RetrievalError:
            raise
        except Exception as e:
            raise RetrievalError(
                f"Search on '{info.name}' failed: {e}",
                stage=Stage.SEARCH,
                details={"collection": info.name},
            ) from e

        candidates = [
            SearchCandidate(
                key=str(hit["entity"].get(spec.key_field, hit.get("id", ""))),
                kind=kind,
                tenant_id=tenant,
                similarity=hit["score"],
                payload=hit["entity"],
            )
            for hit in hits
            if hit["score"] >= score_threshold
        ]
        candidates.sort(key=lambda c: c.similarity, reverse=True)

        logger.debug(
            "Search on %s returned %d hits (%d above threshold %.2f)",
            info.name, len(hits), len(candidates), score_threshold,
        )
        return candidates
