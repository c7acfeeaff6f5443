"""
Relevance Reranker — second-pass scoring of search candidates.

Vector similarity is a cheap coarse filter. The reranker asks an external
relevance oracle to score each candidate against the message, sorts the
candidates into tiers, decides what is attached to the prompt, and reports
whether the stored knowledge looks sufficient.

Sufficiency uses three independent signals so that a drift in the oracle's
score distribution only has to trip one of them.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

import httpx

from ..common.config import RerankConfig
from ..common.errors import RetrievalError, Stage, UpstreamMalformed, UpstreamTimeout
from .searcher import SearchCandidate

logger = logging.getLogger("enspira.retriever.reranker")


REWRITE_POLICY = """You turn a chat message into a short, self-contained search query for a document reranker.

Keep names, products, places and technical terms exactly as written.
Drop greetings, filler and instructions aimed at the assistant.
If the message is already a good query, repeat it unchanged.

Respond with the query text only, on one line."""


class RerankTier(str, Enum):
    """Relevance buckets"""
    HIGH = "high"
    ACCEPTABLE = "acceptable"
    LOW = "low"
    REJECTED = "rejected"


@dataclass(frozen=True)
class RerankThresholds:
    """Tier boundaries and trigger limits, on the oracle's own scale"""
    high: float = 6.0
    acceptable: float = 4.5
    low: float = 1.4
    moderate: float = 5.0
    min_high_count: int = 2
    max_below_acceptable_fraction: float = 0.6
    min_selected: int = 3
    fallback_top_n: int = 5

    @classmethod
    def from_config(cls, config: RerankConfig) -> "RerankThresholds":
        return cls(
            high=config.high_threshold,
            acceptable=config.acceptable_threshold,
            low=config.low_threshold,
            moderate=config.moderate_threshold,
            min_high_count=config.min_high_count,
            max_below_acceptable_fraction=config.max_below_acceptable_fraction,
            min_selected=config.min_selected,
            fallback_top_n=config.fallback_top_n,
        )


@dataclass
class RerankedCandidate:
    candidate: SearchCandidate
    relevance_score: Optional[float]  # None when the oracle was not consulted
    tier: Optional[RerankTier]

    @property
    def text(self) -> str:
        return self.candidate.text


@dataclass(frozen=True)
class QualitySignals:
    high_count: int
    avg_top5: float
    below_acceptable_fraction: float


@dataclass
class RerankResult:
    """Outcome of a rerank pass.

    ``primary`` is what gets attached to the prompt: Acceptable-and-above,
    backfilled up to ``min_selected`` when short.
    """
    primary: List[RerankedCandidate] = field(default_factory=list)
    scored: List[RerankedCandidate] = field(default_factory=list)
    signals: Optional[QualitySignals] = None
    augment: bool = False
    backfilled: int = 0
    fallback_used: bool = False
    insufficient: bool = False
    error: Optional[RetrievalError] = None


def classify(score: float, thresholds: RerankThresholds) -> RerankTier:
    if score >= thresholds.high:
        return RerankTier.HIGH
    if score >= thresholds.acceptable:
        return RerankTier.ACCEPTABLE
    if score >= thresholds.low:
        return RerankTier.LOW
    return RerankTier.REJECTED


def compute_signals(scores: Sequence[float], thresholds: RerankThresholds) -> QualitySignals:
    if not scores:
        return QualitySignals(high_count=0, avg_top5=0.0, below_acceptable_fraction=1.0)
    ordered = sorted(scores, reverse=True)
    top5 = ordered[:5]
    return QualitySignals(
        high_count=sum(1 for s in scores if s >= thresholds.high),
        avg_top5=sum(top5) / len(top5),
        below_acceptable_fraction=sum(1 for s in scores if s < thresholds.acceptable) / len(scores),
    )


def should_augment(signals: QualitySignals, thresholds: RerankThresholds) -> bool:
    """Any one weak signal is enough to ask for web augmentation."""
    return (
        signals.high_count < thresholds.min_high_count
        or signals.avg_top5 < thresholds.moderate
        or signals.below_acceptable_fraction > thresholds.max_below_acceptable_fraction
    )


class RerankClient:
    """HTTP client for a ``/rerank`` endpoint (open-scale scores)."""

    def __init__(
        self,
        endpoint: str,
        model: str = "",
        api_key: str = "",
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._endpoint = endpoint.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._timeout = timeout
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http_client is None

    async def score(self, query: str, documents: List[str]) -> List[float]:
        """
        Score every document against the query.

        Returns:
            One score per document, in document order

        Raises:
            UpstreamTimeout, UpstreamMalformed, RetrievalError
        """
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        body = {"model": self._model, "query": query, "documents": documents}

        try:
            response = await self._http.post(
                f"{self._endpoint}/rerank", json=body, headers=headers, timeout=self._timeout
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(
                f"Rerank request timed out after {self._timeout}s", stage=Stage.RERANK
            ) from e
        except httpx.HTTPError as e:
            raise RetrievalError(f"Rerank request failed: {e}", stage=Stage.RERANK) from e

        return self._parse(response, len(documents))

    @staticmethod
    def _parse(response: httpx.Response, count: int) -> List[float]:
        try:
            results = response.json()["results"]
        except (ValueError, KeyError, TypeError) as e:
            raise UpstreamMalformed(
                f"Unexpected rerank response: {e}",
                stage=Stage.RERANK,
                details={"body": response.text[:200]},
            ) from e

        scores: List[Optional[float]] = [None] * count
        for item in results:
            try:
                index = int(item["index"])
                value = item.get("relevance_score", item.get("score"))
                if value is None or not 0 <= index < count:
                    continue
                scores[index] = float(value)
            except (KeyError, TypeError, ValueError):
                continue

        if all(s is None for s in scores):
            raise UpstreamMalformed("Rerank response carried no usable scores", stage=Stage.RERANK)

        # Documents the oracle skipped are treated as irrelevant
        return [s if s is not None else float("-inf") for s in scores]

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()


class Reranker:
    """
    Tiered relevance reranker.

    Never raises on oracle failure: it falls back to the raw top candidates
    by similarity and still requests augmentation when asked to.
    """

    def __init__(
        self,
        client: RerankClient,
        thresholds: Optional[RerankThresholds] = None,
        llm_client=None,
        rewrite_query: bool = False,
    ):
        self._client = client
        self._thresholds = thresholds or RerankThresholds()
        self._llm = llm_client
        self._rewrite_query = rewrite_query

    @property
    def thresholds(self) -> RerankThresholds:
        return self._thresholds

    async def rerank(
        self,
        message: str,
        candidates: List[SearchCandidate],
        augmentation_requested: bool = False,
    ) -> RerankResult:
        """
        Rerank candidates against the message.

        Args:
            message: The incoming message
            candidates: Similarity search results
            augmentation_requested: Whether the caller may augment

        Returns:
            RerankResult with the primary set and the augmentation decision
        """
        textual = [c for c in candidates if c.text]
        if not textual:
            logger.info("No extractable text in %d candidates", len(candidates))
            return RerankResult(insufficient=True, augment=augmentation_requested)

        query = await self._query_for(message)
        logger.debug("Reranking %d documents", len(textual))

        try:
            scores = await self._client.score(query, [c.text for c in textual])
        except RetrievalError as e:
            logger.warning("Rerank failed, using similarity order: %s", e)
            return self._fallback(candidates, augmentation_requested, e)
        except Exception as e:
            logger.error("Unexpected rerank error: %s", e, exc_info=True)
            error = RetrievalError(f"Rerank failed: {e}", stage=Stage.RERANK)
            return self._fallback(candidates, augmentation_requested, error)

        return self.select(textual, scores, augmentation_requested)

    def select(
        self,
        candidates: List[SearchCandidate],
        scores: Sequence[float],
        augmentation_requested: bool = False,
    ) -> RerankResult:
        """Classify scored candidates, pick the primary set and decide on augmentation."""
        t = self._thresholds
        scored = [
            RerankedCandidate(candidate=c, relevance_score=s, tier=classify(s, t))
            for c, s in zip(candidates, scores)
        ]
        scored.sort(key=lambda r: r.relevance_score, reverse=True)

        primary = [r for r in scored if r.tier in (RerankTier.HIGH, RerankTier.ACCEPTABLE)]
        backfilled = 0
        if len(primary) < t.min_selected:
            chosen = {id(r) for r in primary}
            # Low tier first, then whatever similarity ranked highest
            pool = [r for r in scored if r.tier == RerankTier.LOW]
            pool += sorted(
                (r for r in scored if r.tier == RerankTier.REJECTED),
                key=lambda r: r.candidate.similarity,
                reverse=True,
            )
            for r in pool:
                if len(primary) >= t.min_selected:
                    break
                if id(r) not in chosen:
                    primary.append(r)
                    chosen.add(id(r))
                    backfilled += 1

        finite = [s for s in scores if s != float("-inf")]
        signals = compute_signals(finite, t)
        augment = augmentation_requested and should_augment(signals, t)

        logger.info(
            "Rerank: %d primary (%d backfilled), high=%d avg_top5=%.2f below=%.2f augment=%s",
            len(primary), backfilled, signals.high_count, signals.avg_top5,
            signals.below_acceptable_fraction, augment,
        )
        return RerankResult(
            primary=primary,
            scored=scored,
            signals=signals,
            augment=augment,
            backfilled=backfilled,
        )

    def _fallback(
        self,
        candidates: List[SearchCandidate],
        augmentation_requested: bool,
        error: RetrievalError,
    ) -> RerankResult:
        top = sorted((c for c in candidates if c.text), key=lambda c: c.similarity, reverse=True)
        primary = [
            RerankedCandidate(candidate=c, relevance_score=None, tier=None)
            for c in top[: self._thresholds.fallback_top_n]
        ]
        return RerankResult(
            primary=primary,
            augment=augmentation_requested,
            fallback_used=True,
            error=error,
        )

    async def _query_for(self, message: str) -> str:
        """Optionally condense the message into a rerank query."""
        if not self._rewrite_query or self._llm is None or not self._llm.is_available:
            return message
        try:
            rewritten = await self._llm.generate(
                f"Message: {message[:1000]}", system=REWRITE_POLICY, max_tokens=64
            )
        except Exception as e:
            logger.warning("Query rewrite failed, using raw message: %s", e)
            return message
        rewritten = rewritten.strip().splitlines()[0].strip() if rewritten.strip() else ""
        return rewritten or message
