"""
Web Search Augmenter

Fills gaps in stored knowledge: infer a search query from the message, run
a web search, pull readable text from the result pages, summarize it, and
write the summary back as general knowledge so the next similar question
is answered from the store.

Chain: infer -> execute -> extract -> summarize -> persist.
Each stage raises a stage-tagged RetrievalError; opting out of search is
not an error and yields None.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from ..common.errors import (
    ConfigurationError,
    NoDataError,
    PartialExtractionFailure,
    RetrievalError,
    Stage,
    UpstreamMalformed,
    UpstreamTimeout,
)
from ..common.llm_utils import parse_llm_json, strip_code_fences
from ..common.schemas.records import DocumentRecord, KnowledgeKind, truncate_utf8
from .page_extractor import ExtractionResult, PageExtractor
from .web_search import ResultLink, normalize_freshness

logger = logging.getLogger("enspira.retriever.web_augmenter")


INFER_POLICY = """You decide whether answering a chat message needs fresh information from the web, and if so, write the search.

SEARCH if the message asks about:
- Facts, people, places, products or events the assistant may not know
- Anything recent, scheduled, or likely to have changed
- Specific numbers, releases, prices or results

DO NOT SEARCH for:
- Greetings, small talk, jokes or opinions
- Questions about the conversation itself
- Things answerable from general common sense

Respond with JSON only:
{"search": true, "query": "compact web search query", "subject": "short topic name", "context": "what the user wants to know", "freshness": "day|week|month|year"}
or {"search": false}"""

SUMMARY_POLICY = """You summarize web page extracts into a compact factual briefing.

- Keep concrete facts: names, dates, numbers, versions, outcomes
- Merge duplicate facts from different pages; note disagreements briefly
- Leave out navigation text, ads, cookie notices and unrelated material
- No preamble, no closing remarks, no speculation

Write at most 250 words of plain text."""


@dataclass
class SearchQuery:
    query: str
    subject: str
    context: str = ""
    freshness: str = "py"


@dataclass
class AugmentationResult:
    subject: str
    summary_text: str
    source_urls: List[str] = field(default_factory=list)
    persisted: bool = False
    warnings: List[RetrievalError] = field(default_factory=list)


def parse_search_directive(raw: str, default_freshness: str = "py") -> Optional[SearchQuery]:
    """Parse the inference model's answer.

    Accepts the JSON contract of INFER_POLICY, the bare word ``pass``, and
    the older ``query;subject;context;freshness`` line.

    Returns:
        SearchQuery, or None when the model opted out

    Raises:
        UpstreamMalformed: the answer fits none of the accepted forms
    """
    text = strip_code_fences(raw or "").strip()
    if not text:
        raise UpstreamMalformed("Empty search inference response", stage=Stage.INFER)

    if text.strip(" .\"'").lower() == "pass":
        return None

    data = parse_llm_json(text)
    if data:
        if not data.get("search", True):
            return None
        query = str(data.get("query") or "").strip()
        if not query:
            raise UpstreamMalformed(
                "Search inference asked to search without a query",
                stage=Stage.INFER,
                details={"raw": raw[:200]},
            )
        return SearchQuery(
            query=query,
            subject=str(data.get("subject") or query).strip(),
            context=str(data.get("context") or "").strip(),
            freshness=normalize_freshness(data.get("freshness"), default_freshness),
        )

    parts = [p.strip() for p in text.splitlines()[0].split(";")]
    if len(parts) >= 2 and parts[0]:
        return SearchQuery(
            query=parts[0],
            subject=parts[1] or parts[0],
            context=parts[2] if len(parts) > 2 else "",
            freshness=normalize_freshness(parts[3] if len(parts) > 3 else None, default_freshness),
        )

    raise UpstreamMalformed(
        "Unrecognized search inference response",
        stage=Stage.INFER,
        details={"raw": raw[:200]},
    )


class WebAugmenter:
    """
    On-demand web retrieval with write-back.

    Collaborators are injected: an LLMClient for inference and summaries, a
    search provider, a PageExtractor, the EmbeddingService and the gateway.
    """

    def __init__(
        self,
        llm_client,
        search_provider,
        extractor: PageExtractor,
        embedding_service,
        gateway,
        max_results: int = 3,
        default_freshness: str = "py",
        text_max_length: int = 8192,
    ):
        self._llm = llm_client
        self._provider = search_provider
        self._extractor = extractor
        self._embedding = embedding_service
        self._gateway = gateway
        self._max_results = max_results
        self._default_freshness = default_freshness
        self._text_max_length = text_max_length

    async def _complete(self, prompt: str, system: str, stage: Stage, max_tokens: int) -> str:
        if self._llm is None or not self._llm.is_available:
            raise ConfigurationError("LLM client is not available", stage=stage)
        try:
            return await self._llm.generate(prompt, system=system, max_tokens=max_tokens)
        except asyncio.TimeoutError as e:
            raise UpstreamTimeout("LLM call timed out", stage=stage) from e
        except Exception as e:
            raise RetrievalError(f"LLM call failed: {e}", stage=stage) from e

    async def infer(self, message: str, tenant: str) -> Optional[SearchQuery]:
        """Ask the LLM whether and what to search. None means "nothing to search"."""
        raw = await self._complete(f"Message: {message[:2000]}", INFER_POLICY, Stage.INFER, 200)
        query = parse_search_directive(raw, self._default_freshness)
        if query is None:
            logger.info("Query builder opted out of search for tenant %s", tenant)
        else:
            logger.info("Search param for tenant %s: '%s' (%s)", tenant, query.query, query.freshness)
        return query

    async def execute(self, query: SearchQuery) -> List[ResultLink]:
        return await self._provider.search(query.query, query.freshness, self._max_results)

    async def extract(self, links: List[ResultLink], subject: str) -> ExtractionResult:
        result = await self._extractor.extract(links)
        logger.info(
            "Pulled %d/%d pages for '%s'", result.pages, len(links), subject
        )
        return result

    async def summarize(self, subject: str, text: str) -> str:
        response = await self._complete(
            f"Subject: {subject}\n\n{text}", SUMMARY_POLICY, Stage.SUMMARIZE, 600
        )
        if not response.strip():
            raise UpstreamMalformed("Summarizer returned an empty response", stage=Stage.SUMMARIZE)
        return f"### Summary of {subject}:\n{response.strip()}"

    async def persist(self, summary: str, subject: str, tenant: str) -> bool:
        """Store the summary under its subject. Never retried; dedup by subject."""
        embedding = await self._embedding.embed_single(subject)
        record = DocumentRecord(
            tenant_id=tenant,
            relation=subject,
            text_content=truncate_utf8(summary, self._text_max_length),
            embedding=embedding,
        )
        inserted = await self._gateway.insert(
            tenant, KnowledgeKind.KNOWLEDGE, [record], sync_by_count=False
        )
        if inserted:
            logger.info("Stored summary for '%s' into tenant %s", subject, tenant)
        else:
            logger.info("Summary for '%s' already stored for tenant %s", subject, tenant)
        return inserted > 0

    async def augment(
        self,
        message: str,
        tenant: str,
        on_stage: Optional[Callable[[Stage], None]] = None,
    ) -> Optional[AugmentationResult]:
        """
        Run the full chain.

        Args:
            message: The incoming message
            tenant: Tenant id
            on_stage: Called with each stage as it starts

        Returns:
            AugmentationResult, or None when inference opted out

        Raises:
            RetrievalError (stage-tagged) when a stage fails outright
        """
        mark = on_stage or (lambda stage: None)

        mark(Stage.INFER)
        query = await self.infer(message, tenant)
        if query is None:
            return None

        mark(Stage.WEB_SEARCH)
        links = await self.execute(query)
        if not links:
            raise NoDataError(
                f"No web results for '{query.query}'",
                stage=Stage.WEB_SEARCH,
                details={"query": query.query},
            )

        mark(Stage.EXTRACT)
        extraction = await self.extract(links, query.subject)
        if not extraction.text.strip():
            raise NoDataError(
                f"No readable content for '{query.subject}'",
                stage=Stage.EXTRACT,
                details={"failed_urls": extraction.failed_urls},
            )

        warnings: List[RetrievalError] = []
        if extraction.failed_urls:
            warnings.append(PartialExtractionFailure(
                f"{len(extraction.failed_urls)} of {len(links)} pages failed",
                stage=Stage.EXTRACT,
                details={"failed_urls": extraction.failed_urls},
            ))

        mark(Stage.SUMMARIZE)
        summary = await self.summarize(query.subject, extraction.text)

        mark(Stage.PERSIST)
        persisted = False
        try:
            persisted = await self.persist(summary, query.subject, tenant)
        except RetrievalError as e:
            logger.warning("Failed to store summary for '%s': %s", query.subject, e)
            warnings.append(e)
        except Exception as e:
            logger.error("Failed to store summary for '%s': %s", query.subject, e, exc_info=True)
            warnings.append(RetrievalError(f"Persist failed: {e}", stage=Stage.PERSIST))

        return AugmentationResult(
            subject=query.subject,
            summary_text=summary,
            source_urls=[l.url for l in links if l.url not in extraction.failed_urls],
            persisted=persisted,
            warnings=warnings,
        )
