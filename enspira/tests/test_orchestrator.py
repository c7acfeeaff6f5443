"""
Retrieval orchestrator tests.

The vector store, embedder and LLM are in-memory fakes from conftest; the
reranker oracle and search provider are mocks, and the page extractor is a
mock or a real PageExtractor over httpx.MockTransport.
"""

import asyncio

import httpx
import pytest
from unittest.mock import AsyncMock, Mock

from conftest import FakeEmbedding, ScriptedLLM, unit
from enspira.common.errors import ConfigurationError, NoDataError, Stage, UpstreamTimeout
from enspira.common.schemas.records import DocumentRecord, KnowledgeKind
from enspira.retriever.orchestrator import NEUTRAL_CONTEXT, ContextStatus, RetrievalOrchestrator
from enspira.retriever.page_extractor import ExtractionResult, PageExtractor
from enspira.retriever.reranker import Reranker, RerankThresholds
from enspira.retriever.searcher import Searcher
from enspira.retriever.web_augmenter import WebAugmenter
from enspira.retriever.web_search import ResultLink


INFER_JSON = '{"search": true, "query": "busan fireworks 2024 date", "subject": "Busan Fireworks Festival 2024"}'
SUMMARY = "The Busan Fireworks Festival 2024 was held on November 9 at Gwangalli Beach."


class Pipeline:
    """Orchestrator plus handles on its collaborators."""

    def __init__(self, gateway, store, scores=None, rerank_error=None, embedding=None,
                 llm=None, links=None, extraction=None, extractor=None, with_augmenter=True):
        self.store = store
        self.embedding = embedding or FakeEmbedding(default=unit(1, 0, 0, 0))

        self.rerank_client = Mock()
        self.rerank_client.score = AsyncMock(return_value=scores, side_effect=rerank_error)

        self.provider = Mock()
        self.provider.search = AsyncMock(return_value=links if links is not None else [
            ResultLink(url="https://news.example/fireworks"),
        ])
        if extractor is None:
            extractor = Mock()
            extractor.extract = AsyncMock(return_value=extraction or ExtractionResult(
                text="- From the web page https://news.example/fireworks:\nFireworks on November 9.\n",
                pages=1,
            ))
        self.extractor = extractor
        self.llm = llm or ScriptedLLM(infer=INFER_JSON, summary=SUMMARY)

        augmenter = None
        if with_augmenter:
            augmenter = WebAugmenter(self.llm, self.provider, self.extractor, self.embedding, gateway)

        self.orchestrator = RetrievalOrchestrator(
            self.embedding,
            gateway,
            Searcher(gateway, backoff_seconds=0),
            Reranker(self.rerank_client, RerankThresholds()),
            augmenter,
        )


class HangingPages:
    """Result pages whose fetches never finish; records which were cancelled."""

    def __init__(self, expected):
        self.links = [ResultLink(url=f"https://slow.example/{i}") for i in range(expected)]
        self.expected = expected
        self.started = 0
        self.all_started = asyncio.Event()
        self.cancelled = []
        self.completed = []

    async def _handler(self, request):
        self.started += 1
        if self.started == self.expected:
            self.all_started.set()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            self.cancelled.append(str(request.url))
            raise
        self.completed.append(str(request.url))
        return httpx.Response(200, html="<html><body><p>late</p></body></html>")

    def extractor(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(self._handler))
        return PageExtractor(http_client=http, fetch_timeout=60)


async def _seed(gateway, tenant="acme", n=5):
    records = [
        DocumentRecord(tenant_id=tenant, relation=f"topic-{i}", text_content=f"fact {i}", embedding=unit(1, i, 0, 0))
        for i in range(n)
    ]
    await gateway.insert(tenant, KnowledgeKind.KNOWLEDGE, records, sync_by_count=False)


class TestColdStartAugmentation:
    @pytest.mark.asyncio
    async def test_empty_tenant_is_augmented_and_persisted(self, gateway, store):
        p = Pipeline(gateway, store)

        context = await p.orchestrator.retrieve_context("When are the Busan fireworks?", "newco")

        assert context.status == ContextStatus.AUGMENTED
        assert len(context.entries) == 1
        entry = context.entries[0]
        assert entry.source == "web"
        assert entry.source_urls == ["https://news.example/fireworks"]
        assert "Busan Fireworks Festival 2024" in context.render()

        rows = store.rows("test_knowledge_newco")
        assert len(rows) == 1
        stored = rows["Busan Fireworks Festival 2024"]
        assert "Busan Fireworks Festival 2024" in stored["text_content"]
        p.rerank_client.score.assert_not_called()

    @pytest.mark.asyncio
    async def test_next_call_answers_from_store(self, gateway, store):
        p = Pipeline(gateway, store, scores=[8.0])
        await p.orchestrator.retrieve_context("When are the Busan fireworks?", "newco")

        # Strong single hit still trips the high-count signal; opt out to check store use alone
        context = await p.orchestrator.retrieve_context(
            "When are the Busan fireworks?", "newco", allow_augmentation=False
        )

        assert context.status == ContextStatus.OK
        assert context.entries[0].source == "store"
        assert context.entries[0].key == "Busan Fireworks Festival 2024"

    @pytest.mark.asyncio
    async def test_opt_out_gives_no_context(self, gateway, store):
        p = Pipeline(gateway, store, llm=ScriptedLLM(infer="pass"))

        context = await p.orchestrator.retrieve_context("hi!", "newco")

        assert context.status == ContextStatus.NO_CONTEXT
        assert context.render() == NEUTRAL_CONTEXT


class TestStoredKnowledge:
    @pytest.mark.asyncio
    async def test_strong_results_are_not_augmented(self, gateway, store):
        await _seed(gateway, n=10)
        p = Pipeline(gateway, store, scores=[9.0, 8.0, 7.5, 7.0, 4.5, 3.0, 2.0, 1.0, 0.5, -1.0])

        context = await p.orchestrator.retrieve_context("tell me about topic 0", "acme")

        assert context.status == ContextStatus.OK
        assert [e.key for e in context.entries] == [f"topic-{i}" for i in range(5)]
        assert all(e.source == "store" for e in context.entries)
        assert context.entries[0].tier == "high"
        p.provider.search.assert_not_called()

    @pytest.mark.asyncio
    async def test_weak_results_are_augmented_after_store_entries(self, gateway, store):
        await _seed(gateway, n=3)
        p = Pipeline(gateway, store, scores=[2.0, 1.0, 0.5])

        context = await p.orchestrator.retrieve_context("busan fireworks", "acme")

        assert context.status == ContextStatus.AUGMENTED
        assert [e.source for e in context.entries] == ["store", "store", "store", "web"]

    @pytest.mark.asyncio
    async def test_weak_results_without_permission_stay_store_only(self, gateway, store):
        await _seed(gateway, n=3)
        p = Pipeline(gateway, store, scores=[2.0, 1.0, 0.5])

        context = await p.orchestrator.retrieve_context("busan fireworks", "acme", allow_augmentation=False)

        assert context.status == ContextStatus.OK
        assert len(context.entries) == 3
        p.provider.search.assert_not_called()

    @pytest.mark.asyncio
    async def test_rerank_failure_degrades_to_similarity(self, gateway, store):
        await _seed(gateway, n=7)
        err = UpstreamTimeout("oracle slow", stage=Stage.RERANK)
        p = Pipeline(gateway, store, rerank_error=err)

        context = await p.orchestrator.retrieve_context("topic", "acme", allow_augmentation=False)

        assert context.status == ContextStatus.DEGRADED
        assert len(context.entries) == 5
        assert context.entries[0].key == "topic-0"
        assert context.warnings == [err]

    @pytest.mark.asyncio
    async def test_rerank_failure_still_augments(self, gateway, store):
        await _seed(gateway, n=2)
        p = Pipeline(gateway, store, rerank_error=UpstreamTimeout("slow", stage=Stage.RERANK))

        context = await p.orchestrator.retrieve_context("busan fireworks", "acme")

        assert context.status == ContextStatus.DEGRADED
        assert context.entries[-1].source == "web"


class TestFailures:
    @pytest.mark.asyncio
    async def test_dimension_mismatch_fails_typed(self, gateway, store):
        p = Pipeline(gateway, store, embedding=FakeEmbedding(default=[1.0, 0.0]))

        context = await p.orchestrator.retrieve_context("anything", "acme")

        assert context.status == ContextStatus.FAILED
        assert isinstance(context.error, ConfigurationError)
        assert context.error.stage == Stage.DIMENSION
        assert context.render() == NEUTRAL_CONTEXT
        assert "search" not in store.calls

    @pytest.mark.asyncio
    async def test_augmentation_failure_degrades(self, gateway, store):
        p = Pipeline(gateway, store, links=[])

        context = await p.orchestrator.retrieve_context("busan fireworks", "newco")

        assert context.status == ContextStatus.DEGRADED
        assert context.is_empty
        assert isinstance(context.warnings[0], NoDataError)
        assert context.render() == NEUTRAL_CONTEXT

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, gateway, store):
        embedding = Mock()
        embedding.embed_single = AsyncMock(side_effect=RuntimeError("socket closed"))
        p = Pipeline(gateway, store, embedding=embedding)

        context = await p.orchestrator.retrieve_context("anything", "acme")

        assert context.status == ContextStatus.FAILED
        assert "socket closed" in context.error.message

    @pytest.mark.asyncio
    async def test_empty_message_skips_pipeline(self, gateway, store):
        p = Pipeline(gateway, store)

        context = await p.orchestrator.retrieve_context("   ", "acme")

        assert context.status == ContextStatus.NO_CONTEXT
        assert p.embedding.calls == []

    @pytest.mark.asyncio
    async def test_deadline_returns_timeout(self, gateway, store):
        async def slow(text):
            await asyncio.sleep(1)
            return unit(1, 0, 0, 0)

        embedding = Mock()
        embedding.embed_single = slow
        p = Pipeline(gateway, store, embedding=embedding)

        context = await p.orchestrator.retrieve_context("anything", "acme", deadline=0.01)

        assert context.status == ContextStatus.FAILED
        assert isinstance(context.error, UpstreamTimeout)
        assert context.error.stage == Stage.EMBED

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, gateway, store):
        started = asyncio.Event()

        async def slow(text):
            started.set()
            await asyncio.sleep(5)

        embedding = Mock()
        embedding.embed_single = slow
        p = Pipeline(gateway, store, embedding=embedding)

        task = asyncio.create_task(p.orchestrator.retrieve_context("anything", "acme"))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_cancellation_reaches_page_fetches(self, gateway, store):
        pages = HangingPages(expected=2)
        p = Pipeline(gateway, store, links=pages.links, extractor=pages.extractor())

        task = asyncio.create_task(p.orchestrator.retrieve_context("busan fireworks", "newco"))
        await pages.all_started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert sorted(pages.cancelled) == sorted(link.url for link in pages.links)
        assert pages.completed == []
        assert store.sent == []

    @pytest.mark.asyncio
    async def test_deadline_names_running_stage(self, gateway, store):
        pages = HangingPages(expected=2)
        p = Pipeline(gateway, store, links=pages.links, extractor=pages.extractor())

        context = await p.orchestrator.retrieve_context("busan fireworks", "newco", deadline=0.2)

        assert context.status == ContextStatus.FAILED
        assert isinstance(context.error, UpstreamTimeout)
        assert context.error.stage == Stage.EXTRACT
        assert sorted(pages.cancelled) == sorted(link.url for link in pages.links)


class TestRetrieveAll:
    @pytest.mark.asyncio
    async def test_only_general_knowledge_is_augmented(self, gateway, store):
        p = Pipeline(gateway, store)

        results = await p.orchestrator.retrieve_all("busan fireworks", "newco")

        assert set(results) == {KnowledgeKind.KNOWLEDGE, KnowledgeKind.CHAT, KnowledgeKind.VOICE}
        assert results[KnowledgeKind.KNOWLEDGE].status == ContextStatus.AUGMENTED
        assert results[KnowledgeKind.CHAT].status == ContextStatus.NO_CONTEXT
        assert results[KnowledgeKind.VOICE].status == ContextStatus.NO_CONTEXT
        assert p.provider.search.await_count == 1


class TestRankedContext:
    @pytest.mark.asyncio
    async def test_to_dict_is_serializable(self, gateway, store):
        import json

        await _seed(gateway, n=3)
        p = Pipeline(gateway, store, scores=[9.0, 8.0, 7.0])

        context = await p.orchestrator.retrieve_context("topic", "acme", allow_augmentation=False)
        payload = json.loads(json.dumps(context.to_dict()))

        assert payload["status"] == "ok"
        assert payload["context"] == "fact 0\nfact 1\nfact 2"
        assert payload["entries"][0]["relevance_score"] == 9.0
        assert payload["error"] is None

    def test_failed_context_renders_neutral(self):
        from enspira.common.errors import RetrievalError
        from enspira.retriever.orchestrator import RankedContext

        context = RankedContext(status=ContextStatus.FAILED, error=RetrievalError("x", stage=Stage.SEARCH))
        assert context.render() == NEUTRAL_CONTEXT
        assert context.to_dict()["error"]["stage"] == "search"
