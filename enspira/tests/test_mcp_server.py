# tests/test_mcp_server.py
import json
import pytest
from unittest.mock import AsyncMock, Mock

from fastmcp import Client

from conftest import FakeEmbedding, unit
from enspira.common.schemas.records import DocumentRecord, KnowledgeKind
from enspira.ingest import DocumentIndexer
from enspira.mcp_server import RetrievalServerApp
from enspira.retriever.orchestrator import RetrievalOrchestrator
from enspira.retriever.reranker import Reranker, RerankThresholds
from enspira.retriever.searcher import Searcher


def _data(result):
    return getattr(result, "data", None) or getattr(result, "structured", None) \
        or getattr(result, "structured_content", None)


@pytest.fixture
def app(gateway, tmp_path):
    embedding = FakeEmbedding(default=unit(1, 0, 0, 0))
    rerank_client = Mock()
    rerank_client.score = AsyncMock(side_effect=lambda query, docs: [9.0 - i for i in range(len(docs))])
    orchestrator = RetrievalOrchestrator(
        embedding,
        gateway,
        Searcher(gateway, backoff_seconds=0),
        Reranker(rerank_client, RerankThresholds()),
        augmenter=None,
    )

    docs = tmp_path / "acme"
    docs.mkdir()
    (docs / "a.json").write_text(json.dumps({"relation": "Hours", "content": "Open 9 to 6 on weekdays."}))
    indexer = DocumentIndexer(embedding, gateway, str(tmp_path))

    return RetrievalServerApp(orchestrator, indexer=indexer, mcp_server_name="test-enspira")


# ----------- Tool Registration ----------- #
@pytest.mark.asyncio
async def test_tools_registered(app):
    async with Client(app.mcp) as client:
        tools = await client.list_tools()
        names = {t.name for t in tools}
        assert {"retrieve_context", "index_documents", "reset_collection", "store_health"} <= names


# ----------- retrieve_context ----------- #
@pytest.mark.asyncio
async def test_retrieve_context_returns_ranked_entries(app, gateway):
    await gateway.insert("acme", KnowledgeKind.KNOWLEDGE, [
        DocumentRecord(tenant_id="acme", relation="Hours", text_content="Open 9 to 6.", embedding=unit(1, 0, 0, 0)),
    ], sync_by_count=False)

    async with Client(app.mcp) as client:
        result = await client.call_tool("retrieve_context", {"message": "when are you open?", "tenant": "acme"})
        data = _data(result)

    assert data["ok"] is True
    assert data["results"]["status"] == "ok"
    assert data["results"]["context"] == "Open 9 to 6."
    assert data["results"]["entries"][0]["key"] == "Hours"


@pytest.mark.asyncio
async def test_retrieve_context_empty_tenant_is_neutral(app):
    async with Client(app.mcp) as client:
        result = await client.call_tool("retrieve_context", {"message": "anything", "tenant": "nobody"})
        data = _data(result)

    assert data["ok"] is True
    assert data["results"]["status"] == "no_context"
    assert data["results"]["context"] == "- No additional information to provide.\n"


@pytest.mark.asyncio
async def test_retrieve_context_rejects_unknown_kind(app):
    async with Client(app.mcp) as client:
        result = await client.call_tool(
            "retrieve_context", {"message": "x", "tenant": "acme", "kind": "email"}
        )
        data = _data(result)

    assert data["ok"] is False
    assert "Unknown kind" in data["error"]


# ----------- index_documents ----------- #
@pytest.mark.asyncio
async def test_index_documents(app, store):
    async with Client(app.mcp) as client:
        result = await client.call_tool("index_documents", {"tenant": "acme"})
        data = _data(result)

    assert data["ok"] is True
    assert data["results"]["inserted"] == 1
    assert "Hours" in store.rows("test_knowledge_acme")


@pytest.mark.asyncio
async def test_index_documents_missing_directory(app):
    async with Client(app.mcp) as client:
        result = await client.call_tool("index_documents", {"tenant": "ghost"})
        data = _data(result)

    assert data["ok"] is False
    assert data["error"]["stage"] == "ingest"


# ----------- reset_collection ----------- #
@pytest.mark.asyncio
async def test_reset_collection(app, store):
    async with Client(app.mcp) as client:
        await client.call_tool("index_documents", {"tenant": "acme"})
        result = await client.call_tool("reset_collection", {"tenant": "acme", "kind": "knowledge"})
        data = _data(result)

    assert data["ok"] is True
    assert data["results"]["state"] == "unloaded"
    assert store.rows("test_knowledge_acme") == {}


# ----------- store_health ----------- #
@pytest.mark.asyncio
async def test_store_health(app, store):
    async with Client(app.mcp) as client:
        result = await client.call_tool("store_health", {})
        data = _data(result)
        assert data["ok"] is True

        async def down():
            raise ConnectionError("no route")

        store.list_collections = down
        result = await client.call_tool("store_health", {})
        data = _data(result)
        assert data["ok"] is False
