"""
Enspira MCP Server.

Transport: stdio.

Expected MCP Tool Return Format:
{
    "ok": bool,
    "results": Any,          # Present if ok is True
    "error": str | dict      # Present if ok is False
}
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Annotated, Any, Dict, Optional

from dotenv import load_dotenv
from fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field

from .common.config import load_config
from .common.errors import RetrievalError
from .common.schemas.records import KnowledgeKind
from .ingest.document_indexer import DocumentIndexer
from .retriever.orchestrator import RetrievalOrchestrator

logger = logging.getLogger("enspira.mcp")


def _parse_kind(kind: str) -> KnowledgeKind:
    try:
        return KnowledgeKind(kind.strip().lower())
    except ValueError:
        valid = ", ".join(k.value for k in KnowledgeKind)
        raise ValueError(f"Unknown kind '{kind}'. Expected one of: {valid}")


class RetrievalServerApp:
    """
    MCP application exposing the retrieval pipeline as tools.
    """

    def __init__(
        self,
        orchestrator: RetrievalOrchestrator,
        indexer: Optional[DocumentIndexer] = None,
        mcp_server_name: str = "enspira",
    ) -> None:
        self.orchestrator = orchestrator
        self.indexer = indexer
        self.mcp = FastMCP(name=mcp_server_name)

        # ---------- MCP Tools: Retrieve Context ---------- #
        @self.mcp.tool(
            name="retrieve_context",
            description=(
                "Retrieve curated knowledge context for a message. Searches the tenant's stored "
                "knowledge, reranks it, and augments it from the web when stored knowledge is thin."
            ),
            annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False),
        )
        async def tool_retrieve_context(
            message: Annotated[str, Field(description="the incoming message to find context for")],
            tenant: Annotated[str, Field(description="tenant (user or account) id")],
            kind: Annotated[str, Field(description="knowledge kind: knowledge, chat or voice")] = "knowledge",
            top_k: Annotated[Optional[int], Field(description="number of candidates to fetch")] = None,
            allow_augmentation: Annotated[
                Optional[bool], Field(description="allow web augmentation (server default when omitted)")
            ] = None,
        ) -> Dict[str, Any]:
            try:
                parsed_kind = _parse_kind(kind)
            except ValueError as e:
                return {"ok": False, "error": str(e)}

            context = await self.orchestrator.retrieve_context(
                message,
                tenant,
                parsed_kind,
                top_k=top_k,
                allow_augmentation=allow_augmentation,
            )
            return {"ok": True, "results": context.to_dict()}

        # ---------- MCP Tools: Index Documents ---------- #
        @self.mcp.tool(
            name="index_documents",
            description="Index the tenant's JSON documents ({relation, content}) as general knowledge.",
            annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False),
        )
        async def tool_index_documents(
            tenant: Annotated[str, Field(description="tenant id whose document directory is indexed")],
        ) -> Dict[str, Any]:
            if self.indexer is None:
                return {"ok": False, "error": "Document indexing is not configured"}
            try:
                report = await self.indexer.index_tenant(tenant)
            except RetrievalError as e:
                return {"ok": False, "error": e.to_dict()}
            return {"ok": True, "results": report.to_dict()}

        # ---------- MCP Tools: Reset Collection ---------- #
        @self.mcp.tool(
            name="reset_collection",
            description="Drop every record of one knowledge kind for a tenant and recreate the empty collection.",
            annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=True),
        )
        async def tool_reset_collection(
            tenant: Annotated[str, Field(description="tenant id")],
            kind: Annotated[str, Field(description="knowledge kind: knowledge, chat or voice")],
        ) -> Dict[str, Any]:
            try:
                parsed_kind = _parse_kind(kind)
                state = await self.orchestrator.gateway.reset(tenant, parsed_kind)
            except ValueError as e:
                return {"ok": False, "error": str(e)}
            except RetrievalError as e:
                return {"ok": False, "error": e.to_dict()}
            return {"ok": True, "results": {"tenant": tenant, "kind": parsed_kind.value, "state": state.value}}

        # ---------- MCP Tools: Store Health ---------- #
        @self.mcp.tool(
            name="store_health",
            description="Check that the vector store is reachable.",
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False),
        )
        async def tool_store_health() -> Dict[str, Any]:
            healthy = await self.orchestrator.gateway.health()
            if not healthy:
                return {"ok": False, "error": "Vector store is unreachable"}
            return {"ok": True, "results": {"healthy": True}}

    def run(self) -> None:
        """Runs the MCP server using stdio transport."""
        self.mcp.run(transport="stdio")


def main() -> None:
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("ENSPIRA_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,  # stdout carries the MCP protocol
    )

    parser = argparse.ArgumentParser(description="Run the Enspira MCP server (stdio).")
    parser.add_argument(
        "--server-name",
        default=os.getenv("MCP_SERVER_NAME", "enspira"),
        help="Advertised MCP server name.",
    )
    parser.add_argument(
        "--no-augmentation",
        action="store_true",
        help="Disable web augmentation regardless of config.",
    )
    args = parser.parse_args()

    config = load_config()
    if args.no_augmentation:
        config.retriever.allow_augmentation = False

    orchestrator = RetrievalOrchestrator.from_config(config)
    indexer = DocumentIndexer(
        orchestrator.embedding,
        orchestrator.gateway,
        documents_dir=config.ingest.documents_dir,
        batch_size=config.ingest.batch_size,
    )
    app = RetrievalServerApp(orchestrator, indexer=indexer, mcp_server_name=args.server_name)

    def _handle_shutdown(signum, frame):
        raise SystemExit(0)
    for sig in (signal.SIGINT, getattr(signal, "SIGTERM", None)):
        if sig is not None:
            signal.signal(sig, _handle_shutdown)

    try:
        app.run()
    finally:
        asyncio.run(orchestrator.aclose())


if __name__ == "__main__":
    main()
