"""
Document Indexer

Loads a tenant's knowledge documents from ``{documents_dir}/{tenant}/*.json``.
Each file holds ``{"relation": "<subject>", "content": "<text>"}``. Documents
are keyed by relation, so re-running the indexer only writes new subjects.

Like web summaries, documents are embedded by their subject: a knowledge
collection holds one kind of vector, and a question lands on the subject
it asks about.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple

from ..common.errors import RetrievalError, Stage
from ..common.schemas.records import DocumentRecord, KnowledgeKind, utf8_length

logger = logging.getLogger("enspira.ingest.document_indexer")


@dataclass
class IndexReport:
    tenant_id: str
    files_seen: int = 0
    inserted: int = 0
    skipped: int = 0
    invalid_files: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "files_seen": self.files_seen,
            "inserted": self.inserted,
            "skipped": self.skipped,
            "invalid_files": self.invalid_files,
        }


class DocumentIndexer:
    """Bulk ingestion of general-knowledge documents."""

    def __init__(self, embedding_service, gateway, documents_dir: str, batch_size: int = 32):
        self._embedding = embedding_service
        self._gateway = gateway
        self._documents_dir = Path(documents_dir).expanduser()
        self._batch_size = max(1, batch_size)

    def tenant_dir(self, tenant: str) -> Path:
        return self._documents_dir / tenant

    def read_documents(self, tenant: str) -> Tuple[List[Tuple[str, str]], List[str]]:
        """
        Read (relation, content) pairs for a tenant.

        Returns:
            Tuple of (documents, invalid file names)
        """
        directory = self.tenant_dir(tenant)
        if not directory.is_dir():
            raise RetrievalError(
                f"No document directory for tenant '{tenant}'",
                stage=Stage.INGEST,
                details={"path": str(directory)},
            )

        key_limit = self._gateway.spec_for(KnowledgeKind.KNOWLEDGE).key_max_length
        documents, invalid = [], []
        for path in sorted(directory.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                relation = str(data["relation"]).strip()
                content = str(data["content"]).strip()
            except (json.JSONDecodeError, KeyError, TypeError, UnicodeDecodeError, OSError) as e:
                logger.warning("Skipping %s: %s", path.name, e)
                invalid.append(path.name)
                continue
            if not relation or not content:
                invalid.append(path.name)
                continue
            if key_limit and utf8_length(relation) > key_limit:
                logger.warning("Skipping %s: relation exceeds %d bytes", path.name, key_limit)
                invalid.append(path.name)
                continue
            documents.append((relation, content))
        return documents, invalid

    async def index_tenant(self, tenant: str) -> IndexReport:
        """Embed and insert every document of a tenant not stored yet."""
        documents, invalid = self.read_documents(tenant)
        report = IndexReport(tenant_id=tenant, files_seen=len(documents) + len(invalid), invalid_files=invalid)
        if not documents:
            logger.info("No documents to index for tenant %s", tenant)
            return report

        # Count shortcut applies to the whole set, not to a single batch
        info = await self._gateway.ensure_ready(tenant, KnowledgeKind.KNOWLEDGE)
        stored = await self._gateway.store.count(info.name)
        if stored == len(documents):
            logger.info("Tenant %s already has %d documents indexed", tenant, stored)
            report.skipped = len(documents)
            return report

        for start in range(0, len(documents), self._batch_size):
            batch = documents[start:start + self._batch_size]
            vectors = await self._embedding.embed([relation for relation, _ in batch])
            records = [
                DocumentRecord(tenant_id=tenant, relation=relation, text_content=content, embedding=vector)
                for (relation, content), vector in zip(batch, vectors)
            ]
            inserted = await self._gateway.insert(
                tenant, KnowledgeKind.KNOWLEDGE, records, sync_by_count=False
            )
            report.inserted += inserted
            report.skipped += len(batch) - inserted

        logger.info(
            "Indexed tenant %s: %d inserted, %d already present, %d invalid files",
            tenant, report.inserted, report.skipped, len(invalid),
        )
        return report
