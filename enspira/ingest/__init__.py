"""
Ingest - Knowledge Record Producers

- DocumentIndexer: bulk-loads a tenant's JSON documents as general knowledge
- TurnRecorder: stores chat and voice exchanges for later retrieval
"""

from .document_indexer import DocumentIndexer, IndexReport
from .turn_recorder import TurnRecorder

__all__ = [
    "DocumentIndexer",
    "IndexReport",
    "TurnRecorder",
]
