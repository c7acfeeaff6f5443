"""
Enspira Record Schemas

Tagged union of knowledge record variants and per-kind store layouts.
"""

from .records import (
    KnowledgeKind,
    KnowledgeRecord,
    DocumentRecord,
    ChatTurnRecord,
    VoiceTurnRecord,
    CollectionState,
    CollectionInfo,
    FieldSpec,
    KindSpec,
    KIND_SPECS,
    build_kind_specs,
    collection_name,
    record_from_row,
    to_row,
)

__all__ = [
    "KnowledgeKind",
    "KnowledgeRecord",
    "DocumentRecord",
    "ChatTurnRecord",
    "VoiceTurnRecord",
    "CollectionState",
    "CollectionInfo",
    "FieldSpec",
    "KindSpec",
    "KIND_SPECS",
    "build_kind_specs",
    "collection_name",
    "record_from_row",
    "to_row",
]
