"""
Knowledge Record Schemas

Every stored item is one of three record variants, selected by ``kind``.
Each variant names its own identity key and knows how to render itself as
prompt context, so no caller has to inspect payload fields.
"""

import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# ============================================================================
# Enums
# ============================================================================

class KnowledgeKind(str, Enum):
    """Knowledge kinds; each gets its own collection per tenant"""
    KNOWLEDGE = "knowledge"  # documents and web augmentation summaries
    CHAT = "chat"
    VOICE = "voice"


class CollectionState(str, Enum):
    """Collection lifecycle: Absent -> Unloaded -> Loaded"""
    ABSENT = "absent"
    UNLOADED = "unloaded"
    LOADED = "loaded"


# ============================================================================
# Records
# ============================================================================

class _RecordBase(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=False)

    tenant_id: str
    text_content: str
    embedding: List[float] = Field(default_factory=list)

    @property
    def key(self) -> str:
        raise NotImplementedError

    @property
    def context_text(self) -> str:
        return self.text_content


class DocumentRecord(_RecordBase):
    """General knowledge: ingested documents and web summaries"""
    kind: Literal[KnowledgeKind.KNOWLEDGE] = KnowledgeKind.KNOWLEDGE
    relation: str  # subject the document is about

    @property
    def key(self) -> str:
        return self.relation


class ChatTurnRecord(_RecordBase):
    """A summarized chat exchange"""
    kind: Literal[KnowledgeKind.CHAT] = KnowledgeKind.CHAT
    turn_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    username: str = ""
    raw_msg: str = ""
    ai_message: str = ""
    time_stamp: str = ""

    @property
    def key(self) -> str:
        return self.turn_id

    @property
    def context_text(self) -> str:
        prefix = f"[{self.time_stamp}] " if self.time_stamp else ""
        return f"{prefix}{self.username}: {self.text_content}" if self.username else self.text_content


class VoiceTurnRecord(_RecordBase):
    """A spoken exchange; ``text_content`` holds its summary"""
    kind: Literal[KnowledgeKind.VOICE] = KnowledgeKind.VOICE
    user_message: str
    username: str = ""
    ai_resp: str = ""
    date_time: str = ""

    @property
    def key(self) -> str:
        return self.user_message


KnowledgeRecord = Annotated[
    Union[DocumentRecord, ChatTurnRecord, VoiceTurnRecord],
    Field(discriminator="kind"),
]

_record_adapter = TypeAdapter(KnowledgeRecord)


# ============================================================================
# Store layout per kind
# ============================================================================

@dataclass(frozen=True)
class FieldSpec:
    """One column of a collection"""
    name: str
    type: str  # "varchar" or "float_vector"
    max_length: int = 0
    is_key: bool = False


@dataclass(frozen=True)
class KindSpec:
    """Collection layout for one knowledge kind"""
    kind: KnowledgeKind
    key_field: str
    fields: List[FieldSpec] = field(default_factory=list)
    vector_field: str = "embedding"

    @property
    def output_fields(self) -> List[str]:
        return [f.name for f in self.fields if f.type != "float_vector"]

    @property
    def key_max_length(self) -> int:
        """Byte limit of the key column (0 when unbounded)."""
        for f in self.fields:
            if f.is_key:
                return f.max_length
        return 0


def _varchar(name: str, max_length: int, is_key: bool = False) -> FieldSpec:
    return FieldSpec(name=name, type="varchar", max_length=max_length, is_key=is_key)


def build_kind_specs(key_max_length: int = 2048, text_max_length: int = 8192) -> Dict[KnowledgeKind, KindSpec]:
    vector = FieldSpec(name="embedding", type="float_vector")
    return {
        KnowledgeKind.KNOWLEDGE: KindSpec(
            kind=KnowledgeKind.KNOWLEDGE,
            key_field="relation",
            fields=[
                _varchar("relation", key_max_length, is_key=True),
                _varchar("text_content", text_max_length),
                vector,
            ],
        ),
        KnowledgeKind.CHAT: KindSpec(
            kind=KnowledgeKind.CHAT,
            key_field="turn_id",
            fields=[
                _varchar("turn_id", 64, is_key=True),
                _varchar("username", 256),
                _varchar("text_content", text_max_length),
                _varchar("raw_msg", text_max_length),
                _varchar("ai_message", text_max_length),
                _varchar("time_stamp", 64),
                vector,
            ],
        ),
        KnowledgeKind.VOICE: KindSpec(
            kind=KnowledgeKind.VOICE,
            key_field="user_message",
            fields=[
                _varchar("user_message", key_max_length, is_key=True),
                _varchar("username", 256),
                _varchar("ai_resp", text_max_length),
                _varchar("text_content", text_max_length),
                _varchar("date_time", 64),
                vector,
            ],
        ),
    }


KIND_SPECS = build_kind_specs()


def utf8_length(value: str) -> int:
    return len(value.encode("utf-8"))


def truncate_utf8(value: str, max_bytes: int) -> str:
    """Cut ``value`` to at most ``max_bytes`` of UTF-8 without splitting a character."""
    encoded = value.encode("utf-8")
    if len(encoded) <= max_bytes:
        return value
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


def to_row(record: Union[DocumentRecord, ChatTurnRecord, VoiceTurnRecord], spec: KindSpec) -> Dict[str, Any]:
    """
    Store row for a record, truncating text columns to their byte limits.

    The key column is never cut; the gateway rejects keys that do not fit.
    """
    row: Dict[str, Any] = {}
    for f in spec.fields:
        if f.type == "float_vector":
            row[f.name] = list(record.embedding)
            continue
        value = str(getattr(record, f.name, "") or "")
        if f.max_length and not f.is_key:
            value = truncate_utf8(value, f.max_length)
        row[f.name] = value
    return row


def record_from_row(kind: KnowledgeKind, tenant_id: str, row: Dict[str, Any]):
    """Rebuild the record variant for ``kind`` from a store row."""
    data = {k: v for k, v in row.items() if v is not None}
    data["kind"] = kind
    data["tenant_id"] = tenant_id
    data.setdefault("text_content", "")
    data.pop("embedding", None)
    return _record_adapter.validate_python(data)


# ============================================================================
# Collection naming
# ============================================================================

_UNSAFE_NAME = re.compile(r"[^0-9a-zA-Z_]")


def collection_name(prefix: str, kind: KnowledgeKind, tenant_id: str) -> str:
    """Tenant-namespaced collection name (letters, digits, underscore)."""
    if not tenant_id:
        raise ValueError("tenant_id is required")
    name = _UNSAFE_NAME.sub("_", f"{prefix}_{kind.value}_{tenant_id}")
    if not (name[0].isalpha() or name[0] == "_"):
        name = f"_{name}"
    return name


@dataclass
class CollectionInfo:
    """What the gateway knows about a ready collection"""
    name: str
    tenant_id: str
    kind: KnowledgeKind
    dimension: int
    state: CollectionState = CollectionState.LOADED
