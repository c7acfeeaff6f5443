"""Tests for record variants, store layouts and structured errors."""

import pytest
from pydantic import ValidationError

from enspira.common.schemas.records import (
    KIND_SPECS,
    ChatTurnRecord,
    DocumentRecord,
    KnowledgeKind,
    VoiceTurnRecord,
    build_kind_specs,
    collection_name,
    record_from_row,
    to_row,
    truncate_utf8,
)


class TestRecordKeys:
    def test_document_key_is_relation(self):
        record = DocumentRecord(tenant_id="t1", relation="Milvus", text_content="A vector DB")
        assert record.key == "Milvus"
        assert record.kind == KnowledgeKind.KNOWLEDGE

    def test_chat_key_is_generated_turn_id(self):
        a = ChatTurnRecord(tenant_id="t1", text_content="hello")
        b = ChatTurnRecord(tenant_id="t1", text_content="hello")
        assert a.key and b.key
        assert a.key != b.key

    def test_voice_key_is_user_message(self):
        record = VoiceTurnRecord(tenant_id="t1", user_message="play jazz", text_content="asked for jazz")
        assert record.key == "play jazz"

    def test_records_are_frozen(self):
        record = DocumentRecord(tenant_id="t1", relation="r", text_content="x")
        with pytest.raises(ValidationError):
            record.relation = "other"


class TestContextText:
    def test_chat_context_includes_speaker_and_time(self):
        record = ChatTurnRecord(
            tenant_id="t1",
            text_content="likes green tea",
            username="mina",
            time_stamp="2024-05-01 10:00",
        )
        assert record.context_text == "[2024-05-01 10:00] mina: likes green tea"

    def test_document_context_is_text(self):
        record = DocumentRecord(tenant_id="t1", relation="r", text_content="body")
        assert record.context_text == "body"


class TestRows:
    def test_to_row_truncates_text_but_never_the_key(self):
        specs = build_kind_specs(key_max_length=5, text_max_length=8)
        record = DocumentRecord(
            tenant_id="t1",
            relation="abcdefghij",
            text_content="0123456789abc",
            embedding=[0.1, 0.2],
        )
        row = to_row(record, specs[KnowledgeKind.KNOWLEDGE])
        assert row == {"relation": "abcdefghij", "text_content": "01234567", "embedding": [0.1, 0.2]}

    def test_truncate_utf8_keeps_whole_characters(self):
        assert truncate_utf8("héllo", 2) == "h"
        assert truncate_utf8("héllo", 3) == "hé"
        assert truncate_utf8("short", 100) == "short"

    def test_key_max_length_per_kind(self):
        specs = build_kind_specs(key_max_length=300)
        assert specs[KnowledgeKind.KNOWLEDGE].key_max_length == 300
        assert specs[KnowledgeKind.VOICE].key_max_length == 300
        assert specs[KnowledgeKind.CHAT].key_max_length == 64

    def test_record_from_row_picks_variant(self):
        row = {"user_message": "hi", "text_content": "greeting", "username": "lee", "ai_resp": "hello"}
        record = record_from_row(KnowledgeKind.VOICE, "t1", row)
        assert isinstance(record, VoiceTurnRecord)
        assert record.key == "hi"
        assert record.tenant_id == "t1"

    def test_record_from_row_missing_key_fails(self):
        with pytest.raises(ValidationError):
            record_from_row(KnowledgeKind.KNOWLEDGE, "t1", {"text_content": "orphan"})

    def test_output_fields_exclude_vector(self):
        assert "embedding" not in KIND_SPECS[KnowledgeKind.CHAT].output_fields
        assert KIND_SPECS[KnowledgeKind.CHAT].key_field == "turn_id"


class TestCollectionName:
    def test_name_is_sanitized(self):
        assert collection_name("enspira", KnowledgeKind.KNOWLEDGE, "acme-co.eu") == "enspira_knowledge_acme_co_eu"

    def test_tenants_get_distinct_names(self):
        a = collection_name("enspira", KnowledgeKind.CHAT, "a")
        b = collection_name("enspira", KnowledgeKind.CHAT, "b")
        assert a != b

    def test_empty_tenant_rejected(self):
        with pytest.raises(ValueError):
            collection_name("enspira", KnowledgeKind.CHAT, "")

    def test_leading_digit_prefixed(self):
        assert collection_name("1x", KnowledgeKind.VOICE, "t").startswith("_")


class TestErrors:
    def test_error_carries_stage_and_code(self):
        from enspira.common.errors import ConfigurationError, Stage

        err = ConfigurationError("dimension mismatch", stage=Stage.DIMENSION, details={"expected": 4})
        assert str(err) == "[dimension] dimension mismatch"
        payload = err.to_dict()
        assert payload["error"] == "ConfigurationError"
        assert payload["stage"] == "dimension"
        assert payload["details"] == {"expected": 4}
        assert payload["timestamp"]

    def test_subclasses_share_base(self):
        from enspira.common.errors import (
            NoDataError,
            PartialExtractionFailure,
            RetrievalError,
            Stage,
            UpstreamMalformed,
            UpstreamTimeout,
        )

        for cls in (NoDataError, PartialExtractionFailure, UpstreamMalformed, UpstreamTimeout):
            assert isinstance(cls("x", stage=Stage.SEARCH), RetrievalError)
