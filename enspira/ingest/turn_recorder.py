"""Stores chat and voice exchanges so later messages can retrieve them."""

import logging
from datetime import datetime, timezone
from typing import Optional

from ..common.schemas.records import ChatTurnRecord, KnowledgeKind, VoiceTurnRecord

logger = logging.getLogger("enspira.ingest.turn_recorder")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class TurnRecorder:
    def __init__(self, embedding_service, gateway):
        self._embedding = embedding_service
        self._gateway = gateway

    async def record_chat(
        self,
        tenant: str,
        username: str,
        message: str,
        summary: str,
        reply: str,
        timestamp: Optional[str] = None,
    ) -> ChatTurnRecord:
        """Embed the exchange summary and store it as a chat turn."""
        embedding = await self._embedding.embed_single(summary)
        record = ChatTurnRecord(
            tenant_id=tenant,
            username=username,
            text_content=summary,
            raw_msg=message,
            ai_message=reply,
            time_stamp=timestamp or _now(),
            embedding=embedding,
        )
        await self._gateway.insert(tenant, KnowledgeKind.CHAT, [record], sync_by_count=False)
        logger.debug("Recorded chat turn %s for tenant %s", record.turn_id, tenant)
        return record

    async def record_voice(
        self,
        tenant: str,
        username: str,
        message: str,
        summary: str,
        reply: str,
        timestamp: Optional[str] = None,
    ) -> VoiceTurnRecord:
        """Store a voice exchange keyed by what the user said."""
        embedding = await self._embedding.embed_single(summary)
        record = VoiceTurnRecord(
            tenant_id=tenant,
            user_message=message,
            username=username,
            ai_resp=reply,
            text_content=summary,
            date_time=timestamp or _now(),
            embedding=embedding,
        )
        await self._gateway.insert(tenant, KnowledgeKind.VOICE, [record], sync_by_count=False)
        return record
