"""
Tenant Vector Store Gateway

Owns one collection per (tenant, kind) and drives it through
Absent -> Unloaded -> Loaded. Provisioning is serialized per key, so two
first-time callers never both issue a create; different tenants and kinds
proceed in parallel. Writes to one collection take the same per-key lock,
and rows go out as upserts keyed by the record key, so a key is stored at
most once.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .config import MilvusConfig
from .errors import ConfigurationError, ProvisioningError, RetrievalError, Stage
from .milvus_client import MilvusStore
from .schemas.records import (
    CollectionInfo,
    CollectionState,
    KindSpec,
    KnowledgeKind,
    build_kind_specs,
    collection_name,
    to_row,
    utf8_length,
)

logger = logging.getLogger("enspira.common.vector_gateway")

_LOAD_STATES = {
    "NotExist": CollectionState.ABSENT,
    "NotLoad": CollectionState.UNLOADED,
    "Loading": CollectionState.UNLOADED,
    "Loaded": CollectionState.LOADED,
}


class TenantVectorGateway:
    """
    Per-tenant collection lifecycle and idempotent insertion.

    The store handle is injected; the gateway holds no global state.
    """

    def __init__(self, store: MilvusStore, config: Optional[MilvusConfig] = None):
        self._store = store
        self._config = config or MilvusConfig()
        self._specs = build_kind_specs(
            key_max_length=self._config.key_max_length,
            text_max_length=self._config.text_max_length,
        )
        self._locks: Dict[Tuple[str, KnowledgeKind], asyncio.Lock] = {}
        self._ready: Dict[Tuple[str, KnowledgeKind], CollectionInfo] = {}

    @property
    def store(self) -> MilvusStore:
        return self._store

    def spec_for(self, kind: KnowledgeKind) -> KindSpec:
        return self._specs[kind]

    def collection_name(self, tenant: str, kind: KnowledgeKind) -> str:
        return collection_name(self._config.collection_prefix, kind, tenant)

    def _lock_for(self, key: Tuple[str, KnowledgeKind]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def ensure_ready(self, tenant: str, kind: KnowledgeKind) -> CollectionInfo:
        """
        Make sure the collection exists and is loaded.

        Returns:
            CollectionInfo with the configured dimension

        Raises:
            ProvisioningError: create or load failed
            ConfigurationError: the collection has no vector field
        """
        key = (tenant, kind)
        info = self._ready.get(key)
        if info is not None:
            return info

        async with self._lock_for(key):
            # Another caller may have finished while we waited
            info = self._ready.get(key)
            if info is not None:
                return info

            name = self.collection_name(tenant, kind)
            try:
                if not await self._store.has_collection(name):
                    await self._provision(name, kind)

                state = await self._load_state(name)
                if state != CollectionState.LOADED:
                    logger.info("Loading collection %s", name)
                    await self._store.load_collection(name)

                dimension = await self._store.describe_dimension(name, self._specs[kind].vector_field)
            except RetrievalError:
                raise
            except Exception as e:
                raise ProvisioningError(
                    f"Could not prepare collection '{name}': {e}",
                    stage=Stage.PROVISION,
                    details={"collection": name, "tenant": tenant, "kind": kind.value},
                ) from e

            if dimension is None:
                raise ConfigurationError(
                    f"Collection '{name}' has no vector field",
                    stage=Stage.PROVISION,
                    details={"collection": name},
                )

            info = CollectionInfo(
                name=name,
                tenant_id=tenant,
                kind=kind,
                dimension=dimension,
                state=CollectionState.LOADED,
            )
            self._ready[key] = info
            return info

    async def _provision(self, name: str, kind: KnowledgeKind) -> None:
        logger.info("Collection %s does not exist, creating it", name)
        await self._store.create_collection(
            name,
            self._specs[kind],
            dimension=self._config.dimension,
            index_type=self._config.index_type,
            nlist=self._config.nlist,
        )
        if not await self._store.has_collection(name):
            raise ProvisioningError(
                f"Collection '{name}' was not created",
                stage=Stage.PROVISION,
                details={"collection": name},
            )

    async def _load_state(self, name: str) -> CollectionState:
        raw = await self._store.get_load_state(name)
        return _LOAD_STATES.get(raw, CollectionState.UNLOADED)

    async def collection_state(self, tenant: str, kind: KnowledgeKind) -> CollectionState:
        name = self.collection_name(tenant, kind)
        if not await self._store.has_collection(name):
            return CollectionState.ABSENT
        return await self._load_state(name)

    async def reset(self, tenant: str, kind: KnowledgeKind) -> CollectionState:
        """Drop the tenant's collection and provision it again, unloaded."""
        key = (tenant, kind)
        name = self.collection_name(tenant, kind)
        async with self._lock_for(key):
            self._ready.pop(key, None)
            try:
                if await self._store.has_collection(name):
                    logger.info("Dropping collection %s", name)
                    await self._store.drop_collection(name)
                await self._provision(name, kind)
            except RetrievalError:
                raise
            except Exception as e:
                raise ProvisioningError(
                    f"Could not reset collection '{name}': {e}",
                    stage=Stage.PROVISION,
                    details={"collection": name},
                ) from e
        return CollectionState.UNLOADED

    async def health(self) -> bool:
        """True when the store answers a round-trip."""
        try:
            await self._store.list_collections()
            return True
        except Exception as e:
            logger.warning("Vector store health check failed: %s", e)
            return False

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    async def insert(
        self,
        tenant: str,
        kind: KnowledgeKind,
        records: Sequence,
        sync_by_count: bool = True,
    ) -> int:
        """
        Insert records, skipping any whose key is already stored.

        Args:
            tenant: Tenant id
            kind: Knowledge kind (must match every record)
            records: Record variants with embeddings
            sync_by_count: Treat a stored count equal to the batch size as
                "already synced" and skip the write entirely

        Returns:
            Number of rows written
        """
        if not records:
            return 0

        info = await self.ensure_ready(tenant, kind)
        spec = self._specs[kind]
        batch = self._validate(records, kind, tenant, info.dimension)

        try:
            # Key check and write happen under one lock per collection
            async with self._lock_for((tenant, kind)):
                if sync_by_count:
                    stored = await self._store.count(info.name)
                    if stored == len(records):
                        logger.info(
                            "Collection %s already holds %d records, skipping insert", info.name, stored
                        )
                        return 0

                present = await self._store.existing_keys(info.name, spec.key_field, [r.key for r in batch])
                fresh = [r for r in batch if r.key not in present]
                if not fresh:
                    logger.debug("All %d records already present in %s", len(batch), info.name)
                    return 0

                inserted = await self._store.upsert(info.name, [to_row(r, spec) for r in fresh])
        except RetrievalError:
            raise
        except Exception as e:
            raise RetrievalError(
                f"Insert into '{info.name}' failed: {e}",
                stage=Stage.PERSIST,
                details={"collection": info.name, "records": len(batch)},
            ) from e

        logger.info("Inserted %d records into %s (%d skipped)", inserted, info.name, len(records) - inserted)
        return inserted

    def _validate(self, records: Sequence, kind: KnowledgeKind, tenant: str, dimension: int) -> List:
        """Check kind, dimension and key size, and drop duplicate keys within the batch."""
        key_limit = self._specs[kind].key_max_length
        seen: Set[str] = set()
        batch = []
        for record in records:
            if record.kind != kind:
                raise ConfigurationError(
                    f"Record of kind '{record.kind.value}' sent to '{kind.value}' collection",
                    stage=Stage.PERSIST,
                )
            if len(record.embedding) != dimension:
                raise ConfigurationError(
                    f"Embedding dimension {len(record.embedding)} does not match collection dimension {dimension}",
                    stage=Stage.DIMENSION,
                    details={"expected": dimension, "actual": len(record.embedding), "key": record.key},
                )
            if record.tenant_id != tenant:
                raise ConfigurationError(
                    f"Record for tenant '{record.tenant_id}' sent to tenant '{tenant}'",
                    stage=Stage.PERSIST,
                )
            if not record.key:
                raise ConfigurationError(f"Record of kind '{kind.value}' has an empty key", stage=Stage.PERSIST)
            if key_limit and utf8_length(record.key) > key_limit:
                raise ConfigurationError(
                    f"Key of {utf8_length(record.key)} bytes exceeds the {key_limit}-byte key column",
                    stage=Stage.PERSIST,
                    details={"key": record.key[:80], "limit": key_limit},
                )
            if record.key in seen:
                continue
            seen.add(record.key)
            batch.append(record)
        return batch
