"""
Milvus Client

Thin async wrapper over pymilvus.MilvusClient. The SDK is synchronous, so
every call runs in a worker thread and the event loop never blocks.
One instance is created by the application and injected wherever store
access is needed.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from .schemas.records import KindSpec

logger = logging.getLogger("enspira.common.milvus_client")

# Keys per "in [...]" filter expression
KEY_QUERY_BATCH = 100

# Reads must see writes made moments earlier (write-back then re-query)
CONSISTENCY_LEVEL = "Strong"


class MilvusStore:
    """
    Direct client to Milvus collection operations.

    The underlying connection is opened lazily on first use.
    """

    def __init__(
        self,
        uri: str = "http://localhost:19530",
        token: str = "",
        db_name: str = "",
        client=None,
    ):
        """
        Initialize Milvus store.

        Args:
            uri: Milvus server URI
            token: Auth token ("user:password" or API key)
            db_name: Database name (default database when empty)
            client: Pre-built MilvusClient, mainly for tests
        """
        self._uri = uri
        self._token = token
        self._db_name = db_name
        self._client = client

    def _ensure_initialized(self):
        """Lazily connect"""
        if self._client is not None:
            return self._client

        from pymilvus import MilvusClient

        kwargs: Dict[str, Any] = {"uri": self._uri}
        if self._token:
            kwargs["token"] = self._token
        if self._db_name:
            kwargs["db_name"] = self._db_name
        self._client = MilvusClient(**kwargs)
        logger.info("Connected to Milvus at %s", self._uri)
        return self._client

    async def _call(self, method: str, **kwargs) -> Any:
        client = await asyncio.to_thread(self._ensure_initialized)
        return await asyncio.to_thread(getattr(client, method), **kwargs)

    async def has_collection(self, name: str) -> bool:
        return bool(await self._call("has_collection", collection_name=name))

    async def list_collections(self) -> List[str]:
        return list(await self._call("list_collections"))

    async def create_collection(
        self,
        name: str,
        spec: KindSpec,
        dimension: int,
        index_type: str = "IVF_FLAT",
        nlist: int = 1024,
    ) -> None:
        """
        Create a collection for ``spec`` and build its cosine vector index.

        The collection is left unloaded.
        """
        from pymilvus import DataType, MilvusClient

        schema = MilvusClient.create_schema(auto_id=False, enable_dynamic_field=False)
        for f in spec.fields:
            if f.type == "float_vector":
                schema.add_field(field_name=f.name, datatype=DataType.FLOAT_VECTOR, dim=dimension)
            else:
                schema.add_field(
                    field_name=f.name,
                    datatype=DataType.VARCHAR,
                    max_length=f.max_length,
                    is_primary=f.is_key,
                )

        index_params = MilvusClient.prepare_index_params()
        params = {"nlist": nlist} if index_type.startswith("IVF") else {}
        index_params.add_index(
            field_name=spec.vector_field,
            index_type=index_type,
            metric_type="COSINE",
            params=params,
        )

        await self._call(
            "create_collection",
            collection_name=name,
            schema=schema,
            consistency_level=CONSISTENCY_LEVEL,
        )
        await self._call("create_index", collection_name=name, index_params=index_params)

    async def describe_dimension(self, name: str, vector_field: str = "embedding") -> Optional[int]:
        """Dimension of the vector field, or None when the schema lacks it."""
        description = await self._call("describe_collection", collection_name=name)
        for f in description.get("fields", []):
            if f.get("name") == vector_field:
                dim = (f.get("params") or {}).get("dim")
                return int(dim) if dim is not None else None
        return None

    async def get_load_state(self, name: str) -> str:
        """One of "NotExist", "NotLoad", "Loading", "Loaded"."""
        result = await self._call("get_load_state", collection_name=name)
        state = result.get("state") if isinstance(result, dict) else result
        return getattr(state, "name", str(state))

    async def load_collection(self, name: str) -> None:
        await self._call("load_collection", collection_name=name)

    async def drop_collection(self, name: str) -> None:
        await self._call("drop_collection", collection_name=name)

    async def count(self, name: str) -> int:
        rows = await self._call(
            "query",
            collection_name=name,
            filter="",
            output_fields=["count(*)"],
            consistency_level=CONSISTENCY_LEVEL,
        )
        if not rows:
            return 0
        return int(rows[0].get("count(*)", 0))

    async def existing_keys(self, name: str, key_field: str, keys: Iterable[str]) -> set:
        """Subset of ``keys`` already stored in the collection."""
        keys = list(keys)
        found = set()
        for start in range(0, len(keys), KEY_QUERY_BATCH):
            batch = keys[start:start + KEY_QUERY_BATCH]
            expr = f"{key_field} in {json.dumps(batch)}"
            rows = await self._call(
                "query",
                collection_name=name,
                filter=expr,
                output_fields=[key_field],
                consistency_level=CONSISTENCY_LEVEL,
            )
            found.update(row[key_field] for row in rows if key_field in row)
        return found

    async def search(
        self,
        name: str,
        vector: List[float],
        limit: int,
        output_fields: List[str],
        nprobe: int = 64,
        vector_field: str = "embedding",
    ) -> List[Dict[str, Any]]:
        """
        Cosine nearest-neighbor search.

        Returns:
            List of {"id", "score", "entity"} dicts in store order
        """
        raw = await self._call(
            "search",
            collection_name=name,
            data=[vector],
            limit=limit,
            output_fields=output_fields,
            search_params={"metric_type": "COSINE", "params": {"nprobe": nprobe}},
            anns_field=vector_field,
            consistency_level=CONSISTENCY_LEVEL,
        )
        hits = raw[0] if raw else []
        # COSINE distance in Milvus is the similarity itself (higher is closer)
        return [
            {
                "id": hit.get("id"),
                "score": float(hit.get("distance", 0.0)),
                "entity": dict(hit.get("entity") or {}),
            }
            for hit in hits
        ]

    async def upsert(self, name: str, rows: List[Dict[str, Any]]) -> int:
        """Write rows, replacing any stored row with the same primary key."""
        result = await self._call("upsert", collection_name=name, data=rows)
        if isinstance(result, dict):
            return int(result.get("upsert_count", len(rows)))
        return len(rows)

    async def close(self) -> None:
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None
