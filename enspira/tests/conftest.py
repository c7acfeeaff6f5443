"""Shared fakes: an in-memory vector store, a deterministic embedder and a scripted LLM."""

import asyncio
from typing import Any, Dict, List, Optional

import numpy as np
import pytest


DIM = 4


def unit(*values: float) -> List[float]:
    v = np.array(values, dtype=float)
    return (v / np.linalg.norm(v)).tolist()


class FakeStore:
    """In-memory stand-in for MilvusStore with the same async surface."""

    def __init__(self, dimension: int = DIM):
        self.dimension = dimension
        self.collections: Dict[str, Dict[str, Any]] = {}
        self.calls: List[str] = []
        self.sent: List[Dict[str, Any]] = []  # every row ever written, duplicates included
        self.fail_search = 0  # number of search calls that raise before succeeding
        self.fail_create = False

    async def has_collection(self, name: str) -> bool:
        self.calls.append("has_collection")
        await asyncio.sleep(0)
        return name in self.collections

    async def list_collections(self) -> List[str]:
        return list(self.collections)

    async def create_collection(self, name, spec, dimension, index_type="IVF_FLAT", nlist=1024) -> None:
        self.calls.append("create_collection")
        await asyncio.sleep(0)
        if self.fail_create:
            raise RuntimeError("create refused")
        self.collections[name] = {
            "dim": dimension,
            "loaded": False,
            "key_field": spec.key_field,
            "rows": {},
        }

    async def describe_dimension(self, name, vector_field="embedding") -> Optional[int]:
        return self.collections[name]["dim"]

    async def get_load_state(self, name) -> str:
        if name not in self.collections:
            return "NotExist"
        return "Loaded" if self.collections[name]["loaded"] else "NotLoad"

    async def load_collection(self, name) -> None:
        self.calls.append("load_collection")
        self.collections[name]["loaded"] = True

    async def drop_collection(self, name) -> None:
        self.calls.append("drop_collection")
        self.collections.pop(name, None)

    async def count(self, name) -> int:
        self.calls.append("count")
        return len(self.collections[name]["rows"])

    async def existing_keys(self, name, key_field, keys) -> set:
        self.calls.append("existing_keys")
        await asyncio.sleep(0)
        rows = self.collections[name]["rows"]
        return {k for k in keys if k in rows}

    async def search(self, name, vector, limit, output_fields, nprobe=64, vector_field="embedding"):
        self.calls.append("search")
        if self.fail_search:
            self.fail_search -= 1
            raise ConnectionError("store unavailable")
        query = np.array(vector)
        hits = []
        for key, row in self.collections[name]["rows"].items():
            score = float(np.dot(query, np.array(row["embedding"])))
            hits.append({
                "id": key,
                "score": score,
                "entity": {f: row[f] for f in output_fields if f in row},
            })
        hits.sort(key=lambda h: h["score"], reverse=True)
        return hits[:limit]

    async def upsert(self, name, rows) -> int:
        self.calls.append("upsert")
        await asyncio.sleep(0)
        collection = self.collections[name]
        for row in rows:
            self.sent.append(row)
            collection["rows"][row[collection["key_field"]]] = row
        return len(rows)

    async def close(self) -> None:
        pass

    def rows(self, name) -> Dict[str, Dict[str, Any]]:
        return self.collections[name]["rows"]


class FakeEmbedding:
    """Returns a fixed vector per known text, a default vector otherwise."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, default: Optional[List[float]] = None):
        self.vectors = vectors or {}
        self.default = default or unit(1, 0, 0, 0)
        self.calls: List[List[str]] = []

    async def embed(self, texts):
        self.calls.append(list(texts))
        return [self.vectors.get(t, self.default) for t in texts]

    async def embed_single(self, text):
        return (await self.embed([text]))[0]


class ScriptedLLM:
    """LLM stand-in answering by system prompt."""

    def __init__(self, infer: str = "", summary: str = "", available: bool = True):
        self.infer = infer
        self.summary = summary
        self.available = available
        self.prompts: List[str] = []

    @property
    def is_available(self) -> bool:
        return self.available

    async def generate(self, prompt, *, system=None, max_tokens=512, timeout=None):
        self.prompts.append(prompt)
        if system and "search" in system.lower() and "summarize" not in system.lower():
            return self.infer
        return self.summary


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def gateway(store):
    from enspira.common.config import MilvusConfig
    from enspira.common.vector_gateway import TenantVectorGateway

    return TenantVectorGateway(store, MilvusConfig(dimension=DIM, collection_prefix="test"))
