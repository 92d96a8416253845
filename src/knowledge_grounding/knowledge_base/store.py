"""
Durable knowledge item storage with nearest-neighbor lookup.

Items live in a single SQLite table; vectors are stored as float32 blobs next
to the row that owns them. Similarity search loads the owner's vectors and
ranks them with numpy, which is plenty for a single-node personal corpus.
"""

import asyncio
import weakref
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
from loguru import logger

from .database import (
    connect,
    decode_embedding,
    decode_tags,
    decode_timestamp,
    encode_embedding,
    encode_tags,
    encode_timestamp,
    recency_key,
)
from .errors import DimensionMismatch, OwnerMismatch
from .models import EmbeddingSource, KnowledgeItem, SearchHit, utcnow
from .retriever import FullTextIndex

_ITEM_COLUMNS = (
    "id, owner_id, title, content, summary, type, tags, collection, source_url, "
    "embedding, embedding_dim, embedding_source, view_count, reference_count, "
    "created_at, updated_at, last_viewed_at"
)


class KnowledgeStore:
    """
    SQLite-backed store for knowledge items and their embeddings.

    Every read is scoped to an owner. Writes to the same item id are
    serialized; each write is a single transaction covering the item row, its
    vector and its full-text row.
    """

    def __init__(
        self,
        db_path: str | Path,
        dimension: int,
        full_text: Optional[FullTextIndex] = None,
    ):
        """
        Initialize the store.

        Args:
            db_path: Path to the SQLite database file
            dimension: Deployment-wide embedding dimensionality
            full_text: Full-text index sharing the same database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.dimension = dimension
        self.full_text = full_text or FullTextIndex(self.db_path)
        self._initialized = False
        self._item_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    async def initialize(self) -> None:
        """Create tables and indexes if they don't exist."""
        if self._initialized:
            return

        async with connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS knowledge_items (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    content TEXT NOT NULL DEFAULT '',
                    summary TEXT,
                    type TEXT NOT NULL,
                    tags TEXT NOT NULL DEFAULT '[]',
                    collection TEXT,
                    source_url TEXT,
                    embedding BLOB,
                    embedding_dim INTEGER,
                    embedding_source TEXT,
                    view_count INTEGER NOT NULL DEFAULT 0,
                    reference_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    last_viewed_at TEXT
                )
                """
            )
            await db.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_knowledge_items_owner
                ON knowledge_items (owner_id, updated_at)
                """
            )
            await self.full_text.create_schema(db)
            await db.commit()

        self._initialized = True
        logger.info(f"✅ Knowledge store initialized at: {self.db_path}")

    def _lock_for(self, item_id: str) -> asyncio.Lock:
        lock = self._item_locks.get(item_id)
        if lock is None:
            lock = asyncio.Lock()
            self._item_locks[item_id] = lock
        return lock

    def _check_vector(self, vector: Optional[List[float]]) -> None:
        if vector is None:
            raise DimensionMismatch(self.dimension, None)
        if len(vector) != self.dimension:
            raise DimensionMismatch(self.dimension, len(vector))
        array = np.asarray(vector, dtype=np.float64)
        if not np.all(np.isfinite(array)):
            raise ValueError("Embedding contains non-finite values")
        if not np.any(array):
            raise ValueError("Embedding must not be the zero vector")

    def _row_to_item(self, row) -> KnowledgeItem:
        embedding = decode_embedding(row["embedding"])
        return KnowledgeItem(
            id=row["id"],
            owner_id=row["owner_id"],
            title=row["title"],
            content=row["content"],
            summary=row["summary"],
            type=row["type"],
            tags=decode_tags(row["tags"]),
            collection=row["collection"],
            source_url=row["source_url"],
            embedding=embedding.tolist() if embedding is not None else None,
            embedding_source=row["embedding_source"],
            view_count=row["view_count"],
            reference_count=row["reference_count"],
            created_at=decode_timestamp(row["created_at"]),
            updated_at=decode_timestamp(row["updated_at"]),
            last_viewed_at=decode_timestamp(row["last_viewed_at"]),
        )

    async def upsert(self, item: KnowledgeItem) -> KnowledgeItem:
        """
        Insert or update a knowledge item.

        Args:
            item: Item to store; `embedding_source` defaults to "real"

        Returns:
            The stored item (timestamps and counters as persisted)

        Raises:
            DimensionMismatch: If the embedding is missing or has the wrong
                length; nothing is written
            OwnerMismatch: If the id already belongs to another owner
            StoreUnavailable: If the database cannot be written
        """
        self._check_vector(item.embedding)
        await self.initialize()

        async with self._lock_for(item.id):
            async with connect(self.db_path) as db:
                cursor = await db.execute(
                    """
                    SELECT owner_id, created_at, view_count, reference_count, last_viewed_at
                    FROM knowledge_items WHERE id = ?
                    """,
                    (item.id,),
                )
                existing = await cursor.fetchone()
                now = utcnow()
                source = item.embedding_source or EmbeddingSource.REAL.value

                if existing is not None:
                    if existing["owner_id"] != item.owner_id:
                        raise OwnerMismatch(item.id)
                    last_viewed = [
                        ts
                        for ts in (decode_timestamp(existing["last_viewed_at"]), item.last_viewed_at)
                        if ts is not None
                    ]
                    stored = item.model_copy(
                        update={
                            "created_at": decode_timestamp(existing["created_at"]),
                            "updated_at": now,
                            "embedding_source": source,
                            "view_count": max(existing["view_count"], item.view_count),
                            "reference_count": max(
                                existing["reference_count"], item.reference_count
                            ),
                            "last_viewed_at": max(last_viewed) if last_viewed else None,
                        }
                    )
                else:
                    stored = item.model_copy(
                        update={"updated_at": now, "embedding_source": source}
                    )

                # Uncommitted changes are discarded when the connection closes.
                await db.execute(
                    f"INSERT OR REPLACE INTO knowledge_items ({_ITEM_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        stored.id,
                        stored.owner_id,
                        stored.title,
                        stored.content,
                        stored.summary,
                        stored.type,
                        encode_tags(stored.tags),
                        stored.collection,
                        stored.source_url,
                        encode_embedding(stored.embedding),
                        len(stored.embedding),
                        stored.embedding_source,
                        stored.view_count,
                        stored.reference_count,
                        encode_timestamp(stored.created_at),
                        encode_timestamp(stored.updated_at),
                        encode_timestamp(stored.last_viewed_at),
                    ),
                )
                await self.full_text.index_item(db, stored)
                await db.commit()

        logger.debug(
            f"📝 Upserted knowledge item '{stored.id}' for owner '{stored.owner_id}' "
            f"({'updated' if existing is not None else 'created'})"
        )
        return stored

    async def set_embedding(
        self,
        item_id: str,
        vector: List[float],
        source: EmbeddingSource = EmbeddingSource.REAL,
    ) -> bool:
        """
        Replace an existing item's embedding without touching its content.

        Returns:
            True if the item exists and was updated
        """
        self._check_vector(vector)
        await self.initialize()

        async with self._lock_for(item_id):
            async with connect(self.db_path) as db:
                cursor = await db.execute(
                    "UPDATE knowledge_items SET embedding = ?, embedding_dim = ?, embedding_source = ? "
                    "WHERE id = ?",
                    (encode_embedding(vector), len(vector), EmbeddingSource(source).value, item_id),
                )
                updated = cursor.rowcount > 0
                await db.commit()
        return updated

    async def get_by_id(
        self, item_id: str, owner_id: Optional[str] = None
    ) -> Optional[KnowledgeItem]:
        """
        Look up a single item.

        Args:
            item_id: Item id
            owner_id: If given, the item must belong to this owner

        Raises:
            OwnerMismatch: If the item exists but belongs to another owner
        """
        await self.initialize()

        async with connect(self.db_path) as db:
            cursor = await db.execute(
                f"SELECT {_ITEM_COLUMNS} FROM knowledge_items WHERE id = ?", (item_id,)
            )
            row = await cursor.fetchone()

        if row is None:
            return None
        if owner_id is not None and row["owner_id"] != owner_id:
            raise OwnerMismatch(item_id)
        return self._row_to_item(row)

    async def get_many(self, item_ids: List[str], owner_id: str) -> Dict[str, KnowledgeItem]:
        """Fetch several items of one owner. Unknown or foreign ids are skipped."""
        if not item_ids:
            return {}
        await self.initialize()

        unique_ids = list(dict.fromkeys(item_ids))
        items: Dict[str, KnowledgeItem] = {}
        async with connect(self.db_path) as db:
            for start in range(0, len(unique_ids), 500):
                batch = unique_ids[start : start + 500]
                placeholders = ", ".join("?" for _ in batch)
                cursor = await db.execute(
                    f"SELECT {_ITEM_COLUMNS} FROM knowledge_items "
                    f"WHERE owner_id = ? AND id IN ({placeholders})",
                    (owner_id, *batch),
                )
                for row in await cursor.fetchall():
                    items[row["id"]] = self._row_to_item(row)
        return items

    async def delete(self, item_id: str, owner_id: str) -> bool:
        """
        Delete an item together with its vector and full-text row.

        Returns:
            True if deleted, False if not found

        Raises:
            OwnerMismatch: If the item belongs to another owner
        """
        await self.initialize()

        async with self._lock_for(item_id):
            async with connect(self.db_path) as db:
                cursor = await db.execute(
                    "SELECT owner_id FROM knowledge_items WHERE id = ?", (item_id,)
                )
                row = await cursor.fetchone()
                if row is None:
                    return False
                if row["owner_id"] != owner_id:
                    raise OwnerMismatch(item_id)

                await db.execute("DELETE FROM knowledge_items WHERE id = ?", (item_id,))
                await self.full_text.remove_item(db, item_id)
                await db.commit()

        logger.info(f"🗑️ Deleted knowledge item '{item_id}' for owner '{owner_id}'")
        return True

    def _rank(self, rows, query_vector: np.ndarray, k: int) -> List[SearchHit]:
        query_norm = float(np.linalg.norm(query_vector))
        if query_norm == 0.0:
            raise ValueError("Query vector must not be the zero vector")

        ids, updated, vectors = [], [], []
        for row in rows:
            vector = decode_embedding(row["embedding"])
            if vector is None or vector.shape[0] != self.dimension:
                continue
            ids.append(row["id"])
            updated.append(decode_timestamp(row["updated_at"]))
            vectors.append(vector)

        if not vectors:
            return []

        matrix = np.vstack(vectors).astype(np.float64)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0.0] = np.inf
        similarities = np.clip((matrix @ query_vector) / (norms * query_norm), 0.0, 1.0)

        hits = [
            SearchHit(
                item_id=item_id,
                score=float(similarity),
                semantic_score=float(similarity),
                updated_at=updated_at,
            )
            for item_id, similarity, updated_at in zip(ids, similarities, updated)
        ]
        hits.sort(key=lambda h: (-h.score, recency_key(h.updated_at), h.item_id))
        return hits[:k]

    def _as_query_vector(self, vector: List[float]) -> np.ndarray:
        if len(vector) != self.dimension:
            raise DimensionMismatch(self.dimension, len(vector))
        return np.asarray(vector, dtype=np.float64)

    async def nearest_neighbors(
        self, owner_id: str, query_vector: List[float], k: int
    ) -> List[SearchHit]:
        """
        Find the owner's items most similar to `query_vector`.

        Only items holding an embedding of the configured dimension take part.
        Similarity is `1 - cosine distance`, clamped to [0, 1].

        Returns:
            At most `k` hits, by descending similarity, then most recent update

        Raises:
            DimensionMismatch: If the query vector has the wrong length
        """
        query = self._as_query_vector(query_vector)
        if k <= 0:
            return []
        await self.initialize()

        async with connect(self.db_path) as db:
            cursor = await db.execute(
                """
                SELECT id, embedding, updated_at FROM knowledge_items
                WHERE owner_id = ? AND embedding IS NOT NULL AND embedding_dim = ?
                """,
                (owner_id, self.dimension),
            )
            rows = await cursor.fetchall()

        return self._rank(rows, query, k)

    async def related_to(
        self, item_id: str, k: int, owner_id: Optional[str] = None
    ) -> List[SearchHit]:
        """
        Find items similar to an existing item, excluding the item itself.

        Results are limited to the source item's owner. An item without an
        embedding has no related items. Items holding the fallback vector are
        never related to each other, since they all share the same vector.
        """
        if k <= 0:
            return []

        source = await self.get_by_id(item_id, owner_id)
        if source is None or not source.has_embedding(self.dimension):
            return []

        query = (
            "SELECT id, embedding, updated_at FROM knowledge_items "
            "WHERE owner_id = ? AND id != ? AND embedding IS NOT NULL AND embedding_dim = ?"
        )
        params: list = [source.owner_id, source.id, self.dimension]
        if source.embedding_source == EmbeddingSource.FALLBACK.value:
            query += " AND embedding_source = ?"
            params.append(EmbeddingSource.REAL.value)

        async with connect(self.db_path) as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()

        return self._rank(rows, self._as_query_vector(source.embedding), k)

    async def list_items(
        self,
        owner_id: str,
        *,
        type: Optional[str] = None,
        tag: Optional[str] = None,
        collection: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[KnowledgeItem]:
        """List an owner's items, most recently updated first."""
        await self.initialize()

        clauses = ["owner_id = ?"]
        params: list = [owner_id]
        if type is not None:
            clauses.append("type = ?")
            params.append(type)
        if collection is not None:
            clauses.append("collection = ?")
            params.append(collection)
        if tag is not None:
            clauses.append("EXISTS (SELECT 1 FROM json_each(knowledge_items.tags) WHERE value = ?)")
            params.append(tag)
        params.extend([max(limit, 0), max(offset, 0)])

        async with connect(self.db_path) as db:
            cursor = await db.execute(
                f"SELECT {_ITEM_COLUMNS} FROM knowledge_items WHERE {' AND '.join(clauses)} "
                "ORDER BY updated_at DESC, id LIMIT ? OFFSET ?",
                params,
            )
            rows = await cursor.fetchall()
        return [self._row_to_item(row) for row in rows]

    async def list_tags(self, owner_id: str) -> List[str]:
        """Distinct tags used by an owner, sorted."""
        await self.initialize()
        async with connect(self.db_path) as db:
            cursor = await db.execute(
                """
                SELECT DISTINCT j.value FROM knowledge_items k, json_each(k.tags) j
                WHERE k.owner_id = ? ORDER BY j.value
                """,
                (owner_id,),
            )
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def list_types(self, owner_id: str) -> List[str]:
        """Distinct item types used by an owner, sorted."""
        await self.initialize()
        async with connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT DISTINCT type FROM knowledge_items WHERE owner_id = ? ORDER BY type",
                (owner_id,),
            )
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def items_missing_embeddings(
        self, limit: int = 50, owner_id: Optional[str] = None
    ) -> List[KnowledgeItem]:
        """
        Items without a provider embedding, oldest update first.

        Covers rows holding the fallback vector as well as rows without a
        usable vector of the configured dimension.
        """
        await self.initialize()

        query = (
            f"SELECT {_ITEM_COLUMNS} FROM knowledge_items "
            "WHERE (embedding IS NULL OR embedding_dim IS NULL OR embedding_dim != ? "
            "OR embedding_source = ?)"
        )
        params: list = [self.dimension, EmbeddingSource.FALLBACK.value]
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)
        query += " ORDER BY updated_at LIMIT ?"
        params.append(max(limit, 0))

        async with connect(self.db_path) as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [self._row_to_item(row) for row in rows]

    async def get_stats(self, owner_id: Optional[str] = None) -> Dict[str, int]:
        """
        Get statistics about stored knowledge.

        Returns:
            Dictionary with 'total_items', 'embedded_items' (provider vectors),
            'fallback_embeddings', 'missing_embeddings' (everything not embedded
            by the provider) and 'db_size_bytes'
        """
        await self.initialize()

        where, params = "", []
        if owner_id is not None:
            where, params = "WHERE owner_id = ?", [owner_id]

        async with connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                SELECT
                    COUNT(*),
                    COALESCE(SUM(CASE WHEN embedding IS NOT NULL AND embedding_dim = ?
                        AND embedding_source = ? THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN embedding_source = ? THEN 1 ELSE 0 END), 0)
                FROM knowledge_items {where}
                """,
                (
                    self.dimension,
                    EmbeddingSource.REAL.value,
                    EmbeddingSource.FALLBACK.value,
                    *params,
                ),
            )
            row = await cursor.fetchone()

        total, embedded, fallback = (int(v) for v in row) if row else (0, 0, 0)
        db_size = self.db_path.stat().st_size if self.db_path.exists() else 0

        return {
            "total_items": total,
            "embedded_items": embedded,
            "fallback_embeddings": fallback,
            "missing_embeddings": total - embedded,
            "db_size_bytes": db_size,
        }
