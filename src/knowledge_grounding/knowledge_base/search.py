"""
Hybrid semantic + lexical search over one owner's knowledge items.
"""

import asyncio
import time
from typing import Dict, List, Optional

from loguru import logger

from ..config_manager.knowledge_base import SearchConfig
from .embeddings import EmbeddingService
from .errors import DimensionMismatch, ProviderUnavailable
from .fusion import fuse_scores, single_branch_scores
from .models import SearchHit, SearchMode, SearchResults
from .retriever import FullTextIndex, highlight
from .store import KnowledgeStore


class HybridSearchEngine:
    """
    Produces one ranked list per query from vector similarity and full text.

    The semantic branch (query embedding + nearest neighbors) and the lexical
    branch (FTS5) run concurrently and are joined with a timeout. A missing
    branch degrades the result instead of failing it; only datastore failures
    reach the caller.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        full_text: FullTextIndex,
        embeddings: EmbeddingService,
        config: Optional[SearchConfig] = None,
    ):
        """
        Initialize the search engine.

        Args:
            store: Knowledge store holding items and vectors
            full_text: Full-text index over the same items
            embeddings: Embedding service used for the query vector
            config: Fusion weight, similarity threshold, limits and timeout
        """
        self.store = store
        self.full_text = full_text
        self.embeddings = embeddings
        self.config = config or SearchConfig()

    def clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            limit = self.config.default_limit
        return max(1, min(limit, self.config.max_limit))

    async def _semantic_branch(self, owner_id: str, query: str, k: int) -> List[SearchHit]:
        # Never rank against the fallback vector: an outage must degrade to full text.
        embedding = await self.embeddings.embed(query, allow_fallback=False)
        return await self.store.nearest_neighbors(owner_id, embedding.vector, k)

    async def _lexical_branch(self, owner_id: str, query: str, k: int) -> List[SearchHit]:
        return await self.full_text.search(owner_id, query, limit=k)

    async def search(
        self, owner_id: str, query: str, limit: Optional[int] = None
    ) -> SearchResults:
        """
        Search an owner's knowledge.

        Args:
            owner_id: Owner whose items are searched
            query: Free-text query
            limit: Maximum number of hits (default 10, capped at 50)

        Returns:
            SearchResults with hydrated items and degradation metadata

        Raises:
            StoreUnavailable: If the datastore cannot be queried
        """
        start = time.perf_counter()
        limit = self.clamp_limit(limit)
        results = SearchResults(query=query)

        if not query.strip():
            return results

        await self.store.initialize()
        k = limit * self.config.candidate_multiplier
        semantic_task = asyncio.create_task(self._semantic_branch(owner_id, query, k))
        lexical_task = asyncio.create_task(self._lexical_branch(owner_id, query, k))
        tasks = {semantic_task, lexical_task}

        try:
            done, pending = await asyncio.wait(
                tasks, timeout=self.config.branch_timeout_seconds
            )
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        # Mark both failures as retrieved; only the first one is re-raised below.
        for task in done:
            if not task.cancelled():
                task.exception()

        semantic_hits: Optional[List[SearchHit]] = None
        lexical_hits: Optional[List[SearchHit]] = None

        if semantic_task in done:
            try:
                semantic_hits = semantic_task.result()
            except (ProviderUnavailable, DimensionMismatch, ValueError) as e:
                logger.warning(f"⚠️ Semantic search unavailable, using full text only: {e}")
                results.notes.append(f"semantic search unavailable: {e}")
        else:
            logger.warning(
                f"⚠️ Semantic search timed out after {self.config.branch_timeout_seconds}s"
            )
            results.notes.append("semantic search timed out")

        if lexical_task in done:
            lexical_hits = lexical_task.result()
        else:
            logger.warning(
                f"⚠️ Full-text search timed out after {self.config.branch_timeout_seconds}s"
            )
            results.notes.append("full-text search timed out")

        semantic_scores: Dict[str, float] = {}
        lexical_scores: Dict[str, float] = {}
        highlights: Dict[str, Optional[str]] = {}
        updated_at = {}

        for hit in semantic_hits or []:
            if hit.score >= self.config.min_similarity:
                semantic_scores[hit.item_id] = hit.score
                updated_at[hit.item_id] = hit.updated_at
        for hit in lexical_hits or []:
            lexical_scores[hit.item_id] = hit.score
            highlights[hit.item_id] = hit.highlight
            updated_at[hit.item_id] = hit.updated_at

        if semantic_hits is not None and lexical_hits is not None:
            results.mode = SearchMode.HYBRID
            ranked = fuse_scores(
                semantic_scores, lexical_scores, self.config.fusion_alpha, updated_at
            )
        elif lexical_hits is not None:
            results.mode = SearchMode.FULL_TEXT_ONLY
            results.degraded = True
            ranked = single_branch_scores(lexical_scores, updated_at)
        elif semantic_hits is not None:
            results.mode = SearchMode.SEMANTIC_ONLY
            results.degraded = True
            ranked = single_branch_scores(semantic_scores, updated_at)
        else:
            results.degraded = True
            ranked = []

        ranked = ranked[:limit]
        items = await self.store.get_many([item_id for item_id, _ in ranked], owner_id)

        for item_id, score in ranked:
            item = items.get(item_id)
            if item is None:
                continue
            results.hits.append(
                SearchHit(
                    item_id=item_id,
                    score=max(0.0, min(score, 1.0)),
                    highlight=highlights.get(item_id)
                    or highlight(item.content or item.title, query),
                    semantic_score=semantic_scores.get(item_id),
                    lexical_score=lexical_scores.get(item_id),
                    updated_at=item.updated_at,
                )
            )
            results.items[item_id] = item

        results.query_time_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"🔍 Search '{query[:50]}' for owner '{owner_id}' returned {len(results.hits)} "
            f"hits ({results.mode.value}{', degraded' if results.degraded else ''}) "
            f"in {results.query_time_ms:.1f}ms"
        )
        return results
