"""
Main knowledge base manager interface.

Coordinates storage, embedding, hybrid retrieval, context assembly and
extraction for per-owner knowledge.
"""

from typing import Dict, List, Optional

import httpx
from loguru import logger

from ..config_manager.main import Config
from .context import ContextAssembler
from .embeddings import EmbeddingProvider, EmbeddingService, OpenAIEmbeddingProvider
from .errors import KnowledgeBaseError, ProviderUnavailable, StoreUnavailable
from .extraction import KnowledgeExtractionPipeline
from .llm import CompletionClient, ConversationStore, OpenAICompletionClient
from .models import KnowledgeItem, SearchResults, TranscriptMessage
from .search import HybridSearchEngine
from .store import KnowledgeStore


class KnowledgeBaseManager:
    """
    High-level manager for owner knowledge bases.

    Provides a unified interface for item management, retrieval, grounding
    context and background extraction.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        embeddings: EmbeddingService,
        search_engine: HybridSearchEngine,
        assembler: ContextAssembler,
        extraction: Optional[KnowledgeExtractionPipeline] = None,
        extraction_enabled: bool = True,
    ):
        """
        Initialize the knowledge base manager.

        Args:
            store: Knowledge store
            embeddings: Embedding service used for items and queries
            search_engine: Hybrid search engine over `store`
            assembler: Context assembler bound to `search_engine`
            extraction: Extraction pipeline, if extraction is available
            extraction_enabled: Whether extraction requests are accepted
        """
        self.store = store
        self.embeddings = embeddings
        self.search_engine = search_engine
        self.assembler = assembler
        self.extraction = extraction
        self.extraction_enabled = extraction_enabled and extraction is not None

        logger.info("🧠 Knowledge Base Manager initialized")

    @classmethod
    def from_config(
        cls,
        config: Config,
        *,
        embedding_provider: Optional[EmbeddingProvider] = None,
        completion_client: Optional[CompletionClient] = None,
        conversations: Optional[ConversationStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "KnowledgeBaseManager":
        """
        Build a manager and all of its components from configuration.

        Args:
            config: Service configuration
            embedding_provider: Overrides the OpenAI-compatible embedding provider
            completion_client: Overrides the OpenAI-compatible completion client
            conversations: Source of transcripts for conversation extraction
            http_client: Shared httpx client for the default providers
        """
        provider = embedding_provider or OpenAIEmbeddingProvider(
            config.embedding, client=http_client
        )
        embeddings = EmbeddingService(provider, config.embedding)
        store = KnowledgeStore(config.knowledge_base.db_path, config.embedding.dimension)
        engine = HybridSearchEngine(store, store.full_text, embeddings, config.search)
        assembler = ContextAssembler(engine, config.context)

        completion = completion_client or OpenAICompletionClient(
            config.completion, client=http_client, model=config.extraction.model
        )
        extraction = KnowledgeExtractionPipeline(
            completion, embeddings, store, config.extraction, conversations
        )

        return cls(
            store=store,
            embeddings=embeddings,
            search_engine=engine,
            assembler=assembler,
            extraction=extraction,
            extraction_enabled=config.extraction.enabled,
        )

    async def initialize(self) -> None:
        await self.store.initialize()

    async def upsert_item(self, item: KnowledgeItem) -> KnowledgeItem:
        """
        Create or update an item, regenerating its embedding.

        When the embedding provider is down the item is stored with the
        fallback vector, tagged as such, until `reembed_missing` replaces it.

        Raises:
            OwnerMismatch: If the id belongs to another owner
            DimensionMismatch: If the provider returns a wrong-length vector
        """
        # Foreign ids are rejected before any provider call.
        await self.store.get_by_id(item.id, item.owner_id)

        embedding = await self.embeddings.embed(item.embedding_text())
        if embedding.is_fallback:
            logger.warning(
                f"⚠️ Storing knowledge item '{item.title[:50]}' with fallback embedding: "
                f"{embedding.reason}"
            )

        stored = await self.store.upsert(
            item.model_copy(
                update={"embedding": embedding.vector, "embedding_source": embedding.source}
            )
        )

        logger.info(f"📝 Saved knowledge item '{stored.title[:50]}' for owner '{stored.owner_id}'")
        return stored

    async def get_item(self, owner_id: str, item_id: str) -> Optional[KnowledgeItem]:
        return await self.store.get_by_id(item_id, owner_id)

    async def delete_item(self, owner_id: str, item_id: str) -> bool:
        """
        Delete an item from the knowledge base.

        Returns:
            True if deleted, False if not found
        """
        return await self.store.delete(item_id, owner_id)

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
        return await self.store.list_items(
            owner_id, type=type, tag=tag, collection=collection, limit=limit, offset=offset
        )

    async def list_tags(self, owner_id: str) -> List[str]:
        return await self.store.list_tags(owner_id)

    async def list_types(self, owner_id: str) -> List[str]:
        return await self.store.list_types(owner_id)

    async def related_items(self, owner_id: str, item_id: str, k: int = 5) -> List[Dict]:
        """
        Find items similar to an existing item.

        Returns:
            List of dictionaries with 'item_id', 'score', 'title', 'type', 'tags'
        """
        hits = await self.store.related_to(item_id, k, owner_id)
        items = await self.store.get_many([hit.item_id for hit in hits], owner_id)

        related = []
        for hit in hits:
            item = items.get(hit.item_id)
            if item is None:
                continue
            related.append(
                {
                    **hit.to_dict(),
                    "title": item.title,
                    "type": item.type,
                    "tags": item.tags,
                }
            )
        return related

    async def search(
        self, owner_id: str, query: str, limit: Optional[int] = None
    ) -> SearchResults:
        """
        Search an owner's knowledge with hybrid ranking.

        Raises:
            StoreUnavailable: If the datastore cannot be queried
        """
        return await self.search_engine.search(owner_id, query, limit)

    def format_results(self, results: SearchResults) -> str:
        """Format search results into a context string for LLM injection."""
        return self.assembler.assemble(results)

    async def get_relevant_context(self, owner_id: str, query: str) -> str:
        """
        Build the grounding block for a user message.

        Grounding is best-effort: only a datastore outage is reported, as
        `StoreUnavailable`; anything else yields an empty context.
        """
        try:
            context = await self.assembler.build_context(owner_id, query)
        except StoreUnavailable:
            raise
        except KnowledgeBaseError as e:
            logger.warning(f"⚠️ Grounding skipped for query '{query[:50]}': {e}")
            return ""

        logger.info(
            f"📚 Grounding context for owner '{owner_id}': {len(context)} chars"
        )
        return context

    async def extract_from_conversation(
        self,
        owner_id: str,
        conversation_id: Optional[str] = None,
        transcript: Optional[List[TranscriptMessage] | List[dict]] = None,
        collection: Optional[str] = None,
        background: bool = True,
    ) -> Dict:
        """
        Extract knowledge from a finished conversation.

        Args:
            owner_id: Owner of the conversation
            conversation_id: Conversation to load from the conversation store
            transcript: Transcript to extract from directly
            collection: Collection assigned to the new items
            background: Whether to run extraction in background (default: True)

        Returns:
            Task info if background=True, the extraction result otherwise
        """
        if not self.extraction_enabled:
            return {"status": "disabled"}

        if background:
            self.extraction.schedule(owner_id, conversation_id, transcript, collection)
            return {
                "task_id": f"{owner_id}:{conversation_id}" if conversation_id else None,
                "status": "processing",
            }

        if transcript is not None:
            result = await self.extraction.run(owner_id, transcript, conversation_id, collection)
        else:
            result = await self.extraction.extract_conversation(
                owner_id, conversation_id, collection
            )
        return result.to_dict()

    async def reembed_missing(
        self, owner_id: Optional[str] = None, batch_size: int = 50
    ) -> int:
        """
        Replace fallback or missing embeddings with provider embeddings.

        Returns:
            Number of items that received an embedding
        """
        items = await self.store.items_missing_embeddings(batch_size, owner_id)
        if not items:
            return 0

        try:
            embeddings = await self.embeddings.embed_batch(
                [item.embedding_text() for item in items], allow_fallback=False
            )
        except ProviderUnavailable as e:
            logger.warning(f"⚠️ Re-embedding postponed, provider unavailable: {e}")
            return 0

        updated = 0
        for item, embedding in zip(items, embeddings):
            if await self.store.set_embedding(item.id, embedding.vector):
                updated += 1

        logger.success(f"✅ Re-embedded {updated}/{len(items)} knowledge items")
        return updated

    async def get_stats(self, owner_id: Optional[str] = None) -> Dict:
        """
        Get statistics about the knowledge base.

        Returns:
            Statistics dictionary
        """
        store_stats = await self.store.get_stats(owner_id)
        return {
            **store_stats,
            "embedding_dimension": self.store.dimension,
            "embeddings": self.embeddings.stats,
            "pending_extractions": self.extraction.pending_runs if self.extraction else 0,
        }

    async def close(self) -> None:
        """Cancel background extraction and release provider connections."""
        if self.extraction is not None:
            await self.extraction.shutdown()
            await self.extraction.completion.aclose()
        await self.embeddings.aclose()
        logger.info("🧠 Knowledge Base Manager closed")
