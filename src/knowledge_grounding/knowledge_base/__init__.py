"""
Knowledge base module for per-owner knowledge storage and hybrid retrieval.

Provides embedding-backed semantic search fused with full-text search, bounded
grounding context for prompts, and knowledge extraction from conversations.
"""

from .manager import KnowledgeBaseManager
from .models import (
    EmbeddingSource,
    KnowledgeItem,
    KnowledgeType,
    SearchHit,
    SearchMode,
    SearchResults,
)
from .store import KnowledgeStore
from .retriever import FullTextIndex
from .embeddings import (
    EmbeddingProvider,
    EmbeddingService,
    FallbackEmbedding,
    OpenAIEmbeddingProvider,
    RealEmbedding,
)
from .search import HybridSearchEngine
from .fusion import fuse_scores
from .context import ContextAssembler
from .extraction import ExtractionResult, ExtractionStage, KnowledgeExtractionPipeline
from .llm import (
    CompletionClient,
    ConversationStore,
    InMemoryConversationStore,
    OpenAICompletionClient,
)

__all__ = [
    "KnowledgeBaseManager",
    "KnowledgeItem",
    "KnowledgeType",
    "EmbeddingSource",
    "SearchHit",
    "SearchMode",
    "SearchResults",
    "KnowledgeStore",
    "FullTextIndex",
    "EmbeddingProvider",
    "EmbeddingService",
    "OpenAIEmbeddingProvider",
    "RealEmbedding",
    "FallbackEmbedding",
    "HybridSearchEngine",
    "fuse_scores",
    "ContextAssembler",
    "KnowledgeExtractionPipeline",
    "ExtractionResult",
    "ExtractionStage",
    "CompletionClient",
    "OpenAICompletionClient",
    "ConversationStore",
    "InMemoryConversationStore",
]
