# config_manager/main.py
from pydantic import BaseModel, Field

from .knowledge_base import (
    ContextConfig,
    ExtractionConfig,
    KnowledgeBaseConfig,
    SearchConfig,
)
from .providers import CompletionConfig, EmbeddingConfig


class Config(BaseModel):
    """
    Main configuration for the knowledge grounding service.
    """

    knowledge_base: KnowledgeBaseConfig = Field(
        default_factory=KnowledgeBaseConfig, alias="knowledge_base"
    )
    search: SearchConfig = Field(default_factory=SearchConfig, alias="search")
    context: ContextConfig = Field(default_factory=ContextConfig, alias="context")
    embedding: EmbeddingConfig = Field(
        default_factory=EmbeddingConfig, alias="embedding"
    )
    completion: CompletionConfig = Field(
        default_factory=CompletionConfig, alias="completion"
    )
    extraction: ExtractionConfig = Field(
        default_factory=ExtractionConfig, alias="extraction"
    )
