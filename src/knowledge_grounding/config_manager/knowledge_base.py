"""
Configuration models for knowledge base storage, retrieval and context assembly.
"""

from pydantic import BaseModel, Field, model_validator
from typing import Optional


class KnowledgeBaseConfig(BaseModel):
    """Storage settings for the knowledge base."""

    enabled: bool = Field(True, alias="enabled")
    db_path: str = Field("knowledge_base/kb.db", alias="db_path")


class SearchConfig(BaseModel):
    """Hybrid search settings.

    `fusion_alpha` weights the semantic signal; the lexical signal gets
    `1 - fusion_alpha`. Each engine instance carries its own copy, so
    different fusion policies can run side by side in one process.
    """

    fusion_alpha: float = Field(0.6, ge=0.0, le=1.0, alias="fusion_alpha")
    min_similarity: float = Field(0.7, ge=0.0, le=1.0, alias="min_similarity")
    default_limit: int = Field(10, ge=1, alias="default_limit")
    max_limit: int = Field(50, ge=1, alias="max_limit")
    branch_timeout_seconds: float = Field(2.0, gt=0, alias="branch_timeout_seconds")
    candidate_multiplier: int = Field(2, ge=1, alias="candidate_multiplier")

    @model_validator(mode="after")
    def _check_limits(self) -> "SearchConfig":
        if self.default_limit > self.max_limit:
            raise ValueError("default_limit must not exceed max_limit")
        return self


class ContextConfig(BaseModel):
    """Bounds for the grounding block injected into prompts."""

    max_items: int = Field(5, ge=1, alias="max_items")
    max_chars: int = Field(2000, ge=1, alias="max_chars")
    per_item_chars: int = Field(600, ge=1, alias="per_item_chars")
    min_score: float = Field(0.0, ge=0.0, le=1.0, alias="min_score")
    include_tags: bool = Field(True, alias="include_tags")
    header: str = Field("[Relevant Knowledge]", alias="header")
    footer: str = Field("[End of Relevant Knowledge]", alias="footer")


class ExtractionConfig(BaseModel):
    """Settings for distilling facts out of finished conversations."""

    enabled: bool = Field(True, alias="enabled")
    model: Optional[str] = Field(None, alias="model")
    temperature: float = Field(0.3, ge=0.0, le=2.0, alias="temperature")
    max_tokens: int = Field(1000, ge=1, alias="max_tokens")
    max_facts: int = Field(20, ge=1, alias="max_facts")
    max_transcript_chars: int = Field(24000, ge=1, alias="max_transcript_chars")
