"""
Data models shared by the knowledge base components.

`KnowledgeItem` is the persisted unit of knowledge. `SearchHit` and
`SearchResults` are produced fresh for every query and never cached.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

MAX_TITLE_CHARS = 200
MAX_CONTENT_CHARS = 100_000
MAX_SUMMARY_CHARS = 1_000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class KnowledgeType(str, Enum):
    """Well-known knowledge item types. Other strings are accepted as-is."""

    DOCUMENT = "document"
    NOTE = "note"
    CODE = "code"
    EXTRACTED_FACT = "extracted-fact"
    WEB_PAGE = "web-page"
    ARTICLE = "article"
    REFERENCE = "reference"


class EmbeddingSource(str, Enum):
    """Where a stored vector came from."""

    REAL = "real"
    FALLBACK = "fallback"


class KnowledgeItem(BaseModel):
    """A retrievable piece of knowledge owned by exactly one account."""

    id: str = Field(default_factory=_new_id)
    owner_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=MAX_TITLE_CHARS)
    content: str = Field("", max_length=MAX_CONTENT_CHARS)
    summary: Optional[str] = Field(None, max_length=MAX_SUMMARY_CHARS)
    type: str = KnowledgeType.NOTE.value
    tags: List[str] = Field(default_factory=list)
    collection: Optional[str] = None
    source_url: Optional[str] = None
    embedding: Optional[List[float]] = None
    embedding_source: Optional[str] = None
    view_count: int = Field(0, ge=0)
    reference_count: int = Field(0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_viewed_at: Optional[datetime] = None

    @field_validator("type", "embedding_source", mode="before")
    @classmethod
    def _enum_value(cls, value: Any) -> Any:
        if isinstance(value, (KnowledgeType, EmbeddingSource)):
            return value.value
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _clean_tags(cls, value: Any) -> Any:
        if value is None:
            return []
        if not isinstance(value, list):
            return value
        cleaned: list[str] = []
        for tag in value:
            tag = str(tag).strip()
            if tag and tag not in cleaned:
                cleaned.append(tag)
        return cleaned

    def embedding_text(self) -> str:
        """Text that is embedded for this item: title followed by content."""
        return f"{self.title}\n{self.content}".strip()

    def has_embedding(self, dimension: int) -> bool:
        return self.embedding is not None and len(self.embedding) == dimension


class ExtractedFact(BaseModel):
    """One fact parsed from a language-model extraction response."""

    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    tags: List[str] = Field(default_factory=list)

    @field_validator("title", "content", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _tags_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [t.strip() for t in value.split(",") if t.strip()]
        return value


class TranscriptMessage(BaseModel):
    """A single turn of a finished conversation."""

    role: str
    content: str


class SearchMode(str, Enum):
    HYBRID = "hybrid"
    FULL_TEXT_ONLY = "full_text_only"
    SEMANTIC_ONLY = "semantic_only"


@dataclass
class SearchHit:
    """A ranked reference to a knowledge item.

    `score` is normalized to [0, 1]. The component scores are kept so callers
    can see which signal produced the hit.
    """

    item_id: str
    score: float
    highlight: Optional[str] = None
    semantic_score: Optional[float] = None
    lexical_score: Optional[float] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "score": round(self.score, 6),
            "highlight": self.highlight,
            "semantic_score": self.semantic_score,
            "lexical_score": self.lexical_score,
        }


@dataclass
class SearchResults:
    """Ranked hits for one query plus degradation metadata."""

    query: str
    hits: List[SearchHit] = field(default_factory=list)
    items: Dict[str, KnowledgeItem] = field(default_factory=dict)
    mode: SearchMode = SearchMode.HYBRID
    degraded: bool = False
    notes: List[str] = field(default_factory=list)
    query_time_ms: float = 0.0

    def ranked_items(self) -> List[tuple[SearchHit, KnowledgeItem]]:
        """Hits paired with their hydrated items, in ranked order."""
        return [(hit, self.items[hit.item_id]) for hit in self.hits if hit.item_id in self.items]

    def to_dict(self) -> Dict[str, Any]:
        results = []
        for hit, item in self.ranked_items():
            entry = hit.to_dict()
            entry.update(
                {
                    "title": item.title,
                    "type": item.type,
                    "tags": item.tags,
                    "collection": item.collection,
                }
            )
            results.append(entry)
        return {
            "query": self.query,
            "mode": self.mode.value,
            "degraded": self.degraded,
            "notes": list(self.notes),
            "count": len(results),
            "results": results,
            "query_time_ms": round(self.query_time_ms, 2),
        }
