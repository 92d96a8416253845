"""Shared fakes for knowledge base tests.

`ConceptEmbeddingProvider` maps words onto a few fixed concept axes, so texts
about the same topic get similar vectors without any network access.
"""

from __future__ import annotations

import asyncio
import re
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from knowledge_grounding.config_manager import (  # noqa: E402
    ContextConfig,
    EmbeddingConfig,
    ExtractionConfig,
    SearchConfig,
)
from knowledge_grounding.knowledge_base.embeddings import (  # noqa: E402
    EmbeddingProvider,
    EmbeddingService,
)
from knowledge_grounding.knowledge_base.errors import ProviderUnavailable  # noqa: E402
from knowledge_grounding.knowledge_base.llm import CompletionClient  # noqa: E402
from knowledge_grounding.knowledge_base.models import KnowledgeItem  # noqa: E402
from knowledge_grounding.knowledge_base.store import KnowledgeStore  # noqa: E402

DIMENSION = 8

CONCEPTS = [
    {"refund", "refunds", "return", "returns", "window", "days", "policy", "accepted"},
    {"shipping", "rates", "costs", "dollars", "delivery", "express"},
    {"python", "code", "function", "async", "asyncio"},
    {"coffee", "espresso", "beans", "roast"},
]


def concept_vector(text: str, dimension: int = DIMENSION) -> list[float]:
    """Bag-of-concepts vector; unknown words add a little noise on the last axis."""
    vector = [0.0] * dimension
    for token in re.findall(r"[a-z]+", text.lower()):
        for axis, words in enumerate(CONCEPTS):
            if token in words:
                vector[axis] += 1.0
                break
        else:
            vector[dimension - 1] += 0.1
    if not any(vector):
        vector[dimension - 1] = 1.0
    return vector


def unit(axis: int, dimension: int = DIMENSION) -> list[float]:
    vector = [0.0] * dimension
    vector[axis] = 1.0
    return vector


class ConceptEmbeddingProvider(EmbeddingProvider):
    """Offline embedding provider that can be switched off or slowed down."""

    def __init__(self, dimension: int = DIMENSION):
        super().__init__(dimension)
        self.calls = 0
        self.available = True
        self.delay = 0.0

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.available:
            raise ProviderUnavailable("embedding provider is down", status_code=503)
        return [concept_vector(text, self.dimension) for text in texts]


class FakeCompletionClient(CompletionClient):
    """Returns a canned response and records the prompts it received."""

    def __init__(self, response: str = "[]", available: bool = True, delay: float = 0.0):
        self.response = response
        self.available = available
        self.delay = delay
        self.prompts: list[str] = []

    async def complete(self, prompt, *, system=None, temperature=0.3, max_tokens=1000):
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.available:
            raise ProviderUnavailable("completion provider is down")
        return self.response


def embedding_config(**overrides) -> EmbeddingConfig:
    values = {
        "dimension": DIMENSION,
        "max_attempts": 2,
        "backoff_base_seconds": 0.0,
    }
    values.update(overrides)
    return EmbeddingConfig(**values)


def search_config(**overrides) -> SearchConfig:
    return SearchConfig(**overrides)


def context_config(**overrides) -> ContextConfig:
    return ContextConfig(**overrides)


def extraction_config(**overrides) -> ExtractionConfig:
    return ExtractionConfig(**overrides)


def make_embeddings(provider: ConceptEmbeddingProvider | None = None, **overrides):
    provider = provider or ConceptEmbeddingProvider()
    return EmbeddingService(provider, embedding_config(**overrides)), provider


def make_store(tmp: str, dimension: int = DIMENSION) -> KnowledgeStore:
    return KnowledgeStore(Path(tmp) / "kb.sqlite", dimension)


def make_item(owner_id: str, title: str, content: str = "", **fields) -> KnowledgeItem:
    """Item embedded with `concept_vector` unless an embedding is given."""
    if "embedding" not in fields:
        fields["embedding"] = concept_vector(f"{title}\n{content}")
    return KnowledgeItem(owner_id=owner_id, title=title, content=content, **fields)


def make_manager(
    tmp: str,
    provider: ConceptEmbeddingProvider | None = None,
    completion: CompletionClient | None = None,
    conversations=None,
):
    """Manager wired from offline components; returns (manager, provider, completion)."""
    from knowledge_grounding.config_manager import Config
    from knowledge_grounding.knowledge_base import KnowledgeBaseManager

    provider = provider or ConceptEmbeddingProvider()
    completion = completion or FakeCompletionClient()
    config = Config(
        knowledge_base={"db_path": str(Path(tmp) / "kb.sqlite")},
        embedding={"dimension": DIMENSION, "max_attempts": 1, "backoff_base_seconds": 0.0},
    )
    manager = KnowledgeBaseManager.from_config(
        config,
        embedding_provider=provider,
        completion_client=completion,
        conversations=conversations,
    )
    return manager, provider, completion
