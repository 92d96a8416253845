"""
Turns ranked search hits into a bounded grounding block for prompt injection.
"""

from typing import List, Optional

from loguru import logger

from ..config_manager.knowledge_base import ContextConfig
from .models import KnowledgeItem, SearchResults
from .search import HybridSearchEngine
from .text_utils import cut_at_sentence, truncate_text


class ContextAssembler:
    """
    Renders search results as one text block bounded by item count and size.

    Each item is rendered as::

        **Title**
        body
        Tags: a, b

    The body is the content when it fits the per-item budget, otherwise the
    summary, otherwise the content cut at a sentence boundary.
    """

    def __init__(
        self,
        engine: Optional[HybridSearchEngine] = None,
        config: Optional[ContextConfig] = None,
    ):
        self.engine = engine
        self.config = config or ContextConfig()

    def _render_body(self, item: KnowledgeItem) -> str:
        budget = self.config.per_item_chars
        content = item.content.strip()
        summary = (item.summary or "").strip()

        if not content:
            return truncate_text(summary, budget)
        if len(content) <= budget:
            return content
        if summary and len(summary) <= budget:
            return summary

        cut = cut_at_sentence(content, budget)
        if cut is not None:
            return cut
        return truncate_text(content, budget)

    def render_item(self, item: KnowledgeItem) -> str:
        lines = [f"**{item.title}**"]
        body = self._render_body(item)
        if body:
            lines.append(body)
        if self.config.include_tags and item.tags:
            lines.append("Tags: " + ", ".join(item.tags))
        return "\n".join(lines)

    def _join(self, blocks: List[str]) -> str:
        parts = [self.config.header, *blocks, self.config.footer]
        return "\n\n".join(part for part in parts if part)

    def assemble(self, results: SearchResults) -> str:
        """
        Build the grounding block.

        Items are added in ranked order until the next one would break the
        item cap or the character budget (framing included).

        Returns:
            The grounding text, or "" when no hit qualifies
        """
        blocks: List[str] = []

        for hit, item in results.ranked_items():
            if len(blocks) >= self.config.max_items:
                break
            if hit.score < self.config.min_score:
                continue

            block = self.render_item(item)
            if len(self._join(blocks + [block])) > self.config.max_chars:
                break
            blocks.append(block)

        if not blocks:
            return ""

        context = self._join(blocks)
        logger.debug(
            f"📚 Assembled grounding context: {len(blocks)} items, {len(context)} chars"
        )
        return context

    async def build_context(self, owner_id: str, query: str) -> str:
        """Search an owner's knowledge and assemble the grounding block."""
        if self.engine is None:
            raise RuntimeError("ContextAssembler has no search engine configured")

        results = await self.engine.search(owner_id, query, limit=self.config.max_items)
        return self.assemble(results)
