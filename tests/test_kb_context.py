"""Unit tests for grounding context assembly."""

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
import sys


PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))
TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from helpers import (  # noqa: E402
    context_config,
    make_embeddings,
    make_item,
    make_store,
    search_config,
)


def _results(items, scores=None):
    from knowledge_grounding.knowledge_base.models import SearchHit, SearchResults

    scores = scores or [1.0 - i * 0.01 for i in range(len(items))]
    return SearchResults(
        query="q",
        hits=[SearchHit(item_id=item.id, score=score) for item, score in zip(items, scores)],
        items={item.id: item for item in items},
    )


class TestContextAssembler(unittest.TestCase):
    """Tests for `ContextAssembler.assemble` budgets and rendering."""

    def test_no_hits_gives_empty_string(self) -> None:
        from knowledge_grounding.knowledge_base.context import ContextAssembler

        self.assertEqual(ContextAssembler(config=context_config()).assemble(_results([])), "")

    def test_single_item_rendering(self) -> None:
        from knowledge_grounding.knowledge_base.context import ContextAssembler

        item = make_item("alice", "Refund Policy", "Returns accepted within 30 days", tags=["policy", "support"])
        context = ContextAssembler(config=context_config()).assemble(_results([item]))

        self.assertEqual(
            context,
            "[Relevant Knowledge]\n\n"
            "**Refund Policy**\nReturns accepted within 30 days\nTags: policy, support\n\n"
            "[End of Relevant Knowledge]",
        )

    def test_tags_can_be_left_out(self) -> None:
        from knowledge_grounding.knowledge_base.context import ContextAssembler

        item = make_item("alice", "Refund Policy", "Returns accepted", tags=["policy"])
        context = ContextAssembler(config=context_config(include_tags=False)).assemble(_results([item]))

        self.assertNotIn("Tags:", context)

    def test_item_cap(self) -> None:
        from knowledge_grounding.knowledge_base.context import ContextAssembler

        items = [make_item("alice", f"Note {i}", "short") for i in range(8)]
        context = ContextAssembler(config=context_config(max_items=5)).assemble(_results(items))

        self.assertEqual(context.count("**Note"), 5)
        self.assertIn("**Note 0**", context)
        self.assertNotIn("**Note 5**", context)

    def test_character_budget_with_more_hits_than_fit(self) -> None:
        from knowledge_grounding.knowledge_base.context import ContextAssembler

        items = [make_item("alice", f"Item {i}", "Lorem ipsum dolor sit amet. " * 20) for i in range(10)]

        for max_chars in (10, 50, 200, 700, 2000):
            assembler = ContextAssembler(config=context_config(max_chars=max_chars))
            context = assembler.assemble(_results(items))
            self.assertLessEqual(len(context), max_chars)

        context = ContextAssembler(config=context_config(max_chars=2000)).assemble(_results(items))
        self.assertGreater(len(context), 0)
        self.assertLess(context.count("**Item"), 5)

    def test_summary_replaces_oversized_content(self) -> None:
        from knowledge_grounding.knowledge_base.context import ContextAssembler

        item = make_item(
            "alice", "Long doc", "Sentence one is here. " * 100, summary="A short summary."
        )
        context = ContextAssembler(config=context_config(per_item_chars=200)).assemble(_results([item]))

        self.assertIn("A short summary.", context)
        self.assertNotIn("Sentence one", context)

    def test_oversized_content_is_cut_at_sentence_boundary(self) -> None:
        from knowledge_grounding.knowledge_base.context import ContextAssembler

        item = make_item("alice", "Long doc", "Sentence one is here. " * 100)
        assembler = ContextAssembler(config=context_config(per_item_chars=100))
        context = assembler.assemble(_results([item]))

        body = context.split("\n")[3]
        self.assertTrue(body.endswith("here...."))
        self.assertLessEqual(len(body), 100)

    def test_min_score_filters_weak_hits(self) -> None:
        from knowledge_grounding.knowledge_base.context import ContextAssembler

        strong = make_item("alice", "Strong", "a")
        weak = make_item("alice", "Weak", "b")
        context = ContextAssembler(config=context_config(min_score=0.5)).assemble(
            _results([strong, weak], scores=[0.9, 0.2])
        )

        self.assertIn("**Strong**", context)
        self.assertNotIn("**Weak**", context)


class TestBuildContext(unittest.IsolatedAsyncioTestCase):
    """End-to-end grounding for the refund scenario."""

    async def asyncSetUp(self) -> None:
        from knowledge_grounding.knowledge_base.context import ContextAssembler
        from knowledge_grounding.knowledge_base.search import HybridSearchEngine

        self._tmp = tempfile.TemporaryDirectory()
        self.store = make_store(self._tmp.name)
        self.embeddings, self.provider = make_embeddings(max_attempts=1)
        engine = HybridSearchEngine(self.store, self.store.full_text, self.embeddings, search_config())
        self.assembler = ContextAssembler(engine, context_config())
        await self.store.upsert(make_item("alice", "Refund Policy", "Returns accepted within 30 days"))

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    async def test_semantic_grounding(self) -> None:
        context = await self.assembler.build_context("alice", "what's the return window")

        self.assertIn("**Refund Policy**", context)
        self.assertLessEqual(len(context), 2000)

    async def test_provider_down_gives_empty_context(self) -> None:
        self.provider.available = False

        context = await self.assembler.build_context("alice", "what's the return window")

        self.assertEqual(context, "")

    async def test_other_owner_gets_nothing(self) -> None:
        self.assertEqual(await self.assembler.build_context("bob", "refund policy"), "")


if __name__ == "__main__":
    unittest.main()
