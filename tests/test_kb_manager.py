"""Unit tests for `KnowledgeBaseManager` orchestration."""

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
import sys

import numpy as np


PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))
TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from helpers import FakeCompletionClient, concept_vector, make_manager  # noqa: E402


class TestKnowledgeBaseManager(unittest.IsolatedAsyncioTestCase):
    """Tests for item writes, grounding and re-embedding."""

    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.manager, self.provider, self.completion = make_manager(self._tmp.name)
        await self.manager.initialize()

    async def asyncTearDown(self) -> None:
        await self.manager.close()
        self._tmp.cleanup()

    async def test_upsert_embeds_eagerly(self) -> None:
        from knowledge_grounding.knowledge_base import KnowledgeItem

        item = await self.manager.upsert_item(
            KnowledgeItem(owner_id="alice", title="Refund Policy", content="Returns accepted within 30 days")
        )

        self.assertEqual(item.embedding, concept_vector(item.embedding_text()))
        self.assertEqual(self.provider.calls, 1)

    async def test_edit_replaces_embedding(self) -> None:
        from knowledge_grounding.knowledge_base import KnowledgeItem

        item = await self.manager.upsert_item(
            KnowledgeItem(owner_id="alice", title="Notes", content="Refund policy")
        )
        edited = await self.manager.upsert_item(
            item.model_copy(update={"content": "Espresso beans roast"})
        )

        self.assertEqual(edited.id, item.id)
        self.assertEqual(edited.created_at, item.created_at)
        self.assertNotEqual(edited.embedding, item.embedding)
        self.assertEqual(edited.embedding, concept_vector("Notes\nEspresso beans roast"))

    async def test_provider_outage_stores_fallback_vector_then_backfills(self) -> None:
        from knowledge_grounding.knowledge_base import KnowledgeItem
        from knowledge_grounding.knowledge_base.embeddings import fallback_embedding_vector

        self.provider.available = False
        item = await self.manager.upsert_item(
            KnowledgeItem(owner_id="alice", title="Refund Policy", content="Returns accepted within 30 days")
        )
        self.assertEqual(item.embedding_source, "fallback")
        np.testing.assert_allclose(
            item.embedding, fallback_embedding_vector(self.manager.store.dimension, 42), rtol=1e-6
        )
        self.assertEqual((await self.manager.get_stats("alice"))["fallback_embeddings"], 1)

        self.assertEqual(await self.manager.reembed_missing("alice"), 0)

        self.provider.available = True
        self.assertEqual(await self.manager.reembed_missing("alice"), 1)

        stored = await self.manager.get_item("alice", item.id)
        self.assertEqual(stored.embedding_source, "real")
        np.testing.assert_allclose(stored.embedding, concept_vector(item.embedding_text()), rtol=1e-6)
        self.assertEqual(stored.updated_at, item.updated_at)
        stats = await self.manager.get_stats("alice")
        self.assertEqual(stats["missing_embeddings"], 0)
        self.assertEqual(stats["fallback_embeddings"], 0)

    async def test_foreign_item_is_rejected_before_embedding(self) -> None:
        from knowledge_grounding.knowledge_base import KnowledgeItem
        from knowledge_grounding.knowledge_base.errors import OwnerMismatch

        item = await self.manager.upsert_item(
            KnowledgeItem(owner_id="alice", title="Refund Policy", content="Returns accepted within 30 days")
        )
        calls = self.provider.calls

        with self.assertRaises(OwnerMismatch):
            await self.manager.upsert_item(
                item.model_copy(update={"owner_id": "bob", "content": "Overwritten"})
            )

        self.assertEqual(self.provider.calls, calls)
        stored = await self.manager.get_item("alice", item.id)
        self.assertEqual(stored.content, "Returns accepted within 30 days")

    async def test_relevant_context_and_related_items(self) -> None:
        from knowledge_grounding.knowledge_base import KnowledgeItem

        refund = await self.manager.upsert_item(
            KnowledgeItem(owner_id="alice", title="Refund Policy", content="Returns accepted within 30 days")
        )
        window = await self.manager.upsert_item(
            KnowledgeItem(owner_id="alice", title="Return window", content="30 days policy")
        )
        await self.manager.upsert_item(
            KnowledgeItem(owner_id="alice", title="Espresso", content="Dark roast coffee beans")
        )

        context = await self.manager.get_relevant_context("alice", "what's the return window")
        self.assertIn("**Refund Policy**", context)

        related = await self.manager.related_items("alice", refund.id, k=1)
        self.assertEqual([r["item_id"] for r in related], [window.id])
        self.assertEqual(related[0]["title"], "Return window")

    async def test_grounding_is_empty_when_provider_is_down(self) -> None:
        from knowledge_grounding.knowledge_base import KnowledgeItem

        await self.manager.upsert_item(
            KnowledgeItem(owner_id="alice", title="Refund Policy", content="Returns accepted within 30 days")
        )
        self.provider.available = False

        self.assertEqual(await self.manager.get_relevant_context("alice", "what's the return window"), "")

    async def test_extraction_can_run_inline_or_be_disabled(self) -> None:
        self.completion.response = '[{"title":"Return window","content":"30 days"}]'
        transcript = [{"role": "user", "content": "How long is the return window?"}]

        result = await self.manager.extract_from_conversation(
            "alice", transcript=transcript, background=False
        )
        self.assertEqual(result["stage"], "persisted")
        self.assertEqual(len(result["persisted"]), 1)

        self.manager.extraction_enabled = False
        disabled = await self.manager.extract_from_conversation("alice", transcript=transcript)
        self.assertEqual(disabled, {"status": "disabled"})

    async def test_stats_include_provider_counters(self) -> None:
        stats = await self.manager.get_stats("alice")

        self.assertEqual(stats["total_items"], 0)
        self.assertEqual(stats["embedding_dimension"], 8)
        self.assertEqual(stats["embeddings"], {"real": 0, "fallback": 0, "failures": 0})
        self.assertEqual(stats["pending_extractions"], 0)


class TestManagerFromConfig(unittest.TestCase):
    def test_extraction_flag_is_respected(self) -> None:
        from knowledge_grounding.config_manager import Config
        from knowledge_grounding.knowledge_base import KnowledgeBaseManager

        with tempfile.TemporaryDirectory() as tmp:
            config = Config(
                knowledge_base={"db_path": str(Path(tmp) / "kb.sqlite")},
                extraction={"enabled": False},
            )
            manager = KnowledgeBaseManager.from_config(
                config, completion_client=FakeCompletionClient()
            )

        self.assertFalse(manager.extraction_enabled)
        self.assertEqual(manager.store.dimension, 1536)


if __name__ == "__main__":
    unittest.main()
