"""Unit tests for knowledge base statistics.

These tests ensure stats can be reported for owners that have no
knowledge yet (empty database) and track items stored with the fallback embedding.
"""

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

from helpers import DIMENSION, make_item, make_store  # noqa: E402
from knowledge_grounding.knowledge_base.embeddings import fallback_embedding_vector  # noqa: E402


class TestKnowledgeBaseStats(unittest.IsolatedAsyncioTestCase):
    """Tests for `KnowledgeStore.get_stats`."""

    async def test_get_stats_empty_db_returns_zero_counts(self) -> None:
        """Returns zeros (and does not raise) for a new/empty KB."""
        with tempfile.TemporaryDirectory() as tmp:
            store = make_store(tmp)

            stats = await store.get_stats()

        self.assertIsInstance(stats, dict)
        self.assertEqual(stats["total_items"], 0)
        self.assertEqual(stats["embedded_items"], 0)
        self.assertEqual(stats["fallback_embeddings"], 0)
        self.assertEqual(stats["missing_embeddings"], 0)
        self.assertGreaterEqual(stats["db_size_bytes"], 0)

    async def test_get_stats_counts_missing_embeddings_per_owner(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = make_store(tmp)
            await store.upsert(make_item("alice", "Refund Policy", "Returns accepted"))
            await store.upsert(
                make_item(
                    "alice",
                    "Pending",
                    "Provider was down",
                    embedding=fallback_embedding_vector(DIMENSION, 42),
                    embedding_source="fallback",
                )
            )
            await store.upsert(make_item("bob", "Espresso", "Dark roast"))

            alice = await store.get_stats("alice")
            everyone = await store.get_stats()

        self.assertEqual(alice["total_items"], 2)
        self.assertEqual(alice["embedded_items"], 1)
        self.assertEqual(alice["fallback_embeddings"], 1)
        self.assertEqual(alice["missing_embeddings"], 1)
        self.assertEqual(everyone["total_items"], 3)
        self.assertGreater(everyone["db_size_bytes"], 0)


if __name__ == "__main__":
    unittest.main()
