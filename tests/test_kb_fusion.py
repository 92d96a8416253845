"""Unit tests for hybrid score fusion."""

from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys


PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))


class TestFuseScores(unittest.TestCase):
    """Tests for `fuse_scores` and `single_branch_scores`."""

    def test_items_in_both_lists_get_weighted_sum(self) -> None:
        from knowledge_grounding.knowledge_base.fusion import fuse_scores

        ranked = dict(fuse_scores({"a": 0.9}, {"a": 0.5}, alpha=0.6))

        self.assertAlmostEqual(ranked["a"], 0.6 * 0.9 + 0.4 * 0.5)

    def test_single_list_items_are_scaled_by_their_weight(self) -> None:
        from knowledge_grounding.knowledge_base.fusion import fuse_scores

        ranked = dict(fuse_scores({"sem": 1.0}, {"lex": 1.0}, alpha=0.6))

        self.assertAlmostEqual(ranked["sem"], 0.6)
        self.assertAlmostEqual(ranked["lex"], 0.4)

    def test_agreement_outranks_a_single_strong_signal(self) -> None:
        from knowledge_grounding.knowledge_base.fusion import fuse_scores

        ranked = fuse_scores({"both": 0.8, "sem": 0.95}, {"both": 0.8}, alpha=0.6)

        self.assertEqual([item_id for item_id, _ in ranked], ["both", "sem"])

    def test_alpha_is_per_call_configuration(self) -> None:
        from knowledge_grounding.knowledge_base.fusion import fuse_scores

        semantic, lexical = {"a": 1.0}, {"b": 1.0}

        self.assertEqual(fuse_scores(semantic, lexical, alpha=0.9)[0][0], "a")
        self.assertEqual(fuse_scores(semantic, lexical, alpha=0.1)[0][0], "b")
        with self.assertRaises(ValueError):
            fuse_scores(semantic, lexical, alpha=1.5)

    def test_ties_break_by_recency_then_id(self) -> None:
        from knowledge_grounding.knowledge_base.fusion import fuse_scores

        now = datetime.now(timezone.utc)
        updated = {"old": now - timedelta(days=1), "new": now, "b": now, "a": now}

        ranked = fuse_scores({"old": 0.5, "new": 0.5}, {}, alpha=1.0, updated_at=updated)
        self.assertEqual([item_id for item_id, _ in ranked], ["new", "old"])

        ranked = fuse_scores({"b": 0.5, "a": 0.5}, {}, alpha=1.0, updated_at=updated)
        self.assertEqual([item_id for item_id, _ in ranked], ["a", "b"])

    def test_single_branch_scores_are_unscaled(self) -> None:
        from knowledge_grounding.knowledge_base.fusion import single_branch_scores

        ranked = single_branch_scores({"x": 0.3, "y": 0.8})

        self.assertEqual(ranked, [("y", 0.8), ("x", 0.3)])

    def test_empty_inputs(self) -> None:
        from knowledge_grounding.knowledge_base.fusion import fuse_scores

        self.assertEqual(fuse_scores({}, {}, alpha=0.6), [])


if __name__ == "__main__":
    unittest.main()
