"""
tests/unit/test_planner.py — Multi-Step Planner Unit Tests
"""

from __future__ import annotations

import pytest

from agent.planner import MultiStepPlanner


class TestSplitting:

    def test_single_step(self):
        plan = MultiStepPlanner().plan("add a supplier in Shanghai")
        assert [s.text for s in plan] == ["add a supplier in Shanghai"]
        assert plan[0].index == 1 and plan[0].is_last

    def test_comma_then(self):
        plan = MultiStepPlanner().plan(
            "add a supplier in Tokyo, then connect it to warehouse-1, then run a simulation"
        )
        assert [s.text for s in plan] == [
            "add a supplier in Tokyo",
            "connect it to warehouse-1",
            "run a simulation",
        ]
        assert [s.index for s in plan] == [1, 2, 3]
        assert all(s.total == 3 for s in plan)
        assert plan[-1].is_last and not plan[0].is_last

    @pytest.mark.parametrize("cue", ["and then", "after that", "; then", "AND THEN"])
    def test_sequence_cues(self, cue):
        plan = MultiStepPlanner().plan(f"add a supplier in Oslo {cue} show me my network")
        assert [s.text for s in plan] == ["add a supplier in Oslo", "show me my network"]

    def test_numbered_inline(self):
        plan = MultiStepPlanner().plan("1. add a supplier in Tokyo 2. add a warehouse in Osaka")
        assert [s.text for s in plan] == ["add a supplier in Tokyo", "add a warehouse in Osaka"]

    def test_numbered_lines_with_parens(self):
        plan = MultiStepPlanner().plan("1) add a supplier\n2) add a warehouse\n3) run a simulation")
        assert len(plan) == 3
        assert plan[2].text == "run a simulation"

    def test_numbers_must_count_from_one(self):
        plan = MultiStepPlanner().plan("set capacity to 2. 5. units")
        assert len(plan) == 1

    def test_single_numbered_item_is_one_step(self):
        plan = MultiStepPlanner().plan("1. add a supplier in Tokyo")
        assert len(plan) == 1

    def test_then_inside_word_not_split(self):
        plan = MultiStepPlanner().plan("add a supplier in Athens")
        assert len(plan) == 1

    def test_trailing_punctuation_stripped(self):
        plan = MultiStepPlanner().plan("add a supplier in Lima.")
        assert plan[0].text == "add a supplier in Lima"

    def test_disabled_planner_never_splits(self):
        planner = MultiStepPlanner(enabled=False)
        plan = planner.plan("add a supplier and then add a warehouse")
        assert len(plan) == 1
        assert not planner.is_multi_step("add a supplier and then add a warehouse")

    def test_is_multi_step(self):
        planner = MultiStepPlanner()
        assert planner.is_multi_step("a, then b")
        assert not planner.is_multi_step("just one thing")
