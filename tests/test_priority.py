"""Tests for turn retention priority."""

from conduit.api.models import ToolResultBlock, Turn
from conduit.context.priority import RECENCY_BONUS, Priority, priority, rank


def _result_turn() -> Turn:
    return Turn(role="user", tool_results=[ToolResultBlock("toolu_1", "42")])


class TestPriority:
    def test_tier_values(self):
        assert {p.name: p.value for p in Priority} == {
            "SYSTEM": 100,
            "TOOL_RESULT": 90,
            "USER_RECENT": 80,
            "ASSISTANT_RECENT": 70,
            "USER_OLD": 50,
            "ASSISTANT_OLD": 40,
        }
        assert RECENCY_BONUS == 30.0

    def test_short_acknowledgement_is_not_demoted(self):
        # Only role, tool results and position matter
        ack = priority(Turn(role="user", content="ok"), 9, 10)
        question = priority(Turn(role="user", content="Who should captain this week?"), 9, 10)
        assert ack == question

    def test_system_ranks_highest(self):
        assert priority(Turn(role="system", content="summary"), 0, 10) == 100

    def test_tool_results_rank_second(self):
        assert priority(_result_turn(), 0, 10) == 90

    def test_old_user_and_assistant(self):
        assert priority(Turn(role="user", content="hi"), 0, 10) == Priority.USER_OLD
        assert priority(Turn(role="assistant", content="hi"), 0, 10) == Priority.ASSISTANT_OLD

    def test_recent_turns_get_higher_base(self):
        # 8 > 10 * 0.7 -> recent
        user = priority(Turn(role="user", content="hi"), 8, 10)
        assistant = priority(Turn(role="assistant", content="hi"), 8, 10)
        assert user == Priority.USER_RECENT + 0.8 * RECENCY_BONUS
        assert assistant == Priority.ASSISTANT_RECENT + 0.8 * RECENCY_BONUS

    def test_boundary_is_not_recent(self):
        # 7 == 10 * 0.7 is not past the boundary
        assert priority(Turn(role="user", content="hi"), 7, 10) < Priority.USER_RECENT

    def test_newer_turns_never_score_lower(self):
        turns = [Turn(role="user", content=str(i)) for i in range(20)]
        scores = [priority(t, i, len(turns)) for i, t in enumerate(turns)]
        assert scores == sorted(scores)

    def test_empty_total_does_not_divide_by_zero(self):
        assert priority(Turn(role="user", content="hi"), 0, 0) == Priority.USER_OLD


class TestRank:
    def test_rank_keeps_input_order(self):
        turns = [Turn(role="user", content="a"), _result_turn(), Turn(role="system", content="s")]
        ranked = rank(turns)
        assert [r.turn for r in ranked] == turns
        assert [r.position for r in ranked] == [0, 1, 2]
        assert ranked[2].priority == 100

    def test_cached_priority_wins(self):
        turn = Turn(role="user", content="pinned", priority=99.0)
        assert rank([turn])[0].priority == 99.0

    def test_custom_size(self):
        ranked = rank([Turn(role="user", content="abc")], size=lambda t: 1234)
        assert ranked[0].units == 1234
