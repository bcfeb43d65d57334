import unittest

from clens.decisions import (
    extract_decisions,
    extract_phases,
    extract_raw_timing_gaps,
    extract_timing_gaps,
    extract_tool_pivots,
)
from clens.models import SpawnLink, StoredEvent, TaskLink


def _tool(event: str, tool_name: str, t: int, tool_use_id: str = "") -> StoredEvent:
    return StoredEvent(
        t=t,
        event=event,
        sid="s1",
        data={"tool_name": tool_name, "tool_use_id": tool_use_id or f"tu-{t}"},
    )


class ToolPivotTests(unittest.TestCase):
    def test_failure_followed_by_different_tool_is_a_pivot(self) -> None:
        events = [
            _tool("PostToolUseFailure", "Edit", 1000),
            _tool("PreToolUse", "Read", 2000),
        ]

        pivots = extract_tool_pivots(events)

        self.assertEqual(len(pivots), 1)
        self.assertEqual(pivots[0].from_tool, "Edit")
        self.assertEqual(pivots[0].to_tool, "Read")
        self.assertTrue(pivots[0].after_failure)
        self.assertEqual(pivots[0].t, 2000)

    def test_retry_with_same_tool_is_not_a_pivot(self) -> None:
        events = [
            _tool("PostToolUseFailure", "Edit", 1000),
            _tool("PreToolUse", "Edit", 2000),
        ]

        self.assertEqual(extract_tool_pivots(events), [])

    def test_next_call_beyond_lookahead_is_ignored(self) -> None:
        events = [_tool("PostToolUseFailure", "Edit", 0)]
        events.extend(_tool("PostToolUse", "Edit", 10 + i) for i in range(10))
        events.append(_tool("PreToolUse", "Read", 100))

        self.assertEqual(extract_tool_pivots(events), [])


class TimingGapTests(unittest.TestCase):
    def test_long_gap_is_a_single_session_pause_with_actual_delta(self) -> None:
        events = [
            _tool("PreToolUse", "Read", 1000),
            _tool("PreToolUse", "Read", 700_000),
        ]

        gaps = [d for d in extract_decisions(events) if d.type == "timing_gap"]

        self.assertEqual(len(gaps), 1)
        self.assertEqual(gaps[0].classification, "session_pause")
        self.assertEqual(gaps[0].gap_ms, 699_000)

    def test_prompt_inside_gap_marks_user_idle(self) -> None:
        events = [
            _tool("PreToolUse", "Read", 0),
            StoredEvent(t=90_000, event="UserPromptSubmit", sid="s1", data={"prompt": "next"}),
        ]

        gaps = extract_raw_timing_gaps(events)

        self.assertEqual(len(gaps), 1)
        self.assertEqual(gaps[0].classification, "user_idle")

    def test_sub_minute_thinking_gap_is_filtered_as_noise(self) -> None:
        events = [
            _tool("PreToolUse", "Read", 0),
            _tool("PreToolUse", "Read", 45_000),
        ]

        self.assertEqual(len(extract_raw_timing_gaps(events)), 1)
        self.assertEqual(extract_timing_gaps(events), [])

    def test_classification_is_stable_under_resorting(self) -> None:
        events = [
            _tool("PreToolUse", "Read", 0),
            StoredEvent(t=100_000, event="UserPromptSubmit", sid="s1"),
            _tool("PreToolUse", "Edit", 500_000),
            _tool("PreToolUse", "Bash", 540_000),
        ]
        once = sorted(events, key=lambda e: e.t)
        twice = sorted(once, key=lambda e: e.t)

        self.assertEqual(
            [g.model_dump() for g in extract_raw_timing_gaps(once)],
            [g.model_dump() for g in extract_raw_timing_gaps(twice)],
        )

    def test_fewer_than_two_events_have_no_gaps(self) -> None:
        self.assertEqual(extract_raw_timing_gaps([]), [])
        self.assertEqual(extract_raw_timing_gaps([_tool("PreToolUse", "Read", 0)]), [])


class PhaseTests(unittest.TestCase):
    def test_solo_session_splits_on_long_gap(self) -> None:
        events = [
            _tool("PreToolUse", "Read", 0),
            _tool("PreToolUse", "Read", 1000),
            _tool("PreToolUse", "Edit", 400_000),
            _tool("PreToolUse", "Edit", 401_000),
        ]

        phases = extract_phases(events)

        self.assertEqual([p.name for p in phases], ["File Exploration", "Code Modification"])
        self.assertEqual(phases[0].end_t, 1000)
        self.assertEqual(phases[1].start_t, 400_000)

    def test_medium_gap_splits_only_when_dominant_tool_changes(self) -> None:
        same_tool = [
            _tool("PreToolUse", "Read", 0),
            _tool("PreToolUse", "Read", 150_000),
        ]
        shifted = [
            _tool("PreToolUse", "Read", 0),
            _tool("PreToolUse", "Edit", 150_000),
        ]

        self.assertEqual(len(extract_phases(same_tool)), 1)
        self.assertEqual(len(extract_phases(shifted)), 2)

    def test_bash_phase_with_failures_is_debugging(self) -> None:
        events = [
            _tool("PreToolUse", "Bash", 0),
            _tool("PostToolUseFailure", "Bash", 10),
            _tool("PreToolUse", "Bash", 20),
        ]

        self.assertEqual(extract_phases(events)[0].name, "Debugging")

    def test_team_assignment_splits_planning_and_build(self) -> None:
        events = [
            _tool("PreToolUse", "Read", 1000),
            _tool("PreToolUse", "Edit", 5000),
            _tool("PreToolUse", "Bash", 6000),
        ]
        links = [
            TaskLink(t=2000, action="create", task_id="1", session_id="s1", subject="Build it"),
            TaskLink(t=3500, action="assign", task_id="1", session_id="s1", owner="builder"),
        ]

        phases = extract_phases(events, links)

        self.assertEqual([p.name for p in phases], ["Planning", "Build"])
        self.assertEqual(phases[0].end_t, 3500)
        self.assertEqual(phases[1].start_t, 3500)
        self.assertEqual(phases[1].end_t, 6000)

    def test_validator_spawn_before_assignment_is_clamped(self) -> None:
        events = [
            _tool("PreToolUse", "Read", 1000),
            _tool("PreToolUse", "Edit", 9000),
        ]
        links = [
            SpawnLink(t=500, parent_session="s1", agent_id="a1", agent_type="validator"),
            TaskLink(t=3000, action="assign", task_id="1", session_id="s1", owner="builder"),
        ]

        phases = extract_phases(events, links)

        self.assertEqual([p.name for p in phases], ["Planning", "Build", "Validation"])
        for phase in phases:
            self.assertGreaterEqual(phase.end_t, phase.start_t)
            self.assertGreaterEqual(phase.start_t, 1000)
            self.assertLessEqual(phase.end_t, 9000)

    def test_team_phase_boundaries_become_decisions(self) -> None:
        events = [
            _tool("PreToolUse", "Read", 1000),
            _tool("PreToolUse", "Edit", 6000),
        ]
        links = [TaskLink(t=3500, action="assign", task_id="1", session_id="s1", owner="builder")]

        decisions = extract_decisions(events, links)
        boundaries = [d for d in decisions if d.type == "phase_boundary"]
        delegations = [d for d in decisions if d.type == "task_delegation"]

        self.assertEqual(len(boundaries), 1)
        self.assertEqual(boundaries[0].phase_name, "Build")
        self.assertEqual(len(delegations), 1)
        self.assertEqual(delegations[0].agent_name, "builder")
        self.assertEqual([d.t for d in decisions], sorted(d.t for d in decisions))

    def test_empty_session_has_no_phases(self) -> None:
        self.assertEqual(extract_phases([]), [])


if __name__ == "__main__":
    unittest.main()
