import unittest

from clens.backtracks import detect_backtracks
from clens.models import StoredEvent


def _event(event: str, tool_name: str, t: int, tool_use_id: str, **tool_input: str) -> StoredEvent:
    data: dict = {"tool_name": tool_name, "tool_use_id": tool_use_id, "tool_input": dict(tool_input)}
    if event == "PostToolUseFailure":
        data["error"] = f"{tool_name} failed"
    return StoredEvent(t=t, event=event, sid="s1", data=data)


class BacktrackDetectionTests(unittest.TestCase):
    def test_failure_followed_by_same_tool_is_a_retry(self) -> None:
        events = [
            _event("PreToolUse", "Edit", 500, "tu1", file_path="src/a.py"),
            _event("PostToolUseFailure", "Edit", 1000, "tu1", file_path="src/a.py"),
            _event("PreToolUse", "Edit", 2000, "tu2", file_path="src/a.py"),
        ]

        backtracks = detect_backtracks(events)

        self.assertEqual(len(backtracks), 1)
        retry = backtracks[0]
        self.assertEqual(retry.type, "failure_retry")
        self.assertEqual(retry.file_path, "src/a.py")
        self.assertEqual(retry.tool_use_ids, ["tu1", "tu2"])
        self.assertEqual(retry.error_message, "Edit failed")
        self.assertEqual((retry.start_t, retry.end_t), (1000, 2000))

    def test_user_interrupt_is_not_a_failure(self) -> None:
        fail = _event("PostToolUseFailure", "Edit", 1000, "tu1", file_path="src/a.py")
        fail.data["is_interrupt"] = True
        events = [fail, _event("PreToolUse", "Edit", 2000, "tu2", file_path="src/a.py")]

        self.assertEqual(detect_backtracks(events), [])

    def test_four_edits_in_five_minutes_is_a_struggle(self) -> None:
        events = [
            _event("PreToolUse", "Edit", i * 30_000, f"e{i}", file_path="src/b.py")
            for i in range(4)
        ]

        backtracks = detect_backtracks(events)

        self.assertEqual(len(backtracks), 1)
        self.assertEqual(backtracks[0].type, "iteration_struggle")
        self.assertEqual(backtracks[0].attempts, 4)
        self.assertEqual(backtracks[0].tool_use_ids, ["e0", "e1", "e2", "e3"])

    def test_spread_out_edits_are_not_a_struggle(self) -> None:
        events = [
            _event("PreToolUse", "Edit", i * 200_000, f"e{i}", file_path="src/b.py")
            for i in range(4)
        ]

        self.assertEqual(detect_backtracks(events), [])

    def test_bash_failure_chain_is_a_debugging_loop_that_absorbs_its_retry(self) -> None:
        events = [
            _event("PreToolUse", "Bash", 0, "b1", command="pytest"),
            _event("PostToolUseFailure", "Bash", 10, "b1", command="pytest"),
            _event("PreToolUse", "Bash", 20, "b2", command="pytest -x"),
            _event("PreToolUse", "Bash", 30, "b3", command="pytest -x -q"),
        ]

        backtracks = detect_backtracks(events)

        self.assertEqual([b.type for b in backtracks], ["debugging_loop"])
        loop = backtracks[0]
        self.assertEqual(loop.attempts, 3)
        self.assertEqual(loop.tool_use_ids, ["b1", "b2", "b3"])
        self.assertEqual(loop.command, "pytest")
        self.assertGreaterEqual(loop.end_t, loop.start_t)

    def test_other_tool_between_bash_calls_breaks_the_loop(self) -> None:
        events = [
            _event("PostToolUseFailure", "Bash", 10, "b1", command="make"),
            _event("PreToolUse", "Read", 15, "r1", file_path="Makefile"),
            _event("PreToolUse", "Bash", 20, "b2", command="make"),
            _event("PreToolUse", "Bash", 30, "b3", command="make"),
        ]

        types = [b.type for b in detect_backtracks(events)]

        self.assertNotIn("debugging_loop", types)
        self.assertIn("failure_retry", types)

    def test_all_backtracks_end_after_they_start(self) -> None:
        events = [
            _event("PostToolUseFailure", "Bash", 10, "b1", command="make"),
            _event("PreToolUse", "Bash", 20, "b2", command="make"),
            _event("PreToolUse", "Bash", 30, "b3", command="make"),
            _event("PostToolUseFailure", "Edit", 40, "e1", file_path="x.py"),
            _event("PreToolUse", "Edit", 50, "e2", file_path="x.py"),
        ]

        for backtrack in detect_backtracks(events):
            self.assertGreaterEqual(backtrack.end_t, backtrack.start_t)

    def test_no_events_no_backtracks(self) -> None:
        self.assertEqual(detect_backtracks([]), [])


if __name__ == "__main__":
    unittest.main()
