import tempfile
import unittest
from unittest.mock import patch

from clens.diff_attribution import (
    attribute_diff_lines,
    build_agent_edit_index,
    extract_diff_attribution,
    parse_unified_diff,
)
from clens.edit_chains import extract_edit_chains
from clens.git import run_git
from clens.git_diff import extract_git_diff, extract_net_changes, parse_numstat_output
from clens.models import DiffLine, EditChainsResult, SessionStartContext, StoredEvent

RAW_DIFF = "\n".join([
    "diff --git a/src/a.py b/src/a.py",
    "index 111..222 100644",
    "--- a/src/a.py",
    "+++ b/src/a.py",
    "@@ -10,3 +10,3 @@ def main():",
    " keep = 1",
    "-old_value = 2",
    "+new_value = 3",
    "\\ No newline at end of file",
])


def _session_events() -> list[StoredEvent]:
    return [
        StoredEvent(t=0, event="SessionStart", sid="s1", context=SessionStartContext(git_commit="abc123")),
        StoredEvent(
            t=1000,
            event="PreToolUse",
            sid="s1",
            data={
                "tool_name": "Edit",
                "tool_use_id": "e1",
                "tool_input": {"file_path": "/work/app/src/a.py", "old_string": "old_value = 2", "new_string": "new_value = 3"},
            },
        ),
    ]


class UnifiedDiffTests(unittest.TestCase):
    def test_lines_are_typed_and_numbered_from_hunk_header(self) -> None:
        lines = parse_unified_diff(RAW_DIFF)

        self.assertEqual([(l.type, l.content, l.line_number) for l in lines], [
            ("context", "keep = 1", None),
            ("remove", "old_value = 2", 11),
            ("add", "new_value = 3", 11),
        ])

    def test_binary_and_empty_diffs_have_no_lines(self) -> None:
        self.assertEqual(parse_unified_diff(""), [])
        self.assertEqual(parse_unified_diff("Binary files a/x.png and b/x.png differ"), [])


class DiffAttributionTests(unittest.TestCase):
    def test_latest_matching_edit_wins(self) -> None:
        events = [
            StoredEvent(t=1, event="PreToolUse", sid="s1", data={
                "tool_name": "Write", "tool_use_id": "w1", "tool_input": {"file_path": "x.py", "content": "a = 1\nb = 2"},
            }),
            StoredEvent(t=2, event="PreToolUse", sid="s1", data={
                "tool_name": "Edit", "tool_use_id": "e2", "tool_input": {"file_path": "x.py", "old_string": "a = 1", "new_string": "b = 2"},
            }),
        ]
        chains = extract_edit_chains(events)
        chains = EditChainsResult(chains=[chains.chains[0].model_copy(update={"agent_name": "api"})])
        index = build_agent_edit_index(events, chains, "/work/app")["x.py"]

        lines = attribute_diff_lines(
            [
                DiffLine(type="add", content="  b = 2"),
                DiffLine(type="remove", content="a = 1"),
                DiffLine(type="add", content="c = 3"),
                DiffLine(type="context", content="a = 1"),
            ],
            index,
        )

        self.assertEqual([l.agent_name for l in lines], ["api", "api", None, None])

    def test_extract_with_diff_provider(self) -> None:
        events = _session_events()
        calls = []

        def provider(project_dir: str, start_commit: str, paths: list[str]) -> dict[str, str]:
            calls.append((project_dir, start_commit, paths))
            return {"src/a.py": RAW_DIFF}

        result = extract_diff_attribution("/work/app", events, extract_edit_chains(events), diff_provider=provider)

        self.assertEqual(calls, [("/work/app", "abc123", ["/work/app/src/a.py"])])
        self.assertEqual(len(result), 1)
        attribution = result[0]
        self.assertEqual(attribution.file_path, "src/a.py")
        self.assertEqual((attribution.total_additions, attribution.total_deletions), (1, 1))
        self.assertEqual([l.agent_name for l in attribution.lines], [None, "session", "session"])

    def test_agent_edits_are_credited_through_agent_events(self) -> None:
        parent_events = _session_events()[:1]
        agent_events = [
            StoredEvent(t=2000, event="PreToolUse", sid="agent-1", data={
                "tool_name": "Edit",
                "tool_use_id": "a1",
                "tool_input": {"file_path": "/work/app/src/a.py", "old_string": "old_value = 2", "new_string": "new_value = 3"},
            }),
        ]
        agent_chain = extract_edit_chains(agent_events).chains[0].model_copy(update={"agent_name": "api"})
        chains = EditChainsResult(chains=[agent_chain])

        def provider(project_dir: str, start_commit: str, paths: list[str]) -> dict[str, str]:
            return {"src/a.py": RAW_DIFF}

        without_agents = extract_diff_attribution("/work/app", parent_events, chains, diff_provider=provider)
        with_agents = extract_diff_attribution(
            "/work/app", parent_events, chains, diff_provider=provider, agent_events=agent_events
        )

        self.assertEqual([l.agent_name for l in without_agents[0].lines], [None, None, None])
        self.assertEqual([l.agent_name for l in with_agents[0].lines], [None, "api", "api"])

    def test_no_start_commit_means_no_attribution(self) -> None:
        events = _session_events()[1:]

        result = extract_diff_attribution("/work/app", events, extract_edit_chains(events), diff_provider=lambda *a: {"x": RAW_DIFF})

        self.assertEqual(result, [])


class GitBoundaryTests(unittest.TestCase):
    def test_missing_directory_returns_none(self) -> None:
        self.assertIsNone(run_git(["status"], "/nonexistent/clens/project"))

    def test_non_repository_yields_empty_results(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            self.assertEqual(extract_net_changes(tmpdir, "abc123"), [])
            self.assertEqual(extract_git_diff(_session_events(), tmpdir).commits, [])
        self.assertEqual(extract_net_changes("/tmp", None), [])

    def test_numstat_status_guess(self) -> None:
        changes = parse_numstat_output("3\t0\tsrc/new.py\n0\t4\tsrc/old.py\n2\t2\tsrc/mid.py\n-\t-\tlogo.png\n")

        self.assertEqual(
            [(c.file_path, c.status) for c in changes],
            [("src/new.py", "added"), ("src/old.py", "deleted"), ("src/mid.py", "modified"), ("logo.png", "modified")],
        )

    def test_commit_hunks_are_matched_to_edits(self) -> None:
        outputs = {
            "log": "c1\n",
            "diff --numstat c1^..c1": "1\t1\tsrc/a.py\n5\t0\tdocs/x.md\n",
        }

        def fake_run_git(args: list[str], cwd: str):
            if args[0] == "log":
                return outputs["log"]
            if args[:2] == ["diff", "--numstat"] and len(args) == 3 and "^.." in args[2]:
                return outputs["diff --numstat c1^..c1"]
            return ""

        with patch("clens.git_diff.run_git", side_effect=fake_run_git), patch("clens.git_diff.has_head", return_value=True):
            result = extract_git_diff(_session_events(), "/work/app")

        self.assertEqual(result.commits, ["c1"])
        self.assertEqual([(h.file_path, h.matched_tool_use_id) for h in result.hunks], [("src/a.py", "e1"), ("docs/x.md", None)])
        self.assertIsNone(result.working_tree_changes)

    def test_edit_without_path_matches_no_hunk(self) -> None:
        pathless = StoredEvent(t=500, event="PreToolUse", sid="s1", data={
            "tool_name": "Edit", "tool_use_id": "e0", "tool_input": {"old_string": "x", "new_string": "y"},
        })
        events = _session_events()
        events.insert(1, pathless)

        def fake_run_git(args: list[str], cwd: str):
            if args[0] == "log":
                return "c1\n"
            if args[:2] == ["diff", "--numstat"] and len(args) == 3 and "^.." in args[2]:
                return "1\t1\tsrc/a.py\n5\t0\tdocs/x.md\n"
            return ""

        with patch("clens.git_diff.run_git", side_effect=fake_run_git), patch("clens.git_diff.has_head", return_value=True):
            result = extract_git_diff(events, "/work/app")

        self.assertEqual([(h.file_path, h.matched_tool_use_id) for h in result.hunks], [("src/a.py", "e1"), ("docs/x.md", None)])


if __name__ == "__main__":
    unittest.main()
