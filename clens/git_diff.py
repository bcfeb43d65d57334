"""Commits, numstat hunks and working-tree changes around a session."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from clens.git import has_head, run_git
from clens.models import GitDiffHunk, GitDiffResult, StoredEvent, WorkingTreeChange

_UNTIL_BUFFER_MS = 60_000


def _iso(ms: int) -> str:
    dt = datetime.fromtimestamp(ms / 1000, timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_count(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        # binary files report "-"
        return 0


def _split_numstat(output: str) -> list[tuple[int, int, str]]:
    rows: list[tuple[int, int, str]] = []
    for line in output.strip().split("\n"):
        if not line:
            continue
        parts = line.split("\t")
        if len(parts) < 3 or not parts[2]:
            continue
        rows.append((_parse_count(parts[0]), _parse_count(parts[1]), parts[2]))
    return rows


def parse_numstat_output(output: str) -> list[WorkingTreeChange]:
    """``<additions>\\t<deletions>\\t<path>`` lines; status guessed from the counts."""
    changes: list[WorkingTreeChange] = []
    for additions, deletions, file_path in _split_numstat(output):
        if additions > 0 and deletions == 0:
            status = "added"
        elif deletions > 0 and additions == 0:
            status = "deleted"
        else:
            status = "modified"
        changes.append(
            WorkingTreeChange(file_path=file_path, status=status, additions=additions, deletions=deletions)
        )
    return changes


def detect_working_tree_changes(project_dir: str, staged: bool) -> list[WorkingTreeChange]:
    """Changes as of distill time, not session time."""
    if staged:
        args = ["diff", "--numstat", "--cached"]
    elif has_head(project_dir):
        args = ["diff", "--numstat", "HEAD"]
    else:
        args = ["diff", "--numstat"]
    output = run_git(args, project_dir)
    return parse_numstat_output(output) if output is not None else []


def extract_git_diff(events: list[StoredEvent], project_dir: str) -> GitDiffResult:
    if not events:
        return GitDiffResult()

    since = _iso(events[0].t)
    until = _iso(events[-1].t + _UNTIL_BUFFER_MS)
    log_output = run_git(["log", f"--since={since}", f"--until={until}", "--format=%H"], project_dir)
    commits = [line for line in (log_output or "").strip().split("\n") if line]
    if not commits:
        return GitDiffResult()

    edits = [
        (event.tool_input.get("file_path"), event.tool_use_id or "")
        for event in events
        if event.event == "PreToolUse" and event.tool_name in ("Edit", "Write")
    ]
    # an edit without a path would suffix-match every file
    edits = [(path, tool_use_id) for path, tool_use_id in edits if isinstance(path, str) and path]

    hunks: list[GitDiffHunk] = []
    for commit in commits:
        output = run_git(["diff", "--numstat", f"{commit}^..{commit}"], project_dir)
        if output is None:
            continue
        for additions, deletions, file_path in _split_numstat(output):
            matched: Optional[str] = None
            for edit_path, tool_use_id in edits:
                if edit_path.endswith(file_path) or file_path.endswith(edit_path):
                    matched = tool_use_id
                    break
            hunks.append(
                GitDiffHunk(
                    commit_hash=commit,
                    file_path=file_path,
                    additions=additions,
                    deletions=deletions,
                    matched_tool_use_id=matched,
                )
            )

    working_tree = detect_working_tree_changes(project_dir, staged=False)
    staged = detect_working_tree_changes(project_dir, staged=True)
    return GitDiffResult(
        commits=commits,
        hunks=hunks,
        working_tree_changes=working_tree or None,
        staged_changes=staged or None,
    )


def extract_net_changes(project_dir: str, start_commit: Optional[str]) -> list[WorkingTreeChange]:
    """Unstaged and staged changes since the session's start commit, merged by path."""
    if not start_commit:
        return []
    unstaged_output = run_git(["diff", "--numstat", start_commit], project_dir)
    staged_output = run_git(["diff", "--numstat", "--cached", start_commit], project_dir)
    merged: dict[str, WorkingTreeChange] = {}
    for output in (unstaged_output, staged_output):
        if output is None:
            continue
        for change in parse_numstat_output(output):
            merged.setdefault(change.file_path, change)
    return list(merged.values())
