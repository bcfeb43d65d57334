"""Attribute changed diff lines to the agent whose edit most plausibly produced them.

Matching is by trimmed line content, so two agents writing the same line
text can be confused; the chronologically latest matching edit wins.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Optional

from clens.git import run_git
from clens.models import DiffLine, EditChainsResult, FileDiffAttribution, StoredEvent

_HUNK_HEADER_PATTERN = re.compile(r"^@@ -(\d+)(?:,\d+)? \+(\d+)(?:,\d+)? @@")
_SKIPPED_PREFIXES = ("diff --git", "---", "+++", "index ")

DiffProvider = Callable[[str, str, list[str]], dict[str, str]]


@dataclass(frozen=True)
class AgentEditEntry:
    agent_name: str
    tool_use_id: str
    new_string_lines: frozenset[str]
    old_string_lines: frozenset[str]
    t: int


def get_start_commit(events: list[StoredEvent]) -> Optional[str]:
    for event in events:
        if event.event == "SessionStart" and event.context and event.context.git_commit:
            return event.context.git_commit
    return None


def to_relative_path(path: str, project_dir: str) -> str:
    prefix = project_dir if project_dir.endswith("/") else f"{project_dir}/"
    return path[len(prefix):] if path.startswith(prefix) else path


def parse_unified_diff(raw_diff: str) -> list[DiffLine]:
    """Typed add/remove/context lines with new/old line numbers from hunk headers."""
    if not raw_diff.strip() or "Binary files" in raw_diff:
        return []

    lines: list[DiffLine] = []
    old_line = 0
    new_line = 0
    for line in raw_diff.split("\n"):
        if not line or line.startswith(_SKIPPED_PREFIXES):
            continue
        hunk = _HUNK_HEADER_PATTERN.match(line)
        if hunk:
            old_line = int(hunk.group(1))
            new_line = int(hunk.group(2))
            continue
        if line.startswith("+"):
            lines.append(DiffLine(type="add", content=line[1:], line_number=new_line))
            new_line += 1
        elif line.startswith("-"):
            lines.append(DiffLine(type="remove", content=line[1:], line_number=old_line))
            old_line += 1
        elif line.startswith(" "):
            lines.append(DiffLine(type="context", content=line[1:]))
            old_line += 1
            new_line += 1
        # anything else ("\ No newline at end of file") is noise
    return lines


def capture_unified_diff(project_dir: str, start_commit: str, file_paths: list[str]) -> dict[str, str]:
    """Raw diff per relative path, start commit to working tree, falling back to HEAD."""
    diffs: dict[str, str] = {}
    for path in file_paths:
        relative = to_relative_path(path, project_dir)
        for args in (
            ["diff", "-U3", start_commit, "--", relative],
            ["diff", "-U3", start_commit, "HEAD", "--", relative],
        ):
            output = (run_git(args, project_dir) or "").strip()
            if output:
                diffs[relative] = output
                break
    return diffs


def _content_lines(text: str) -> frozenset[str]:
    return frozenset(line.strip() for line in text.split("\n") if line.strip())


def build_agent_edit_index(
    events: list[StoredEvent],
    edit_chains: EditChainsResult,
    project_dir: str,
) -> dict[str, list[AgentEditEntry]]:
    """Successful Edit/Write content per relative path, tagged by agent."""
    failed_ids = {e.tool_use_id for e in events if e.event == "PostToolUseFailure" and e.tool_use_id}
    calls = {e.tool_use_id: e for e in events if e.event == "PreToolUse" and e.tool_use_id}

    index: dict[str, list[AgentEditEntry]] = {}
    for chain in edit_chains.chains:
        relative = to_relative_path(chain.file_path, project_dir)
        agent_name = chain.agent_name or "session"
        for step in chain.steps:
            if step.tool_name not in ("Edit", "Write") or step.tool_use_id in failed_ids:
                continue
            call = calls.get(step.tool_use_id)
            if call is None:
                continue
            tool_input = call.tool_input
            old_string = tool_input.get("old_string")
            new_string = tool_input.get("new_string")
            if not isinstance(new_string, str):
                new_string = tool_input.get("content")
            index.setdefault(relative, []).append(
                AgentEditEntry(
                    agent_name=agent_name,
                    tool_use_id=step.tool_use_id,
                    new_string_lines=_content_lines(new_string if isinstance(new_string, str) else ""),
                    old_string_lines=_content_lines(old_string if isinstance(old_string, str) else ""),
                    t=step.t,
                )
            )
    return index


def attribute_diff_lines(diff_lines: list[DiffLine], edit_index: list[AgentEditEntry]) -> list[DiffLine]:
    attributed: list[DiffLine] = []
    for line in diff_lines:
        trimmed = line.content.strip()
        if line.type == "context" or not trimmed:
            attributed.append(line)
            continue
        if line.type == "add":
            matches = [entry for entry in edit_index if trimmed in entry.new_string_lines]
        else:
            matches = [entry for entry in edit_index if trimmed in entry.old_string_lines]
        if not matches:
            attributed.append(line)
            continue
        best = matches[0]
        for entry in matches[1:]:
            if entry.t > best.t:
                best = entry
        attributed.append(line.model_copy(update={"agent_name": best.agent_name}))
    return attributed


def _entries_for_path(index: dict[str, list[AgentEditEntry]], relative: str) -> list[AgentEditEntry]:
    if relative in index:
        return index[relative]
    for key, entries in index.items():
        if key.endswith(relative) or relative.endswith(key):
            return entries
    return []


def extract_diff_attribution(
    project_dir: str,
    events: list[StoredEvent],
    edit_chains: EditChainsResult,
    diff_provider: DiffProvider = capture_unified_diff,
    agent_events: Optional[list[StoredEvent]] = None,
) -> list[FileDiffAttribution]:
    """Per-line authorship of the net diff since the session started.

    ``agent_events`` are the hook or transcript events of descendant agents,
    so their chain steps can be matched to the edit content they wrote.
    """
    start_commit = get_start_commit(events)
    if start_commit is None or not edit_chains.chains:
        return []

    paths = list(dict.fromkeys(chain.file_path for chain in edit_chains.chains))
    diffs = diff_provider(project_dir, start_commit, paths)
    if not diffs:
        return []

    index = build_agent_edit_index([*events, *(agent_events or [])], edit_chains, project_dir)
    results: list[FileDiffAttribution] = []
    for relative, raw_diff in diffs.items():
        parsed = parse_unified_diff(raw_diff)
        if not parsed:
            continue
        lines = attribute_diff_lines(parsed, _entries_for_path(index, relative))
        results.append(
            FileDiffAttribution(
                file_path=relative,
                lines=lines,
                total_additions=sum(1 for line in lines if line.type == "add"),
                total_deletions=sum(1 for line in lines if line.type == "remove"),
            )
        )
    return results
