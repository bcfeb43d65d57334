"""Reconstruct the ordered edit history of each file touched in a session."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from clens.models import (
    BacktrackResult,
    EditChain,
    EditChainsResult,
    EditStep,
    StoredEvent,
    TranscriptReasoning,
)

_STRING_PREVIEW_CHARS = 200
_THINKING_PREVIEW_CHARS = 300
_RECOVERY_READ_WINDOW = 3

_EDIT_TOOLS = ("Edit", "Write")


@dataclass(frozen=True)
class EditLookups:
    reasoning_by_id: dict[str, TranscriptReasoning]
    backtrack_by_id: dict[str, BacktrackResult]
    failed_ids: set[str]
    failure_by_id: dict[str, StoredEvent]


def _preview(value: Any, limit: int) -> Optional[str]:
    return value[:limit] if isinstance(value, str) else None


def _line_count(value: Any) -> Optional[int]:
    return len(value.split("\n")) if isinstance(value, str) else None


def _is_edit_event(event: StoredEvent) -> bool:
    return event.event in ("PreToolUse", "PostToolUseFailure") and event.tool_name in _EDIT_TOOLS


def build_edit_lookups(
    events: list[StoredEvent],
    reasoning: list[TranscriptReasoning],
    backtracks: list[BacktrackResult],
) -> EditLookups:
    reasoning_by_id = {r.tool_use_id: r for r in reasoning if r.tool_use_id is not None}
    backtrack_by_id = {i: bt for bt in backtracks for i in bt.tool_use_ids}
    failure_by_id = {
        e.tool_use_id: e
        for e in events
        if e.event == "PostToolUseFailure" and e.tool_use_id
    }
    return EditLookups(reasoning_by_id, backtrack_by_id, set(failure_by_id), failure_by_id)


def group_edit_events(events: list[StoredEvent]) -> list[tuple[str, list[StoredEvent]]]:
    """Edit/Write/Read events per file, dropping read-only files and unrelated reads.

    A Read is kept when it sits between two edits of the same file, or within
    three events after a failure on that file (a recovery read).
    """
    grouped: dict[str, list[StoredEvent]] = {}
    for event in events:
        if not event.tool_name:
            continue
        relevant = (
            (event.event == "PreToolUse" and event.tool_name in (*_EDIT_TOOLS, "Read"))
            or (event.event == "PostToolUseFailure" and event.tool_name in _EDIT_TOOLS)
        )
        if relevant and event.file_path:
            grouped.setdefault(event.file_path, []).append(event)

    result: list[tuple[str, list[StoredEvent]]] = []
    for file_path, file_events in grouped.items():
        if not any(_is_edit_event(e) for e in file_events):
            continue
        kept: list[StoredEvent] = []
        for idx, event in enumerate(file_events):
            if event.event != "PreToolUse" or event.tool_name != "Read":
                kept.append(event)
                continue
            between_edits = (
                any(_is_edit_event(e) for e in file_events[:idx])
                and any(_is_edit_event(e) for e in file_events[idx + 1:])
            )
            after_failure = any(
                e.event == "PostToolUseFailure"
                for e in file_events[max(0, idx - _RECOVERY_READ_WINDOW):idx]
            )
            if between_edits or after_failure:
                kept.append(event)
        result.append((file_path, kept))
    return result


def _build_step(event: StoredEvent, lookups: EditLookups) -> EditStep:
    tool_use_id = event.tool_use_id or ""
    tool_input = event.tool_input
    if event.tool_name == "Read":
        outcome = "info"
    elif tool_use_id in lookups.failed_ids:
        outcome = "failure"
    else:
        outcome = "success"

    failure = lookups.failure_by_id.get(tool_use_id)
    reasoning = lookups.reasoning_by_id.get(tool_use_id)
    backtrack = lookups.backtrack_by_id.get(tool_use_id)
    return EditStep(
        tool_use_id=tool_use_id,
        t=event.t,
        tool_name=event.tool_name or "",
        outcome=outcome,
        old_string_preview=_preview(tool_input.get("old_string"), _STRING_PREVIEW_CHARS),
        new_string_preview=_preview(tool_input.get("new_string"), _STRING_PREVIEW_CHARS),
        old_string_lines=_line_count(tool_input.get("old_string")),
        new_string_lines=_line_count(tool_input.get("new_string")),
        content_lines=_line_count(tool_input.get("content")),
        error_preview=_preview(failure.data.get("error"), _STRING_PREVIEW_CHARS) if failure else None,
        thinking_preview=_preview(reasoning.thinking, _THINKING_PREVIEW_CHARS) if reasoning else None,
        thinking_intent=reasoning.intent_hint if reasoning else None,
        backtrack_type=backtrack.type if backtrack else None,
    )


def _build_chain(file_path: str, file_events: list[StoredEvent], lookups: EditLookups) -> EditChain:
    steps = [_build_step(e, lookups) for e in file_events if e.event == "PreToolUse"]
    edit_steps = [s for s in steps if s.tool_name in _EDIT_TOOLS]
    return EditChain(
        file_path=file_path,
        steps=steps,
        total_edits=len(edit_steps),
        total_failures=sum(1 for s in steps if s.outcome == "failure"),
        total_reads=sum(1 for s in steps if s.tool_name == "Read"),
        effort_ms=steps[-1].t - steps[0].t if len(steps) > 1 else 0,
        has_backtrack=any(s.backtrack_type is not None for s in steps),
        surviving_edit_ids=[s.tool_use_id for s in edit_steps if s.outcome == "success"],
        abandoned_edit_ids=[s.tool_use_id for s in edit_steps if s.outcome == "failure"],
    )


def extract_edit_chains(
    events: list[StoredEvent],
    reasoning: Optional[list[TranscriptReasoning]] = None,
    backtracks: Optional[list[BacktrackResult]] = None,
) -> EditChainsResult:
    lookups = build_edit_lookups(events, reasoning or [], backtracks or [])
    chains = [_build_chain(path, file_events, lookups) for path, file_events in group_edit_events(events)]
    chains.sort(key=lambda c: c.total_failures + c.total_edits, reverse=True)
    return EditChainsResult(chains=chains)
