"""Detect failure/retry/struggle patterns in a session's tool events."""
from __future__ import annotations

from typing import Optional

from clens.models import BacktrackResult, StoredEvent

RETRY_LOOKAHEAD = 9
STRUGGLE_MIN_EDITS = 4
STRUGGLE_WINDOW_MS = 5 * 60 * 1000
LOOP_MAX_CHAIN = 50
LOOP_MAX_GAP_MS = 5 * 60 * 1000
LOOP_MIN_ATTEMPTS = 3

_ERROR_PREVIEW_CHARS = 500
_COMMAND_PREVIEW_CHARS = 300


def _error_message(event: StoredEvent) -> Optional[str]:
    error = event.data.get("error")
    return error[:_ERROR_PREVIEW_CHARS] if isinstance(error, str) else None


def _command(event: StoredEvent) -> Optional[str]:
    command = event.tool_input.get("command")
    return command[:_COMMAND_PREVIEW_CHARS] if isinstance(command, str) else None


def _failure_retries(events: list[StoredEvent]) -> list[BacktrackResult]:
    retries: list[BacktrackResult] = []
    for i, fail in enumerate(events):
        if fail.event != "PostToolUseFailure" or fail.is_interrupt or not fail.tool_name:
            continue
        window = events[i + 1:i + 1 + RETRY_LOOKAHEAD]
        retry = next(
            (e for e in window if e.event == "PreToolUse" and e.tool_name == fail.tool_name),
            None,
        )
        if retry is None:
            continue
        retries.append(
            BacktrackResult(
                type="failure_retry",
                tool_name=fail.tool_name,
                file_path=fail.file_path,
                attempts=2,
                start_t=fail.t,
                end_t=retry.t,
                tool_use_ids=[fail.tool_use_id or "", retry.tool_use_id or ""],
                error_message=_error_message(fail),
                command=_command(fail),
            )
        )
    return retries


def _iteration_struggles(events: list[StoredEvent]) -> list[BacktrackResult]:
    edits_by_file: dict[str, list[tuple[int, str]]] = {}
    for event in events:
        if event.event != "PreToolUse" or event.tool_name not in ("Edit", "Write"):
            continue
        if not event.file_path:
            continue
        edits_by_file.setdefault(event.file_path, []).append((event.t, event.tool_use_id or ""))

    struggles: list[BacktrackResult] = []
    for file_path, edits in edits_by_file.items():
        for start_t, _ in edits[:max(0, len(edits) - (STRUGGLE_MIN_EDITS - 1))]:
            window = [e for e in edits if start_t <= e[0] <= start_t + STRUGGLE_WINDOW_MS]
            if len(window) < STRUGGLE_MIN_EDITS:
                continue
            struggles.append(
                BacktrackResult(
                    type="iteration_struggle",
                    tool_name="Edit",
                    file_path=file_path,
                    attempts=len(window),
                    start_t=window[0][0],
                    end_t=window[-1][0],
                    tool_use_ids=[tool_use_id for _, tool_use_id in window],
                )
            )
            break
    return struggles


def _debugging_loops(events: list[StoredEvent]) -> list[BacktrackResult]:
    bash_entries = [
        (index, event)
        for index, event in enumerate(events)
        if event.event in ("PreToolUse", "PostToolUseFailure") and event.tool_name == "Bash"
    ]

    loops: list[BacktrackResult] = []
    for position, (start_index, fail) in enumerate(bash_entries):
        if fail.event != "PostToolUseFailure" or fail.is_interrupt:
            continue

        chain: list[StoredEvent] = []
        last_t = fail.t
        last_index = start_index
        for index, entry in bash_entries[position + 1:]:
            if len(chain) >= LOOP_MAX_CHAIN:
                break
            if entry.t - last_t > LOOP_MAX_GAP_MS:
                break
            # a non-Bash tool call in between means the agent moved on
            if any(
                e.event == "PreToolUse" and e.tool_name != "Bash"
                for e in events[last_index + 1:index]
            ):
                break
            if entry.event == "PreToolUse":
                chain.append(entry)
            last_t = entry.t
            last_index = index

        attempts = [fail.tool_use_id or ""] + [e.tool_use_id or "" for e in chain]
        if len(attempts) < LOOP_MIN_ATTEMPTS:
            continue
        loops.append(
            BacktrackResult(
                type="debugging_loop",
                tool_name="Bash",
                attempts=len(attempts),
                start_t=fail.t,
                end_t=chain[-1].t,
                tool_use_ids=attempts,
                error_message=_error_message(fail),
                command=_command(fail),
            )
        )
    return loops


def detect_backtracks(events: list[StoredEvent]) -> list[BacktrackResult]:
    """Retries, then struggles, then debugging loops.

    A loop whose follow-up calls all belong to an earlier loop is dropped, and
    retries or struggles fully covered by a loop are dropped.
    """
    retries = _failure_retries(events)
    struggles = _iteration_struggles(events)
    loops = _debugging_loops(events)

    loop_sets = [set(loop.tool_use_ids) for loop in loops]
    kept_loops = [
        loop
        for idx, loop in enumerate(loops)
        if not any(all(i in loop_sets[other] for i in loop.tool_use_ids[1:]) for other in range(idx))
    ]

    loop_ids = {i for loop in kept_loops for i in loop.tool_use_ids}
    kept_retries = [r for r in retries if not all(i in loop_ids for i in r.tool_use_ids)]
    kept_struggles = [s for s in struggles if not all(i in loop_ids for i in s.tool_use_ids)]
    return kept_retries + kept_struggles + kept_loops
