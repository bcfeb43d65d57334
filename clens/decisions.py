"""Segment a session into phases and surface decision points.

Two phase models exist. Solo sessions split on long timing gaps (or shorter
gaps where the dominant tool changes); sessions with task links follow the
team task lifecycle (Planning → Build → Validation). Timing gaps, tool
pivots, phase boundaries and agent/task lifecycle links are merged into one
time-sorted decision list.
"""
from __future__ import annotations

from collections import Counter
from typing import Optional

from clens.models import (
    AgentSpawnDecision,
    DecisionPoint,
    LinkEvent,
    PhaseBoundaryDecision,
    PhaseInfo,
    SpawnLink,
    StoredEvent,
    TaskCompleteLink,
    TaskCompletionDecision,
    TaskDelegationDecision,
    TaskLink,
    TimingGapDecision,
    ToolPivotDecision,
)

TIMING_GAP_THRESHOLD_MS = 30_000
SESSION_PAUSE_THRESHOLD_MS = 300_000
NOISE_THRESHOLD_MS = 60_000
PHASE_BOUNDARY_GAP_MS = 300_000
PHASE_TOOL_SHIFT_GAP_MS = 120_000
LOOKAHEAD_WINDOW = 10

_READ_TOOLS = {"Read", "Glob", "Grep"}
_EDIT_TOOLS = {"Edit", "Write"}
_RESEARCH_TOOLS = {"WebSearch", "WebFetch"}


def _tool_counts(events: list[StoredEvent]) -> Counter[str]:
    return Counter(event.tool_name for event in events if event.tool_name)


def _top_tool(events: list[StoredEvent], start: int, end: int) -> Optional[str]:
    counts = _tool_counts(events[max(0, start):min(len(events), end)])
    best: Optional[str] = None
    for tool, count in counts.items():
        # strict ">" keeps the first-seen tool on ties
        if best is None or count > counts[best]:
            best = tool
    return best


def _phase_name(tool: Optional[str], has_failures: bool) -> str:
    if not tool:
        return "General"
    if tool in _READ_TOOLS:
        return "File Exploration"
    if tool in _EDIT_TOOLS:
        return "Code Modification"
    if tool in _RESEARCH_TOOLS:
        return "Research"
    if tool == "Bash" and has_failures:
        return "Debugging"
    return "General"


# ── Timing gaps ─────────────────────────────────────────────────────

def _classify_gap(gap_ms: int, gap_start: int, gap_end: int, prompt_times: list[int]) -> str:
    if any(gap_start < t <= gap_end for t in prompt_times):
        return "user_idle"
    if gap_ms > SESSION_PAUSE_THRESHOLD_MS:
        return "session_pause"
    return "agent_thinking"


def extract_raw_timing_gaps(events: list[StoredEvent]) -> list[TimingGapDecision]:
    """Every gap over 30s between adjacent events, classified, without noise filtering."""
    if len(events) < 2:
        return []
    prompt_times = [event.t for event in events if event.event == "UserPromptSubmit"]
    gaps: list[TimingGapDecision] = []
    for prev, event in zip(events, events[1:]):
        gap_ms = event.t - prev.t
        if gap_ms <= TIMING_GAP_THRESHOLD_MS:
            continue
        gaps.append(
            TimingGapDecision(
                t=event.t,
                gap_ms=gap_ms,
                classification=_classify_gap(gap_ms, prev.t, event.t, prompt_times),
            )
        )
    return gaps


def extract_timing_gaps(events: list[StoredEvent]) -> list[TimingGapDecision]:
    """Raw gaps minus sub-minute noise; session pauses are never suppressed."""
    return [
        gap
        for gap in extract_raw_timing_gaps(events)
        if gap.gap_ms >= NOISE_THRESHOLD_MS or gap.classification == "session_pause"
    ]


# ── Tool pivots ─────────────────────────────────────────────────────

def extract_tool_pivots(events: list[StoredEvent]) -> list[ToolPivotDecision]:
    pivots: list[ToolPivotDecision] = []
    for idx, event in enumerate(events):
        if event.event != "PostToolUseFailure" or not event.tool_name:
            continue
        window = events[idx + 1:idx + 1 + LOOKAHEAD_WINDOW]
        next_call = next((e for e in window if e.event == "PreToolUse" and e.tool_name), None)
        if next_call is None or next_call.tool_name == event.tool_name:
            continue
        pivots.append(
            ToolPivotDecision(
                t=next_call.t,
                from_tool=event.tool_name,
                to_tool=next_call.tool_name,
                after_failure=True,
            )
        )
    return pivots


# ── Phases ──────────────────────────────────────────────────────────

def _is_phase_boundary(events: list[StoredEvent], i: int) -> bool:
    if i == 0:
        return False
    gap_ms = events[i].t - events[i - 1].t
    if gap_ms > PHASE_BOUNDARY_GAP_MS:
        return True
    if gap_ms > PHASE_TOOL_SHIFT_GAP_MS:
        before = _top_tool(events, i - LOOKAHEAD_WINDOW, i)
        after = _top_tool(events, i, i + LOOKAHEAD_WINDOW)
        return before is not None and after is not None and before != after
    return False


def _build_phase(phase_events: list[StoredEvent]) -> PhaseInfo:
    # most_common() is stable for equal counts
    tool_types = [tool for tool, _ in _tool_counts(phase_events).most_common()]
    has_failures = any(e.event == "PostToolUseFailure" for e in phase_events)
    name = _phase_name(tool_types[0] if tool_types else None, has_failures)
    return PhaseInfo(
        name=name,
        start_t=phase_events[0].t if phase_events else 0,
        end_t=phase_events[-1].t if phase_events else 0,
        tool_types=tool_types,
        description=f"{name} phase with {len(phase_events)} events",
    )


def _unique_tools(events: list[StoredEvent]) -> list[str]:
    return list(dict.fromkeys(event.tool_name for event in events if event.tool_name))


def has_task_links(links: list[LinkEvent]) -> bool:
    return any(isinstance(link, TaskLink) for link in links)


def build_team_phases(events: list[StoredEvent], links: list[LinkEvent]) -> list[PhaseInfo]:
    """Planning → Build → Validation phases from the task lifecycle.

    Every phase is clamped into the session range because assignments and
    validator spawns recorded by other processes can precede the nominal
    phase start.
    """
    session_start = events[0].t if events else 0
    session_end = events[-1].t if events else 0

    task_links = [
        link for link in links
        if isinstance(link, TaskLink) and session_start <= link.t <= session_end
    ]
    first_assignment = next((link for link in task_links if link.action == "assign"), None)
    validator_spawn_times = [
        link.t for link in links
        if isinstance(link, SpawnLink) and link.agent_type == "validator"
    ]

    phases: list[PhaseInfo] = []

    planning_end = first_assignment.t if first_assignment else session_start
    if planning_end > session_start:
        planning_events = [e for e in events if session_start <= e.t < planning_end]
        phases.append(
            PhaseInfo(
                name="Planning",
                start_t=session_start,
                end_t=planning_end,
                tool_types=_unique_tools(planning_events),
                description=f"Planning phase with {len(planning_events)} events",
            )
        )

    build_start = first_assignment.t if first_assignment else session_start
    raw_build_end = min([session_end, *validator_spawn_times])
    build_end = min(max(raw_build_end, build_start), session_end)
    build_events = [e for e in events if build_start <= e.t < build_end]
    phases.append(
        PhaseInfo(
            name="Build",
            start_t=build_start,
            end_t=build_end,
            tool_types=_unique_tools(build_events),
            description=f"Build phase with {len(build_events)} events",
        )
    )

    if validator_spawn_times:
        validation_events = [e for e in events if e.t >= build_end]
        phases.append(
            PhaseInfo(
                name="Validation",
                start_t=build_end,
                end_t=session_end,
                tool_types=_unique_tools(validation_events),
                description=f"Validation phase with {len(validation_events)} events",
            )
        )

    for phase in phases:
        phase.start_t = max(phase.start_t, session_start)
        phase.end_t = max(min(phase.end_t, session_end), phase.start_t)
    return phases


def extract_phases(events: list[StoredEvent], links: Optional[list[LinkEvent]] = None) -> list[PhaseInfo]:
    if not events:
        return []
    if links and has_task_links(links):
        return build_team_phases(events, links)

    boundaries = [0] + [i for i in range(len(events)) if _is_phase_boundary(events, i)]
    ends = boundaries[1:] + [len(events)]
    return [_build_phase(events[start:end]) for start, end in zip(boundaries, ends)]


def extract_phase_boundaries(phases: list[PhaseInfo]) -> list[PhaseBoundaryDecision]:
    return [
        PhaseBoundaryDecision(t=phase.start_t, phase_name=phase.name, phase_index=index)
        for index, phase in enumerate(phases[1:], start=1)
    ]


# ── Agent decisions ─────────────────────────────────────────────────

def extract_agent_decisions(links: list[LinkEvent]) -> list[DecisionPoint]:
    spawns: list[DecisionPoint] = []
    delegations: list[DecisionPoint] = []
    completions: list[DecisionPoint] = []
    for link in links:
        if isinstance(link, SpawnLink):
            spawns.append(
                AgentSpawnDecision(
                    t=link.t,
                    agent_id=link.agent_id,
                    agent_name=link.agent_name or link.agent_type,
                    agent_type=link.agent_type,
                    parent_session=link.parent_session,
                )
            )
        elif isinstance(link, TaskLink) and link.action == "assign":
            delegations.append(
                TaskDelegationDecision(
                    t=link.t,
                    task_id=link.task_id,
                    agent_name=link.owner or link.agent or "unknown",
                    subject=link.subject or None,
                )
            )
        elif isinstance(link, TaskCompleteLink):
            completions.append(
                TaskCompletionDecision(
                    t=link.t,
                    task_id=link.task_id,
                    agent_name=link.agent,
                    subject=link.subject or None,
                )
            )
    return spawns + delegations + completions


def extract_decisions(events: list[StoredEvent], links: Optional[list[LinkEvent]] = None) -> list[DecisionPoint]:
    """All decision kinds merged and sorted by time; ties keep their relative order."""
    decisions: list[DecisionPoint] = []
    decisions.extend(extract_timing_gaps(events))
    decisions.extend(extract_tool_pivots(events))
    decisions.extend(extract_phase_boundaries(extract_phases(events, links)))
    if links:
        decisions.extend(extract_agent_decisions(links))
    return sorted(decisions, key=lambda decision: decision.t)
