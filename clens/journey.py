"""Chain related sessions into journeys and classify their shape.

A session started with ``source`` ``clear`` or ``compact`` within a few
seconds of the previous session ending, in the same working directory,
continues that session's journey.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional, Union

from clens.errors import JourneyLookupError, SessionNotFoundError
from clens.models import (
    CumulativeStats,
    Journey,
    JourneyPhase,
    PhaseTransition,
    SessionChainInput,
    StatsResult,
    StoredEvent,
)
from clens.plan_drift import compute_plan_drift
from clens.store import list_sessions, read_distilled, read_session_events

logger = logging.getLogger("clens.journey")

CHAIN_GAP_THRESHOLD_MS = 5000
CHAINABLE_SOURCES = ("clear", "compact")
EXPLORATION_RATIO = 3.0
ORCHESTRATION_TASK_CREATES = 3
ABORT_MAX_DURATION_MS = 30_000
ABORT_MAX_EVENTS = 15
PROMPT_PREVIEW_CHARS = 200
PROMPT_SHIFT_CHARS = 80
HEAD_EVENT_COUNT = 10

_SPEC_REF_PATTERN = re.compile(r"specs/\S+\.md")
_PLAN_COMMAND_PATTERN = re.compile(r"/plan(?:\b|$)")


# ── Pure composition ────────────────────────────────────────────────

def chain_sessions(sessions: list[SessionChainInput]) -> list[list[str]]:
    """Group session ids into chains, ordered by start time."""
    if not sessions:
        return []
    ordered = sorted(sessions, key=lambda s: s.start_time)
    groups: list[list[str]] = []
    current = [ordered[0].session_id]
    prev = ordered[0]
    for session in ordered[1:]:
        gap = session.start_time - (prev.end_time if prev.end_time is not None else prev.start_time)
        chainable = (
            session.source in CHAINABLE_SOURCES
            and gap <= CHAIN_GAP_THRESHOLD_MS
            and prev.cwd is not None
            and session.cwd is not None
            and prev.cwd == session.cwd
        )
        if chainable:
            current.append(session.session_id)
        else:
            groups.append(current)
            current = [session.session_id]
        prev = session
    groups.append(current)
    return groups


def classify_phase(session: SessionChainInput) -> tuple[str, Optional[str]]:
    """``(phase_type, spec_ref)``: slash commands first, then tool mix, then size."""
    prompt = session.first_prompt or ""
    if "/prime" in prompt:
        return "prime", None
    if "/brainstorm" in prompt:
        return "brainstorm", None
    if "/plan_w_team" in prompt or _PLAN_COMMAND_PATTERN.search(prompt):
        return "plan", None
    if "/build" in prompt:
        match = _SPEC_REF_PATTERN.search(prompt)
        return "build", match.group(0) if match else None
    if "/review" in prompt:
        return "review", None
    if "/test" in prompt:
        return "test", None
    if "commit" in prompt:
        return "commit", None

    tools = session.tools_by_name
    if tools:
        reads = tools.get("Read", 0) + tools.get("Glob", 0) + tools.get("Grep", 0)
        writes = tools.get("Edit", 0) + tools.get("Write", 0)
        if reads / max(writes, 1) > EXPLORATION_RATIO:
            return "exploration", None
        if tools.get("TaskCreate", 0) > ORCHESTRATION_TASK_CREATES:
            return "orchestrated_build", None

    if session.duration_ms < ABORT_MAX_DURATION_MS and session.event_count < ABORT_MAX_EVENTS:
        return "abort", None
    return "freeform", None


def build_transition(from_session: SessionChainInput, to_session: SessionChainInput) -> PhaseTransition:
    prev_end = from_session.end_time if from_session.end_time is not None else from_session.start_time
    return PhaseTransition(
        from_session=from_session.session_id,
        to_session=to_session.session_id,
        gap_ms=to_session.start_time - prev_end,
        trigger="compact_auto" if to_session.source == "compact" else "clear",
        git_changed=(
            from_session.git_commit is not None
            and to_session.git_commit is not None
            and from_session.git_commit != to_session.git_commit
        ),
        prompt_shift=(to_session.first_prompt or "")[:PROMPT_SHIFT_CHARS],
    )


def classify_lifecycle(phases: list[JourneyPhase]) -> str:
    """Derived from the set of phase types, not their order."""
    if len(phases) == 1:
        return "single-session"
    types = {p.phase_type for p in phases}
    if {"prime", "plan", "build"} <= types:
        return "prime-plan-build"
    if {"prime", "build"} <= types:
        return "prime-build"
    if "build" in types:
        return "build-only"
    return "ad-hoc"


def compute_cumulative_stats(phases: list[JourneyPhase], stats_map: dict[str, StatsResult]) -> CumulativeStats:
    matched = [stats_map[p.session_id] for p in phases if p.session_id in stats_map]
    return CumulativeStats(
        total_duration_ms=sum(p.duration_ms for p in phases),
        total_events=sum(p.event_count for p in phases),
        total_tool_calls=sum(s.tool_call_count for s in matched),
        total_failures=sum(s.failure_count for s in matched),
        phase_count=len(phases),
        retry_count=sum(1 for p in phases if p.phase_type == "abort"),
    )


def _build_phase(session_id: str, session: Optional[SessionChainInput]) -> JourneyPhase:
    if session is None:
        return JourneyPhase(session_id=session_id, phase_type="freeform")
    phase_type, spec_ref = classify_phase(session)
    return JourneyPhase(
        session_id=session_id,
        phase_type=phase_type,
        prompt=session.first_prompt[:PROMPT_PREVIEW_CHARS] if session.first_prompt else None,
        spec_ref=spec_ref,
        source=session.source if session.source in CHAINABLE_SOURCES else "startup",
        duration_ms=session.duration_ms,
        event_count=session.event_count,
    )


def compose_journey(
    session_chain: list[str],
    input_map: dict[str, SessionChainInput],
    stats_map: dict[str, StatsResult],
) -> Journey:
    phases = [_build_phase(sid, input_map.get(sid)) for sid in session_chain]

    transitions = []
    for from_id, to_id in zip(session_chain, session_chain[1:]):
        from_input = input_map.get(from_id)
        to_input = input_map.get(to_id)
        if from_input is None or to_input is None:
            transitions.append(
                PhaseTransition(
                    from_session=from_id,
                    to_session=to_id,
                    gap_ms=0,
                    trigger="clear",
                    git_changed=False,
                    prompt_shift="",
                )
            )
        else:
            transitions.append(build_transition(from_input, to_input))

    return Journey(
        id=session_chain[0][:8],
        phases=phases,
        transitions=transitions,
        spec_ref=next((p.spec_ref for p in phases if p.phase_type == "build"), None),
        lifecycle_type=classify_lifecycle(phases),
        cumulative_stats=compute_cumulative_stats(phases, stats_map),
    )


# ── Project-level journeys ──────────────────────────────────────────

def _first_cwd(events: list[StoredEvent]) -> Optional[str]:
    if not events:
        return None
    cwd = events[0].data.get("cwd")
    if isinstance(cwd, str):
        return cwd
    context = events[0].context
    return context.cwd if context is not None else None


def _first_prompt(events: list[StoredEvent]) -> Optional[str]:
    for event in events:
        if event.event == "UserPromptSubmit":
            prompt = event.data.get("prompt")
            return prompt if isinstance(prompt, str) else None
    return None


def build_session_chain_inputs(project_dir: Union[str, Path]) -> list[SessionChainInput]:
    inputs: list[SessionChainInput] = []
    for session in list_sessions(project_dir):
        try:
            head = read_session_events(session.session_id, project_dir)[:HEAD_EVENT_COUNT]
        except (OSError, SessionNotFoundError) as e:
            logger.warning("Skipping session %s: %s", session.session_id, e)
            continue
        source = session.source
        if source is None and head and isinstance(head[0].data.get("source"), str):
            source = head[0].data["source"]
        distilled = read_distilled(session.session_id, project_dir)
        inputs.append(
            SessionChainInput(
                session_id=session.session_id,
                start_time=session.start_time,
                end_time=session.end_time,
                cwd=_first_cwd(head),
                source=source,
                end_reason=session.end_reason,
                event_count=session.event_count,
                duration_ms=session.duration_ms,
                git_commit=head[0].context.git_commit if head and head[0].context else None,
                first_prompt=_first_prompt(head),
                tools_by_name=distilled.stats.tools_by_name if distilled is not None else None,
            )
        )
    return inputs


def _attach_plan_drift(journey: Journey, chain: list[str], project_dir: Union[str, Path]) -> Journey:
    if not journey.spec_ref:
        return journey
    spec_path = Path(project_dir) / journey.spec_ref
    try:
        spec_content = spec_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return journey
    file_maps = []
    for sid in chain:
        distilled = read_distilled(sid, project_dir)
        if distilled is not None:
            file_maps.append(distilled.file_map)
    drift = compute_plan_drift(journey.spec_ref, spec_content, file_maps, str(project_dir))
    return journey.model_copy(update={"plan_drift": drift})


def list_journeys(project_dir: Union[str, Path]) -> list[Journey]:
    """All journeys in a project, most recently started first."""
    inputs = build_session_chain_inputs(project_dir)
    if not inputs:
        return []
    input_map = {i.session_id: i for i in inputs}

    journeys = []
    for chain in chain_sessions(inputs):
        stats_map = {}
        for sid in chain:
            distilled = read_distilled(sid, project_dir)
            if distilled is not None:
                stats_map[sid] = distilled.stats
        journey = compose_journey(chain, input_map, stats_map)
        journeys.append(_attach_plan_drift(journey, chain, project_dir))

    journeys.sort(key=lambda j: input_map[j.phases[0].session_id].start_time, reverse=True)
    return journeys


def resolve_journey_id(prefix: Optional[str], project_dir: Union[str, Path], last: bool = False) -> Journey:
    """Find one journey by id prefix, falling back to a session id prefix."""
    journeys = list_journeys(project_dir)
    if not journeys:
        raise JourneyLookupError("No journeys found; distill some sessions first")
    if last:
        return journeys[0]
    if prefix is None:
        raise JourneyLookupError("No journey id given")

    matches = [j for j in journeys if j.id.startswith(prefix)]
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        ids = ", ".join(j.id for j in matches)
        raise JourneyLookupError(f'Ambiguous journey id "{prefix}" matches {len(matches)} journeys: {ids}')

    by_session = [j for j in journeys if any(p.session_id.startswith(prefix) for p in j.phases)]
    if len(by_session) == 1:
        return by_session[0]
    if by_session:
        raise JourneyLookupError(f'Ambiguous session id "{prefix}" matches {len(by_session)} journeys')
    raise JourneyLookupError(f'No journey matching "{prefix}"')
