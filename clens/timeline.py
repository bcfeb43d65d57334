"""Merged, capped chronological timeline of a session."""
from __future__ import annotations

import math
from typing import Any, Optional

from clens import config
from clens.events import resolve_name
from clens.models import (
    AgentLifetime,
    BacktrackResult,
    LinkEvent,
    MessageLink,
    PhaseInfo,
    StoredEvent,
    TaskLink,
    TimelineEntry,
    TranscriptReasoning,
    TranscriptUserMessage,
)
from clens.team import extract_agent_lifetimes

PREVIEW_CHARS = 200
MESSAGE_SUMMARY_CHARS = 100

# Always kept when the timeline is capped; tool calls, failures and thinking are sampled.
STRUCTURAL_TYPES = frozenset({
    "phase_boundary",
    "user_prompt",
    "teammate_idle",
    "task_complete",
    "agent_spawn",
    "agent_stop",
    "task_create",
    "task_assign",
    "msg_send",
})


def _str(data: dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    return value if isinstance(value, str) else None


def _name(agent_id: str, name_map: Optional[dict[str, str]]) -> str:
    return resolve_name(agent_id, name_map) if name_map is not None else agent_id


# ── Source mappers ──────────────────────────────────────────────────

def _event_entries(events: list[StoredEvent], name_map: Optional[dict[str, str]]) -> list[TimelineEntry]:
    entries = []
    for event in events:
        data = event.data
        if event.event == "PreToolUse":
            entries.append(
                TimelineEntry(t=event.t, type="tool_call", tool_name=event.tool_name, tool_use_id=event.tool_use_id)
            )
        elif event.event == "PostToolUseFailure":
            error = _str(data, "error")
            entries.append(
                TimelineEntry(
                    t=event.t,
                    type="failure",
                    tool_name=event.tool_name,
                    tool_use_id=event.tool_use_id,
                    content_preview=error[:PREVIEW_CHARS] if error is not None else None,
                )
            )
        elif event.event == "TeammateIdle":
            teammate = _str(data, "agent_name") or _str(data, "agent_id") or "unknown"
            entries.append(
                TimelineEntry(t=event.t, type="teammate_idle", teammate_name=teammate, content_preview=f"{teammate} idle")
            )
        elif event.event == "TaskCompleted":
            subject = _str(data, "subject")
            entries.append(
                TimelineEntry(
                    t=event.t,
                    type="task_complete",
                    task_id=_str(data, "task_id"),
                    task_subject=subject,
                    content_preview=f"Task completed: {subject or 'unknown'}",
                )
            )
        elif event.event == "SubagentStart":
            agent_id = _str(data, "agent_id")
            agent_name = _str(data, "agent_name") or (
                resolve_name(agent_id, name_map) if agent_id and name_map is not None else None
            )
            label = agent_name or (agent_id[:8] if agent_id else "agent")
            entries.append(
                TimelineEntry(
                    t=event.t,
                    type="agent_spawn",
                    agent_id=agent_id,
                    agent_name=agent_name,
                    content_preview=f"Spawned {label} ({_str(data, 'agent_type') or 'unknown'})",
                )
            )
        elif event.event == "SubagentStop":
            agent_id = _str(data, "agent_id")
            agent_name = resolve_name(agent_id, name_map) if agent_id and name_map is not None else None
            label = agent_name or (agent_id[:8] if agent_id else "agent")
            entries.append(
                TimelineEntry(
                    t=event.t,
                    type="agent_stop",
                    agent_id=agent_id,
                    agent_name=agent_name,
                    content_preview=f"Stopped {label}",
                )
            )
    return entries


def _link_entries(links: list[LinkEvent], name_map: Optional[dict[str, str]]) -> list[TimelineEntry]:
    entries = []
    for link in links:
        if isinstance(link, TaskLink) and link.action == "create":
            entries.append(
                TimelineEntry(
                    t=link.t,
                    type="task_create",
                    agent_name=_name(link.agent, name_map or {}) if link.agent else None,
                    content_preview=f"Task created: {link.subject or link.task_id}",
                )
            )
        elif isinstance(link, TaskLink) and link.action == "assign":
            entries.append(
                TimelineEntry(
                    t=link.t,
                    type="task_assign",
                    agent_name=link.owner,
                    content_preview=f"Task assigned to {link.owner or '?'}: {link.subject or link.task_id}",
                )
            )
    for link in links:
        if not isinstance(link, MessageLink):
            continue
        from_name = _name(link.from_, name_map)
        to_name = _name(link.to, name_map)
        summary = f": {link.summary[:MESSAGE_SUMMARY_CHARS]}" if link.summary else ""
        entries.append(
            TimelineEntry(
                t=link.t,
                type="msg_send",
                agent_name=from_name,
                msg_from=from_name,
                msg_to=to_name,
                content_preview=f"{from_name} -> {to_name}{summary}",
            )
        )
    return entries


# ── Capping and annotation ──────────────────────────────────────────

def cap_entries(entries: list[TimelineEntry], cap: int = config.TIMELINE_CAP) -> list[TimelineEntry]:
    """Keep every structural entry and evenly sample the rest into the remaining slots."""
    if len(entries) <= cap:
        return entries
    structural = [e for e in entries if e.type in STRUCTURAL_TYPES]
    sampled_pool = [e for e in entries if e.type not in STRUCTURAL_TYPES]
    slots = max(0, cap - len(structural))
    rate = max(1, math.ceil(len(sampled_pool) / slots)) if slots > 0 else 1
    sampled = [e for i, e in enumerate(sampled_pool) if i % rate == 0][:slots]
    return sorted([*structural, *sampled], key=lambda e: e.t)


def _annotate_owner(entry: TimelineEntry, lifetimes: list[AgentLifetime]) -> TimelineEntry:
    if entry.agent_id or entry.agent_name:
        return entry
    match = next((lt for lt in lifetimes if lt.start_t <= entry.t <= lt.end_t), None)
    if match is None:
        return entry
    return entry.model_copy(update={"agent_id": match.agent_id, "agent_name": match.agent_name})


def _assign_phase(entry: TimelineEntry, phases: list[PhaseInfo]) -> TimelineEntry:
    if entry.phase_index is not None:
        return entry
    index = None
    for i, phase in enumerate(phases):
        if phase.start_t <= entry.t <= phase.end_t:
            index = i
    return entry.model_copy(update={"phase_index": index}) if index is not None else entry


def build_timeline(
    events: list[StoredEvent],
    reasoning: list[TranscriptReasoning],
    user_messages: list[TranscriptUserMessage],
    backtracks: list[BacktrackResult],
    phases: list[PhaseInfo],
    links: Optional[list[LinkEvent]] = None,
    name_map: Optional[dict[str, str]] = None,
) -> list[TimelineEntry]:
    entries = _event_entries(events, name_map)
    entries.extend(
        TimelineEntry(
            t=r.t,
            type="thinking",
            content_preview=r.thinking[:PREVIEW_CHARS],
            tool_use_id=r.tool_use_id,
            tool_name=r.tool_name,
        )
        for r in reasoning
    )
    entries.extend(
        TimelineEntry(t=m.t, type="user_prompt", content_preview=m.content[:PREVIEW_CHARS])
        for m in user_messages
        if m.message_type == "prompt"
    )
    entries.extend(
        TimelineEntry(
            t=b.start_t,
            type="backtrack",
            tool_name=b.tool_name,
            content_preview=f"{b.type}: {b.attempts} attempts",
        )
        for b in backtracks
    )
    entries.extend(
        TimelineEntry(t=p.start_t, type="phase_boundary", content_preview=p.name, phase_index=i)
        for i, p in enumerate(phases)
    )
    if links:
        entries.extend(_link_entries(links, name_map))

    entries.sort(key=lambda e: e.t)
    capped = cap_entries(entries)

    lifetimes = extract_agent_lifetimes(links, name_map) if links else []
    if lifetimes:
        capped = [_annotate_owner(e, lifetimes) for e in capped]
    return [_assign_phase(e, phases) for e in capped]
