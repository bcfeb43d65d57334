"""Narrative summary and key metrics for a distilled session."""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Optional

from clens.durations import format_duration
from clens.models import (
    ActiveDurationResult,
    AgentNode,
    AgentWorkload,
    BacktrackResult,
    DistilledSummary,
    EditChainsResult,
    FileMapEntry,
    KeyMetrics,
    PhaseInfo,
    StatsResult,
    StoredEvent,
    TeamMetrics,
    TopError,
    TranscriptReasoning,
)

TOP_TOOLS = 3
TOP_ERRORS = 5
TOP_CONTRIBUTORS = 3
ERROR_SAMPLE_CHARS = 200


@dataclass
class SummaryInputs:
    stats: StatsResult
    backtracks: list[BacktrackResult]
    phases: list[PhaseInfo]
    file_map: list[FileMapEntry]
    reasoning: list[TranscriptReasoning]
    team_metrics: Optional[TeamMetrics] = None
    active_duration: Optional[ActiveDurationResult] = None
    agents: Optional[list[AgentNode]] = None
    events: Optional[list[StoredEvent]] = None
    edit_chains: Optional[EditChainsResult] = None


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def _files_modified(entries: list[FileMapEntry]) -> int:
    return sum(1 for f in entries if f.edits > 0 or f.writes > 0)


def _top_tools(tools_by_name: dict[str, int], n: int) -> list[str]:
    return [name for name, _ in sorted(tools_by_name.items(), key=lambda kv: kv[1], reverse=True)[:n]]


def _backtrack_types(backtracks: list[BacktrackResult]) -> str:
    counts = Counter(b.type for b in backtracks)
    return ", ".join(f"{count} {kind.replace('_', ' ')}" for kind, count in counts.items())


def _dominant_intent(reasoning: list[TranscriptReasoning]) -> str:
    counts = Counter(r.intent_hint or "general" for r in reasoning)
    if not counts:
        return "general"
    # first-seen intent wins ties
    best, best_count = next(iter(counts.items()))
    for intent, count in counts.items():
        if count > best_count:
            best, best_count = intent, count
    return best


def _abandoned_edits(edit_chains: EditChainsResult) -> int:
    return sum(len(c.abandoned_edit_ids) for c in edit_chains.chains)


# ── Team narrative ──────────────────────────────────────────────────

def _utilization_sentence(team_metrics: TeamMetrics) -> str:
    if team_metrics.utilization_ratio is None:
        return ""
    return f" Average utilization: {round(team_metrics.utilization_ratio * 100)}%."


def build_team_sentence(
    team_metrics: TeamMetrics,
    agents: Optional[list[AgentNode]] = None,
    stats: Optional[StatsResult] = None,
) -> str:
    if not agents:
        return (
            f" Team session with {team_metrics.agent_count} agents."
            f" {team_metrics.task_completed_count} tasks completed across"
            f" {team_metrics.idle_event_count} idle transitions."
            f"{_utilization_sentence(team_metrics)}"
        )

    type_counts = Counter(a.agent_type or "unknown" for a in agents)
    type_breakdown = ", ".join(f"{count} {kind}" for kind, count in type_counts.most_common())
    contributors = ", ".join(
        f"{a.agent_name or a.agent_type} ({a.session_id[:8]})"
        for a in sorted(agents, key=lambda a: a.tool_call_count, reverse=True)[:TOP_CONTRIBUTORS]
    )

    sentence = (
        f" Team session coordinating {team_metrics.agent_count} agents ({type_breakdown})"
        f" across {team_metrics.task_completed_count} tasks."
    )
    if contributors:
        sentence += f" Top contributors: {contributors}."
    if stats is not None and stats.failures_by_tool:
        failures = ", ".join(
            f"{tool} ({count})"
            for tool, count in sorted(stats.failures_by_tool.items(), key=lambda kv: kv[1], reverse=True)
        )
        sentence += f" {stats.failure_count} failures concentrated in {failures}."
    return sentence + _utilization_sentence(team_metrics)


def extract_top_errors(stats: StatsResult, events: Optional[list[StoredEvent]] = None) -> list[TopError]:
    if not stats.failures_by_tool:
        return []
    ranked = sorted(stats.failures_by_tool.items(), key=lambda kv: kv[1], reverse=True)[:TOP_ERRORS]
    errors = []
    for tool_name, count in ranked:
        sample = next(
            (e for e in events or [] if e.event == "PostToolUseFailure" and e.tool_name == tool_name),
            None,
        )
        message = sample.data.get("error") if sample is not None else None
        errors.append(
            TopError(
                tool_name=tool_name,
                count=count,
                sample_message=message[:ERROR_SAMPLE_CHARS] if isinstance(message, str) and message else None,
            )
        )
    return errors


def _descendant_tool_calls(agent: AgentNode) -> int:
    total = 0
    stack = list(agent.children)
    while stack:
        node = stack.pop()
        total += node.tool_call_count
        stack.extend(node.children)
    return total


def extract_agent_workload(agents: list[AgentNode]) -> list[AgentWorkload]:
    return [
        AgentWorkload(
            name=a.agent_name or a.agent_type,
            id=a.session_id[:8],
            tool_calls=a.tool_call_count if a.tool_call_count > 0 else _descendant_tool_calls(a),
            files_modified=_files_modified(a.file_map.files) if a.file_map else 0,
            duration_ms=a.duration_ms,
        )
        for a in agents
    ]


# ── Summary ─────────────────────────────────────────────────────────

def build_narrative(inputs: SummaryInputs) -> str:
    stats = inputs.stats
    active_tag = ""
    if inputs.active_duration is not None and inputs.active_duration.active_ms < stats.duration_ms:
        active_tag = f" ({format_duration(inputs.active_duration.active_ms)} active)"
    parts = [
        f"A {format_duration(stats.duration_ms)} session{active_tag} using {stats.model or 'unknown model'}"
        f" with {stats.tool_call_count} tool calls."
    ]

    if inputs.phases:
        names = ", ".join(p.name for p in inputs.phases)
        parts.append(f" The session had {_plural(len(inputs.phases), 'phase')}: {names}.")

    tools = ", ".join(_top_tools(stats.tools_by_name, TOP_TOOLS)) or "none"
    modified = _files_modified(inputs.file_map)
    parts.append(f" Primary tools: {tools}. {_plural(modified, 'file')} modified.")

    if inputs.backtracks:
        parts.append(
            f" Encountered {_plural(len(inputs.backtracks), 'backtrack')} ({_backtrack_types(inputs.backtracks)})."
            f" Failure rate: {stats.failure_rate * 100:.1f}%."
        )

    if inputs.reasoning:
        parts.append(
            f" {_plural(len(inputs.reasoning), 'thinking block')} captured,"
            f" primarily {_dominant_intent(inputs.reasoning)}."
        )

    if inputs.edit_chains is not None and inputs.edit_chains.chains:
        abandoned = _abandoned_edits(inputs.edit_chains)
        backtracked = sum(1 for c in inputs.edit_chains.chains if c.has_backtrack)
        if abandoned > 0 or backtracked > 0:
            parts.append(
                f" {len(inputs.edit_chains.chains)} files were modified with"
                f" {_plural(abandoned, 'abandoned attempt')} across {_plural(backtracked, 'backtrack')}."
            )

    if inputs.team_metrics is not None and inputs.team_metrics.agent_count > 0:
        parts.append(build_team_sentence(inputs.team_metrics, inputs.agents, stats))

    return "".join(parts)


def build_summary(inputs: SummaryInputs) -> DistilledSummary:
    stats = inputs.stats
    key_metrics = KeyMetrics(
        duration_human=format_duration(stats.duration_ms),
        tool_calls=stats.tool_call_count,
        failures=stats.failure_count,
        files_modified=_files_modified(inputs.file_map),
        backtrack_count=len(inputs.backtracks),
    )
    if inputs.active_duration is not None:
        key_metrics.active_duration_ms = inputs.active_duration.active_ms
        key_metrics.active_duration_human = format_duration(inputs.active_duration.active_ms)
    if inputs.edit_chains is not None:
        key_metrics.abandoned_edits = _abandoned_edits(inputs.edit_chains)
        key_metrics.edit_chains_count = len(inputs.edit_chains.chains)

    top_errors = extract_top_errors(stats, inputs.events)
    tasks = inputs.team_metrics.tasks if inputs.team_metrics is not None else []

    return DistilledSummary(
        narrative=build_narrative(inputs),
        phases=list(inputs.phases),
        key_metrics=key_metrics,
        top_errors=top_errors or None,
        task_summary=tasks or None,
        agent_workload=extract_agent_workload(inputs.agents) if inputs.agents else None,
    )
