"""Distill one captured session into a single DistilledSession record."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from clens import config
from clens.agents import (
    ReadAgentEventsFn,
    build_agent_tree,
    enrich_node_with_links,
    extract_agent_model,
    infer_agents_from_comms,
    transcript_to_events,
)
from clens.aggregate import aggregate_team_data, flatten_agents
from clens.backtracks import detect_backtracks
from clens.decisions import extract_decisions, extract_phases, extract_raw_timing_gaps
from clens.diff_attribution import extract_diff_attribution, get_start_commit
from clens.durations import compute_active_duration
from clens.edit_chains import extract_edit_chains
from clens.errors import SessionNotFoundError
from clens.events import build_name_map, filter_links_for_session, spawn_links
from clens.file_map import extract_file_map
from clens.git_diff import extract_git_diff, extract_net_changes
from clens.models import (
    AgentNode,
    DistilledSession,
    EditChainsResult,
    FileDiffAttribution,
    FileMapResult,
    GitDiffResult,
    LinkEvent,
    PlanDriftReport,
    StatsResult,
    StoredEvent,
    TokenUsage,
    TranscriptReasoning,
    TranscriptUserMessage,
)
from clens.plan_drift import compute_plan_drift, detect_spec_ref
from clens.stats import estimate_cost_from_tokens, extract_stats
from clens.store import read_links, read_session_events, write_distilled
from clens.summary import SummaryInputs, build_summary
from clens.team import build_communication_graph, build_communication_sequence, extract_agent_lifetimes, extract_team_metrics
from clens.timeline import build_timeline
from clens.transcript import (
    extract_reasoning,
    extract_token_usage,
    extract_user_messages,
    read_session_name,
    read_transcript,
    resolve_transcript_path,
)

logger = logging.getLogger("clens.distill")

PathLike = Union[str, Path]


@dataclass
class TranscriptData:
    reasoning: list[TranscriptReasoning] = field(default_factory=list)
    user_messages: list[TranscriptUserMessage] = field(default_factory=list)
    transcript_path: Optional[str] = None
    token_usage: Optional[TokenUsage] = None
    model: Optional[str] = None
    session_name: Optional[str] = None


def load_transcript_data(events: list[StoredEvent]) -> TranscriptData:
    path = resolve_transcript_path(events)
    if path is None:
        return TranscriptData()
    session_name = read_session_name(path)
    entries = read_transcript(path)
    if not entries:
        return TranscriptData(transcript_path=path, session_name=session_name)
    usage = extract_token_usage(entries)
    return TranscriptData(
        reasoning=extract_reasoning(entries),
        user_messages=extract_user_messages(entries),
        transcript_path=path,
        token_usage=usage if usage.input_tokens > 0 else None,
        model=extract_agent_model(entries),
        session_name=session_name,
    )


# ── Pipeline steps ──────────────────────────────────────────────────

def _collect_prompts(events: list[StoredEvent], user_messages: list[TranscriptUserMessage]) -> list[str]:
    prompts = [m.content for m in user_messages if m.message_type in ("prompt", "command")]
    for event in events:
        prompt = event.data.get("prompt")
        if event.event == "UserPromptSubmit" and isinstance(prompt, str):
            prompts.append(prompt)
    return prompts


def _plan_drift(
    project_dir: PathLike,
    prompts: list[str],
    stats: StatsResult,
    file_map: FileMapResult,
) -> Optional[PlanDriftReport]:
    spec_ref = detect_spec_ref(prompts)
    if spec_ref is None or stats.tool_call_count == 0:
        return None
    try:
        spec_content = (Path(project_dir) / spec_ref).read_text(encoding="utf-8", errors="replace")
    except OSError:
        logger.debug("Spec %s referenced but not readable", spec_ref)
        return None
    return compute_plan_drift(spec_ref, spec_content, [file_map], str(project_dir))


def _agent_events(agents: Optional[list[AgentNode]], project_dir: PathLike) -> list[StoredEvent]:
    """Events of every descendant agent, from its transcript or its own hook session file."""
    read_session = _read_agent_events(project_dir)
    collected: list[StoredEvent] = []
    for agent in flatten_agents(agents or []):
        if agent.transcript_path:
            collected.extend(transcript_to_events(read_transcript(agent.transcript_path)))
        else:
            collected.extend(read_session(agent.session_id))
    return collected


def _with_git_changes(
    project_dir: PathLike,
    events: list[StoredEvent],
    edit_chains: EditChainsResult,
    agents: Optional[list[AgentNode]],
) -> EditChainsResult:
    """Net changes since the start commit and per-line attribution over the merged chains."""
    net_changes = extract_net_changes(str(project_dir), get_start_commit(events))
    attribution: list[FileDiffAttribution] = []
    if config.DIFF_ATTRIBUTION_ENABLED:
        attribution = extract_diff_attribution(
            str(project_dir), events, edit_chains, agent_events=_agent_events(agents, project_dir)
        )
    return edit_chains.model_copy(
        update={"net_changes": net_changes or None, "diff_attribution": attribution or None}
    )


def _read_agent_events(project_dir: PathLike) -> ReadAgentEventsFn:
    def read(agent_id: str) -> list[StoredEvent]:
        try:
            return read_session_events(agent_id, project_dir)
        except SessionNotFoundError:
            return []
    return read


def _resolve_agents(
    session_id: str,
    session_links: list[LinkEvent],
    events: list[StoredEvent],
    name_map: Optional[dict[str, str]],
    project_dir: PathLike,
) -> Optional[list[AgentNode]]:
    """Spawned agent tree, or agents inferred from messages when nothing was spawned."""
    if not session_links:
        return None
    tree = build_agent_tree(
        session_id,
        session_links,
        events,
        read_transcript_fn=read_transcript,
        read_agent_events_fn=_read_agent_events(project_dir),
    )
    if tree:
        return [enrich_node_with_links(node, session_links, name_map) for node in tree]

    inferred = infer_agents_from_comms(session_id, session_links)
    if not inferred:
        return None
    merged = dict(name_map or {})
    merged.update({a.session_id: a.agent_name or a.agent_type for a in inferred})
    return [enrich_node_with_links(node, session_links, merged) for node in inferred]


def _final_name_map(
    session_id: str,
    session_links: list[LinkEvent],
    name_map: Optional[dict[str, str]],
    agents: Optional[list[AgentNode]],
) -> dict[str, str]:
    """Spawn names plus inferred agents, with the distilled session itself shown as "leader"."""
    final = dict(name_map or {})
    for agent in agents or []:
        final.setdefault(agent.session_id, agent.agent_name or agent.agent_type)
    if session_links and session_id not in final:
        final[session_id] = "leader"
    return final


def _with_model_and_cost(
    stats: StatsResult,
    transcript: TranscriptData,
    agents: Optional[list[AgentNode]],
) -> StatsResult:
    """Fill in the model from the transcript or agents and price real transcript tokens."""
    model = stats.model or transcript.model or next((a.model for a in agents or [] if a.model), None)
    cost = stats.cost_estimate
    if model and transcript.token_usage is not None:
        cost = estimate_cost_from_tokens(model, transcript.token_usage) or stats.cost_estimate
    return stats.model_copy(update={"model": model, "cost_estimate": cost})


# ── Entry point ─────────────────────────────────────────────────────

def distill_events(
    session_id: str,
    events: list[StoredEvent],
    links: list[LinkEvent],
    project_dir: PathLike,
    deep: bool = False,
) -> DistilledSession:
    transcript = load_transcript_data(events)
    session_links = filter_links_for_session(session_id, links)
    name_map = build_name_map(session_links) if session_links else None
    links_or_none = session_links or None

    stats = extract_stats(events, transcript.reasoning)
    backtracks = detect_backtracks(events)
    decisions = extract_decisions(events, links_or_none)
    file_map = extract_file_map(events)
    git_diff = extract_git_diff(events, str(project_dir)) if deep else GitDiffResult()
    edit_chains = extract_edit_chains(events, transcript.reasoning, backtracks)

    agents = _resolve_agents(session_id, session_links, events, name_map, project_dir)
    final_name_map = _final_name_map(session_id, session_links, name_map, agents)

    team_metrics = None
    communication_graph = None
    comm_sequence = None
    agent_lifetimes = None
    if session_links:
        agent_ids = {s.agent_id for s in spawn_links(session_links)}
        team_metrics = extract_team_metrics(session_links, agent_ids, session_id)
        communication_graph = build_communication_graph(session_links, final_name_map)
        comm_sequence = build_communication_sequence(session_links, final_name_map)
        agent_lifetimes = extract_agent_lifetimes(session_links, final_name_map)

    stats = _with_model_and_cost(stats, transcript, agents)
    reasoning = transcript.reasoning
    if agents:
        aggregated = aggregate_team_data(
            stats, file_map, edit_chains, backtracks, reasoning, stats.cost_estimate, agents
        )
        stats = aggregated.stats.model_copy(
            update={"cost_estimate": aggregated.cost_estimate or aggregated.stats.cost_estimate}
        )
        file_map = aggregated.file_map
        edit_chains = aggregated.edit_chains
        backtracks = aggregated.backtracks
        reasoning = aggregated.reasoning

    if deep:
        edit_chains = _with_git_changes(project_dir, events, edit_chains, agents)
    plan_drift = _plan_drift(project_dir, _collect_prompts(events, transcript.user_messages), stats, file_map)

    active = compute_active_duration(extract_raw_timing_gaps(events), stats.duration_ms)
    # parent gaps alone can show no active time while agents did the work
    if active.active_ms == 0 and agents:
        active = active.model_copy(update={"active_ms": stats.duration_ms})

    phases = extract_phases(events, links_or_none)
    summary = build_summary(
        SummaryInputs(
            stats=stats,
            backtracks=backtracks,
            phases=phases,
            file_map=file_map.files,
            reasoning=reasoning,
            team_metrics=team_metrics,
            active_duration=active,
            agents=agents,
            events=events,
            edit_chains=edit_chains,
        )
    )
    timeline = build_timeline(
        events, reasoning, transcript.user_messages, backtracks, phases, links_or_none, final_name_map
    )

    return DistilledSession(
        session_id=session_id,
        session_name=transcript.session_name,
        start_time=events[0].t if events else None,
        stats=stats,
        backtracks=backtracks,
        decisions=decisions,
        file_map=file_map,
        git_diff=git_diff,
        edit_chains=edit_chains,
        reasoning=reasoning,
        user_messages=transcript.user_messages,
        transcript_path=transcript.transcript_path,
        summary=summary,
        timeline=timeline,
        agents=agents or None,
        team_metrics=team_metrics if team_metrics is not None and team_metrics.agent_count > 0 else None,
        communication_graph=communication_graph or None,
        comm_sequence=comm_sequence or None,
        agent_lifetimes=agent_lifetimes or None,
        plan_drift=plan_drift,
        complete=True,
    )


def distill_session(session_id: str, project_dir: PathLike, deep: bool = False) -> DistilledSession:
    """Read a session and the shared link log, distill, and persist the record."""
    events = read_session_events(session_id, project_dir)
    distilled = distill_events(session_id, events, read_links(project_dir), project_dir, deep=deep)
    path = write_distilled(distilled, project_dir)
    logger.info(
        "Distilled session %s: %d events, %d tool calls, %d backtracks -> %s",
        session_id,
        distilled.stats.total_events,
        distilled.stats.tool_call_count,
        len(distilled.backtracks),
        path,
    )
    return distilled
