"""Fold descendant agents' artifacts into the parent session's view."""
from __future__ import annotations

from typing import Optional

from clens.events import sanitize_agent_name
from clens.models import (
    AgentNode,
    AgentStats,
    AggregatedTeamData,
    BacktrackResult,
    CostEstimate,
    EditChainsResult,
    FileDiffAttribution,
    FileMapEntry,
    FileMapResult,
    StatsResult,
    TranscriptReasoning,
)

BACKTRACK_OVERLAP_THRESHOLD = 0.5


def flatten_agents(agents: list[AgentNode]) -> list[AgentNode]:
    """Depth-first, parent before children, without native recursion."""
    flat: list[AgentNode] = []
    stack = list(reversed(agents))
    while stack:
        node = stack.pop()
        flat.append(node)
        stack.extend(reversed(node.children))
    return flat


def merge_stats(parent: StatsResult, agent_stats: list[AgentStats]) -> StatsResult:
    tool_calls = parent.tool_call_count + sum(s.tool_call_count for s in agent_stats)
    failures = parent.failure_count + sum(s.failure_count for s in agent_stats)

    unique_files = dict.fromkeys(parent.unique_files)
    tools_by_name = dict(parent.tools_by_name)
    for stats in agent_stats:
        unique_files.update(dict.fromkeys(stats.unique_files))
        for name, count in stats.tools_by_name.items():
            tools_by_name[name] = tools_by_name.get(name, 0) + count

    return parent.model_copy(
        update={
            "tool_call_count": tool_calls,
            "failure_count": failures,
            "failure_rate": failures / tool_calls if tool_calls > 0 else 0.0,
            "unique_files": list(unique_files),
            "tools_by_name": tools_by_name,
        }
    )


def merge_file_maps(maps: list[FileMapResult]) -> FileMapResult:
    merged: dict[str, FileMapEntry] = {}
    for file_map in maps:
        for entry in file_map.files:
            existing = merged.get(entry.file_path)
            if existing is None:
                merged[entry.file_path] = entry
                continue
            merged[entry.file_path] = FileMapEntry(
                file_path=entry.file_path,
                reads=existing.reads + entry.reads,
                edits=existing.edits + entry.edits,
                writes=existing.writes + entry.writes,
                errors=existing.errors + entry.errors,
                tool_use_ids=[*existing.tool_use_ids, *entry.tool_use_ids],
                source=existing.source or entry.source,
            )
    return FileMapResult(files=list(merged.values()))


def merge_edit_chains(
    parent: EditChainsResult,
    agent_chains: list[tuple[str, EditChainsResult]],
) -> EditChainsResult:
    """Agent chains stay separate from the parent's and are tagged with the agent name.

    Diff attributions are deduplicated by path, keeping the entry with more lines.
    """
    tagged = [
        chain.model_copy(update={"agent_name": agent_name})
        for agent_name, result in agent_chains
        for chain in result.chains
    ]

    attributions: list[FileDiffAttribution] = []
    positions: dict[str, int] = {}
    candidates = list(parent.diff_attribution or [])
    for _, result in agent_chains:
        candidates.extend(result.diff_attribution or [])
    for attribution in candidates:
        idx = positions.get(attribution.file_path)
        if idx is None:
            positions[attribution.file_path] = len(attributions)
            attributions.append(attribution)
        elif len(attribution.lines) > len(attributions[idx].lines):
            attributions[idx] = attribution

    return EditChainsResult(
        chains=[*parent.chains, *tagged],
        net_changes=parent.net_changes,
        diff_attribution=attributions or None,
    )


def tool_use_id_overlap(ids_a: list[str], ids_b: list[str]) -> float:
    """Shared ids as a fraction of the smaller list."""
    if not ids_a or not ids_b:
        return 0.0
    set_b = set(ids_b)
    shared = sum(1 for i in ids_a if i in set_b)
    return shared / min(len(ids_a), len(ids_b))


def dedup_backtracks(ordered: list[BacktrackResult]) -> list[BacktrackResult]:
    """Collapse same (type, file_path) backtracks whose ids overlap by at least half.

    The survivor is the one with more ids; ties keep the earlier entry.
    """
    kept: list[BacktrackResult] = []
    for entry in ordered:
        duplicate = next(
            (
                idx
                for idx, existing in enumerate(kept)
                if existing.type == entry.type
                and existing.file_path == entry.file_path
                and tool_use_id_overlap(existing.tool_use_ids, entry.tool_use_ids) >= BACKTRACK_OVERLAP_THRESHOLD
            ),
            None,
        )
        if duplicate is None:
            kept.append(entry)
        elif len(entry.tool_use_ids) > len(kept[duplicate].tool_use_ids):
            kept[duplicate] = entry
    return kept


def merge_backtracks(
    parent: list[BacktrackResult],
    agent_backtracks: list[list[BacktrackResult]],
) -> list[BacktrackResult]:
    combined = list(parent)
    for backtracks in agent_backtracks:
        combined.extend(backtracks)
    return dedup_backtracks(sorted(combined, key=lambda b: b.start_t))


def merge_cost_estimates(
    parent: Optional[CostEstimate],
    agent_costs: list[Optional[CostEstimate]],
) -> Optional[CostEstimate]:
    costs = [c for c in [parent, *agent_costs] if c is not None]
    if not costs:
        return None
    cache_read = sum(c.cache_read_tokens or 0 for c in costs)
    cache_creation = sum(c.cache_creation_tokens or 0 for c in costs)
    return CostEstimate(
        model=parent.model if parent is not None else costs[0].model,
        estimated_input_tokens=sum(c.estimated_input_tokens for c in costs),
        estimated_output_tokens=sum(c.estimated_output_tokens for c in costs),
        # rounded once after summing
        estimated_cost_usd=round(sum(c.estimated_cost_usd for c in costs), 4),
        cache_read_tokens=cache_read if cache_read > 0 else None,
        cache_creation_tokens=cache_creation if cache_creation > 0 else None,
    )


def aggregate_team_data(
    parent_stats: StatsResult,
    parent_file_map: FileMapResult,
    parent_edit_chains: EditChainsResult,
    parent_backtracks: list[BacktrackResult],
    parent_reasoning: list[TranscriptReasoning],
    parent_cost: Optional[CostEstimate],
    agents: list[AgentNode],
) -> AggregatedTeamData:
    all_agents = flatten_agents(agents)

    agent_chains = [
        (sanitize_agent_name(a.agent_name or a.agent_type, a.session_id), a.edit_chains)
        for a in all_agents
        if a.edit_chains is not None
    ]
    reasoning = list(parent_reasoning)
    for agent in all_agents:
        reasoning.extend(agent.reasoning or [])

    return AggregatedTeamData(
        stats=merge_stats(parent_stats, [a.stats for a in all_agents if a.stats is not None]),
        file_map=merge_file_maps([parent_file_map, *(a.file_map for a in all_agents if a.file_map is not None)]),
        edit_chains=merge_edit_chains(parent_edit_chains, agent_chains),
        backtracks=merge_backtracks(parent_backtracks, [a.backtracks for a in all_agents if a.backtracks is not None]),
        reasoning=reasoning,
        cost_estimate=merge_cost_estimates(parent_cost, [a.cost_estimate for a in all_agents]),
    )
