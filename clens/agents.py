"""Agent tree construction, per-agent distillation and link-based enrichment."""
from __future__ import annotations

import json
from typing import Any, Callable, Optional

from clens import config
from clens.backtracks import detect_backtracks
from clens.durations import compute_effective_duration
from clens.edit_chains import extract_edit_chains
from clens.events import deduplicate_spawns, resolve_name, spawn_links
from clens.file_map import extract_file_map
from clens.models import (
    AgentCommunicationPartner,
    AgentDistillResult,
    AgentIdlePeriod,
    AgentMessage,
    AgentNode,
    AgentStats,
    AgentTaskEvent,
    LinkEvent,
    MessageLink,
    SpawnLink,
    StopLink,
    StoredEvent,
    TaskCompleteLink,
    TaskLink,
    TeammateIdleLink,
)
from clens.stats import extract_stats
from clens.transcript import (
    content_blocks,
    entry_timestamp_ms,
    extract_reasoning,
    extract_token_usage,
    read_transcript,
)

ReadTranscriptFn = Callable[[str], list[dict[str, Any]]]
ReadAgentEventsFn = Callable[[str], list[StoredEvent]]


# ── Transcript distillation ─────────────────────────────────────────

def transcript_to_events(entries: list[dict[str, Any]]) -> list[StoredEvent]:
    """Synthesize PreToolUse / PostToolUseFailure events from transcript tool blocks."""
    tool_uses: dict[str, dict[str, Any]] = {}
    pre_events: list[StoredEvent] = []
    for entry in entries:
        if entry.get("type") != "assistant":
            continue
        t = entry_timestamp_ms(entry)
        for block in content_blocks(entry):
            if block.get("type") != "tool_use":
                continue
            tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
            tool_uses[block.get("id", "")] = {"tool_name": block.get("name", ""), "tool_input": tool_input}
            pre_events.append(
                StoredEvent(
                    t=t,
                    event="PreToolUse",
                    sid=str(entry.get("sessionId", "")),
                    data={"tool_name": block.get("name", ""), "tool_input": tool_input, "tool_use_id": block.get("id", "")},
                )
            )

    failure_events: list[StoredEvent] = []
    for entry in entries:
        if entry.get("type") != "user":
            continue
        t = entry_timestamp_ms(entry)
        for block in content_blocks(entry):
            if block.get("type") != "tool_result" or block.get("is_error") is not True:
                continue
            tool_use_id = block.get("tool_use_id", "")
            tool_info = tool_uses.get(tool_use_id, {})
            content = block.get("content")
            failure_events.append(
                StoredEvent(
                    t=t,
                    event="PostToolUseFailure",
                    sid=str(entry.get("sessionId", "")),
                    data={
                        "tool_name": tool_info.get("tool_name", "unknown"),
                        "tool_input": tool_info.get("tool_input", {}),
                        "tool_use_id": tool_use_id,
                        "error": content if isinstance(content, str) else json.dumps(content),
                    },
                )
            )

    return sorted([*pre_events, *failure_events], key=lambda e: e.t)


def extract_task_prompt(entries: list[dict[str, Any]]) -> Optional[str]:
    for entry in entries:
        message = entry.get("message")
        if entry.get("type") != "user" or not isinstance(message, dict) or message.get("role") != "user":
            continue
        content = message.get("content")
        if isinstance(content, str):
            return content
        for block in content_blocks(entry):
            if block.get("type") == "text" and isinstance(block.get("text"), str):
                return block["text"]
        return None
    return None


def extract_agent_model(entries: list[dict[str, Any]]) -> Optional[str]:
    for entry in entries:
        if entry.get("type") == "assistant":
            message = entry.get("message")
            model = message.get("model") if isinstance(message, dict) else None
            return model if isinstance(model, str) else None
    return None


def distill_agent(entries: list[dict[str, Any]]) -> Optional[AgentDistillResult]:
    if not entries:
        return None

    events = transcript_to_events(entries)
    stats = extract_stats(events)
    token_usage = extract_token_usage(entries)
    reasoning = extract_reasoning(entries)
    backtracks = detect_backtracks(events)
    edit_chains = extract_edit_chains(events, reasoning, backtracks)

    return AgentDistillResult(
        stats=AgentStats(
            tool_call_count=stats.tool_call_count,
            failure_count=stats.failure_count,
            tools_by_name=stats.tools_by_name,
            unique_files=stats.unique_files,
            token_usage=token_usage,
        ),
        file_map=extract_file_map(events),
        model=extract_agent_model(entries),
        token_usage=token_usage,
        cost_estimate=stats.cost_estimate,
        task_prompt=extract_task_prompt(entries),
        reasoning=reasoning or None,
        backtracks=backtracks or None,
        edit_chains=edit_chains if edit_chains.chains else None,
    )


# ── Agent tree ──────────────────────────────────────────────────────

def attribute_events_to_agents(
    session_id: str,
    events: list[StoredEvent],
    links: list[LinkEvent],
) -> dict[str, list[StoredEvent]]:
    """Assign each event to the innermost agent whose spawn/stop interval contains it."""
    spawns = deduplicate_spawns(spawn_links(links))
    stop_links = [link for link in links if isinstance(link, StopLink)]
    max_t = max((e.t for e in events), default=0)

    intervals: list[tuple[str, int, int]] = []
    for spawn in spawns:
        stop = next((s for s in stop_links if s.agent_id == spawn.agent_id), None)
        end = stop.t if stop is not None else (max_t if events else spawn.t)
        intervals.append((spawn.agent_id, spawn.t, end))
    # latest start first, so nested agents win over their parents
    intervals.sort(key=lambda i: i[1], reverse=True)

    attributed: dict[str, list[StoredEvent]] = {}
    for event in events:
        owner = next((agent_id for agent_id, start, end in intervals if start <= event.t <= end), session_id)
        attributed.setdefault(owner, []).append(event)
    return attributed


def compute_link_based_duration(
    agent_id: str,
    agent_name: Optional[str],
    spawn_t: int,
    links: list[LinkEvent],
) -> int:
    """Spawn to last related link, for agents whose hook events never reached this session."""
    timestamps = []
    for link in links:
        if isinstance(link, MessageLink):
            relevant = link.from_ == agent_id or link.to == agent_id
        elif isinstance(link, TaskLink):
            relevant = link.session_id == agent_id
        elif isinstance(link, TaskCompleteLink):
            relevant = agent_name is not None and link.agent == agent_name
        elif isinstance(link, TeammateIdleLink):
            relevant = agent_name is not None and link.teammate == agent_name
        else:
            relevant = False
        if relevant:
            timestamps.append(link.t)
    return max(0, max(timestamps) - spawn_t) if timestamps else 0


def enrich_node_with_transcript(
    node: AgentNode,
    transcript_path: str,
    read_transcript_fn: ReadTranscriptFn = read_transcript,
) -> AgentNode:
    result = distill_agent(read_transcript_fn(transcript_path))
    if result is None:
        return node.model_copy(update={"transcript_path": transcript_path})

    update: dict[str, Any] = {
        "transcript_path": transcript_path,
        "model": result.model,
        "stats": result.stats,
        "file_map": result.file_map,
        "cost_estimate": result.cost_estimate,
        "tool_call_count": result.stats.tool_call_count,
    }
    for field in ("task_prompt", "edit_chains", "backtracks", "reasoning"):
        value = getattr(result, field)
        if value:
            update[field] = value
    return node.model_copy(update=update)


def enrich_node_from_session_events(node: AgentNode, agent_events: list[StoredEvent]) -> AgentNode:
    """Fallback when no transcript is available: the agent's own hook session file."""
    if not agent_events:
        return node
    stats = extract_stats(agent_events)
    file_map = extract_file_map(agent_events)
    if stats.tool_call_count == 0 and not file_map.files:
        return node

    update: dict[str, Any] = {
        "tool_call_count": stats.tool_call_count or node.tool_call_count,
        "model": stats.model or node.model,
        "stats": AgentStats(
            tool_call_count=stats.tool_call_count,
            failure_count=stats.failure_count,
            tools_by_name=stats.tools_by_name,
            unique_files=stats.unique_files,
        ),
    }
    if file_map.files:
        update["file_map"] = file_map
    edit_chains = extract_edit_chains(agent_events, [], detect_backtracks(agent_events))
    if edit_chains.chains:
        update["edit_chains"] = edit_chains
    if stats.cost_estimate is not None:
        update["cost_estimate"] = stats.cost_estimate
    return node.model_copy(update=update)


def _agent_duration(
    spawn: SpawnLink,
    stop: Optional[StopLink],
    events: list[StoredEvent],
    links: list[LinkEvent],
) -> int:
    raw = stop.t - spawn.t if stop is not None else 0
    duration = raw
    if raw > config.IDLE_THRESHOLD_MS:
        window = [e.t for e in events if e.t >= spawn.t and (stop is None or e.t <= stop.t)]
        if len(window) >= 2:
            duration = compute_effective_duration(window).effective_duration_ms
    if duration <= 0:
        duration = compute_link_based_duration(spawn.agent_id, spawn.agent_name, spawn.t, links)
    if duration <= 0 and stop is not None:
        duration = abs(stop.t - spawn.t)
    return duration


def build_agent_tree(
    session_id: str,
    links: list[LinkEvent],
    events: list[StoredEvent],
    read_transcript_fn: ReadTranscriptFn = read_transcript,
    read_agent_events_fn: Optional[ReadAgentEventsFn] = None,
) -> list[AgentNode]:
    """Nodes for agents spawned by the session, recursively.

    Each node is enriched from the agent's transcript when its stop link
    carries one, otherwise from the agent's own session events.
    """
    spawns = deduplicate_spawns(spawn_links(links))
    stop_links = [link for link in links if isinstance(link, StopLink)]

    def build_node(spawn: SpawnLink) -> AgentNode:
        stop = next((s for s in stop_links if s.agent_id == spawn.agent_id), None)
        children = [build_node(child) for child in spawns if child.parent_session == spawn.agent_id]
        tool_calls = sum(
            1
            for e in events
            if e.event == "PreToolUse" and e.t >= spawn.t and (stop is None or e.t <= stop.t)
        )
        node = AgentNode(
            session_id=spawn.agent_id,
            agent_type=spawn.agent_type,
            agent_name=spawn.agent_name,
            duration_ms=_agent_duration(spawn, stop, events, links),
            tool_call_count=tool_calls,
            children=children,
        )

        if stop is not None and stop.transcript_path:
            enriched = enrich_node_with_transcript(node, stop.transcript_path, read_transcript_fn)
            if enriched.tool_call_count == 0 and enriched.stats and enriched.stats.tool_call_count > 0:
                enriched = enriched.model_copy(update={"tool_call_count": enriched.stats.tool_call_count})
            if enriched.tool_call_count > 0 or (enriched.stats and enriched.stats.tool_call_count > 0):
                return enriched

        if read_agent_events_fn is not None and node.tool_call_count == 0:
            from_events = enrich_node_from_session_events(node, read_agent_events_fn(spawn.agent_id))
            if from_events.tool_call_count > 0:
                return from_events
        return node

    return [build_node(spawn) for spawn in spawns if spawn.parent_session == session_id]


def infer_agents_from_comms(session_id: str, links: list[LinkEvent]) -> list[AgentNode]:
    """Agent nodes from message recipients when the session recorded no spawns."""
    recipients = dict.fromkeys(
        link.to
        for link in links
        if isinstance(link, MessageLink) and (link.from_ == session_id or link.session_id == session_id)
    )
    if not recipients:
        return []

    name_to_id = {
        link.owner: link.session_id
        for link in links
        if isinstance(link, TaskLink) and link.owner and link.session_id != session_id
    }

    nodes: list[AgentNode] = []
    for name in recipients:
        timestamps = [
            link.t
            for link in links
            if (isinstance(link, MessageLink) and (link.to == name or link.from_name == name))
            or (isinstance(link, TaskLink) and link.owner == name)
            or (isinstance(link, TaskCompleteLink) and link.agent == name)
            or (isinstance(link, TeammateIdleLink) and link.teammate == name)
        ]
        nodes.append(
            AgentNode(
                session_id=name_to_id.get(name, name),
                agent_type="builder",
                agent_name=name,
                duration_ms=max(timestamps) - min(timestamps) if timestamps else 0,
                tool_call_count=0,
            )
        )
    return nodes


# ── Link enrichment ─────────────────────────────────────────────────

def _spawn_name(agent_id: str, links: list[LinkEvent]) -> Optional[str]:
    for link in links:
        if isinstance(link, SpawnLink) and link.agent_id == agent_id:
            return link.agent_name
    return None


def _partner_name(partner_id: str, name_map: Optional[dict[str, str]]) -> str:
    return resolve_name(partner_id, name_map) if name_map is not None else partner_id


def extract_agent_messages(
    agent_id: str,
    links: list[LinkEvent],
    name_map: Optional[dict[str, str]] = None,
) -> list[AgentMessage]:
    messages = []
    for link in links:
        if not isinstance(link, MessageLink) or agent_id not in (link.from_, link.to):
            continue
        sent = link.from_ == agent_id
        messages.append(
            AgentMessage(
                t=link.t,
                direction="sent" if sent else "received",
                partner=_partner_name(link.to if sent else link.from_, name_map),
                msg_type=link.msg_type,
                summary=link.summary or None,
            )
        )
    messages.sort(key=lambda m: m.t)
    return messages


def extract_agent_tasks(agent_id: str, links: list[LinkEvent]) -> list[AgentTaskEvent]:
    """Task links owned by the agent's session or naming it, plus its completions."""
    agent_name = _spawn_name(agent_id, links)
    task_events = [
        AgentTaskEvent(
            t=link.t,
            action=link.action,
            task_id=link.task_id,
            subject=link.subject or None,
            status=link.status or None,
            owner=link.owner or None,
        )
        for link in links
        if isinstance(link, TaskLink)
        and (link.session_id == agent_id or (agent_name is not None and agent_name in (link.owner, link.agent)))
    ]
    if agent_name is not None:
        task_events.extend(
            AgentTaskEvent(t=link.t, action="complete", task_id=link.task_id, subject=link.subject or None)
            for link in links
            if isinstance(link, TaskCompleteLink) and link.agent == agent_name
        )
    task_events.sort(key=lambda e: e.t)
    return task_events


def extract_agent_idle_periods(agent_id: str, links: list[LinkEvent]) -> list[AgentIdlePeriod]:
    agent_name = _spawn_name(agent_id, links)
    if agent_name is None:
        return []
    return [
        AgentIdlePeriod(t=link.t, teammate=link.teammate)
        for link in links
        if isinstance(link, TeammateIdleLink) and link.teammate == agent_name
    ]


def extract_agent_communication_partners(
    agent_id: str,
    links: list[LinkEvent],
    name_map: Optional[dict[str, str]] = None,
) -> list[AgentCommunicationPartner]:
    messages = [
        link for link in links if isinstance(link, MessageLink) and agent_id in (link.from_, link.to)
    ]
    partner_ids = dict.fromkeys(m.to if m.from_ == agent_id else m.from_ for m in messages)

    partners = []
    for partner_id in partner_ids:
        sent = [m for m in messages if m.from_ == agent_id and m.to == partner_id]
        received = [m for m in messages if m.from_ == partner_id and m.to == agent_id]
        partners.append(
            AgentCommunicationPartner(
                name=_partner_name(partner_id, name_map),
                sent_count=len(sent),
                received_count=len(received),
                total_count=len(sent) + len(received),
                msg_types=sorted({m.msg_type for m in [*sent, *received]}),
            )
        )
    partners.sort(key=lambda p: p.total_count, reverse=True)
    return partners


def enrich_node_with_links(
    node: AgentNode,
    links: list[LinkEvent],
    name_map: Optional[dict[str, str]] = None,
) -> AgentNode:
    """Attach messages, task events, idle periods and partners to a node and its subtree."""
    update: dict[str, Any] = {
        "children": [enrich_node_with_links(child, links, name_map) for child in node.children],
    }
    enrichments = {
        "messages": extract_agent_messages(node.session_id, links, name_map),
        "task_events": extract_agent_tasks(node.session_id, links),
        "idle_periods": extract_agent_idle_periods(node.session_id, links),
        "communication_partners": extract_agent_communication_partners(node.session_id, links, name_map),
    }
    update.update({key: value for key, value in enrichments.items() if value})
    return node.model_copy(update=update)
