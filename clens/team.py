"""Team metrics, communication graph and communication sequence from link events."""
from __future__ import annotations

from typing import Optional

from clens import config
from clens.events import resolve_id, resolve_name, resolve_parent_session, sanitize_agent_name, spawn_links
from clens.models import (
    AgentLifetime,
    CommunicationEdge,
    CommunicationSequenceEntry,
    ConversationGroup,
    IdleTransition,
    LinkEvent,
    MessageLink,
    SpawnLink,
    StopLink,
    TaskCompleteLink,
    TaskLink,
    TeammateIdleLink,
    TeamMetrics,
    TeamTask,
)

SUMMARY_PREVIEW_CHARS = 120


def _infer_agent_names(links: list[LinkEvent], session_id: Optional[str]) -> dict[str, None]:
    names: dict[str, None] = {}
    for link in links:
        if isinstance(link, MessageLink):
            if session_id and (link.from_ == session_id or link.session_id == session_id):
                names.setdefault(link.to, None)
        elif isinstance(link, TaskLink) and link.owner:
            names.setdefault(link.owner, None)
        elif isinstance(link, TaskCompleteLink) and link.agent:
            names.setdefault(link.agent, None)
        elif isinstance(link, TeammateIdleLink) and link.teammate:
            names.setdefault(link.teammate, None)
    return names


def extract_team_metrics(
    links: list[LinkEvent],
    known_agent_ids: Optional[set[str]] = None,
    session_id: Optional[str] = None,
) -> TeamMetrics:
    spawns = spawn_links(links)
    agent_ids = known_agent_ids if known_agent_ids is not None else {s.agent_id for s in spawns}
    agent_names = {s.agent_name for s in spawns if s.agent_id in agent_ids and s.agent_name}

    # no spawns at all: fall back to names seen in communication links
    inferred = _infer_agent_names(links, session_id) if not spawns and not agent_ids else {}

    # idle "teammate" may carry an agent id when the spawn had no name
    name_or_id = agent_names | agent_ids | set(inferred)
    task_agent_match = name_or_id | {session_id} if session_id else name_or_id

    task_completes = [
        link for link in links
        if isinstance(link, TaskCompleteLink)
        and (link.agent in task_agent_match or (session_id is not None and link.session_id == session_id))
    ]
    idles = [link for link in links if isinstance(link, TeammateIdleLink) and link.teammate in name_or_id]

    spawn_count = len({s.agent_id for s in spawns if s.agent_id in agent_ids})
    agent_count = spawn_count if spawn_count > 0 else len(inferred)

    teammate_names = dict.fromkeys(s.agent_name or s.agent_id for s in spawns if s.agent_id in agent_ids)
    teammate_names.update(inferred)
    teammate_names.update(dict.fromkeys(tc.agent for tc in task_completes))
    teammate_names.update(dict.fromkeys(idle.teammate for idle in idles))

    stop_links = [link for link in links if isinstance(link, StopLink)]
    total_agent_time = 0
    for spawn in spawns:
        stop = next((s for s in stop_links if s.agent_id == spawn.agent_id), None)
        if stop is not None:
            total_agent_time += stop.t - spawn.t

    total_idle_time = 0
    for idle in idles:
        resumed = next((l for l in links if l.t > idle.t and l.type != "teammate_idle"), None)
        if resumed is not None:
            total_idle_time += resumed.t - idle.t

    utilization: Optional[float] = None
    if total_agent_time > 0:
        utilization = max(0.0, min(1.0, 1 - total_idle_time / total_agent_time))

    return TeamMetrics(
        agent_count=agent_count,
        task_completed_count=len(task_completes),
        idle_event_count=len(idles),
        teammate_names=list(teammate_names),
        tasks=[TeamTask(task_id=tc.task_id, agent=tc.agent, subject=tc.subject, t=tc.t) for tc in task_completes],
        idle_transitions=[IdleTransition(teammate=idle.teammate, t=idle.t) for idle in idles],
        utilization_ratio=utilization,
    )


# ── Shared edge resolution ──────────────────────────────────────────

def _name(value: str, name_map: Optional[dict[str, str]]) -> str:
    return resolve_name(value, name_map) if name_map is not None else value


def _id(value: str, name_map: Optional[dict[str, str]]) -> str:
    return resolve_id(value, name_map) if name_map is not None else value


def _message_endpoints(msg: MessageLink, name_map: Optional[dict[str, str]]) -> tuple[str, str, str, str]:
    from_name = msg.from_name or _name(msg.from_, name_map)
    to_id = msg.to_id or _id(msg.to, name_map)
    return msg.from_, from_name, to_id, _name(msg.to, name_map)


def _report_endpoints(
    agent: str,
    spawns: list[SpawnLink],
    name_map: Optional[dict[str, str]],
) -> tuple[str, str, str, str]:
    """An agent reporting upward (task completion, idle) to its parent session."""
    parent_id, parent_name = resolve_parent_session(agent, spawns, name_map)
    return _id(agent, name_map), _name(agent, name_map), parent_id, parent_name


# ── Communication graph ─────────────────────────────────────────────

def build_communication_graph(
    links: list[LinkEvent],
    name_map: Optional[dict[str, str]] = None,
) -> list[CommunicationEdge]:
    """Edges grouped by (from_id, to_id, edge_type), most frequent first."""
    spawns = spawn_links(links)
    raw: list[tuple[str, str, str, str, str, str]] = []

    for link in links:
        if isinstance(link, MessageLink):
            raw.append((*_message_endpoints(link, name_map), "message", link.msg_type))
    for link in links:
        if isinstance(link, TaskCompleteLink):
            raw.append((*_report_endpoints(link.agent, spawns, name_map), "task_complete", "task_complete"))
    for link in links:
        if isinstance(link, TeammateIdleLink):
            raw.append((*_report_endpoints(link.teammate, spawns, name_map), "idle_notify", "teammate_idle"))
    for link in links:
        if isinstance(link, TaskLink) and link.action == "assign" and link.owner is not None:
            from_name = link.agent or _name(link.session_id, name_map)
            from_id = _id(link.agent, name_map) if link.agent else link.session_id
            raw.append((from_id, from_name, _id(link.owner, name_map), link.owner, "task_assign", "task_assign"))

    grouped: dict[tuple[str, str, str], list[tuple[str, str, str, str, str, str]]] = {}
    for edge in raw:
        grouped.setdefault((edge[0], edge[2], edge[4]), []).append(edge)

    edges = []
    for members in grouped.values():
        from_id, from_name, to_id, to_name, edge_type, _ = members[0]
        edges.append(
            CommunicationEdge(
                from_id=from_id,
                from_name=from_name,
                to_id=to_id,
                to_name=to_name,
                from_=from_name,
                to=to_name,
                count=len(members),
                msg_types=sorted({m[5] for m in members}),
                edge_type=edge_type,
            )
        )
    edges.sort(key=lambda e: e.count, reverse=True)
    return edges


# ── Communication sequence ──────────────────────────────────────────

def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[:limit]}…"


def build_communication_sequence(
    links: list[LinkEvent],
    name_map: Optional[dict[str, str]] = None,
    cap: int = config.COMM_SEQUENCE_CAP,
) -> list[CommunicationSequenceEntry]:
    """Messages, task completions and idle notices in time order, capped."""
    spawns = spawn_links(links)
    entries: list[CommunicationSequenceEntry] = []

    for link in links:
        if not isinstance(link, MessageLink):
            continue
        from_id, from_name, to_id, to_name = _message_endpoints(link, name_map)
        entries.append(
            CommunicationSequenceEntry(
                t=link.t,
                from_id=from_id,
                from_name=from_name,
                to_id=to_id,
                to_name=to_name,
                from_=from_name,
                to=to_name,
                msg_type=link.msg_type,
                edge_type="message",
                summary=_truncate(link.summary, SUMMARY_PREVIEW_CHARS) if link.summary else None,
                content_preview=link.content_hash or None,
            )
        )
    for link in links:
        if not isinstance(link, TaskCompleteLink):
            continue
        from_id, from_name, to_id, to_name = _report_endpoints(link.agent, spawns, name_map)
        entries.append(
            CommunicationSequenceEntry(
                t=link.t,
                from_id=from_id,
                from_name=from_name,
                to_id=to_id,
                to_name=to_name,
                from_=from_name,
                to=to_name,
                msg_type="task_complete",
                edge_type="task_complete",
                summary=_truncate(link.subject, SUMMARY_PREVIEW_CHARS) if link.subject else None,
            )
        )
    for link in links:
        if not isinstance(link, TeammateIdleLink):
            continue
        from_id, from_name, to_id, to_name = _report_endpoints(link.teammate, spawns, name_map)
        entries.append(
            CommunicationSequenceEntry(
                t=link.t,
                from_id=from_id,
                from_name=from_name,
                to_id=to_id,
                to_name=to_name,
                from_=from_name,
                to=to_name,
                msg_type="teammate_idle",
                edge_type="idle_notify",
            )
        )

    entries.sort(key=lambda e: e.t)
    return entries[:cap]


def group_by_conversation(sequence: list[CommunicationSequenceEntry]) -> list[ConversationGroup]:
    """Consecutive entries between the same pair of agents, in either direction."""
    groups: list[ConversationGroup] = []
    current_key: Optional[tuple[str, str]] = None
    for entry in sequence:
        key = (entry.from_, entry.to) if entry.from_ < entry.to else (entry.to, entry.from_)
        if groups and key == current_key:
            groups[-1].messages.append(entry)
            continue
        current_key = key
        groups.append(ConversationGroup(participants=list(key), messages=[entry]))
    return groups


# ── Agent lifetimes ─────────────────────────────────────────────────

def _infer_lifetimes(links: list[LinkEvent], name_map: Optional[dict[str, str]]) -> list[AgentLifetime]:
    if name_map:
        names = list(dict.fromkeys(name_map.values()))
    else:
        names = list(dict.fromkeys(link.to for link in links if isinstance(link, MessageLink)))
    id_by_name = {name: agent_id for agent_id, name in (name_map or {}).items()}

    lifetimes: list[AgentLifetime] = []
    for name in names:
        timestamps = [
            link.t
            for link in links
            if (isinstance(link, MessageLink) and (link.to == name or link.from_name == name))
            or (isinstance(link, TaskLink) and link.owner == name)
            or (isinstance(link, TaskCompleteLink) and link.agent == name)
            or (isinstance(link, TeammateIdleLink) and link.teammate == name)
        ]
        if not timestamps:
            continue
        lifetimes.append(
            AgentLifetime(
                agent_id=id_by_name.get(name, name),
                agent_name=name,
                start_t=min(timestamps),
                end_t=max(timestamps),
                agent_type="builder",
            )
        )
    lifetimes.sort(key=lambda l: l.start_t)
    return lifetimes


def extract_agent_lifetimes(
    links: list[LinkEvent],
    name_map: Optional[dict[str, str]] = None,
) -> list[AgentLifetime]:
    """Spawn-to-stop ranges per agent; inferred from communication when nothing was spawned."""
    spawns = spawn_links(links)
    if not spawns:
        return _infer_lifetimes(links, name_map)

    stop_times = {link.agent_id: link.t for link in links if isinstance(link, StopLink)}
    max_t = max((link.t for link in links), default=0)

    lifetimes: list[AgentLifetime] = []
    for spawn in spawns:
        raw_name = spawn.agent_name or (resolve_name(spawn.agent_id, name_map) if name_map is not None else None)
        lifetimes.append(
            AgentLifetime(
                agent_id=spawn.agent_id,
                agent_name=sanitize_agent_name(raw_name, spawn.agent_id) if raw_name else None,
                start_t=spawn.t,
                end_t=stop_times.get(spawn.agent_id, max_t),
                agent_type=spawn.agent_type,
            )
        )
    lifetimes.sort(key=lambda l: l.start_t)
    return lifetimes
