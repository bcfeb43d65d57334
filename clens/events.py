"""Hook/link event parsing, session-scoped link filtering and agent naming."""
from __future__ import annotations

import json
import logging
import re
from typing import Iterable, Optional

from pydantic import TypeAdapter, ValidationError

from clens.models import LinkEvent, SpawnLink, StoredEvent

logger = logging.getLogger("clens.events")

HOOK_EVENTS = (
    "SessionStart",
    "SessionEnd",
    "UserPromptSubmit",
    "PreToolUse",
    "PostToolUse",
    "PostToolUseFailure",
    "PermissionRequest",
    "Notification",
    "SubagentStart",
    "SubagentStop",
    "Stop",
    "TeammateIdle",
    "TaskCompleted",
    "PreCompact",
    "ConfigChange",
    "WorktreeCreate",
    "WorktreeRemove",
)

# Broadcast to every session file, not only the originating one.
BROADCAST_EVENTS = frozenset({"ConfigChange", "Notification"})

_LINK_ADAPTER: TypeAdapter[LinkEvent] = TypeAdapter(LinkEvent)
_UUID_LIKE_PATTERN = re.compile(r"^[0-9a-f]{16,}$", re.IGNORECASE)


# ── Parsing ─────────────────────────────────────────────────────────

def decode_jsonl_lines(raw: bytes) -> list[str]:
    """Non-blank lines of a JSONL file; a line cut off mid-character is dropped."""
    lines = []
    for raw_line in raw.splitlines():
        try:
            line = raw_line.decode("utf-8").strip()
        except UnicodeDecodeError as e:
            logger.debug("Skipping undecodable line: %s", e)
            continue
        if line:
            lines.append(line)
    return lines


def parse_event_line(line: str) -> Optional[StoredEvent]:
    """Parse one JSONL line into a StoredEvent; None for blank or malformed lines."""
    text = line.strip()
    if not text:
        return None
    try:
        return StoredEvent.model_validate_json(text)
    except ValidationError as e:
        logger.debug("Skipping malformed event line: %s", e.errors()[:1])
        return None


def parse_link_line(line: str) -> Optional[LinkEvent]:
    text = line.strip()
    if not text:
        return None
    try:
        return _LINK_ADAPTER.validate_json(text)
    except ValidationError as e:
        logger.debug("Skipping malformed link line: %s", e.errors()[:1])
        return None


def parse_event_lines(lines: Iterable[str]) -> list[StoredEvent]:
    return [event for event in (parse_event_line(line) for line in lines) if event is not None]


def parse_link_lines(lines: Iterable[str]) -> list[LinkEvent]:
    return [link for link in (parse_link_line(line) for line in lines) if link is not None]


def dump_link(link: LinkEvent) -> str:
    return json.dumps(link.model_dump(by_alias=True, exclude_none=True))


# ── Session shape ───────────────────────────────────────────────────

def find_last_meaningful_event(events: list[StoredEvent]) -> Optional[StoredEvent]:
    """Last non-broadcast event, falling back to the last event."""
    for event in reversed(events):
        if event.event not in BROADCAST_EVENTS:
            return event
    return events[-1] if events else None


def is_ghost_session(events: list[StoredEvent]) -> bool:
    return bool(events) and all(event.event in BROADCAST_EVENTS for event in events)


# ── Agent naming ────────────────────────────────────────────────────

def is_uuid_like(value: str) -> bool:
    return bool(_UUID_LIKE_PATTERN.match(value or ""))


def sanitize_agent_name(raw_name: Optional[str], agent_id: str) -> str:
    """Human-friendly agent name; first 8 chars of the id when the name is missing or UUID-like."""
    if raw_name and not is_uuid_like(raw_name):
        return raw_name
    return agent_id[:8]


def spawn_links(links: Iterable[LinkEvent]) -> list[SpawnLink]:
    return [link for link in links if isinstance(link, SpawnLink)]


def deduplicate_spawns(spawns: Iterable[SpawnLink]) -> list[SpawnLink]:
    """Keep the first spawn per agent id; resumed agents spawn again."""
    seen: set[str] = set()
    unique: list[SpawnLink] = []
    for spawn in spawns:
        if spawn.agent_id in seen:
            continue
        seen.add(spawn.agent_id)
        unique.append(spawn)
    return unique


def build_name_map(links: Iterable[LinkEvent]) -> dict[str, str]:
    return {
        spawn.agent_id: spawn.agent_name or spawn.agent_type
        for spawn in deduplicate_spawns(spawn_links(links))
    }


def resolve_name(agent_id: str, name_map: dict[str, str]) -> str:
    return name_map.get(agent_id, agent_id)


def resolve_id(name: str, name_map: dict[str, str]) -> str:
    for agent_id, agent_name in name_map.items():
        if agent_name == name:
            return agent_id
    return name


def resolve_parent_session(
    name_or_id: str,
    spawns: list[SpawnLink],
    name_map: Optional[dict[str, str]] = None,
) -> tuple[str, str]:
    """Return ``(parent_id, parent_name)`` for an agent, or ``("leader", "leader")``."""
    for spawn in spawns:
        if spawn.agent_name == name_or_id or spawn.agent_id == name_or_id:
            parent_name = resolve_name(spawn.parent_session, name_map) if name_map is not None else spawn.parent_session
            return spawn.parent_session, parent_name
    return "leader", "leader"


# ── Link filtering ──────────────────────────────────────────────────

def collect_agent_ids(session_id: str, spawns: list[SpawnLink]) -> set[str]:
    """Session id plus every agent transitively spawned from it."""
    agent_ids = {session_id}
    while True:
        expanded = agent_ids | {spawn.agent_id for spawn in spawns if spawn.parent_session in agent_ids}
        if len(expanded) == len(agent_ids):
            return agent_ids
        agent_ids = expanded


def filter_links_for_session(session_id: str, links: list[LinkEvent]) -> list[LinkEvent]:
    """Links owned by a session and its descendant agents.

    ``task_complete`` and ``teammate_idle`` are also matched by agent name,
    which is not unique across concurrently running sessions.
    """
    spawns = spawn_links(links)
    agent_ids = collect_agent_ids(session_id, spawns)
    agent_names = {spawn.agent_name for spawn in spawns if spawn.agent_id in agent_ids and spawn.agent_name}

    def _owned(link: LinkEvent) -> bool:
        if link.type == "spawn":
            return link.parent_session in agent_ids or link.agent_id in agent_ids
        if link.type == "stop":
            return link.agent_id in agent_ids
        if link.type == "msg_send":
            return link.from_ in agent_ids or link.session_id in agent_ids or link.to in agent_names
        if link.type == "task":
            return link.session_id in agent_ids
        if link.type == "task_complete":
            return link.session_id in agent_ids or link.agent in agent_names
        if link.type == "teammate_idle":
            return link.session_id in agent_ids or link.teammate in agent_names
        if link.type == "team":
            return link.leader_session in agent_ids
        # session_end, config_change, worktree_create, worktree_remove
        return link.session in agent_ids

    return [link for link in links if _owned(link)]
