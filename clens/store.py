"""On-disk layout: captured session files, the shared link log and distilled records.

::

    <project>/.clens/sessions/<session_id>.jsonl
    <project>/.clens/sessions/_links.jsonl
    <project>/.clens/distilled/<session_id>.json
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from clens import config
from clens.durations import compute_effective_duration
from clens.errors import SessionNotFoundError
from clens.events import (
    decode_jsonl_lines,
    find_last_meaningful_event,
    is_ghost_session,
    parse_event_lines,
    parse_link_lines,
)
from clens.models import DistilledSession, LinkEvent, MessageLink, SessionSummary, SpawnLink, StoredEvent
from clens.transcript import read_session_name, resolve_transcript_path

logger = logging.getLogger("clens.store")

PathLike = Union[str, Path]


def clens_dir(project_dir: PathLike) -> Path:
    return Path(project_dir) / config.CLENS_DIR_NAME


def sessions_dir(project_dir: PathLike) -> Path:
    return clens_dir(project_dir) / config.SESSIONS_DIR_NAME


def distilled_dir(project_dir: PathLike) -> Path:
    return clens_dir(project_dir) / config.DISTILLED_DIR_NAME


def session_path(session_id: str, project_dir: PathLike) -> Path:
    return sessions_dir(project_dir) / f"{session_id}.jsonl"


def links_path(project_dir: PathLike) -> Path:
    return sessions_dir(project_dir) / config.LINKS_FILE_NAME


def distilled_path(session_id: str, project_dir: PathLike) -> Path:
    return distilled_dir(project_dir) / f"{session_id}.json"


def _read_lines(path: Path) -> list[str]:
    return decode_jsonl_lines(path.read_bytes())


# ── Sessions ────────────────────────────────────────────────────────

def read_session_events(session_id: str, project_dir: PathLike) -> list[StoredEvent]:
    """Parsed events of one session; malformed or truncated lines are skipped."""
    path = session_path(session_id, project_dir)
    if not path.exists():
        raise SessionNotFoundError(session_id)
    return parse_event_lines(_read_lines(path))


def _summarize_session(path: Path) -> Optional[SessionSummary]:
    events = parse_event_lines(_read_lines(path))
    if not events or is_ghost_session(events):
        return None

    first = events[0]
    last = find_last_meaningful_event(events)
    complete = last is not None and last.event in ("SessionEnd", "Stop")
    source = first.data.get("source")
    reason = last.data.get("reason") if last is not None else None

    return SessionSummary(
        session_id=path.stem,
        start_time=first.t,
        end_time=last.t if complete and last is not None else None,
        duration_ms=compute_effective_duration(e.t for e in events).effective_duration_ms,
        event_count=len(events),
        git_branch=(first.context.git_branch if first.context else None) or None,
        team_name=(first.context.team_name if first.context else None) or None,
        source=source if isinstance(source, str) else None,
        end_reason=reason if isinstance(reason, str) else None,
        status="complete" if complete else "incomplete",
        file_size_bytes=path.stat().st_size,
    )


def list_sessions(project_dir: PathLike) -> list[SessionSummary]:
    """Captured sessions, newest first; sessions holding only broadcast events are skipped."""
    directory = sessions_dir(project_dir)
    if not directory.exists():
        return []

    sessions: list[SessionSummary] = []
    for path in directory.glob("*.jsonl"):
        if path.name == config.LINKS_FILE_NAME:
            continue
        try:
            summary = _summarize_session(path)
        except OSError as e:
            logger.warning("Failed to read session file %s: %s", path, e)
            continue
        if summary is not None:
            sessions.append(summary)

    sessions.sort(key=lambda s: s.start_time, reverse=True)
    return sessions


def enrich_session_summaries(sessions: list[SessionSummary], project_dir: PathLike) -> list[SessionSummary]:
    """Add agent count, distill status, spec presence and the transcript's session name."""
    links = read_links(project_dir)
    spawn_counts: dict[str, int] = {}
    for link in links:
        if isinstance(link, SpawnLink):
            spawn_counts[link.parent_session] = spawn_counts.get(link.parent_session, 0) + 1
    recipients: dict[str, set[str]] = {}
    for link in links:
        if isinstance(link, MessageLink):
            recipients.setdefault(link.session_id or link.from_, set()).add(link.to)

    enriched = []
    for session in sessions:
        agent_count = spawn_counts.get(session.session_id) or len(recipients.get(session.session_id, ()))
        distilled = distilled_path(session.session_id, project_dir)
        is_distilled = distilled.exists()
        has_spec = False
        if is_distilled:
            try:
                has_spec = '"plan_drift"' in distilled.read_text(encoding="utf-8")
            except OSError as e:
                logger.warning("Failed to read distilled record %s: %s", distilled, e)

        session_name = None
        try:
            transcript = resolve_transcript_path(read_session_events(session.session_id, project_dir))
        except (OSError, SessionNotFoundError):
            transcript = None
        if transcript:
            session_name = read_session_name(transcript)

        enriched.append(
            session.model_copy(
                update={
                    "session_name": session_name or session.session_name,
                    "agent_count": agent_count,
                    "is_distilled": is_distilled,
                    "has_spec": has_spec,
                }
            )
        )
    return enriched


# ── Links ───────────────────────────────────────────────────────────

def read_links(project_dir: PathLike) -> list[LinkEvent]:
    """Every link in the shared log; callers filter to their own session subtree."""
    path = links_path(project_dir)
    if not path.exists():
        return []
    try:
        return parse_link_lines(_read_lines(path))
    except OSError as e:
        logger.warning("Failed to read links file %s: %s", path, e)
        return []


# ── Distilled records ───────────────────────────────────────────────

def read_distilled(session_id: str, project_dir: PathLike) -> Optional[DistilledSession]:
    path = distilled_path(session_id, project_dir)
    if not path.exists():
        return None
    try:
        return DistilledSession.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as e:
        logger.warning("Failed to load distilled record %s: %s", session_id, e)
        return None


def write_distilled(distilled: DistilledSession, project_dir: PathLike) -> Path:
    path = distilled_path(distilled.session_id, project_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(distilled.model_dump_json(by_alias=True, exclude_none=True, indent=2), encoding="utf-8")
    return path
