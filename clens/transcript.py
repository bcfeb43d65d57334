"""Agent transcript JSONL: reading, reasoning, user prompts and token usage.

Transcript entries are kept as raw dicts; only the handful of keys used
below are relied upon (``type``, ``timestamp``, ``uuid``, ``sessionId``,
``message``).
"""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

from clens.events import decode_jsonl_lines
from clens.models import StoredEvent, TokenUsage, TranscriptReasoning, TranscriptUserMessage

logger = logging.getLogger("clens.transcript")

THINKING_TRUNCATE_LIMIT = 5000
USER_MESSAGE_LIMIT = 2000

_INTENT_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("debugging", re.compile(r"\b(error|fix|bug|fail|crash|broken|issue|wrong|debug)\b")),
    ("planning", re.compile(r"\b(plan|approach|strategy|design|architect|phase|step)\b")),
    ("research", re.compile(r"\b(search|look up|check|investigate|find|read|explore)\b")),
    ("deciding", re.compile(r"\b(should|decide|option|choose|between|alternative|trade.?off)\b")),
)
_TEAMMATE_NAME_PATTERN = re.compile(r'<teammate-message[^>]*\bname="([^"]+)"')
_IMAGE_PATH_PATTERN = re.compile(r"\[Image:\s*([^\]]+)\]")


# ── Reading ─────────────────────────────────────────────────────────

def entry_timestamp_ms(entry: dict[str, Any]) -> int:
    raw = entry.get("timestamp")
    if not isinstance(raw, str) or not raw:
        return 0
    try:
        return int(datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp() * 1000)
    except ValueError:
        return 0


def _is_transcript_entry(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and isinstance(value.get("type"), str)
        and isinstance(value.get("timestamp"), str)
        and isinstance(value.get("uuid"), str)
    )


def _read_lines(path: Union[str, Path]) -> list[str]:
    try:
        raw = Path(path).read_bytes()
    except OSError as e:
        logger.debug("Cannot read transcript %s: %s", path, e)
        return []
    return decode_jsonl_lines(raw)


def read_transcript(path: Union[str, Path]) -> list[dict[str, Any]]:
    """User and assistant entries ordered by timestamp; unparseable lines are skipped."""
    entries: list[dict[str, Any]] = []
    for line in _read_lines(path):
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if _is_transcript_entry(parsed) and parsed["type"] in ("user", "assistant"):
            entries.append(parsed)
    entries.sort(key=entry_timestamp_ms)
    return entries


def resolve_transcript_path(events: list[StoredEvent]) -> Optional[str]:
    for event in events:
        path = event.data.get("transcript_path")
        if isinstance(path, str) and path:
            return path
    return None


def _strip_escaped_quotes(raw: str) -> str:
    trimmed = raw.strip()
    if len(trimmed) >= 2 and trimmed.startswith('"') and trimmed.endswith('"'):
        trimmed = trimmed[1:-1]
    return trimmed.replace("&amp;", "&")


def read_session_name(path: Union[str, Path]) -> Optional[str]:
    """Last ``custom-title`` in the transcript; users may rename a session several times."""
    title: Optional[str] = None
    for line in _read_lines(path):
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict) and parsed.get("type") == "custom-title":
            custom = parsed.get("customTitle")
            if isinstance(custom, str):
                title = _strip_escaped_quotes(custom)
    return title


# ── Content helpers ─────────────────────────────────────────────────

def content_blocks(entry: dict[str, Any]) -> list[dict[str, Any]]:
    message = entry.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def _tool_use_blocks(entry: dict[str, Any]) -> list[dict[str, Any]]:
    return [block for block in content_blocks(entry) if block.get("type") == "tool_use"]


# ── Reasoning ───────────────────────────────────────────────────────

def classify_intent(thinking: str) -> str:
    lowered = thinking.lower()
    for intent, pattern in _INTENT_PATTERNS:
        if pattern.search(lowered):
            return intent
    return "general"


def _correlated_tool(
    entries: list[dict[str, Any]],
    entry_index: int,
    blocks: list[dict[str, Any]],
    block_index: int,
) -> Optional[dict[str, Any]]:
    """The tool_use following a thinking block, in the same message or the next assistant turn."""
    for block in blocks[block_index + 1:]:
        if block.get("type") == "tool_use":
            return block
    for entry in entries[entry_index + 1:]:
        if entry.get("type") != "assistant":
            continue
        tool_blocks = _tool_use_blocks(entry)
        if tool_blocks:
            return tool_blocks[0]
    return None


def extract_reasoning(entries: list[dict[str, Any]]) -> list[TranscriptReasoning]:
    reasoning: list[TranscriptReasoning] = []
    for entry_index, entry in enumerate(entries):
        if entry.get("type") != "assistant":
            continue
        blocks = content_blocks(entry)
        t = entry_timestamp_ms(entry)
        for block_index, block in enumerate(blocks):
            thinking = block.get("thinking")
            if block.get("type") != "thinking" or not isinstance(thinking, str):
                continue
            tool = _correlated_tool(entries, entry_index, blocks, block_index)
            reasoning.append(
                TranscriptReasoning(
                    t=t,
                    thinking=thinking[:THINKING_TRUNCATE_LIMIT],
                    tool_use_id=tool.get("id") if tool else None,
                    tool_name=tool.get("name") if tool else None,
                    intent_hint=classify_intent(thinking),
                    truncated=len(thinking) > THINKING_TRUNCATE_LIMIT,
                )
            )
    return reasoning


# ── User messages ───────────────────────────────────────────────────

def classify_message_type(content: str) -> str:
    if "<command-name>" in content or "<command-message>" in content:
        return "command"
    if "<teammate-message" in content:
        return "teammate"
    if "[Image:" in content or "screenshot" in content:
        return "image"
    if "<local-command" in content or "<system-reminder" in content:
        return "system"
    return "prompt"


def _build_user_message(t: int, raw: str) -> TranscriptUserMessage:
    message_type = classify_message_type(raw)
    teammate_name = None
    image_path = None
    if message_type == "teammate":
        match = _TEAMMATE_NAME_PATTERN.search(raw)
        teammate_name = match.group(1) if match else None
    elif message_type == "image":
        match = _IMAGE_PATH_PATTERN.search(raw)
        image_path = match.group(1).strip() if match else None
    return TranscriptUserMessage(
        t=t,
        content=raw[:USER_MESSAGE_LIMIT],
        is_tool_result=False,
        message_type=message_type,
        teammate_name=teammate_name,
        image_path=image_path,
    )


def extract_user_messages(entries: list[dict[str, Any]]) -> list[TranscriptUserMessage]:
    """User-authored text; tool results are not messages."""
    messages: list[TranscriptUserMessage] = []
    for entry in entries:
        message = entry.get("message")
        if entry.get("type") != "user" or not isinstance(message, dict):
            continue
        t = entry_timestamp_ms(entry)
        content = message.get("content")
        if isinstance(content, str):
            messages.append(_build_user_message(t, content))
            continue
        for block in content_blocks(entry):
            if block.get("type") == "text" and isinstance(block.get("text"), str):
                messages.append(_build_user_message(t, block["text"]))
    return messages


# ── Token usage ─────────────────────────────────────────────────────

def _count(usage: dict[str, Any], key: str) -> int:
    value = usage.get(key)
    return int(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else 0


def extract_token_usage(entries: list[dict[str, Any]]) -> TokenUsage:
    """Per-turn usage summed over assistant entries.

    ``input_tokens`` excludes cached input; cache reads and cache writes are
    reported separately.
    """
    total = TokenUsage()
    for entry in entries:
        if entry.get("type") != "assistant":
            continue
        message = entry.get("message")
        usage = message.get("usage") if isinstance(message, dict) else None
        if not isinstance(usage, dict):
            continue
        total.input_tokens += _count(usage, "input_tokens")
        total.output_tokens += _count(usage, "output_tokens")
        total.cache_read_tokens += _count(usage, "cache_read_input_tokens")
        total.cache_creation_tokens += _count(usage, "cache_creation_input_tokens")
    return total
