"""Single-pass session statistics and cost estimation."""
from __future__ import annotations

import math
from collections import Counter
from typing import Any, Optional

from clens.durations import compute_effective_duration
from clens.models import CostEstimate, StatsResult, StoredEvent, TokenUsage, TranscriptReasoning

# USD per million tokens: (input, output, cache_read, cache_write); prefix match.
_MODEL_PRICING: dict[str, tuple[float, float, float, float]] = {
    "claude-opus-4": (15.0, 75.0, 1.5, 18.75),
    "claude-sonnet-4": (3.0, 15.0, 0.3, 3.75),
    "claude-haiku-4": (0.8, 4.0, 0.08, 1.0),
}

_HEURISTIC_INPUT_TOKENS_PER_EVENT = 500
_HEURISTIC_OUTPUT_TOKENS_PER_TOOL_CALL = 200

_TOOL_EVENTS = {"PreToolUse", "PostToolUse", "PostToolUseFailure"}


def _find_pricing(model: str) -> Optional[tuple[float, float, float, float]]:
    for prefix, rates in _MODEL_PRICING.items():
        if model.startswith(prefix):
            return rates
    return None


def resolve_model(events: list[StoredEvent]) -> Optional[str]:
    """SessionStart context model, then any ``data.model``, then a ConfigChange config."""
    for event in events:
        if event.event == "SessionStart" and event.context and event.context.model:
            return event.context.model
    for event in events:
        model = event.data.get("model")
        if isinstance(model, str) and model:
            return model
    for event in events:
        if event.event != "ConfigChange":
            continue
        cfg = event.data.get("config")
        if isinstance(cfg, dict) and isinstance(cfg.get("model"), str):
            return cfg["model"]
    return None


def estimate_cost_from_tokens(model: str, usage: TokenUsage) -> Optional[CostEstimate]:
    """Price real token counts; None for models missing from the pricing table."""
    rates = _find_pricing(model)
    if rates is None:
        return None
    in_rate, out_rate, cache_read_rate, cache_write_rate = rates
    cost = (
        usage.input_tokens / 1_000_000 * in_rate
        + usage.output_tokens / 1_000_000 * out_rate
        + usage.cache_read_tokens / 1_000_000 * cache_read_rate
        + usage.cache_creation_tokens / 1_000_000 * cache_write_rate
    )
    return CostEstimate(
        model=model,
        estimated_input_tokens=usage.input_tokens,
        estimated_output_tokens=usage.output_tokens,
        estimated_cost_usd=round(cost, 4),
        cache_read_tokens=usage.cache_read_tokens or None,
        cache_creation_tokens=usage.cache_creation_tokens or None,
        is_estimated=False,
    )


def _int_field(payload: dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


def extract_event_token_usage(events: list[StoredEvent]) -> Optional[TokenUsage]:
    """Sum ``usage``/``token_usage`` payloads; None when no event reports tokens."""
    total = TokenUsage()
    found = False
    for event in events:
        usage = event.data.get("usage") or event.data.get("token_usage")
        if not isinstance(usage, dict):
            continue
        input_tokens = _int_field(usage, "input_tokens")
        output_tokens = _int_field(usage, "output_tokens")
        if input_tokens <= 0 and output_tokens <= 0:
            continue
        found = True
        total.input_tokens += input_tokens
        total.output_tokens += output_tokens
        total.cache_read_tokens += _int_field(usage, "cache_read_tokens")
        total.cache_creation_tokens += _int_field(usage, "cache_creation_tokens")
    return total if found else None


def _estimate_cost_heuristic(
    model: Optional[str],
    total_events: int,
    tool_call_count: int,
    reasoning: list[TranscriptReasoning],
) -> Optional[CostEstimate]:
    if not model:
        return None
    rates = _find_pricing(model)
    if rates is None:
        return None
    in_rate, out_rate, _, _ = rates
    reasoning_tokens = math.ceil(sum(len(r.thinking) for r in reasoning) / 4)
    input_tokens = total_events * _HEURISTIC_INPUT_TOKENS_PER_EVENT + reasoning_tokens
    output_tokens = tool_call_count * _HEURISTIC_OUTPUT_TOKENS_PER_TOOL_CALL + reasoning_tokens
    cost = input_tokens / 1_000_000 * in_rate + output_tokens / 1_000_000 * out_rate
    return CostEstimate(
        model=model,
        estimated_input_tokens=input_tokens,
        estimated_output_tokens=output_tokens,
        estimated_cost_usd=round(cost, 4),
        is_estimated=True,
    )


def extract_stats(
    events: list[StoredEvent],
    reasoning: Optional[list[TranscriptReasoning]] = None,
) -> StatsResult:
    if not events:
        return StatsResult()

    events_by_type = Counter(event.event for event in events)
    tools_by_name: Counter[str] = Counter()
    failures_by_tool: Counter[str] = Counter()
    unique_files: dict[str, None] = {}

    for event in events:
        if event.event not in _TOOL_EVENTS:
            continue
        if event.file_path:
            unique_files.setdefault(event.file_path, None)
        if not event.tool_name:
            continue
        if event.event == "PreToolUse":
            tools_by_name[event.tool_name] += 1
        elif event.event == "PostToolUseFailure" and not event.is_interrupt:
            failures_by_tool[event.tool_name] += 1

    tool_call_count = sum(tools_by_name.values())
    failure_count = sum(failures_by_tool.values())
    model = resolve_model(events)

    token_usage = extract_event_token_usage(events)
    if token_usage is not None and model:
        cost_estimate = estimate_cost_from_tokens(model, token_usage)
    else:
        cost_estimate = _estimate_cost_heuristic(model, len(events), tool_call_count, reasoning or [])

    duration = compute_effective_duration(event.t for event in events)

    return StatsResult(
        total_events=len(events),
        duration_ms=duration.effective_duration_ms,
        events_by_type=dict(events_by_type),
        tools_by_name=dict(tools_by_name),
        tool_call_count=tool_call_count,
        failure_count=failure_count,
        failure_rate=failure_count / tool_call_count if tool_call_count > 0 else 0.0,
        unique_files=list(unique_files),
        model=model,
        cost_estimate=cost_estimate,
        failures_by_tool=dict(failures_by_tool) or None,
    )
