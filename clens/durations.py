"""Effective/active duration helpers shared by stats, agents and journeys."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from clens import config
from clens.models import ActiveDurationResult, TimingGapDecision


@dataclass(frozen=True)
class EffectiveDuration:
    effective_duration_ms: int
    idle_gaps_ms: int
    effective_end_t: int
    wall_duration_ms: int


def compute_effective_duration(
    timestamps: Iterable[int],
    idle_threshold_ms: int = config.IDLE_THRESHOLD_MS,
) -> EffectiveDuration:
    """Wall duration minus every gap longer than the idle threshold.

    ``effective_end_t`` is the timestamp just before the first idle gap, so a
    session that trailed off into a long pause "ends" where work stopped.
    """
    ordered = sorted(timestamps)
    if not ordered:
        return EffectiveDuration(0, 0, 0, 0)
    if len(ordered) == 1:
        return EffectiveDuration(0, 0, ordered[0], 0)

    wall = ordered[-1] - ordered[0]
    idle = 0
    for prev, current in zip(ordered, ordered[1:]):
        gap = current - prev
        if gap > idle_threshold_ms:
            idle += gap

    effective_end_t = ordered[-1]
    for prev, current in zip(ordered, ordered[1:]):
        if current - prev > idle_threshold_ms:
            effective_end_t = prev
            break

    return EffectiveDuration(
        effective_duration_ms=max(0, wall - idle),
        idle_gaps_ms=idle,
        effective_end_t=effective_end_t,
        wall_duration_ms=wall,
    )


def compute_active_duration(
    timing_gaps: Iterable[TimingGapDecision],
    total_duration_ms: int,
) -> ActiveDurationResult:
    idle_ms = 0
    pause_ms = 0
    for gap in timing_gaps:
        if gap.classification == "user_idle":
            idle_ms += gap.gap_ms
        elif gap.classification == "session_pause":
            pause_ms += gap.gap_ms
    return ActiveDurationResult(
        active_ms=max(0, total_duration_ms - idle_ms - pause_ms),
        idle_ms=idle_ms,
        pause_ms=pause_ms,
    )


def format_duration(ms: int) -> str:
    """Human duration label: ``850ms``, ``42s``, ``7m 3s``, ``2h 5m 0s``."""
    if ms < 1000:
        return f"{ms}ms"
    total_seconds = ms // 1000
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"
