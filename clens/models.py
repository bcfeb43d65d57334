"""Pydantic models for captured hook events, link events and distilled output."""
from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# ── Captured events ─────────────────────────────────────────────────

class SessionStartContext(BaseModel):
    project_dir: str = ""
    cwd: str = ""
    git_branch: Optional[str] = None
    git_remote: Optional[str] = None
    git_commit: Optional[str] = None
    git_worktree: Optional[str] = None
    team_name: Optional[str] = None
    task_list_dir: Optional[str] = None
    claude_entrypoint: Optional[str] = None
    model: Optional[str] = None
    agent_type: Optional[str] = None
    source: Optional[str] = None  # "startup" | "resume" | "clear" | "compact"
    trigger: Optional[str] = None  # "manual" | "auto"


class StoredEvent(BaseModel):
    t: int
    event: str
    sid: str
    data: dict[str, Any] = Field(default_factory=dict)
    context: Optional[SessionStartContext] = None

    @property
    def tool_name(self) -> Optional[str]:
        value = self.data.get("tool_name")
        return value if isinstance(value, str) and value else None

    @property
    def tool_use_id(self) -> Optional[str]:
        value = self.data.get("tool_use_id")
        return value if isinstance(value, str) and value else None

    @property
    def tool_input(self) -> dict[str, Any]:
        value = self.data.get("tool_input")
        return value if isinstance(value, dict) else {}

    @property
    def file_path(self) -> Optional[str]:
        value = self.tool_input.get("file_path") or self.tool_input.get("path")
        return value if isinstance(value, str) and value else None

    @property
    def is_interrupt(self) -> bool:
        return self.data.get("is_interrupt") is True


# ── Link events ─────────────────────────────────────────────────────

class _LinkBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    t: int


class SpawnLink(_LinkBase):
    type: Literal["spawn"] = "spawn"
    parent_session: str
    agent_id: str
    agent_type: str
    agent_name: Optional[str] = None


class StopLink(_LinkBase):
    type: Literal["stop"] = "stop"
    parent_session: str
    agent_id: str
    transcript_path: Optional[str] = None


class MessageLink(_LinkBase):
    type: Literal["msg_send"] = "msg_send"
    msg_id: Optional[str] = None
    session_id: str
    from_: str = Field(alias="from")  # sender session id
    from_name: Optional[str] = None
    to: str  # recipient agent name
    to_id: Optional[str] = None
    msg_type: str
    summary: Optional[str] = None
    content_hash: Optional[str] = None


class TaskLink(_LinkBase):
    type: Literal["task"] = "task"
    action: str  # "create" | "assign" | "status_change"
    task_id: str
    session_id: str
    agent: Optional[str] = None
    subject: Optional[str] = None
    owner: Optional[str] = None
    status: Optional[str] = None


class TeamLink(_LinkBase):
    type: Literal["team"] = "team"
    team_name: str
    leader_session: str


class TeammateIdleLink(_LinkBase):
    type: Literal["teammate_idle"] = "teammate_idle"
    teammate: str
    session_id: Optional[str] = None
    team: Optional[str] = None


class TaskCompleteLink(_LinkBase):
    type: Literal["task_complete"] = "task_complete"
    task_id: str
    agent: str
    session_id: Optional[str] = None
    subject: Optional[str] = None


class SessionEndLink(_LinkBase):
    type: Literal["session_end"] = "session_end"
    session: str
    reason: Optional[str] = None


class ConfigChangeLink(_LinkBase):
    type: Literal["config_change"] = "config_change"
    session: str
    key: Optional[str] = None


class WorktreeCreateLink(_LinkBase):
    type: Literal["worktree_create"] = "worktree_create"
    session: str
    worktree_name: Optional[str] = None
    branch: Optional[str] = None


class WorktreeRemoveLink(_LinkBase):
    type: Literal["worktree_remove"] = "worktree_remove"
    session: str
    worktree_name: Optional[str] = None


LinkEvent = Annotated[
    Union[
        SpawnLink,
        StopLink,
        MessageLink,
        TaskLink,
        TeamLink,
        TeammateIdleLink,
        TaskCompleteLink,
        SessionEndLink,
        ConfigChangeLink,
        WorktreeCreateLink,
        WorktreeRemoveLink,
    ],
    Field(discriminator="type"),
]


# ── Transcript-derived records ──────────────────────────────────────

class TranscriptReasoning(BaseModel):
    t: int
    thinking: str
    tool_use_id: Optional[str] = None
    tool_name: Optional[str] = None
    intent_hint: Optional[str] = None  # "planning" | "debugging" | "research" | "deciding" | "general"
    truncated: Optional[bool] = None


class TranscriptUserMessage(BaseModel):
    t: int
    content: str
    is_tool_result: bool = False
    message_type: Optional[str] = None  # "prompt" | "command" | "system" | "teammate" | "image"
    teammate_name: Optional[str] = None
    image_path: Optional[str] = None


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0


# ── Stats ───────────────────────────────────────────────────────────

class CostEstimate(BaseModel):
    model: str
    estimated_input_tokens: int = 0
    estimated_output_tokens: int = 0
    estimated_cost_usd: float = 0.0
    cache_read_tokens: Optional[int] = None
    cache_creation_tokens: Optional[int] = None
    is_estimated: Optional[bool] = None


class StatsResult(BaseModel):
    total_events: int = 0
    duration_ms: int = 0
    events_by_type: dict[str, int] = Field(default_factory=dict)
    tools_by_name: dict[str, int] = Field(default_factory=dict)
    tool_call_count: int = 0
    failure_count: int = 0
    failure_rate: float = 0.0
    unique_files: list[str] = Field(default_factory=list)
    model: Optional[str] = None
    cost_estimate: Optional[CostEstimate] = None
    failures_by_tool: Optional[dict[str, int]] = None


class AgentStats(BaseModel):
    tool_call_count: int = 0
    failure_count: int = 0
    tools_by_name: dict[str, int] = Field(default_factory=dict)
    unique_files: list[str] = Field(default_factory=list)
    token_usage: Optional[TokenUsage] = None


class ActiveDurationResult(BaseModel):
    active_ms: int = 0
    idle_ms: int = 0
    pause_ms: int = 0


# ── Backtracks, decisions, phases ───────────────────────────────────

class BacktrackResult(BaseModel):
    type: str  # "failure_retry" | "iteration_struggle" | "debugging_loop"
    tool_name: str
    file_path: Optional[str] = None
    attempts: int
    start_t: int
    end_t: int
    tool_use_ids: list[str] = Field(default_factory=list)
    error_message: Optional[str] = None
    command: Optional[str] = None


class TimingGapDecision(BaseModel):
    type: Literal["timing_gap"] = "timing_gap"
    t: int
    gap_ms: int
    classification: str  # "user_idle" | "session_pause" | "agent_thinking"


class ToolPivotDecision(BaseModel):
    type: Literal["tool_pivot"] = "tool_pivot"
    t: int
    from_tool: str
    to_tool: str
    after_failure: bool


class PhaseBoundaryDecision(BaseModel):
    type: Literal["phase_boundary"] = "phase_boundary"
    t: int
    phase_name: str
    phase_index: int


class AgentSpawnDecision(BaseModel):
    type: Literal["agent_spawn"] = "agent_spawn"
    t: int
    agent_id: str
    agent_name: str
    agent_type: str
    parent_session: str


class TaskDelegationDecision(BaseModel):
    type: Literal["task_delegation"] = "task_delegation"
    t: int
    task_id: str
    agent_name: str
    subject: Optional[str] = None


class TaskCompletionDecision(BaseModel):
    type: Literal["task_completion"] = "task_completion"
    t: int
    task_id: str
    agent_name: str
    subject: Optional[str] = None


DecisionPoint = Annotated[
    Union[
        TimingGapDecision,
        ToolPivotDecision,
        PhaseBoundaryDecision,
        AgentSpawnDecision,
        TaskDelegationDecision,
        TaskCompletionDecision,
    ],
    Field(discriminator="type"),
]


class PhaseInfo(BaseModel):
    name: str
    start_t: int
    end_t: int
    tool_types: list[str] = Field(default_factory=list)
    description: str = ""


# ── Files, edits, diffs ─────────────────────────────────────────────

class FileMapEntry(BaseModel):
    file_path: str
    reads: int = 0
    edits: int = 0
    writes: int = 0
    errors: int = 0
    tool_use_ids: list[str] = Field(default_factory=list)
    source: Optional[str] = None  # "tool" | "bash"


class FileMapResult(BaseModel):
    files: list[FileMapEntry] = Field(default_factory=list)


class GitDiffHunk(BaseModel):
    commit_hash: str
    file_path: str
    additions: int = 0
    deletions: int = 0
    matched_tool_use_id: Optional[str] = None


class WorkingTreeChange(BaseModel):
    file_path: str
    status: str  # "modified" | "added" | "deleted" | "renamed"
    additions: Optional[int] = None
    deletions: Optional[int] = None


class GitDiffResult(BaseModel):
    commits: list[str] = Field(default_factory=list)
    hunks: list[GitDiffHunk] = Field(default_factory=list)
    working_tree_changes: Optional[list[WorkingTreeChange]] = None
    staged_changes: Optional[list[WorkingTreeChange]] = None


class EditStep(BaseModel):
    tool_use_id: str
    t: int
    tool_name: str  # "Edit" | "Write" | "Read"
    outcome: str  # "success" | "failure" | "info"
    old_string_preview: Optional[str] = None
    new_string_preview: Optional[str] = None
    old_string_lines: Optional[int] = None
    new_string_lines: Optional[int] = None
    content_lines: Optional[int] = None
    error_preview: Optional[str] = None
    thinking_preview: Optional[str] = None
    thinking_intent: Optional[str] = None
    backtrack_type: Optional[str] = None


class EditChain(BaseModel):
    file_path: str
    steps: list[EditStep] = Field(default_factory=list)
    total_edits: int = 0
    total_failures: int = 0
    total_reads: int = 0
    effort_ms: int = 0
    has_backtrack: bool = False
    surviving_edit_ids: list[str] = Field(default_factory=list)
    abandoned_edit_ids: list[str] = Field(default_factory=list)
    agent_name: Optional[str] = None


class DiffLine(BaseModel):
    type: str  # "add" | "remove" | "context"
    content: str
    agent_name: Optional[str] = None
    line_number: Optional[int] = None


class FileDiffAttribution(BaseModel):
    file_path: str
    lines: list[DiffLine] = Field(default_factory=list)
    total_additions: int = 0
    total_deletions: int = 0


class EditChainsResult(BaseModel):
    chains: list[EditChain] = Field(default_factory=list)
    net_changes: Optional[list[WorkingTreeChange]] = None
    diff_attribution: Optional[list[FileDiffAttribution]] = None


# ── Team and communication ──────────────────────────────────────────

class TeamTask(BaseModel):
    task_id: str
    agent: str
    subject: Optional[str] = None
    t: int


class IdleTransition(BaseModel):
    teammate: str
    t: int


class TeamMetrics(BaseModel):
    agent_count: int = 0
    task_completed_count: int = 0
    idle_event_count: int = 0
    teammate_names: list[str] = Field(default_factory=list)
    tasks: list[TeamTask] = Field(default_factory=list)
    idle_transitions: list[IdleTransition] = Field(default_factory=list)
    utilization_ratio: Optional[float] = None


class CommunicationEdge(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_id: str
    from_name: str
    to_id: str
    to_name: str
    from_: str = Field(alias="from")
    to: str
    count: int = 0
    msg_types: list[str] = Field(default_factory=list)
    edge_type: Optional[str] = None  # "message" | "task_complete" | "idle_notify" | "task_assign"


class CommunicationSequenceEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    t: int
    from_id: str
    from_name: str
    to_id: str
    to_name: str
    from_: str = Field(alias="from")
    to: str
    msg_type: str
    summary: Optional[str] = None
    content_preview: Optional[str] = None
    edge_type: Optional[str] = None


class ConversationGroup(BaseModel):
    participants: list[str] = Field(default_factory=list)  # sorted pair
    messages: list[CommunicationSequenceEntry] = Field(default_factory=list)


class AgentLifetime(BaseModel):
    agent_id: str
    agent_name: Optional[str] = None
    start_t: int
    end_t: int
    agent_type: str


class AgentMessage(BaseModel):
    t: int
    direction: str  # "sent" | "received"
    partner: str
    msg_type: str
    summary: Optional[str] = None


class AgentTaskEvent(BaseModel):
    t: int
    action: str  # "create" | "assign" | "status_change" | "complete"
    task_id: str
    subject: Optional[str] = None
    status: Optional[str] = None
    owner: Optional[str] = None


class AgentIdlePeriod(BaseModel):
    t: int
    teammate: str


class AgentCommunicationPartner(BaseModel):
    name: str
    sent_count: int = 0
    received_count: int = 0
    total_count: int = 0
    msg_types: list[str] = Field(default_factory=list)


class AgentNode(BaseModel):
    session_id: str
    agent_type: str
    agent_name: Optional[str] = None
    duration_ms: int = 0
    tool_call_count: int = 0
    children: list[AgentNode] = Field(default_factory=list)
    tasks_completed: Optional[int] = None
    idle_count: Optional[int] = None
    model: Optional[str] = None
    transcript_path: Optional[str] = None
    task_prompt: Optional[str] = None
    stats: Optional[AgentStats] = None
    file_map: Optional[FileMapResult] = None
    cost_estimate: Optional[CostEstimate] = None
    messages: Optional[list[AgentMessage]] = None
    task_events: Optional[list[AgentTaskEvent]] = None
    idle_periods: Optional[list[AgentIdlePeriod]] = None
    communication_partners: Optional[list[AgentCommunicationPartner]] = None
    edit_chains: Optional[EditChainsResult] = None
    backtracks: Optional[list[BacktrackResult]] = None
    reasoning: Optional[list[TranscriptReasoning]] = None


class AgentDistillResult(BaseModel):
    stats: AgentStats
    file_map: FileMapResult
    model: Optional[str] = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    cost_estimate: Optional[CostEstimate] = None
    task_prompt: Optional[str] = None
    edit_chains: Optional[EditChainsResult] = None
    backtracks: Optional[list[BacktrackResult]] = None
    reasoning: Optional[list[TranscriptReasoning]] = None


class AggregatedTeamData(BaseModel):
    stats: StatsResult
    file_map: FileMapResult
    edit_chains: EditChainsResult
    backtracks: list[BacktrackResult] = Field(default_factory=list)
    reasoning: list[TranscriptReasoning] = Field(default_factory=list)
    cost_estimate: Optional[CostEstimate] = None


# ── Summary and timeline ────────────────────────────────────────────

class KeyMetrics(BaseModel):
    duration_human: str
    tool_calls: int = 0
    failures: int = 0
    files_modified: int = 0
    backtrack_count: int = 0
    active_duration_human: Optional[str] = None
    active_duration_ms: Optional[int] = None
    abandoned_edits: Optional[int] = None
    edit_chains_count: Optional[int] = None


class TopError(BaseModel):
    tool_name: str
    count: int
    sample_message: Optional[str] = None


class AgentWorkload(BaseModel):
    name: str
    id: str
    tool_calls: int = 0
    files_modified: int = 0
    duration_ms: int = 0


class DistilledSummary(BaseModel):
    narrative: str
    phases: list[PhaseInfo] = Field(default_factory=list)
    key_metrics: KeyMetrics
    top_errors: Optional[list[TopError]] = None
    task_summary: Optional[list[TeamTask]] = None
    agent_workload: Optional[list[AgentWorkload]] = None


class TimelineEntry(BaseModel):
    t: int
    type: str
    tool_name: Optional[str] = None
    tool_use_id: Optional[str] = None
    content_preview: Optional[str] = None
    phase_index: Optional[int] = None
    teammate_name: Optional[str] = None
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    task_id: Optional[str] = None
    task_subject: Optional[str] = None
    msg_from: Optional[str] = None
    msg_to: Optional[str] = None


# ── Plan drift and journeys ─────────────────────────────────────────

class PlanDriftReport(BaseModel):
    spec_path: str
    expected_files: list[str] = Field(default_factory=list)
    actual_files: list[str] = Field(default_factory=list)
    unexpected_files: list[str] = Field(default_factory=list)
    missing_files: list[str] = Field(default_factory=list)
    drift_score: float = 0.0


class SessionChainInput(BaseModel):
    session_id: str
    start_time: int
    end_time: Optional[int] = None
    cwd: Optional[str] = None
    source: Optional[str] = None
    end_reason: Optional[str] = None
    event_count: int = 0
    duration_ms: int = 0
    git_commit: Optional[str] = None
    first_prompt: Optional[str] = None
    tools_by_name: Optional[dict[str, int]] = None


class JourneyPhase(BaseModel):
    session_id: str
    phase_type: str
    prompt: Optional[str] = None
    spec_ref: Optional[str] = None
    source: str = "startup"  # "startup" | "clear" | "compact"
    duration_ms: int = 0
    event_count: int = 0


class PhaseTransition(BaseModel):
    from_session: str
    to_session: str
    gap_ms: int
    trigger: str  # "clear" | "compact_manual" | "compact_auto"
    git_changed: bool
    prompt_shift: str


class CumulativeStats(BaseModel):
    total_duration_ms: int = 0
    total_events: int = 0
    total_tool_calls: int = 0
    total_failures: int = 0
    phase_count: int = 0
    retry_count: int = 0


class Journey(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    phases: list[JourneyPhase] = Field(default_factory=list)
    transitions: list[PhaseTransition] = Field(default_factory=list)
    spec_ref: Optional[str] = None
    lifecycle_type: str  # "prime-plan-build" | "prime-build" | "build-only" | "single-session" | "ad-hoc"
    cumulative_stats: CumulativeStats
    plan_drift: Optional[PlanDriftReport] = None


# ── Session listing and the distilled record ────────────────────────

class SessionSummary(BaseModel):
    session_id: str
    session_name: Optional[str] = None
    start_time: int
    end_time: Optional[int] = None
    duration_ms: int = 0
    event_count: int = 0
    git_branch: Optional[str] = None
    team_name: Optional[str] = None
    source: Optional[str] = None
    end_reason: Optional[str] = None
    status: str = "incomplete"  # "complete" | "incomplete"
    file_size_bytes: int = 0
    agent_count: Optional[int] = None
    is_distilled: Optional[bool] = None
    has_spec: Optional[bool] = None


class DistilledSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    session_name: Optional[str] = None
    start_time: Optional[int] = None
    stats: StatsResult
    backtracks: list[BacktrackResult] = Field(default_factory=list)
    decisions: list[DecisionPoint] = Field(default_factory=list)
    file_map: FileMapResult = Field(default_factory=FileMapResult)
    git_diff: GitDiffResult = Field(default_factory=GitDiffResult)
    complete: bool = False
    reasoning: list[TranscriptReasoning] = Field(default_factory=list)
    user_messages: list[TranscriptUserMessage] = Field(default_factory=list)
    transcript_path: Optional[str] = None
    summary: Optional[DistilledSummary] = None
    timeline: Optional[list[TimelineEntry]] = None
    agents: Optional[list[AgentNode]] = None
    cost_estimate: Optional[CostEstimate] = None
    team_metrics: Optional[TeamMetrics] = None
    communication_graph: Optional[list[CommunicationEdge]] = None
    edit_chains: Optional[EditChainsResult] = None
    comm_sequence: Optional[list[CommunicationSequenceEntry]] = None
    agent_lifetimes: Optional[list[AgentLifetime]] = None
    plan_drift: Optional[PlanDriftReport] = None
