"""Data models for workflow runs and decomposed task graphs.

Uses Pydantic for schema-enforced state that round-trips through the store.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class ExecutionStatus(str, Enum):
    """Status of a workflow run."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.ERROR)


class NodeRunStatus(str, Enum):
    """Status of a single node within a run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class HistoryAction(str, Enum):
    """Entries recorded in the run history log."""

    START = "start"
    COMPLETE = "complete"
    ERROR = "error"
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    VARIABLE = "variable"


class SubtaskStatus(str, Enum):
    """Status of a subtask in a task graph."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SubtaskStatus.COMPLETED, SubtaskStatus.FAILED)


class TaskGraphStatus(str, Enum):
    """Overall status of a task graph."""

    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentType(str, Enum):
    """Agent types a subtask can be dispatched to."""

    # External tool agents
    RESEARCH = "research"
    EMAIL_OUTREACH = "email-outreach"
    MEETING_SCHEDULER = "meeting-scheduler"
    DATA_ANALYZER = "data-analyzer"
    LEAD_QUALIFIER = "lead-qualifier"

    # Internal text builders
    SUMMARY = "summary"
    ANALYSIS = "analysis"
    EXPLANATION = "explanation"
    COMPARISON = "comparison"
    RECOMMENDATION = "recommendation"
    PLANNING = "planning"
    COMPILATION = "compilation"

    @classmethod
    def coerce(cls, value: Any) -> "AgentType | None":
        """Return the matching member, or None if value is not on the allow-list."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


# --- Workflow run state ---


class NodeExecutionState(BaseModel):
    """Execution record for one node of a run."""

    node_id: str
    status: NodeRunStatus = NodeRunStatus.IDLE
    inputs: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class HistoryEntry(BaseModel):
    """One entry in the append-only run history."""

    action: HistoryAction
    node_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utc_now)


# --- Task graph ---


class Subtask(BaseModel):
    """A unit of work in a flat task graph, linked only by dependency ids."""

    id: str
    description: str
    agent_type: AgentType = AgentType.RESEARCH
    status: SubtaskStatus = SubtaskStatus.NOT_STARTED
    result: str | None = None
    error: str | None = None
    depends_on: list[str] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None


class TaskGraph(BaseModel):
    """Durable record of one decomposed query and its subtasks."""

    id: str
    original_query: str
    analysis: str = ""
    subtasks: list[Subtask] = Field(default_factory=list)
    status: TaskGraphStatus = TaskGraphStatus.PLANNING
    final_result: str | None = None
    intent: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    def get_subtask(self, subtask_id: str) -> Subtask | None:
        for subtask in self.subtasks:
            if subtask.id == subtask_id:
                return subtask
        return None

    @property
    def subtask_ids(self) -> set[str]:
        return {s.id for s in self.subtasks}

    def all_terminal(self) -> bool:
        return all(s.status.is_terminal for s in self.subtasks)


class ExecutionState(BaseModel):
    """Durable, resumable record of one workflow run."""

    workflow_id: str
    session_id: str
    status: ExecutionStatus = ExecutionStatus.IDLE
    # While paused this names the node that runs first on resume
    current_node_id: str | None = None
    node_states: dict[str, NodeExecutionState] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)
    history: list[HistoryEntry] = Field(default_factory=list)
    tasks: list[TaskGraph] = Field(default_factory=list)
    step_count: int = 0
    error: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    def record(self, action: HistoryAction, node_id: str | None = None, **details: Any) -> None:
        self.history.append(HistoryEntry(action=action, node_id=node_id, details=details))
        self.updated_at = _utc_now()


# --- Results ---


class ExecutionResult(BaseModel):
    """Outcome of start/resume."""

    success: bool
    workflow_id: str
    session_id: str
    status: ExecutionStatus
    outputs: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class TaskExecutionResult(BaseModel):
    """Outcome of executing a whole task graph."""

    success: bool
    task_id: str
    original_query: str
    result: str | None = None
    error: str | None = None
    subtasks: list[Subtask] = Field(default_factory=list)
