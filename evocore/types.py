"""Core types shared across all evocore subsystems."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeAlias

from pydantic import BaseModel, ConfigDict, Field

# ── ID Types ──────────────────────────────────────────────────────────────────

AgentId: TypeAlias = str
TaskId: TypeAlias = str
TriggerId: TypeAlias = str
Signature: TypeAlias = str


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Agents ────────────────────────────────────────────────────────────────────


class AgentStatus(str, Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    FAILED = "failed"
    STOPPED = "stopped"


class AgentMetrics(BaseModel):
    """Performance counters kept per agent."""

    tasks_completed: int = 0
    tasks_failed: int = 0
    success_rate: float = 0.0
    average_duration_ms: float = 0.0
    last_active_at: datetime | None = None

    @property
    def tasks_finished(self) -> int:
        return self.tasks_completed + self.tasks_failed


class AgentRecord(BaseModel):
    """A registered worker. Identity is fixed; status and metrics evolve."""

    id: AgentId
    capabilities: set[str] = Field(default_factory=set)
    status: AgentStatus = AgentStatus.INITIALIZING
    metrics: AgentMetrics = Field(default_factory=AgentMetrics)
    registered_at: datetime = Field(default_factory=utcnow)


# ── Tasks ─────────────────────────────────────────────────────────────────────


class TaskStatus(str, Enum):
    CREATED = "created"
    QUEUED = "queued"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskDefinition(BaseModel):
    """What the task is: the capability it needs plus an opaque payload."""

    capability: str
    payload: dict[str, Any] = Field(default_factory=dict)


class Task(BaseModel):
    id: TaskId = Field(default_factory=new_id)
    definition: TaskDefinition
    dependencies: set[TaskId] = Field(default_factory=set)
    priority: int = 0
    status: TaskStatus = TaskStatus.CREATED
    assigned_agent: AgentId | None = None
    error: str = ""
    cancel_requested: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def capability(self) -> str:
        return self.definition.capability

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class Assignment(BaseModel):
    agent_id: AgentId
    task_id: TaskId
    assigned_at: datetime = Field(default_factory=utcnow)


# ── Patterns ──────────────────────────────────────────────────────────────────


class PatternRecord(BaseModel):
    """A deduplicated (context, outcome) observation."""

    signature: Signature
    context: dict[str, Any] = Field(default_factory=dict)
    outcome: dict[str, Any] = Field(default_factory=dict)
    occurrences: int = 1
    confidence: float = 0.5
    first_seen_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime = Field(default_factory=utcnow)
    trigger_emitted: bool = False


class PatternStatistics(BaseModel):
    count: int = 0
    mean_confidence: float = 0.0
    above_threshold: int = 0
    confidence_threshold: float = 0.7
    observations: int = 0
    triggers_emitted: int = 0
    triggers_refused: int = 0


# ── Evolution Triggers ────────────────────────────────────────────────────────


class TriggerKind(str, Enum):
    PATTERN_DETECTED = "pattern_detected"
    HEALTH_DEGRADED = "health_degraded"
    MANUAL_REQUEST = "manual_request"


class TriggerStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


class TriggerPayload(BaseModel):
    """Reference to the record that raised the trigger, plus a data snapshot."""

    ref_type: str  # "pattern", "agent", "subsystem"
    ref_id: str
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def ref(self) -> tuple[str, str]:
        return (self.ref_type, self.ref_id)


class EvolutionTrigger(BaseModel):
    id: TriggerId = Field(default_factory=new_id)
    kind: TriggerKind
    payload: TriggerPayload
    priority: int = 0
    status: TriggerStatus = TriggerStatus.PENDING
    source: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    sequence: int = 0  # assigned by the queue; FIFO tie-break

    @property
    def dedup_key(self) -> tuple[TriggerKind, str, str]:
        return (self.kind, self.payload.ref_type, self.payload.ref_id)


class EvolutionRecord(BaseModel):
    """The outcome of processing one trigger."""

    id: str = Field(default_factory=new_id)
    trigger_id: TriggerId
    kind: TriggerKind
    status: TriggerStatus
    result: dict[str, Any] = Field(default_factory=dict)
    error: str = ""
    processed_at: datetime = Field(default_factory=utcnow)


class QueueStats(BaseModel):
    pending: int = 0
    capacity: int = 0
    enqueued: int = 0
    completed: int = 0
    rejected: int = 0
    dropped: int = 0
    duplicates_refused: int = 0
    pending_by_kind: dict[str, int] = Field(default_factory=dict)


# ── Health ────────────────────────────────────────────────────────────────────


class ProbeOutcome(str, Enum):
    OK = "ok"
    FAILED = "failed"
    TIMEOUT = "timeout"
    ERROR = "error"


class HealthCheckEntry(BaseModel):
    agent_id: AgentId
    previous: AgentStatus
    status: AgentStatus
    outcome: ProbeOutcome
    latency_ms: float = 0.0
    error: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class HealthReport(BaseModel):
    overall: str = "healthy"  # "healthy", "degraded", "unhealthy"
    agents: list[AgentRecord] = Field(default_factory=list)
    by_status: dict[str, int] = Field(default_factory=dict)
    recent: list[HealthCheckEntry] = Field(default_factory=list)
    last_cycle_at: datetime | None = None
    generated_at: datetime = Field(default_factory=utcnow)


# ── Harmony ───────────────────────────────────────────────────────────────────


class HarmonyStatus(str, Enum):
    BALANCED = "balanced"
    UNBALANCED = "unbalanced"
    CRITICAL = "critical"


class HarmonySnapshot(BaseModel):
    """Point-in-time composite health across patterns, tasks and agents."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    pattern_score: float
    task_score: float
    agent_score: float
    overall: float
    status: HarmonyStatus
    weakest: str = ""
    timestamp: datetime = Field(default_factory=utcnow)

    def scores(self) -> dict[str, float]:
        return {
            "patterns": self.pattern_score,
            "tasks": self.task_score,
            "agents": self.agent_score,
        }
