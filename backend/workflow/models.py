"""Workflow definitions and runtime state.

Definitions (Workflow, WorkflowTrigger, the step variants) are pydantic
models parsed from declarative dicts and frozen once built. Each step is
one member of a tagged union discriminated on ``type``, so the executor
handles an explicit, closed set of step kinds.

Runtime state (WorkflowContext, WorkflowJob, ExecutionResult) are plain
dataclasses owned by the queue and executor.

Definition example:
{
    "name": "notify-on-resolve",
    "trigger": {
        "entity": "Request",
        "event": "update",
        "condition": {"after.status": "resolved", "before.status": {"$ne": "resolved"}}
    },
    "steps": [
        {"type": "notify", "adapter": "slack", "body": "{{ trigger.after.title }} resolved"},
        {"type": "webhook", "url": "https://hooks.example.com/resolved", "payload": {"id": "{{ trigger.after.id }}"}}
    ]
}
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ─── Enums ────────────────────────────────────────────────────

class JobStatus(str, Enum):
    """Lifecycle status of a workflow job."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class TriggerType(str, Enum):
    """Kind of event that instantiated a job."""
    ENTITY = "entity"
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"
    MANUAL = "manual"


EntityEventType = Literal["create", "update", "delete"]


# ─── Definitions ──────────────────────────────────────────────

class _Definition(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class WorkflowTrigger(_Definition):
    """When a workflow instantiates a job. Exactly one variant is populated."""

    manual: bool = False
    entity: Optional[str] = None
    event: Optional[EntityEventType] = None
    condition: Optional[dict[str, Any]] = None
    webhook: Optional[str] = None
    schedule: Optional[str] = None

    @model_validator(mode="after")
    def _one_variant(self) -> "WorkflowTrigger":
        if (self.entity is None) != (self.event is None):
            raise ValueError("Entity trigger requires both 'entity' and 'event'")
        if self.condition is not None and self.entity is None:
            raise ValueError("'condition' is only valid on entity triggers")
        populated = sum([
            self.manual,
            self.entity is not None,
            self.webhook is not None,
            self.schedule is not None,
        ])
        if populated != 1:
            raise ValueError(
                "Trigger must define exactly one of: manual, entity/event, webhook, schedule"
            )
        return self

    @property
    def kind(self) -> TriggerType:
        if self.entity is not None:
            return TriggerType.ENTITY
        if self.webhook is not None:
            return TriggerType.WEBHOOK
        if self.schedule is not None:
            return TriggerType.SCHEDULE
        return TriggerType.MANUAL


class _Step(_Definition):
    # Store the step's result in the execution variables under this name
    assign_to: Optional[str] = Field(default=None, alias="assignTo")


class QueryStep(_Step):
    type: Literal["query"] = "query"
    entity: str = Field(min_length=1)
    action: Literal["create", "update", "delete", "find"]
    data: Optional[dict[str, Any]] = None
    where: Optional[Any] = None


class WebhookStep(_Step):
    type: Literal["webhook"] = "webhook"
    url: str = Field(min_length=1)
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    payload: Optional[Any] = None
    secret: Optional[str] = None  # HMAC signing secret


class NotifyStep(_Step):
    type: Literal["notify"] = "notify"
    adapter: Optional[str] = None
    channel: Optional[str] = None
    to: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    template: Optional[str] = None
    params: Optional[dict[str, Any]] = None
    metadata: Optional[dict[str, Any]] = None


class EmailStep(_Step):
    type: Literal["email"] = "email"
    to: str = Field(min_length=1)
    subject: str = Field(min_length=1)
    body: str = ""
    template: Optional[str] = None


class DelayStep(_Step):
    type: Literal["delay"] = "delay"
    duration: Union[int, float, str]  # milliseconds, or a template resolving to them


class PluginStep(_Step):
    type: Literal["plugin"] = "plugin"
    plugin: str = Field(min_length=1)
    action_name: str = Field(min_length=1, alias="actionName")
    params: dict[str, Any] = Field(default_factory=dict)


class ConditionStep(_Step):
    type: Literal["condition"] = "condition"
    if_: dict[str, Any] = Field(alias="if")
    then: list["WorkflowStep"] = Field(default_factory=list)
    else_: list["WorkflowStep"] = Field(default_factory=list, alias="else")


class LoopStep(_Step):
    type: Literal["loop"] = "loop"
    items: Union[str, list[Any]]
    do: list["WorkflowStep"] = Field(min_length=1)


WorkflowStep = Annotated[
    Union[
        QueryStep,
        WebhookStep,
        NotifyStep,
        EmailStep,
        DelayStep,
        PluginStep,
        ConditionStep,
        LoopStep,
    ],
    Field(discriminator="type"),
]

ConditionStep.model_rebuild()
LoopStep.model_rebuild()


class Workflow(_Definition):
    """Static workflow definition. Re-registering the same name replaces it."""

    name: str = Field(min_length=1)
    description: Optional[str] = None
    trigger: WorkflowTrigger = Field(default_factory=lambda: WorkflowTrigger(manual=True))
    steps: list[WorkflowStep] = Field(default_factory=list)
    enabled: bool = True
    timeout: Optional[int] = Field(default=None, ge=1)  # job timeout override, ms
    retries: Optional[int] = Field(default=None, ge=0)  # max retries override


# ─── Runtime state ────────────────────────────────────────────

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TriggerInfo:
    """What fired the job."""
    type: TriggerType
    entity: Optional[str] = None
    event: Optional[str] = None
    data: Any = None
    before: Any = None
    after: Any = None
    path: Optional[str] = None
    schedule: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "entity": self.entity,
            "event": self.event,
            "data": self.data,
            "before": self.before,
            "after": self.after,
            "path": self.path,
            "schedule": self.schedule,
        }


@dataclass
class WorkflowContext:
    """Runtime input to a job.

    ``variables`` are read-only inputs: the executor works on a copy, so
    every attempt of a job starts from the same values.
    """
    trigger: TriggerInfo
    variables: dict[str, Any] = field(default_factory=dict)
    session: Any = None
    request: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        """Namespace used for ``{{ path }}`` interpolation and condition steps."""
        return {
            "trigger": self.trigger.to_dict(),
            "variables": self.variables,
            "session": self.session,
            "request": self.request,
        }


@dataclass
class WorkflowJob:
    """One runtime instance of a workflow. Owned and mutated by the queue."""
    workflow_name: str
    context: WorkflowContext
    workflow: Workflow = field(repr=False)  # definition snapshot taken at enqueue
    max_retries: int = 3
    timeout_ms: Optional[int] = None
    id: str = field(default_factory=lambda: f"job_{uuid4().hex[:16]}")
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    result: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflow_name": self.workflow_name,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_retries": self.max_retries,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "last_error": self.last_error,
            "result": self.result,
        }


@dataclass
class WorkflowLog:
    level: Literal["debug", "info", "warn", "error"]
    message: str
    data: Any = None
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass
class ExecutionResult:
    """Outcome of one execution attempt."""
    success: bool
    result: Any = None
    error: Optional[Exception] = None
    logs: list[WorkflowLog] = field(default_factory=list)

    @property
    def error_message(self) -> Optional[str]:
        return str(self.error) if self.error else None


@dataclass
class EntityEvent:
    """Entity mutation reported by a query step, fed back to the trigger matcher."""
    entity: str
    event: str
    before: Any = None
    after: Any = None
    source_workflow: str = "unknown"
    depth: int = 0
