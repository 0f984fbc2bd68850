"""Domain Models - Pydantic schemas for definitions, runtime records and results"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from .enums import (
    NodeKind, NODE_KIND_ALIASES, RequestStatus, REQUEST_STATUS_LABELS,
    StepStatus, TaskStatus, AuditEventType
)
from ..utils.time import coerce_datetime, ensure_utc


REJECT_MARKER = "reject"


# ============================================================================
# Conditions
# ============================================================================

class SimpleCondition(BaseModel):
    """Single comparison: {field, operator, value}"""
    model_config = ConfigDict(extra="ignore", frozen=True)

    field: str = Field(..., description="Context key, dotted paths walk nested mappings")
    operator: str = Field(..., description="eq, neq, gt, lt, gte, lte, contains, startsWith, endsWith")
    value: Any = Field(None, description="Value to compare against")


class ComplexCondition(BaseModel):
    """AND/OR combination of nested conditions"""
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    kind: str = Field(..., validation_alias=AliasChoices("kind", "type"), description="and | or")
    conditions: List[Union[str, "SimpleCondition", "ComplexCondition"]] = Field(
        default_factory=list, description="Nested conditions, string expressions included"
    )


Condition = Union[SimpleCondition, ComplexCondition]


# ============================================================================
# Workflow Definition
# ============================================================================

class NodeData(BaseModel):
    """Per-node configuration"""
    model_config = ConfigDict(extra="allow", frozen=True)

    label: Optional[str] = None
    role: Optional[str] = Field(None, description="Role token: literal role or manager-hierarchy token")
    sla_minutes: Optional[int] = Field(None, description="Step duration budget")
    escalation_minutes: Optional[int] = Field(None, description="Minutes after the deadline to escalate")
    business_hours_only: bool = Field(default=False, description="Declared but not applied by the SLA calculator")
    service_key: Optional[str] = Field(None, description="Target service for subworkflow nodes")

    @model_validator(mode="before")
    @classmethod
    def _convert_sla_hours(cls, data: Any) -> Any:
        # Designer stores sla_hours; the engine works in minutes
        if isinstance(data, dict) and data.get("sla_minutes") is None and data.get("sla_hours") is not None:
            data = dict(data)
            data["sla_minutes"] = int(float(data["sla_hours"]) * 60)
        return data


class Node(BaseModel):
    """A step in the workflow graph"""
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    id: str = Field(..., description="Unique within a definition")
    kind: NodeKind = Field(..., validation_alias=AliasChoices("kind", "type"))
    data: NodeData = Field(default_factory=NodeData)

    @model_validator(mode="before")
    @classmethod
    def _normalize_kind(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        raw_kind = data.get("kind", data.get("type"))
        if isinstance(raw_kind, str):
            raw_kind = raw_kind.strip().lower()
            if raw_kind == "gateway":
                # Gateway nodes carry their mode in the label
                label = str((data.get("data") or {}).get("label", "AND")).upper()
                raw_kind = NodeKind.FORK_OR.value if label == "OR" else NodeKind.FORK_AND.value
            raw_kind = NODE_KIND_ALIASES.get(raw_kind, raw_kind)
            data.pop("type", None)
            data["kind"] = raw_kind
        if data.get("data") is None:
            data["data"] = {}
        return data

    @property
    def role(self) -> Optional[str]:
        return self.data.role


class Edge(BaseModel):
    """A directed, optionally condition-guarded transition"""
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    source: str
    target: str
    condition: Optional[Union[SimpleCondition, ComplexCondition, str]] = None
    label: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _lift_designer_condition(cls, data: Any) -> Any:
        # Designer format nests the predicate under edge.data.condition
        if isinstance(data, dict) and data.get("condition") is None:
            nested = data.get("data")
            if isinstance(nested, dict) and nested.get("condition") is not None:
                data = dict(data)
                data["condition"] = nested["condition"]
        return data

    @property
    def is_reject(self) -> bool:
        """Edge taken by the reject action"""
        if self.label and self.label.strip().lower() == REJECT_MARKER:
            return True
        return isinstance(self.condition, str) and self.condition.strip().lower() == REJECT_MARKER


class WorkflowDefinition(BaseModel):
    """Immutable workflow graph for one service"""
    model_config = ConfigDict(extra="ignore", frozen=True)

    version: str = Field(default="1.0")
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)


# ============================================================================
# Runtime Records (owned by the caller's store)
# ============================================================================

class StepInstance(BaseModel):
    """A request occupies, or has completed, a node"""
    model_config = ConfigDict(extra="ignore")

    step_instance_id: str
    request_id: str
    step_key: str
    status: StepStatus = Field(default=StepStatus.ACTIVE)
    started_at: datetime
    completed_at: Optional[datetime] = None
    deadline: Optional[datetime] = None
    escalation_at: Optional[datetime] = None

    @field_validator("started_at", "completed_at", "deadline", "escalation_at", mode="before")
    @classmethod
    def _as_utc(cls, value: Any) -> Any:
        return coerce_datetime(value)


class TaskInstance(BaseModel):
    """Work item for a step, owned by a user xor a role"""
    model_config = ConfigDict(extra="ignore")

    task_id: str
    request_id: str
    step_key: str
    assigned_user: Optional[str] = None
    assigned_role: Optional[str] = None
    delegated_from: Optional[str] = Field(None, description="Original candidate when a delegation applied")
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    created_at: datetime
    completed_at: Optional[datetime] = None

    @field_validator("created_at", "completed_at", mode="before")
    @classmethod
    def _as_utc(cls, value: Any) -> Any:
        return coerce_datetime(value)

    @model_validator(mode="after")
    def _check_owner(self) -> "TaskInstance":
        if (self.assigned_user is None) == (self.assigned_role is None):
            raise ValueError("task must be assigned to exactly one of user or role")
        return self


class Delegation(BaseModel):
    """Time-bounded grant letting one user act on another's behalf"""
    model_config = ConfigDict(extra="ignore")

    delegation_id: str
    from_user: str
    to_user: str
    start: datetime
    end: datetime
    active: bool = True

    @field_validator("start", "end", mode="before")
    @classmethod
    def _as_utc(cls, value: Any) -> Any:
        return coerce_datetime(value)

    def covers(self, at: datetime) -> bool:
        """True when active and at falls in [start, end)"""
        at = ensure_utc(at)
        return self.active and ensure_utc(self.start) <= at < ensure_utc(self.end)


class RequestRecord(BaseModel):
    """A request moving through a workflow"""
    model_config = ConfigDict(extra="ignore")

    request_id: str
    service_key: str
    requester_id: str
    definition: WorkflowDefinition = Field(..., description="Snapshot taken at creation")
    status: RequestStatus = Field(default=RequestStatus.IN_PROGRESS)
    form_data: Dict[str, Any] = Field(default_factory=dict)
    parent_request_id: Optional[str] = None
    parent_step_key: Optional[str] = Field(None, description="Subworkflow step of the parent waiting on this request")
    created_at: datetime
    updated_at: datetime
    version: int = Field(default=1, description="Optimistic concurrency version")

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _as_utc(cls, value: Any) -> Any:
        return coerce_datetime(value)


class AuditEvent(BaseModel):
    """Audit event (append-only)"""
    model_config = ConfigDict(extra="forbid")

    event_id: str
    request_id: str
    event_type: AuditEventType
    actor_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    correlation_id: Optional[str] = None


# ============================================================================
# Engine Results
# ============================================================================

class Assignment(BaseModel):
    """Resolved owner: a concrete user xor a generic role"""
    model_config = ConfigDict(frozen=True)

    assignee_user: Optional[str] = None
    assignee_role: Optional[str] = None
    delegated_from: Optional[str] = None

    @model_validator(mode="after")
    def _check_exclusive(self) -> "Assignment":
        if (self.assignee_user is None) == (self.assignee_role is None):
            raise ValueError("assignment needs exactly one of assignee_user or assignee_role")
        return self


class ActiveStep(BaseModel):
    """A step the caller must open"""
    model_config = ConfigDict(frozen=True)

    step_key: str
    node_kind: NodeKind
    assigned_role: Optional[str] = None
    subworkflow_service_key: Optional[str] = None


class TransitionResult(BaseModel):
    """Steps to close and steps to open for one action"""
    model_config = ConfigDict(frozen=True)

    next_status: RequestStatus
    active_steps_to_create: List[ActiveStep] = Field(default_factory=list)
    steps_to_complete: List[str] = Field(default_factory=list)

    @property
    def next_step_key(self) -> Optional[str]:
        """First step being opened, None when nothing opens"""
        if self.active_steps_to_create:
            return self.active_steps_to_create[0].step_key
        return None

    @property
    def is_terminal(self) -> bool:
        return self.next_status in (RequestStatus.COMPLETED, RequestStatus.REJECTED, RequestStatus.CANCELLED)

    def localized_status(self) -> str:
        return REQUEST_STATUS_LABELS[self.next_status]


ComplexCondition.model_rebuild()
Edge.model_rebuild()
