"""Domain Enumerations - All status and type definitions"""
from enum import Enum


class NodeKind(str, Enum):
    """Closed set of workflow node kinds"""
    START = "start"
    END = "end"
    TASK = "task"
    APPROVAL = "approval"
    ACTION = "action"
    FORK_AND = "fork_and"  # Opens every passing branch
    FORK_OR = "fork_or"    # Opens every passing branch, conditions expected on edges
    JOIN = "join"          # Waits for all incoming branches
    SUBWORKFLOW = "subworkflow"  # Spawns a child request for another service

    @property
    def is_fork(self) -> bool:
        return self in (NodeKind.FORK_AND, NodeKind.FORK_OR)


# Designer / legacy spellings accepted on load
NODE_KIND_ALIASES = {
    "parallel_fork": NodeKind.FORK_AND,
    "fork": NodeKind.FORK_AND,
    "parallel_join": NodeKind.JOIN,
    "merge": NodeKind.JOIN,
}

# Node kinds worked by a person and therefore needing an owner
HUMAN_KINDS = (NodeKind.TASK, NodeKind.APPROVAL, NodeKind.ACTION)


class WorkflowAction(str, Enum):
    """Actions a human actor or administrator can submit"""
    APPROVE = "approve"
    REJECT = "reject"
    COMPLETE = "complete"  # Administrative, ignores edge conditions


class RequestStatus(str, Enum):
    """Visible request status produced by a transition"""
    IN_PROGRESS = "in_progress"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


# Labels shown to end users
REQUEST_STATUS_LABELS = {
    RequestStatus.IN_PROGRESS: "قيد التنفيذ",
    RequestStatus.AWAITING_APPROVAL: "بانتظار الموافقة",
    RequestStatus.COMPLETED: "مكتمل",
    RequestStatus.REJECTED: "مرفوض",
    RequestStatus.CANCELLED: "ملغي",
}


class StepStatus(str, Enum):
    """Persisted step instance status"""
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TaskStatus(str, Enum):
    """Persisted task instance status"""
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ConditionOperator(str, Enum):
    """Operators for simple predicates"""
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"

    @property
    def is_numeric(self) -> bool:
        return self in (
            ConditionOperator.GT, ConditionOperator.LT,
            ConditionOperator.GTE, ConditionOperator.LTE,
        )

    @property
    def is_textual(self) -> bool:
        return self in (
            ConditionOperator.CONTAINS, ConditionOperator.STARTS_WITH,
            ConditionOperator.ENDS_WITH,
        )


# Symbols accepted in string expressions such as "amount > 500"
EXPRESSION_OPERATORS = {
    "==": ConditionOperator.EQ,
    "!=": ConditionOperator.NEQ,
    ">": ConditionOperator.GT,
    "<": ConditionOperator.LT,
    ">=": ConditionOperator.GTE,
    "<=": ConditionOperator.LTE,
}


class ConditionLogic(str, Enum):
    """Combinators for complex predicates"""
    AND = "and"
    OR = "or"


class AuditEventType(str, Enum):
    """Types of request audit events"""
    REQUEST_CREATED = "REQUEST_CREATED"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    COMPLETE = "COMPLETE"
    FORCE_CLOSE = "FORCE_CLOSE"
    JOIN_WAITING = "JOIN_WAITING"
