"""Store interfaces consumed by the engine and the request service"""
from datetime import datetime
from typing import (
    Any, ContextManager, Dict, Iterable, List, Mapping, Optional, Protocol, Set, Union
)

from ..domain.models import (
    AuditEvent, Delegation, RequestRecord, StepInstance, TaskInstance, WorkflowDefinition
)
from ..domain.enums import RequestStatus, TaskStatus


class DefinitionSource(Protocol):
    """Loads the current workflow definition for a service"""

    def load_definition(
        self, service_key: str
    ) -> Optional[Union[WorkflowDefinition, Mapping[str, Any]]]:
        """Return the definition document, or None when the service has none."""


class StepHistoryStore(Protocol):
    """Read access to persisted step instances"""

    def list_completed_steps(self, request_id: str, step_keys: Iterable[str]) -> Set[str]:
        """Return the subset of step_keys recorded completed for the request."""


class DirectoryStore(Protocol):
    """Organization hierarchy and delegation lookups"""

    def get_manager(self, user_id: str) -> Optional[str]:
        """Return the manager of user_id, or None at the top of the chain."""

    def list_active_delegations_from(self, user_id: str, at: datetime) -> List[Delegation]:
        """Delegations granted by user_id that cover at."""

    def list_active_delegations_to(self, user_id: str, at: datetime) -> List[Delegation]:
        """Delegations received by user_id that cover at."""


class SlaConfigStore(Protocol):
    """Per-step SLA durations"""

    def get_step_duration_minutes(self, service_key: str, step_key: str) -> Optional[int]:
        """Configured duration in minutes, or None when the step is not tracked."""


class RequestStore(StepHistoryStore, Protocol):
    """Request-scoped mutable state owned by the caller"""

    def request_lock(self, request_id: str) -> ContextManager[None]:
        """Serialize writes for one request."""

    def create_request(
        self,
        record: RequestRecord,
        steps: List[StepInstance],
        event: AuditEvent
    ) -> None:
        """Insert a new request with its initial steps."""

    def get_request(self, request_id: str) -> Optional[RequestRecord]:
        """Fetch a request by id."""

    def list_active_steps(self, request_id: str) -> List[StepInstance]:
        """Active step instances in creation order."""

    def list_pending_tasks(self, request_id: str) -> List[TaskInstance]:
        """Pending tasks in creation order."""

    def find_pending_tasks(self, user_ids: List[str], roles: List[str]) -> List[TaskInstance]:
        """Pending tasks owned by any of the users or any of the roles."""

    def commit_transition(
        self,
        request_id: str,
        expected_version: int,
        status: RequestStatus,
        steps_to_complete: List[str],
        new_steps: List[StepInstance],
        new_tasks: List[TaskInstance],
        event: AuditEvent,
        now: datetime,
        closed_task_status: TaskStatus = TaskStatus.COMPLETED,
        form_data: Optional[Dict[str, Any]] = None
    ) -> RequestRecord:
        """
        Apply one transition atomically.

        Closes active steps whose key is in steps_to_complete together with their
        pending tasks, inserts the new steps and tasks, updates the request status
        and appends the audit event. Raises ConcurrencyError when the stored
        version no longer equals expected_version.
        """

    def list_audit_events(self, request_id: str) -> List[AuditEvent]:
        """Audit trail in append order."""
