"""In-memory store implementing every store interface"""
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple, Union

from ..domain.models import (
    AuditEvent, Delegation, RequestRecord, StepInstance, TaskInstance, WorkflowDefinition
)
from ..domain.enums import RequestStatus, StepStatus, TaskStatus
from ..domain.errors import ConcurrencyError, RequestNotFoundError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class InMemoryStore:
    """
    Keep definitions, directory data and request state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Writes for one request are
    serialized by a per-request lock.
    """

    def __init__(self) -> None:
        self.definitions: Dict[str, Union[WorkflowDefinition, Mapping[str, Any]]] = {}
        self.managers: Dict[str, Optional[str]] = {}
        self.delegations: List[Delegation] = []
        self.sla_minutes: Dict[Tuple[str, str], int] = {}

        self._requests: Dict[str, RequestRecord] = {}
        self._steps: Dict[str, List[StepInstance]] = defaultdict(list)
        self._tasks: Dict[str, List[TaskInstance]] = defaultdict(list)
        self._events: Dict[str, List[AuditEvent]] = defaultdict(list)

        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------
    def add_definition(self, service_key: str, definition: Union[WorkflowDefinition, Mapping[str, Any]]) -> None:
        self.definitions[service_key] = definition

    def set_manager(self, user_id: str, manager_id: Optional[str]) -> None:
        self.managers[user_id] = manager_id

    def add_delegation(self, delegation: Delegation) -> None:
        self.delegations.append(delegation)

    def set_step_duration(self, service_key: str, step_key: str, minutes: int) -> None:
        self.sla_minutes[(service_key, step_key)] = minutes

    # ------------------------------------------------------------------
    # DefinitionSource / DirectoryStore / SlaConfigStore
    # ------------------------------------------------------------------
    def load_definition(self, service_key: str) -> Optional[Union[WorkflowDefinition, Mapping[str, Any]]]:
        return self.definitions.get(service_key)

    def get_manager(self, user_id: str) -> Optional[str]:
        return self.managers.get(user_id)

    def list_active_delegations_from(self, user_id: str, at: datetime) -> List[Delegation]:
        return [d for d in self.delegations if d.from_user == user_id and d.covers(at)]

    def list_active_delegations_to(self, user_id: str, at: datetime) -> List[Delegation]:
        return [d for d in self.delegations if d.to_user == user_id and d.covers(at)]

    def get_step_duration_minutes(self, service_key: str, step_key: str) -> Optional[int]:
        return self.sla_minutes.get((service_key, step_key))

    # ------------------------------------------------------------------
    # StepHistoryStore
    # ------------------------------------------------------------------
    def list_completed_steps(self, request_id: str, step_keys: Iterable[str]) -> Set[str]:
        wanted = set(step_keys)
        return {
            s.step_key for s in self._steps.get(request_id, [])
            if s.step_key in wanted and s.status == StepStatus.COMPLETED
        }

    # ------------------------------------------------------------------
    # RequestStore
    # ------------------------------------------------------------------
    @contextmanager
    def request_lock(self, request_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(request_id, threading.Lock())
        with lock:
            yield

    def create_request(self, record: RequestRecord, steps: List[StepInstance], event: AuditEvent) -> None:
        with self._guard:
            self._requests[record.request_id] = record.model_copy(deep=True)
            self._steps[record.request_id].extend(s.model_copy() for s in steps)
            self._events[record.request_id].append(event)
        logger.info(f"Created request: {record.request_id}", extra={"request_id": record.request_id})

    def get_request(self, request_id: str) -> Optional[RequestRecord]:
        record = self._requests.get(request_id)
        return record.model_copy(deep=True) if record else None

    def list_active_steps(self, request_id: str) -> List[StepInstance]:
        return [s.model_copy() for s in self._steps.get(request_id, []) if s.status == StepStatus.ACTIVE]

    def list_steps(self, request_id: str) -> List[StepInstance]:
        return [s.model_copy() for s in self._steps.get(request_id, [])]

    def list_pending_tasks(self, request_id: str) -> List[TaskInstance]:
        return [t.model_copy() for t in self._tasks.get(request_id, []) if t.status == TaskStatus.PENDING]

    def find_pending_tasks(self, user_ids: List[str], roles: List[str]) -> List[TaskInstance]:
        users, role_set = set(user_ids), set(roles)
        return [
            t.model_copy()
            for tasks in self._tasks.values()
            for t in tasks
            if t.status == TaskStatus.PENDING
            and (t.assigned_user in users or t.assigned_role in role_set)
        ]

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
        with self._guard:
            record = self._requests.get(request_id)
            if record is None:
                raise RequestNotFoundError(f"Request {request_id} not found")
            if record.version != expected_version:
                raise ConcurrencyError(
                    f"Request {request_id} was modified. Please refresh and try again.",
                    details={"expected_version": expected_version, "actual_version": record.version}
                )

            closing = set(steps_to_complete)
            for step in self._steps[request_id]:
                if step.status == StepStatus.ACTIVE and step.step_key in closing:
                    step.status = StepStatus.COMPLETED
                    step.completed_at = now
            for task in self._tasks[request_id]:
                if task.status == TaskStatus.PENDING and task.step_key in closing:
                    task.status = closed_task_status
                    task.completed_at = now

            self._steps[request_id].extend(s.model_copy() for s in new_steps)
            self._tasks[request_id].extend(t.model_copy() for t in new_tasks)
            self._events[request_id].append(event)

            updates: Dict[str, Any] = {"status": status, "updated_at": now, "version": expected_version + 1}
            if form_data is not None:
                updates["form_data"] = form_data
            record = record.model_copy(update=updates)
            self._requests[request_id] = record

        logger.info(
            f"Committed transition for {request_id}: {status.value}",
            extra={"request_id": request_id, "status": status.value}
        )
        return record.model_copy(deep=True)

    def list_audit_events(self, request_id: str) -> List[AuditEvent]:
        return list(self._events.get(request_id, []))
