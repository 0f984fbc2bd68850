"""
Request Service - Request lifecycle on top of the workflow engine

=============================================================================
COMMIT PROTOCOL
=============================================================================

Every mutation follows the same order:
1. Read the request and its snapshot definition under store.request_lock
2. Compute the whole chain of transitions: the submitted action plus the
   automatic advances through fork/join routing steps
3. Resolve an owner and a deadline for every opened human step
4. Only then commit, one store.commit_transition per transition

A failure in steps 1-3 leaves the request untouched. Join readiness for
routing steps later in the chain sees the completions planned earlier in
the same chain through an overlay on the step history.

Every subworkflow child opened by the chain is planned in step 3 as well,
recursively, so a child that cannot start aborts the parent before its
first write. Planned children are created, and finished children reported
back to their parent, after the lock is released.
=============================================================================
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from ..domain.models import (
    ActiveStep, AuditEvent, RequestRecord, StepInstance, TaskInstance, TransitionResult
)
from ..domain.enums import (
    AuditEventType, NodeKind, RequestStatus, StepStatus, TaskStatus, WorkflowAction
)
from ..domain.errors import (
    EngineError, InvalidStepError, RequestNotFoundError, StepNotActiveError
)
from ..engine.assignee_resolver import AssigneeResolver
from ..engine.definition_loader import DefinitionLoader
from ..engine.graph import WorkflowGraph
from ..engine.join_synchronizer import JoinSynchronizer
from ..engine.sla_calculator import SlaCalculator
from ..engine.transition_engine import START_ALIAS, TransitionEngine
from ..repositories.base import RequestStore, StepHistoryStore
from ..utils.idgen import (
    generate_event_id, generate_request_id, generate_step_instance_id, generate_task_id
)
from ..utils.logger import get_context_logger, get_correlation_id, get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)


# Steps nobody works on: the service advances through them immediately
ROUTING_KINDS = (NodeKind.FORK_AND, NodeKind.FORK_OR, NodeKind.JOIN)

ACTION_EVENTS = {
    WorkflowAction.APPROVE: AuditEventType.APPROVE,
    WorkflowAction.REJECT: AuditEventType.REJECT,
    WorkflowAction.COMPLETE: AuditEventType.COMPLETE,
}


@dataclass
class TransitionPlan:
    """One computed transition, ready to commit"""
    step_key: str
    action: WorkflowAction
    result: TransitionResult
    status: RequestStatus
    steps: List[StepInstance] = field(default_factory=list)
    tasks: List[TaskInstance] = field(default_factory=list)
    closed_task_status: TaskStatus = TaskStatus.COMPLETED
    event_type: Optional[AuditEventType] = None


@dataclass
class _PreparedStart:
    """A request planned down to its subworkflow children, nothing written yet"""
    record: RequestRecord
    start_step: StepInstance
    plans: List[TransitionPlan]
    children: List["_PreparedStart"]
    now: datetime


class _ChainHistory:
    """Step history seen by routing steps planned later in the same chain"""

    def __init__(self, store: StepHistoryStore):
        self.store = store
        self.completed: Set[str] = set()

    def list_completed_steps(self, request_id: str, step_keys: Iterable[str]) -> Set[str]:
        keys = list(step_keys)
        return self.store.list_completed_steps(request_id, keys) | (self.completed & set(keys))


class RequestService:
    """Start requests, apply actions and close requests"""

    def __init__(
        self,
        store: RequestStore,
        loader: DefinitionLoader,
        engine: TransitionEngine,
        resolver: AssigneeResolver,
        sla: SlaCalculator,
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.loader = loader
        self.engine = engine
        self.resolver = resolver
        self.sla = sla
        self.clock = clock

    # =========================================================================
    # Queries
    # =========================================================================

    def get_request(self, request_id: str) -> RequestRecord:
        record = self.store.get_request(request_id)
        if record is None:
            raise RequestNotFoundError(
                f"Request {request_id} not found",
                details={"request_id": request_id}
            )
        return record

    def list_tasks_for_user(self, user_id: str, roles: Iterable[str] = ()) -> List[TaskInstance]:
        """
        Pending tasks a user may act on

        Covers tasks assigned to the user, to any role the user holds, and to
        anyone who currently delegates to the user.
        """
        now = self.clock()
        owners = [user_id] + [
            d.from_user for d in self.resolver.directory.list_active_delegations_to(user_id, now)
        ]
        return self.store.find_pending_tasks(owners, list(roles))

    def overdue_steps(self, request_id: str) -> List[StepInstance]:
        """Active steps whose deadline has passed"""
        now = self.clock()
        return [
            s for s in self.store.list_active_steps(request_id)
            if self.sla.is_overdue(s.deadline, now)
        ]

    def escalation_due_steps(self, request_id: str) -> List[StepInstance]:
        """Active steps past their escalation instant, oldest escalation first"""
        now = self.clock()
        due = [
            s for s in self.store.list_active_steps(request_id)
            if self.sla.is_overdue(s.escalation_at, now)
        ]
        return sorted(due, key=lambda s: s.escalation_at)

    # =========================================================================
    # Start
    # =========================================================================

    def start_request(
        self,
        service_key: str,
        requester_id: str,
        form_data: Optional[Dict[str, Any]] = None,
        parent_request_id: Optional[str] = None,
        parent_step_key: Optional[str] = None
    ) -> RequestRecord:
        """
        Create a request and advance it out of the start step

        Args:
            service_key: Service whose workflow the request follows
            requester_id: User raising the request
            form_data: Submitted form values, used by edge conditions
            parent_request_id: Parent request when spawned by a subworkflow step
            parent_step_key: Subworkflow step of the parent

        Returns:
            The committed request record

        Raises:
            DefinitionError: If the service has no workflow
            EngineError: If the first transition cannot be computed or owned
        """
        prepared = self._prepare_start(
            service_key, requester_id, form_data, parent_request_id, parent_step_key, self.clock()
        )
        return self._launch(prepared)

    def _prepare_start(
        self,
        service_key: str,
        requester_id: str,
        form_data: Optional[Dict[str, Any]],
        parent_request_id: Optional[str],
        parent_step_key: Optional[str],
        now: datetime
    ) -> _PreparedStart:
        definition = self.loader.snapshot(service_key)
        graph = self.loader.compile(service_key, definition)

        record = RequestRecord(
            request_id=generate_request_id(),
            service_key=service_key,
            requester_id=requester_id,
            definition=definition,
            form_data=dict(form_data or {}),
            parent_request_id=parent_request_id,
            parent_step_key=parent_step_key,
            created_at=now,
            updated_at=now,
        )
        start = graph.start_node
        plans = self._plan_chain(record, graph, start.id, WorkflowAction.COMPLETE, record.form_data, [start.id], now)

        start_step = StepInstance(
            step_instance_id=generate_step_instance_id(),
            request_id=record.request_id,
            step_key=start.id,
            started_at=now,
        )
        children = self._prepare_children(record, plans, record.form_data, now)
        return _PreparedStart(record=record, start_step=start_step, plans=plans, children=children, now=now)

    def _launch(self, prepared: _PreparedStart) -> RequestRecord:
        """Write a prepared request, then its children"""
        record = prepared.record
        log = get_context_logger(__name__, request_id=record.request_id, service_key=record.service_key)

        self.store.create_request(record, [prepared.start_step], self._event(
            record.request_id, AuditEventType.REQUEST_CREATED, record.requester_id,
            {"service_key": record.service_key, "definition_version": record.definition.version},
            prepared.now
        ))
        log.info(f"Request created by {record.requester_id}")

        with self.store.request_lock(record.request_id):
            record = self._commit(record, prepared.plans, record.requester_id, prepared.now)

        return self._follow_up(record, prepared.children)

    # =========================================================================
    # Actions
    # =========================================================================

    def submit_action(
        self,
        request_id: str,
        action: Union[WorkflowAction, str],
        step_key: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None
    ) -> RequestRecord:
        """
        Apply a human or administrative action

        Args:
            request_id: Request to advance
            action: approve, reject or complete
            step_key: Step the action targets; recovered from state when omitted or unknown
            data: Form values submitted with the action, merged into the request
            actor_id: User submitting the action

        Returns:
            The committed request record

        Raises:
            RequestNotFoundError: If the request does not exist
            StepNotActiveError: If step_key is known but no longer active
            EngineError: If the transition cannot be computed or owned
            ConcurrencyError: If another writer committed first
        """
        action = WorkflowAction(action)
        with self.store.request_lock(request_id):
            record = self.get_request(request_id)
            if record.status in (RequestStatus.COMPLETED, RequestStatus.REJECTED, RequestStatus.CANCELLED):
                raise StepNotActiveError(
                    f"Request {request_id} is already {record.status.value}",
                    details={"request_id": request_id, "status": record.status.value}
                )

            graph = self.loader.compile(record.service_key, record.definition)
            context = {**record.form_data, **(data or {})}
            active_keys = [s.step_key for s in self.store.list_active_steps(request_id)]
            now = self.clock()

            current = self._resolve_current_step(record, graph, step_key, active_keys)
            plans = self._plan_chain(record, graph, current, action, context, active_keys, now)
            children = self._prepare_children(record, plans, context, now)
            record = self._commit(record, plans, actor_id, now, form_data=context if data else None)

        return self._follow_up(record, children)

    def force_close(self, request_id: str, actor_id: Optional[str] = None) -> RequestRecord:
        """
        Close every active step and cancel every pending task

        Bypasses the graph entirely.
        """
        with self.store.request_lock(request_id):
            record = self.get_request(request_id)
            active_keys = [s.step_key for s in self.store.list_active_steps(request_id)]
            result = self.engine.force_complete(request_id, active_keys)
            plan = TransitionPlan(
                step_key="*",
                action=WorkflowAction.COMPLETE,
                result=result,
                status=result.next_status,
                closed_task_status=TaskStatus.CANCELLED,
                event_type=AuditEventType.FORCE_CLOSE,
            )
            return self._commit(record, [plan], actor_id, self.clock())

    # =========================================================================
    # Planning
    # =========================================================================

    def _resolve_current_step(
        self,
        record: RequestRecord,
        graph: WorkflowGraph,
        step_key: Optional[str],
        active_keys: List[str]
    ) -> str:
        """Given key, else latest pending task, else an active step, else start"""
        if step_key is not None:
            try:
                node = self.engine.current_node(graph, step_key)
            except InvalidStepError:
                logger.warning(
                    f"Step {step_key} not in definition, recovering current step",
                    extra={"request_id": record.request_id, "step_key": step_key}
                )
            else:
                if node.id not in active_keys:
                    raise StepNotActiveError(
                        f"Step {step_key} is not active on request {record.request_id}",
                        details={"request_id": record.request_id, "step_key": step_key}
                    )
                return node.id

        candidates = [t.step_key for t in reversed(self.store.list_pending_tasks(record.request_id))]
        candidates += active_keys
        candidates.append(START_ALIAS)
        for candidate in candidates:
            if graph.node(candidate) is not None or candidate == START_ALIAS:
                return candidate
        return START_ALIAS

    def _plan_chain(
        self,
        record: RequestRecord,
        graph: WorkflowGraph,
        step_key: str,
        action: WorkflowAction,
        context: Dict[str, Any],
        active_keys: List[str],
        now: datetime
    ) -> List[TransitionPlan]:
        history = _ChainHistory(self.store)
        engine = TransitionEngine(JoinSynchronizer(history), self.engine.evaluator, self.engine.subworkflows)
        remaining = list(active_keys)
        plans: List[TransitionPlan] = []
        queue: List[Tuple[str, WorkflowAction]] = [(step_key, action)]
        budget = len(graph.definition.nodes) + 1

        while queue:
            if len(plans) >= budget:
                raise EngineError(
                    "Routing steps loop without reaching a human step",
                    details={"request_id": record.request_id, "step_key": step_key}
                )
            key, act = queue.pop(0)
            plan = self._plan(engine, record, graph, key, act, context, now)

            closed = set(plan.result.steps_to_complete)
            history.completed |= closed
            history.completed |= {s.step_key for s in plan.steps if s.status == StepStatus.COMPLETED}
            remaining = [k for k in remaining if k not in closed]
            remaining += [s.step_key for s in plan.steps if s.status == StepStatus.ACTIVE]

            # Another branch is still open
            if plan.status == RequestStatus.COMPLETED and remaining:
                plan.status = RequestStatus.IN_PROGRESS
            plans.append(plan)

            if plan.status == RequestStatus.REJECTED and remaining:
                plans.append(self._close_siblings(record.request_id, remaining))
                break

            queue.extend(
                (s.step_key, WorkflowAction.APPROVE)
                for s in plan.result.active_steps_to_create
                if s.node_kind in ROUTING_KINDS
            )
        return plans

    def _plan(
        self,
        engine: TransitionEngine,
        record: RequestRecord,
        graph: WorkflowGraph,
        step_key: str,
        action: WorkflowAction,
        context: Dict[str, Any],
        now: datetime
    ) -> TransitionPlan:
        result = engine.compute_transition(
            record.request_id, graph, step_key, action, context, service_key=record.service_key
        )
        assignments = self.resolver.resolve_many(
            record.request_id, result.active_steps_to_create, record.requester_id, at=now
        )

        event_type = ACTION_EVENTS[action]
        if not result.active_steps_to_create and not result.is_terminal:
            event_type = AuditEventType.JOIN_WAITING

        plan = TransitionPlan(
            step_key=engine.current_node(graph, step_key).id,
            action=action,
            result=result,
            status=result.next_status,
            event_type=event_type,
        )
        for step in result.active_steps_to_create:
            plan.steps.append(self._new_step(record, graph, step, now))
            assignment = assignments.get(step.step_key)
            if assignment is not None:
                plan.tasks.append(TaskInstance(
                    task_id=generate_task_id(),
                    request_id=record.request_id,
                    step_key=step.step_key,
                    assigned_user=assignment.assignee_user,
                    assigned_role=assignment.assignee_role,
                    delegated_from=assignment.delegated_from,
                    created_at=now,
                ))
        return plan

    def _new_step(self, record: RequestRecord, graph: WorkflowGraph, step: ActiveStep, now: datetime) -> StepInstance:
        if step.node_kind == NodeKind.END:
            return StepInstance(
                step_instance_id=generate_step_instance_id(),
                request_id=record.request_id,
                step_key=step.step_key,
                status=StepStatus.COMPLETED,
                started_at=now,
                completed_at=now,
            )
        deadline = None
        escalation_at = None
        if step.node_kind not in ROUTING_KINDS:
            deadline = self.sla.calculate_deadline(record.service_key, step.step_key, graph)
            escalation_at = self.sla.calculate_escalation_at(deadline, step.step_key, graph)
        return StepInstance(
            step_instance_id=generate_step_instance_id(),
            request_id=record.request_id,
            step_key=step.step_key,
            started_at=now,
            deadline=deadline,
            escalation_at=escalation_at,
        )

    def _close_siblings(self, request_id: str, remaining: List[str]) -> TransitionPlan:
        result = self.engine.force_complete(request_id, remaining)
        return TransitionPlan(
            step_key="*",
            action=WorkflowAction.COMPLETE,
            result=result,
            status=RequestStatus.REJECTED,
            closed_task_status=TaskStatus.CANCELLED,
            event_type=AuditEventType.FORCE_CLOSE,
        )

    # =========================================================================
    # Commit
    # =========================================================================

    def _commit(
        self,
        record: RequestRecord,
        plans: List[TransitionPlan],
        actor_id: Optional[str],
        now: datetime,
        form_data: Optional[Dict[str, Any]] = None
    ) -> RequestRecord:
        for plan in plans:
            record = self.store.commit_transition(
                request_id=record.request_id,
                expected_version=record.version,
                status=plan.status,
                steps_to_complete=plan.result.steps_to_complete,
                new_steps=plan.steps,
                new_tasks=plan.tasks,
                event=self._event(record.request_id, plan.event_type, actor_id, {
                    "step_key": plan.step_key,
                    "action": plan.action.value,
                    "opened": [s.step_key for s in plan.result.active_steps_to_create],
                    "closed": plan.result.steps_to_complete,
                    "status": plan.status.value,
                }, now),
                now=now,
                closed_task_status=plan.closed_task_status,
                form_data=form_data,
            )
            form_data = None
        return record

    def _event(
        self,
        request_id: str,
        event_type: AuditEventType,
        actor_id: Optional[str],
        details: Dict[str, Any],
        now: datetime
    ) -> AuditEvent:
        return AuditEvent(
            event_id=generate_event_id(),
            request_id=request_id,
            event_type=event_type,
            actor_id=actor_id,
            details=details,
            timestamp=now,
            correlation_id=get_correlation_id(),
        )

    # =========================================================================
    # Subworkflows
    # =========================================================================

    def _prepare_children(
        self,
        record: RequestRecord,
        plans: List[TransitionPlan],
        form_data: Dict[str, Any],
        now: datetime
    ) -> List[_PreparedStart]:
        """Plan a child request for every subworkflow step the chain opens"""
        children: List[_PreparedStart] = []
        for plan in plans:
            for step in plan.result.active_steps_to_create:
                if step.node_kind == NodeKind.SUBWORKFLOW and step.subworkflow_service_key:
                    children.append(self._prepare_start(
                        step.subworkflow_service_key,
                        record.requester_id,
                        form_data,
                        parent_request_id=record.request_id,
                        parent_step_key=step.step_key,
                        now=now,
                    ))
        return children

    def _follow_up(self, record: RequestRecord, children: List[_PreparedStart]) -> RequestRecord:
        """Launch planned children, report a terminal request to its parent"""
        for prepared in children:
            child = self._launch(prepared)
            logger.info(
                f"Spawned child {child.request_id} for step {child.parent_step_key}",
                extra={"request_id": record.request_id, "step_key": child.parent_step_key}
            )
        if children:
            record = self.get_request(record.request_id)

        if record.parent_request_id and record.parent_step_key:
            if record.status == RequestStatus.COMPLETED:
                self.submit_action(record.parent_request_id, WorkflowAction.APPROVE, record.parent_step_key)
            elif record.status == RequestStatus.REJECTED:
                self.submit_action(record.parent_request_id, WorkflowAction.REJECT, record.parent_step_key)
        return record
