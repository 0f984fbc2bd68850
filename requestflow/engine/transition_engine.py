"""
Transition Engine - Turn (current step, action, data) into a transition result

The engine is a pure computation over a compiled graph. It never writes:
the caller persists the result, resolves owners for opened steps and stamps
deadlines. The only store access is the read-only join readiness check.

Actions:
- approve: follow non-reject edges whose condition passes; forks keep every
  passing edge, other nodes keep the first one
- reject: follow reject edges, or end the request as rejected when none exist
- complete: administrative, follows every outgoing edge ignoring conditions
"""
from typing import Any, Dict, List, Optional, Union

from ..domain.models import ActiveStep, Node, TransitionResult
from ..domain.enums import HUMAN_KINDS, NodeKind, RequestStatus, WorkflowAction
from ..domain.errors import InvalidStepError, NoTransitionError
from .condition_evaluator import ConditionEvaluator
from .graph import CompiledEdge, WorkflowGraph
from .join_synchronizer import JoinSynchronizer
from .subworkflow_resolver import SubworkflowResolver
from ..utils.logger import get_logger

logger = get_logger(__name__)


START_ALIAS = "start"


class TransitionEngine:
    """
    Compute workflow transitions

    Re-entrant: two branches of one fork may call in concurrently for the
    same request. Join readiness is only as consistent as the store the
    synchronizer reads, so the caller must serialize writes per request.
    """

    def __init__(
        self,
        joins: JoinSynchronizer,
        evaluator: Optional[ConditionEvaluator] = None,
        subworkflows: Optional[SubworkflowResolver] = None
    ):
        self.joins = joins
        self.evaluator = evaluator or ConditionEvaluator()
        self.subworkflows = subworkflows

    def compute_transition(
        self,
        request_id: str,
        graph: WorkflowGraph,
        current_step_key: str,
        action: Union[WorkflowAction, str],
        data_context: Optional[Dict[str, Any]] = None,
        service_key: Optional[str] = None
    ) -> TransitionResult:
        """
        Compute the transition for one action

        Args:
            request_id: Request being advanced
            graph: Compiled definition snapshot of the request
            current_step_key: Step the action was submitted on
            action: approve, reject or complete
            data_context: Form data used by edge conditions
            service_key: Service of the request, used to detect subworkflow cycles

        Returns:
            Steps to close and steps to open

        Raises:
            InvalidStepError: If the step is not in the definition
            NoTransitionError: If approve finds no eligible edge
            SubworkflowDepthError: If an opened subworkflow nests too deep
        """
        action = WorkflowAction(action)
        node = self.current_node(graph, current_step_key)
        context = data_context or {}

        if node.kind == NodeKind.END:
            return TransitionResult(next_status=RequestStatus.COMPLETED)

        edges = graph.outgoing(node.id)

        if action == WorkflowAction.APPROVE:
            chosen = self._approve_edges(node, edges, context)
            if not chosen:
                raise NoTransitionError(
                    f"No valid transition from step {node.id}",
                    details={"request_id": request_id, "step_key": node.id}
                )
        elif action == WorkflowAction.REJECT:
            chosen = [e for e in edges if e.is_reject][:1]
            if not chosen:
                logger.info(
                    f"No reject path from {node.id}, request rejected",
                    extra={"request_id": request_id, "step_key": node.id, "action": action.value}
                )
                return TransitionResult(
                    next_status=RequestStatus.REJECTED,
                    steps_to_complete=[node.id]
                )
        else:
            chosen = edges
            if not chosen:
                return TransitionResult(
                    next_status=RequestStatus.COMPLETED,
                    steps_to_complete=[node.id]
                )

        opened = self._open_targets(request_id, graph, node, chosen, service_key)
        status = self._status_for(opened)

        logger.info(
            f"Transition {node.id} --{action.value}--> {[s.step_key for s in opened]}",
            extra={
                "request_id": request_id,
                "step_key": node.id,
                "action": action.value,
                "status": status.value,
            }
        )
        return TransitionResult(
            next_status=status,
            active_steps_to_create=opened,
            steps_to_complete=[node.id]
        )

    def force_complete(self, request_id: str, active_step_keys: List[str]) -> TransitionResult:
        """
        Administrative close of every active step, bypassing the graph

        Args:
            request_id: Request being closed
            active_step_keys: Keys of all currently active steps

        Returns:
            Result closing every active step and opening nothing
        """
        keys = list(dict.fromkeys(active_step_keys))
        logger.warning(
            f"Force completing {len(keys)} active step(s)",
            extra={"request_id": request_id, "action": WorkflowAction.COMPLETE.value}
        )
        return TransitionResult(
            next_status=RequestStatus.COMPLETED,
            steps_to_complete=keys
        )

    def current_node(self, graph: WorkflowGraph, step_key: str) -> Node:
        """
        Look up the node for a step key

        The literal "start" maps to the start node when no node has that id.
        """
        node = graph.node(step_key)
        if node is None and step_key == START_ALIAS:
            node = graph.start_node
        if node is None:
            raise InvalidStepError(
                f"Step {step_key} not found in workflow definition",
                details={"step_key": step_key}
            )
        return node

    # ========================================================================
    # Internals
    # ========================================================================

    def _approve_edges(
        self,
        node: Node,
        edges: List[CompiledEdge],
        context: Dict[str, Any]
    ) -> List[CompiledEdge]:
        passing = [
            e for e in edges
            if not e.is_reject and (
                e.predicate is None or self.evaluator.evaluate_compiled(e.predicate, context)
            )
        ]
        if node.kind.is_fork:
            return passing
        return passing[:1]

    def _open_targets(
        self,
        request_id: str,
        graph: WorkflowGraph,
        node: Node,
        edges: List[CompiledEdge],
        service_key: Optional[str]
    ) -> List[ActiveStep]:
        opened: List[ActiveStep] = []
        seen = set()

        for edge in edges:
            if edge.target in seen:
                continue
            seen.add(edge.target)
            target = graph.node(edge.target)
            if target is None:
                raise InvalidStepError(
                    f"Edge {edge.edge.id} targets unknown step {edge.target}",
                    details={"request_id": request_id, "step_key": edge.target}
                )

            if target.kind == NodeKind.JOIN and not self.joins.is_join_ready(
                request_id, target.id, graph, exclude_step_key=node.id
            ):
                continue

            child_service = None
            if target.kind == NodeKind.SUBWORKFLOW:
                child_service = target.data.service_key
                if self.subworkflows is not None and child_service:
                    path = (service_key,) if service_key else ()
                    self.subworkflows.resolve(child_service, depth=1, path=path)

            opened.append(ActiveStep(
                step_key=target.id,
                node_kind=target.kind,
                assigned_role=target.role if target.kind in HUMAN_KINDS else None,
                subworkflow_service_key=child_service,
            ))
        return opened

    @staticmethod
    def _status_for(opened: List[ActiveStep]) -> RequestStatus:
        # First opened step drives the visible status
        if not opened:
            return RequestStatus.IN_PROGRESS
        kind = opened[0].node_kind
        if kind == NodeKind.END:
            return RequestStatus.COMPLETED
        if kind == NodeKind.APPROVAL:
            return RequestStatus.AWAITING_APPROVAL
        return RequestStatus.IN_PROGRESS
