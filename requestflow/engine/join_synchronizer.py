"""Join Synchronizer - Decide whether a join node may open"""
from typing import List, Optional

from ..repositories.base import StepHistoryStore
from .graph import WorkflowGraph
from ..utils.logger import get_logger

logger = get_logger(__name__)


class JoinSynchronizer:
    """
    Check convergence of parallel branches

    The branch currently completing is excluded from the predecessor set:
    its own completion commits as part of the same transition. Correctness
    therefore relies on the caller serializing writes per request.
    """

    def __init__(self, store: StepHistoryStore):
        self.store = store

    def predecessors(
        self,
        graph: WorkflowGraph,
        join_node_id: str,
        exclude_step_key: Optional[str] = None
    ) -> List[str]:
        """Sources of edges into the join, in declaration order, without duplicates"""
        keys: List[str] = []
        for edge in graph.incoming(join_node_id):
            if edge.source != exclude_step_key and edge.source not in keys:
                keys.append(edge.source)
        return keys

    def is_join_ready(
        self,
        request_id: str,
        join_node_id: str,
        graph: WorkflowGraph,
        exclude_step_key: Optional[str] = None
    ) -> bool:
        """
        Check if every other branch into the join has completed

        Args:
            request_id: Request being advanced
            join_node_id: Join node to check
            graph: Compiled workflow graph
            exclude_step_key: Branch completing in this transition

        Returns:
            True if the join can be activated
        """
        pending = self.predecessors(graph, join_node_id, exclude_step_key)
        if not pending:
            return True

        completed = self.store.list_completed_steps(request_id, pending)
        waiting = [key for key in pending if key not in completed]

        if waiting:
            logger.info(
                f"Join {join_node_id} waiting on {len(waiting)} branch(es): {waiting}",
                extra={"request_id": request_id, "join_node": join_node_id}
            )
            return False

        logger.debug(
            f"Join {join_node_id} ready",
            extra={"request_id": request_id, "join_node": join_node_id}
        )
        return True
