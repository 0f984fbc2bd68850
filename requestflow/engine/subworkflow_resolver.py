"""
Subworkflow Resolver - Depth-bounded expansion of nested workflows

A subworkflow node names another service. Opening it spawns a child request
for that service, which may itself contain subworkflow nodes. References are
followed explicitly with a depth counter and a visited path so that a
misconfigured definition (A embeds B embeds A) fails at open time instead of
spawning children forever.
"""
from typing import List, Optional, Tuple

from ..config.settings import settings
from ..domain.enums import NodeKind
from ..domain.errors import SubworkflowDepthError
from .definition_loader import DefinitionLoader
from .graph import WorkflowGraph
from ..utils.logger import get_logger

logger = get_logger(__name__)


class SubworkflowResolver:
    """Load and check subworkflow references"""

    def __init__(self, loader: DefinitionLoader, max_depth: Optional[int] = None):
        self.loader = loader
        self.max_depth = max_depth if max_depth is not None else settings.max_subworkflow_depth

    def resolve(
        self,
        service_key: str,
        depth: int = 1,
        path: Tuple[str, ...] = ()
    ) -> WorkflowGraph:
        """
        Load a subworkflow and verify its own nested references

        Args:
            service_key: Service referenced by the subworkflow node
            depth: Nesting level of service_key (1 = direct child)
            path: Service keys of the enclosing workflows, outermost first

        Returns:
            Compiled graph of the referenced service

        Raises:
            SubworkflowDepthError: On depth overflow or a reference cycle
            DefinitionError: If a referenced service has no workflow
        """
        if service_key in path:
            raise SubworkflowDepthError(
                f"Subworkflow cycle: {' -> '.join(path + (service_key,))}",
                details={"service_key": service_key, "path": list(path)}
            )
        if depth > self.max_depth:
            raise SubworkflowDepthError(
                f"Subworkflow nesting exceeds {self.max_depth} levels at {service_key}",
                details={"service_key": service_key, "path": list(path), "max_depth": self.max_depth}
            )

        graph = self.loader.load(service_key)
        for child in self.child_services(graph):
            self.resolve(child, depth + 1, path + (service_key,))

        logger.debug(
            f"Subworkflow {service_key} resolved at depth {depth}",
            extra={"service_key": service_key}
        )
        return graph

    @staticmethod
    def child_services(graph: WorkflowGraph) -> List[str]:
        return [
            node.data.service_key
            for node in graph.nodes_of_kind(NodeKind.SUBWORKFLOW)
            if node.data.service_key
        ]
