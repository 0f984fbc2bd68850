"""Workflow Graph - Validated, compiled view of a workflow definition"""
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Set, Union

from pydantic import ValidationError

from ..domain.models import Edge, Node, WorkflowDefinition
from ..domain.enums import HUMAN_KINDS, NodeKind
from ..domain.errors import WorkflowValidationError
from .condition_evaluator import Never, Predicate, compile_condition
from ..utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CompiledEdge:
    """Edge paired with its condition compiled at load time"""
    edge: Edge
    predicate: Optional[Predicate]

    @property
    def source(self) -> str:
        return self.edge.source

    @property
    def target(self) -> str:
        return self.edge.target

    @property
    def is_reject(self) -> bool:
        return self.edge.is_reject

    @property
    def is_conditional(self) -> bool:
        return self.predicate is not None


def parse_definition(raw: Union[WorkflowDefinition, Mapping[str, Any]]) -> WorkflowDefinition:
    """
    Parse a raw definition document

    Raises:
        WorkflowValidationError: If the document does not match the schema
    """
    if isinstance(raw, WorkflowDefinition):
        return raw
    try:
        return WorkflowDefinition.model_validate(raw)
    except ValidationError as e:
        raise WorkflowValidationError(
            f"Invalid definition schema: {e.error_count()} issue(s)",
            details={"errors": [
                {
                    "type": "SCHEMA_ERROR",
                    "message": err["msg"],
                    "path": ".".join(str(p) for p in err["loc"]),
                }
                for err in e.errors()
            ]}
        ) from e


def find_reachable_nodes(start_id: str, edges: List[Edge]) -> Set[str]:
    """Find all nodes reachable from start by following edges"""
    outgoing: Dict[str, List[str]] = {}
    for edge in edges:
        outgoing.setdefault(edge.source, []).append(edge.target)

    reachable = {start_id}
    to_visit = [start_id]
    while to_visit:
        current = to_visit.pop()
        for target in outgoing.get(current, []):
            if target not in reachable:
                reachable.add(target)
                to_visit.append(target)
    return reachable


def validate_definition(definition: WorkflowDefinition) -> Dict[str, Any]:
    """
    Validate workflow structure

    Returns validation result with errors and warnings
    """
    errors: List[Dict[str, Any]] = []
    warnings: List[Dict[str, Any]] = []

    node_ids: Set[str] = set()
    start_ids: List[str] = []
    end_count = 0

    for i, node in enumerate(definition.nodes):
        if node.id in node_ids:
            errors.append({
                "type": "DUPLICATE_NODE_ID",
                "message": f"Duplicate node id: {node.id}",
                "path": f"nodes[{i}].id"
            })
        node_ids.add(node.id)

        if node.kind == NodeKind.START:
            start_ids.append(node.id)
        elif node.kind == NodeKind.END:
            end_count += 1
        elif node.kind == NodeKind.SUBWORKFLOW and not node.data.service_key:
            errors.append({
                "type": "SUBWORKFLOW_NO_SERVICE",
                "message": f"Subworkflow node {node.id} must reference a service",
                "path": f"nodes[{i}].data.service_key"
            })

        if node.kind in HUMAN_KINDS and not (node.role or "").strip():
            errors.append({
                "type": "MISSING_ROLE",
                "message": f"{node.kind.value.capitalize()} node {node.id} must declare a role",
                "path": f"nodes[{i}].data.role"
            })

        if node.data.business_hours_only:
            warnings.append({
                "type": "BUSINESS_HOURS_IGNORED",
                "message": f"Node {node.id} requests business-hours SLA, deadlines use wall-clock time",
                "path": f"nodes[{i}].data.business_hours_only"
            })

    if not start_ids:
        errors.append({
            "type": "MISSING_START",
            "message": "Workflow must have exactly one start node",
            "path": "nodes"
        })
    elif len(start_ids) > 1:
        errors.append({
            "type": "MULTIPLE_START",
            "message": f"Workflow has {len(start_ids)} start nodes, expected exactly one",
            "path": "nodes"
        })

    if end_count == 0:
        errors.append({
            "type": "NO_END",
            "message": "Workflow must have at least one end node",
            "path": "nodes"
        })

    for i, edge in enumerate(definition.edges):
        if edge.source not in node_ids:
            errors.append({
                "type": "INVALID_EDGE_SOURCE",
                "message": f"Edge {edge.id} references non-existent source: {edge.source}",
                "path": f"edges[{i}].source"
            })
        if edge.target not in node_ids:
            errors.append({
                "type": "INVALID_EDGE_TARGET",
                "message": f"Edge {edge.id} references non-existent target: {edge.target}",
                "path": f"edges[{i}].target"
            })
        if edge.condition is not None and not edge.is_reject:
            if isinstance(compile_condition(edge.condition), Never):
                warnings.append({
                    "type": "MALFORMED_CONDITION",
                    "message": f"Condition on edge {edge.id} can never pass",
                    "path": f"edges[{i}].condition"
                })

    if len(start_ids) == 1:
        reachable = find_reachable_nodes(start_ids[0], list(definition.edges))
        for node_id in sorted(node_ids - reachable):
            errors.append({
                "type": "UNREACHABLE_NODE",
                "message": f"Node {node_id} is not reachable from start",
                "path": None
            })

    return {
        "is_valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings
    }


class WorkflowGraph:
    """
    Read-only indexed graph shared by concurrent evaluations

    Built once per definition: node lookup, outgoing/incoming edges in
    declaration order, and every edge condition compiled to a predicate.
    """

    def __init__(self, definition: WorkflowDefinition):
        self.definition = definition
        self._nodes: Dict[str, Node] = {n.id: n for n in definition.nodes}
        self._outgoing: Dict[str, List[CompiledEdge]] = {}
        self._incoming: Dict[str, List[CompiledEdge]] = {}

        for edge in definition.edges:
            predicate = None
            if edge.condition is not None and not edge.is_reject:
                predicate = compile_condition(edge.condition)
            compiled = CompiledEdge(edge=edge, predicate=predicate)
            self._outgoing.setdefault(edge.source, []).append(compiled)
            self._incoming.setdefault(edge.target, []).append(compiled)

        self._start = next((n for n in definition.nodes if n.kind == NodeKind.START), None)

    @classmethod
    def compile(cls, raw: Union[WorkflowDefinition, Mapping[str, Any]]) -> "WorkflowGraph":
        """
        Parse, validate and index a definition

        Raises:
            WorkflowValidationError: If the definition breaks a structural invariant
        """
        definition = parse_definition(raw)
        validation = validate_definition(definition)
        if not validation["is_valid"]:
            raise WorkflowValidationError(
                f"Workflow definition is invalid: {validation['errors'][0]['message']}",
                details={"errors": validation["errors"], "warnings": validation["warnings"]}
            )
        for warning in validation["warnings"]:
            logger.warning(warning["message"])
        return cls(definition)

    @property
    def version(self) -> str:
        return self.definition.version

    @property
    def start_node(self) -> Optional[Node]:
        return self._start

    def node(self, node_id: str) -> Optional[Node]:
        return self._nodes.get(node_id)

    def nodes_of_kind(self, kind: NodeKind) -> List[Node]:
        return [n for n in self.definition.nodes if n.kind == kind]

    def outgoing(self, node_id: str) -> List[CompiledEdge]:
        return list(self._outgoing.get(node_id, []))

    def incoming(self, node_id: str) -> List[CompiledEdge]:
        return list(self._incoming.get(node_id, []))
