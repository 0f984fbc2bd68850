"""Tests for definition parsing, structural validation and the compiled graph"""
from __future__ import annotations

import pytest

from requestflow.domain.enums import NodeKind
from requestflow.domain.errors import DefinitionError, WorkflowValidationError
from requestflow.engine.condition_evaluator import Comparison
from requestflow.engine.graph import (
    WorkflowGraph, find_reachable_nodes, parse_definition, validate_definition,
)

from .conftest import (
    conditional_definition, fork_join_definition, linear_definition, reject_loop_definition,
)


def _issue_types(raw) -> list:
    return [issue["type"] for issue in validate_definition(parse_definition(raw))["errors"]]


@pytest.mark.parametrize("factory", [
    linear_definition, reject_loop_definition, fork_join_definition, conditional_definition,
])
def test_sample_definitions_are_valid(factory):
    result = validate_definition(parse_definition(factory()))
    assert result["is_valid"] is True
    assert result["errors"] == []


@pytest.mark.parametrize("factory", [
    linear_definition, reject_loop_definition, fork_join_definition, conditional_definition,
])
def test_every_node_reachable_from_start(factory):
    definition = parse_definition(factory())
    reachable = find_reachable_nodes("start", definition.edges)
    assert reachable == {node.id for node in definition.nodes}


def test_missing_start_reported():
    raw = linear_definition()
    raw["nodes"] = [n for n in raw["nodes"] if n["id"] != "start"]
    raw["edges"] = [e for e in raw["edges"] if e["source"] != "start"]
    assert "MISSING_START" in _issue_types(raw)


def test_multiple_starts_reported():
    raw = linear_definition()
    raw["nodes"].append({"id": "start2", "type": "start"})
    raw["edges"].append({"id": "e9", "source": "start2", "target": "submit"})
    assert "MULTIPLE_START" in _issue_types(raw)


def test_missing_end_reported():
    raw = linear_definition()
    raw["nodes"] = [n for n in raw["nodes"] if n["id"] != "end"]
    raw["edges"] = [e for e in raw["edges"] if e["target"] != "end"]
    assert "NO_END" in _issue_types(raw)


def test_unreachable_node_reported():
    raw = linear_definition()
    raw["nodes"].append({"id": "orphan", "type": "task", "data": {"role": "ops"}})
    result = validate_definition(parse_definition(raw))
    assert result["is_valid"] is False
    assert [i for i in result["errors"] if i["type"] == "UNREACHABLE_NODE"][0]["message"].startswith(
        "Node orphan"
    )


def test_dangling_edges_reported():
    raw = linear_definition()
    raw["edges"].append({"id": "bad", "source": "ghost", "target": "nowhere"})
    types = _issue_types(raw)
    assert "INVALID_EDGE_SOURCE" in types
    assert "INVALID_EDGE_TARGET" in types


def test_duplicate_node_id_reported():
    raw = linear_definition()
    raw["nodes"].append({"id": "submit", "type": "task", "data": {"role": "ops"}})
    assert "DUPLICATE_NODE_ID" in _issue_types(raw)


def test_subworkflow_without_service_reported():
    raw = linear_definition()
    raw["nodes"].append({"id": "child", "type": "subworkflow"})
    raw["edges"].append({"id": "e9", "source": "submit", "target": "child"})
    raw["edges"].append({"id": "e10", "source": "child", "target": "end"})
    assert _issue_types(raw) == ["SUBWORKFLOW_NO_SERVICE"]


@pytest.mark.parametrize("kind", ["task", "approval", "action"])
def test_human_node_without_role_reported(kind):
    raw = linear_definition()
    raw["nodes"].append({"id": "review", "type": kind, "data": {"label": "Review"}})
    raw["edges"].append({"id": "e9", "source": "submit", "target": "review"})
    raw["edges"].append({"id": "e10", "source": "review", "target": "end"})
    result = validate_definition(parse_definition(raw))
    assert [i["type"] for i in result["errors"]] == ["MISSING_ROLE"]
    assert result["errors"][0]["path"].endswith(".data.role")


def test_never_passing_condition_is_a_warning():
    raw = conditional_definition()
    raw["edges"][1]["condition"] = "amount >"
    result = validate_definition(parse_definition(raw))
    assert result["is_valid"] is True
    assert [w["type"] for w in result["warnings"]] == ["MALFORMED_CONDITION"]


def test_compile_raises_with_every_issue():
    raw = linear_definition()
    raw["nodes"] = [n for n in raw["nodes"] if n["id"] != "end"]
    raw["nodes"].append({"id": "orphan", "type": "task", "data": {"role": "ops"}})
    with pytest.raises(WorkflowValidationError) as exc_info:
        WorkflowGraph.compile(raw)
    types = [i["type"] for i in exc_info.value.details["errors"]]
    assert "NO_END" in types
    assert "UNREACHABLE_NODE" in types
    assert isinstance(exc_info.value, DefinitionError)


def test_schema_error_becomes_validation_error():
    raw = linear_definition()
    raw["nodes"][1]["type"] = "teleport"
    with pytest.raises(WorkflowValidationError) as exc_info:
        parse_definition(raw)
    assert exc_info.value.details["errors"][0]["type"] == "SCHEMA_ERROR"
    assert exc_info.value.to_dict()["error"]["code"] == "WORKFLOW_VALIDATION_ERROR"


# =============================================================================
# Designer formats
# =============================================================================

def test_legacy_kinds_are_normalized():
    definition = parse_definition({
        "nodes": [
            {"id": "s", "type": "START"},
            {"id": "f", "type": "parallel_fork"},
            {"id": "g", "type": "gateway", "data": {"label": "OR"}},
            {"id": "h", "type": "gateway", "data": {"label": "AND"}},
            {"id": "j", "type": "merge"},
            {"id": "k", "type": "parallel_join"},
            {"id": "e", "type": "end"},
        ],
        "edges": [],
    })
    kinds = {n.id: n.kind for n in definition.nodes}
    assert kinds == {
        "s": NodeKind.START,
        "f": NodeKind.FORK_AND,
        "g": NodeKind.FORK_OR,
        "h": NodeKind.FORK_AND,
        "j": NodeKind.JOIN,
        "k": NodeKind.JOIN,
        "e": NodeKind.END,
    }


def test_sla_hours_converted_to_minutes():
    definition = parse_definition({
        "nodes": [{"id": "t", "type": "task", "data": {"sla_hours": 1.5}}],
        "edges": [],
    })
    assert definition.nodes[0].data.sla_minutes == 90


def test_unknown_node_data_is_kept():
    definition = parse_definition({
        "nodes": [{"id": "t", "type": "task", "data": {"role": "ops", "color": "blue"}}],
        "edges": [],
    })
    assert definition.nodes[0].data.model_extra == {"color": "blue"}


def test_condition_lifted_from_edge_data():
    definition = parse_definition({
        "nodes": [],
        "edges": [{"id": "e", "source": "a", "target": "b", "data": {"condition": "amount > 5"}}],
    })
    assert definition.edges[0].condition == "amount > 5"


@pytest.mark.parametrize("edge,expected", [
    ({"id": "e", "source": "a", "target": "b", "label": "Reject"}, True),
    ({"id": "e", "source": "a", "target": "b", "condition": "reject"}, True),
    ({"id": "e", "source": "a", "target": "b", "label": "approve"}, False),
    ({"id": "e", "source": "a", "target": "b"}, False),
])
def test_reject_marker(edge, expected):
    definition = parse_definition({"nodes": [], "edges": [edge]})
    assert definition.edges[0].is_reject is expected


# =============================================================================
# Compiled graph
# =============================================================================

def test_graph_indexes_edges_in_declaration_order(fork_join_graph):
    assert [e.target for e in fork_join_graph.outgoing("fork")] == ["branch_a", "branch_b"]
    assert [e.source for e in fork_join_graph.incoming("join")] == ["branch_a", "branch_b"]
    assert fork_join_graph.outgoing("end") == []


def test_graph_compiles_conditions_once(conditional_graph):
    edges = conditional_graph.outgoing("review")
    assert isinstance(edges[0].predicate, Comparison)
    assert edges[0].predicate.value == 500
    assert edges[1].predicate is None
    assert edges[1].is_conditional is False


def test_edge_condition_mixes_expressions_and_predicates():
    raw = conditional_definition()
    raw["edges"][1]["condition"] = {
        "type": "or",
        "conditions": ["amount > 500", {"field": "vendor", "operator": "eq", "value": "new"}],
    }
    graph = WorkflowGraph.compile(raw)
    predicate = graph.outgoing("review")[0].predicate
    assert predicate.evaluate({"amount": 900}) is True
    assert predicate.evaluate({"amount": 10, "vendor": "new"}) is True
    assert predicate.evaluate({"amount": 10, "vendor": "known"}) is False


def test_reject_edge_has_no_predicate():
    graph = WorkflowGraph.compile(reject_loop_definition())
    reject = [e for e in graph.outgoing("manager_approval") if e.is_reject]
    assert len(reject) == 1
    assert reject[0].predicate is None


def test_graph_lookup(linear_graph):
    assert linear_graph.start_node.id == "start"
    assert linear_graph.node("submit").role == "finance-team"
    assert linear_graph.node("missing") is None
    assert linear_graph.version == "1.0"
    assert [n.id for n in linear_graph.nodes_of_kind(NodeKind.END)] == ["end"]
