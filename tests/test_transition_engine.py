"""Tests for the transition algorithm"""
from __future__ import annotations

import pytest

from requestflow.domain.enums import NodeKind, RequestStatus, WorkflowAction
from requestflow.domain.errors import (
    InvalidStepError, NoTransitionError, SubworkflowDepthError,
)
from requestflow.engine.definition_loader import DefinitionLoader
from requestflow.engine.graph import WorkflowGraph
from requestflow.engine.join_synchronizer import JoinSynchronizer
from requestflow.engine.subworkflow_resolver import SubworkflowResolver
from requestflow.engine.transition_engine import TransitionEngine
from requestflow.repositories.memory import InMemoryStore

from .conftest import linear_definition, reject_loop_definition


REQ = "REQ-1"


# =============================================================================
# approve
# =============================================================================

def test_approve_single_edge_opens_its_target(engine, linear_graph):
    result = engine.compute_transition(REQ, linear_graph, "submit", "approve")
    assert [s.step_key for s in result.active_steps_to_create] == ["manager_approval"]
    assert result.steps_to_complete == ["submit"]
    assert result.next_step_key == "manager_approval"
    assert result.active_steps_to_create[0].assigned_role == "DIRECT_MANAGER"


def test_approve_into_approval_awaits_approval(engine, linear_graph):
    result = engine.compute_transition(REQ, linear_graph, "submit", WorkflowAction.APPROVE)
    assert result.next_status == RequestStatus.AWAITING_APPROVAL
    assert result.localized_status() == "بانتظار الموافقة"


def test_approve_into_task_is_in_progress(engine, linear_graph):
    result = engine.compute_transition(REQ, linear_graph, "start", "approve")
    assert result.next_status == RequestStatus.IN_PROGRESS
    assert result.active_steps_to_create[0].node_kind == NodeKind.TASK


def test_approve_into_end_completes(engine, linear_graph):
    result = engine.compute_transition(REQ, linear_graph, "manager_approval", "approve")
    assert result.next_status == RequestStatus.COMPLETED
    assert result.is_terminal is True
    assert result.active_steps_to_create[0].assigned_role is None


def test_approve_takes_first_passing_edge(engine, conditional_graph):
    big = engine.compute_transition(REQ, conditional_graph, "review", "approve", {"amount": 1000})
    small = engine.compute_transition(REQ, conditional_graph, "review", "approve", {"amount": 100})
    assert big.next_step_key == "cfo"
    assert len(big.active_steps_to_create) == 1
    assert small.next_step_key == "end"


def test_approve_never_follows_reject_edge(engine):
    graph = WorkflowGraph.compile(reject_loop_definition())
    result = engine.compute_transition(REQ, graph, "manager_approval", "approve")
    assert result.next_step_key == "end"


def test_approve_without_eligible_edge_raises(engine):
    raw = linear_definition()
    raw["edges"][2]["condition"] = "approved_budget"
    graph = WorkflowGraph.compile(raw)
    with pytest.raises(NoTransitionError) as exc_info:
        engine.compute_transition(REQ, graph, "manager_approval", "approve", {})
    assert exc_info.value.details["step_key"] == "manager_approval"


def test_approve_on_end_node_completes_without_changes(engine, linear_graph):
    result = engine.compute_transition(REQ, linear_graph, "end", "approve")
    assert result.next_status == RequestStatus.COMPLETED
    assert result.active_steps_to_create == []
    assert result.steps_to_complete == []
    assert result.next_step_key is None


# =============================================================================
# reject
# =============================================================================

def test_reject_without_reject_edge_is_terminal(engine, linear_graph):
    result = engine.compute_transition(REQ, linear_graph, "manager_approval", "reject")
    assert result.next_status == RequestStatus.REJECTED
    assert result.active_steps_to_create == []
    assert result.localized_status() == "مرفوض"


def test_reject_follows_reject_edge(engine):
    graph = WorkflowGraph.compile(reject_loop_definition())
    result = engine.compute_transition(REQ, graph, "manager_approval", "reject")
    assert result.next_step_key == "submit"
    assert result.next_status == RequestStatus.IN_PROGRESS
    assert result.steps_to_complete == ["manager_approval"]


# =============================================================================
# complete / force complete
# =============================================================================

def test_complete_ignores_conditions(engine, conditional_graph):
    result = engine.compute_transition(REQ, conditional_graph, "review", "complete", {"amount": 1})
    assert [s.step_key for s in result.active_steps_to_create] == ["cfo", "end"]


def test_complete_without_edges_completes(engine):
    raw = linear_definition()
    raw["nodes"].append({"id": "dead_end", "type": "task", "data": {"role": "ops"}})
    raw["edges"].append({"id": "e9", "source": "submit", "target": "dead_end"})
    graph = WorkflowGraph.compile(raw)
    result = engine.compute_transition(REQ, graph, "dead_end", "complete")
    assert result.next_status == RequestStatus.COMPLETED
    assert result.active_steps_to_create == []
    assert result.steps_to_complete == ["dead_end"]


def test_force_complete_closes_every_active_step(engine):
    result = engine.force_complete(REQ, ["branch_a", "branch_b", "branch_a"])
    assert result.steps_to_complete == ["branch_a", "branch_b"]
    assert result.active_steps_to_create == []
    assert result.next_status == RequestStatus.COMPLETED


# =============================================================================
# Step lookup
# =============================================================================

def test_unknown_step_raises(engine, linear_graph):
    with pytest.raises(InvalidStepError):
        engine.compute_transition(REQ, linear_graph, "nope", "approve")


def test_start_alias_maps_to_start_node(engine):
    raw = linear_definition()
    raw["nodes"][0]["id"] = "begin"
    raw["edges"][0]["source"] = "begin"
    graph = WorkflowGraph.compile(raw)
    result = engine.compute_transition(REQ, graph, "start", "complete")
    assert result.steps_to_complete == ["begin"]
    assert result.next_step_key == "submit"


def test_unknown_action_rejected(engine, linear_graph):
    with pytest.raises(ValueError):
        engine.compute_transition(REQ, linear_graph, "submit", "escalate")


# =============================================================================
# Fork / join
# =============================================================================

def test_fork_opens_every_passing_branch(engine, fork_join_graph):
    result = engine.compute_transition(REQ, fork_join_graph, "fork", "approve")
    assert [s.step_key for s in result.active_steps_to_create] == ["branch_a", "branch_b"]
    assert result.next_status == RequestStatus.IN_PROGRESS


def test_or_fork_opens_only_passing_branches(engine):
    graph = WorkflowGraph.compile({
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "route", "type": "gateway", "data": {"label": "OR"}},
            {"id": "it", "type": "task", "data": {"role": "it"}},
            {"id": "hr", "type": "task", "data": {"role": "hr"}},
            {"id": "fin", "type": "task", "data": {"role": "finance"}},
            {"id": "end", "type": "end"},
        ],
        "edges": [
            {"id": "e1", "source": "start", "target": "route"},
            {"id": "e2", "source": "route", "target": "it", "condition": "needs_laptop"},
            {"id": "e3", "source": "route", "target": "hr", "condition": "dept == 'HR'"},
            {"id": "e4", "source": "route", "target": "fin", "condition": {"field": "cost", "operator": "gt", "value": 0}},
            {"id": "e5", "source": "it", "target": "end"},
            {"id": "e6", "source": "hr", "target": "end"},
            {"id": "e7", "source": "fin", "target": "end"},
        ],
    })
    result = engine.compute_transition(REQ, graph, "route", "approve", {"needs_laptop": True, "cost": 10})
    assert [s.step_key for s in result.active_steps_to_create] == ["it", "fin"]


def test_join_waits_for_sibling_then_opens(engine, history, fork_join_graph):
    first = engine.compute_transition(REQ, fork_join_graph, "branch_a", "approve")
    assert first.active_steps_to_create == []
    assert first.steps_to_complete == ["branch_a"]
    assert first.next_status == RequestStatus.IN_PROGRESS
    assert first.next_step_key is None

    history.mark_completed(REQ, "branch_a")
    second = engine.compute_transition(REQ, fork_join_graph, "branch_b", "approve")
    assert [s.step_key for s in second.active_steps_to_create] == ["join"]
    assert second.active_steps_to_create[0].node_kind == NodeKind.JOIN


def test_join_state_is_per_request(engine, history, fork_join_graph):
    history.mark_completed("REQ-other", "branch_a")
    result = engine.compute_transition(REQ, fork_join_graph, "branch_b", "approve")
    assert result.active_steps_to_create == []


# =============================================================================
# Purity
# =============================================================================

@pytest.mark.parametrize("step,action,data", [
    ("submit", "approve", {}),
    ("manager_approval", "reject", {}),
    ("start", "complete", {"amount": 3}),
])
def test_identical_inputs_yield_identical_results(engine, linear_graph, step, action, data):
    first = engine.compute_transition(REQ, linear_graph, step, action, dict(data))
    second = engine.compute_transition(REQ, linear_graph, step, action, dict(data))
    assert first == second


def test_compute_does_not_mutate_inputs(engine, history, fork_join_graph):
    context = {"amount": 5}
    before = fork_join_graph.definition.model_dump()
    engine.compute_transition(REQ, fork_join_graph, "branch_b", "approve", context)
    assert context == {"amount": 5}
    assert fork_join_graph.definition.model_dump() == before
    assert history.completed[REQ] == set()


# =============================================================================
# Subworkflows
# =============================================================================

def _subworkflow_definition(child_service: str):
    return {
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "sub", "type": "subworkflow", "data": {"service_key": child_service}},
            {"id": "end", "type": "end"},
        ],
        "edges": [
            {"id": "e1", "source": "start", "target": "sub"},
            {"id": "e2", "source": "sub", "target": "end"},
        ],
    }


def test_subworkflow_step_carries_child_service(history):
    store = InMemoryStore()
    store.add_definition("child", linear_definition())
    engine = TransitionEngine(
        JoinSynchronizer(history),
        subworkflows=SubworkflowResolver(DefinitionLoader(store), max_depth=2),
    )
    graph = WorkflowGraph.compile(_subworkflow_definition("child"))
    result = engine.compute_transition(REQ, graph, "start", "complete", service_key="parent")
    step = result.active_steps_to_create[0]
    assert step.node_kind == NodeKind.SUBWORKFLOW
    assert step.subworkflow_service_key == "child"
    assert step.assigned_role is None


def test_self_referencing_subworkflow_fails(history):
    store = InMemoryStore()
    store.add_definition("loop", _subworkflow_definition("loop"))
    engine = TransitionEngine(
        JoinSynchronizer(history),
        subworkflows=SubworkflowResolver(DefinitionLoader(store), max_depth=5),
    )
    graph = WorkflowGraph.compile(_subworkflow_definition("loop"))
    with pytest.raises(SubworkflowDepthError):
        engine.compute_transition(REQ, graph, "start", "complete", service_key="loop")
