"""
Pytest Configuration and Fixtures

Shared workflow definitions, an in-memory store seeded with a small
organization, a frozen clock, and the engine components wired together.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Set

import pytest

from requestflow.engine.assignee_resolver import AssigneeResolver
from requestflow.engine.definition_loader import DefinitionLoader
from requestflow.engine.graph import WorkflowGraph
from requestflow.engine.join_synchronizer import JoinSynchronizer
from requestflow.engine.sla_calculator import SlaCalculator
from requestflow.engine.subworkflow_resolver import SubworkflowResolver
from requestflow.engine.transition_engine import TransitionEngine
from requestflow.repositories.memory import InMemoryStore
from requestflow.services.request_service import RequestService


FROZEN_NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


# =============================================================================
# Definitions
# =============================================================================

def linear_definition() -> Dict[str, Any]:
    """start -> submit (finance-team) -> manager_approval (DIRECT_MANAGER) -> end"""
    return {
        "version": "1.0",
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "submit", "type": "task", "data": {"label": "Prepare", "role": "finance-team"}},
            {
                "id": "manager_approval",
                "type": "approval",
                "data": {"role": "DIRECT_MANAGER", "sla_minutes": 60, "escalation_minutes": 30},
            },
            {"id": "end", "type": "end"},
        ],
        "edges": [
            {"id": "e1", "source": "start", "target": "submit"},
            {"id": "e2", "source": "submit", "target": "manager_approval"},
            {"id": "e3", "source": "manager_approval", "target": "end"},
        ],
    }


def reject_loop_definition() -> Dict[str, Any]:
    """Approval whose reject edge sends the request back for rework"""
    definition = linear_definition()
    definition["edges"].append(
        {"id": "e4", "source": "manager_approval", "target": "submit", "label": "reject"}
    )
    return definition


def fork_join_definition() -> Dict[str, Any]:
    """start -> fork(branch_a, branch_b) -> join -> end"""
    return {
        "version": "1.0",
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "fork", "type": "fork_and"},
            {"id": "branch_a", "type": "task", "data": {"role": "ops"}},
            {"id": "branch_b", "type": "task", "data": {"role": "legal"}},
            {"id": "join", "type": "join"},
            {"id": "end", "type": "end"},
        ],
        "edges": [
            {"id": "e1", "source": "start", "target": "fork"},
            {"id": "e2", "source": "fork", "target": "branch_a"},
            {"id": "e3", "source": "fork", "target": "branch_b"},
            {"id": "e4", "source": "branch_a", "target": "join"},
            {"id": "e5", "source": "branch_b", "target": "join"},
            {"id": "e6", "source": "join", "target": "end"},
        ],
    }


def conditional_definition() -> Dict[str, Any]:
    """Large amounts need CFO sign-off, everything else finishes after review"""
    return {
        "version": "1.0",
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "review", "type": "approval", "data": {"role": "DIRECT_MANAGER"}},
            {"id": "cfo", "type": "approval", "data": {"role": "cfo"}},
            {"id": "end", "type": "end"},
        ],
        "edges": [
            {"id": "e1", "source": "start", "target": "review"},
            {"id": "e2", "source": "review", "target": "cfo", "condition": "amount > 500"},
            {"id": "e3", "source": "review", "target": "end"},
            {"id": "e4", "source": "cfo", "target": "end"},
        ],
    }


# =============================================================================
# Fakes
# =============================================================================

class FakeStepHistory:
    """Step history where tests mark steps completed by hand"""

    def __init__(self) -> None:
        self.completed: Dict[str, Set[str]] = defaultdict(set)
        self.calls = 0

    def mark_completed(self, request_id: str, *step_keys: str) -> None:
        self.completed[request_id].update(step_keys)

    def list_completed_steps(self, request_id: str, step_keys: Iterable[str]) -> Set[str]:
        self.calls += 1
        return self.completed[request_id] & set(step_keys)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock():
    """Provide a clock frozen at FROZEN_NOW."""
    return lambda: FROZEN_NOW


@pytest.fixture
def history() -> FakeStepHistory:
    return FakeStepHistory()


@pytest.fixture
def store() -> InMemoryStore:
    """Provide an in-memory store seeded with definitions and an org chart.

    Chain: employee -> manager_a -> manager_b (top). orphan has no manager.
    """
    store = InMemoryStore()
    store.add_definition("expense", linear_definition())
    store.add_definition("expense_rework", reject_loop_definition())
    store.add_definition("onboarding", fork_join_definition())
    store.add_definition("purchase", conditional_definition())

    store.set_manager("employee", "manager_a")
    store.set_manager("manager_a", "manager_b")
    store.set_manager("manager_b", None)
    return store


@pytest.fixture
def loader(store: InMemoryStore) -> DefinitionLoader:
    return DefinitionLoader(store, cache_size=16)


@pytest.fixture
def engine(history: FakeStepHistory) -> TransitionEngine:
    """Engine reading join state from the hand-driven step history."""
    return TransitionEngine(JoinSynchronizer(history))


@pytest.fixture
def resolver(store: InMemoryStore, clock) -> AssigneeResolver:
    return AssigneeResolver(store, max_depth=5, clock=clock)


@pytest.fixture
def sla(store: InMemoryStore, clock) -> SlaCalculator:
    return SlaCalculator(store, clock=clock)


@pytest.fixture
def service(store, loader, resolver, sla, clock) -> RequestService:
    """Provide a request service wired to the in-memory store."""
    engine = TransitionEngine(
        JoinSynchronizer(store),
        subworkflows=SubworkflowResolver(loader, max_depth=3),
    )
    return RequestService(store, loader, engine, resolver, sla, clock=clock)


@pytest.fixture
def linear_graph() -> WorkflowGraph:
    return WorkflowGraph.compile(linear_definition())


@pytest.fixture
def fork_join_graph() -> WorkflowGraph:
    return WorkflowGraph.compile(fork_join_definition())


@pytest.fixture
def conditional_graph() -> WorkflowGraph:
    return WorkflowGraph.compile(conditional_definition())
