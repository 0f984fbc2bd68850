"""Workflow Engine - Graph model, transitions, joins, owners and deadlines"""
from .condition_evaluator import ConditionEvaluator, compile_condition
from .graph import WorkflowGraph, validate_definition, parse_definition
from .definition_loader import DefinitionLoader
from .join_synchronizer import JoinSynchronizer
from .assignee_resolver import AssigneeResolver
from .sla_calculator import SlaCalculator
from .subworkflow_resolver import SubworkflowResolver
from .transition_engine import TransitionEngine

__all__ = [
    "ConditionEvaluator",
    "compile_condition",
    "WorkflowGraph",
    "validate_definition",
    "parse_definition",
    "DefinitionLoader",
    "JoinSynchronizer",
    "AssigneeResolver",
    "SlaCalculator",
    "SubworkflowResolver",
    "TransitionEngine",
]
