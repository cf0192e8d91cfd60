"""Execution engine package.

- Action tree models and run reports
- Rule evaluation for conditions and gates
- Chain executor with fork/join parallel regions
"""

from .models import (
    StepAction,
    ConditionAction,
    ParallelAction,
    ActionNode,
    ActionTree,
    RunReport,
    action_from_dict,
    tree_from_dicts,
    tree_to_dicts,
)
from .conditions import (
    evaluate,
    evaluate_group,
    evaluate_rule,
    rule_tree_from_inputs,
    OPERATORS,
)
from .executor import ChainExecutor, merge_branch

__all__ = [
    # Models
    "StepAction",
    "ConditionAction",
    "ParallelAction",
    "ActionNode",
    "ActionTree",
    "RunReport",
    "action_from_dict",
    "tree_from_dicts",
    "tree_to_dicts",
    # Conditions
    "evaluate",
    "evaluate_group",
    "evaluate_rule",
    "rule_tree_from_inputs",
    "OPERATORS",
    # Executor
    "ChainExecutor",
    "merge_branch",
]
