"""Action tree and run-state models.

The action tree is the compiled, executable form of a canvas graph.
All models are JSON-serializable so the tree can be persisted inside a
workflow config and loaded by the worker.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from constants import CONDITION_NODE_TYPE, PARALLEL_NODE_TYPE


@dataclass
class StepAction:
    """Invoke one node executor."""
    id: str
    type: str
    inputs: Dict[str, Any] = field(default_factory=dict)
    gate: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {"id": self.id, "type": self.type, "inputs": self.inputs}
        if self.gate:
            d["gate"] = self.gate
        return d


@dataclass
class ConditionAction:
    """Evaluate a rule tree and run exactly one branch. Ends the chain."""
    id: str
    inputs: Dict[str, Any] = field(default_factory=dict)
    true_branch: List["ActionNode"] = field(default_factory=list)
    false_branch: List["ActionNode"] = field(default_factory=list)
    gate: Optional[Dict[str, Any]] = None

    @property
    def type(self) -> str:
        return CONDITION_NODE_TYPE

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "id": self.id,
            "type": CONDITION_NODE_TYPE,
            "inputs": self.inputs,
            "trueRoutes": tree_to_dicts(self.true_branch),
            "falseRoutes": tree_to_dicts(self.false_branch),
        }
        if self.gate:
            d["gate"] = self.gate
        return d


@dataclass
class ParallelAction:
    """Fork into concurrent branches and merge their contexts back."""
    id: str
    branches: List[List["ActionNode"]] = field(default_factory=list)
    gate: Optional[Dict[str, Any]] = None

    @property
    def type(self) -> str:
        return PARALLEL_NODE_TYPE

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "id": self.id,
            "type": PARALLEL_NODE_TYPE,
            "branches": [tree_to_dicts(branch) for branch in self.branches],
        }
        if self.gate:
            d["gate"] = self.gate
        return d


ActionNode = Union[StepAction, ConditionAction, ParallelAction]
ActionTree = List[ActionNode]


def action_from_dict(data: Dict[str, Any]) -> ActionNode:
    """Create an action node from its serialized form."""
    node_type = data.get("type")
    gate = data.get("gate")

    if node_type == PARALLEL_NODE_TYPE:
        return ParallelAction(
            id=data.get("id", ""),
            branches=[tree_from_dicts(branch) for branch in data.get("branches", [])],
            gate=gate,
        )
    if node_type == CONDITION_NODE_TYPE:
        return ConditionAction(
            id=data.get("id", ""),
            inputs=data.get("inputs", {}),
            true_branch=tree_from_dicts(data.get("trueRoutes", [])),
            false_branch=tree_from_dicts(data.get("falseRoutes", [])),
            gate=gate,
        )
    if not node_type:
        raise ValueError(f"Action {data.get('id')!r} has no type")
    return StepAction(
        id=data.get("id", ""),
        type=node_type,
        inputs=data.get("inputs", {}),
        gate=gate,
    )


def tree_from_dicts(items: List[Dict[str, Any]]) -> ActionTree:
    """Deserialize an action tree."""
    return [action_from_dict(item) for item in items or []]


def tree_to_dicts(tree: ActionTree) -> List[Dict[str, Any]]:
    """Serialize an action tree."""
    return [node.to_dict() for node in tree]


@dataclass
class RunReport:
    """What happened while one work item ran through the chain executor.

    Branch errors are kept here because a failed parallel branch does not
    fail the run; the job status uses them to report partial success.
    """
    completed_steps: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    branch_errors: List[Dict[str, Any]] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    @property
    def partial(self) -> bool:
        return bool(self.branch_errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "completed_steps": self.completed_steps,
            "skipped": self.skipped,
            "branch_errors": self.branch_errors,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }
