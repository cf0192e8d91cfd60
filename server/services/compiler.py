"""Graph compiler - turns a canvas graph into an executable action tree.

Walks the graph depth-first from its single trigger node. Nodes with more
than one incoming edge are merge barriers: a fan-out region resumes the main
chain only when every branch halts at the same barrier.

    trigger -> A -> {B, C} -> M -> D

compiles to

    [Step A, Parallel(parallel_A, [[B], [C]]), Step M, Step D]
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from constants import (
    CONDITION_NODE_TYPE,
    FALSE_HANDLE,
    TRUE_HANDLE,
    is_trigger_type,
)
from core.exceptions import CompileError
from core.logging import get_logger
from services.execution.models import (
    ActionNode,
    ActionTree,
    ConditionAction,
    ParallelAction,
    StepAction,
)

logger = get_logger(__name__)


# =============================================================================
# GRAPH MODEL
# =============================================================================

@dataclass
class GraphNode:
    id: str
    type: str
    config: Dict[str, Any] = field(default_factory=dict)
    gate: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GraphNode":
        """Accept both {id, type, config} and the canvas {id, data: {type, config}}."""
        node_data = data.get("data") or {}
        node_type = node_data.get("type") or data.get("type")
        if not data.get("id") or not node_type:
            raise CompileError("Node is missing an id or type", node_id=data.get("id"))
        config = node_data.get("config", data.get("config")) or {}
        return cls(
            id=str(data["id"]),
            type=node_type,
            config=dict(config),
            gate=node_data.get("gate") or data.get("gate"),
        )


@dataclass
class GraphEdge:
    source: str
    target: str
    handle: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GraphEdge":
        return cls(
            source=str(data.get("source", "")),
            target=str(data.get("target", "")),
            handle=data.get("sourceHandle") or data.get("handle"),
        )


@dataclass
class FlowGraph:
    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlowGraph":
        return cls(
            nodes=[GraphNode.from_dict(n) for n in data.get("nodes", [])],
            edges=[GraphEdge.from_dict(e) for e in data.get("edges", [])],
        )

    def trigger(self) -> Optional[GraphNode]:
        for node in self.nodes:
            if is_trigger_type(node.type):
                return node
        return None


# =============================================================================
# COMPILER
# =============================================================================

# (actions, id of the merge barrier the segment halted at)
Segment = Tuple[ActionTree, Optional[str]]

_WHITE, _GREY, _BLACK = 0, 1, 2


class GraphCompiler:
    """Compiles one FlowGraph. Instances are single-use."""

    def __init__(self, graph: FlowGraph, strict: bool = True):
        self.graph = graph
        self.strict = strict
        self._nodes: Dict[str, GraphNode] = {}
        self._outgoing: Dict[str, List[GraphEdge]] = defaultdict(list)
        self._in_degree: Dict[str, int] = defaultdict(int)

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _validate(self) -> GraphNode:
        for node in self.graph.nodes:
            if node.id in self._nodes:
                raise CompileError(f"Duplicate node id {node.id}", node_id=node.id)
            self._nodes[node.id] = node

        triggers = [n for n in self.graph.nodes if is_trigger_type(n.type)]
        if not triggers:
            raise CompileError("No trigger node found")
        if len(triggers) > 1:
            raise CompileError(
                f"Graph has {len(triggers)} trigger nodes, expected exactly one",
                node_id=triggers[1].id,
            )

        for edge in self.graph.edges:
            for end in (edge.source, edge.target):
                if end not in self._nodes:
                    raise CompileError(f"Edge references unknown node {end}", node_id=end)
            self._outgoing[edge.source].append(edge)
            self._in_degree[edge.target] += 1

        self._check_acyclic()
        return triggers[0]

    def _check_acyclic(self) -> None:
        """DFS colouring; a grey node reached again closes a cycle."""
        colour: Dict[str, int] = {node_id: _WHITE for node_id in self._nodes}

        def visit(node_id: str) -> None:
            colour[node_id] = _GREY
            for edge in self._outgoing[node_id]:
                if colour[edge.target] == _GREY:
                    raise CompileError(
                        f"Cycle detected at {edge.source} -> {edge.target}",
                        node_id=edge.target,
                    )
                if colour[edge.target] == _WHITE:
                    visit(edge.target)
            colour[node_id] = _BLACK

        for node_id in self._nodes:
            if colour[node_id] == _WHITE:
                visit(node_id)

    # -------------------------------------------------------------------------
    # Walk
    # -------------------------------------------------------------------------

    def compile(self) -> ActionTree:
        trigger = self._validate()
        actions, _ = self._build_segment(trigger.id, set())
        logger.info("Graph compiled", trigger=trigger.id, trigger_type=trigger.type,
                    node_count=len(self._nodes), root_actions=len(actions))
        return actions

    def _is_barrier(self, node_id: str) -> bool:
        return self._in_degree[node_id] > 1

    def _build_segment(self, start_id: str, visited: Set[str],
                       stop_at_start: bool = False) -> Segment:
        """Compile a linear segment starting at start_id.

        Returns the emitted actions and the merge barrier the segment halted
        at, or None when the segment ran to an end. A fan-out branch passes
        stop_at_start so an edge straight into the barrier yields an empty
        branch instead of consuming the barrier.
        """
        actions: List[ActionNode] = []
        current: Optional[str] = start_id
        just_resolved_merge = False

        while current is not None:
            if current in visited:
                break

            is_start = current == start_id and not stop_at_start
            if self._is_barrier(current) and not is_start and not just_resolved_merge:
                return actions, current
            just_resolved_merge = False
            stop_at_start = False

            visited.add(current)
            node = self._nodes[current]

            if node.type == CONDITION_NODE_TYPE:
                actions.append(self._build_condition(node, visited))
                return actions, None

            if not is_trigger_type(node.type):
                actions.append(StepAction(
                    id=node.id,
                    type=node.type,
                    inputs=dict(node.config),
                    gate=node.gate,
                ))

            outgoing = self._outgoing[current]
            if not outgoing:
                current = None
            elif len(outgoing) == 1:
                current = outgoing[0].target
            else:
                parallel, resume_at = self._build_parallel(node, outgoing, visited)
                actions.append(parallel)
                current = resume_at
                just_resolved_merge = resume_at is not None

        return actions, None

    def _build_condition(self, node: GraphNode, visited: Set[str]) -> ConditionAction:
        branches: Dict[str, ActionTree] = {TRUE_HANDLE: [], FALSE_HANDLE: []}
        for edge in self._outgoing[node.id]:
            if edge.handle not in branches:
                logger.warning("Ignoring unlabelled edge from condition node",
                               node_id=node.id, target=edge.target)
                continue
            if branches[edge.handle]:
                logger.warning("Condition handle has more than one edge",
                               node_id=node.id, handle=edge.handle)
                continue
            branches[edge.handle], stopped_at = self._build_segment(edge.target, set(visited))
            if stopped_at is not None:
                self._route_reaches_merge(node, edge.handle, stopped_at)

        return ConditionAction(
            id=node.id,
            inputs=dict(node.config),
            true_branch=branches[TRUE_HANDLE],
            false_branch=branches[FALSE_HANDLE],
            gate=node.gate,
        )

    def _route_reaches_merge(self, node: GraphNode, handle: str, merge_id: str) -> None:
        # A condition ends its chain, so nodes from the merge onward are never emitted
        message = (f"Route '{handle}' of condition {node.id} runs into merge node "
                   f"{merge_id}; nodes after a condition cannot rejoin")
        if self.strict:
            raise CompileError(message, node_id=node.id)
        logger.warning("Condition route reaches a merge node, dropping it", node_id=node.id,
                       handle=handle, merge_node=merge_id)

    def _build_parallel(self, node: GraphNode, outgoing: List[GraphEdge],
                        visited: Set[str]) -> Tuple[ParallelAction, Optional[str]]:
        """Compile a fan-out and find where it reconverges."""
        results = [
            self._build_segment(edge.target, set(visited), stop_at_start=True)
            for edge in outgoing
        ]
        parallel = ParallelAction(
            id=f"parallel_{node.id}",
            branches=[branch for branch, _ in results],
        )

        stops = [stopped_at for _, stopped_at in results]
        unique_stops = set(stops)
        if len(unique_stops) == 1 and None not in unique_stops:
            return parallel, stops[0]
        if unique_stops == {None}:
            return parallel, None

        message = (f"Parallel branches from {node.id} do not reconverge at a single "
                   f"merge node (stopped at {sorted(s or 'end' for s in unique_stops)})")
        if self.strict:
            raise CompileError(message, node_id=node.id)
        logger.warning("Divergent merge, ending segment", node_id=node.id,
                       stops=[s for s in stops])
        return parallel, None


def compile_graph(graph: Any, strict: bool = True) -> ActionTree:
    """Compile a graph (FlowGraph or its dict form) into an action tree."""
    if not isinstance(graph, FlowGraph):
        graph = FlowGraph.from_dict(graph or {})
    return GraphCompiler(graph, strict=strict).compile()
