"""Graph to action tree compilation."""

import pytest

from core.exceptions import CompileError
from services.compiler import FlowGraph, compile_graph
from services.execution.models import (
    ConditionAction,
    ParallelAction,
    StepAction,
    tree_from_dicts,
    tree_to_dicts,
)


def node(node_id, node_type="echo", **config):
    return {"id": node_id, "type": node_type, "config": config}


def edge(source, target, handle=None):
    data = {"source": source, "target": target}
    if handle:
        data["sourceHandle"] = handle
    return data


def graph(nodes, edges):
    return {"nodes": nodes, "edges": edges}


def flatten_ids(tree):
    """Every action id in the tree, depth-first."""
    ids = []
    for action in tree:
        ids.append(action.id)
        if isinstance(action, ParallelAction):
            for branch in action.branches:
                ids.extend(flatten_ids(branch))
        elif isinstance(action, ConditionAction):
            ids.extend(flatten_ids(action.true_branch))
            ids.extend(flatten_ids(action.false_branch))
    return ids


# ── Linear and fan-out shapes ───────────────────────────────────


def test_linear_graph_compiles_in_order():
    tree = compile_graph(graph(
        [node("t", "webhook"), node("a", url="x"), node("b"), node("c")],
        [edge("t", "a"), edge("a", "b"), edge("b", "c")],
    ))

    assert [a.id for a in tree] == ["a", "b", "c"]
    assert all(isinstance(a, StepAction) for a in tree)
    assert tree[0].inputs == {"url": "x"}


def test_trigger_never_becomes_a_step():
    tree = compile_graph(graph([node("t", "timer")], []))
    assert tree == []


def test_fan_out_fan_in_builds_one_parallel_and_resumes_at_merge():
    tree = compile_graph(graph(
        [node("t", "webhook"), node("A"), node("B"), node("C"), node("M", "merge"), node("D")],
        [edge("t", "A"), edge("A", "B"), edge("A", "C"),
         edge("B", "M"), edge("C", "M"), edge("M", "D")],
    ))

    assert [a.id for a in tree] == ["A", "parallel_A", "M", "D"]
    parallel = tree[1]
    assert isinstance(parallel, ParallelAction)
    assert [[s.id for s in branch] for branch in parallel.branches] == [["B"], ["C"]]
    assert flatten_ids(tree).count("M") == 1


def test_branch_wired_straight_into_merge_is_empty():
    tree = compile_graph(graph(
        [node("t", "webhook"), node("A"), node("B"), node("M", "merge")],
        [edge("t", "A"), edge("A", "B"), edge("A", "M"), edge("B", "M")],
    ))

    assert [a.id for a in tree] == ["A", "parallel_A", "M"]
    assert [[s.id for s in branch] for branch in tree[1].branches] == [["B"], []]
    assert flatten_ids(tree).count("M") == 1


def test_fan_out_without_merge_ends_the_chain():
    tree = compile_graph(graph(
        [node("t", "webhook"), node("A"), node("B"), node("C")],
        [edge("t", "A"), edge("A", "B"), edge("A", "C")],
    ))

    assert [a.id for a in tree] == ["A", "parallel_A"]
    assert [[s.id for s in branch] for branch in tree[1].branches] == [["B"], ["C"]]


def test_fan_out_directly_from_trigger():
    tree = compile_graph(graph(
        [node("t", "webhook"), node("B"), node("C"), node("M", "merge")],
        [edge("t", "B"), edge("t", "C"), edge("B", "M"), edge("C", "M")],
    ))

    assert [a.id for a in tree] == ["parallel_t", "M"]


# ── Divergent merges ────────────────────────────────────────────


def divergent_graph():
    # B halts at M1, C halts at M2; O1 and O2 only make M1/M2 merge nodes
    return graph(
        [node("t", "webhook"), node("A"), node("B"), node("C"),
         node("M1", "merge"), node("M2", "merge"), node("O1"), node("O2")],
        [edge("t", "A"), edge("A", "B"), edge("A", "C"),
         edge("B", "M1"), edge("C", "M2"), edge("O1", "M1"), edge("O2", "M2")],
    )


def test_divergent_merge_is_a_compile_error():
    with pytest.raises(CompileError) as exc:
        compile_graph(divergent_graph())
    assert exc.value.node_id == "A"


def test_merge_reached_by_only_some_branches_is_a_compile_error():
    with pytest.raises(CompileError):
        compile_graph(graph(
            [node("t", "webhook"), node("A"), node("B"), node("C"), node("M", "merge")],
            [edge("t", "A"), edge("A", "B"), edge("A", "C"), edge("A", "M"), edge("B", "M")],
        ))


def test_lenient_mode_terminates_divergent_branches_independently():
    tree = compile_graph(divergent_graph(), strict=False)

    assert [a.id for a in tree] == ["A", "parallel_A"]
    assert [[s.id for s in branch] for branch in tree[1].branches] == [["B"], ["C"]]
    assert "M1" not in flatten_ids(tree)
    assert "M2" not in flatten_ids(tree)


# ── Conditions ──────────────────────────────────────────────────


def test_condition_splits_into_true_and_false_routes():
    tree = compile_graph(graph(
        [node("t", "webhook"), node("A"),
         node("check", "condition", variable="{{A.value}}", operator=">", value=3),
         node("yes"), node("yes2"), node("no")],
        [edge("t", "A"), edge("A", "check"),
         edge("check", "yes", "true"), edge("yes", "yes2"),
         edge("check", "no", "false")],
    ))

    assert [a.id for a in tree] == ["A", "check"]
    condition = tree[1]
    assert isinstance(condition, ConditionAction)
    assert [s.id for s in condition.true_branch] == ["yes", "yes2"]
    assert [s.id for s in condition.false_branch] == ["no"]
    assert condition.inputs["operator"] == ">"


def test_condition_edges_without_a_handle_are_ignored():
    tree = compile_graph(graph(
        [node("t", "webhook"), node("check", "condition"), node("yes"), node("stray")],
        [edge("t", "check"), edge("check", "yes", "true"), edge("check", "stray")],
    ))

    condition = tree[0]
    assert [s.id for s in condition.true_branch] == ["yes"]
    assert condition.false_branch == []
    assert "stray" not in flatten_ids(tree)



def rejoining_condition_graph():
    return graph(
        [node("t", "webhook"), node("c", "condition", variable="{{x}}", operator="==", value=1),
         node("a"), node("b"), node("m", "merge"), node("d")],
        [edge("t", "c"), edge("c", "a", "true"), edge("c", "b", "false"),
         edge("a", "m"), edge("b", "m"), edge("m", "d")],
    )


def test_condition_routes_rejoining_at_a_merge_is_a_compile_error():
    with pytest.raises(CompileError) as exc:
        compile_graph(rejoining_condition_graph())
    assert exc.value.node_id == "c"
    assert "merge node m" in str(exc.value)


def test_lenient_mode_keeps_condition_routes_up_to_the_merge():
    tree = compile_graph(rejoining_condition_graph(), strict=False)

    condition = tree[0]
    assert [s.id for s in condition.true_branch] == ["a"]
    assert [s.id for s in condition.false_branch] == ["b"]
    assert "d" not in flatten_ids(tree)

# ── Validation ──────────────────────────────────────────────────


def test_cycle_is_rejected():
    with pytest.raises(CompileError) as exc:
        compile_graph(graph(
            [node("t", "webhook"), node("A"), node("B")],
            [edge("t", "A"), edge("A", "B"), edge("B", "A")],
        ))
    assert "Cycle" in str(exc.value)


def test_two_triggers_are_rejected():
    with pytest.raises(CompileError):
        compile_graph(graph(
            [node("t1", "webhook"), node("t2", "timer"), node("A")],
            [edge("t1", "A"), edge("t2", "A")],
        ))


def test_missing_trigger_is_rejected():
    with pytest.raises(CompileError):
        compile_graph(graph([node("A")], []))


def test_dangling_edge_is_rejected():
    with pytest.raises(CompileError) as exc:
        compile_graph(graph([node("t", "webhook")], [edge("t", "ghost")]))
    assert exc.value.node_id == "ghost"


def test_duplicate_node_ids_are_rejected():
    with pytest.raises(CompileError):
        compile_graph(graph([node("t", "webhook"), node("A"), node("A")], [edge("t", "A")]))


# ── Input shapes and serialization ──────────────────────────────


def test_canvas_node_format_and_gates():
    gate = {"combinator": "AND", "rules": [{"valueA": 1, "operator": "==", "valueB": 1}]}
    flow = FlowGraph.from_dict({
        "nodes": [
            {"id": "t", "data": {"type": "webhook", "config": {}}},
            {"id": "A", "data": {"type": "http_request", "config": {"url": "https://x"}, "gate": gate}},
        ],
        "edges": [{"source": "t", "target": "A"}],
    })

    tree = compile_graph(flow)

    assert tree[0].type == "http_request"
    assert tree[0].inputs == {"url": "https://x"}
    assert tree[0].gate == gate


def test_compiled_tree_survives_serialization():
    tree = compile_graph(graph(
        [node("t", "webhook"), node("A"), node("B"), node("C"), node("M", "merge"),
         node("check", "condition", variable="{{x}}", operator="==", value=1), node("Y")],
        [edge("t", "A"), edge("A", "B"), edge("A", "C"), edge("B", "M"), edge("C", "M"),
         edge("M", "check"), edge("check", "Y", "true")],
    ))

    dicts = tree_to_dicts(tree)
    assert [d["type"] for d in dicts] == ["echo", "parallel", "merge", "condition"]
    assert dicts[3]["trueRoutes"][0]["id"] == "Y"
    assert tree_from_dicts(dicts) == tree
