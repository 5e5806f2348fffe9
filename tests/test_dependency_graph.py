from __future__ import annotations

import random

from crmseed.graph.resolver import (
    INJECTION_ORDER,
    DanglingReferenceError,
    DuplicateLocalIdError,
    GraphCycleError,
    GraphNode,
    reference_fields,
    resolve_injection_order,
    type_rank,
)


def test_parents_precede_children_and_types_follow_canonical_order() -> None:
    nodes = [
        GraphNode("o1", "Opportunity", references=("a1",)),
        GraphNode("c1", "Contact", parent_local_id="a1"),
        GraphNode("t1", "Task", references=("c1", "o1")),
        GraphNode("a1", "Account"),
        GraphNode("a2", "Account"),
    ]
    assert resolve_injection_order(nodes) == ["a1", "a2", "c1", "o1", "t1"]


def test_random_forests_respect_every_edge() -> None:
    rng = random.Random(1234)
    for _ in range(50):
        nodes: list[GraphNode] = []
        for index in range(rng.randint(1, 40)):
            object_type = rng.choice(INJECTION_ORDER)
            candidates = [node.local_id for node in nodes]
            parent = rng.choice(candidates) if candidates and rng.random() < 0.7 else None
            extra = tuple(rng.sample(candidates, k=min(len(candidates), rng.randint(0, 2))))
            nodes.append(GraphNode(f"n{index}", object_type, parent_local_id=parent, references=extra))
        rng.shuffle(nodes)

        order = resolve_injection_order(nodes)
        position = {local_id: index for index, local_id in enumerate(order)}
        assert sorted(order) == sorted(node.local_id for node in nodes)
        for node in nodes:
            for dep in node.dependencies():
                assert position[dep] < position[node.local_id]


def test_cycle_reports_only_members() -> None:
    nodes = [
        GraphNode("a1", "Account"),
        GraphNode("x", "Contact", parent_local_id="y"),
        GraphNode("y", "Contact", parent_local_id="x"),
        GraphNode("z", "Task", parent_local_id="x"),
    ]
    try:
        resolve_injection_order(nodes)
    except GraphCycleError as exc:
        assert exc.local_ids == ["x", "y"]
    else:
        raise AssertionError("expected GraphCycleError")


def test_self_reference_is_a_cycle() -> None:
    try:
        resolve_injection_order([GraphNode("c1", "Contact", references=("c1",))])
    except GraphCycleError as exc:
        assert exc.local_ids == ["c1"]
    else:
        raise AssertionError("expected GraphCycleError")


def test_dangling_reference_names_both_ids() -> None:
    try:
        resolve_injection_order([GraphNode("c1", "Contact", parent_local_id="a9")])
    except DanglingReferenceError as exc:
        assert exc.local_id == "c1"
        assert exc.missing_local_id == "a9"
    else:
        raise AssertionError("expected DanglingReferenceError")


def test_duplicate_local_ids_are_rejected() -> None:
    try:
        resolve_injection_order([GraphNode("a1", "Account"), GraphNode("a1", "Contact")])
    except DuplicateLocalIdError as exc:
        assert exc.local_id == "a1"
    else:
        raise AssertionError("expected DuplicateLocalIdError")


def test_empty_graph_and_reference_field_detection() -> None:
    assert resolve_injection_order([]) == []
    assert reference_fields({"AccountId_localId": "a1", "Name": "x", "_localId": "q", "WhoId_localId": ""}) == {
        "AccountId_localId": "AccountId"
    }
    assert type_rank("Account") < type_rank("EmailMessage") < type_rank("CustomObject__c")
