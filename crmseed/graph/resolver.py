from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

INJECTION_ORDER: tuple[str, ...] = ("Account", "Contact", "Opportunity", "Task", "Event", "EmailMessage")
CLEANUP_ORDER: tuple[str, ...] = tuple(reversed(INJECTION_ORDER))

REFERENCE_SUFFIX = "_localId"

_TYPE_RANK = {object_type: rank for rank, object_type in enumerate(INJECTION_ORDER)}


class DependencyGraphError(RuntimeError):
    retryable = False


class DuplicateLocalIdError(DependencyGraphError):
    def __init__(self, local_id: str):
        super().__init__(f"Duplicate local id: {local_id}")
        self.local_id = local_id


class DanglingReferenceError(DependencyGraphError):
    def __init__(self, local_id: str, missing_local_id: str):
        super().__init__(f"Record {local_id} references unknown local id {missing_local_id}")
        self.local_id = local_id
        self.missing_local_id = missing_local_id


class GraphCycleError(DependencyGraphError):
    def __init__(self, local_ids: Iterable[str]):
        self.local_ids = sorted(set(local_ids))
        super().__init__(f"Dependency cycle between records: {', '.join(self.local_ids)}")


@dataclass(frozen=True)
class GraphNode:
    local_id: str
    object_type: str
    parent_local_id: str | None = None
    references: tuple[str, ...] = field(default_factory=tuple)

    def dependencies(self) -> set[str]:
        deps = {ref for ref in self.references if ref}
        if self.parent_local_id:
            deps.add(self.parent_local_id)
        return deps


def type_rank(object_type: str) -> int:
    return _TYPE_RANK.get(object_type, len(INJECTION_ORDER))


def reference_fields(data: Mapping[str, Any]) -> dict[str, str]:
    """Map each ``<Field>_localId`` key to ``<Field>`` for non-empty string values."""
    fields: dict[str, str] = {}
    for key, value in data.items():
        if key.endswith(REFERENCE_SUFFIX) and len(key) > len(REFERENCE_SUFFIX) and isinstance(value, str) and value:
            fields[key] = key[: -len(REFERENCE_SUFFIX)]
    return fields


def referenced_local_ids(data: Mapping[str, Any]) -> tuple[str, ...]:
    return tuple(sorted({str(data[key]) for key in reference_fields(data)}))


def nodes_from_records(records: Iterable[Any]) -> list[GraphNode]:
    return [
        GraphNode(
            local_id=record.local_id,
            object_type=record.object_type,
            parent_local_id=record.parent_local_id,
            references=referenced_local_ids(record.data or {}),
        )
        for record in records
    ]


def _cycle_members(remaining: set[str], dependents: Mapping[str, set[str]], deps: Mapping[str, set[str]]) -> set[str]:
    # Peel off nodes that only feed other blocked nodes; what remains sits on a cycle.
    members = set(remaining)
    changed = True
    while changed:
        changed = False
        for local_id in list(members):
            if not (dependents[local_id] & members) or not (deps[local_id] & members):
                members.discard(local_id)
                changed = True
    return members or remaining


def resolve_injection_order(nodes: Iterable[GraphNode]) -> list[str]:
    by_id: dict[str, GraphNode] = {}
    for node in nodes:
        if node.local_id in by_id:
            raise DuplicateLocalIdError(node.local_id)
        by_id[node.local_id] = node

    deps: dict[str, set[str]] = {}
    dependents: dict[str, set[str]] = {local_id: set() for local_id in by_id}
    for local_id in sorted(by_id):
        node_deps = by_id[local_id].dependencies()
        for dep in sorted(node_deps):
            if dep not in by_id:
                raise DanglingReferenceError(local_id, dep)
            dependents[dep].add(local_id)
        deps[local_id] = node_deps

    def sort_key(local_id: str) -> tuple[int, str, str]:
        node = by_id[local_id]
        return (type_rank(node.object_type), node.object_type, local_id)

    in_degree = {local_id: len(node_deps) for local_id, node_deps in deps.items()}
    ready = [sort_key(local_id) for local_id, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)

    order: list[str] = []
    while ready:
        _, _, local_id = heapq.heappop(ready)
        order.append(local_id)
        for child in dependents[local_id]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                heapq.heappush(ready, sort_key(child))

    if len(order) != len(by_id):
        remaining = set(by_id) - set(order)
        raise GraphCycleError(_cycle_members(remaining, dependents, deps))
    return order
