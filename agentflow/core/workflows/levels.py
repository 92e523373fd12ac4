"""
Dependency levels and eligibility over a workflow graph.

Pure functions over node ids and (source, target) edges. Node order in
the inputs is preserved wherever a result is a list, so callers get a
deterministic order even though siblings in a level are unordered by
contract.
"""

from __future__ import annotations

from collections import deque
from typing import Iterable, Sequence

from agentflow.core.errors import ErrorCode, WorkflowValidationError

Edge = tuple[str, str]


def _adjacency(
    node_ids: Sequence[str], edges: Iterable[Edge]
) -> tuple[dict[str, list[str]], dict[str, list[str]]]:
    parents: dict[str, list[str]] = {node: [] for node in node_ids}
    children: dict[str, list[str]] = {node: [] for node in node_ids}
    for source, target in edges:
        if source not in parents or target not in parents:
            continue
        if source not in parents[target]:
            parents[target].append(source)
            children[source].append(target)
    return parents, children


def topological_order(node_ids: Sequence[str], edges: Iterable[Edge]) -> list[str]:
    """Kahn's algorithm; raises WorkflowValidationError naming the nodes on a cycle."""
    parents, children = _adjacency(node_ids, edges)
    in_degree = {node: len(parents[node]) for node in node_ids}
    ready = deque(node for node in node_ids if in_degree[node] == 0)
    order: list[str] = []
    while ready:
        node = ready.popleft()
        order.append(node)
        for child in children[node]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                ready.append(child)

    if len(order) != len(node_ids):
        remaining = [node for node in node_ids if in_degree[node] > 0]
        raise WorkflowValidationError(
            message='cycle detected in workflow graph',
            code=ErrorCode.WORKFLOW_CYCLE_DETECTED,
            notes=[f'nodes involved in cycle: {remaining}'],
            help_text='workflows must be acyclic; remove the connection that closes the loop',
        )
    return order


def compute_levels(node_ids: Sequence[str], edges: Iterable[Edge]) -> dict[str, int]:
    """level(n) = 0 without inbound edges, else 1 + max(level of its sources)."""
    edge_list = list(edges)
    parents, _ = _adjacency(node_ids, edge_list)
    levels: dict[str, int] = {}
    for node in topological_order(node_ids, edge_list):
        levels[node] = 1 + max((levels[p] for p in parents[node]), default=-1)
    return levels


def group_by_level(levels: dict[str, int]) -> list[list[str]]:
    """[[level 0 nodes], [level 1 nodes], ...] keeping insertion order."""
    grouped: list[list[str]] = []
    for node, level in levels.items():
        while len(grouped) <= level:
            grouped.append([])
        grouped[level].append(node)
    return grouped


def starting_nodes(node_ids: Sequence[str], edges: Iterable[Edge]) -> list[str]:
    parents, _ = _adjacency(node_ids, edges)
    return [node for node in node_ids if not parents[node]]


def sink_nodes(node_ids: Sequence[str], edges: Iterable[Edge]) -> list[str]:
    _, children = _adjacency(node_ids, edges)
    return [node for node in node_ids if not children[node]]


def eligible_nodes(
    node_ids: Sequence[str],
    edges: Iterable[Edge],
    completed: set[str],
    instantiated: set[str],
    blocked: Iterable[str] = (),
) -> list[str]:
    """
    Nodes that may start now.

    A node is eligible when it has no task run yet, is not blocked
    (short-circuited), and every source node has a Completed task run.
    Starting nodes are eligible until they are instantiated.
    """
    blocked = set(blocked)
    parents, _ = _adjacency(node_ids, edges)
    return [
        node
        for node in node_ids
        if node not in instantiated
        and node not in blocked
        and all(parent in completed for parent in parents[node])
    ]


def transitive_dependents(node_ids: Sequence[str], edges: Iterable[Edge], root: str) -> list[str]:
    """Every node reachable from `root` (excluding it), in node order."""
    _, children = _adjacency(node_ids, edges)
    seen: set[str] = set()
    stack = list(children.get(root, []))
    while stack:
        node = stack.pop()
        if node in seen:
            continue
        seen.add(node)
        stack.extend(children[node])
    return [node for node in node_ids if node in seen]


def unreachable_nodes(
    node_ids: Sequence[str], edges: Iterable[Edge], dead_ends: Iterable[str]
) -> list[str]:
    """Nodes that can no longer run because an ancestor ended without completing."""
    edge_list = list(edges)
    unreachable: set[str] = set()
    for node in dead_ends:
        unreachable.update(transitive_dependents(node_ids, edge_list, node))
    return [node for node in node_ids if node in unreachable]
