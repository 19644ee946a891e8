"""Topological level scheduling.

Turns a node-id set plus an edge set into ordered levels of node ids. All
nodes in a level can run in parallel; every edge points from an earlier
level to a later one. Pure functions, no I/O.
"""

from collections.abc import Iterable, Sequence

from models.schemas import Edge, ExecutionMode


def _peel(node_ids: Sequence[str], edges: Iterable[Edge]) -> tuple[list[list[str]], list[str]]:
    """In-degree peeling; returns (levels, ids that were never reached)."""
    known = set(node_ids)
    in_degree = {node_id: 0 for node_id in node_ids}
    successors: dict[str, list[str]] = {node_id: [] for node_id in node_ids}

    for from_id, to_id in edges:
        # Edges to or from unknown ids are ignored
        if from_id not in known or to_id not in known:
            continue
        successors[from_id].append(to_id)
        in_degree[to_id] += 1

    levels: list[list[str]] = []
    visited: set[str] = set()
    frontier = [node_id for node_id in node_ids if in_degree[node_id] == 0]

    while frontier:
        levels.append(frontier)
        visited.update(frontier)
        next_frontier: list[str] = []
        for node_id in frontier:
            for successor in successors[node_id]:
                in_degree[successor] -= 1
                if in_degree[successor] == 0:
                    next_frontier.append(successor)
        frontier = next_frontier

    unreached = [node_id for node_id in node_ids if node_id not in visited]
    return levels, unreached


def topological_levels(node_ids: Sequence[str], edges: Iterable[Edge]) -> list[list[str]]:
    """Group nodes into dependency levels.

    Level 0 holds every node without known predecessors, in input order.
    Nodes on or downstream of a cycle are never reached by the peeling;
    they are appended as singleton levels in input order so that every node
    still runs exactly once. Never raises for cyclic input.

    Args:
        node_ids: Node ids in input order (duplicates are not expected)
        edges: (from_id, to_id) pairs

    Returns:
        Ordered list of levels; each node id appears in exactly one level
    """
    levels, unreached = _peel(node_ids, edges)
    levels.extend([node_id] for node_id in unreached)
    return levels


def find_unscheduled_nodes(node_ids: Sequence[str], edges: Iterable[Edge]) -> list[str]:
    """Ids the peeling cannot reach, i.e. nodes in or downstream of a cycle."""
    _, unreached = _peel(node_ids, edges)
    return unreached


def execution_levels(
    node_ids: Sequence[str],
    edges: Iterable[Edge],
    mode: ExecutionMode,
) -> list[list[str]]:
    """Levels to execute for a given mode.

    - dag: topological levels
    - sequential: topological order flattened to one node per level
    - parallel: every node in a single level, edges ignored for ordering
    """
    if mode == ExecutionMode.PARALLEL:
        return [list(node_ids)] if node_ids else []
    levels = topological_levels(node_ids, edges)
    if mode == ExecutionMode.SEQUENTIAL:
        return [[node_id] for level in levels for node_id in level]
    return levels
