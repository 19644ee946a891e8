"""Tests for pipeline/scheduler.py -- topological level scheduling."""

import pytest

from models.schemas import ExecutionMode
from pipeline.scheduler import execution_levels, find_unscheduled_nodes, topological_levels

FULLSTACK_NODES = ["requirements", "db_schema", "api_contract", "backend", "frontend", "tests"]
FULLSTACK_EDGES = [
    ("requirements", "db_schema"),
    ("requirements", "api_contract"),
    ("db_schema", "backend"),
    ("api_contract", "backend"),
    ("api_contract", "frontend"),
    ("backend", "tests"),
    ("frontend", "tests"),
]


class TestTopologicalLevels:
    """Level grouping."""

    def test_chain(self) -> None:
        levels = topological_levels(["a", "b", "c"], [("a", "b"), ("b", "c")])
        assert levels == [["a"], ["b"], ["c"]]

    def test_diamond_groups_siblings(self) -> None:
        levels = topological_levels(FULLSTACK_NODES, FULLSTACK_EDGES)
        assert levels == [
            ["requirements"],
            ["db_schema", "api_contract"],
            ["backend", "frontend"],
            ["tests"],
        ]

    def test_no_edges_single_level_in_input_order(self) -> None:
        assert topological_levels(["c", "a", "b"], []) == [["c", "a", "b"]]

    def test_empty_graph(self) -> None:
        assert topological_levels([], []) == []

    def test_every_edge_points_forward(self) -> None:
        levels = topological_levels(FULLSTACK_NODES, FULLSTACK_EDGES)
        position = {node_id: index for index, level in enumerate(levels) for node_id in level}
        for from_id, to_id in FULLSTACK_EDGES:
            assert position[from_id] < position[to_id]

    def test_edges_to_unknown_ids_ignored(self) -> None:
        levels = topological_levels(["a", "b"], [("a", "ghost"), ("ghost", "b")])
        assert levels == [["a", "b"]]

    def test_two_node_cycle_falls_back_to_input_order(self) -> None:
        assert topological_levels(["a", "b"], [("a", "b"), ("b", "a")]) == [["a"], ["b"]]

    @pytest.mark.parametrize(
        ("node_ids", "edges"),
        [
            (FULLSTACK_NODES, FULLSTACK_EDGES),
            (["a", "b", "c", "d"], [("a", "b"), ("b", "c"), ("c", "b"), ("c", "d")]),
        ],
    )
    def test_repeated_calls_are_identical(self, node_ids, edges) -> None:
        assert topological_levels(node_ids, edges) == topological_levels(list(node_ids), list(edges))
        for mode in ExecutionMode:
            assert execution_levels(node_ids, edges, mode) == execution_levels(node_ids, edges, mode)

    def test_cycle_nodes_appended_as_singletons(self) -> None:
        levels = topological_levels(["a", "b", "c"], [("b", "c"), ("c", "b")])
        assert levels == [["a"], ["b"], ["c"]]

    def test_downstream_of_cycle_still_scheduled_once(self) -> None:
        edges = [("a", "b"), ("b", "a"), ("b", "c")]
        levels = topological_levels(["a", "b", "c"], edges)
        flat = [node_id for level in levels for node_id in level]
        assert sorted(flat) == ["a", "b", "c"]
        assert len(flat) == 3


class TestFindUnscheduledNodes:
    def test_acyclic_graph_has_none(self) -> None:
        assert find_unscheduled_nodes(FULLSTACK_NODES, FULLSTACK_EDGES) == []

    def test_reports_cycle_members_and_downstream(self) -> None:
        edges = [("a", "b"), ("b", "c"), ("c", "b"), ("c", "d")]
        assert find_unscheduled_nodes(["a", "b", "c", "d"], edges) == ["b", "c", "d"]


class TestExecutionLevels:
    """Mode-dependent levels."""

    def test_dag_matches_topological(self) -> None:
        assert execution_levels(FULLSTACK_NODES, FULLSTACK_EDGES, ExecutionMode.DAG) == (
            topological_levels(FULLSTACK_NODES, FULLSTACK_EDGES)
        )

    def test_sequential_one_node_per_level(self) -> None:
        levels = execution_levels(FULLSTACK_NODES, FULLSTACK_EDGES, ExecutionMode.SEQUENTIAL)
        assert all(len(level) == 1 for level in levels)
        assert [level[0] for level in levels] == [
            "requirements",
            "db_schema",
            "api_contract",
            "backend",
            "frontend",
            "tests",
        ]

    def test_parallel_single_level_ignores_edges(self) -> None:
        levels = execution_levels(FULLSTACK_NODES, FULLSTACK_EDGES, ExecutionMode.PARALLEL)
        assert levels == [FULLSTACK_NODES]

    @pytest.mark.parametrize("mode", list(ExecutionMode))
    def test_empty_graph_every_mode(self, mode: ExecutionMode) -> None:
        assert execution_levels([], [], mode) == []
