"""Tests for models/database.py and pipeline/history.py -- run history."""

from pathlib import Path

import aiosqlite
import pytest

from models.database import RunHistoryStore
from models.schemas import ErrorCategory, ExecutionMode, NodeStatus, RunRecord
from pipeline.engine import RunResult
from pipeline.history import build_run_record
from tests.conftest import make_node


def _record(run_id: str, timestamp: float, failed: int = 0) -> RunRecord:
    return RunRecord(
        id=run_id,
        timestamp=timestamp,
        project_description_short="todo app",
        mode=ExecutionMode.DAG,
        total_nodes=3,
        failed_count=failed,
    )


@pytest.fixture()
async def store(tmp_path: Path) -> RunHistoryStore:
    history = RunHistoryStore(str(tmp_path / "nested" / "runs.db"), limit=3)
    await history.init()
    return history


# =========================================================================
# RunHistoryStore
# =========================================================================


class TestRunHistoryStore:
    async def test_init_creates_parent_directories(self, tmp_path: Path) -> None:
        db_path = tmp_path / "a" / "b" / "runs.db"
        await RunHistoryStore(str(db_path)).init()
        assert db_path.exists()

    async def test_save_and_list_newest_first(self, store: RunHistoryStore) -> None:
        await store.save_run(_record("run_1", 100.0))
        await store.save_run(_record("run_2", 200.0))
        records = await store.list_runs()
        assert [r.id for r in records] == ["run_2", "run_1"]
        assert records[0].project_description_short == "todo app"

    async def test_trims_to_limit(self, store: RunHistoryStore) -> None:
        for index in range(5):
            await store.save_run(_record(f"run_{index}", float(index)))
        records = await store.list_runs()
        assert [r.id for r in records] == ["run_4", "run_3", "run_2"]

    async def test_save_same_id_replaces(self, store: RunHistoryStore) -> None:
        await store.save_run(_record("run_1", 100.0, failed=2))
        await store.save_run(_record("run_1", 100.0, failed=0))
        records = await store.list_runs()
        assert len(records) == 1
        assert records[0].failed_count == 0

    async def test_list_respects_explicit_limit(self, store: RunHistoryStore) -> None:
        await store.save_run(_record("run_1", 1.0))
        await store.save_run(_record("run_2", 2.0))
        assert [r.id for r in await store.list_runs(limit=1)] == ["run_2"]

    async def test_clear_all_returns_count(self, store: RunHistoryStore) -> None:
        await store.save_run(_record("run_1", 1.0))
        await store.save_run(_record("run_2", 2.0))
        assert await store.clear_all() == 2
        assert await store.list_runs() == []

    async def test_unreadable_rows_skipped(self, store: RunHistoryStore) -> None:
        await store.save_run(_record("run_1", 1.0))
        async with aiosqlite.connect(store.db_path) as db:
            await db.execute(
                "INSERT INTO runs (id, mode, timestamp, failed_count, record) VALUES (?, ?, ?, ?, ?)",
                ("broken", "dag", 2.0, 0, "{not json"),
            )
            await db.commit()
        assert [r.id for r in await store.list_runs()] == ["run_1"]

    async def test_save_errors_are_swallowed(self, tmp_path: Path) -> None:
        # Table never created: the write fails but must not raise
        store = RunHistoryStore(str(tmp_path / "missing.db"))
        await store.save_run(_record("run_1", 1.0))
        assert await store.list_runs() == []


# =========================================================================
# build_run_record
# =========================================================================


class TestBuildRunRecord:
    def _result(self) -> RunResult:
        result = RunResult(run_id="run_abc", mode=ExecutionMode.SEQUENTIAL, started_at=10.0)
        result.node_ids = ["requirements", "backend", "tests"]
        result.statuses = {
            "requirements": NodeStatus.DONE,
            "backend": NodeStatus.ERROR,
            "tests": NodeStatus.SKIPPED,
        }
        result.outputs = {"requirements": "secret output", "backend": "ERROR: 401"}
        result.models_used = {"requirements": "llama-70b", "backend": "claude-sonnet"}
        result.healed = {"requirements"}
        result.error_categories = {"requirements": ErrorCategory.TIMEOUT, "backend": ErrorCategory.AUTH}
        result.finished_at = 12.5
        return result

    def test_counts_and_metadata(self) -> None:
        nodes = [make_node("requirements"), make_node("backend"), make_node("tests")]
        edges = [("requirements", "backend"), ("backend", "tests")]
        record = build_run_record(self._result(), nodes, edges, "x" * 500)

        assert record.id == "run_abc"
        assert record.mode == ExecutionMode.SEQUENTIAL
        assert record.total_nodes == 3
        assert record.edge_count == 2
        assert record.success_count == 1
        assert record.failed_count == 1
        assert record.skipped_count == 1
        assert record.heal_count == 1
        assert record.failed_node_types == ["backend"]
        assert record.error_patterns == ["timeout", "auth_failure"]
        assert record.duration_ms == 2500
        assert len(record.project_description_short) == 120

    def test_never_contains_outputs(self) -> None:
        nodes = [make_node("requirements"), make_node("backend"), make_node("tests")]
        record = build_run_record(self._result(), nodes, [], "desc")
        assert "secret output" not in record.model_dump_json()
