"""SQLite-based run history using aiosqlite.

This module provides the RunHistoryStore class that keeps metadata-only
records of finished pipeline runs. No node outputs are stored. All
operations are async and fail gracefully: a database error is logged and
never reaches the run that produced the record.

Tables:
    runs: One row per finished run; the full RunRecord is stored as JSON
          next to the columns used for ordering and listing.

Usage:
    >>> from models.database import RunHistoryStore
    >>> store = RunHistoryStore("./data/runs.db", limit=25)
    >>> await store.init()
    >>> await store.save_run(record)
    >>> records = await store.list_runs()
"""

from pathlib import Path

import aiosqlite
import structlog
from pydantic import ValidationError

from models.schemas import RunRecord

logger = structlog.get_logger(__name__)


class RunHistoryStore:
    """Async SQLite store for run records, capped at ``limit`` rows.

    Attributes:
        db_path: Path to the SQLite database file.
        limit: Maximum number of records kept; the oldest are trimmed.
    """

    def __init__(self, db_path: str, limit: int = 25) -> None:
        self.db_path = db_path
        self.limit = limit

    async def init(self) -> None:
        """Create the runs table if it does not exist.

        Also creates parent directories for the database file if needed.
        """
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS runs (
                        id TEXT PRIMARY KEY,
                        mode TEXT NOT NULL,
                        timestamp REAL NOT NULL,
                        failed_count INTEGER NOT NULL DEFAULT 0,
                        record TEXT NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_runs_timestamp
                    ON runs(timestamp DESC)
                """)
                await db.commit()
            logger.info("run_history_initialized", db_path=self.db_path, limit=self.limit)
        except Exception as e:
            logger.error("run_history_init_failed", db_path=self.db_path, error=str(e))
            raise

    async def save_run(self, record: RunRecord) -> None:
        """Insert (or replace) a run record and trim the table to ``limit``."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO runs (id, mode, timestamp, failed_count, record)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        record.mode.value,
                        record.timestamp,
                        record.failed_count,
                        record.model_dump_json(),
                    ),
                )
                await db.execute(
                    """
                    DELETE FROM runs WHERE id NOT IN (
                        SELECT id FROM runs ORDER BY timestamp DESC LIMIT ?
                    )
                    """,
                    (self.limit,),
                )
                await db.commit()
            logger.debug("run_record_saved", run_id=record.id, failed_count=record.failed_count)
        except Exception as e:
            logger.error("run_record_save_failed", run_id=record.id, error=str(e))

    async def list_runs(self, limit: int | None = None) -> list[RunRecord]:
        """List records newest first; unreadable rows are skipped."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "SELECT id, record FROM runs ORDER BY timestamp DESC LIMIT ?",
                    (limit or self.limit,),
                )
                rows = await cursor.fetchall()
        except Exception as e:
            logger.error("run_history_list_failed", error=str(e))
            return []

        records: list[RunRecord] = []
        for run_id, payload in rows:
            try:
                records.append(RunRecord.model_validate_json(payload))
            except ValidationError as e:
                logger.warning("run_record_unreadable", run_id=run_id, error=str(e))
        return records

    async def clear_all(self) -> int:
        """Delete every record.

        Returns:
            Number of rows removed.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("SELECT COUNT(*) FROM runs")
                count_row = await cursor.fetchone()
                deleted_count = int(count_row[0]) if count_row else 0
                await db.execute("DELETE FROM runs")
                await db.commit()
            logger.info("run_history_cleared", deleted_count=deleted_count)
            return deleted_count
        except Exception as e:
            logger.error("run_history_clear_failed", error=str(e))
            return 0
