"""
Repository layer for the checkpoint store.

Each repository class accepts an optional Database instance, building one
from configuration when not provided. Thread-safe: each method opens its
own connection, and every state transition is a single UPDATE guarded by
the expected current state, so SQLite's write lock makes it a
compare-and-set.
"""

import json
from typing import Dict, Iterable, List, Optional

from common.database import Database
from common.errors import CheckpointError
from common.logging.logger import get_logger
from common.models import CLAIMABLE_STATES, PipelineRun, ShardState, ShardStatus

logger = get_logger("repositories")

_STATUS_COLUMNS = (
    "shard_id, state, reason, attempts, documents, worker, run_id, "
    "started_at, completed_at"
)


class CheckpointRepository:
    """Durable shard id -> state (+ reason) mapping."""

    def __init__(self, database: Optional[Database] = None):
        self._db = database or Database()

    # ---- writes ----

    def register(self, shard_ids: Iterable[str]) -> int:
        """Adds unknown shards as pending. Returns the number of new rows."""
        rows = [(str(shard_id),) for shard_id in shard_ids]
        with self._db.connection() as conn:
            before = conn.total_changes
            conn.executemany(
                "INSERT OR IGNORE INTO shard_state (shard_id, state) VALUES (?, 'pending')",
                rows,
            )
            added = conn.total_changes - before
        if added:
            logger.info(f"Registered {added} new shards")
        return added

    def reset_stale(self) -> int:
        """Returns shards left in progress by a crashed run to pending."""
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE shard_state
                SET state = 'pending',
                    reason = 'reset after interrupted run',
                    worker = NULL,
                    updated_at = CURRENT_TIMESTAMP
                WHERE state = 'in_progress'
                """
            )
            count = cursor.rowcount
        if count:
            logger.warning(f"Reset {count} in-progress shards from an interrupted run")
        return count

    def claim(self, shard_id: str, worker: Optional[str] = None, run_id: Optional[str] = None) -> bool:
        """
        Atomically moves a shard from pending/failed to in_progress.

        Returns False when the shard is unknown or in any other state, which
        means another worker owns it or it is already done.
        """
        placeholders = ", ".join("?" for _ in CLAIMABLE_STATES)
        with self._db.connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE shard_state
                SET state = 'in_progress',
                    reason = NULL,
                    attempts = attempts + 1,
                    worker = ?,
                    run_id = ?,
                    started_at = CURRENT_TIMESTAMP,
                    completed_at = NULL,
                    updated_at = CURRENT_TIMESTAMP
                WHERE shard_id = ? AND state IN ({placeholders})
                """,
                (worker, run_id, shard_id, *[s.value for s in CLAIMABLE_STATES]),
            )
            return cursor.rowcount == 1

    def mark_done(self, shard_id: str, documents: Dict[str, int]) -> None:
        """Marks an in-progress shard done. Call only after its outputs are durable."""
        self._finish(shard_id, ShardState.DONE, None, documents)

    def mark_failed(self, shard_id: str, reason: str) -> None:
        if not reason:
            raise ValueError("reason is required")
        self._finish(shard_id, ShardState.FAILED, reason, None)

    def _finish(
        self,
        shard_id: str,
        state: ShardState,
        reason: Optional[str],
        documents: Optional[Dict[str, int]],
    ) -> None:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE shard_state
                SET state = ?,
                    reason = ?,
                    documents = ?,
                    completed_at = CURRENT_TIMESTAMP,
                    updated_at = CURRENT_TIMESTAMP
                WHERE shard_id = ? AND state = 'in_progress'
                """,
                (
                    state.value,
                    reason,
                    json.dumps(documents, sort_keys=True) if documents is not None else None,
                    shard_id,
                ),
            )
            if cursor.rowcount != 1:
                raise CheckpointError(
                    f"cannot mark shard '{shard_id}' {state.value}: it is not in progress"
                )

    def invalidate(self, shard_ids: Iterable[str]) -> List[str]:
        """Returns done or failed shards to pending so the next run reprocesses them."""
        invalidated = []
        with self._db.connection() as conn:
            for shard_id in shard_ids:
                cursor = conn.execute(
                    """
                    UPDATE shard_state
                    SET state = 'pending',
                        reason = 'invalidated',
                        documents = NULL,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE shard_id = ? AND state IN ('done', 'failed')
                    """,
                    (shard_id,),
                )
                if cursor.rowcount == 1:
                    invalidated.append(shard_id)
        if invalidated:
            logger.info(f"Invalidated {len(invalidated)} shards")
        return invalidated

    # ---- reads ----

    def get(self, shard_id: str) -> Optional[ShardStatus]:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_STATUS_COLUMNS} FROM shard_state WHERE shard_id = ?",
                (shard_id,),
            ).fetchone()
        return ShardStatus.from_row(row) if row else None

    def states(self) -> Dict[str, ShardState]:
        with self._db.connection() as conn:
            rows = conn.execute("SELECT shard_id, state FROM shard_state").fetchall()
        return {shard_id: ShardState(state) for shard_id, state in rows}

    def counts(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in ShardState}
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT state, COUNT(*) FROM shard_state GROUP BY state"
            ).fetchall()
        for state, count in rows:
            counts[state] = count
        return counts

    def done_shards(self) -> List[str]:
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT shard_id FROM shard_state WHERE state = 'done'"
            ).fetchall()
        return [row[0] for row in rows]

    def failed_shards(self) -> List[ShardStatus]:
        with self._db.connection() as conn:
            rows = conn.execute(
                f"SELECT {_STATUS_COLUMNS} FROM shard_state WHERE state = 'failed' ORDER BY shard_id"
            ).fetchall()
        return [ShardStatus.from_row(row) for row in rows]


class RunRepository:
    """Run log: one row per orchestrator invocation."""

    def __init__(self, database: Optional[Database] = None):
        self._db = database or Database()

    def register_run(self, run: PipelineRun) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO pipeline_runs
                (id, shard_count, worker_count, status, started_at)
                VALUES (?, ?, ?, 'running', CURRENT_TIMESTAMP)
                """,
                (run.id, run.shard_count, run.worker_count),
            )

    def finalize_run(
        self,
        run_id: str,
        status: str,
        done_count: int,
        failed_count: int,
        skipped_count: int,
        summary: Optional[Dict] = None,
        error: Optional[str] = None,
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE pipeline_runs
                SET status = ?,
                    done_count = ?,
                    failed_count = ?,
                    skipped_count = ?,
                    summary = ?,
                    completed_at = CURRENT_TIMESTAMP,
                    error_message = ?
                WHERE id = ?
                """,
                (
                    status,
                    done_count,
                    failed_count,
                    skipped_count,
                    json.dumps(summary) if summary is not None else None,
                    error,
                    run_id,
                ),
            )

    def get_run(self, run_id: str) -> Optional[PipelineRun]:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT id, shard_count, worker_count, status, done_count, failed_count,
                       skipped_count, summary, started_at, completed_at, error_message
                FROM pipeline_runs WHERE id = ?
                """,
                (run_id,),
            ).fetchone()
        return PipelineRun.from_row(row) if row else None
