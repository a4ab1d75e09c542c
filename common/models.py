"""
Checkpoint and run model dataclasses.

Each model provides:
- from_row(): classmethod to construct from a database row tuple
- to_dict(): returns a JSON-friendly dict
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any


class ShardState(str, Enum):
    """Lifecycle state of a shard in the checkpoint."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


# States a worker may claim a shard from
CLAIMABLE_STATES = (ShardState.PENDING, ShardState.FAILED)


@dataclass
class ShardStatus:
    """Checkpoint row for a single shard."""
    shard_id: str
    state: ShardState
    reason: Optional[str] = None
    attempts: int = 0
    documents: Dict[str, int] = field(default_factory=dict)
    worker: Optional[str] = None
    run_id: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: tuple) -> "ShardStatus":
        return cls(
            shard_id=row[0],
            state=ShardState(row[1]),
            reason=row[2],
            attempts=row[3] or 0,
            documents=json.loads(row[4]) if row[4] else {},
            worker=row[5],
            run_id=row[6],
            started_at=row[7],
            completed_at=row[8],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'shard_id': self.shard_id,
            'state': self.state.value,
            'reason': self.reason,
            'attempts': self.attempts,
            'documents': self.documents,
            'worker': self.worker,
            'run_id': self.run_id,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
        }


@dataclass
class PipelineRun:
    """Run log record."""
    id: str
    shard_count: int
    worker_count: int
    status: str = "running"
    done_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    summary: Optional[Dict[str, Any]] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def from_row(cls, row: tuple) -> "PipelineRun":
        return cls(
            id=row[0],
            shard_count=row[1],
            worker_count=row[2],
            status=row[3],
            done_count=row[4] or 0,
            failed_count=row[5] or 0,
            skipped_count=row[6] or 0,
            summary=json.loads(row[7]) if row[7] else None,
            started_at=row[8],
            completed_at=row[9],
            error_message=row[10],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'shard_count': self.shard_count,
            'worker_count': self.worker_count,
            'status': self.status,
            'done_count': self.done_count,
            'failed_count': self.failed_count,
            'skipped_count': self.skipped_count,
            'summary': self.summary,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'error_message': self.error_message,
        }
