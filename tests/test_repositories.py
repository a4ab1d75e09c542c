"""Integration tests for common/repositories.py using temp-file SQLite (via DI)."""

import threading

import pytest

from common.errors import CheckpointError
from common.models import PipelineRun, ShardState


class TestCheckpointRegister:
    def test_register_adds_pending(self, checkpoint):
        assert checkpoint.register(["1", "2", "3"]) == 3
        assert checkpoint.counts()["pending"] == 3
        assert checkpoint.get("2").state is ShardState.PENDING

    def test_register_is_idempotent(self, checkpoint):
        checkpoint.register(["1", "2"])
        assert checkpoint.register(["2", "3"]) == 1
        assert len(checkpoint.states()) == 3

    def test_register_keeps_existing_state(self, checkpoint):
        checkpoint.register(["1"])
        checkpoint.claim("1")
        checkpoint.mark_done("1", {"fr": 2})
        checkpoint.register(["1"])
        assert checkpoint.get("1").state is ShardState.DONE


class TestCheckpointClaim:
    def test_claim_pending(self, checkpoint):
        checkpoint.register(["1"])
        assert checkpoint.claim("1", worker="w0", run_id="run-a") is True

        status = checkpoint.get("1")
        assert status.state is ShardState.IN_PROGRESS
        assert status.attempts == 1
        assert status.worker == "w0"
        assert status.run_id == "run-a"

    def test_second_claim_fails(self, checkpoint):
        checkpoint.register(["1"])
        assert checkpoint.claim("1") is True
        assert checkpoint.claim("1") is False

    def test_claim_unknown_shard_fails(self, checkpoint):
        assert checkpoint.claim("missing") is False

    def test_done_shard_is_not_claimable(self, checkpoint):
        checkpoint.register(["1"])
        checkpoint.claim("1")
        checkpoint.mark_done("1", {})
        assert checkpoint.claim("1") is False

    def test_failed_shard_is_claimable(self, checkpoint):
        checkpoint.register(["1"])
        checkpoint.claim("1")
        checkpoint.mark_failed("1", "decompression error: bad header")
        assert checkpoint.claim("1") is True
        assert checkpoint.get("1").attempts == 2
        assert checkpoint.get("1").reason is None

    def test_concurrent_claims_have_one_winner(self, checkpoint):
        checkpoint.register(["1"])
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(8)

        def claim():
            barrier.wait()
            won = checkpoint.claim("1")
            with lock:
                results.append(won)

        threads = [threading.Thread(target=claim) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert checkpoint.get("1").attempts == 1


class TestCheckpointTransitions:
    def test_mark_done_records_documents(self, checkpoint):
        checkpoint.register(["1"])
        checkpoint.claim("1")
        checkpoint.mark_done("1", {"fr": 3, "en": 1})

        status = checkpoint.get("1")
        assert status.state is ShardState.DONE
        assert status.documents == {"en": 1, "fr": 3}
        assert status.completed_at is not None

    def test_mark_done_requires_in_progress(self, checkpoint):
        checkpoint.register(["1"])
        with pytest.raises(CheckpointError):
            checkpoint.mark_done("1", {})

    def test_mark_failed_requires_reason(self, checkpoint):
        checkpoint.register(["1"])
        checkpoint.claim("1")
        with pytest.raises(ValueError):
            checkpoint.mark_failed("1", "")

    def test_failed_shards_lists_reasons(self, checkpoint):
        checkpoint.register(["1", "2"])
        checkpoint.claim("2")
        checkpoint.mark_failed("2", "decompression error: not a gzip file")

        failed = checkpoint.failed_shards()
        assert [f.shard_id for f in failed] == ["2"]
        assert failed[0].reason.startswith("decompression error")

    def test_reset_stale(self, checkpoint):
        checkpoint.register(["1", "2"])
        checkpoint.claim("1")
        checkpoint.claim("2")
        checkpoint.mark_done("2", {})

        assert checkpoint.reset_stale() == 1
        assert checkpoint.get("1").state is ShardState.PENDING
        assert checkpoint.get("2").state is ShardState.DONE

    def test_invalidate_done_and_failed(self, checkpoint):
        checkpoint.register(["1", "2", "3"])
        checkpoint.claim("1")
        checkpoint.mark_done("1", {"fr": 1})
        checkpoint.claim("2")
        checkpoint.mark_failed("2", "boom")

        invalidated = checkpoint.invalidate(["1", "2", "3", "unknown"])
        assert invalidated == ["1", "2"]
        assert checkpoint.get("1").state is ShardState.PENDING
        assert checkpoint.get("1").reason == "invalidated"
        assert checkpoint.get("1").documents == {}

    def test_counts_and_done_shards(self, checkpoint):
        checkpoint.register(["1", "2", "3"])
        checkpoint.claim("1")
        checkpoint.mark_done("1", {})
        checkpoint.claim("2")

        assert checkpoint.counts() == {"pending": 1, "in_progress": 1, "done": 1, "failed": 0}
        assert checkpoint.done_shards() == ["1"]

    def test_state_survives_new_repository(self, memory_db):
        from common.database import Database
        from common.repositories import CheckpointRepository

        first = CheckpointRepository(memory_db)
        first.register(["1"])
        first.claim("1")
        first.mark_done("1", {"fr": 1})

        reopened = CheckpointRepository(Database(db_path=memory_db.db_path))
        assert reopened.get("1").state is ShardState.DONE


class TestRunRepository:
    def test_register_and_finalize(self, runs):
        runs.register_run(PipelineRun(id="run-1", shard_count=3, worker_count=2))
        assert runs.get_run("run-1").status == "running"

        runs.finalize_run(
            "run-1",
            status="completed",
            done_count=2,
            failed_count=1,
            skipped_count=0,
            summary={"documents": {"fr": 4}},
        )
        run = runs.get_run("run-1")
        assert run.status == "completed"
        assert run.done_count == 2
        assert run.failed_count == 1
        assert run.summary == {"documents": {"fr": 4}}
        assert run.completed_at is not None

    def test_get_missing_run(self, runs):
        assert runs.get_run("nope") is None
