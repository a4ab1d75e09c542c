"""
Shard orchestrator: a fixed pool of worker threads fed by a bounded queue.

    producer (caller thread) -> shard_queue (bounded) -> ShardWorker x N
                                                           |
                                               checkpoint (SQLite CAS)

Each worker claims a shard with a compare-and-set to in_progress, runs a
ShardProcessor over it and marks it done (outputs already durable) or
failed with a reason. A shutdown request stops dispatch; in-flight shards
finish normally and undispatched shards stay pending.
"""

import signal
import threading
import time
import uuid
from dataclasses import dataclass, field
from queue import Empty, Full, Queue
from typing import Any, Callable, Dict, List, Optional

from common.config import config
from common.errors import ShardError
from common.logging.logger import get_logger
from common.models import PipelineRun, ShardState
from common.repositories import CheckpointRepository, RunRepository
from corpus_pipeline.resource_governor import MemoryGovernor
from corpus_pipeline.shard_processor import ShardProcessor, ShardResult
from corpus_pipeline.wet_reader import ShardSource

logger = get_logger("orchestrator")

_STOP = object()


@dataclass
class RunSummary:
    """Aggregated outcome of one orchestrator run."""
    run_id: str
    start_time: float
    end_time: Optional[float] = None
    shards_total: int = 0
    skipped_done: int = 0
    dispatched: int = 0
    done: int = 0
    failed: Dict[str, str] = field(default_factory=dict)
    claim_conflicts: int = 0
    documents: Dict[str, int] = field(default_factory=dict)
    bytes: Dict[str, int] = field(default_factory=dict)
    rejected: Dict[str, Dict[str, int]] = field(default_factory=dict)
    records: int = 0
    malformed: int = 0
    interrupted: bool = False

    @property
    def duration_seconds(self) -> float:
        end = self.end_time or time.time()
        return end - self.start_time

    @property
    def duration_human(self) -> str:
        secs = int(self.duration_seconds)
        hours, remainder = divmod(secs, 3600)
        minutes, seconds = divmod(remainder, 60)
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def not_dispatched(self) -> int:
        return self.shards_total - self.skipped_done - self.dispatched

    def add_result(self, result: ShardResult):
        self.done += 1
        self.records += result.records
        self.malformed += result.malformed
        for lang, count in result.documents.items():
            self.documents[lang] = self.documents.get(lang, 0) + count
        for lang, count in result.bytes.items():
            self.bytes[lang] = self.bytes.get(lang, 0) + count
        for lang, reasons in result.rejected.items():
            merged = self.rejected.setdefault(lang, {})
            for reason, count in reasons.items():
                merged[reason] = merged.get(reason, 0) + count

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_id': self.run_id,
            'duration_seconds': round(self.duration_seconds, 2),
            'duration_human': self.duration_human,
            'shards_total': self.shards_total,
            'skipped_done': self.skipped_done,
            'done': self.done,
            'failed': self.failed_count,
            'failed_shards': dict(sorted(self.failed.items())),
            'not_dispatched': self.not_dispatched,
            'claim_conflicts': self.claim_conflicts,
            'records': self.records,
            'malformed_records': self.malformed,
            'documents': dict(sorted(self.documents.items())),
            'bytes': dict(sorted(self.bytes.items())),
            'rejected': {lang: dict(sorted(reasons.items())) for lang, reasons in sorted(self.rejected.items())},
            'interrupted': self.interrupted,
        }


class ShardWorker(threading.Thread):
    """Worker thread: one shard at a time, checkpointed around the processor."""

    def __init__(
        self,
        worker_id: int,
        shard_queue: Queue,
        source: ShardSource,
        processor: ShardProcessor,
        checkpoint: CheckpointRepository,
        stop_event: threading.Event,
        on_done: Callable[[ShardResult], None],
        on_failed: Callable[[str, str], None],
        on_conflict: Callable[[str], None],
        on_started: Optional[Callable[[str], None]] = None,
        run_id: Optional[str] = None,
    ):
        super().__init__(name=f"ShardWorker-{worker_id}", daemon=True)

        if shard_queue is None:
            raise ValueError("shard_queue is required")
        if processor is None:
            raise ValueError("processor is required")

        self.worker_id = worker_id
        self.shard_queue = shard_queue
        self.source = source
        self.processor = processor
        self.checkpoint = checkpoint
        self.stop_event = stop_event
        self.run_id = run_id
        self._on_done = on_done
        self._on_failed = on_failed
        self._on_conflict = on_conflict
        self._on_started = on_started

        self.current_shard: Optional[str] = None
        self._stats = {
            'done': 0,
            'failed': 0,
            'conflicts': 0,
        }

    def run(self):
        """Main worker loop."""
        logger.debug(f"{self.name} started")

        while not self.stop_event.is_set():
            try:
                item = self.shard_queue.get(timeout=0.5)
            except Empty:
                continue

            try:
                if item is _STOP:
                    break
                if self.stop_event.is_set():
                    # Dequeued after shutdown was requested: leave it pending
                    break
                if self._on_started:
                    self._on_started(item)
                self._handle(item)
            except Exception as e:
                # Shard stays in_progress; the next run resets and retries it
                logger.error(f"{self.name} error on shard {item}: {e}", exc_info=True)
            finally:
                self.shard_queue.task_done()

        logger.debug(f"{self.name} stopped. Stats: {self._stats}")

    def _handle(self, shard_id: str):
        if not self.checkpoint.claim(shard_id, worker=self.name, run_id=self.run_id):
            logger.warning(f"Shard {shard_id} could not be claimed, skipping")
            self._stats['conflicts'] += 1
            self._on_conflict(shard_id)
            return

        self.current_shard = shard_id
        try:
            try:
                with self.source.open(shard_id) as stream:
                    result = self.processor.process(shard_id, stream)
            except ShardError as e:
                self._fail(shard_id, e.detail)
                return
            except OSError as e:
                self._fail(shard_id, f"acquisition error: {e}")
                return

            self.checkpoint.mark_done(shard_id, result.documents)
            self._stats['done'] += 1
            self._on_done(result)
        finally:
            self.current_shard = None

    def _fail(self, shard_id: str, reason: str):
        logger.error(f"Shard {shard_id} failed: {reason}", extra={'shard_id': shard_id})
        self.checkpoint.mark_failed(shard_id, reason)
        self._stats['failed'] += 1
        self._on_failed(shard_id, reason)

    def get_stats(self) -> Dict[str, int]:
        return self._stats.copy()


class ProgressMonitor(threading.Thread):
    """
    Background thread for progress reporting.

    Periodically logs queue depth, shard counts and throughput.
    """

    def __init__(self, shard_queue: Queue, summary: RunSummary, lock: threading.Lock, interval: float = 30):
        super().__init__(name="ProgressMonitor", daemon=True)
        self.shard_queue = shard_queue
        self.summary = summary
        self.lock = lock
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self):
        while not self._stop_event.wait(self.interval):
            self._report_progress()

    def _report_progress(self):
        with self.lock:
            done = self.summary.done
            failed = self.summary.failed_count
            documents = sum(self.summary.documents.values())
        elapsed = self.summary.duration_seconds
        rate = done / max(elapsed, 1) * 60

        logger.info(
            f"Progress: {elapsed:.0f}s | queue={self.shard_queue.qsize()} | "
            f"done={done} failed={failed} | documents={documents} | "
            f"throughput={rate:.1f} shards/min"
        )

    def stop(self):
        self._stop_event.set()


class ShardOrchestrator:
    """
    Drives shards through a fixed worker pool against the checkpoint.

    `processor_factory` builds one ShardProcessor per worker; the models it
    closes over are loaded once by the caller and shared read-only.
    """

    def __init__(
        self,
        source: ShardSource,
        checkpoint: CheckpointRepository,
        processor_factory: Callable[[], ShardProcessor],
        runs: Optional[RunRepository] = None,
        queue_size: Optional[int] = None,
        progress_interval: Optional[float] = None,
        max_rss_gb: Optional[float] = None,
        check_interval_seconds: Optional[float] = None,
        install_signal_handlers: bool = True,
    ):
        if source is None:
            raise ValueError("source is required")
        if checkpoint is None:
            raise ValueError("checkpoint is required")
        if processor_factory is None:
            raise ValueError("processor_factory is required")

        self.source = source
        self.checkpoint = checkpoint
        self.processor_factory = processor_factory
        self.runs = runs
        self.queue_size = queue_size or config.get("orchestrator.queue_size")
        self.progress_interval = progress_interval or config.get("orchestrator.progress_interval")
        self.put_timeout = config.get("orchestrator.put_timeout_seconds")
        self.max_rss_gb = max_rss_gb or config.get("resource_limits.max_rss_gb")
        self.check_interval_seconds = (
            check_interval_seconds or config.get("resource_limits.check_interval_seconds")
        )
        self.install_signal_handlers = install_signal_handlers

        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._summary: Optional[RunSummary] = None

    def request_shutdown(self):
        """Stops dispatching new shards; in-flight shards finish."""
        if not self._stop_event.is_set():
            logger.info("Shutdown requested, letting in-flight shards finish...")
        self._stop_event.set()

    def run(self, shard_ids: Optional[List[str]] = None, worker_count: Optional[int] = None) -> RunSummary:
        """
        Processes every not-yet-done shard once.

        Args:
            shard_ids: shards to consider (default: everything the source lists)
            worker_count: size of the worker pool

        Returns:
            RunSummary
        """
        worker_count = worker_count or config.get("orchestrator.workers")
        if worker_count < 1:
            raise ValueError("worker_count must be >= 1")

        if shard_ids is None:
            shard_ids = self.source.list_shards()
        shard_ids = list(dict.fromkeys(str(s) for s in shard_ids))

        self._stop_event.clear()
        summary = RunSummary(run_id=uuid.uuid4().hex[:12], start_time=time.time())
        summary.shards_total = len(shard_ids)
        self._summary = summary

        # Resume: crashed in-progress shards become pending again
        self.checkpoint.register(shard_ids)
        self.checkpoint.reset_stale()
        states = self.checkpoint.states()
        to_process = [s for s in shard_ids if states.get(s) is not ShardState.DONE]
        summary.skipped_done = len(shard_ids) - len(to_process)

        logger.info(
            f"Run {summary.run_id}: {len(shard_ids)} shards, {summary.skipped_done} already done, "
            f"{len(to_process)} to process with {worker_count} workers"
        )
        if self.runs:
            self.runs.register_run(PipelineRun(
                id=summary.run_id, shard_count=len(shard_ids), worker_count=worker_count,
            ))

        shard_queue: Queue = Queue(maxsize=self.queue_size or 2 * worker_count)
        workers = [
            ShardWorker(
                worker_id=i,
                shard_queue=shard_queue,
                source=self.source,
                processor=self.processor_factory(),
                checkpoint=self.checkpoint,
                stop_event=self._stop_event,
                on_done=self._record_done,
                on_failed=self._record_failed,
                on_conflict=self._record_conflict,
                on_started=self._record_started,
                run_id=summary.run_id,
            )
            for i in range(worker_count)
        ]
        monitor = ProgressMonitor(shard_queue, summary, self._lock, interval=self.progress_interval)
        governor = None
        if self.max_rss_gb:
            governor = MemoryGovernor(
                max_rss_gb=self.max_rss_gb,
                check_interval_seconds=self.check_interval_seconds,
                on_limit=self.request_shutdown,
            )

        previous_handlers = self._install_signal_handlers()
        status = "completed"
        error = None
        try:
            for worker in workers:
                worker.start()
            monitor.start()
            if governor:
                governor.start()

            for shard_id in to_process:
                if not self._put(shard_queue, shard_id):
                    break
            for _ in workers:
                if not self._put(shard_queue, _STOP):
                    break

            for worker in workers:
                worker.join()
        except Exception as e:
            status = "error"
            error = str(e)
            logger.error(f"Run {summary.run_id} aborted: {e}")
            self._stop_event.set()
            for worker in workers:
                if worker.is_alive():
                    worker.join()
            raise
        finally:
            monitor.stop()
            if governor:
                governor.stop()
            self._restore_signal_handlers(previous_handlers)

            summary.end_time = time.time()
            summary.interrupted = self._stop_event.is_set()
            if summary.interrupted and status == "completed":
                status = "interrupted"
            if self.runs:
                self.runs.finalize_run(
                    summary.run_id,
                    status=status,
                    done_count=summary.done,
                    failed_count=summary.failed_count,
                    skipped_count=summary.skipped_done,
                    summary=summary.to_dict(),
                    error=error,
                )

        logger.info(f"Run {summary.run_id} {status} in {summary.duration_human}")
        logger.info(f"Final stats: {summary.to_dict()}")
        return summary

    def _put(self, shard_queue: Queue, item) -> bool:
        """Blocks until the queue has room; False if shutdown was requested."""
        while not self._stop_event.is_set():
            try:
                shard_queue.put(item, timeout=self.put_timeout)
            except Full:
                continue
            return True
        return False

    def _record_started(self, shard_id: str):
        with self._lock:
            self._summary.dispatched += 1

    def _record_done(self, result: ShardResult):
        with self._lock:
            self._summary.add_result(result)

    def _record_failed(self, shard_id: str, reason: str):
        with self._lock:
            self._summary.failed[shard_id] = reason

    def _record_conflict(self, shard_id: str):
        with self._lock:
            self._summary.claim_conflicts += 1

    def _install_signal_handlers(self) -> Dict[int, Any]:
        """Installs graceful-shutdown handlers; only possible from the main thread."""
        if not self.install_signal_handlers or threading.current_thread() is not threading.main_thread():
            return {}

        def handler(sig, frame):
            logger.info(f"Received signal {sig}, initiating graceful shutdown...")
            self.request_shutdown()

        previous = {}
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, handler)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: Dict[int, Any]):
        for sig, handler in previous.items():
            signal.signal(sig, handler)
