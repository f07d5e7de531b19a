"""
Publication Approvals — Worker Backends

Pluggable backends for the two kinds of background work:
  - trigger delivery: ApprovalRequested → orchestrator instance
  - change-feed consumption: Change Relay and Resumption Bridge

  - InlineBackend: synchronous in-process, drains the feed after each
                   write (dev/testing)
  - ThreadPoolBackend: trigger jobs on a ThreadPoolExecutor plus one
                       background thread running the feed worker pool
  - ArqBackend: trigger jobs via arq + Redis; the arq worker
                (api/arq_worker.py) polls the feed on a cron

The active backend is selected by config (worker.mode) or PA_WORKER__MODE.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from api.models import JobStatus
from approvals.events import EventEnvelope
from approvals.runtime import ApprovalRuntime

logger = logging.getLogger("publication_approvals.worker")


# ═══════════════════════════════════════════════════════════════════
# Job Tracking
# ═══════════════════════════════════════════════════════════════════

@dataclass
class JobRecord:
    """In-memory record for tracking job lifecycle."""
    job_id: str
    event_id: str
    status: str = JobStatus.QUEUED.value
    enqueued_at: float = 0.0
    started_at: float = 0.0
    completed_at: float = 0.0
    instance_id: str = ""
    error: str = ""


class JobTracker:
    """Thread-safe in-memory job status tracker."""

    def __init__(self):
        self._jobs: dict[str, JobRecord] = {}
        self._lock = threading.Lock()

    def create(self, event_id: str) -> JobRecord:
        record = JobRecord(
            job_id=f"job_{uuid.uuid4().hex[:12]}",
            event_id=event_id,
            enqueued_at=time.time(),
        )
        with self._lock:
            self._jobs[record.job_id] = record
        return record

    def get(self, job_id: str) -> JobRecord | None:
        with self._lock:
            return self._jobs.get(job_id)

    def get_by_event(self, event_id: str) -> JobRecord | None:
        with self._lock:
            for j in self._jobs.values():
                if j.event_id == event_id:
                    return j
        return None

    def mark_running(self, job_id: str):
        with self._lock:
            if job_id in self._jobs:
                self._jobs[job_id].status = JobStatus.RUNNING.value
                self._jobs[job_id].started_at = time.time()

    def mark_completed(self, job_id: str, instance_id: str = ""):
        with self._lock:
            if job_id in self._jobs:
                self._jobs[job_id].status = JobStatus.COMPLETED.value
                self._jobs[job_id].completed_at = time.time()
                self._jobs[job_id].instance_id = instance_id

    def mark_failed(self, job_id: str, error: str):
        with self._lock:
            if job_id in self._jobs:
                self._jobs[job_id].status = JobStatus.FAILED.value
                self._jobs[job_id].completed_at = time.time()
                self._jobs[job_id].error = error[:500]

    @property
    def stats(self) -> dict[str, int]:
        with self._lock:
            counts = {s.value: 0 for s in JobStatus}
            for j in self._jobs.values():
                counts[j.status] = counts.get(j.status, 0) + 1
            return counts


def deliver_trigger(runtime: ApprovalRuntime, tracker: JobTracker, job_id: str, envelope: EventEnvelope):
    """Run one trigger delivery and record its outcome on the tracker."""
    tracker.mark_running(job_id)
    try:
        outcome = runtime.dispatcher.deliver(envelope)
    except Exception as e:
        tracker.mark_failed(job_id, str(e))
        logger.exception("Trigger job %s failed for %s", job_id, envelope.event_id)
        return
    if outcome.delivered:
        tracker.mark_completed(job_id, outcome.instance.instance_id)
    else:
        tracker.mark_failed(job_id, f"dead-lettered: {outcome.dead_letter_reason}")


# ═══════════════════════════════════════════════════════════════════
# Worker Backend Interface
# ═══════════════════════════════════════════════════════════════════

class WorkerBackend:
    """Abstract interface for background dispatch."""

    def __init__(self, runtime: ApprovalRuntime):
        self.runtime = runtime
        self.tracker = JobTracker()

    def submit_trigger(self, envelope: EventEnvelope) -> str:
        """Enqueue an ApprovalRequested delivery. Returns job_id."""
        raise NotImplementedError

    def get_job(self, job_id: str) -> JobRecord | None:
        """Current status of a submitted job; None if unknown."""
        return self.tracker.get(job_id)

    def after_write(self) -> None:
        """Called after every status store write made through the API."""
        pass

    def start(self) -> None:
        pass

    def shutdown(self) -> None:
        """Graceful shutdown."""
        pass


# ═══════════════════════════════════════════════════════════════════
# Inline Backend (synchronous, dev/test)
# ═══════════════════════════════════════════════════════════════════

class InlineBackend(WorkerBackend):
    """Synchronous in-process execution. Blocks until the work is done."""

    def submit_trigger(self, envelope: EventEnvelope) -> str:
        record = self.tracker.create(envelope.event_id)
        deliver_trigger(self.runtime, self.tracker, record.job_id, envelope)
        self.after_write()
        return record.job_id

    def after_write(self) -> None:
        rnd = self.runtime.pump()
        if rnd.errors:
            consumer, shard, err = rnd.errors[0]
            logger.error("Inline feed pump failed: %s shard %d: %s", consumer, shard, err)


# ═══════════════════════════════════════════════════════════════════
# Thread Pool Backend
# ═══════════════════════════════════════════════════════════════════

class ThreadPoolBackend(WorkerBackend):
    """
    Trigger jobs on a bounded ThreadPoolExecutor. The change feed is
    consumed by a background thread until shutdown.
    """

    def __init__(self, runtime: ApprovalRuntime, max_workers: int = 4):
        super().__init__(runtime)
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="pa_worker",
        )
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._feed_thread: threading.Thread | None = None
        logger.info("ThreadPoolBackend started: max_workers=%d", max_workers)

    def start(self) -> None:
        if self._feed_thread is not None:
            return
        self._feed_thread = threading.Thread(
            target=self.runtime.run_feed_forever,
            args=(self._stop,),
            name="pa_feed",
            daemon=True,
        )
        self._feed_thread.start()

    def submit_trigger(self, envelope: EventEnvelope) -> str:
        record = self.tracker.create(envelope.event_id)
        future = self._pool.submit(
            deliver_trigger, self.runtime, self.tracker, record.job_id, envelope,
        )
        with self._lock:
            self._futures[record.job_id] = future
        logger.info("Enqueued job %s for trigger %s", record.job_id, envelope.event_id)
        return record.job_id

    def shutdown(self) -> None:
        logger.info("Shutting down ThreadPoolBackend...")
        self._stop.set()
        if self._feed_thread is not None:
            self._feed_thread.join(timeout=10)
        self._pool.shutdown(wait=True, cancel_futures=False)


# ═══════════════════════════════════════════════════════════════════
# Arq Backend (production — Redis)
# ═══════════════════════════════════════════════════════════════════

class ArqBackend(WorkerBackend):
    """
    Trigger delivery via arq + Redis. The arq worker picks jobs up and
    also polls the change feed on a cron schedule.

    Job status is read back from arq, since the work runs in another
    process. Jobs submitted by a different API process are unknown here.
    """

    def __init__(self, runtime: ApprovalRuntime, redis_url: str = "redis://localhost:6379"):
        super().__init__(runtime)
        self.redis_url = redis_url
        self._arq_pool = None
        # Route handlers run inside uvicorn's loop, so arq calls go to a loop of their own.
        self._loop = asyncio.new_event_loop()
        self._loop_thread = threading.Thread(target=self._loop.run_forever, name="pa_arq", daemon=True)
        self._loop_thread.start()

    def _call(self, coro, timeout: float = 10.0):
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result(timeout)

    def _ensure_pool(self):
        """Lazy-init arq Redis pool."""
        if self._arq_pool is not None:
            return
        from arq import create_pool
        from arq.connections import RedisSettings

        try:
            self._arq_pool = self._call(create_pool(RedisSettings.from_dsn(self.redis_url)))
        except Exception as e:
            raise RuntimeError(f"Cannot connect to Redis at {self.redis_url}: {e}") from e

    def submit_trigger(self, envelope: EventEnvelope) -> str:
        self._ensure_pool()
        record = self.tracker.create(envelope.event_id)
        self._call(
            self._arq_pool.enqueue_job(
                "deliver_trigger_job",
                _job_id=record.job_id,
                envelope=envelope.to_dict(),
            )
        )
        logger.info("Enqueued arq job %s for trigger %s", record.job_id, envelope.event_id)
        return record.job_id

    def get_job(self, job_id: str) -> JobRecord | None:
        record = self.tracker.get(job_id)
        if record is None or record.status in (JobStatus.COMPLETED.value, JobStatus.FAILED.value):
            return record

        self._ensure_pool()
        from arq.jobs import Job
        from arq.jobs import JobStatus as ArqJobStatus

        job = Job(job_id, self._arq_pool)
        status = self._call(job.status())
        if status == ArqJobStatus.in_progress:
            self.tracker.mark_running(job_id)
        elif status == ArqJobStatus.complete:
            info = self._call(job.result_info())
            if info is None:
                self.tracker.mark_failed(job_id, "result expired")
            elif not info.success:
                self.tracker.mark_failed(job_id, f"{type(info.result).__name__}: {info.result}")
            elif info.result:
                self.tracker.mark_completed(job_id, info.result)
            else:
                self.tracker.mark_failed(job_id, "dead-lettered")
        return self.tracker.get(job_id)

    def shutdown(self) -> None:
        if self._arq_pool is not None:
            self._call(self._arq_pool.close())
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._loop_thread.join(timeout=10)
        self._loop.close()


# ═══════════════════════════════════════════════════════════════════
# Backend Factory
# ═══════════════════════════════════════════════════════════════════

def create_backend(
    runtime: ApprovalRuntime,
    mode: str | None = None,
    max_workers: int = 4,
) -> WorkerBackend:
    """
    Create the worker backend.

    Mode selection (explicit mode wins over runtime.config.worker_mode):
      - "inline": InlineBackend (synchronous)
      - "thread": ThreadPoolBackend (background, in-process)
      - "arq":    ArqBackend (Redis)
    """
    mode = mode or runtime.config.worker_mode

    if mode == "inline":
        logger.info("Worker backend: InlineBackend (synchronous)")
        return InlineBackend(runtime)
    if mode == "thread":
        logger.info("Worker backend: ThreadPoolBackend (max_workers=%d)", max_workers)
        return ThreadPoolBackend(runtime, max_workers=max_workers)
    if mode == "arq":
        logger.info("Worker backend: ArqBackend (redis=%s)", runtime.config.redis_url)
        return ArqBackend(runtime, redis_url=runtime.config.redis_url)
    raise ValueError(f"Unknown worker mode {mode!r}; expected inline, thread or arq")


def job_to_dict(job: JobRecord) -> dict[str, Any]:
    return {
        "job_id": job.job_id,
        "event_id": job.event_id,
        "status": job.status,
        "instance_id": job.instance_id,
        "error": job.error,
    }
