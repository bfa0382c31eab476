"""In-memory deployment queue with a single serialized worker.

All mutations of the FIFO queue and the job table happen under one
condition variable. The worker thread is the only thread that runs
pipelines, so at most one deployment executes at any time.
"""

from __future__ import annotations

import functools
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Deque, Dict, List, Optional, Tuple

import structlog
from prometheus_client import Gauge

from simpledeploy.core.exceptions import DuplicateJobError, JobNotFoundError, QueueClosedError
from simpledeploy.deploy.models import Job, JobRecord, JobState, PipelineResult, utcnow
from simpledeploy.deploy.pipeline import DeploymentPipeline
from simpledeploy.utils.logging import job_context

logger = structlog.get_logger()

QUEUE_DEPTH = Gauge(
    "simpledeploy_queue_depth",
    "Jobs waiting for the deployment worker",
)


class DeploymentQueue:
    """Accepts jobs, runs them one at a time and forgets them after a while."""

    def __init__(
        self,
        pipeline: DeploymentPipeline,
        poll_interval: float = 0.25,
        reaper_interval: float = 60.0,
        retention_seconds: float = 3600.0,
    ):
        self.pipeline = pipeline
        self.poll_interval = poll_interval
        self.reaper_interval = reaper_interval
        self.retention = timedelta(seconds=retention_seconds)

        self._queue: Deque[JobRecord] = deque()
        self._records: Dict[str, JobRecord] = {}
        self._running: Optional[JobRecord] = None
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._accepting = True
        self._worker: Optional[threading.Thread] = None
        self._reaper: Optional[threading.Thread] = None

    # Lifecycle

    def start(self) -> None:
        with self._cond:
            if self._worker is not None:
                return
            self._worker = threading.Thread(target=self._worker_loop, name="deploy-queue-worker", daemon=True)
            self._reaper = threading.Thread(target=self._reaper_loop, name="deploy-queue-reaper", daemon=True)
        self._worker.start()
        self._reaper.start()
        logger.info("Deployment queue started", poll_interval=self.poll_interval, reaper_interval=self.reaper_interval)

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop accepting work and let both threads exit.

        A pipeline that is already running is not interrupted; ``timeout``
        bounds how long to wait for the threads.
        """
        with self._cond:
            self._accepting = False
            self._stop.set()
            self._cond.notify_all()
        for thread in (self._worker, self._reaper):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout)
        logger.info("Deployment queue stopped", pending=self.queue_depth())

    @property
    def is_running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    # Intake and lookup

    def enqueue(self, job: Job) -> str:
        with self._cond:
            if not self._accepting:
                raise QueueClosedError("Deployment queue is shutting down")
            if job.job_id in self._records:
                raise DuplicateJobError(f"Job '{job.job_id}' already exists", code="duplicate_job")
            log = self.pipeline.create_job_log(job)
            record = JobRecord(job=job, work=functools.partial(self.pipeline.run, job, log), log=log)
            self._records[job.job_id] = record
            self._queue.append(record)
            QUEUE_DEPTH.set(len(self._queue))
            self._cond.notify_all()
        logger.info("Job queued", job_id=job.job_id, deployment_name=job.deployment_name)
        return job.job_id

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self._cond:
            return self._records.get(job_id)

    def list_jobs(self) -> List[JobRecord]:
        with self._cond:
            return list(self._records.values())

    def queue_depth(self) -> int:
        with self._cond:
            return len(self._queue)

    def running_count(self) -> int:
        with self._cond:
            return sum(1 for record in self._records.values() if record.state == JobState.RUNNING)

    @property
    def running_job_id(self) -> Optional[str]:
        with self._cond:
            return self._running.job_id if self._running else None

    def wait_for_completion(self, job_id: str, timeout: Optional[float]) -> Tuple[bool, str]:
        """Block the caller until the job completes.

        Returns whether the job completed along with a snapshot of its log.
        On timeout the snapshot ends with the timeout warning; the job keeps
        running in the background.
        """
        record = self.get(job_id)
        if record is None:
            raise JobNotFoundError(f"Job '{job_id}' not found")
        if record.done.wait(timeout):
            return True, record.log.text()
        snapshot = record.log.warn_unless_finished(
            f"Timeout of {timeout} seconds exceeded waiting for job '{job_id}', deployment continues in the background"
        )
        if snapshot is None:
            # Closing line already written, completion is imminent.
            record.done.wait()
            return True, record.log.text()
        return False, snapshot

    # Worker

    def _next_record(self) -> Optional[JobRecord]:
        with self._cond:
            if not self._queue and not self._stop.is_set():
                self._cond.wait(self.poll_interval)
            if self._stop.is_set() or not self._queue:
                return None
            record = self._queue.popleft()
            record.mark_running()
            self._running = record
            QUEUE_DEPTH.set(len(self._queue))
            return record

    def _worker_loop(self) -> None:
        logger.info("Deployment worker started")
        while not self._stop.is_set():
            record = self._next_record()
            if record is not None:
                self._process(record)
        logger.info("Deployment worker stopped")

    def _process(self, record: JobRecord) -> None:
        result: Optional[PipelineResult] = None
        with job_context(record.job_id, record.job.deployment_name):
            try:
                result = record.work()
            except Exception:
                logger.exception("Unhandled error running job", job_id=record.job_id)
            finally:
                with self._cond:
                    record.mark_completed(result)
                    self._running = None
                    self._cond.notify_all()

    # Reaper

    def reap(self, now: Optional[datetime] = None) -> List[str]:
        """Evict records completed more than the retention window ago."""
        cutoff = (now or utcnow()) - self.retention
        with self._cond:
            expired = [
                record for record in self._records.values()
                if record.state == JobState.COMPLETED
                and record.completed_at is not None
                and record.completed_at <= cutoff
            ]
            for record in expired:
                record.log.clear()
                del self._records[record.job_id]
        if expired:
            logger.info("Evicted completed jobs", count=len(expired))
        return [record.job_id for record in expired]

    def _reaper_loop(self) -> None:
        logger.info("Job reaper started", retention_seconds=self.retention.total_seconds())
        while not self._stop.wait(self.reaper_interval):
            try:
                self.reap()
            except Exception:
                logger.exception("Job reaper failed")
        logger.info("Job reaper stopped")
