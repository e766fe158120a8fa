from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections import OrderedDict, deque
from typing import Any, Callable, Mapping

from .app_logging import get_logger, log_with_fields
from .errors import DeploymentTimedOut, InvalidHandler, JobFailed, JobNotFound
from .models import Job, JobError, JobKind, JobState
from .store import JobStore
from .utils import new_job_id, utc_now

Handler = Callable[[Any, str], Any]

LIST_LIMIT_MIN = 1
LIST_LIMIT_MAX = 200


class JobScheduler:
    """In-process FIFO job queue with a bounded number of running jobs.

    Deployments share one deployer account, so the default concurrency of 1
    keeps nonces ordered. Job state is only mutated under `self.lock`; callers
    get snapshot copies.
    """

    def __init__(
        self,
        handlers: Mapping[JobKind, Handler],
        *,
        concurrency: int = 1,
        retention: int = 1000,
        store: JobStore | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.handlers = dict(handlers)
        self.concurrency = max(1, int(concurrency))
        self.retention = max(1, int(retention))
        self.store = store
        self.logger = logger or get_logger()
        self.lock = threading.Lock()
        self.running = 0
        self.queue: deque[str] = deque()
        self.jobs: OrderedDict[str, Job] = OrderedDict()

    def create_job(self, kind: JobKind, payload: Any) -> Job:
        handler = self.handlers.get(kind)
        if handler is None or not callable(handler):
            raise InvalidHandler(f"No callable handler registered for job kind: {getattr(kind, 'value', kind)}")

        job = Job(
            job_id=new_job_id(),
            kind=JobKind(kind),
            state=JobState.QUEUED,
            created_at=utc_now(),
            payload=payload,
        )
        snapshot = dataclasses.replace(job)
        self._persist(snapshot, "queued")
        with self.lock:
            self.jobs[job.job_id] = job
            self.queue.append(job.job_id)
            self._evict_locked()

        log_with_fields(self.logger, logging.INFO, "job_queued", job_id=job.job_id, kind=job.kind.value)
        self._drain()
        return snapshot

    def get_job(self, job_id: str) -> Job | None:
        with self.lock:
            job = self.jobs.get(job_id)
            return dataclasses.replace(job) if job is not None else None

    def list_jobs(self, limit: int = 50) -> list[Job]:
        try:
            bounded = int(limit)
        except (TypeError, ValueError):
            bounded = 50
        bounded = max(LIST_LIMIT_MIN, min(LIST_LIMIT_MAX, bounded))
        with self.lock:
            ordered = sorted(self.jobs.values(), key=lambda job: job.created_at, reverse=True)
            return [dataclasses.replace(job) for job in ordered[:bounded]]

    def wait_for_job(
        self,
        job_id: str,
        timeout_seconds: float = 180.0,
        poll_interval_seconds: float = 0.75,
    ) -> Job:
        """Block the calling thread until the job is terminal.

        Raises `JobNotFound`, `DeploymentTimedOut` (the job keeps running) or
        `JobFailed` with the job's recorded error.
        """
        deadline = time.monotonic() + max(0.0, timeout_seconds)
        interval = max(0.001, poll_interval_seconds)
        while True:
            job = self.get_job(job_id)
            if job is None:
                raise JobNotFound(f"Deployment job not found: {job_id}")
            if job.state == JobState.SUCCEEDED:
                return job
            if job.state == JobState.FAILED:
                raise JobFailed(job)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise DeploymentTimedOut(
                    f"Job {job_id} still {job.state.value} after {timeout_seconds:g}s. "
                    "Check the job history for its final status."
                )
            time.sleep(min(interval, remaining))

    def wait_idle(self, timeout_seconds: float | None = None) -> bool:
        deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
        while True:
            with self.lock:
                idle = self.running == 0 and not self.queue
            if idle:
                return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(0.01)

    def _drain(self) -> None:
        started: list[tuple[Job, threading.Thread]] = []
        with self.lock:
            while self.running < self.concurrency and self.queue:
                job = self.jobs.get(self.queue.popleft())
                if job is None:
                    continue
                self.running += 1
                job.state = JobState.RUNNING
                job.started_at = utc_now()
                thread = threading.Thread(
                    target=self._run_job,
                    args=(job,),
                    name=f"tokenforge-job-{job.job_id[:8]}",
                    daemon=True,
                )
                started.append((dataclasses.replace(job), thread))

        for snapshot, thread in started:
            self._persist(snapshot, "started")
            log_with_fields(
                self.logger,
                logging.INFO,
                "job_started",
                job_id=snapshot.job_id,
                kind=snapshot.kind.value,
            )
            thread.start()

    def _run_job(self, job: Job) -> None:
        handler = self.handlers[job.kind]
        result: Any = None
        error: JobError | None = None
        try:
            result = handler(job.payload, job.job_id)
        except Exception as exc:
            error = JobError.from_exception(exc)
            log_with_fields(
                self.logger,
                logging.ERROR,
                "job_failed",
                job_id=job.job_id,
                kind=job.kind.value,
                error_type=error.error_type,
                error=error.message,
            )

        with self.lock:
            if error is None:
                job.state = JobState.SUCCEEDED
                job.result = result
            else:
                job.state = JobState.FAILED
                job.error = error
            job.finished_at = utc_now()
            snapshot = dataclasses.replace(job)

        self._persist(snapshot, snapshot.state.value)
        if error is None:
            log_with_fields(self.logger, logging.INFO, "job_succeeded", job_id=job.job_id, kind=job.kind.value)

        # slot is released only after the terminal record is written
        with self.lock:
            self.running -= 1
        self._drain()

    def _persist(self, job: Job, event_type: str) -> None:
        if self.store is None:
            return
        try:
            self.store.save_job(job)
            details = {"error": job.error.message} if job.error else {}
            self.store.add_event(job.job_id, event_type, details)
        except Exception as exc:
            log_with_fields(
                self.logger,
                logging.ERROR,
                "job_store_failed",
                job_id=job.job_id,
                event=event_type,
                error=str(exc),
            )

    def _evict_locked(self) -> None:
        overflow = len(self.jobs) - self.retention
        if overflow <= 0:
            return
        for job_id in [job_id for job_id, job in self.jobs.items() if job.state.terminal][:overflow]:
            del self.jobs[job_id]
