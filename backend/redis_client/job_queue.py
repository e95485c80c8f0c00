"""
Job queue on rq.

Each named queue is an ``rq.Queue``. A job calls
:func:`redis_client.worker.run_job` with the payload as its only argument; the
attempt counter and the last error live in ``job.meta``. Retries are
``rq.Retry`` with exponential intervals, so a delayed retry waits in the
queue's ``ScheduledJobRegistry`` until it is promoted. Jobs abandoned by a
dead worker are re-queued by ``StartedJobRegistry.cleanup`` while they have
retries left (at-least-once delivery).
"""

from __future__ import annotations

import logging
import math
from contextlib import contextmanager
from itertools import chain
from typing import Iterable, Iterator
from uuid import uuid4

from redis import Redis
from redis.exceptions import RedisError
from rq import Queue, Retry
from rq.exceptions import NoSuchJobError
from rq.job import Job as RQJob
from rq.job import JobStatus

from errors import NotFoundError, QueueError, ValidationError
from models.job_models import Job, JobPayload, JobResult, JobState, TERMINAL_STATES

logger = logging.getLogger(__name__)

JOB_FUNCTION = "redis_client.worker.run_job"

STATE_BY_STATUS = {
    JobStatus.QUEUED: JobState.QUEUED,
    JobStatus.SCHEDULED: JobState.QUEUED,
    JobStatus.DEFERRED: JobState.QUEUED,
    JobStatus.STARTED: JobState.ACTIVE,
    JobStatus.FINISHED: JobState.COMPLETED,
    JobStatus.FAILED: JobState.FAILED,
    JobStatus.STOPPED: JobState.FAILED,
    JobStatus.CANCELED: JobState.FAILED,
}


@contextmanager
def _redis_errors(action: str) -> Iterator[None]:
    try:
        yield
    except RedisError as e:
        logger.error("Queue %s failed: %s", action, e)
        raise QueueError(f"Queue {action} failed: {e}") from e


def _as_text(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else value


def backoff_delay(attempts: int, base: float, cap: float) -> float:
    """Delay before the retry that follows failed attempt number ``attempts``."""
    delay = base * (2 ** max(0, attempts - 1))
    return min(delay, cap)


class JobQueue:
    def __init__(
        self,
        connection: Redis,
        queue_names: Iterable[str],
        default_max_attempts: int = 3,
        job_timeout: float = 660.0,
        backoff_seconds: float = 5.0,
        backoff_max_seconds: float = 300.0,
        retention_seconds: int = 365 * 24 * 3600,
    ):
        self.connection = connection
        self.queue_names = tuple(queue_names)
        self.default_max_attempts = max(1, default_max_attempts)
        self.job_timeout = int(math.ceil(job_timeout))
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.retention_seconds = retention_seconds
        self.queues = {
            name: Queue(name, connection=connection, default_timeout=self.job_timeout)
            for name in self.queue_names
        }
        self._accepting = True

    def queue(self, queue_name: str) -> Queue:
        try:
            return self.queues[queue_name]
        except KeyError:
            raise NotFoundError(f"Unknown queue: {queue_name}") from None

    # -------------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Stop accepting new jobs; already queued jobs stay durable."""
        self._accepting = False

    @property
    def accepting(self) -> bool:
        return self._accepting

    def retry_policy(self, max_attempts: int) -> Retry | None:
        if max_attempts <= 1:
            return None
        intervals = [
            int(math.ceil(backoff_delay(attempt, self.backoff_seconds, self.backoff_max_seconds)))
            for attempt in range(1, max_attempts)
        ]
        return Retry(max=max_attempts - 1, interval=intervals)

    def enqueue(
        self,
        queue_name: str,
        payload: JobPayload,
        max_attempts: int | None = None,
    ) -> Job:
        queue = self.queue(queue_name)
        if not self._accepting:
            raise QueueError("Job queue is shutting down")

        max_attempts = max(1, max_attempts or self.default_max_attempts)
        with _redis_errors("enqueue"):
            rq_job = queue.enqueue(
                JOB_FUNCTION,
                payload.model_dump(mode="json"),
                job_id=str(uuid4()),
                retry=self.retry_policy(max_attempts),
                job_timeout=self.job_timeout,
                result_ttl=self.retention_seconds,
                failure_ttl=self.retention_seconds,
                description=f"{payload.describe()} {payload.input_path} -> {payload.output_path}",
                meta={"attempts": 0, "max_attempts": max_attempts},
            )

        logger.info(
            "job_enqueued queue=%s id=%s op=%s", queue_name, rq_job.id, payload.describe()
        )
        return self.snapshot(rq_job)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def promote_scheduled(self, queue_name: str) -> int:
        """Move retries whose backoff has elapsed back onto the queue."""
        queue = self.queue(queue_name)
        registry = queue.scheduled_job_registry
        promoted = 0
        with _redis_errors("promote"):
            for job_id in registry.get_jobs_to_schedule():
                # ZREM decides which worker promotes a given job.
                if not self.connection.zrem(registry.key, job_id):
                    continue
                rq_job = queue.fetch_job(job_id)
                if rq_job is None:
                    continue
                queue.enqueue_job(rq_job)
                promoted += 1
        if promoted:
            logger.info("jobs_promoted queue=%s count=%s", queue_name, promoted)
        return promoted

    def recover_stalled(self, queue_name: str) -> int:
        """Hand jobs whose worker vanished back to rq for retry or failure."""
        registry = self.queue(queue_name).started_job_registry
        with _redis_errors("recover"):
            expired = registry.get_expired_job_ids()
            if expired:
                registry.cleanup()
        if expired:
            logger.warning("jobs_abandoned queue=%s count=%s", queue_name, len(expired))
        return len(expired)

    def purge(
        self,
        queue_name: str,
        states: Iterable[JobState] = TERMINAL_STATES,
    ) -> int:
        """Delete retained job records in the given terminal states."""
        states = tuple(states)
        for state in states:
            if state not in TERMINAL_STATES:
                raise ValidationError(f"Only terminal jobs can be purged, got {state.value}")

        removed = 0
        with _redis_errors("purge"):
            for rq_job in self._fetch_all(self.queue(queue_name)):
                if self._state_of(rq_job) in states:
                    rq_job.delete()
                    removed += 1
        logger.info("jobs_purged queue=%s count=%s", queue_name, removed)
        return removed

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @staticmethod
    def _state_of(rq_job: RQJob) -> JobState:
        return STATE_BY_STATUS.get(rq_job.get_status(refresh=False), JobState.QUEUED)

    def snapshot(self, rq_job: RQJob) -> Job:
        meta = rq_job.meta or {}
        state = self._state_of(rq_job)

        result = None
        error = meta.get("error")
        error_kind = meta.get("error_kind")
        if state == JobState.COMPLETED:
            value = rq_job.return_value()
            result = JobResult.model_validate(value) if value else None
            error = error_kind = None
        elif state == JobState.FAILED and error is None:
            # Failed outside a worker, e.g. abandoned with no retries left.
            latest = rq_job.latest_result()
            exc_string = latest.exc_string if latest is not None and latest.exc_string else ""
            lines = exc_string.strip().splitlines()
            error = lines[-1] if lines else "Job failed"
            error_kind = "internal_error"

        return Job(
            id=rq_job.id,
            queue_name=rq_job.origin,
            payload=JobPayload.model_validate(rq_job.args[0]),
            state=state,
            attempts=int(meta.get("attempts", 0)),
            max_attempts=int(meta.get("max_attempts", 1)),
            error=error,
            error_kind=error_kind,
            result=result,
            created_at=rq_job.created_at,
            started_at=rq_job.started_at,
            finished_at=rq_job.ended_at if state in TERMINAL_STATES else None,
        )

    def fetch(self, job_id: str) -> RQJob | None:
        with _redis_errors("read"):
            try:
                rq_job = RQJob.fetch(job_id, connection=self.connection)
            except NoSuchJobError:
                return None
        if rq_job.origin not in self.queues:
            return None
        return rq_job

    def get_job(self, job_id: str) -> Job | None:
        rq_job = self.fetch(job_id)
        if rq_job is None:
            return None
        with _redis_errors("read"):
            return self.snapshot(rq_job)

    def _job_ids(self, queue: Queue) -> list[str]:
        """Every job id the queue knows about, each listed once."""
        registries = (
            queue.scheduled_job_registry,
            queue.started_job_registry,
            queue.finished_job_registry,
            queue.failed_job_registry,
            queue.deferred_job_registry,
            queue.canceled_job_registry,
        )
        pipe = self.connection.pipeline(transaction=False)
        pipe.lrange(queue.key, 0, -1)
        for registry in registries:
            pipe.zrange(registry.key, 0, -1)
        members = chain.from_iterable(pipe.execute())
        # Started entries may carry an execution suffix: "<job_id>:<execution_id>".
        job_ids = dict.fromkeys(_as_text(member).split(":", 1)[0] for member in members)
        return list(job_ids)

    def _fetch_all(self, queue: Queue) -> list[RQJob]:
        job_ids = self._job_ids(queue)
        rq_jobs = RQJob.fetch_many(job_ids, connection=self.connection)
        return [rq_job for rq_job in rq_jobs if rq_job is not None]

    def list_jobs(
        self,
        queue_name: str,
        state: JobState | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        queue = self.queue(queue_name)
        with _redis_errors("read"):
            jobs = [self.snapshot(rq_job) for rq_job in self._fetch_all(queue)]
        if state is not None:
            jobs = [job for job in jobs if job.state == state]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs[offset : offset + limit], len(jobs)

    def counts(self, queue_name: str) -> dict[str, int]:
        """Jobs per state, each job counted once by its current status."""
        queue = self.queue(queue_name)
        counts = {state.value: 0 for state in JobState}
        with _redis_errors("read"):
            for rq_job in self._fetch_all(queue):
                counts[self._state_of(rq_job).value] += 1
            counts["pending"] = int(self.connection.llen(queue.key))
            counts["delayed"] = int(self.connection.zcard(queue.scheduled_job_registry.key))
        return counts

    def ping(self) -> bool:
        try:
            return bool(self.connection.ping())
        except RedisError:
            return False
