from __future__ import annotations

from models.api_models import JobDetailResponse, JobResultResponse, QueueSummary
from models.job_models import Job, JobState
from redis_client.job_queue import JobQueue


def job_to_detail(job: Job) -> JobDetailResponse:
    return JobDetailResponse(
        id=job.id,
        queue=job.queue_name,
        state=job.state,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        operation=job.payload.describe(),
        error=job.error,
        error_kind=job.error_kind,
        created_at=job.created_at,
        started_at=job.started_at,
        finished_at=job.finished_at,
        result=JobResultResponse(**job.result.model_dump()) if job.result else None,
    )


class JobMonitor:
    """Read-only view of job queue state for dashboards.

    Exposes no operation that changes a job.
    """

    def __init__(self, job_queue: JobQueue):
        self._job_queue = job_queue

    @property
    def queue_names(self) -> tuple[str, ...]:
        return self._job_queue.queue_names

    def summaries(self) -> list[QueueSummary]:
        return [
            QueueSummary(name=name, counts=self._job_queue.counts(name))
            for name in self._job_queue.queue_names
        ]

    def list_jobs(
        self,
        queue_name: str,
        state: JobState | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[JobDetailResponse], int]:
        jobs, total = self._job_queue.list_jobs(queue_name, state=state, limit=limit, offset=offset)
        return [job_to_detail(job) for job in jobs], total

    def get_job(self, job_id: str) -> JobDetailResponse | None:
        job = self._job_queue.get_job(job_id)
        if job is None:
            return None
        return job_to_detail(job)
