import time
from pathlib import Path

import pytest
from rq.timeouts import JobTimeoutException

from errors import EngineFailure, ExecutionTimeout, InvalidOperation, NotFoundError, StorageError
from models.job_models import JobKind, JobPayload, JobResult, JobState
from models.operation_models import GrayscaleOperation, ProcessingOptions
from redis_client import worker as worker_module
from redis_client.job_queue import JobQueue
from redis_client.worker import RETRYABLE_KINDS, ThreadWorker, WorkerPool, parse_args


class ScriptedHandler:
    """Raises the queued outcomes in order, then succeeds."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0
        self.redelivered = []

    def __call__(self, payload, settings, repository, redelivered=False):
        self.calls += 1
        self.redelivered.append(redelivered)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
        return JobResult(output_path=payload.output_path)


@pytest.fixture
def options_payload(make_media, settings) -> JobPayload:
    source = make_media("clip.mp4")
    return JobPayload(
        kind=JobKind.OPTIONS,
        input_path=str(source),
        output_path=str(settings.output_dir / "processed-clip.mp4"),
        options=ProcessingOptions(grayscale=True),
    )


@pytest.fixture
def scripted(monkeypatch):
    def _install(*outcomes) -> ScriptedHandler:
        handler = ScriptedHandler(*outcomes)
        monkeypatch.setattr(worker_module, "handle_job", handler)
        return handler

    return _install


def _pool(app_context, **kwargs) -> WorkerPool:
    return WorkerPool(app_context.job_queue, ("processing",), **kwargs)


class TestProcessNext:
    def test_runs_engine_and_stores_result(self, app_context, options_payload, engine_calls):
        job = app_context.job_queue.enqueue("processing", options_payload)
        pool = _pool(app_context)

        assert pool.process_next("processing") is True

        stored = app_context.job_queue.get_job(job.id)
        assert stored.state == JobState.COMPLETED
        assert stored.attempts == 1
        assert stored.result.output_path == options_payload.output_path
        assert stored.result.skipped is False
        assert stored.finished_at is not None
        assert Path(options_payload.output_path).exists()
        assert len(engine_calls()) == 1

    def test_idle_queue(self, app_context):
        assert _pool(app_context).process_next("processing") is False

    def test_worker_only_takes_its_queue(self, app_context, options_payload):
        app_context.job_queue.enqueue("rendering", options_payload)

        assert _pool(app_context).process_next("processing") is False
        assert app_context.job_queue.queue("rendering").count == 1

    def test_engine_failure_retried_until_max_attempts(self, app_context, options_payload, scripted):
        handler = scripted(EngineFailure(1, "err"), EngineFailure(1, "err"), EngineFailure(1, "err"))
        job = app_context.job_queue.enqueue("processing", options_payload, max_attempts=3)
        pool = _pool(app_context)

        assert pool.drain("processing") == 3

        final = app_context.job_queue.get_job(job.id)
        assert final.state == JobState.FAILED
        assert final.attempts == 3
        assert final.error_kind == "engine_failure"
        assert handler.calls == 3
        assert handler.redelivered == [False, True, True]
        assert app_context.job_queue.counts("processing")["pending"] == 0

    def test_timeout_then_success(self, app_context, options_payload, scripted):
        handler = scripted(ExecutionTimeout(5))
        job = app_context.job_queue.enqueue("processing", options_payload)

        assert _pool(app_context).drain("processing") == 2

        stored = app_context.job_queue.get_job(job.id)
        assert stored.state == JobState.COMPLETED
        assert stored.attempts == 2
        assert stored.error is None
        assert handler.redelivered == [False, True]

    def test_worker_timeout_is_retryable(self, app_context, options_payload, scripted):
        scripted(JobTimeoutException("Task exceeded maximum timeout value (60 seconds)"))
        job = app_context.job_queue.enqueue("processing", options_payload)

        assert _pool(app_context).drain("processing") == 2
        assert app_context.job_queue.get_job(job.id).state == JobState.COMPLETED

    def test_backoff_delays_redelivery(self, app_context, options_payload, scripted):
        scripted(EngineFailure(1, "err"))
        job_queue = JobQueue(
            app_context.redis,
            ("processing",),
            backoff_seconds=60,
            backoff_max_seconds=60,
        )
        job = job_queue.enqueue("processing", options_payload)
        pool = WorkerPool(job_queue, ("processing",))

        assert pool.process_next("processing") is True
        assert pool.process_next("processing") is False

        stored = job_queue.get_job(job.id)
        assert stored.state == JobState.QUEUED
        assert stored.error_kind == "engine_failure"
        assert job_queue.counts("processing")["delayed"] == 1

    @pytest.mark.parametrize(
        "error,kind",
        [
            (InvalidOperation("duration must be > 0", field="duration"), "invalid_operation"),
            (NotFoundError("Clip not found"), "not_found"),
            (StorageError("disk full"), "storage_error"),
        ],
    )
    def test_non_retryable_fail_immediately(self, app_context, options_payload, scripted, error, kind):
        handler = scripted(error)
        job = app_context.job_queue.enqueue("processing", options_payload, max_attempts=5)

        assert _pool(app_context).drain("processing") == 1

        stored = app_context.job_queue.get_job(job.id)
        assert stored.state == JobState.FAILED
        assert stored.error_kind == kind
        assert stored.attempts == 1
        assert handler.calls == 1
        assert app_context.job_queue.fetch(job.id).retries_left == 0
        assert app_context.job_queue.counts("processing")["delayed"] == 0

    def test_unexpected_error_fails_job(self, app_context, options_payload, scripted):
        scripted(RuntimeError("disk on fire"))
        job = app_context.job_queue.enqueue("processing", options_payload)

        _pool(app_context).drain("processing")

        stored = app_context.job_queue.get_job(job.id)
        assert stored.state == JobState.FAILED
        assert stored.error_kind == "internal_error"
        assert "disk on fire" in stored.error

    def test_terminal_failure_settles_project(self, app_context, scripted):
        scripted(EngineFailure(1, "err"))
        repository = app_context.repository
        project = repository.create_project("Failing")
        clip = repository.append_clip(
            project.project_id,
            original_name="clip.mp4",
            filename="clip.mp4",
            storage_path="/uploads/clip.mp4",
            size=10,
            mime_type="video/mp4",
        )
        repository.set_project_status(project.project_id, "processing")
        payload = JobPayload(
            kind=JobKind.CLIP_OPERATION,
            input_path="/uploads/clip.mp4",
            output_path="/processed/processed-clip.mp4",
            operation=GrayscaleOperation(),
            project_id=project.project_id,
            clip_id=clip.clip_id,
        )
        app_context.job_queue.enqueue("processing", payload, max_attempts=1)

        _pool(app_context).drain("processing")

        assert repository.get_project(project.project_id).status == "draft"

    def test_retryable_kinds(self):
        assert RETRYABLE_KINDS == {"engine_failure", "execution_timeout"}


class TestThreads:
    def test_thread_worker_leaves_signals_alone(self, app_context):
        worker = _pool(app_context).build_worker("processing")

        assert isinstance(worker, ThreadWorker)
        assert worker._install_signal_handlers() is None
        worker.subscribe()
        assert worker.pubsub_thread is None

    def test_start_processes_and_stops(self, app_context, make_media, settings):
        jobs = []
        for index in range(4):
            source = make_media(f"clip-{index}.mp4")
            payload = JobPayload(
                kind=JobKind.OPTIONS,
                input_path=str(source),
                output_path=str(settings.output_dir / f"processed-{index}.mp4"),
                options=ProcessingOptions(grayscale=True),
            )
            jobs.append(app_context.job_queue.enqueue("processing", payload))
        pool = _pool(app_context, concurrency=2, poll_seconds=0.05)

        pool.start()
        try:
            deadline = time.monotonic() + 15
            while time.monotonic() < deadline:
                if app_context.job_queue.counts("processing")["completed"] == len(jobs):
                    break
                time.sleep(0.05)
        finally:
            drained = pool.shutdown(grace_seconds=10)

        assert drained is True
        assert pool.running is False
        assert all(
            app_context.job_queue.get_job(job.id).state == JobState.COMPLETED for job in jobs
        )


class TestParseArgs:
    def test_defaults(self):
        args = parse_args([])

        assert args.queues is None
        assert args.concurrency == 1
        assert args.burst is False

    def test_flags(self):
        args = parse_args(["--queues", "processing,rendering", "--concurrency", "4", "--burst"])

        assert args.queues == "processing,rendering"
        assert args.concurrency == 4
        assert args.burst is True
