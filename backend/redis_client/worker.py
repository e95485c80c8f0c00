import argparse
import logging
import os
import signal
import sys
import threading
import time
from typing import Any

from redis.exceptions import RedisError
from rq import Queue, SimpleWorker, Worker, get_current_job
from rq.job import Job
from rq.timeouts import JobTimeoutException, TimerDeathPenalty
from rq.worker import SpawnWorker

from errors import ClipflowError, QueueError
from models.job_models import JobKind, JobPayload
from operators.processing_operator import handle_job
from redis_client.job_queue import JobQueue
from utils.logging_utils import configure_logging


logger = logging.getLogger(__name__)

RECOVER_INTERVAL_SECONDS = 30.0

# Failures a rerun can fix; anything else fails the job at once.
RETRYABLE_KINDS = frozenset({"engine_failure", "execution_timeout"})


def run_job(payload_data: dict[str, Any]) -> dict[str, Any]:
    """rq entry point: execute one delivered job and return its result."""
    from context import current_context

    context = current_context()
    payload = JobPayload.model_validate(payload_data)

    redelivered = False
    job = get_current_job()
    if job is not None:
        attempts = int(job.meta.get("attempts", 0))
        redelivered = attempts > 0
        job.meta["attempts"] = attempts + 1
        job.save_meta()
        logger.info(
            "job_active queue=%s id=%s attempt=%s/%s",
            job.origin,
            job.id,
            attempts + 1,
            job.meta.get("max_attempts"),
        )

    result = handle_job(payload, context.settings, context.repository, redelivered=redelivered)
    return result.model_dump(mode="json")


def _classify(exc: BaseException | None) -> tuple[str, str]:
    if isinstance(exc, ClipflowError):
        return exc.kind, exc.message
    if isinstance(exc, JobTimeoutException):
        return "execution_timeout", str(exc)
    return "internal_error", f"{type(exc).__name__}: {exc}"


def _settle_failed(job: Job) -> None:
    from context import current_context

    payload = JobPayload.model_validate(job.args[0])
    if payload.kind != JobKind.CLIP_OPERATION or not payload.project_id:
        return
    try:
        current_context().repository.settle_after_failure(payload.project_id)
    except ClipflowError:
        logger.exception("Could not settle project %s after job %s", payload.project_id, job.id)


class FailurePolicyMixin:
    """Records the error on the job and cancels retries a rerun cannot fix.

    rq calls ``handle_exception`` before deciding whether to retry, so zeroing
    ``retries_left`` here makes the failure terminal.
    """

    def handle_exception(self, job: Job, *exc_info) -> None:
        kind, message = _classify(exc_info[1])
        job.meta["error"] = message
        job.meta["error_kind"] = kind
        if kind not in RETRYABLE_KINDS:
            job.retries_left = 0
        job.save_meta()

        terminal = not (job.retries_left and job.retries_left > 0)
        if kind == "internal_error":
            self.log.error("Job failed: %s", job.id, exc_info=exc_info)
        logger.warning(
            "job_failed queue=%s id=%s attempts=%s kind=%s terminal=%s",
            job.origin,
            job.id,
            job.meta.get("attempts"),
            kind,
            terminal,
        )
        if terminal:
            _settle_failed(job)
        super().handle_exception(job, *exc_info)


class LoggingWorker(FailurePolicyMixin, Worker):
    pass


class LoggingSimpleWorker(FailurePolicyMixin, SimpleWorker):
    pass


class LoggingSpawnWorker(FailurePolicyMixin, SpawnWorker):
    pass


class ThreadWorker(LoggingSimpleWorker):
    """SimpleWorker that can run off the main thread."""

    death_penalty_class = TimerDeathPenalty

    def _install_signal_handlers(self) -> None:
        # Signals belong to the main thread; the pool stops workers itself.
        pass

    def subscribe(self) -> None:
        # No command channel: each worker lives for a single job.
        self.pubsub_thread = None


def _build_worker(queues: list[Queue]) -> Worker:
    connection = queues[0].connection
    override = os.getenv("RQ_WORKER_CLASS", "").strip().lower()
    supports_wait4 = hasattr(os, "wait4")
    supports_fork = supports_wait4 and hasattr(os, "fork")
    supports_spawn = supports_wait4 and hasattr(os, "spawnv")
    if override == "simple":
        return LoggingSimpleWorker(queues, connection=connection)
    if override == "spawn" and supports_spawn:
        return LoggingSpawnWorker(queues, connection=connection)
    if override == "fork" and supports_fork:
        return LoggingWorker(queues, connection=connection)
    if supports_fork:
        return LoggingWorker(queues, connection=connection)
    if supports_spawn:
        return LoggingSpawnWorker(queues, connection=connection)
    return LoggingSimpleWorker(queues, connection=connection)


class WorkerPool:
    """In-process rq workers: ``concurrency`` threads per queue.

    Each iteration promotes due retries and runs at most one job through a
    :class:`ThreadWorker`, so ``stop()`` takes effect between jobs.
    """

    def __init__(
        self,
        job_queue: JobQueue,
        queue_names: tuple[str, ...] | list[str],
        concurrency: int = 1,
        poll_seconds: float = 1.0,
        logging_level: str = "WARNING",
    ):
        self.job_queue = job_queue
        self.queue_names = tuple(queue_names)
        self.concurrency = max(1, concurrency)
        self.poll_seconds = poll_seconds
        self.logging_level = logging_level

        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._recover_lock = threading.Lock()
        self._last_recover: dict[str, float] = {}

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        for queue_name in self.queue_names:
            self._recover(queue_name, force=True)
            for index in range(self.concurrency):
                thread = threading.Thread(
                    target=self._run,
                    args=(queue_name,),
                    name=f"worker-{queue_name}-{index}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
        logger.info(
            "worker_pool_started queues=%s concurrency=%s",
            ",".join(self.queue_names),
            self.concurrency,
        )

    def stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for workers to drain; returns False if any is still busy."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        alive = [thread.name for thread in self._threads if thread.is_alive()]
        if alive:
            logger.warning("worker_pool_shutdown_timeout busy=%s", ",".join(alive))
            return False
        self._threads = []
        logger.info("worker_pool_stopped")
        return True

    def shutdown(self, grace_seconds: float) -> bool:
        self.stop()
        return self.join(grace_seconds)

    # -------------------------------------------------------------------------
    # Job processing
    # -------------------------------------------------------------------------

    def build_worker(self, queue_name: str) -> ThreadWorker:
        queue = self.job_queue.queue(queue_name)
        return ThreadWorker([queue], connection=self.job_queue.connection)

    def process_next(self, queue_name: str) -> bool:
        """Run at most one ready job from ``queue_name`` on the calling thread."""
        self.job_queue.promote_scheduled(queue_name)
        worker = self.build_worker(queue_name)
        return bool(worker.work(burst=True, max_jobs=1, logging_level=self.logging_level))

    def drain(self, queue_name: str) -> int:
        """Process jobs until the queue has nothing ready; returns the count."""
        processed = 0
        while not self._stop_event.is_set() and self.process_next(queue_name):
            processed += 1
        return processed

    def _recover(self, queue_name: str, force: bool = False) -> None:
        with self._recover_lock:
            now = time.monotonic()
            last = self._last_recover.get(queue_name)
            if not force and last is not None and now - last < RECOVER_INTERVAL_SECONDS:
                return
            self._last_recover[queue_name] = now
        try:
            self.job_queue.recover_stalled(queue_name)
        except QueueError:
            logger.exception("Stalled job recovery failed for %s", queue_name)

    def _run(self, queue_name: str) -> None:
        while not self._stop_event.is_set():
            try:
                self._recover(queue_name)
                if not self.process_next(queue_name):
                    self._stop_event.wait(self.poll_seconds)
            except (QueueError, RedisError):
                logger.exception("Queue error in worker for %s", queue_name)
                self._stop_event.wait(self.poll_seconds)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Video transformation worker")
    parser.add_argument(
        "--queues",
        default=None,
        help="Comma separated queue names (default: QUEUE_NAMES)",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=1,
        help="Worker threads per queue; 1 runs a single rq worker process",
    )
    parser.add_argument(
        "--burst",
        action="store_true",
        help="Process ready jobs and exit",
    )
    return parser.parse_args(argv)


def _run_threaded(context, queue_names: tuple[str, ...], concurrency: int) -> int:
    pool = WorkerPool(
        context.job_queue,
        queue_names,
        concurrency=concurrency,
        poll_seconds=context.settings.worker_poll_seconds,
    )
    stopping = threading.Event()

    def _handle_signal(signum, _frame):
        logger.info("worker_signal signum=%s, draining", signum)
        stopping.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    pool.start()
    while not stopping.is_set() and pool.running:
        stopping.wait(0.5)

    context.job_queue.close()
    drained = pool.shutdown(context.settings.worker_shutdown_grace_seconds)
    context.close()
    return 0 if drained else 1


def main(argv: list[str] | None = None) -> int:
    from context import build_context

    configure_logging()
    args = parse_args(argv)
    logger.info("rq_worker_start python_executable=%s", sys.executable)

    context = build_context()
    queue_names = context.settings.queue_names
    if args.queues:
        queue_names = tuple(name.strip() for name in args.queues.split(",") if name.strip())
    for name in queue_names:
        context.job_queue.queue(name)

    if args.burst:
        pool = WorkerPool(context.job_queue, queue_names)
        total = 0
        for queue_name in queue_names:
            context.job_queue.recover_stalled(queue_name)
            total += pool.drain(queue_name)
        logger.info("worker_burst_done processed=%s", total)
        context.close()
        return 0

    if args.concurrency > 1:
        return _run_threaded(context, queue_names, args.concurrency)

    # Forked work horses open their own database connections.
    context.engine.dispose()
    worker = _build_worker([context.job_queue.queue(name) for name in queue_names])
    worker.work(with_scheduler=True)
    context.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
