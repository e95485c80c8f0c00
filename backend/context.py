"""
Process-wide application context.

Components are built in dependency order (storage backend, job queue, worker
pool) and torn down in reverse: stop accepting jobs, drain in-flight work,
then close connections. rq job functions reach the context through
:func:`current_context`.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from redis import Redis
from sqlalchemy.engine import Engine

from database.base import create_db_engine, create_session_factory
from database.repository import ProjectRepository
from operators.monitor_operator import JobMonitor
from redis_client import create_redis
from redis_client.job_queue import JobQueue
from redis_client.worker import WorkerPool
from settings import Settings, get_settings

logger = logging.getLogger(__name__)

_current: AppContext | None = None
_current_lock = threading.Lock()


@dataclass
class AppContext:
    settings: Settings
    engine: Engine
    repository: ProjectRepository
    redis: Redis
    job_queue: JobQueue
    worker_pool: WorkerPool
    monitor: JobMonitor

    def start_workers(self) -> None:
        self.worker_pool.start()

    def shutdown(self) -> None:
        self.job_queue.close()
        if self.worker_pool.running:
            drained = self.worker_pool.shutdown(self.settings.worker_shutdown_grace_seconds)
            if not drained:
                logger.warning("Workers still busy after grace period; jobs will be redelivered")
        self.close()

    def close(self) -> None:
        self.redis.close()
        self.engine.dispose()


def bind_context(context: AppContext | None) -> None:
    global _current
    with _current_lock:
        _current = context


def current_context() -> AppContext:
    """The context job functions run against; built from the environment if unbound."""
    global _current
    with _current_lock:
        if _current is None:
            _current = _create_context(get_settings(), None, None, None)
        return _current


def build_context(
    settings: Settings | None = None,
    redis_connection: Redis | None = None,
    worker_queue_names: tuple[str, ...] | None = None,
    worker_concurrency: int | None = None,
) -> AppContext:
    context = _create_context(
        settings or get_settings(), redis_connection, worker_queue_names, worker_concurrency
    )
    bind_context(context)
    return context


def _create_context(
    settings: Settings,
    redis_connection: Redis | None,
    worker_queue_names: tuple[str, ...] | None,
    worker_concurrency: int | None,
) -> AppContext:
    settings.upload_dir.mkdir(parents=True, exist_ok=True)
    settings.output_dir.mkdir(parents=True, exist_ok=True)

    engine = create_db_engine(settings.database_url)
    repository = ProjectRepository(create_session_factory(engine))
    repository.create_schema()

    connection = redis_connection if redis_connection is not None else create_redis(settings.redis_url)
    job_queue = JobQueue(
        connection,
        settings.queue_names,
        default_max_attempts=settings.job_max_attempts,
        job_timeout=settings.job_timeout_seconds,
        backoff_seconds=settings.retry_backoff_seconds,
        backoff_max_seconds=settings.retry_backoff_max_seconds,
        retention_seconds=settings.job_retention_seconds,
    )

    worker_pool = WorkerPool(
        job_queue,
        worker_queue_names or settings.queue_names,
        concurrency=worker_concurrency or settings.worker_concurrency,
        poll_seconds=settings.worker_poll_seconds,
    )

    logger.info(
        "context_ready database=%s queues=%s",
        engine.url.render_as_string(hide_password=True),
        ",".join(settings.queue_names),
    )
    return AppContext(
        settings=settings,
        engine=engine,
        repository=repository,
        redis=connection,
        job_queue=job_queue,
        worker_pool=worker_pool,
        monitor=JobMonitor(job_queue),
    )
