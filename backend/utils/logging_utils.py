import logging
import os
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[2]
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Everything that narrates a job's lifecycle, API and worker side alike.
JOB_LOGGERS = (
    "redis_client.worker",
    "redis_client.job_queue",
    "operators.processing_operator",
    "utils.ffmpeg_executor",
    "rq.worker",
)


def _level(name: str | None, default: str = "INFO") -> int:
    return getattr(logging, (name or default).strip().upper(), logging.INFO)


def _resolve_log_path(raw: str) -> Path:
    path = Path(raw)
    return path if path.is_absolute() else ROOT_DIR / path


def attach_job_log(
    log_file_path: Path,
    level: int = logging.INFO,
    logger_names: tuple[str, ...] = JOB_LOGGERS,
) -> logging.Handler:
    """Route the given loggers into one shared file; safe to call repeatedly."""
    log_file_path.parent.mkdir(parents=True, exist_ok=True)
    target = str(log_file_path.resolve())

    handler = None
    for name in logger_names:
        for existing in logging.getLogger(name).handlers:
            if isinstance(existing, logging.FileHandler) and existing.baseFilename == target:
                handler = existing
                break
        if handler is not None:
            break
    if handler is None:
        handler = logging.FileHandler(target, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.setLevel(level)

    for name in logger_names:
        job_logger = logging.getLogger(name)
        if handler not in job_logger.handlers:
            job_logger.addHandler(handler)
        job_logger.setLevel(level)
    return handler


def configure_logging() -> None:
    logging.basicConfig(level=_level(os.getenv("LOG_LEVEL")), format=LOG_FORMAT)

    jobs_log = os.getenv("JOBS_LOG_FILE", "backend/log/jobs.log").strip()
    if not jobs_log:
        return
    attach_job_log(_resolve_log_path(jobs_log), level=_level(os.getenv("JOBS_LOG_LEVEL")))
