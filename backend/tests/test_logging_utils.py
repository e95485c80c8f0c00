import logging

import pytest

from utils.logging_utils import JOB_LOGGERS, attach_job_log


@pytest.fixture
def isolated_loggers():
    names = ("clipflow.test.a", "clipflow.test.b")
    yield names
    for name in names:
        test_logger = logging.getLogger(name)
        for handler in list(test_logger.handlers):
            test_logger.removeHandler(handler)
            handler.close()


def test_job_loggers_include_rq_worker():
    assert "rq.worker" in JOB_LOGGERS
    assert "redis_client.worker" in JOB_LOGGERS


def test_attach_job_log_shares_one_handler(tmp_path, isolated_loggers):
    log_path = tmp_path / "log" / "jobs.log"

    handler = attach_job_log(log_path, level=logging.INFO, logger_names=isolated_loggers)

    for name in isolated_loggers:
        assert logging.getLogger(name).handlers == [handler]
    logging.getLogger(isolated_loggers[0]).info("job_enqueued id=abc")
    handler.flush()
    assert "job_enqueued id=abc" in log_path.read_text(encoding="utf-8")


def test_attach_job_log_is_idempotent(tmp_path, isolated_loggers):
    log_path = tmp_path / "jobs.log"

    first = attach_job_log(log_path, logger_names=isolated_loggers)
    second = attach_job_log(log_path, level=logging.DEBUG, logger_names=isolated_loggers)

    assert first is second
    assert second.level == logging.DEBUG
    for name in isolated_loggers:
        assert len(logging.getLogger(name).handlers) == 1
