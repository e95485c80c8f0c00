import os
import stat
import sys
from pathlib import Path

import fakeredis
import pytest

from context import bind_context, build_context
from database.base import create_db_engine, create_session_factory
from database.repository import ProjectRepository
from redis_client.job_queue import JobQueue
from settings import Settings


# Stand-in for ffmpeg: copies the input named after ``-i`` to the last
# argument. The input file content selects a behaviour.
FAKE_ENGINE_SOURCE = """
import os
import shutil
import sys
import time

args = sys.argv[1:]
log_path = os.environ.get("FAKE_ENGINE_LOG")
if log_path:
    with open(log_path, "a", encoding="utf-8") as log:
        log.write(" ".join(args) + "\\n")

source = args[args.index("-i") + 1]
output = args[-1]
with open(source, "rb") as handle:
    marker = handle.read(16)

if marker.startswith(b"FAIL"):
    with open(output, "wb") as out:
        out.write(b"half written")
    sys.stderr.write("Invalid data found when processing input\\n")
    sys.exit(1)
if marker.startswith(b"SLEEP"):
    with open(output, "wb") as out:
        out.write(b"half written")
    time.sleep(30)
if marker.startswith(b"EMPTY"):
    sys.exit(0)

shutil.copyfile(source, output)
sys.stderr.write("frame=1 done\\n")
"""


@pytest.fixture
def fake_engine(tmp_path: Path, monkeypatch) -> Path:
    script = tmp_path / "fake-ffmpeg"
    script.write_text(f"#!{sys.executable}\n{FAKE_ENGINE_SOURCE}", encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    monkeypatch.setenv("FAKE_ENGINE_LOG", str(tmp_path / "engine.log"))
    return script


@pytest.fixture
def engine_calls(tmp_path: Path):
    def _read() -> list[str]:
        log_path = tmp_path / "engine.log"
        if not log_path.exists():
            return []
        return log_path.read_text(encoding="utf-8").splitlines()

    return _read


@pytest.fixture
def settings(tmp_path: Path, fake_engine: Path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'clipflow-test.db'}",
        redis_url="redis://fake",
        upload_dir=tmp_path / "uploads",
        output_dir=tmp_path / "processed",
        max_upload_bytes=1024 * 1024,
        ffmpeg_bin=str(fake_engine),
        ffmpeg_timeout_seconds=5.0,
        queue_names=("processing", "rendering"),
        default_queue="processing",
        worker_concurrency=1,
        worker_poll_seconds=0.1,
        worker_shutdown_grace_seconds=5.0,
        job_max_attempts=3,
        retry_backoff_seconds=0.0,
        retry_backoff_max_seconds=0.0,
        job_timeout_seconds=60.0,
        process_mode="direct",
        run_workers_in_api=False,
        admin_token="monitor-secret",
    )


@pytest.fixture
def redis_connection():
    connection = fakeredis.FakeRedis()
    yield connection
    connection.flushall()


@pytest.fixture
def job_queue(redis_connection) -> JobQueue:
    return JobQueue(
        redis_connection,
        ("processing", "rendering"),
        default_max_attempts=3,
        backoff_seconds=0.0,
        backoff_max_seconds=0.0,
    )


@pytest.fixture
def repository(settings: Settings):
    engine = create_db_engine(settings.database_url)
    repo = ProjectRepository(create_session_factory(engine))
    repo.create_schema()
    yield repo
    engine.dispose()


@pytest.fixture
def app_context(settings: Settings, redis_connection):
    context = build_context(settings, redis_connection=redis_connection)
    yield context
    bind_context(None)
    context.engine.dispose()


SAMPLE_VIDEO_BYTES = b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 64


@pytest.fixture
def make_media(settings: Settings):
    def _make(name: str, content: bytes = SAMPLE_VIDEO_BYTES, directory: Path | None = None) -> Path:
        target_dir = directory or settings.upload_dir
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / name
        path.write_bytes(content)
        return path

    return _make


@pytest.fixture
def list_media():
    def _list(directory: Path) -> list[str]:
        if not directory.exists():
            return []
        return sorted(os.listdir(directory))

    return _list
