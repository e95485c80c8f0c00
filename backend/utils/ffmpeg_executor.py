from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from errors import EngineFailure, ExecutionTimeout, NotFoundError
from utils.ffmpeg_builder import InvocationSpec

logger = logging.getLogger(__name__)

OUTPUT_TAIL_LINES = 40


@dataclass(frozen=True)
class ExecutionResult:
    exit_code: int
    stdout: str
    stderr: str
    output_path: str
    duration_seconds: float = 0.0
    skipped: bool = False


def _tail(text: str, lines: int = OUTPUT_TAIL_LINES) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


def partial_output_path(output_path: str) -> str:
    """Hidden sibling path the engine writes to before the final rename.

    The extension is preserved so the engine infers the same container.
    """
    target = Path(output_path)
    return str(target.with_name(f".partial-{uuid4().hex[:12]}-{target.name}"))


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to remove partial output %s: %s", path, e)


def execute(
    spec: InvocationSpec,
    timeout: float,
    skip_existing: bool = False,
) -> ExecutionResult:
    """Run one engine invocation and publish its output atomically.

    The engine writes to a temporary sibling of ``spec.output_path`` which is
    renamed into place only after a zero exit, so a file at ``output_path``
    is always a complete result.
    """
    output_path = spec.output_path

    if skip_existing and os.path.exists(output_path):
        logger.info("engine_skip_existing output=%s", output_path)
        return ExecutionResult(
            exit_code=0, stdout="", stderr="", output_path=output_path, skipped=True
        )

    if not os.path.isfile(spec.input_path):
        raise NotFoundError(f"Input file not found: {spec.input_path}")

    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    temp_output = partial_output_path(output_path)
    run_spec = spec.with_output(temp_output)

    logger.info("engine_start op=%s output=%s", spec.description or "-", output_path)
    logger.debug("Command: %s", run_spec.format())

    started = time.monotonic()
    try:
        process = subprocess.Popen(
            run_spec.argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
        )
    except FileNotFoundError as e:
        raise EngineFailure(127, str(e), f"Engine executable not found: {spec.executable}")
    except OSError as e:
        raise EngineFailure(126, str(e), f"Failed to start engine: {e}")

    timed_out = False

    def _kill_process_on_timeout() -> None:
        nonlocal timed_out
        timed_out = True
        process.kill()

    timer = threading.Timer(timeout, _kill_process_on_timeout)
    timer.daemon = True
    timer.start()
    try:
        stdout, stderr = process.communicate()
    finally:
        timer.cancel()

    elapsed = time.monotonic() - started

    if timed_out:
        _remove_quietly(temp_output)
        logger.warning("engine_timeout op=%s timeout=%s", spec.description or "-", timeout)
        raise ExecutionTimeout(timeout, _tail(stderr))

    if process.returncode != 0:
        _remove_quietly(temp_output)
        logger.warning(
            "engine_failed op=%s code=%s", spec.description or "-", process.returncode
        )
        raise EngineFailure(process.returncode, _tail(stderr))

    if not os.path.exists(temp_output):
        raise EngineFailure(0, _tail(stderr), "Engine exited cleanly but produced no output")

    os.replace(temp_output, output_path)
    logger.info(
        "engine_done op=%s output=%s elapsed=%.2fs", spec.description or "-", output_path, elapsed
    )
    return ExecutionResult(
        exit_code=process.returncode,
        stdout=stdout,
        stderr=stderr,
        output_path=output_path,
        duration_seconds=elapsed,
    )
