from __future__ import annotations


class ClipflowError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(ClipflowError):
    kind = "validation_error"
    status_code = 400

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)

    def to_dict(self) -> dict[str, str]:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class InvalidOperation(ValidationError):
    kind = "invalid_operation"


class UnsupportedOperation(ValidationError):
    kind = "unsupported_operation"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Unsupported operation: {operation!r}", field="operation")


class NotFoundError(ClipflowError):
    kind = "not_found"
    status_code = 404


class ExecutionError(ClipflowError):
    kind = "execution_error"


class EngineFailure(ExecutionError):
    kind = "engine_failure"

    def __init__(self, exit_code: int, stderr: str, message: str | None = None):
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message or f"Engine failed (code {exit_code}):\n{stderr}")


class ExecutionTimeout(ExecutionError):
    kind = "execution_timeout"

    def __init__(self, timeout: float, output_tail: str = ""):
        self.timeout = timeout
        self.output_tail = output_tail
        message = f"Engine timed out after {timeout:g}s"
        if output_tail:
            message = f"{message}. Output tail:\n{output_tail}"
        super().__init__(message)


class StorageError(ClipflowError):
    kind = "storage_error"


class QueueError(StorageError):
    kind = "queue_error"
    status_code = 503
