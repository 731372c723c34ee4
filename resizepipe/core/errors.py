from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    EXHAUSTED = "exhausted"


class PipelineError(RuntimeError):
    code = "PIPELINE_ERROR"
    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class TransientError(PipelineError):
    code = "TRANSIENT"
    kind = ErrorKind.TRANSIENT


class PermanentError(PipelineError):
    code = "PERMANENT"
    kind = ErrorKind.PERMANENT


class StoreUnavailableError(TransientError):
    code = "STORE_UNAVAILABLE"


class LedgerUnavailableError(TransientError):
    code = "LEDGER_UNAVAILABLE"


class AttemptDeadlineExceededError(TransientError):
    code = "ATTEMPT_DEADLINE_EXCEEDED"


class LeaseLostError(TransientError):
    code = "LEASE_LOST"


class UnsupportedContentTypeError(PermanentError):
    code = "UNSUPPORTED_CONTENT_TYPE"


class CorruptImageError(PermanentError):
    code = "CORRUPT_PAYLOAD"


class ObjectNotFoundError(PermanentError):
    code = "SOURCE_NOT_FOUND"


class StorePermissionError(PermanentError):
    code = "STORE_PERMISSION_DENIED"


class DerivedKeyCollisionError(PermanentError):
    code = "DERIVED_KEY_COLLISION"


def classify(exc: BaseException) -> ErrorKind:
    if isinstance(exc, PipelineError):
        return exc.kind
    return ErrorKind.TRANSIENT


def error_code(exc: BaseException) -> str:
    if isinstance(exc, PipelineError):
        return exc.code
    return "UNEXPECTED_ERROR"
