from __future__ import annotations
import asyncio
import enum


class ApiError(Exception):
    """Base for errors surfaced synchronously to HTTP callers."""

    status_code = 500

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field


class ValidationError(ApiError):
    status_code = 400


class SignatureInvalid(ValidationError):
    def __init__(self, message: str = "Signature does not match image hash", field: str | None = "signature"):
        super().__init__(message, field)


class ChallengeNotActive(ValidationError):
    def __init__(self, message: str = "Challenge is not currently active", field: str | None = "chainId"):
        super().__init__(message, field)


class InvalidStateTransition(ApiError):
    status_code = 400


class Unauthorized(ApiError):
    status_code = 401


class Forbidden(ApiError):
    status_code = 403


class NotFound(ApiError):
    status_code = 404

    def __init__(self, resource: str, field: str | None = None):
        super().__init__(f"{resource} not found", field)
        self.resource = resource


class Conflict(ApiError):
    status_code = 409


class DuplicateImage(Conflict):
    def __init__(self, message: str = "Image already submitted", field: str | None = "image"):
        super().__init__(message, field)


class DuplicateJob(Conflict):
    pass


class ErrorKind(str, enum.Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


# Categories that never succeed on retry, whatever kind the raiser attached.
TERMINAL_CATEGORIES = frozenset({
    "not_deployed",
    "not_initialized",
    "invalid_signature",
    "invalid_proof",
    "invalid_public_key",
    "hash_mismatch",
    "malformed_input",
})


class PipelineError(Exception):
    """Failure inside the proof pipeline, tagged with its retry kind where it is raised."""

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(self, message: str, *, category: str = "unknown"):
        super().__init__(message)
        self.category = category


class TransientError(PipelineError):
    kind = ErrorKind.TRANSIENT


class PermanentError(PipelineError):
    kind = ErrorKind.PERMANENT


def classify(exc: BaseException) -> ErrorKind:
    if isinstance(exc, PipelineError):
        if exc.category in TERMINAL_CATEGORIES:
            return ErrorKind.PERMANENT
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TRANSIENT
    # unknown failures are retried until max_attempts
    return ErrorKind.TRANSIENT


def error_category(exc: BaseException) -> str:
    if isinstance(exc, PipelineError):
        return exc.category
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return "timeout"
    return type(exc).__name__
