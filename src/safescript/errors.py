"""
Error taxonomy for safescript.

Every failure the engine can report belongs to one ``ErrorKind``. Exceptions
carry their kind so callers can match on it instead of on exception types,
and structured results carry the same kind in ``ExecutionResult.error_kind``.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    """Closed set of failure classifications."""

    ADMISSION_EXHAUSTED = "admission_exhausted"
    IMAGE_NOT_READY = "image_not_ready"
    IMAGE_BUILD_FAILED = "image_build_failed"
    INPUT_VALIDATION_FAILED = "input_validation_failed"
    EXECUTION_TIMEOUT = "execution_timeout"
    EXECUTION_FAILED = "execution_failed"
    INFRASTRUCTURE_ERROR = "infrastructure_error"
    ARTIFACT_NOT_FOUND = "artifact_not_found"
    STORAGE_ERROR = "storage_error"
    CONFIGURATION_ERROR = "configuration_error"


class SafeScriptError(Exception):
    """Base exception for all safescript errors."""

    kind: ErrorKind = ErrorKind.INFRASTRUCTURE_ERROR
    retryable: bool = False


class ConfigurationError(SafeScriptError):
    """Raised when the engine configuration is invalid."""

    kind = ErrorKind.CONFIGURATION_ERROR


class AdmissionExhausted(SafeScriptError):
    """Raised when no execution slot became free before the deadline."""

    kind = ErrorKind.ADMISSION_EXHAUSTED
    retryable = True

    def __init__(self, capacity: int, timeout: float) -> None:
        self.capacity = capacity
        self.timeout = timeout
        super().__init__(
            f"All {capacity} execution slots are busy (waited {timeout:g}s)"
        )


class ImageNotReady(SafeScriptError):
    """Raised when the execution image is still being prepared."""

    kind = ErrorKind.IMAGE_NOT_READY
    retryable = True


class ImageBuildFailed(SafeScriptError):
    """Raised when the execution image could neither be pulled nor built."""

    kind = ErrorKind.IMAGE_BUILD_FAILED


class InputValidationFailed(SafeScriptError):
    """Raised when a caller-supplied path is rejected."""

    kind = ErrorKind.INPUT_VALIDATION_FAILED

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid input {path!r}: {reason}")


class InfrastructureError(SafeScriptError):
    """Raised when the container runtime cannot be reached or misbehaves."""

    kind = ErrorKind.INFRASTRUCTURE_ERROR


class ArtifactNotFound(SafeScriptError):
    """Raised when an execution directory or artifact file does not exist."""

    kind = ErrorKind.ARTIFACT_NOT_FOUND


class StorageError(SafeScriptError):
    """Raised on filesystem failures inside the artifact store."""

    kind = ErrorKind.STORAGE_ERROR
