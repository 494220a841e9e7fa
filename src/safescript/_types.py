"""
Core type definitions for safescript.

Uses dataclasses and Protocols for lightweight, typed abstractions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Protocol

from safescript.errors import ErrorKind, SafeScriptError

# Exit code reported when a script is killed for exceeding its timeout.
TIMEOUT_EXIT_CODE = 124


class ImageState(Enum):
    """Lifecycle of the execution image."""

    UNKNOWN = "unknown"
    BUILDING = "building"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ImageStatus:
    """Snapshot of the image state, with the failure message when FAILED."""

    state: ImageState = ImageState.UNKNOWN
    error: str | None = None

    @property
    def ready(self) -> bool:
        return self.state is ImageState.READY


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    """A script to run plus the host files it may read."""

    script: str
    files: tuple[Path, ...] = ()
    timeout: float | None = None


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Immutable result from one sandboxed execution."""

    stdout: str
    stderr: str
    exit_code: int
    duration: float = 0.0
    error: str | None = None
    error_kind: ErrorKind | None = None
    truncated: bool = False
    execution_id: str | None = None
    output_files: tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        """Return True if the script ran and exited with code 0."""
        return self.exit_code == 0 and self.error_kind is None

    @property
    def timed_out(self) -> bool:
        return self.error_kind is ErrorKind.EXECUTION_TIMEOUT

    def raise_for_status(self) -> None:
        """Raise ExecutionError if the execution did not succeed."""
        if not self.success:
            raise ExecutionError(self)


class ExecutionError(SafeScriptError):
    """Raised by ExecutionResult.raise_for_status for unsuccessful runs."""

    def __init__(self, result: ExecutionResult) -> None:
        self.result = result
        self.kind = result.error_kind or ErrorKind.EXECUTION_FAILED
        detail = result.error or result.stderr or result.stdout
        super().__init__(
            f"Execution failed with exit code {result.exit_code}: {detail}"
        )


@dataclass(frozen=True, slots=True)
class Mount:
    """Read-only bind of a host file into the sandbox."""

    source: Path
    target: str
    read_only: bool = True


@dataclass(frozen=True, slots=True)
class AdmissionStats:
    """Point-in-time utilization of the admission controller."""

    capacity: int
    active: int
    available: int
    processed: int


@dataclass(frozen=True)
class ExecutionInfo:
    """An artifact directory and what it contains."""

    id: str
    created_at: datetime
    expires_at: datetime
    path: Path
    files: tuple[str, ...] = field(default_factory=tuple)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True, slots=True)
class ScanResult:
    """Outcome of a malware scan."""

    clean: bool
    threat: str = ""
    error: str | None = None

    @property
    def unavailable(self) -> bool:
        """True when the scanner could not give a verdict."""
        return self.error is not None


class UploadResolver(Protocol):
    """Turns an opaque upload reference into a host path, or None."""

    def resolve(self, reference: str) -> Path | None: ...


class MalwareScanner(Protocol):
    """Scans a stored upload before it is accepted."""

    def scan(self, path: Path) -> ScanResult: ...
