"""
TTL-scoped storage for execution outputs.

Each execution gets its own directory under the store root, named by its
execution id, with a ``.metadata.json`` sidecar recording when it was
created and when it expires. A background sweep removes expired
directories.
"""

from __future__ import annotations

import json
import logging
import os
import re
import secrets
import shutil
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePath
from typing import Callable

from safescript._types import ExecutionInfo
from safescript.errors import ArtifactNotFound, InputValidationFailed, StorageError
from safescript.ttl import PeriodicSweeper

logger = logging.getLogger(__name__)

METADATA_FILE = ".metadata.json"
EXECUTION_PREFIX = "exec-"
_EXECUTION_ID = re.compile(r"^exec-[A-Za-z0-9_-]+$")

# The sandbox may write as an arbitrary uid.
_WORLD_WRITABLE = 0o777


def generate_execution_id() -> str:
    """Return a fresh id of the form ``exec-<8 hex chars>``."""
    return f"{EXECUTION_PREFIX}{secrets.token_hex(4)}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ArtifactStore:
    """
    Manages per-execution output directories with a time-to-live.

    Foreground operations and sweep passes serialize through one lock, so a
    sweep never removes a directory out from under get_file() or
    delete_execution().

    Example:
        >>> store = ArtifactStore("/var/lib/safescript/outputs", ttl=3600)
        >>> await store.start()
        >>> path = store.create_execution_directory()
        >>> await store.stop()
    """

    def __init__(
        self,
        base_dir: Path | str,
        *,
        ttl: float = 3600.0,
        sweep_interval: float = 300.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._base_dir = Path(base_dir).expanduser().resolve()
        self._ttl = timedelta(seconds=ttl)
        self._clock = clock or _utcnow
        self._lock = threading.RLock()
        self._sweeper = PeriodicSweeper("artifacts", self.sweep_expired, sweep_interval)
        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create artifact root {self._base_dir}: {e}") from e

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    # Lifecycle

    async def start(self) -> None:
        """Start the background sweep. The first pass runs immediately."""
        self._sweeper.start()

    async def stop(self) -> None:
        """Stop the background sweep; no pass runs after this returns."""
        await self._sweeper.stop()

    async def __aenter__(self) -> ArtifactStore:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.stop()

    # Directories

    def create_execution_directory(self, execution_id: str | None = None) -> Path:
        """
        Create a world-writable directory for one execution and write its
        metadata sidecar.

        Args:
            execution_id: Id to use. A fresh one is generated if omitted.

        Returns:
            Path to the new directory.
        """
        execution_id = execution_id or generate_execution_id()
        self._check_id(execution_id)
        path = self._base_dir / execution_id
        created = self._clock()
        metadata = {
            "id": execution_id,
            "createdAt": created.isoformat(),
            "expiresAt": (created + self._ttl).isoformat(),
        }
        with self._lock:
            try:
                path.mkdir()
                os.chmod(path, _WORLD_WRITABLE)
                (path / METADATA_FILE).write_text(json.dumps(metadata, indent=2), encoding="utf-8")
            except FileExistsError as e:
                raise StorageError(f"Execution directory already exists: {execution_id}") from e
            except OSError as e:
                shutil.rmtree(path, ignore_errors=True)
                raise StorageError(f"Cannot create execution directory {execution_id}: {e}") from e
        logger.debug(f"Created execution directory {path}")
        return path

    def list_executions(self) -> list[ExecutionInfo]:
        """All tracked execution directories, oldest first."""
        with self._lock:
            infos = [self._describe(entry) for entry in self._tracked()]
        return sorted(infos, key=lambda info: info.created_at)

    def get_execution(self, execution_id: str) -> ExecutionInfo:
        self._check_id(execution_id)
        with self._lock:
            path = self._existing(execution_id)
            return self._describe(path)

    def list_files(self, execution_id: str) -> list[str]:
        """Names of the result files in an execution directory."""
        self._check_id(execution_id)
        with self._lock:
            return list(self._files(self._existing(execution_id)))

    def get_file(self, execution_id: str, name: str) -> bytes:
        """
        Read one result file.

        The contents are read under the store lock, so a concurrent sweep or
        delete cannot remove the file mid-read. Names that try to leave the
        execution directory are rejected before the id is even looked at.

        Raises:
            InputValidationFailed: If the name or id is malformed.
            ArtifactNotFound: If the directory or file does not exist.
            StorageError: If the file cannot be read.
        """
        if not name or name in (".", "..") or os.path.isabs(name):
            raise InputValidationFailed(name, "invalid file name")
        if ".." in PurePath(name.replace("\\", "/")).parts:
            raise InputValidationFailed(name, "path traversal is not allowed")
        self._check_id(execution_id)

        with self._lock:
            directory = self._existing(execution_id).resolve()
            target = (directory / os.path.basename(name)).resolve()
            if target.parent != directory:
                raise InputValidationFailed(name, "path escapes the execution directory")
            if target.name == METADATA_FILE or not target.is_file():
                raise ArtifactNotFound(f"File not found: {execution_id}/{name}")
            try:
                return target.read_bytes()
            except OSError as e:
                raise StorageError(f"Cannot read {execution_id}/{name}: {e}") from e

    def delete_execution(self, execution_id: str) -> None:
        self._check_id(execution_id)
        with self._lock:
            path = self._existing(execution_id)
            try:
                shutil.rmtree(path)
            except OSError as e:
                raise StorageError(f"Cannot delete {execution_id}: {e}") from e
        logger.info(f"Deleted execution directory {execution_id}")

    def delete_all_executions(self) -> int:
        """Remove every tracked directory. Returns how many were removed."""
        removed = 0
        with self._lock:
            for path in self._tracked():
                try:
                    shutil.rmtree(path)
                except OSError as e:
                    logger.warning(f"Failed to delete {path.name}: {e}")
                    continue
                removed += 1
        logger.info(f"Deleted {removed} execution directories")
        return removed

    def sweep_expired(self) -> int:
        """One sweep pass. Returns the number of directories removed."""
        now = self._clock()
        removed = 0
        with self._lock:
            for path in self._tracked():
                info = self._describe(path)
                if not info.is_expired(now):
                    continue
                try:
                    shutil.rmtree(path)
                except OSError as e:
                    logger.warning(f"Failed to remove expired {info.id}: {e}")
                    continue
                logger.debug(f"Removed expired execution {info.id}")
                removed += 1
        return removed

    # Internals

    @staticmethod
    def _check_id(execution_id: str) -> None:
        if not _EXECUTION_ID.match(execution_id or ""):
            raise InputValidationFailed(execution_id, "invalid execution id")

    def _existing(self, execution_id: str) -> Path:
        path = self._base_dir / execution_id
        if not path.is_dir():
            raise ArtifactNotFound(f"Execution not found: {execution_id}")
        return path

    def _tracked(self) -> list[Path]:
        try:
            entries = list(self._base_dir.iterdir())
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageError(f"Cannot list {self._base_dir}: {e}") from e
        return sorted(
            entry
            for entry in entries
            if _EXECUTION_ID.match(entry.name) and entry.is_dir() and not entry.is_symlink()
        )

    @staticmethod
    def _files(path: Path) -> tuple[str, ...]:
        return tuple(
            sorted(
                entry.name
                for entry in path.iterdir()
                if entry.name != METADATA_FILE and entry.is_file()
            )
        )

    def _describe(self, path: Path) -> ExecutionInfo:
        created, expires = self._read_times(path)
        try:
            files = self._files(path)
        except OSError:
            files = ()
        return ExecutionInfo(
            id=path.name,
            created_at=created,
            expires_at=expires,
            path=path,
            files=files,
        )

    def _read_times(self, path: Path) -> tuple[datetime, datetime]:
        try:
            raw = json.loads((path / METADATA_FILE).read_text(encoding="utf-8"))
            return _parse_timestamp(raw["createdAt"]), _parse_timestamp(raw["expiresAt"])
        except (OSError, ValueError, KeyError, TypeError, AttributeError):
            pass
        # No usable sidecar: age the directory from its mtime.
        try:
            created = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        except OSError:
            created = self._clock()
        return created, created + self._ttl
