"""
Main entry point: the ScriptEngine facade and its create_engine factory.

The engine wires admission control, the sandbox runtime and the artifact
store together in the order a request needs them.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
from pathlib import Path
from typing import Sequence

from safescript._types import AdmissionStats, ExecutionRequest, ExecutionResult, UploadResolver
from safescript.admission import AdmissionController
from safescript.artifacts import ArtifactStore
from safescript.config import EngineConfig
from safescript.errors import ArtifactNotFound, ErrorKind, InputValidationFailed, StorageError
from safescript.sandbox._base import Sandbox
from safescript.sandbox.docker import DockerSandbox
from safescript.sandbox.workspace import validate_input_paths

logger = logging.getLogger(__name__)

UPLOAD_SCHEME = "upload://"


class ScriptEngine:
    """
    Runs scripts in sandboxes under a concurrency ceiling and keeps their
    outputs for a limited time.

    Example:
        >>> engine = await create_engine(EngineConfig(output_dir=Path("outputs")))
        >>> result = await engine.run_script("print(1 + 1)")
        >>> print(result.stdout)
        >>> await engine.close()
    """

    def __init__(
        self,
        config: EngineConfig,
        *,
        sandbox: Sandbox | None = None,
        resolver: UploadResolver | None = None,
    ) -> None:
        self.config = config
        self.admission = AdmissionController(
            config.max_workers, acquire_timeout=config.acquire_timeout
        )
        self.sandbox = sandbox if sandbox is not None else DockerSandbox(config)
        self.artifacts: ArtifactStore | None = None
        if config.output_dir is not None:
            self.artifacts = ArtifactStore(
                config.output_dir,
                ttl=config.artifact_ttl,
                sweep_interval=config.sweep_interval,
            )
        self._resolver = resolver
        self._closed = False

    async def start(self) -> None:
        """Kick off image preparation and the artifact sweep."""
        await self.sandbox.ensure_image_async()
        if self.artifacts is not None:
            await self.artifacts.start()

    def stats(self) -> AdmissionStats:
        return self.admission.stats()

    async def run_script(
        self,
        script: str,
        files: Sequence[Path | str] = (),
        *,
        timeout: float | None = None,
        acquire_timeout: float | None = None,
    ) -> ExecutionResult:
        """
        Run one script.

        Args:
            script: Python source to execute.
            files: Host paths or ``upload://`` references to mount read-only.
            timeout: Seconds the script may run. Uses the configured default
                if omitted or not positive.
            acquire_timeout: Seconds to wait for a free slot.

        Returns:
            ExecutionResult. When outputs are persisted and the script wrote
            any, ``execution_id`` and ``output_files`` are set.

        Raises:
            AdmissionExhausted: If every slot stayed busy until the deadline.
            InfrastructureError: If the container runtime failed.
        """
        if self._closed:
            raise RuntimeError("Engine has been closed")

        slot = await self.admission.acquire(acquire_timeout)
        try:
            try:
                paths = self._resolve_files(files)
            except InputValidationFailed as e:
                return _rejected(e)

            request = ExecutionRequest(script=script, files=tuple(paths), timeout=timeout)
            store = self.artifacts
            if store is None or not self.sandbox.image_status.ready:
                return await self.sandbox.execute(request)

            # Inputs are checked before an artifact directory is allocated.
            try:
                validate_input_paths(paths, self.config.input_root)
            except InputValidationFailed as e:
                return _rejected(e)

            output_dir = await asyncio.to_thread(store.create_execution_directory)
            try:
                result = await self.sandbox.execute(request, output_dir=output_dir)
            except BaseException:
                await asyncio.shield(asyncio.to_thread(_discard, store, output_dir.name))
                raise
            return await asyncio.to_thread(_register, store, result, output_dir.name)
        finally:
            self.admission.release(slot)

    async def close(self) -> None:
        """Stop background work and release the sandbox. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self.artifacts is not None:
            await self.artifacts.stop()
        await self.sandbox.close()

    async def __aenter__(self) -> ScriptEngine:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    def _resolve_files(self, files: Sequence[Path | str]) -> list[Path]:
        resolved: list[Path] = []
        for item in files:
            text = os.fspath(item)
            if not text.startswith(UPLOAD_SCHEME):
                resolved.append(Path(text))
                continue
            if self._resolver is None:
                raise InputValidationFailed(text, "upload references need an upload resolver")
            path = self._resolver.resolve(text)
            if path is None:
                raise InputValidationFailed(text, "upload not found")
            resolved.append(Path(path))
        return resolved


def _rejected(error: InputValidationFailed) -> ExecutionResult:
    return ExecutionResult(
        stdout="",
        stderr="",
        exit_code=1,
        error=str(error),
        error_kind=ErrorKind.INPUT_VALIDATION_FAILED,
    )


def _register(store: ArtifactStore, result: ExecutionResult, execution_id: str) -> ExecutionResult:
    files = store.list_files(execution_id)
    if not files:
        _discard(store, execution_id)
        return result
    logger.info(f"Execution {execution_id} produced {len(files)} file(s)")
    return dataclasses.replace(result, execution_id=execution_id, output_files=tuple(files))


def _discard(store: ArtifactStore, execution_id: str) -> None:
    try:
        store.delete_execution(execution_id)
    except (ArtifactNotFound, StorageError) as e:
        logger.warning(f"Could not discard execution directory {execution_id}: {e}")


async def create_engine(
    config: EngineConfig | None = None,
    *,
    sandbox: Sandbox | None = None,
    resolver: UploadResolver | None = None,
    start: bool = True,
) -> ScriptEngine:
    """
    Create a ScriptEngine, connecting to Docker if no sandbox is given.

    Args:
        config: Engine configuration. Defaults to EngineConfig().
        sandbox: Sandbox runtime to use instead of a discovered DockerSandbox.
        resolver: Resolves ``upload://`` references to host paths.
        start: Begin image preparation and the artifact sweep right away.

    Returns:
        The engine. Close it with ``await engine.close()``.

    Raises:
        InfrastructureError: If no Docker endpoint could be reached.
    """
    config = config or EngineConfig()
    if sandbox is None:
        # Endpoint discovery pings sockets; keep it off the event loop.
        sandbox = await asyncio.to_thread(DockerSandbox, config)
    engine = ScriptEngine(config, sandbox=sandbox, resolver=resolver)
    if start:
        await engine.start()
    return engine
