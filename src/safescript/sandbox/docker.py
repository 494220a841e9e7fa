"""
Docker-based sandbox runtime.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from pathlib import Path

import docker
from docker.errors import DockerException
from docker.types import Mount as DockerMount

from safescript._types import (
    TIMEOUT_EXIT_CODE,
    ExecutionRequest,
    ExecutionResult,
    ImageState,
    ImageStatus,
)
from safescript.config import CPU_PERIOD, EngineConfig
from safescript.errors import ErrorKind, InfrastructureError, InputValidationFailed
from safescript.sandbox._base import Sandbox
from safescript.sandbox.discovery import discover_docker
from safescript.sandbox.image import ImageManager
from safescript.sandbox.workspace import SCRIPT_TARGET, Workspace, validate_input_paths

logger = logging.getLogger(__name__)

# Extra seconds the blocking wait call may outlive the execution deadline.
_WAIT_GRACE = 30

_ENVIRONMENT = {
    "PYTHONUNBUFFERED": "1",
    "PYTHONDONTWRITEBYTECODE": "1",
}


class StopReason(Enum):
    """Why a running container is being force-stopped."""

    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class DockerSandbox(Sandbox):
    """
    Runs each script in a fresh, resource-limited Docker container.

    Security features:
    - Memory and CPU ceilings per container
    - No network unless enabled in the config
    - No privileges, ``no-new-privileges`` set
    - Inputs mounted read-only at ``/data/input_<n>/<name>``
    - Container and workspace removed on every exit path

    Example:
        >>> sandbox = DockerSandbox(EngineConfig(image="python:3.12-slim"))
        >>> await sandbox.ensure_image_async()
        >>> result = await sandbox.execute(ExecutionRequest("print('hi')"))
        >>> print(result.stdout)
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        client: docker.DockerClient | None = None,
        endpoint: str | None = None,
    ) -> None:
        """
        Initialize a Docker sandbox.

        Args:
            config: Engine configuration. Defaults to EngineConfig().
            client: Docker client to use. Discovered if omitted.
            endpoint: Description of where ``client`` points, for logging.

        Raises:
            InfrastructureError: If no Docker endpoint could be reached.
        """
        self.config = config or EngineConfig()
        if client is None:
            client, endpoint = discover_docker(self.config.probe_timeout)
        self._client = client
        self.endpoint = endpoint or "<injected>"
        self._images = ImageManager(client, self.config)
        self._closed = False
        logger.info(f"Docker sandbox connected via {self.endpoint}")

    @property
    def image_status(self) -> ImageStatus:
        return self._images.status

    async def ensure_image_async(self) -> ImageStatus:
        return await self._images.ensure_image_async()

    async def wait_until_ready(self, timeout: float, *, poll_interval: float = 0.5) -> None:
        """Block until the image is ready. For startup probes only."""
        await self._images.wait_until_ready(timeout, poll_interval=poll_interval)

    async def execute(
        self, request: ExecutionRequest, *, output_dir: Path | None = None
    ) -> ExecutionResult:
        """
        Run a script in a new container.

        Args:
            request: Script, input files and optional timeout.
            output_dir: Host directory to mount at ``/output``.

        Returns:
            ExecutionResult with stdout, stderr and exit_code. A timeout
            yields exit code 124.

        Raises:
            InfrastructureError: If Docker failed to create, start or wait
                for the container.
        """
        if self._closed:
            raise RuntimeError("Sandbox has been closed")

        started = time.monotonic()
        status = self._images.status
        if status.state is not ImageState.READY:
            return self._not_ready(status, started)

        try:
            inputs = validate_input_paths(request.files, self.config.input_root)
        except InputValidationFailed as e:
            return ExecutionResult(
                stdout="",
                stderr="",
                exit_code=1,
                duration=time.monotonic() - started,
                error=str(e),
                error_kind=ErrorKind.INPUT_VALIDATION_FAILED,
            )

        timeout = request.timeout if request.timeout and request.timeout > 0 else self.config.execution_timeout

        staging = asyncio.ensure_future(
            asyncio.to_thread(
                Workspace.create,
                request.script,
                inputs,
                root=self.config.workspace_root,
                output_dir=output_dir,
            )
        )
        try:
            workspace = await asyncio.shield(staging)
        except asyncio.CancelledError:
            await asyncio.shield(self._abandon_staging(staging))
            raise
        except OSError as e:
            raise InfrastructureError(f"Failed to stage workspace: {e}") from e

        # Creation is shielded so a cancelled caller still learns the container id.
        creating = asyncio.ensure_future(asyncio.to_thread(self._create_container, workspace))
        container = None
        try:
            container = await asyncio.shield(creating)
            return await self._run(container, timeout, started)
        finally:
            if container is None:
                try:
                    container = await asyncio.shield(creating)
                except InfrastructureError:
                    pass
            await asyncio.shield(asyncio.to_thread(self._teardown, container, workspace))

    async def close(self) -> None:
        """
        Stop image preparation and close the Docker client.

        Safe to call multiple times.
        """
        if self._closed:
            return
        self._closed = True
        await self._images.close()
        try:
            self._client.close()
        except (DockerException, OSError) as e:
            logger.warning(f"Error closing Docker client: {e}")

    def _not_ready(self, status: ImageStatus, started: float) -> ExecutionResult:
        if status.state is ImageState.FAILED:
            error = f"Docker image build failed: {status.error}"
            kind = ErrorKind.IMAGE_BUILD_FAILED
        else:
            error = "Docker image is still being prepared. Please try again shortly."
            kind = ErrorKind.IMAGE_NOT_READY
        return ExecutionResult(
            stdout="",
            stderr="",
            exit_code=1,
            duration=time.monotonic() - started,
            error=error,
            error_kind=kind,
        )

    def _create_container(self, workspace: Workspace):
        config = self.config
        mounts = [
            DockerMount(
                target=mount.target,
                source=str(mount.source),
                type="bind",
                read_only=mount.read_only,
            )
            for mount in workspace.mounts
        ]
        try:
            return self._client.containers.create(
                image=config.image,
                entrypoint=list(config.interpreter),
                command=[SCRIPT_TARGET],
                working_dir="/",
                environment=dict(_ENVIRONMENT),
                mounts=mounts,
                network_disabled=not config.network_enabled,
                mem_limit=config.memory_limit,
                cpu_period=CPU_PERIOD,
                cpu_quota=config.cpu_quota,
                privileged=False,
                security_opt=["no-new-privileges"],
                labels={"safescript.managed": "true", **config.labels},
            )
        except (DockerException, OSError) as e:
            raise InfrastructureError(f"Failed to create container: {e}") from e

    async def _run(self, container, timeout: float, started: float) -> ExecutionResult:
        phase = "start"
        try:
            await asyncio.to_thread(container.start)
            phase = "wait"
            outcome = await asyncio.wait_for(
                asyncio.to_thread(container.wait, timeout=int(timeout) + _WAIT_GRACE),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            await self._stop(container, StopReason.TIMEOUT)
            stdout, stderr, truncated = await self._collect_output(container, best_effort=True)
            return ExecutionResult(
                stdout=stdout,
                stderr=stderr,
                exit_code=TIMEOUT_EXIT_CODE,
                duration=time.monotonic() - started,
                error=f"execution timeout: script exceeded {timeout:g}s",
                error_kind=ErrorKind.EXECUTION_TIMEOUT,
                truncated=truncated,
            )
        except asyncio.CancelledError:
            await asyncio.shield(self._stop(container, StopReason.CANCELLED))
            raise
        except (DockerException, OSError) as e:
            raise InfrastructureError(f"Container {phase} failed: {e}") from e

        exit_code = int(outcome.get("StatusCode", -1))
        stdout, stderr, truncated = await self._collect_output(container)
        error = None
        kind = None
        if exit_code != 0:
            error = f"script exited with code {exit_code}"
            kind = ErrorKind.EXECUTION_FAILED
        return ExecutionResult(
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            duration=time.monotonic() - started,
            error=error,
            error_kind=kind,
            truncated=truncated,
        )

    async def _stop(self, container, reason: StopReason) -> None:
        """Kill a running container. Shared by timeout and cancellation."""
        logger.info(f"Killing container {container.short_id} ({reason.value})")
        try:
            await asyncio.to_thread(container.kill)
        except (DockerException, OSError) as e:
            # Usually the container exited on its own in the meantime.
            logger.debug(f"Kill of {container.short_id} failed: {e}")

    async def _collect_output(self, container, *, best_effort: bool = False) -> tuple[str, str, bool]:
        try:
            stdout_bytes = await asyncio.to_thread(container.logs, stdout=True, stderr=False)
            stderr_bytes = await asyncio.to_thread(container.logs, stdout=False, stderr=True)
        except (DockerException, OSError) as e:
            if best_effort:
                logger.debug(f"Could not read logs of {container.short_id}: {e}")
                return "", "", False
            raise InfrastructureError(f"Failed to read container logs: {e}") from e

        stdout, stdout_truncated = self._decode_and_truncate(stdout_bytes)
        stderr, stderr_truncated = self._decode_and_truncate(stderr_bytes)
        return stdout, stderr, stdout_truncated or stderr_truncated

    def _decode_and_truncate(self, data: bytes) -> tuple[str, bool]:
        """Decode bytes and truncate if too large."""
        limit = self.config.max_output_bytes
        if len(data) <= limit:
            return data.decode("utf-8", errors="replace"), False
        text = data[:limit].decode("utf-8", errors="replace")
        text += f"\n\n[Truncated: {len(data) - limit} bytes removed]"
        return text, True

    async def _abandon_staging(self, staging: asyncio.Future[Workspace]) -> None:
        """Remove a workspace whose caller was cancelled while it was staged."""
        try:
            workspace = await staging
        except OSError:
            return
        await asyncio.to_thread(self._teardown, None, workspace)

    def _teardown(self, container, workspace: Workspace) -> None:
        if container is not None:
            try:
                container.remove(force=True)
            except (DockerException, OSError) as e:
                logger.warning(f"Failed to remove container {container.short_id}: {e}")
        try:
            workspace.remove()
        except OSError as e:
            logger.warning(f"Failed to remove workspace {workspace.path}: {e}")
