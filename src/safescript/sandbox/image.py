"""
Execution image readiness.

The image is prepared once per runtime: used as-is if present, otherwise
pulled and, failing that, built. Preparation runs in an owned background
task and publishes its progress as an ImageStatus that requests read
without waiting.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable

import docker
from docker.errors import DockerException, ImageNotFound
from docker.utils import parse_repository_tag

from safescript._types import ImageState, ImageStatus
from safescript.config import EngineConfig
from safescript.errors import ImageBuildFailed, ImageNotReady

logger = logging.getLogger(__name__)

# Transitions a published state may take. READY is final, FAILED is sticky.
_ALLOWED = {
    ImageState.UNKNOWN: {ImageState.BUILDING, ImageState.READY, ImageState.FAILED},
    ImageState.BUILDING: {ImageState.READY, ImageState.FAILED},
    ImageState.READY: set(),
    ImageState.FAILED: set(),
}


class ImageManager:
    """Owns the readiness state of one execution image."""

    def __init__(self, client: docker.DockerClient, config: EngineConfig) -> None:
        self._client = client
        self._config = config
        self._image = config.image
        self._lock = threading.Lock()
        self._status = ImageStatus()
        self._started = False
        self._task: asyncio.Task[None] | None = None

    @property
    def image(self) -> str:
        return self._image

    @property
    def status(self) -> ImageStatus:
        with self._lock:
            return self._status

    def _publish(self, state: ImageState, error: str | None = None) -> bool:
        with self._lock:
            if state not in _ALLOWED[self._status.state]:
                return False
            self._status = ImageStatus(state, error)
        if state is ImageState.FAILED:
            logger.error(f"Image preparation failed: {error}")
        else:
            logger.info(f"Image {self._image} is {state.value}")
        return True

    async def ensure_image_async(self) -> ImageStatus:
        """
        Start preparing the image and return without waiting for it.

        Only the first call does anything. If the image already exists
        locally it becomes READY immediately; otherwise it is BUILDING until
        the background task finishes.
        """
        if self._started:
            return self.status
        # Set only once the check completes so a cancelled call can be retried.
        exists = await asyncio.to_thread(self._exists)
        if self._started:
            return self.status
        self._started = True

        if exists:
            self._publish(ImageState.READY)
            return self.status

        if self._config.build_local:
            logger.info(f"Image {self._image} not found, building locally")
        else:
            logger.info(f"Image {self._image} not found locally, pulling from registry")
        self._publish(ImageState.BUILDING)
        self._task = asyncio.create_task(self._prepare(), name=f"prepare-{self._image}")
        return self.status

    async def wait_until_ready(self, timeout: float, *, poll_interval: float = 0.5) -> None:
        """
        Poll until the image is READY. Meant for startup probes.

        Raises:
            ImageBuildFailed: If preparation failed.
            ImageNotReady: If the image is still not ready after ``timeout``.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            status = self.status
            if status.state is ImageState.READY:
                return
            if status.state is ImageState.FAILED:
                raise ImageBuildFailed(status.error or "image preparation failed")
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ImageNotReady(f"Image {self._image} not ready after {timeout}s")
            await asyncio.sleep(min(poll_interval, remaining))

    async def close(self) -> None:
        """Cancel preparation if it is still running and wait for it."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _strategies(self) -> list[tuple[str, Callable[[], None]]]:
        if self._config.build_local:
            return [("build", self._build)]
        return [("pull", self._pull), ("build", self._build)]

    async def _prepare(self) -> None:
        failures: list[str] = []
        for name, strategy in self._strategies():
            try:
                await asyncio.to_thread(strategy)
            except Exception as e:
                logger.warning(f"Image {name} failed: {e}")
                failures.append(f"{name} error: {e}")
                continue
            self._publish(ImageState.READY)
            return
        self._publish(
            ImageState.FAILED,
            f"failed to prepare image {self._image}: " + ", ".join(failures),
        )

    def _exists(self) -> bool:
        try:
            self._client.images.get(self._image)
        except ImageNotFound:
            return False
        except (DockerException, OSError) as e:
            logger.warning(f"Cannot inspect image {self._image}: {e}")
            return False
        return True

    def _pull(self) -> None:
        repository, tag = parse_repository_tag(self._image)
        logger.info(f"Pulling image {self._image}")
        for event in self._client.api.pull(repository, tag=tag or "latest", stream=True, decode=True):
            if event.get("error"):
                raise ImageBuildFailed(event["error"])
            status = event.get("status")
            if status:
                logger.debug(f"[docker pull] {status} {event.get('progress', '')}".rstrip())
        if not self._exists():
            raise ImageBuildFailed(f"pull finished but {self._image} is not present")
        logger.info(f"Pulled image {self._image}")

    def _build(self) -> None:
        spec = self._config.build
        if spec is None:
            raise ImageBuildFailed("no Dockerfile configured to build from")
        if not spec.dockerfile.is_file():
            raise ImageBuildFailed(f"Dockerfile not found: {spec.dockerfile}")

        logger.info(f"Building image {self._image} from {spec.dockerfile}")
        built, stream = self._client.images.build(
            path=str(spec.context_dir),
            dockerfile=str(spec.dockerfile.resolve()),
            tag=self._image,
            rm=True,
        )
        for chunk in stream:
            line = str(chunk.get("stream", "")).strip()
            if line:
                logger.debug(f"[docker build] {line}")

        if self._exists():
            return
        # The daemon occasionally drops the tag; apply it by image id.
        repository, tag = parse_repository_tag(self._image)
        logger.info(f"Tagging image {built.id} as {self._image}")
        if not built.tag(repository, tag or "latest") or not self._exists():
            raise ImageBuildFailed(f"build completed but {self._image} could not be tagged")
