"""Pytest configuration and fixtures for safescript tests."""

from __future__ import annotations

import tempfile
import threading
from pathlib import Path
from typing import Any, AsyncGenerator, Generator

import pytest
import pytest_asyncio
from docker.errors import ImageNotFound

from safescript import DockerSandbox, EngineConfig


class FakeContainer:
    """Stands in for docker.models.containers.Container."""

    def __init__(
        self,
        *,
        exit_code: int = 0,
        stdout: bytes = b"",
        stderr: bytes = b"",
        hang: bool = False,
        wait_error: Exception | None = None,
        start_error: Exception | None = None,
        outputs: dict[str, bytes] | None = None,
    ) -> None:
        self.id = "c0ffee0000000000"
        self.short_id = self.id[:12]
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.hang = hang
        self.wait_error = wait_error
        self.start_error = start_error
        self.outputs = outputs or {}
        self.mounts: list[dict[str, Any]] = []
        self.started = threading.Event()
        self.stopped = threading.Event()
        self.killed = False
        self.removed = False

    def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        # Pretend the script wrote its outputs.
        for mount in self.mounts:
            if mount["Target"] == "/output":
                for name, data in self.outputs.items():
                    (Path(mount["Source"]) / name).write_bytes(data)
        self.started.set()

    def wait(self, timeout: int | None = None) -> dict[str, Any]:
        if self.wait_error is not None:
            raise self.wait_error
        if self.hang:
            self.stopped.wait(timeout)
        if self.killed:
            return {"StatusCode": 137}
        return {"StatusCode": self.exit_code}

    def kill(self) -> None:
        self.killed = True
        self.stopped.set()

    def logs(self, stdout: bool = True, stderr: bool = True) -> bytes:
        return (self.stdout if stdout else b"") + (self.stderr if stderr else b"")

    def remove(self, force: bool = False) -> None:
        self.removed = True
        self.stopped.set()


class FakeContainers:
    def __init__(self) -> None:
        self.next = FakeContainer()
        self.created: list[dict[str, Any]] = []
        self.create_error: Exception | None = None

    def create(self, **kwargs: Any) -> FakeContainer:
        if self.create_error is not None:
            raise self.create_error
        self.created.append(kwargs)
        self.next.mounts = kwargs.get("mounts", [])
        return self.next


class FakeImage:
    def __init__(self, images: FakeImages) -> None:
        self.id = "sha256:feedface"
        self._images = images

    def tag(self, repository: str, tag: str | None = None) -> bool:
        self._images.present = True
        return True


class FakeImages:
    def __init__(self, present: bool = True) -> None:
        self.present = present
        self.build_error: Exception | None = None
        self.build_applies_tag = True
        self.builds: list[dict[str, Any]] = []

    def get(self, name: str) -> FakeImage:
        if not self.present:
            raise ImageNotFound(f"No such image: {name}")
        return FakeImage(self)

    def build(self, **kwargs: Any) -> tuple[FakeImage, Any]:
        self.builds.append(kwargs)
        if self.build_error is not None:
            raise self.build_error
        if self.build_applies_tag:
            self.present = True
        return FakeImage(self), iter([{"stream": "Step 1/1 : FROM python\n"}])


class FakeAPI:
    def __init__(self, images: FakeImages) -> None:
        self._images = images
        self.pull_events: list[dict[str, Any]] = [{"status": "Pulling fs layer"}]
        self.pull_error: Exception | None = None
        self.pull_gate: threading.Event | None = None
        self.pulls: list[tuple[str, str]] = []

    def pull(self, repository: str, tag: str | None = None, **kwargs: Any):
        self.pulls.append((repository, tag))
        if self.pull_gate is not None:
            self.pull_gate.wait(5)
        if self.pull_error is not None:
            raise self.pull_error
        yield from self.pull_events
        if not any("error" in event for event in self.pull_events):
            self._images.present = True


class FakeDockerClient:
    """Enough of docker.DockerClient for the sandbox runtime."""

    def __init__(self, *, image_present: bool = True) -> None:
        self.images = FakeImages(image_present)
        self.api = FakeAPI(self.images)
        self.containers = FakeContainers()
        self.closed = False
        self.ping_error: Exception | None = None

    def ping(self) -> bool:
        if self.ping_error is not None:
            raise self.ping_error
        return True

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory(prefix="safescript_test_") as tmp:
        yield Path(tmp)


@pytest.fixture
def fake_client() -> FakeDockerClient:
    """A Docker client whose image is already present."""
    return FakeDockerClient()


@pytest.fixture
def config(temp_dir: Path) -> EngineConfig:
    """Config that stages workspaces inside the test directory."""
    return EngineConfig(
        image="safescript-test:latest",
        workspace_root=temp_dir / "work",
        execution_timeout=5.0,
        acquire_timeout=1.0,
    )


@pytest.fixture
def input_file(temp_dir: Path) -> Path:
    """A regular file to mount into the sandbox."""
    path = temp_dir / "data.csv"
    path.write_text("a,b\n1,2\n")
    return path


@pytest_asyncio.fixture
async def sandbox(
    config: EngineConfig, fake_client: FakeDockerClient
) -> AsyncGenerator[DockerSandbox, None]:
    """A DockerSandbox on a fake client with the image ready."""
    sandbox = DockerSandbox(config, client=fake_client, endpoint="fake://docker")
    await sandbox.ensure_image_async()
    try:
        yield sandbox
    finally:
        await sandbox.close()

