"""Tests for Docker endpoint discovery."""

from __future__ import annotations

from pathlib import Path

import pytest
from docker.errors import DockerException

from conftest import FakeDockerClient
from safescript import InfrastructureError
from safescript.sandbox.discovery import OPERATION_TIMEOUT, candidate_sockets, discover_docker


class RecordingFactory:
    """Client factory that fails pings for selected endpoints."""

    def __init__(self, failing: set[str | None] | None = None) -> None:
        self.failing = failing or set()
        self.calls: list[tuple[str | None, float]] = []

    def __call__(self, base_url: str | None, timeout: float) -> FakeDockerClient:
        self.calls.append((base_url, timeout))
        client = FakeDockerClient()
        if base_url in self.failing:
            client.ping_error = DockerException("connection refused")
        return client


@pytest.fixture
def sockets(temp_dir: Path) -> list[Path]:
    paths = [temp_dir / "first.sock", temp_dir / "second.sock", temp_dir / "third.sock"]
    paths[1].touch()
    paths[2].touch()
    return paths


class TestCandidateSockets:
    def test_known_locations(self, temp_dir: Path) -> None:
        candidates = candidate_sockets(home=temp_dir, uid=1000)
        assert candidates[0] == Path("/var/run/docker.sock")
        assert temp_dir / ".colima" / "default" / "docker.sock" in candidates
        assert Path("/run/user/1000/podman/podman.sock") in candidates
        assert temp_dir / ".rd" / "docker.sock" in candidates


class TestDiscoverDocker:
    """Tests for discover_docker()."""

    def test_docker_host_wins(self, sockets: list[Path]) -> None:
        factory = RecordingFactory()
        client, endpoint = discover_docker(
            1.0,
            environ={"DOCKER_HOST": "tcp://remote:2375"},
            candidates=sockets,
            client_factory=factory,
        )

        assert endpoint == "tcp://remote:2375"
        assert isinstance(client, FakeDockerClient)
        assert [url for url, _ in factory.calls] == [None, None]

    def test_docker_host_unreachable(self) -> None:
        factory = RecordingFactory(failing={None})
        with pytest.raises(InfrastructureError, match="DOCKER_HOST"):
            discover_docker(environ={"DOCKER_HOST": "tcp://remote:2375"}, client_factory=factory)

    def test_first_responding_socket(self, sockets: list[Path]) -> None:
        """Missing sockets are skipped and failing pings fall through."""
        second = f"unix://{sockets[1]}"
        third = f"unix://{sockets[2]}"
        factory = RecordingFactory(failing={second})

        client, endpoint = discover_docker(
            0.5, environ={}, candidates=sockets, client_factory=factory
        )

        assert endpoint == third
        assert factory.calls == [(second, 0.5), (third, 0.5), (third, OPERATION_TIMEOUT)]

    def test_error_lists_everything_tried(self, sockets: list[Path]) -> None:
        factory = RecordingFactory(failing={f"unix://{s}" for s in sockets})

        with pytest.raises(InfrastructureError) as exc_info:
            discover_docker(environ={}, candidates=sockets, client_factory=factory)

        message = str(exc_info.value)
        assert f"{sockets[0]} (missing)" in message
        assert f"{sockets[1]} (ping failed" in message
        assert f"{sockets[2]} (ping failed" in message
