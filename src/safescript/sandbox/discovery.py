"""
Locate a reachable Docker-compatible control endpoint.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, Mapping

import docker
from docker.errors import DockerException

from safescript.errors import InfrastructureError

logger = logging.getLogger(__name__)

# Read timeout for real work (pulls, builds, waits) once an endpoint is chosen.
OPERATION_TIMEOUT = 300

ClientFactory = Callable[[str | None, float], docker.DockerClient]


def candidate_sockets(home: Path | None = None, uid: int | None = None) -> list[Path]:
    """Well-known local socket locations, most common first."""
    home = home if home is not None else Path.home()
    uid = uid if uid is not None else os.getuid()
    return [
        Path("/var/run/docker.sock"),
        # Colima
        home / ".colima" / "default" / "docker.sock",
        home / ".colima" / "docker" / "docker.sock",
        # Lima
        home / ".lima" / "default" / "sock" / "docker.sock",
        home / ".lima" / "docker" / "sock" / "docker.sock",
        # Podman rootless
        Path(f"/run/user/{uid}/podman/podman.sock"),
        # Rancher Desktop
        home / ".rd" / "docker.sock",
        # Docker Desktop
        home / ".docker" / "run" / "docker.sock",
        home / "Library" / "Containers" / "com.docker.docker" / "Data" / "docker.raw.sock",
    ]


def _open_client(
    base_url: str | None, timeout: float, environ: Mapping[str, str] | None = None
) -> docker.DockerClient:
    if base_url is None:
        return docker.from_env(timeout=int(timeout) or 1, environment=environ)
    return docker.DockerClient(base_url=base_url, timeout=int(timeout) or 1)


def _probe(factory: ClientFactory, base_url: str | None, timeout: float) -> None:
    client = factory(base_url, timeout)
    try:
        client.ping()
    finally:
        client.close()


def discover_docker(
    probe_timeout: float = 5.0,
    *,
    environ: Mapping[str, str] | None = None,
    candidates: list[Path] | None = None,
    client_factory: ClientFactory | None = None,
) -> tuple[docker.DockerClient, str]:
    """
    Connect to the first Docker endpoint that answers a ping.

    ``DOCKER_HOST`` wins when set. Otherwise each existing socket from
    candidate_sockets() is pinged in order.

    Returns:
        A client configured for long-running operations and the endpoint URL.

    Raises:
        InfrastructureError: If no endpoint responded. The message lists
            every location tried and why it was rejected.
    """
    environ = os.environ if environ is None else environ
    factory = client_factory or (lambda url, timeout: _open_client(url, timeout, environ))

    docker_host = environ.get("DOCKER_HOST")
    if docker_host:
        logger.info(f"Using DOCKER_HOST from environment: {docker_host}")
        try:
            _probe(factory, None, probe_timeout)
        except (DockerException, OSError) as e:
            raise InfrastructureError(f"Failed to reach Docker at DOCKER_HOST={docker_host}: {e}") from e
        return factory(None, OPERATION_TIMEOUT), docker_host

    tried: list[str] = []
    for socket_path in candidates if candidates is not None else candidate_sockets():
        if not socket_path.exists():
            tried.append(f"{socket_path} (missing)")
            continue
        base_url = f"unix://{socket_path}"
        try:
            _probe(factory, base_url, probe_timeout)
        except (DockerException, OSError) as e:
            logger.debug(f"Socket {socket_path} exists but ping failed: {e}")
            tried.append(f"{socket_path} (ping failed: {e})")
            continue
        logger.info(f"Found working Docker socket: {socket_path}")
        return factory(base_url, OPERATION_TIMEOUT), base_url

    raise InfrastructureError(
        "No working Docker endpoint found. Make sure Docker, Colima, Lima, Podman "
        "or Rancher Desktop is running, or set DOCKER_HOST. Tried: " + "; ".join(tried)
    )
