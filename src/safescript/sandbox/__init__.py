"""
Sandbox runtimes.
"""

from safescript.sandbox._base import Sandbox
from safescript.sandbox.discovery import candidate_sockets, discover_docker
from safescript.sandbox.docker import DockerSandbox, StopReason
from safescript.sandbox.image import ImageManager
from safescript.sandbox.workspace import (
    Workspace,
    build_file_mapping,
    container_path,
    validate_input_paths,
)

__all__ = [
    "Sandbox",
    "DockerSandbox",
    "StopReason",
    "ImageManager",
    "Workspace",
    "build_file_mapping",
    "candidate_sockets",
    "container_path",
    "discover_docker",
    "validate_input_paths",
]
