"""
Abstract base class for sandbox runtimes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

    from safescript._types import ExecutionRequest, ExecutionResult, ImageStatus


class Sandbox(ABC):
    """
    Abstract base for sandbox runtimes.

    A runtime keeps one execution image ready and runs each request in a
    fresh, isolated environment that is torn down afterwards.
    """

    @property
    @abstractmethod
    def image_status(self) -> ImageStatus:
        """Current readiness of the execution image."""
        ...

    @abstractmethod
    async def ensure_image_async(self) -> ImageStatus:
        """Begin preparing the execution image without waiting for it."""
        ...

    @abstractmethod
    async def execute(
        self, request: ExecutionRequest, *, output_dir: Path | None = None
    ) -> ExecutionResult:
        """
        Run one script and return its result.

        Args:
            request: Script, input files and optional timeout.
            output_dir: Host directory mounted as the script's output
                directory. A throwaway one is used if omitted.

        Returns:
            ExecutionResult. Script failures, timeouts, invalid inputs and an
            unready image are all reported here rather than raised.

        Raises:
            InfrastructureError: If the container runtime failed.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """
        Release runtime resources.

        Idempotent - safe to call multiple times.
        """
        ...

    async def __aenter__(self) -> Sandbox:
        """Enter async context manager."""
        return self

    async def __aexit__(self, *args: object) -> None:
        """Exit async context manager, cleaning up resources."""
        await self.close()
