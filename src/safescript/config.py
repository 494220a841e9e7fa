"""
Engine configuration.

The configuration is assembled by the embedding application and handed to
the engine as an immutable value. Nothing here reads the environment.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from safescript.errors import ConfigurationError

DEFAULT_IMAGE = "safescript-runner:latest"


@dataclass(frozen=True)
class BuildSpec:
    """Where to build the execution image from when it cannot be pulled."""

    dockerfile: Path
    context: Path | None = None

    @property
    def context_dir(self) -> Path:
        return self.context if self.context is not None else self.dockerfile.parent


@dataclass(frozen=True)
class EngineConfig:
    """
    Immutable configuration for a ScriptEngine.

    Attributes:
        max_workers: Number of executions allowed to run at once.
        acquire_timeout: Seconds to wait for a free execution slot.
        execution_timeout: Default seconds a script may run.
        memory_mb: Memory ceiling per container.
        cpus: CPU ceiling per container, in cores.
        network_enabled: Give containers network access.
        image: Execution image reference.
        build: How to build the image if it cannot be pulled.
        build_local: Skip the registry and always build.
        interpreter: Entrypoint used to run the staged script.
        workspace_root: Where ephemeral workspaces are staged. Must be a
            path the container runtime can bind-mount.
        input_root: If set, every input file must resolve inside it.
        max_output_bytes: Per-stream output budget before truncation.
        output_dir: Root of the artifact store. None disables persistence.
        artifact_ttl: Seconds an artifact directory is kept.
        sweep_interval: Seconds between artifact sweeps.
        probe_timeout: Seconds to wait for a Docker endpoint to answer.
    """

    max_workers: int = 5
    acquire_timeout: float = 30.0
    execution_timeout: float = 60.0
    memory_mb: int = 512
    cpus: float = 1.0
    network_enabled: bool = False
    image: str = DEFAULT_IMAGE
    build: BuildSpec | None = None
    build_local: bool = False
    interpreter: tuple[str, ...] = ("python3",)
    workspace_root: Path | None = None
    input_root: Path | None = None
    max_output_bytes: int = 1_000_000
    output_dir: Path | None = None
    artifact_ttl: float = 3600.0
    sweep_interval: float = 300.0
    probe_timeout: float = 5.0
    labels: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")
        for name in (
            "acquire_timeout",
            "execution_timeout",
            "cpus",
            "artifact_ttl",
            "sweep_interval",
            "probe_timeout",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.memory_mb < 6:
            # Docker refuses memory limits below 6MB.
            raise ConfigurationError("memory_mb must be at least 6")
        if self.max_output_bytes < 1:
            raise ConfigurationError("max_output_bytes must be positive")
        if not self.image:
            raise ConfigurationError("image must not be empty")
        if not self.interpreter:
            raise ConfigurationError("interpreter must not be empty")
        if self.build_local and self.build is None:
            raise ConfigurationError("build_local requires a BuildSpec")

    @property
    def cpu_quota(self) -> int:
        """CPU ceiling as microseconds per scheduling period."""
        return int(self.cpus * CPU_PERIOD)

    @property
    def memory_limit(self) -> str:
        return f"{self.memory_mb}m"


# Docker CFS scheduling period, in microseconds.
CPU_PERIOD = 100_000
