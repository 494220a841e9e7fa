"""Tests for result types, errors and configuration."""

from __future__ import annotations

from pathlib import Path

import pytest

from safescript import (
    BuildSpec,
    ConfigurationError,
    EngineConfig,
    ErrorKind,
    ExecutionError,
    ExecutionResult,
    ScanResult,
)


class TestExecutionResult:
    def test_success(self) -> None:
        result = ExecutionResult(stdout="ok", stderr="", exit_code=0)
        assert result.success
        result.raise_for_status()

    def test_raise_for_status_carries_kind(self) -> None:
        result = ExecutionResult(
            stdout="",
            stderr="",
            exit_code=124,
            error="execution timeout",
            error_kind=ErrorKind.EXECUTION_TIMEOUT,
        )
        assert result.timed_out
        with pytest.raises(ExecutionError) as exc_info:
            result.raise_for_status()
        assert exc_info.value.kind is ErrorKind.EXECUTION_TIMEOUT
        assert exc_info.value.result is result

    def test_not_ready_is_not_success(self) -> None:
        """A zero exit code with an error kind is still a failure."""
        result = ExecutionResult(
            stdout="", stderr="", exit_code=0, error_kind=ErrorKind.IMAGE_NOT_READY
        )
        assert not result.success


class TestScanResult:
    def test_unavailable(self) -> None:
        assert ScanResult(clean=False, error="clamd down").unavailable
        assert not ScanResult(clean=True).unavailable


class TestEngineConfig:
    def test_defaults(self) -> None:
        config = EngineConfig()
        assert config.max_workers == 5
        assert config.acquire_timeout == 30.0
        assert config.execution_timeout == 60.0
        assert config.memory_limit == "512m"
        assert config.cpu_quota == 100_000
        assert not config.network_enabled

    @pytest.mark.parametrize(
        "overrides",
        [
            {"max_workers": 0},
            {"execution_timeout": 0},
            {"cpus": -1},
            {"memory_mb": 1},
            {"image": ""},
            {"interpreter": ()},
            {"artifact_ttl": 0},
        ],
    )
    def test_invalid_values(self, overrides: dict[str, object]) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            EngineConfig(**overrides)
        assert exc_info.value.kind is ErrorKind.CONFIGURATION_ERROR

    def test_build_context_defaults_to_dockerfile_dir(self) -> None:
        spec = BuildSpec(dockerfile=Path("/srv/images/Dockerfile"))
        assert spec.context_dir == Path("/srv/images")
