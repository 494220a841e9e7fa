"""
safescript: run untrusted scripts in resource-bounded Docker sandboxes.
"""

from safescript._types import (
    AdmissionStats,
    ExecutionError,
    ExecutionInfo,
    ExecutionRequest,
    ExecutionResult,
    ImageState,
    ImageStatus,
    MalwareScanner,
    Mount,
    ScanResult,
    UploadResolver,
)
from safescript.admission import AdmissionController, AdmissionSlot
from safescript.api import ScriptEngine, create_engine
from safescript.artifacts import ArtifactStore, generate_execution_id
from safescript.config import BuildSpec, EngineConfig
from safescript.errors import (
    AdmissionExhausted,
    ArtifactNotFound,
    ConfigurationError,
    ErrorKind,
    ImageBuildFailed,
    ImageNotReady,
    InfrastructureError,
    InputValidationFailed,
    SafeScriptError,
    StorageError,
)
from safescript.sandbox import DockerSandbox, Sandbox, build_file_mapping
from safescript.ttl import PeriodicSweeper

__version__ = "0.1.0"

__all__ = [
    # Main API
    "ScriptEngine",
    "create_engine",
    "EngineConfig",
    "BuildSpec",
    # Components
    "AdmissionController",
    "AdmissionSlot",
    "ArtifactStore",
    "DockerSandbox",
    "Sandbox",
    "PeriodicSweeper",
    "build_file_mapping",
    "generate_execution_id",
    # Types
    "AdmissionStats",
    "ExecutionInfo",
    "ExecutionRequest",
    "ExecutionResult",
    "ImageState",
    "ImageStatus",
    "Mount",
    "ScanResult",
    "UploadResolver",
    "MalwareScanner",
    # Errors
    "ErrorKind",
    "SafeScriptError",
    "AdmissionExhausted",
    "ArtifactNotFound",
    "ConfigurationError",
    "ExecutionError",
    "ImageBuildFailed",
    "ImageNotReady",
    "InfrastructureError",
    "InputValidationFailed",
    "StorageError",
]
