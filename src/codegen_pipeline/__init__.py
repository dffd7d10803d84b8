from importlib.metadata import PackageNotFoundError, version

from .context import ExecutionContext, resolve_steps, validate_sequence
from .errors import (
    ArtifactAbandonedError,
    ArtifactNotFoundError,
    BuildError,
    CircularDependencyError,
    ErrorKind,
    FileModificationError,
    FileWriteError,
    GenerationTimeoutError,
    InvalidParameterError,
    ManifestValidationError,
    MissingConfigurationError,
    ModelUnavailableError,
    NonRetryableError,
    PathSafetyError,
    RateLimitExceededError,
    ResponseParsingError,
    ResponseTagError,
    RetryableError,
    RetryHandler,
    TemporaryServiceUnavailableError,
    UnresolvedDependencyError,
    classify,
    is_retryable,
)
from .executor import BuildSequenceExecutor, run_sequence
from .fix_loop import ArtifactFixLoop, CodeTaskQueue, FixLoopResult
from .graph import (
    DependencyGraph,
    GenerationPlan,
    build_dependency_graph,
    concurrency_layers,
    detect_cycles,
    materialize_files,
    plan_generation,
    resolve_dependency,
    topological_order,
)
from .handlers import BuildHandler
from .manifest import VirtualDirectory, is_framework_path
from .models import (
    ArtifactStatus,
    BuildNode,
    BuildResult,
    BuildSequence,
    BuildStep,
    ExecutionState,
    ExecutionSummary,
    FileTask,
    GlobalKey,
    TaskStatus,
    VerificationResult,
)
from .monitor import BuildMonitor
from .pipelines import default_sequence
from .registry import HandlerRegistry, get_handler_registry, reset_handler_registry
from .settings import RuntimeSettings
from .verifier import CommandVerifier, SqliteSchemaVerifier


def get_version() -> str:
    try:
        return version("codegen-pipeline")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "ArtifactAbandonedError",
    "ArtifactFixLoop",
    "ArtifactNotFoundError",
    "ArtifactStatus",
    "BuildError",
    "BuildHandler",
    "BuildMonitor",
    "BuildNode",
    "BuildResult",
    "BuildSequence",
    "BuildSequenceExecutor",
    "BuildStep",
    "CircularDependencyError",
    "CodeTaskQueue",
    "CommandVerifier",
    "DependencyGraph",
    "ErrorKind",
    "ExecutionContext",
    "ExecutionState",
    "ExecutionSummary",
    "FileModificationError",
    "FileTask",
    "FileWriteError",
    "FixLoopResult",
    "GenerationPlan",
    "GenerationTimeoutError",
    "GlobalKey",
    "HandlerRegistry",
    "InvalidParameterError",
    "ManifestValidationError",
    "MissingConfigurationError",
    "ModelUnavailableError",
    "NonRetryableError",
    "PathSafetyError",
    "RateLimitExceededError",
    "ResponseParsingError",
    "ResponseTagError",
    "RetryHandler",
    "RetryableError",
    "RuntimeSettings",
    "SqliteSchemaVerifier",
    "TaskStatus",
    "TemporaryServiceUnavailableError",
    "UnresolvedDependencyError",
    "VerificationResult",
    "VirtualDirectory",
    "build_dependency_graph",
    "classify",
    "concurrency_layers",
    "default_sequence",
    "detect_cycles",
    "get_handler_registry",
    "get_version",
    "is_framework_path",
    "is_retryable",
    "materialize_files",
    "plan_generation",
    "reset_handler_registry",
    "resolve_dependency",
    "resolve_steps",
    "run_sequence",
    "topological_order",
    "validate_sequence",
]
