from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Generic, Literal, TypedDict, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from .errors import BuildError, InvalidParameterError

T = TypeVar("T")


class TaskStatus(str, Enum):
    UNSTARTED = "unstarted"
    WAITING = "waiting"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ArtifactStatus(str, Enum):
    QUEUED = "queued"
    WRITTEN = "written"
    VERIFIED = "verified"
    NEEDS_FIX = "needs_fix"
    ABANDONED = "abandoned"


class GlobalKey(str, Enum):
    PROJECT_NAME = "projectName"
    DESCRIPTION = "description"
    PLATFORM = "platform"
    DATABASE_TYPE = "databaseType"
    PROJECT_SIZE = "projectSize"
    MODEL = "model"
    OUTPUT_ROOT = "outputRoot"
    PROJECT_UUID = "projectUUID"
    PROJECT_PATH = "projectPath"
    FRONTEND_PATH = "frontendPath"
    BACKEND_PATH = "backendPath"


_MODEL_PROJECT_SIZES = {
    "gpt-4o-mini": "small",
    "gpt-4o": "medium",
    "o3-mini-high": "medium",
}


def project_size_for_model(model: str) -> str:
    return _MODEL_PROJECT_SIZES.get(model, "small")


class ChatMessage(TypedDict):
    role: Literal["system", "user", "assistant"]
    content: str


@dataclass(frozen=True)
class BuildNode:
    """A single unit of pipeline work.

    ``handler`` is only used by the flat pipeline form. It may be a handler id or
    a handler class exposing an ``id`` attribute. When omitted the node id is the
    handler id.
    """

    id: str
    name: str = ""
    description: str = ""
    requires: tuple[str, ...] = ()
    handler: str | type | None = None
    config: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.id or not self.id.strip():
            raise InvalidParameterError("BuildNode id must be non-empty")
        object.__setattr__(self, "requires", tuple(self.requires))
        if self.id in self.requires:
            raise InvalidParameterError(f"BuildNode {self.id} cannot require itself")

    @property
    def handler_id(self) -> str:
        if self.handler is None:
            return self.id
        if isinstance(self.handler, str):
            return self.handler
        handler_id = getattr(self.handler, "id", None)
        if not isinstance(handler_id, str) or not handler_id:
            raise InvalidParameterError(f"Handler reference for {self.id} does not expose an id")
        return handler_id

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "BuildNode":
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", "")),
            description=str(payload.get("description", "")),
            requires=tuple(payload.get("requires", ())),
            handler=payload.get("handler"),
            config=dict(payload.get("config", {})),
        )


@dataclass(frozen=True)
class BuildStep:
    id: str
    nodes: tuple[BuildNode, ...]
    name: str = ""
    description: str = ""
    parallel: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", tuple(self.nodes))

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "BuildStep":
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", "")),
            description=str(payload.get("description", "")),
            parallel=bool(payload.get("parallel", False)),
            nodes=tuple(BuildNode.from_dict(node) for node in payload.get("nodes", ())),
        )


@dataclass(frozen=True)
class BuildSequence:
    """Pipeline definition in staged form (``steps``) or flat form (``nodes``)."""

    id: str
    version: str = "1.0"
    name: str = ""
    description: str = ""
    steps: tuple[BuildStep, ...] = ()
    nodes: tuple[BuildNode, ...] = ()
    database_type: str | None = None
    model: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "nodes", tuple(self.nodes))
        if self.steps and self.nodes:
            raise InvalidParameterError(f"BuildSequence {self.id} must use either steps or flat nodes, not both")

    @property
    def is_flat(self) -> bool:
        return not self.steps

    def iter_nodes(self) -> Iterator[BuildNode]:
        if self.is_flat:
            yield from self.nodes
            return
        for step in self.steps:
            yield from step.nodes

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "BuildSequence":
        return cls(
            id=str(payload["id"]),
            version=str(payload.get("version", "1.0")),
            name=str(payload.get("name", "")),
            description=str(payload.get("description", "")),
            steps=tuple(BuildStep.from_dict(step) for step in payload.get("steps", ())),
            nodes=tuple(BuildNode.from_dict(node) for node in payload.get("nodes", ())),
            database_type=payload.get("databaseType", payload.get("database_type")),
            model=payload.get("model"),
        )


@dataclass
class BuildResult(Generic[T]):
    success: bool
    data: T | None = None
    error: BuildError | Exception | None = None

    @classmethod
    def ok(cls, data: T | None = None) -> "BuildResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: BuildError | Exception) -> "BuildResult[T]":
        return cls(success=False, error=error)


@dataclass(slots=True)
class ExecutionState:
    """Disjoint task-id sets owned by a single execution context."""

    completed: set[str] = field(default_factory=set)
    pending: set[str] = field(default_factory=set)
    failed: set[str] = field(default_factory=set)
    waiting: set[str] = field(default_factory=set)

    def status_of(self, task_id: str) -> TaskStatus:
        if task_id in self.completed:
            return TaskStatus.COMPLETED
        if task_id in self.pending:
            return TaskStatus.PENDING
        if task_id in self.failed:
            return TaskStatus.FAILED
        if task_id in self.waiting:
            return TaskStatus.WAITING
        return TaskStatus.UNSTARTED

    def move(self, task_id: str, status: TaskStatus) -> None:
        for bucket in (self.completed, self.pending, self.failed, self.waiting):
            bucket.discard(task_id)
        if status is TaskStatus.COMPLETED:
            self.completed.add(task_id)
        elif status is TaskStatus.PENDING:
            self.pending.add(task_id)
        elif status is TaskStatus.FAILED:
            self.failed.add(task_id)
        elif status is TaskStatus.WAITING:
            self.waiting.add(task_id)


@dataclass(slots=True)
class FileTask:
    path: str
    content: str
    dependency_paths: list[str] = field(default_factory=list)
    task_id: str | None = None


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    error: str | None = None


@dataclass(frozen=True)
class ExecutionSummary:
    sequence_id: str
    success: bool
    completed: list[str]
    failed: list[str]
    not_run: list[str]
    execution_order: list[str]
    aborted_step: str | None = None


# -- Wire payloads produced by the generation service --


class ManifestPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    paths: list[str] = Field(alias="Paths")


class FileDependencies(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")


class DependencyGraphPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    files: dict[str, FileDependencies]


class FileReviewPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    files: list[str] = Field(default_factory=list)


class WriteOperation(BaseModel):
    type: Literal["WRITE"]
    content: str


class RenameOperation(BaseModel):
    type: Literal["RENAME"]
    path: str
    original_path: str | None = None


class ReadOperation(BaseModel):
    type: Literal["READ"]
    paths: list[str] = Field(min_length=1)


FixOperation = Annotated[WriteOperation | RenameOperation | ReadOperation, Field(discriminator="type")]


class FixDirective(BaseModel):
    operation: FixOperation


class FixResponse(BaseModel):
    fix: FixDirective
