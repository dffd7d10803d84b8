from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .errors import (
    BuildError,
    CircularDependencyError,
    InvalidParameterError,
    MissingConfigurationError,
    RetryHandler,
)
from .graph import concurrency_layers, detect_cycles
from .models import (
    BuildNode,
    BuildResult,
    BuildSequence,
    BuildStep,
    ChatMessage,
    ExecutionState,
    GlobalKey,
    TaskStatus,
    project_size_for_model,
)
from .monitor import BuildMonitor
from .registry import HandlerRegistry, get_handler_registry
from .settings import RuntimeSettings

if TYPE_CHECKING:
    from .handlers.base import BuildHandler
    from .llm import GenerationService
    from .verifier import Verifier

logger = logging.getLogger(__name__)

ARTIFACT_STEP_ID = "artifacts"


def new_run_id() -> str:
    return f"{datetime.now(UTC).strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4()}"


def resolve_steps(sequence: BuildSequence) -> list[BuildStep]:
    """Return the stages to execute. The flat form becomes one parallel stage per layer."""
    if not sequence.is_flat:
        return list(sequence.steps)
    nodes = {node.id: node for node in sequence.nodes}
    layers = concurrency_layers({node.id: node.requires for node in sequence.nodes})
    return [
        BuildStep(
            id=f"layer-{index}",
            name=f"Concurrency layer {index}",
            nodes=tuple(nodes[node_id] for node_id in layer if node_id in nodes),
            parallel=True,
        )
        for index, layer in enumerate(layers)
    ]


def validate_sequence(sequence: BuildSequence) -> None:
    """Reject duplicate ids, unknown prerequisites and prerequisite cycles."""
    seen: set[str] = set()
    for node in sequence.iter_nodes():
        if node.id in seen:
            raise InvalidParameterError(f"Duplicate task id in sequence {sequence.id}: {node.id}")
        seen.add(node.id)
    for node in sequence.iter_nodes():
        unknown = [dep for dep in node.requires if dep not in seen]
        if unknown:
            raise InvalidParameterError(f"Task {node.id} requires unknown tasks: {', '.join(unknown)}")
    try:
        detect_cycles({node.id: node.requires for node in sequence.iter_nodes()})
    except CircularDependencyError:
        logger.error("Sequence %s has circular task prerequisites", sequence.id)
        raise


class ExecutionContext:
    """Per-run state: task states, stored results, global values and collaborators.

    Handlers only see upstream outputs through this object. Every state
    transition notifies waiters of ``wait_for_state_change``.
    """

    def __init__(
        self,
        sequence: BuildSequence,
        *,
        registry: HandlerRegistry | None = None,
        generation: "GenerationService | None" = None,
        verifier: "Verifier | None" = None,
        backend_verifier: "Verifier | None" = None,
        monitor: BuildMonitor | None = None,
        settings: RuntimeSettings | None = None,
        run_id: str | None = None,
        project_name: str | None = None,
        description: str | None = None,
    ) -> None:
        validate_sequence(sequence)
        self.sequence = sequence
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.registry = registry if registry is not None else get_handler_registry()
        self.generation = generation
        self.verifier = verifier
        self.backend_verifier = backend_verifier
        self.monitor = monitor if monitor is not None else BuildMonitor()
        self.run_id = run_id or new_run_id()
        self.state = ExecutionState()
        self.steps = resolve_steps(sequence)
        self.execution_order: list[str] = []

        self._nodes: dict[str, BuildNode] = {}
        self._step_of: dict[str, str] = {}
        for step in self.steps:
            for node in step.nodes:
                self._nodes[node.id] = node
                self._step_of[node.id] = step.id

        self._results: dict[str, BuildResult[Any]] = {}
        self._global: dict[str, Any] = {}
        self._retry = RetryHandler(
            max_retries=self.settings.handler_max_retries,
            backoff_seconds=self.settings.retry_backoff_seconds,
        )
        self._state_changed: asyncio.Condition | None = None
        self._condition_loop: asyncio.AbstractEventLoop | None = None

        model = sequence.model or self.settings.model_default
        self._global.update(
            {
                GlobalKey.PROJECT_NAME.value: project_name or sequence.name or sequence.id,
                GlobalKey.DESCRIPTION.value: description or sequence.description,
                GlobalKey.PLATFORM.value: "web",
                GlobalKey.DATABASE_TYPE.value: sequence.database_type or self.settings.database_type,
                GlobalKey.MODEL.value: model,
                GlobalKey.PROJECT_SIZE.value: project_size_for_model(model),
                GlobalKey.OUTPUT_ROOT.value: self.settings.output_root,
            }
        )

    # -- global context --

    def set_global(self, key: GlobalKey | str, value: Any) -> None:
        self._global[key.value if isinstance(key, GlobalKey) else key] = value

    def get_global(self, key: GlobalKey | str, default: Any = None) -> Any:
        name = key.value if isinstance(key, GlobalKey) else key
        return self._global.get(name, default)

    @property
    def default_model(self) -> str:
        return str(self.get_global(GlobalKey.MODEL, self.settings.model_default))

    @property
    def project_path(self) -> Path:
        value = self.get_global(GlobalKey.PROJECT_PATH)
        if not value:
            raise MissingConfigurationError("Project path is not initialised; run the project setup task first")
        return Path(value)

    # -- task lookup --

    def node(self, task_id: str) -> BuildNode | None:
        return self._nodes.get(task_id)

    def step_for(self, task_id: str) -> str:
        return self._step_of.get(task_id, ARTIFACT_STEP_ID)

    def status_of(self, task_id: str) -> TaskStatus:
        return self.state.status_of(task_id)

    def can_execute(self, task_id: str) -> bool:
        node = self._nodes.get(task_id)
        if node is None:
            return False
        if task_id in self.state.completed or task_id in self.state.pending:
            return False
        return all(dep in self.state.completed for dep in node.requires)

    # -- results --

    def get_result(self, task_id: str) -> BuildResult[Any] | None:
        """Return the stored result of a completed task, or ``None`` when it has not completed."""
        if task_id not in self.state.completed:
            return None
        return self._results.get(task_id)

    def get_node_data(self, task_id: str) -> Any:
        result = self.get_result(task_id)
        return None if result is None else result.data

    def require_node_data(self, task_id: str) -> Any:
        result = self.get_result(task_id)
        if result is None or result.data is None:
            raise MissingConfigurationError(f"Required output of task {task_id} is not available")
        return result.data

    def get_result_by_handler(self, handler_type: type["BuildHandler[Any]"]) -> BuildResult[Any] | None:
        handler_id = getattr(handler_type, "id", None)
        for task_id, node in self._nodes.items():
            if node.handler_id == handler_id:
                result = self.get_result(task_id)
                if result is not None:
                    return result
        return None

    def dependency_results(self, task_id: str) -> dict[str, BuildResult[Any]]:
        node = self._nodes.get(task_id)
        if node is None:
            return {}
        return {dep: result for dep in node.requires if (result := self.get_result(dep)) is not None}

    # -- notification --

    def _condition(self) -> asyncio.Condition:
        loop = asyncio.get_running_loop()
        if self._state_changed is None or self._condition_loop is not loop:
            self._state_changed = asyncio.Condition()
            self._condition_loop = loop
        return self._state_changed

    async def _transition(self, task_id: str, status: TaskStatus) -> None:
        self.state.move(task_id, status)
        condition = self._condition()
        async with condition:
            condition.notify_all()

    async def wait_for_state_change(self, timeout: float) -> bool:
        """Block until any task changes state or ``timeout`` seconds pass. Returns False on timeout."""
        condition = self._condition()
        async with condition:
            try:
                await asyncio.wait_for(condition.wait(), timeout=timeout)
            except TimeoutError:
                return False
        return True

    async def mark_waiting(self, task_id: str) -> None:
        if self.state.status_of(task_id) is TaskStatus.UNSTARTED:
            await self._transition(task_id, TaskStatus.WAITING)

    # -- execution --

    def _resolve_handler(self, node: BuildNode) -> "BuildHandler[Any]":
        handler = self.registry.get(node.handler_id)
        if handler is None:
            raise MissingConfigurationError(f"No handler registered for task {node.id} ({node.handler_id})")
        return handler

    async def _invoke(
        self,
        handler: "BuildHandler[Any]",
        node: BuildNode,
        dependencies: Mapping[str, BuildResult[Any]],
    ) -> BuildResult[Any]:
        result = await handler.run(self, node, dependencies)
        if not isinstance(result, BuildResult):
            raise InvalidParameterError(
                f"Handler {node.handler_id} returned {type(result).__name__}, expected BuildResult"
            )
        if not result.success:
            if isinstance(result.error, Exception):
                raise result.error
            raise InvalidParameterError(f"Handler {node.handler_id} reported failure without an error")
        return result

    async def run(
        self,
        task_id: str,
        dependencies: Mapping[str, BuildResult[Any]] | None = None,
    ) -> BuildResult[Any]:
        """Execute one task through its handler.

        Raises:
            InvalidParameterError: If the task is unknown or not ready.
            Exception: Whatever the handler raised, after the task is marked failed.
        """
        if not self.can_execute(task_id):
            raise InvalidParameterError(
                f"Task {task_id} cannot execute (status={self.status_of(task_id).value})"
            )
        node = self._nodes[task_id]
        step_id = self._step_of[task_id]
        await self._transition(task_id, TaskStatus.PENDING)
        self.monitor.start_node_execution(task_id, self.sequence.id, step_id)
        logger.info("Executing task %s", task_id)

        def _on_retry(attempt: int, exc: BaseException) -> None:
            self.monitor.increment_node_retry(task_id, self.sequence.id, step_id)

        try:
            handler = self._resolve_handler(node)
            upstream = dependencies if dependencies is not None else self.dependency_results(task_id)
            result = await self._retry.run(
                lambda: self._invoke(handler, node, upstream),
                label=task_id,
                on_retry=_on_retry,
            )
        except Exception as exc:
            self._results[task_id] = BuildResult.fail(exc)
            await self._transition(task_id, TaskStatus.FAILED)
            self.monitor.end_node_execution(task_id, self.sequence.id, step_id, success=False, error=exc)
            kind = exc.kind.value if isinstance(exc, BuildError) else type(exc).__name__
            logger.error("Task %s failed (%s): %s", task_id, kind, exc)
            raise

        self._results[task_id] = result
        self.execution_order.append(task_id)
        await self._transition(task_id, TaskStatus.COMPLETED)
        self.monitor.end_node_execution(task_id, self.sequence.id, step_id, success=True)
        logger.info("Task %s completed", task_id)
        return result

    # -- generation --

    async def chat(
        self,
        messages: Sequence[ChatMessage],
        *,
        task_id: str,
        label: str,
        model: str | None = None,
    ) -> str:
        """Call the generation service and record the call against ``task_id``."""
        if self.generation is None:
            raise MissingConfigurationError("No generation service configured for this run")
        model_name = model or self.default_model
        started = time.perf_counter()
        output = await self.generation.chat(messages, model=model_name)
        duration_ms = (time.perf_counter() - started) * 1000.0
        self.monitor.record_model_call(
            task_id,
            self.sequence.id,
            self.step_for(task_id),
            label=label,
            model=model_name,
            duration_ms=duration_ms,
            input_text="\n".join(message["content"] for message in messages),
            output_text=output,
        )
        self.write_log(f"{task_id}-{label}.md", output)
        return output

    def write_log(self, file_name: str, content: str) -> Path | None:
        """Dump a debug artifact under the configured log directory, if any."""
        log_root = self.settings.log_dir_path
        if log_root is None:
            return None
        safe_name = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in file_name)
        target = log_root / self.run_id / safe_name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        logger.debug("Wrote debug log %s", target)
        return target
