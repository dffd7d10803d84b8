from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypedDict

from langgraph.graph import END, START, StateGraph

from .errors import (
    ArtifactAbandonedError,
    ArtifactNotFoundError,
    BuildError,
    MissingConfigurationError,
    PathSafetyError,
)
from .file_ops import FileOperation, FileOperationManager, FixResponseParser
from .llm import GenerationService
from .models import ArtifactStatus, ChatMessage, FileTask, ReadOperation, RenameOperation, WriteOperation
from .monitor import BuildMonitor
from .verifier import Verifier

if TYPE_CHECKING:
    from .context import ExecutionContext

logger = logging.getLogger(__name__)

FIX_SYSTEM_PROMPT = """You repair a single source file that failed the project build.
Reply with exactly one operation inside <GENERATE></GENERATE> tags, as JSON:
{"fix": {"operation": {"type": "WRITE", "content": "<full corrected file>"}}}
{"fix": {"operation": {"type": "RENAME", "original_path": "<current path>", "path": "<new path>"}}}
{"fix": {"operation": {"type": "READ", "paths": ["<dependency path>", ...]}}}
Use RENAME only when the file extension does not match its content (for example JSX in a .ts file).
Use READ only for the listed dependency files, and only when their content is needed to fix the error.
Never touch package.json, lock files, node_modules or environment files."""


class FixLoopState(TypedDict, total=False):
    artifact_id: str
    path: str
    content: str
    dependency_paths: list[str]
    status: str
    retry_count: int
    max_retries: int
    context_reads: int
    last_error: str | None
    operation: FileOperation | None
    context_messages: list[ChatMessage]


@dataclass
class FixLoopResult:
    artifact_id: str
    path: str
    status: ArtifactStatus
    retry_count: int
    content: str
    last_error: str | None = None

    @property
    def verified(self) -> bool:
        return self.status is ArtifactStatus.VERIFIED


class CodeTaskQueue:
    """FIFO of generated files waiting for the fix loop."""

    def __init__(self, tasks: Iterable[FileTask] = ()) -> None:
        self._tasks: deque[FileTask] = deque(tasks)

    def enqueue(self, task: FileTask) -> None:
        self._tasks.append(task)

    def dequeue(self) -> FileTask | None:
        return self._tasks.popleft() if self._tasks else None

    def drain(self) -> list[FileTask]:
        drained = list(self._tasks)
        self._tasks.clear()
        return drained

    def __len__(self) -> int:
        return len(self._tasks)


class ArtifactFixLoop:
    """Write -> verify -> repair graph for generated files.

    Each applied repair consumes one retry. READ requests loop back to the
    generation service within the same attempt until ``max_context_reads`` is
    reached.
    """

    def __init__(
        self,
        *,
        project_root: Path,
        generation: GenerationService,
        verifier: Verifier,
        monitor: BuildMonitor | None = None,
        sequence_id: str = "adhoc",
        step_id: str = "artifacts",
        model: str = "gpt-4o",
        max_fix_attempts: int = 3,
        max_context_reads: int = 2,
        fail_fast: bool = False,
        parser: FixResponseParser | None = None,
    ) -> None:
        if max_fix_attempts < 0:
            raise ValueError("max_fix_attempts must be >= 0")
        if max_context_reads < 0:
            raise ValueError("max_context_reads must be >= 0")
        self.project_root = project_root.resolve()
        self.generation = generation
        self.verifier = verifier
        self.monitor = monitor if monitor is not None else BuildMonitor()
        self.sequence_id = sequence_id
        self.step_id = step_id
        self.model = model
        self.max_fix_attempts = max_fix_attempts
        self.max_context_reads = max_context_reads
        self.fail_fast = fail_fast
        self.parser = parser if parser is not None else FixResponseParser()
        self.file_ops = FileOperationManager(self.project_root)
        self.graph = self._build_graph().compile()

    @classmethod
    def from_context(
        cls,
        context: "ExecutionContext",
        *,
        task_id: str,
        project_root: Path | None = None,
        verifier: Verifier | None = None,
    ) -> "ArtifactFixLoop":
        verifier = verifier if verifier is not None else context.verifier
        if context.generation is None or verifier is None:
            raise MissingConfigurationError("The fix loop needs both a generation service and a verifier")
        settings = context.settings
        return cls(
            project_root=project_root if project_root is not None else context.project_path,
            generation=context.generation,
            verifier=verifier,
            monitor=context.monitor,
            sequence_id=context.sequence.id,
            step_id=f"{task_id}:artifacts",
            model=settings.model_fix,
            max_fix_attempts=settings.max_fix_attempts,
            max_context_reads=settings.max_context_reads,
            fail_fast=settings.fail_fast,
        )

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(FixLoopState)
        graph.add_node("write", self._write)
        graph.add_node("verify", self._verify)
        graph.add_node("request_fix", self._request_fix)
        graph.add_node("read_context", self._read_context)
        graph.add_node("apply", self._apply)
        graph.add_node("abandon", self._abandon)

        graph.add_edge(START, "write")
        graph.add_edge("write", "verify")
        graph.add_conditional_edges(
            "verify",
            self._route_after_verify,
            {"done": END, "request_fix": "request_fix", "abandon": "abandon"},
        )
        graph.add_conditional_edges(
            "request_fix",
            self._route_after_request,
            {"read_context": "read_context", "apply": "apply"},
        )
        graph.add_edge("read_context", "request_fix")
        graph.add_edge("apply", "write")
        graph.add_edge("abandon", END)
        return graph

    def _recursion_limit(self) -> int:
        per_attempt = 4 + 2 * self.max_context_reads
        return (self.max_fix_attempts + 1) * per_attempt + 10

    # -- nodes --

    async def _write(self, state: FixLoopState) -> dict[str, Any]:
        self.file_ops.write(state["path"], state["content"])
        return {"status": ArtifactStatus.WRITTEN.value}

    async def _verify(self, state: FixLoopState) -> dict[str, Any]:
        result = await self.verifier.verify(self.project_root)
        if result.success:
            logger.info("Artifact %s verified after %d fixes", state["path"], state["retry_count"])
            return {"status": ArtifactStatus.VERIFIED.value, "last_error": None}
        logger.info("Artifact %s failed verification (fixes used %d)", state["path"], state["retry_count"])
        return {"status": ArtifactStatus.NEEDS_FIX.value, "last_error": result.error or "Verification failed"}

    def _route_after_verify(self, state: FixLoopState) -> str:
        if state["status"] == ArtifactStatus.VERIFIED.value:
            return "done"
        if state["retry_count"] < state["max_retries"]:
            return "request_fix"
        return "abandon"

    def _fix_messages(self, state: FixLoopState) -> list[ChatMessage]:
        dependencies = "\n".join(state.get("dependency_paths", [])) or "(none)"
        messages: list[ChatMessage] = [
            {"role": "system", "content": FIX_SYSTEM_PROMPT},
            {"role": "user", "content": f"Current file path: {state['path']}"},
            {"role": "user", "content": f"Build error:\n{state.get('last_error') or ''}"},
            {"role": "user", "content": f"Dependency file paths:\n{dependencies}"},
            {"role": "user", "content": f"Current file content:\n{state['content']}"},
        ]
        messages.extend(state.get("context_messages", []))
        messages.append(
            {
                "role": "assistant",
                "content": "I will check the error against the file and its dependencies before choosing one operation.",
            }
        )
        return messages

    async def _request_fix(self, state: FixLoopState) -> dict[str, Any]:
        messages = self._fix_messages(state)
        started = time.perf_counter()
        try:
            response = await self.generation.chat(messages, model=self.model)
        except BuildError as exc:
            if not exc.retryable:
                raise
            logger.warning("Fix request for %s failed: %s", state["path"], exc)
            return {"operation": None}
        self.monitor.record_model_call(
            state["artifact_id"],
            self.sequence_id,
            self.step_id,
            label="fix",
            model=self.model,
            duration_ms=(time.perf_counter() - started) * 1000.0,
            input_text="\n".join(message["content"] for message in messages),
            output_text=response,
        )
        try:
            operation = self.parser.parse(response)
        except BuildError as exc:
            if not exc.retryable:
                raise
            logger.warning("Fix response for %s had no usable operation: %s", state["path"], exc)
            return {"operation": None}
        return {"operation": operation}

    def _route_after_request(self, state: FixLoopState) -> str:
        operation = state.get("operation")
        if isinstance(operation, ReadOperation) and state.get("context_reads", 0) < self.max_context_reads:
            return "read_context"
        return "apply"

    async def _read_context(self, state: FixLoopState) -> dict[str, Any]:
        operation = state.get("operation")
        paths = operation.paths if isinstance(operation, ReadOperation) else []
        allowed = set(state.get("dependency_paths", []))
        messages = list(state.get("context_messages", []))
        for path in paths:
            if path not in allowed:
                content = "Not available: only declared dependency files can be read."
            else:
                try:
                    content = self.file_ops.read(path)
                except (ArtifactNotFoundError, PathSafetyError) as exc:
                    content = f"Not available: {exc}"
            messages.append({"role": "user", "content": f"Content of {path}:\n{content}"})
        logger.info("Read %d context files for %s", len(paths), state["path"])
        return {
            "context_messages": messages,
            "context_reads": state.get("context_reads", 0) + 1,
            "operation": None,
        }

    async def _apply(self, state: FixLoopState) -> dict[str, Any]:
        operation = state.get("operation")
        retry_count = state["retry_count"] + 1
        self.monitor.increment_node_retry(state["artifact_id"], self.sequence_id, self.step_id)
        update: dict[str, Any] = {"retry_count": retry_count, "operation": None, "context_messages": []}
        if isinstance(operation, WriteOperation):
            update["content"] = operation.content
            logger.info("Applying rewrite to %s (fix %d/%d)", state["path"], retry_count, state["max_retries"])
        elif isinstance(operation, RenameOperation):
            try:
                update["path"] = self.file_ops.rename(state["path"], operation.path)
            except (PathSafetyError, ArtifactNotFoundError) as exc:
                logger.warning("Rejected rename of %s to %s: %s", state["path"], operation.path, exc)
        else:
            logger.warning("No applicable fix for %s in attempt %d", state["path"], retry_count)
        return update

    async def _abandon(self, state: FixLoopState) -> dict[str, Any]:
        logger.warning(
            "Abandoning %s after %d fix attempts; last error: %s",
            state["path"],
            state["retry_count"],
            (state.get("last_error") or "")[:500],
        )
        return {"status": ArtifactStatus.ABANDONED.value}

    # -- entry points --

    async def run(self, task: FileTask) -> FixLoopResult:
        """Drive one artifact to ``verified`` or ``abandoned``.

        Raises:
            ArtifactAbandonedError: If the artifact is abandoned and fail-fast is enabled.
        """
        artifact_id = task.path
        self.monitor.start_node_execution(artifact_id, self.sequence_id, self.step_id)
        initial: FixLoopState = {
            "artifact_id": artifact_id,
            "path": task.path,
            "content": task.content,
            "dependency_paths": list(task.dependency_paths),
            "status": ArtifactStatus.QUEUED.value,
            "retry_count": 0,
            "max_retries": self.max_fix_attempts,
            "context_reads": 0,
            "last_error": None,
            "operation": None,
            "context_messages": [],
        }
        try:
            final = await self.graph.ainvoke(initial, config={"recursion_limit": self._recursion_limit()})
        except Exception as exc:
            self.monitor.end_node_execution(artifact_id, self.sequence_id, self.step_id, success=False, error=exc)
            raise

        task.path = final["path"]
        task.content = final["content"]
        result = FixLoopResult(
            artifact_id=artifact_id,
            path=final["path"],
            status=ArtifactStatus(final["status"]),
            retry_count=final["retry_count"],
            content=final["content"],
            last_error=final.get("last_error"),
        )
        self.monitor.end_node_execution(
            artifact_id,
            self.sequence_id,
            self.step_id,
            success=result.verified,
            error=None if result.verified else result.last_error,
        )
        if not result.verified and self.fail_fast:
            raise ArtifactAbandonedError(result.path, result.retry_count, result.last_error)
        return result

    async def run_many(self, tasks: Sequence[FileTask]) -> list[FixLoopResult]:
        """Run independent artifacts concurrently; the first failure is re-raised once all finish."""
        outcomes = await asyncio.gather(*(self.run(task) for task in tasks), return_exceptions=True)
        results: list[FixLoopResult] = []
        first_error: BaseException | None = None
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                first_error = first_error or outcome
            else:
                results.append(outcome)
        if first_error is not None:
            raise first_error
        return results

    async def process_queue(self, queue: CodeTaskQueue) -> list[FixLoopResult]:
        return await self.run_many(queue.drain())
