import asyncio
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import pytest

from codegen_pipeline.context import ExecutionContext, resolve_steps
from codegen_pipeline.errors import (
    CircularDependencyError,
    InvalidParameterError,
    MissingConfigurationError,
    RateLimitExceededError,
)
from codegen_pipeline.handlers.base import BuildHandler
from codegen_pipeline.models import BuildNode, BuildResult, BuildSequence, BuildStep, GlobalKey, TaskStatus
from codegen_pipeline.monitor import BuildMonitor
from fakes import RecordingHandler, ScriptedGeneration, fast_settings, registry_with


def two_task_sequence(**kwargs: Any) -> BuildSequence:
    return BuildSequence(
        id="seq:test",
        name="Test pipeline",
        steps=(BuildStep(id="s1", nodes=(BuildNode("a"), BuildNode("b", requires=("a",)))),),
        **kwargs,
    )


def make_context(sequence: BuildSequence, *handlers: BuildHandler[Any], **overrides: Any) -> ExecutionContext:
    settings = overrides.pop("settings", fast_settings())
    return ExecutionContext(
        sequence,
        registry=registry_with(*handlers),
        monitor=BuildMonitor(),
        settings=settings,
        **overrides,
    )


class SummaryHandler(BuildHandler[str]):
    id = "op:SUMMARY"

    async def run(self, context: Any, node: BuildNode, dependencies: Mapping[str, BuildResult[Any]]) -> BuildResult[str]:
        return BuildResult.ok("summary")


class SoftFailureHandler(BuildHandler[Any]):
    id = "a"

    async def run(self, context: Any, node: BuildNode, dependencies: Mapping[str, BuildResult[Any]]) -> BuildResult[Any]:
        return BuildResult.fail(InvalidParameterError("bad input"))


class UntypedHandler(BuildHandler[Any]):
    id = "a"

    async def run(self, context: Any, node: BuildNode, dependencies: Mapping[str, BuildResult[Any]]) -> Any:
        return {"not": "a result"}


def test_can_execute_tracks_prerequisites() -> None:
    log: list[tuple[str, str]] = []
    context = make_context(two_task_sequence(), RecordingHandler("a", log), RecordingHandler("b", log))

    assert context.can_execute("a")
    assert not context.can_execute("b")
    assert not context.can_execute("missing")

    asyncio.run(context.run("a"))

    assert not context.can_execute("a")
    assert context.can_execute("b")


def test_run_stores_result_and_passes_dependencies() -> None:
    log: list[tuple[str, str]] = []
    handler_b = RecordingHandler("b", log)
    context = make_context(two_task_sequence(), RecordingHandler("a", log, data={"value": 1}), handler_b)

    async def scenario() -> BuildResult[Any]:
        await context.run("a")
        return await context.run("b")

    result = asyncio.run(scenario())

    assert result.data == "b-output"
    assert context.get_node_data("a") == {"value": 1}
    assert context.status_of("b") is TaskStatus.COMPLETED
    assert context.execution_order == ["a", "b"]
    assert handler_b.seen_dependencies == [["a"]]
    metrics = context.monitor.get_node_metrics("seq:test", "s1", "b")
    assert metrics is not None and metrics.status is TaskStatus.COMPLETED


def test_run_rejects_tasks_that_are_not_ready() -> None:
    log: list[tuple[str, str]] = []
    handler_b = RecordingHandler("b", log)
    context = make_context(two_task_sequence(), RecordingHandler("a", log), handler_b)

    with pytest.raises(InvalidParameterError):
        asyncio.run(context.run("b"))

    assert handler_b.calls == 0
    assert context.status_of("b") is TaskStatus.UNSTARTED


def test_completed_task_cannot_run_twice() -> None:
    log: list[tuple[str, str]] = []
    context = make_context(two_task_sequence(), RecordingHandler("a", log), RecordingHandler("b", log))
    asyncio.run(context.run("a"))
    with pytest.raises(InvalidParameterError):
        asyncio.run(context.run("a"))


def test_non_retryable_failure_marks_task_failed_and_rethrows() -> None:
    log: list[tuple[str, str]] = []
    handler = RecordingHandler("a", log, failures=[InvalidParameterError("broken config")])
    context = make_context(two_task_sequence(), handler, RecordingHandler("b", log))

    with pytest.raises(InvalidParameterError, match="broken config"):
        asyncio.run(context.run("a"))

    assert handler.calls == 1
    assert context.status_of("a") is TaskStatus.FAILED
    assert context.get_result("a") is None
    metrics = context.monitor.get_node_metrics("seq:test", "s1", "a")
    assert metrics is not None
    assert metrics.status is TaskStatus.FAILED
    assert metrics.error == "broken config"


def test_retryable_failure_is_retried_and_counted() -> None:
    log: list[tuple[str, str]] = []
    handler = RecordingHandler("a", log, failures=[RateLimitExceededError("slow down")])
    context = make_context(two_task_sequence(), handler, RecordingHandler("b", log))

    asyncio.run(context.run("a"))

    assert handler.calls == 2
    assert context.status_of("a") is TaskStatus.COMPLETED
    metrics = context.monitor.get_node_metrics("seq:test", "s1", "a")
    assert metrics is not None and metrics.retry_count == 1


def test_retry_budget_exhaustion_fails_the_task() -> None:
    log: list[tuple[str, str]] = []
    failures = [RateLimitExceededError(f"slow down {i}") for i in range(3)]
    handler = RecordingHandler("a", log, failures=failures)
    context = make_context(two_task_sequence(), handler, RecordingHandler("b", log))

    with pytest.raises(RateLimitExceededError, match="slow down 2"):
        asyncio.run(context.run("a"))

    assert handler.calls == 3
    assert context.status_of("a") is TaskStatus.FAILED
    metrics = context.monitor.get_node_metrics("seq:test", "s1", "a")
    assert metrics is not None and metrics.retry_count == 2


def test_failed_task_can_be_rerun_explicitly() -> None:
    log: list[tuple[str, str]] = []
    handler = RecordingHandler("a", log, failures=[InvalidParameterError("first try")])
    context = make_context(two_task_sequence(), handler, RecordingHandler("b", log))

    with pytest.raises(InvalidParameterError):
        asyncio.run(context.run("a"))
    assert context.can_execute("a")

    asyncio.run(context.run("a"))

    assert context.status_of("a") is TaskStatus.COMPLETED
    assert context.get_node_data("a") == "a-output"


def test_missing_handler_fails_the_task() -> None:
    context = make_context(two_task_sequence())
    with pytest.raises(MissingConfigurationError):
        asyncio.run(context.run("a"))
    assert context.status_of("a") is TaskStatus.FAILED


def test_unsuccessful_result_counts_as_failure() -> None:
    context = make_context(two_task_sequence(), SoftFailureHandler())
    with pytest.raises(InvalidParameterError, match="bad input"):
        asyncio.run(context.run("a"))
    assert context.status_of("a") is TaskStatus.FAILED


def test_handler_must_return_a_build_result() -> None:
    context = make_context(two_task_sequence(), UntypedHandler())
    with pytest.raises(InvalidParameterError):
        asyncio.run(context.run("a"))


def test_global_values_are_initialised_from_the_sequence() -> None:
    context = make_context(two_task_sequence(model="gpt-4o", database_type="PostgreSQL"), description="A todo app")

    assert context.get_global(GlobalKey.PROJECT_NAME) == "Test pipeline"
    assert context.get_global(GlobalKey.DESCRIPTION) == "A todo app"
    assert context.get_global(GlobalKey.PLATFORM) == "web"
    assert context.get_global(GlobalKey.DATABASE_TYPE) == "PostgreSQL"
    assert context.get_global(GlobalKey.PROJECT_SIZE) == "medium"
    assert context.default_model == "gpt-4o"
    assert context.get_global("unknown", "fallback") == "fallback"

    with pytest.raises(MissingConfigurationError):
        _ = context.project_path
    context.set_global(GlobalKey.PROJECT_PATH, "/tmp/project")
    assert context.project_path == Path("/tmp/project")


def test_result_lookup_by_handler_type() -> None:
    sequence = BuildSequence(id="seq:flat", nodes=(BuildNode("summary-task", handler=SummaryHandler),))
    context = make_context(sequence, SummaryHandler())

    assert context.get_result_by_handler(SummaryHandler) is None
    asyncio.run(context.run("summary-task"))

    result = context.get_result_by_handler(SummaryHandler)
    assert result is not None and result.data == "summary"


def test_sequence_validation_rejects_bad_definitions() -> None:
    duplicate = BuildSequence(
        id="seq:dup",
        steps=(BuildStep(id="s1", nodes=(BuildNode("a"),)), BuildStep(id="s2", nodes=(BuildNode("a"),))),
    )
    with pytest.raises(InvalidParameterError, match="Duplicate"):
        make_context(duplicate)

    unknown = BuildSequence(id="seq:unknown", nodes=(BuildNode("a", requires=("ghost",)),))
    with pytest.raises(InvalidParameterError, match="ghost"):
        make_context(unknown)

    cyclic = BuildSequence(id="seq:cycle", nodes=(BuildNode("a", requires=("b",)), BuildNode("b", requires=("a",))))
    with pytest.raises(CircularDependencyError):
        make_context(cyclic)


def test_flat_sequences_become_parallel_layers() -> None:
    sequence = BuildSequence(
        id="seq:flat",
        nodes=(BuildNode("c", requires=("a", "b")), BuildNode("b", requires=("a",)), BuildNode("a")),
    )
    steps = resolve_steps(sequence)
    assert [step.id for step in steps] == ["layer-0", "layer-1", "layer-2"]
    assert [[node.id for node in step.nodes] for step in steps] == [["a"], ["b"], ["c"]]
    assert all(step.parallel for step in steps)


def test_wait_for_state_change_wakes_on_transitions() -> None:
    log: list[tuple[str, str]] = []
    context = make_context(two_task_sequence(), RecordingHandler("a", log), RecordingHandler("b", log))

    async def scenario() -> tuple[bool, bool]:
        timed_out = await context.wait_for_state_change(0.01)
        waiter = asyncio.create_task(context.wait_for_state_change(5.0))
        await asyncio.sleep(0.05)
        await context.run("a")
        return timed_out, await waiter

    timed_out, woke = asyncio.run(scenario())
    assert timed_out is False
    assert woke is True


def test_chat_records_model_calls_and_debug_logs(tmp_path: Path) -> None:
    generation = ScriptedGeneration(["hello there"])
    context = make_context(
        two_task_sequence(),
        generation=generation,
        settings=fast_settings(log_dir=str(tmp_path)),
        run_id="run-1",
    )

    output = asyncio.run(context.chat([{"role": "user", "content": "hi"}], task_id="a", label="prd"))

    assert output == "hello there"
    assert generation.calls[0][1] == "gpt-4o-mini"
    metrics = context.monitor.get_node_metrics("seq:test", "s1", "a")
    assert metrics is not None
    assert [call.label for call in metrics.model_calls] == ["prd"]
    assert metrics.output_tokens == 2
    assert (tmp_path / "run-1" / "a-prd.md").read_text(encoding="utf-8") == "hello there"


def test_chat_requires_a_generation_service() -> None:
    context = make_context(two_task_sequence())
    assert context.write_log("ignored.md", "text") is None
    with pytest.raises(MissingConfigurationError):
        asyncio.run(context.chat([{"role": "user", "content": "hi"}], task_id="a", label="prd"))
