import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from codegen_pipeline.errors import (
    ArtifactAbandonedError,
    MissingConfigurationError,
    PathSafetyError,
    ResponseParsingError,
    ResponseTagError,
)
from codegen_pipeline.file_ops import FileOperationManager, FixResponseParser
from codegen_pipeline.fix_loop import ArtifactFixLoop, CodeTaskQueue
from codegen_pipeline.models import (
    ArtifactStatus,
    FileTask,
    ReadOperation,
    RenameOperation,
    TaskStatus,
    VerificationResult,
    WriteOperation,
)
from codegen_pipeline.monitor import BuildMonitor
from codegen_pipeline.security import check_path_safety
from fakes import ScriptedGeneration, ScriptedVerifier, tagged

PASS = VerificationResult(success=True)


def fail(message: str) -> VerificationResult:
    return VerificationResult(success=False, error=message)


def fix(operation: dict[str, Any]) -> str:
    return tagged(json.dumps({"fix": {"operation": operation}}))


def make_loop(
    root: Path,
    generation: ScriptedGeneration,
    verifier: ScriptedVerifier,
    **options: Any,
) -> ArtifactFixLoop:
    return ArtifactFixLoop(project_root=root, generation=generation, verifier=verifier, **options)


def test_artifact_verified_after_two_repairs(tmp_path: Path) -> None:
    generation = ScriptedGeneration(
        [fix({"type": "WRITE", "content": "const v = 2;"}), fix({"type": "WRITE", "content": "const v = 3;"})]
    )
    verifier = ScriptedVerifier([fail("E1"), fail("E2"), PASS])
    monitor = BuildMonitor()
    loop = make_loop(tmp_path, generation, verifier, monitor=monitor, sequence_id="seq:t", step_id="code:artifacts")

    result = asyncio.run(loop.run(FileTask(path="src/main.ts", content="const v = 1;")))

    assert result.status is ArtifactStatus.VERIFIED
    assert result.retry_count == 2
    assert (tmp_path / "src/main.ts").read_text(encoding="utf-8") == "const v = 3;"
    assert len(generation.calls) == 2
    assert len(verifier.calls) == 3
    assert "Build error:\nE2" in [message["content"] for message in generation.calls[1][0]]
    metrics = monitor.get_node_metrics("seq:t", "code:artifacts", "src/main.ts")
    assert metrics is not None
    assert metrics.status is TaskStatus.COMPLETED
    assert metrics.retry_count == 2
    assert len(metrics.model_calls) == 2


def test_artifact_abandoned_when_budget_is_exhausted(tmp_path: Path) -> None:
    generation = ScriptedGeneration([fix({"type": "WRITE", "content": f"attempt {i}"}) for i in range(3)])
    verifier = ScriptedVerifier([fail("still broken")])
    monitor = BuildMonitor()
    loop = make_loop(tmp_path, generation, verifier, monitor=monitor, max_fix_attempts=3)

    result = asyncio.run(loop.run(FileTask(path="src/main.ts", content="broken")))

    assert result.status is ArtifactStatus.ABANDONED
    assert result.retry_count == 3
    assert result.last_error == "still broken"
    assert len(generation.calls) == 3
    assert len(verifier.calls) == 4
    metrics = monitor.get_node_metrics("adhoc", "artifacts", "src/main.ts")
    assert metrics is not None
    assert metrics.status is TaskStatus.FAILED
    assert metrics.retry_count == 3


def test_fail_fast_raises_on_abandonment(tmp_path: Path) -> None:
    loop = make_loop(tmp_path, ScriptedGeneration(), ScriptedVerifier([fail("nope")]), max_fix_attempts=0, fail_fast=True)

    with pytest.raises(ArtifactAbandonedError) as excinfo:
        asyncio.run(loop.run(FileTask(path="src/main.ts", content="broken")))

    assert excinfo.value.path == "src/main.ts"
    assert excinfo.value.retry_count == 0
    assert excinfo.value.last_error == "nope"


def test_verified_on_first_write_needs_no_model(tmp_path: Path) -> None:
    generation = ScriptedGeneration()
    loop = make_loop(tmp_path, generation, ScriptedVerifier([PASS]))

    result = asyncio.run(loop.run(FileTask(path="src/ok.ts", content="export {};")))

    assert result.verified
    assert result.retry_count == 0
    assert generation.calls == []


def test_rename_moves_file_and_updates_task(tmp_path: Path) -> None:
    generation = ScriptedGeneration([fix({"type": "RENAME", "original_path": "src/App.ts", "path": "src/App.tsx"})])
    loop = make_loop(tmp_path, generation, ScriptedVerifier([fail("JSX in .ts file"), PASS]))
    task = FileTask(path="src/App.ts", content="export const App = () => <div />;")

    result = asyncio.run(loop.run(task))

    assert result.verified
    assert result.retry_count == 1
    assert task.path == "src/App.tsx"
    assert (tmp_path / "src/App.tsx").is_file()
    assert not (tmp_path / "src/App.ts").exists()
    assert loop.file_ops.rename_map == {"src/App.ts": "src/App.tsx"}


def test_unsafe_rename_is_rejected_but_counts_as_attempt(tmp_path: Path) -> None:
    generation = ScriptedGeneration([fix({"type": "RENAME", "path": "../escape.tsx"})])
    loop = make_loop(tmp_path / "project", generation, ScriptedVerifier([fail("bad"), PASS]))

    result = asyncio.run(loop.run(FileTask(path="src/App.ts", content="x")))

    assert result.verified
    assert result.path == "src/App.ts"
    assert result.retry_count == 1
    assert not (tmp_path / "escape.tsx").exists()


def test_read_supplies_declared_dependencies_without_consuming_an_attempt(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src/utils.ts").write_text("export const x = 1;", encoding="utf-8")
    generation = ScriptedGeneration(
        [
            fix({"type": "READ", "paths": ["src/utils.ts", "src/secret.ts"]}),
            fix({"type": "WRITE", "content": "import { x } from './utils';"}),
        ]
    )
    loop = make_loop(tmp_path, generation, ScriptedVerifier([fail("x is undefined"), PASS]))
    task = FileTask(path="src/main.ts", content="x;", dependency_paths=["src/utils.ts"])

    result = asyncio.run(loop.run(task))

    assert result.verified
    assert result.retry_count == 1
    second_prompt = [message["content"] for message in generation.calls[1][0]]
    assert "Content of src/utils.ts:\nexport const x = 1;" in second_prompt
    assert any(
        text.startswith("Content of src/secret.ts:\nNot available: only declared") for text in second_prompt
    )


def test_context_reads_are_capped(tmp_path: Path) -> None:
    read = fix({"type": "READ", "paths": ["src/utils.ts"]})
    generation = ScriptedGeneration([read, read])
    loop = make_loop(tmp_path, generation, ScriptedVerifier([fail("err"), PASS]), max_context_reads=1)

    result = asyncio.run(loop.run(FileTask(path="src/main.ts", content="same", dependency_paths=["src/utils.ts"])))

    assert result.verified
    assert result.retry_count == 1
    assert result.content == "same"
    assert len(generation.calls) == 2


def test_unparseable_fix_response_consumes_an_attempt(tmp_path: Path) -> None:
    generation = ScriptedGeneration(["I think the import is wrong.", fix({"type": "WRITE", "content": "fixed"})])
    monitor = BuildMonitor()
    loop = make_loop(tmp_path, generation, ScriptedVerifier([fail("e"), fail("e"), PASS]), monitor=monitor)

    result = asyncio.run(loop.run(FileTask(path="src/main.ts", content="broken")))

    assert result.verified
    assert result.retry_count == 2
    assert result.content == "fixed"
    metrics = monitor.get_node_metrics("adhoc", "artifacts", "src/main.ts")
    assert metrics is not None
    assert [call.label for call in metrics.model_calls] == ["fix", "fix"]


def test_non_retryable_generation_failure_propagates(tmp_path: Path) -> None:
    monitor = BuildMonitor()
    generation = ScriptedGeneration([MissingConfigurationError("OPENAI_API_KEY is required")])
    loop = make_loop(tmp_path, generation, ScriptedVerifier([fail("e")]), monitor=monitor)

    with pytest.raises(MissingConfigurationError):
        asyncio.run(loop.run(FileTask(path="src/main.ts", content="broken")))

    metrics = monitor.get_node_metrics("adhoc", "artifacts", "src/main.ts")
    assert metrics is not None and metrics.status is TaskStatus.FAILED


def test_protected_paths_are_never_written(tmp_path: Path) -> None:
    loop = make_loop(tmp_path, ScriptedGeneration(), ScriptedVerifier([PASS]))
    with pytest.raises(PathSafetyError):
        asyncio.run(loop.run(FileTask(path="package.json", content="{}")))
    assert not (tmp_path / "package.json").exists()


def test_queue_is_processed_concurrently(tmp_path: Path) -> None:
    queue = CodeTaskQueue([FileTask(path="src/a.ts", content="a")])
    queue.enqueue(FileTask(path="src/b.ts", content="b"))
    assert len(queue) == 2
    loop = make_loop(tmp_path, ScriptedGeneration(), ScriptedVerifier([PASS]))

    results = asyncio.run(loop.process_queue(queue))

    assert [result.path for result in results] == ["src/a.ts", "src/b.ts"]
    assert len(queue) == 0
    assert queue.dequeue() is None


def test_run_many_reraises_after_all_artifacts_finish(tmp_path: Path) -> None:
    loop = make_loop(tmp_path, ScriptedGeneration(), ScriptedVerifier([fail("e")]), max_fix_attempts=0, fail_fast=True)
    tasks = [FileTask(path="src/a.ts", content="a"), FileTask(path="src/b.ts", content="b")]

    with pytest.raises(ArtifactAbandonedError):
        asyncio.run(loop.run_many(tasks))

    assert (tmp_path / "src/a.ts").is_file()
    assert (tmp_path / "src/b.ts").is_file()


def test_parser_accepts_each_operation_type() -> None:
    parser = FixResponseParser()

    write = parser.parse(fix({"type": "write", "content": "```tsx\nexport const a = 1;\n```"}))
    assert write == WriteOperation(type="WRITE", content="export const a = 1;")

    rename = parser.parse(fix({"type": "RENAME", "original_path": "src/a.ts", "path": "src/a.tsx"}))
    assert isinstance(rename, RenameOperation) and rename.path == "src/a.tsx"

    read = parser.parse(fix({"type": "READ", "paths": ["src/b.ts"]}))
    assert isinstance(read, ReadOperation) and read.paths == ["src/b.ts"]


@pytest.mark.parametrize(
    "response",
    [
        tagged(json.dumps({"operation": {"type": "WRITE", "content": "x"}})),
        fix({"type": "DELETE", "path": "src/a.ts"}),
        fix({"type": "READ", "paths": []}),
        tagged("not json"),
    ],
)
def test_parser_rejects_invalid_payloads(response: str) -> None:
    with pytest.raises(ResponseParsingError):
        FixResponseParser().parse(response)


def test_parser_requires_the_response_tag() -> None:
    with pytest.raises(ResponseTagError):
        FixResponseParser().parse(json.dumps({"fix": {"operation": {"type": "WRITE", "content": "x"}}}))


@pytest.mark.parametrize(
    "target",
    [
        "/etc/passwd",
        "../outside.ts",
        "src/../../outside.ts",
        ".",
        "node_modules/react/index.js",
        "vendor/lib.js",
        ".git/config",
        ".env",
        "config/.env.local",
        "package.json",
        "yarn.lock",
    ],
)
def test_path_safety_rejects_unsafe_writes(tmp_path: Path, target: str) -> None:
    with pytest.raises(PathSafetyError):
        check_path_safety(tmp_path, target)


def test_path_safety_allows_project_files_and_manifest_reads(tmp_path: Path) -> None:
    assert check_path_safety(tmp_path, "src/App.tsx") == tmp_path.resolve() / "src/App.tsx"
    assert check_path_safety(tmp_path, "package.json", for_write=False) == tmp_path.resolve() / "package.json"


def test_rename_map_tracks_the_newest_name(tmp_path: Path) -> None:
    manager = FileOperationManager(tmp_path)
    manager.write("src/a.ts", "a")
    manager.rename("src/a.ts", "src/a.tsx")
    manager.rename("src/a.tsx", "src/b.tsx")
    assert manager.rename_map == {"src/a.ts": "src/b.tsx"}
    assert manager.latest_path("src/a.ts") == "src/b.tsx"
    assert manager.read("src/b.tsx") == "a"
