from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from ..errors import RetryHandler
from ..fix_loop import ArtifactFixLoop
from ..graph import GenerationPlan, plan_generation
from ..models import ArtifactStatus, BuildNode, BuildResult, ChatMessage, FileTask
from ..utils import parse_generate_tag, remove_code_block_fences
from .base import BuildHandler
from .documents import PRD_TASK_ID
from .file_manager import frontend_root, require_dependency_graph, require_manifest

if TYPE_CHECKING:
    from ..context import ExecutionContext

logger = logging.getLogger(__name__)


class CodeGenerationHandler(BuildHandler[dict[str, list[str]]]):
    """Generates every declared file layer by layer and drives each through the fix loop.

    Files in one concurrency layer are generated and verified concurrently; a
    layer starts only after the previous one has been fully processed.
    """

    id = "op:FRONTEND:CODE"

    def _messages(
        self,
        context: "ExecutionContext",
        plan: GenerationPlan,
        path: str,
        generated: Mapping[str, str],
    ) -> list[ChatMessage]:
        dependency_paths = plan.graph.dependencies.get(path, ())
        dependency_context = "\n\n".join(
            f"--- {dep} ---\n{generated[dep]}" for dep in dependency_paths if dep in generated
        )
        return [
            {
                "role": "system",
                "content": (
                    "You write one React + TypeScript source file. Import only the listed dependencies and "
                    "UI primitives from @/components/ui/. Return the complete file inside <GENERATE></GENERATE> tags."
                ),
            },
            {"role": "user", "content": f"Product requirements:\n{context.require_node_data(PRD_TASK_ID)}"},
            {"role": "user", "content": f"File to write: {path}"},
            {"role": "user", "content": f"Dependencies:\n{dependency_context or '(none)'}"},
        ]

    async def _generate_file(
        self,
        context: "ExecutionContext",
        node: BuildNode,
        plan: GenerationPlan,
        path: str,
        generated: Mapping[str, str],
    ) -> FileTask:
        retry = RetryHandler(
            max_retries=context.settings.handler_max_retries,
            backoff_seconds=context.settings.retry_backoff_seconds,
        )

        async def _attempt() -> str:
            response = await context.chat(
                self._messages(context, plan, path, generated),
                task_id=node.id,
                label=f"generate:{path}",
                model=node.config.get("model"),
            )
            return remove_code_block_fences(parse_generate_tag(response))

        content = await retry.run(_attempt, label=f"{node.id}:{path}")
        return FileTask(
            path=path,
            content=content,
            dependency_paths=list(plan.graph.dependencies.get(path, ())),
            task_id=node.id,
        )

    async def run(
        self,
        context: "ExecutionContext",
        node: BuildNode,
        dependencies: Mapping[str, BuildResult[Any]],
    ) -> BuildResult[dict[str, list[str]]]:
        plan = plan_generation(require_dependency_graph(context), require_manifest(context))
        root = frontend_root(context)
        fix_loop = ArtifactFixLoop.from_context(context, task_id=node.id, project_root=root)

        generated: dict[str, str] = {}
        verified: list[str] = []
        abandoned: list[str] = []
        for index, layer in enumerate(plan.layers):
            logger.info("Generating layer %d/%d (%d files)", index + 1, len(plan.layers), len(layer))
            tasks = await asyncio.gather(
                *(self._generate_file(context, node, plan, path, generated) for path in layer)
            )
            results = await fix_loop.run_many(tasks)
            for result in results:
                generated[result.artifact_id] = result.content
                if result.status is ArtifactStatus.VERIFIED:
                    verified.append(result.path)
                else:
                    abandoned.append(result.path)

        if abandoned:
            logger.warning("%d files could not be verified: %s", len(abandoned), ", ".join(abandoned))
        return BuildResult.ok({"verified": verified, "abandoned": abandoned})
