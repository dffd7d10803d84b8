from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from ..errors import MissingConfigurationError, ResponseParsingError
from ..graph import materialize_files, plan_generation
from ..manifest import VirtualDirectory
from ..models import BuildNode, BuildResult, DependencyGraphPayload, GlobalKey
from ..utils import extract_json_payload, parse_generate_tag
from .base import BuildHandler
from .documents import PRD_TASK_ID

if TYPE_CHECKING:
    from ..context import ExecutionContext

logger = logging.getLogger(__name__)

FILE_STRUCT_TASK_ID = "op:FILE:STRUCT"
FILE_ARCH_TASK_ID = "op:FILE:ARCH"


def frontend_root(context: "ExecutionContext") -> Path:
    value = context.get_global(GlobalKey.FRONTEND_PATH)
    if not value:
        raise MissingConfigurationError("Frontend path is not initialised; run the project setup task first")
    return Path(value)


def require_manifest(context: "ExecutionContext") -> VirtualDirectory:
    manifest = context.require_node_data(FILE_STRUCT_TASK_ID)
    if not isinstance(manifest, VirtualDirectory):
        raise MissingConfigurationError(f"{FILE_STRUCT_TASK_ID} did not produce a file manifest")
    return manifest


def require_dependency_graph(context: "ExecutionContext") -> DependencyGraphPayload:
    payload = context.require_node_data(FILE_ARCH_TASK_ID)
    if not isinstance(payload, DependencyGraphPayload):
        raise MissingConfigurationError(f"{FILE_ARCH_TASK_ID} did not produce a dependency graph")
    return payload


class FileStructureHandler(BuildHandler[VirtualDirectory]):
    """Asks for the declared output structure and turns it into the run's manifest."""

    id = FILE_STRUCT_TASK_ID

    async def run(
        self,
        context: "ExecutionContext",
        node: BuildNode,
        dependencies: Mapping[str, BuildResult[Any]],
    ) -> BuildResult[VirtualDirectory]:
        prd = context.require_node_data(PRD_TASK_ID)
        response = await context.chat(
            [
                {
                    "role": "system",
                    "content": (
                        "You design the file layout of a React + TypeScript frontend. Return JSON "
                        '{"Paths": ["src/..."]} listing every file path, inside <GENERATE></GENERATE> tags. '
                        "UI primitives already exist under src/components/ui/ and must not be listed."
                    ),
                },
                {"role": "user", "content": str(prd)},
            ],
            task_id=node.id,
            label="file-structure",
            model=node.config.get("model"),
        )
        manifest = VirtualDirectory.from_payload(parse_generate_tag(response))
        logger.info("File structure declares %d files", len(manifest))
        return BuildResult.ok(manifest)


class FileArchitectureHandler(BuildHandler[DependencyGraphPayload]):
    """Asks for per-file dependencies and validates them before anything is written."""

    id = FILE_ARCH_TASK_ID

    async def run(
        self,
        context: "ExecutionContext",
        node: BuildNode,
        dependencies: Mapping[str, BuildResult[Any]],
    ) -> BuildResult[DependencyGraphPayload]:
        manifest = require_manifest(context)
        files = "\n".join(manifest.all_files())
        response = await context.chat(
            [
                {
                    "role": "system",
                    "content": (
                        "For every file below, list the project files it imports. Return JSON "
                        '{"files": {"<path>": {"dependsOn": ["<path>", ...]}}} inside <GENERATE></GENERATE> tags. '
                        "Keys are paths from the list. Write each dependency as an import path relative to the "
                        "importing file, for example \"../components/Header.tsx\". "
                        "Only reference files from the list; the graph must be acyclic."
                    ),
                },
                {"role": "user", "content": f"Files:\n{files}"},
                {"role": "user", "content": f"Product requirements:\n{context.require_node_data(PRD_TASK_ID)}"},
            ],
            task_id=node.id,
            label="file-architecture",
            model=node.config.get("model"),
        )
        try:
            payload = DependencyGraphPayload.model_validate(extract_json_payload(parse_generate_tag(response)))
        except ValidationError as exc:
            raise ResponseParsingError(f"Invalid dependency graph payload: {exc}") from exc
        plan = plan_generation(payload, manifest)
        logger.info("File architecture validated: %d files in %d layers", len(plan.order), len(plan.layers))
        return BuildResult.ok(payload)


class FileGenerateHandler(BuildHandler[list[str]]):
    """Creates placeholder files for the validated architecture in dependency order."""

    id = "op:FILE:GENERATE"

    async def run(
        self,
        context: "ExecutionContext",
        node: BuildNode,
        dependencies: Mapping[str, BuildResult[Any]],
    ) -> BuildResult[list[str]]:
        root = frontend_root(context)
        created = materialize_files(require_dependency_graph(context), root, require_manifest(context))
        return BuildResult.ok([path.relative_to(root.resolve()).as_posix() for path in created])
