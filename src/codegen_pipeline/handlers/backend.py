from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from ..errors import (
    ArtifactNotFoundError,
    MissingConfigurationError,
    PathSafetyError,
    ResponseParsingError,
    RetryHandler,
)
from ..file_ops import FileOperationManager
from ..fix_loop import ArtifactFixLoop
from ..models import BuildNode, BuildResult, ChatMessage, FileReviewPayload, FileTask, GlobalKey
from ..security import check_path_safety
from ..utils import extract_json_payload, parse_generate_tag, remove_code_block_fences
from .base import BuildHandler
from .documents import DATABASE_REQ_TASK_ID, PRD_TASK_ID, DocumentGenerationHandler, schema_file_path

if TYPE_CHECKING:
    from ..context import ExecutionContext

logger = logging.getLogger(__name__)

BACKEND_REQ_TASK_ID = "op:BACKEND:REQ"
BACKEND_CODE_TASK_ID = "op:BACKEND:CODE"

DEFAULT_LANGUAGE = "javascript"
DEFAULT_FRAMEWORK = "express"


def backend_root(context: "ExecutionContext") -> Path:
    value = context.get_global(GlobalKey.BACKEND_PATH)
    if not value:
        raise MissingConfigurationError("Backend path is not initialised; run the project setup task first")
    return Path(value)


class BackendRequirementsHandler(DocumentGenerationHandler):
    """System overview and API endpoint specification for the backend."""

    id = BACKEND_REQ_TASK_ID
    label = "backend-requirements"

    def messages(self, context: "ExecutionContext", node: BuildNode) -> list[ChatMessage]:
        language = node.config.get("language", DEFAULT_LANGUAGE)
        framework = node.config.get("framework", DEFAULT_FRAMEWORK)
        return [
            {
                "role": "system",
                "content": (
                    f"You are a senior backend architect. Write the system overview and the API endpoint "
                    f"specification for a {language} backend built with {framework}. For each endpoint give the "
                    "method, path, request body and response. Wrap it in <GENERATE></GENERATE> tags."
                ),
            },
            {"role": "user", "content": f"Project name: {context.get_global(GlobalKey.PROJECT_NAME)}"},
            {"role": "user", "content": f"Product requirements:\n{context.require_node_data(PRD_TASK_ID)}"},
            {
                "role": "user",
                "content": f"Database requirements:\n{context.require_node_data(DATABASE_REQ_TASK_ID)}",
            },
        ]


class BackendCodeHandler(BuildHandler[dict[str, Any]]):
    """Generates the backend entry file and drives it through the fix loop.

    The backend verifier is used when the context has one; otherwise the
    project verifier runs against the backend directory.
    """

    id = BACKEND_CODE_TASK_ID

    def _messages(
        self,
        context: "ExecutionContext",
        node: BuildNode,
        entry_file: str,
        schema: str,
    ) -> list[ChatMessage]:
        language = node.config.get("language", DEFAULT_LANGUAGE)
        database_type = context.get_global(GlobalKey.DATABASE_TYPE)
        return [
            {
                "role": "system",
                "content": (
                    f"You write the complete {language} backend entry file {entry_file} for a {database_type} "
                    "database. Implement every endpoint of the backend requirements against the schema. "
                    "Return the whole file inside <GENERATE></GENERATE> tags."
                ),
            },
            {"role": "user", "content": f"Database schema:\n{schema}"},
            {"role": "user", "content": f"Backend requirements:\n{context.require_node_data(BACKEND_REQ_TASK_ID)}"},
        ]

    def _schema(self, context: "ExecutionContext") -> str:
        path = schema_file_path(str(context.get_global(GlobalKey.DATABASE_TYPE)))
        return FileOperationManager(context.project_path).read(path)

    async def run(
        self,
        context: "ExecutionContext",
        node: BuildNode,
        dependencies: Mapping[str, BuildResult[Any]],
    ) -> BuildResult[dict[str, Any]]:
        entry_file = str(node.config.get("entry_file", "index.js"))
        schema = self._schema(context)
        retry = RetryHandler(
            max_retries=context.settings.handler_max_retries,
            backoff_seconds=context.settings.retry_backoff_seconds,
        )

        async def _attempt() -> str:
            response = await context.chat(
                self._messages(context, node, entry_file, schema),
                task_id=node.id,
                label=f"generate:{entry_file}",
                model=node.config.get("model"),
            )
            return remove_code_block_fences(parse_generate_tag(response))

        content = await retry.run(_attempt, label=f"{node.id}:{entry_file}")
        fix_loop = ArtifactFixLoop.from_context(
            context,
            task_id=node.id,
            project_root=backend_root(context),
            verifier=context.backend_verifier,
        )
        result = await fix_loop.run(FileTask(path=entry_file, content=content, task_id=node.id))
        if not result.verified:
            logger.warning("Backend entry %s could not be verified", result.path)
        return BuildResult.ok(
            {
                "path": result.path,
                "status": result.status.value,
                "retry_count": result.retry_count,
                "content": result.content,
            }
        )


class BackendFileReviewHandler(BuildHandler[dict[str, list[str]]]):
    """Reviews the files at the backend root against the generated code and updates those that need it.

    Files the path-safety policy forbids writing, such as dependency manifests,
    are never offered for review.
    """

    id = "op:BACKEND:FILE:REVIEW"

    def _candidates(self, root: Path) -> list[str]:
        if not root.is_dir():
            raise ArtifactNotFoundError(f"Backend directory does not exist: {root}")
        names: list[str] = []
        for entry in sorted(root.iterdir()):
            if not entry.is_file():
                continue
            try:
                check_path_safety(root, entry.name)
            except PathSafetyError:
                logger.debug("Skipping protected backend file %s", entry.name)
                continue
            names.append(entry.name)
        return names

    def _overview(self, context: "ExecutionContext") -> str:
        return (
            f"Project name: {context.get_global(GlobalKey.PROJECT_NAME)}\n"
            f"Description: {context.get_global(GlobalKey.DESCRIPTION)}"
        )

    async def _select(
        self,
        context: "ExecutionContext",
        node: BuildNode,
        candidates: list[str],
        requirements: str,
        code: str,
    ) -> list[str]:
        response = await context.chat(
            [
                {
                    "role": "system",
                    "content": (
                        "You review the backend configuration files of a project. Pick the files from the list "
                        "that must change so the project matches its requirements and implementation. Return JSON "
                        '{"files": ["<name>", ...]} inside <GENERATE></GENERATE> tags. Only use names from the '
                        "list; return an empty list when nothing needs to change."
                    ),
                },
                {"role": "user", "content": self._overview(context)},
                {"role": "user", "content": f"Backend requirements:\n{requirements}"},
                {"role": "user", "content": f"Backend implementation:\n{code}"},
                {"role": "user", "content": "Existing files:\n" + "\n".join(candidates)},
            ],
            task_id=node.id,
            label="file-review",
            model=node.config.get("model"),
        )
        try:
            payload = FileReviewPayload.model_validate(extract_json_payload(parse_generate_tag(response)))
        except ValidationError as exc:
            raise ResponseParsingError(f"Invalid file review payload: {exc}") from exc

        selected: list[str] = []
        for name in payload.files:
            if name not in candidates:
                logger.warning("Ignoring review of %s: not an existing backend file", name)
            elif name not in selected:
                selected.append(name)
        return selected

    async def _rewrite(
        self,
        context: "ExecutionContext",
        node: BuildNode,
        name: str,
        current: str,
        requirements: str,
        code: str,
    ) -> str:
        response = await context.chat(
            [
                {
                    "role": "system",
                    "content": (
                        f"You update the backend file {name} so it supports the implementation below. "
                        "Return the complete new file inside <GENERATE></GENERATE> tags."
                    ),
                },
                {"role": "user", "content": self._overview(context)},
                {"role": "user", "content": f"Backend requirements:\n{requirements}"},
                {"role": "user", "content": f"Backend implementation:\n{code}"},
                {"role": "user", "content": f"Current content of {name}:\n{current}"},
            ],
            task_id=node.id,
            label=f"file-review:{name}",
            model=node.config.get("model"),
        )
        return remove_code_block_fences(parse_generate_tag(response))

    async def run(
        self,
        context: "ExecutionContext",
        node: BuildNode,
        dependencies: Mapping[str, BuildResult[Any]],
    ) -> BuildResult[dict[str, list[str]]]:
        requirements = str(context.require_node_data(BACKEND_REQ_TASK_ID))
        backend = context.require_node_data(BACKEND_CODE_TASK_ID)
        code = str(backend.get("content", "")) if isinstance(backend, Mapping) else str(backend)
        root = backend_root(context)
        file_ops = FileOperationManager(root)

        candidates = self._candidates(root)
        logger.info("Reviewing %d backend files in %s", len(candidates), root)
        selected = await self._select(context, node, candidates, requirements, code) if candidates else []
        for name in selected:
            updated = await self._rewrite(context, node, name, file_ops.read(name), requirements, code)
            file_ops.write(name, updated)
            logger.info("Updated backend file %s", name)
        return BuildResult.ok({"reviewed": candidates, "modified": selected})
