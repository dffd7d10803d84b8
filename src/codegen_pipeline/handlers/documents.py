from __future__ import annotations

import logging
from abc import abstractmethod
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from ..errors import InvalidParameterError
from ..file_ops import FileOperationManager
from ..models import BuildNode, BuildResult, ChatMessage, GlobalKey
from ..utils import parse_generate_tag, remove_code_block_fences
from .base import BuildHandler

if TYPE_CHECKING:
    from ..context import ExecutionContext

logger = logging.getLogger(__name__)

PRD_TASK_ID = "op:PRD"
DATABASE_REQ_TASK_ID = "op:DATABASE_REQ"
DATABASE_SCHEMA_TASK_ID = "op:DATABASE:SCHEMAS"

SCHEMA_EXTENSIONS = {
    "postgresql": "sql",
    "mysql": "sql",
    "mariadb": "sql",
    "sqlite": "sql",
    "oracle": "sql",
    "sqlserver": "sql",
    "mongodb": "js",
}


def schema_file_extension(database_type: str) -> str:
    extension = SCHEMA_EXTENSIONS.get(database_type.strip().lower())
    if extension is None:
        supported = ", ".join(sorted(SCHEMA_EXTENSIONS))
        raise InvalidParameterError(f"Unsupported database type {database_type!r}; expected one of: {supported}")
    return extension


def schema_file_path(database_type: str) -> str:
    """Project-relative location of the generated schema."""
    return f"database/schema.{schema_file_extension(database_type)}"


class DocumentGenerationHandler(BuildHandler[str]):
    """Asks the generation service for one tagged text document."""

    label = "document"

    @abstractmethod
    def messages(self, context: "ExecutionContext", node: BuildNode) -> list[ChatMessage]:
        ...

    async def generate(self, context: "ExecutionContext", node: BuildNode) -> str:
        response = await context.chat(
            self.messages(context, node),
            task_id=node.id,
            label=self.label,
            model=node.config.get("model"),
        )
        return remove_code_block_fences(parse_generate_tag(response))

    async def run(
        self,
        context: "ExecutionContext",
        node: BuildNode,
        dependencies: Mapping[str, BuildResult[Any]],
    ) -> BuildResult[str]:
        logger.info("Generating %s for %s", self.label, node.id)
        return BuildResult.ok(await self.generate(context, node))


class ProductRequirementsHandler(DocumentGenerationHandler):
    id = PRD_TASK_ID
    label = "prd"

    def messages(self, context: "ExecutionContext", node: BuildNode) -> list[ChatMessage]:
        return [
            {
                "role": "system",
                "content": (
                    "You are a product manager. Write a concise product requirements document "
                    "covering goals, user stories and core features. Wrap it in <GENERATE></GENERATE> tags."
                ),
            },
            {
                "role": "user",
                "content": (
                    f"Project name: {context.get_global(GlobalKey.PROJECT_NAME)}\n"
                    f"Description: {context.get_global(GlobalKey.DESCRIPTION)}\n"
                    f"Platform: {context.get_global(GlobalKey.PLATFORM)}"
                ),
            },
        ]


class DatabaseRequirementsHandler(DocumentGenerationHandler):
    """Derives the persistent data needs of the product: entities, relationships and access patterns."""

    id = DATABASE_REQ_TASK_ID
    label = "database-requirements"

    def messages(self, context: "ExecutionContext", node: BuildNode) -> list[ChatMessage]:
        return [
            {
                "role": "system",
                "content": (
                    "You are a database architect. From the product requirements, write a database requirements "
                    "document: entities and their attributes, relationships with cardinality, constraints and "
                    "common query patterns. Only include data that needs persistent storage. "
                    "Wrap it in <GENERATE></GENERATE> tags."
                ),
            },
            {"role": "user", "content": f"Project name: {context.get_global(GlobalKey.PROJECT_NAME)}"},
            {"role": "user", "content": str(context.require_node_data(PRD_TASK_ID))},
        ]


class DatabaseSchemaHandler(DocumentGenerationHandler):
    """Generates the schema for the configured database and writes it into the project."""

    id = DATABASE_SCHEMA_TASK_ID
    label = "schema"

    def messages(self, context: "ExecutionContext", node: BuildNode) -> list[ChatMessage]:
        database_type = context.get_global(GlobalKey.DATABASE_TYPE)
        messages: list[ChatMessage] = [
            {
                "role": "system",
                "content": (
                    f"You are a database engineer. Produce the complete {database_type} schema for the product "
                    "below, using idempotent statements. Wrap it in <GENERATE></GENERATE> tags."
                ),
            },
            {"role": "user", "content": str(context.require_node_data(PRD_TASK_ID))},
        ]
        requirements = context.get_node_data(DATABASE_REQ_TASK_ID)
        if requirements:
            messages.append({"role": "user", "content": f"Database requirements:\n{requirements}"})
        return messages

    async def run(
        self,
        context: "ExecutionContext",
        node: BuildNode,
        dependencies: Mapping[str, BuildResult[Any]],
    ) -> BuildResult[str]:
        database_type = str(context.get_global(GlobalKey.DATABASE_TYPE))
        path = schema_file_path(database_type)
        schema = await self.generate(context, node)
        target = FileOperationManager(context.project_path).write(path, schema)
        logger.info("%s schema written to %s", database_type, target)
        return BuildResult.ok(schema)
