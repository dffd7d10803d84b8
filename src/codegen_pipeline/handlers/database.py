from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from ..fix_loop import ArtifactFixLoop
from ..models import BuildNode, BuildResult, FileTask, GlobalKey
from ..verifier import SqliteSchemaVerifier
from .base import BuildHandler
from .documents import DATABASE_SCHEMA_TASK_ID, schema_file_path

if TYPE_CHECKING:
    from ..context import ExecutionContext

logger = logging.getLogger(__name__)

# Database types with an in-process schema check.
VALIDATED_DATABASES = frozenset({"sqlite"})


class SchemaValidationHandler(BuildHandler[dict[str, Any]]):
    """Executes the generated schema and repairs it through the fix loop until it loads.

    Only SQLite schemas can be checked in-process; other database types are
    reported as skipped.
    """

    id = "op:DATABASE:SCHEMA:VALIDATE"

    async def run(
        self,
        context: "ExecutionContext",
        node: BuildNode,
        dependencies: Mapping[str, BuildResult[Any]],
    ) -> BuildResult[dict[str, Any]]:
        database_type = str(context.get_global(GlobalKey.DATABASE_TYPE))
        path = schema_file_path(database_type)
        if database_type.strip().lower() not in VALIDATED_DATABASES:
            logger.info("No schema check available for %s; skipping %s", database_type, path)
            return BuildResult.ok({"path": path, "status": "skipped", "retry_count": 0})

        schema = str(context.require_node_data(DATABASE_SCHEMA_TASK_ID))
        fix_loop = ArtifactFixLoop.from_context(context, task_id=node.id, verifier=SqliteSchemaVerifier(path))
        result = await fix_loop.run(FileTask(path=path, content=schema, task_id=node.id))
        if not result.verified:
            logger.warning("Schema %s still fails to load: %s", path, (result.last_error or "")[:200])
        return BuildResult.ok({"path": result.path, "status": result.status.value, "retry_count": result.retry_count})
