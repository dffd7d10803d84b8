from __future__ import annotations

import logging
import shutil
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..errors import FileWriteError, MissingConfigurationError
from ..models import BuildNode, BuildResult, GlobalKey
from ..utils import slugify_name
from .base import BuildHandler

if TYPE_CHECKING:
    from ..context import ExecutionContext

logger = logging.getLogger(__name__)


def _template_source(configured: Any, fallback: Path | None) -> Path | None:
    source = Path(str(configured)) if configured else fallback
    if source is not None and not source.is_dir():
        raise MissingConfigurationError(f"Template path does not exist: {source}")
    return source


def _prepare_part(target: Path, template: Path | None) -> None:
    try:
        if template is None:
            target.mkdir(parents=True, exist_ok=True)
        else:
            logger.info("Copying template from %s to %s", template, target)
            shutil.copytree(template, target, dirs_exist_ok=True)
    except OSError as exc:
        raise FileWriteError(f"Unable to prepare project directory {target}: {exc}") from exc


class ProjectInitHandler(BuildHandler[dict[str, str]]):
    """Creates the project directory, copies the project templates and publishes their paths.

    The frontend and backend directories are seeded from ``template_dir`` and
    ``backend_template_dir`` (node config first, then settings). Without a
    template the directory is created empty.
    """

    id = "op:PROJECT::STATE:SETUP"

    async def run(
        self,
        context: "ExecutionContext",
        node: BuildNode,
        dependencies: Mapping[str, BuildResult[Any]],
    ) -> BuildResult[dict[str, str]]:
        settings = context.settings
        frontend_template = _template_source(node.config.get("template_dir"), settings.template_dir_path)
        backend_template = _template_source(node.config.get("backend_template_dir"), settings.backend_template_dir_path)

        project_name = str(context.get_global(GlobalKey.PROJECT_NAME) or context.sequence.id)
        configured_root = context.get_global(GlobalKey.OUTPUT_ROOT)
        output_root = Path(str(configured_root)) if configured_root else settings.output_root_path
        folder = f"{slugify_name(project_name) or 'project'}-{context.run_id}"
        project_path = (output_root / folder).resolve()
        frontend_path = project_path / str(node.config.get("frontend_dir", "frontend"))
        backend_path = project_path / str(node.config.get("backend_dir", "backend"))
        _prepare_part(frontend_path, frontend_template)
        _prepare_part(backend_path, backend_template)

        context.set_global(GlobalKey.PROJECT_UUID, context.run_id)
        context.set_global(GlobalKey.PROJECT_PATH, str(project_path))
        context.set_global(GlobalKey.FRONTEND_PATH, str(frontend_path))
        context.set_global(GlobalKey.BACKEND_PATH, str(backend_path))
        logger.info("Project %s initialised at %s", project_name, project_path)
        return BuildResult.ok(
            {
                "project_uuid": context.run_id,
                "project_path": str(project_path),
                "frontend_path": str(frontend_path),
                "backend_path": str(backend_path),
            }
        )
