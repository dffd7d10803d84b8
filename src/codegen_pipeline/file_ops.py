from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError

from .errors import ArtifactNotFoundError, FileModificationError, FileWriteError, ResponseParsingError
from .models import FixResponse, ReadOperation, RenameOperation, WriteOperation
from .security import check_path_safety
from .utils import DEFAULT_RESPONSE_TAG, extract_json_payload, parse_generate_tag, remove_code_block_fences

logger = logging.getLogger(__name__)

FileOperation = WriteOperation | RenameOperation | ReadOperation


class FixResponseParser:
    """Parses a tagged fix response into exactly one file operation."""

    def __init__(self, *, tag: str = DEFAULT_RESPONSE_TAG) -> None:
        self.tag = tag

    def parse(self, text: str) -> FileOperation:
        body = parse_generate_tag(text, tag=self.tag)
        payload = extract_json_payload(body)
        fix = payload.get("fix")
        operation = fix.get("operation") if isinstance(fix, dict) else None
        if not isinstance(operation, dict):
            raise ResponseParsingError("Invalid fix payload: missing 'fix.operation'")
        if isinstance(operation.get("type"), str):
            operation["type"] = operation["type"].strip().upper()
        try:
            parsed = FixResponse.model_validate(payload)
        except ValidationError as exc:
            raise ResponseParsingError(f"Invalid fix operation: {exc}") from exc

        result = parsed.fix.operation
        if isinstance(result, WriteOperation):
            return WriteOperation(type="WRITE", content=remove_code_block_fences(result.content))
        return result


class FileOperationManager:
    """Applies file operations inside a project root under the path-safety policy."""

    def __init__(self, project_root: Path) -> None:
        self.project_root = project_root.resolve()
        self.rename_map: dict[str, str] = {}

    def resolve(self, path: str, *, for_write: bool = True) -> Path:
        return check_path_safety(self.project_root, path, for_write=for_write)

    def write(self, path: str, content: str) -> Path:
        target = self.resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise FileWriteError(f"Failed to write {path}: {exc}") from exc
        logger.debug("Wrote %s", target)
        return target

    def read(self, path: str) -> str:
        target = self.resolve(path, for_write=False)
        if not target.is_file():
            raise ArtifactNotFoundError(f"File not found: {path}")
        try:
            return target.read_text(encoding="utf-8")
        except OSError as exc:
            raise ArtifactNotFoundError(f"Failed to read {path}: {exc}") from exc

    def rename(self, original_path: str, new_path: str) -> str:
        """Move ``original_path`` to ``new_path`` and record the mapping. Returns the new path."""
        source = self.resolve(original_path)
        target = self.resolve(new_path)
        if not source.exists():
            raise ArtifactNotFoundError(f"Cannot rename missing file: {original_path}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            source.replace(target)
        except OSError as exc:
            raise FileModificationError(f"Failed to rename {original_path} to {new_path}: {exc}") from exc

        # Keep the map pointing from the first known name to the newest one.
        origin = next((key for key, value in self.rename_map.items() if value == original_path), original_path)
        self.rename_map[origin] = new_path
        logger.info("Renamed %s -> %s", original_path, new_path)
        return new_path

    def latest_path(self, path: str) -> str:
        return self.rename_map.get(path, path)
