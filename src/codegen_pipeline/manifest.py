from __future__ import annotations

import logging
import posixpath
from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from pydantic import ValidationError

from .errors import ResponseParsingError
from .models import ManifestPayload
from .utils import extract_json_payload

logger = logging.getLogger(__name__)

FRAMEWORK_IMPORT_PREFIX = "@/components/ui/"

FRAMEWORK_COMPONENTS = (
    "accordion",
    "alert",
    "alert-dialog",
    "avatar",
    "badge",
    "button",
    "card",
    "checkbox",
    "dialog",
    "dropdown-menu",
    "form",
    "input",
    "label",
    "popover",
    "select",
    "separator",
    "sheet",
    "skeleton",
    "switch",
    "table",
    "tabs",
    "textarea",
    "toast",
    "tooltip",
)

FRAMEWORK_COMPONENT_PATHS = frozenset(f"src/components/ui/{name}.tsx" for name in FRAMEWORK_COMPONENTS)


def normalize_manifest_path(path: str) -> str:
    cleaned = path.strip().replace("\\", "/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    cleaned = cleaned.lstrip("/")
    return posixpath.normpath(cleaned) if cleaned else ""


def is_framework_path(path: str) -> bool:
    """Framework-provided components are assumed to exist in every generated project."""
    if path.startswith(FRAMEWORK_IMPORT_PREFIX):
        return True
    return normalize_manifest_path(path) in FRAMEWORK_COMPONENT_PATHS


class VirtualDirectory:
    """Declared set of file paths a generation stage may reference or create."""

    def __init__(self, paths: Iterable[str] = (), *, include_framework: bool = True) -> None:
        self._files: set[str] = set()
        self._directories: set[str] = set()
        self.merge(paths)
        if include_framework:
            self.merge(FRAMEWORK_COMPONENT_PATHS)

    @classmethod
    def from_payload(
        cls,
        payload: ManifestPayload | Mapping[str, Any] | str,
        *,
        include_framework: bool = True,
    ) -> "VirtualDirectory":
        """Build a manifest from a ``{"Paths": [...]}`` payload or raw model output."""
        if isinstance(payload, str):
            payload = extract_json_payload(payload)
        if not isinstance(payload, ManifestPayload):
            try:
                payload = ManifestPayload.model_validate(payload)
            except ValidationError as exc:
                raise ResponseParsingError(f"Invalid file structure payload: {exc}") from exc
        return cls(payload.paths, include_framework=include_framework)

    def merge(self, paths: Iterable[str]) -> None:
        for raw in paths:
            path = normalize_manifest_path(raw)
            if not path or path == ".":
                continue
            self._files.add(path)
            parent = posixpath.dirname(path)
            while parent:
                self._directories.add(parent)
                parent = posixpath.dirname(parent)

    def is_valid_file(self, path: str) -> bool:
        if is_framework_path(path):
            return True
        return normalize_manifest_path(path) in self._files

    def is_valid_directory(self, path: str) -> bool:
        return normalize_manifest_path(path) in self._directories

    def validate(self, paths: Iterable[str]) -> list[str]:
        """Return the paths not present in the manifest. An empty list means valid."""
        return sorted({path for path in paths if not self.is_valid_file(path)})

    def all_files(self) -> list[str]:
        return sorted(self._files)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and self.is_valid_file(path)

    def __iter__(self) -> Iterator[str]:
        return iter(self.all_files())

    def __len__(self) -> int:
        return len(self._files)
