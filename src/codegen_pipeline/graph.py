"""Dependency graph utilities: path resolution, cycle detection, ordering and layering."""

from __future__ import annotations

import logging
import posixpath
import re
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from graphlib import CycleError, TopologicalSorter
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import (
    CircularDependencyError,
    FileWriteError,
    ManifestValidationError,
    ResponseParsingError,
    UnresolvedDependencyError,
)
from .manifest import VirtualDirectory, is_framework_path, normalize_manifest_path
from .models import DependencyGraphPayload
from .security import check_path_safety

logger = logging.getLogger(__name__)

DEFAULT_INDEX_FILE = "index.ts"

_VALID_PATH = re.compile(r"^[a-zA-Z0-9_\-/.]+$")


@dataclass(frozen=True)
class DependencyGraph:
    """Resolved dependencies per node. Every referenced node appears as a key."""

    dependencies: dict[str, tuple[str, ...]]

    @property
    def nodes(self) -> set[str]:
        return set(self.dependencies)

    def edges(self) -> list[tuple[str, str]]:
        """Return ``(dependency, dependent)`` pairs."""
        return [(dep, node) for node, deps in self.dependencies.items() for dep in deps]


@dataclass(frozen=True)
class GenerationPlan:
    graph: DependencyGraph
    layers: list[list[str]]

    @property
    def order(self) -> list[str]:
        return [node for layer in self.layers for node in layer]


def resolve_dependency(current_file: str, dependency: str, *, index_file: str = DEFAULT_INDEX_FILE) -> str:
    """Resolve ``dependency`` relative to the directory of ``current_file``.

    A token without a file extension names a directory and resolves to its index file.
    """
    token = dependency.strip().replace("\\", "/")
    if not posixpath.splitext(token)[1]:
        token = posixpath.join(token, index_file)
    joined = posixpath.join(posixpath.dirname(current_file), token)
    return normalize_manifest_path(joined)


def _check_path_token(path: str, *, owner: str | None = None) -> None:
    where = f' in file "{owner}"' if owner else ""
    if not _VALID_PATH.match(path):
        raise ResponseParsingError(f'Invalid path "{path}"{where}')
    if "//" in path or path.endswith("/"):
        raise ResponseParsingError(f'Malformed path "{path}"{where}')


def _resolve_token(file_path: str, dep: str, declared: set[str], *, index_file: str) -> str:
    if dep in declared and not posixpath.splitext(dep)[1]:
        return dep
    return resolve_dependency(file_path, dep, index_file=index_file)


def _coerce_payload(payload: DependencyGraphPayload | Mapping[str, Any]) -> DependencyGraphPayload:
    if isinstance(payload, DependencyGraphPayload):
        return payload
    try:
        return DependencyGraphPayload.model_validate(payload)
    except ValidationError as exc:
        raise ResponseParsingError(f"Invalid dependency graph payload: {exc}") from exc


def build_dependency_graph(
    payload: DependencyGraphPayload | Mapping[str, Any],
    *,
    index_file: str = DEFAULT_INDEX_FILE,
) -> DependencyGraph:
    """Build a graph from ``{"files": {path: {"dependsOn": [...]}}}``.

    Tokens are resolved relative to the referencing file. An extension-less token
    that names a declared file is used verbatim. Framework component paths are
    never become nodes, even when a relative import resolves to one.
    """
    parsed = _coerce_payload(payload)
    declared = set(parsed.files)
    dependencies: dict[str, list[str]] = {}

    for file_path, details in parsed.files.items():
        _check_path_token(file_path)
        if is_framework_path(file_path):
            logger.debug("Skipping framework component %s", file_path)
            continue
        resolved_deps = dependencies.setdefault(file_path, [])
        for dep in details.depends_on:
            if is_framework_path(dep):
                continue
            _check_path_token(dep, owner=file_path)
            resolved = _resolve_token(file_path, dep, declared, index_file=index_file)
            if is_framework_path(resolved):
                continue
            if resolved == file_path:
                raise CircularDependencyError([file_path, file_path])
            if resolved not in resolved_deps:
                resolved_deps.append(resolved)
            dependencies.setdefault(resolved, [])

    logger.debug("Built dependency graph with %d nodes", len(dependencies))
    return DependencyGraph(dependencies={node: tuple(deps) for node, deps in dependencies.items()})


def detect_cycles(graph: DependencyGraph | Mapping[str, Iterable[str]]) -> None:
    """Raise ``CircularDependencyError`` naming the cycle when a topological sort is impossible."""
    mapping = graph.dependencies if isinstance(graph, DependencyGraph) else graph
    sorter = TopologicalSorter({node: tuple(deps) for node, deps in mapping.items()})
    try:
        sorter.prepare()
    except CycleError as exc:
        cycle = exc.args[1] if len(exc.args) > 1 else []
        raise CircularDependencyError(cycle) from exc


def concurrency_layers(graph: DependencyGraph | Mapping[str, Iterable[str]]) -> list[list[str]]:
    """Partition nodes into waves where each wave depends only on earlier waves.

    Nodes are sorted within a wave so repeated runs produce identical output.

    Raises:
        UnresolvedDependencyError: If nodes remain with positive in-degree.
    """
    mapping = graph.dependencies if isinstance(graph, DependencyGraph) else graph
    indegree: dict[str, int] = {}
    dependents: dict[str, list[str]] = defaultdict(list)

    for node, deps in mapping.items():
        unique_deps = set(deps)
        indegree[node] = indegree.get(node, 0) + len(unique_deps)
        for dep in unique_deps:
            indegree.setdefault(dep, 0)
            dependents[dep].append(node)

    layers: list[list[str]] = []
    current = sorted(node for node, degree in indegree.items() if degree == 0)
    placed = 0
    while current:
        layers.append(current)
        placed += len(current)
        upcoming: list[str] = []
        for node in current:
            for nxt in dependents[node]:
                indegree[nxt] -= 1
                if indegree[nxt] == 0:
                    upcoming.append(nxt)
        current = sorted(upcoming)

    if placed != len(indegree):
        leftover = [node for node, degree in indegree.items() if degree > 0]
        raise UnresolvedDependencyError(
            f"Unresolved dependencies remain after layering: {', '.join(sorted(leftover))}",
            unresolved=leftover,
        )
    return layers


def topological_order(graph: DependencyGraph | Mapping[str, Iterable[str]]) -> list[str]:
    """Return nodes with every dependency ahead of its dependents."""
    detect_cycles(graph)
    return [node for layer in concurrency_layers(graph) for node in layer]


def plan_generation(
    payload: DependencyGraphPayload | Mapping[str, Any],
    manifest: VirtualDirectory,
    *,
    index_file: str = DEFAULT_INDEX_FILE,
) -> GenerationPlan:
    """Validate a dependency graph against the manifest without touching the file system."""
    graph = build_dependency_graph(payload, index_file=index_file)
    detect_cycles(graph)
    missing = manifest.validate(graph.nodes)
    if missing:
        raise ManifestValidationError(missing)
    return GenerationPlan(graph=graph, layers=concurrency_layers(graph))


def materialize_files(
    payload: DependencyGraphPayload | Mapping[str, Any],
    project_root: Path,
    manifest: VirtualDirectory,
    *,
    index_file: str = DEFAULT_INDEX_FILE,
) -> list[Path]:
    """Create placeholder files in dependency order. Nothing is written if planning fails."""
    plan = plan_generation(payload, manifest, index_file=index_file)
    targets = [check_path_safety(project_root, path) for path in plan.order]
    created: list[Path] = []
    for target in targets:
        logger.info("Generating file in dependency order: %s", target)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(f"// Generated file: {target.name}", encoding="utf-8")
        except OSError as exc:
            raise FileWriteError(f"Failed to create {target}: {exc}") from exc
        created.append(target)
    logger.info("All %d files generated successfully", len(created))
    return created
