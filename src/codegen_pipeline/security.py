from __future__ import annotations

from pathlib import Path

from .errors import PathSafetyError

PROTECTED_MANIFESTS = frozenset(
    {
        "package.json",
        "package-lock.json",
        "yarn.lock",
        "pnpm-lock.yaml",
        "bun.lockb",
    }
)
FORBIDDEN_DIRECTORIES = frozenset({"node_modules", "vendor", ".git"})


def _is_secret_env(name: str) -> bool:
    return name == ".env" or name.startswith(".env.")


def check_path_safety(project_root: Path, target: str | Path, *, for_write: bool = True) -> Path:
    """Resolve ``target`` under ``project_root`` and enforce the file-system policy.

    Reads may touch dependency manifests; writes may not. Vendored dependency
    directories and secret env files are never reachable.

    Returns:
        The resolved absolute path.

    Raises:
        PathSafetyError: If the path escapes the root or hits a protected location.
    """
    root = project_root.resolve()
    candidate = Path(target)
    if candidate.is_absolute():
        raise PathSafetyError(f"Absolute paths are not allowed: {target}")
    resolved = (root / candidate).resolve()
    try:
        relative = resolved.relative_to(root)
    except ValueError as exc:
        raise PathSafetyError(f"Unauthorized file access detected: {target}") from exc
    if not relative.parts:
        raise PathSafetyError(f"Path resolves to the project root itself: {target}")

    for part in relative.parts:
        if part in FORBIDDEN_DIRECTORIES:
            raise PathSafetyError(f"Path targets a protected directory ({part}): {target}")
        if _is_secret_env(part):
            raise PathSafetyError(f"Path targets a secret env file: {target}")
    if for_write and relative.name in PROTECTED_MANIFESTS:
        raise PathSafetyError(f"Dependency manifests are never modified automatically: {target}")
    return resolved
