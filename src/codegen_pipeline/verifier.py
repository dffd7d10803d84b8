from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .errors import MissingConfigurationError
from .models import VerificationResult
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)


class Verifier(Protocol):
    """External build check: accepts or rejects the project as it is on disk."""

    async def verify(self, project_dir: Path) -> VerificationResult:
        ...


@dataclass(frozen=True)
class CommandOutcome:
    argv: tuple[str, ...]
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandVerifier:
    """Runs a dependency install step followed by a build step.

    The combined stdout/stderr stream of the failing command is returned as the
    verification error.
    """

    def __init__(
        self,
        *,
        install_command: Sequence[str] = ("npm", "install"),
        build_command: Sequence[str] = ("npm", "run", "build"),
        timeout_seconds: float | None = 600.0,
        install_once: bool = True,
    ) -> None:
        if not build_command:
            raise ValueError("build_command must be non-empty")
        self.install_command = tuple(install_command)
        self.build_command = tuple(build_command)
        self.timeout_seconds = timeout_seconds
        self.install_once = install_once
        self._installed: set[Path] = set()
        self._install_locks: dict[Path, asyncio.Lock] = {}

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "CommandVerifier":
        return cls(install_command=settings.install_argv, build_command=settings.build_argv)

    async def run_command(self, argv: Sequence[str], cwd: Path) -> CommandOutcome:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as exc:
            raise MissingConfigurationError(f"Verifier command not found: {argv[0]}") from exc

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except TimeoutError:
            process.kill()
            await process.wait()
            return CommandOutcome(
                argv=tuple(argv),
                returncode=-1,
                output=f"Command timed out after {self.timeout_seconds}s: {' '.join(argv)}",
            )
        output = stdout.decode("utf-8", errors="replace") if stdout else ""
        return CommandOutcome(argv=tuple(argv), returncode=process.returncode or 0, output=output)

    async def _install(self, root: Path) -> CommandOutcome | None:
        # Concurrent verifies of one root share a single install.
        lock = self._install_locks.setdefault(root, asyncio.Lock())
        async with lock:
            if self.install_once and root in self._installed:
                return None
            logger.info("Installing dependencies in %s", root)
            install = await self.run_command(self.install_command, root)
            if not install.ok:
                logger.warning("Dependency install failed in %s", root)
                return install
            self._installed.add(root)
            return install

    async def verify(self, project_dir: Path) -> VerificationResult:
        root = project_dir.resolve()
        if self.install_command:
            install = await self._install(root)
            if install is not None and not install.ok:
                return VerificationResult(success=False, error=install.output)

        logger.info("Running build check in %s", root)
        build = await self.run_command(self.build_command, root)
        if not build.ok:
            return VerificationResult(success=False, error=build.output)
        return VerificationResult(success=True)


class SqliteSchemaVerifier:
    """Executes a schema file against an in-memory SQLite database.

    The database engine's error message is returned as the verification error.
    """

    def __init__(self, schema_path: str) -> None:
        self.schema_path = schema_path

    def _execute(self, script: str) -> None:
        connection = sqlite3.connect(":memory:")
        try:
            connection.executescript(script)
        finally:
            connection.close()

    async def verify(self, project_dir: Path) -> VerificationResult:
        target = project_dir / self.schema_path
        try:
            script = target.read_text(encoding="utf-8")
        except OSError as exc:
            return VerificationResult(success=False, error=f"Unable to read schema {self.schema_path}: {exc}")
        logger.info("Checking SQLite schema %s", target)
        try:
            await asyncio.to_thread(self._execute, script)
        except sqlite3.Error as exc:
            return VerificationResult(success=False, error=f"{self.schema_path}: {exc}")
        return VerificationResult(success=True)
