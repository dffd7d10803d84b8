from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, replace
from pathlib import Path


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    poll_interval_seconds: float = 0.5
    readiness_max_attempts: int = 10
    no_progress_limit: int = 10
    handler_max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    max_fix_attempts: int = 3
    max_context_reads: int = 2
    fail_fast: bool = False
    model_default: str = "gpt-4o-mini"
    model_fix: str = "gpt-4o"
    output_root: str = "projects"
    database_type: str = "SQLite"
    install_command: str = "npm install"
    build_command: str = "npm run build"
    backend_build_command: str = "npm run check"
    template_dir: str = ""
    backend_template_dir: str = ""
    log_dir: str = ""

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            poll_interval_seconds=_get_env_float("BUILD_POLL_INTERVAL_SECONDS", default=0.5, minimum=0.0, maximum=60.0),
            readiness_max_attempts=_get_env_int("BUILD_READINESS_MAX_ATTEMPTS", default=10, minimum=1),
            no_progress_limit=_get_env_int("BUILD_NO_PROGRESS_LIMIT", default=10, minimum=1),
            handler_max_retries=_get_env_int("BUILD_HANDLER_MAX_RETRIES", default=3, minimum=0, maximum=20),
            retry_backoff_seconds=_get_env_float("BUILD_RETRY_BACKOFF_SECONDS", default=1.0, minimum=0.0, maximum=60.0),
            max_fix_attempts=_get_env_int("BUILD_MAX_FIX_ATTEMPTS", default=3, minimum=0, maximum=20),
            max_context_reads=_get_env_int("BUILD_MAX_CONTEXT_READS", default=2, minimum=0, maximum=20),
            fail_fast=_get_env_bool("BUILD_FAIL_FAST", default=False),
            model_default=os.getenv("BUILD_MODEL_DEFAULT", "gpt-4o-mini"),
            model_fix=os.getenv("BUILD_MODEL_FIX", "gpt-4o"),
            output_root=os.getenv("BUILD_OUTPUT_ROOT", "projects"),
            database_type=os.getenv("BUILD_DATABASE_TYPE", "SQLite"),
            install_command=os.getenv("BUILD_INSTALL_COMMAND", "npm install"),
            build_command=os.getenv("BUILD_BUILD_COMMAND", "npm run build"),
            backend_build_command=os.getenv("BUILD_BACKEND_BUILD_COMMAND", "npm run check"),
            template_dir=os.getenv("BUILD_TEMPLATE_DIR", ""),
            backend_template_dir=os.getenv("BUILD_BACKEND_TEMPLATE_DIR", ""),
            log_dir=os.getenv("BUILD_LOG_DIR", ""),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        model_default = self.model_default.strip()
        if not model_default:
            raise ValueError("BUILD_MODEL_DEFAULT must be non-empty")
        model_fix = self.model_fix.strip()
        if not model_fix:
            raise ValueError("BUILD_MODEL_FIX must be non-empty")

        if self.poll_interval_seconds < 0:
            raise ValueError(f"BUILD_POLL_INTERVAL_SECONDS must be >= 0, got: {self.poll_interval_seconds}")
        if self.readiness_max_attempts < 1:
            raise ValueError(f"BUILD_READINESS_MAX_ATTEMPTS must be >= 1, got: {self.readiness_max_attempts}")
        if self.no_progress_limit < 1:
            raise ValueError(f"BUILD_NO_PROGRESS_LIMIT must be >= 1, got: {self.no_progress_limit}")
        if self.handler_max_retries < 0:
            raise ValueError(f"BUILD_HANDLER_MAX_RETRIES must be >= 0, got: {self.handler_max_retries}")
        if self.max_fix_attempts < 0:
            raise ValueError(f"BUILD_MAX_FIX_ATTEMPTS must be >= 0, got: {self.max_fix_attempts}")
        if self.max_context_reads < 0:
            raise ValueError(f"BUILD_MAX_CONTEXT_READS must be >= 0, got: {self.max_context_reads}")

        if not self.output_root.strip():
            raise ValueError("BUILD_OUTPUT_ROOT must be non-empty")
        if not self.database_type.strip():
            raise ValueError("BUILD_DATABASE_TYPE must be non-empty")
        if not shlex.split(self.install_command):
            raise ValueError("BUILD_INSTALL_COMMAND must be non-empty")
        if not shlex.split(self.build_command):
            raise ValueError("BUILD_BUILD_COMMAND must be non-empty")
        if not shlex.split(self.backend_build_command):
            raise ValueError("BUILD_BACKEND_BUILD_COMMAND must be non-empty")
        return replace(
            self,
            model_default=model_default,
            model_fix=model_fix,
            output_root=self.output_root.strip(),
            database_type=self.database_type.strip(),
            template_dir=self.template_dir.strip(),
            backend_template_dir=self.backend_template_dir.strip(),
        )

    @property
    def output_root_path(self) -> Path:
        return Path(self.output_root)

    @property
    def template_dir_path(self) -> Path | None:
        return Path(self.template_dir) if self.template_dir else None

    @property
    def backend_template_dir_path(self) -> Path | None:
        return Path(self.backend_template_dir) if self.backend_template_dir else None

    @property
    def log_dir_path(self) -> Path | None:
        return Path(self.log_dir) if self.log_dir else None

    @property
    def install_argv(self) -> list[str]:
        return shlex.split(self.install_command)

    @property
    def build_argv(self) -> list[str]:
        return shlex.split(self.build_command)

    @property
    def backend_build_argv(self) -> list[str]:
        return shlex.split(self.backend_build_command)


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean flag, got: {raw!r}")
