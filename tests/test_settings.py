import pytest

from codegen_pipeline.settings import RuntimeSettings


def test_runtime_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "BUILD_POLL_INTERVAL_SECONDS",
        "BUILD_MAX_FIX_ATTEMPTS",
        "BUILD_FAIL_FAST",
        "BUILD_MODEL_DEFAULT",
        "BUILD_INSTALL_COMMAND",
        "BUILD_BUILD_COMMAND",
    ):
        monkeypatch.delenv(name, raising=False)
    settings = RuntimeSettings.from_env()
    assert settings.poll_interval_seconds == 0.5
    assert settings.max_fix_attempts == 3
    assert settings.fail_fast is False
    assert settings.model_default == "gpt-4o-mini"
    assert settings.install_argv == ["npm", "install"]
    assert settings.build_argv == ["npm", "run", "build"]


def test_runtime_settings_from_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BUILD_POLL_INTERVAL_SECONDS", "0.05")
    monkeypatch.setenv("BUILD_MAX_FIX_ATTEMPTS", "2")
    monkeypatch.setenv("BUILD_FAIL_FAST", "yes")
    monkeypatch.setenv("BUILD_MODEL_FIX", "  gpt-4o  ")
    monkeypatch.setenv("BUILD_BUILD_COMMAND", "npm run check")
    settings = RuntimeSettings.from_env()
    assert settings.poll_interval_seconds == 0.05
    assert settings.max_fix_attempts == 2
    assert settings.fail_fast is True
    assert settings.model_fix == "gpt-4o"
    assert settings.build_argv == ["npm", "run", "check"]


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("BUILD_MAX_FIX_ATTEMPTS", "many"),
        ("BUILD_MAX_FIX_ATTEMPTS", "-1"),
        ("BUILD_NO_PROGRESS_LIMIT", "0"),
        ("BUILD_POLL_INTERVAL_SECONDS", "fast"),
        ("BUILD_FAIL_FAST", "maybe"),
        ("BUILD_MODEL_DEFAULT", "   "),
        ("BUILD_INSTALL_COMMAND", ""),
    ],
)
def test_runtime_settings_rejects_invalid_values(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        RuntimeSettings.from_env()


def test_runtime_settings_log_dir_path() -> None:
    assert RuntimeSettings().log_dir_path is None
    assert str(RuntimeSettings(log_dir="logs").log_dir_path) == "logs"


def test_runtime_settings_template_dirs(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BUILD_TEMPLATE_DIR", "  templates/react-ts ")
    monkeypatch.delenv("BUILD_BACKEND_TEMPLATE_DIR", raising=False)
    monkeypatch.delenv("BUILD_BACKEND_BUILD_COMMAND", raising=False)
    settings = RuntimeSettings.from_env()
    assert settings.template_dir_path is not None
    assert settings.template_dir_path.as_posix() == "templates/react-ts"
    assert settings.backend_template_dir_path is None
    assert settings.backend_build_argv == ["npm", "run", "check"]
    assert RuntimeSettings(output_root="out").output_root_path.as_posix() == "out"
