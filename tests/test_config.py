from pathlib import Path

import pytest

from tack.config import Settings
from tack.dispatcher import DispatchPolicy
from tack.errors import InvalidModelFormatError, ModelNotConfiguredError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    names = ("MODEL", "MAX_MODEL_CALLS", "MAX_RETRIES", "DISPATCH_POLICY", "LOG_LEVEL", "WORKSPACE")
    for name in names:
        monkeypatch.delenv(f"TACK_{name}", raising=False)


def test_defaults() -> None:
    settings = Settings(_env_file=None)

    assert settings.model is None
    assert settings.max_model_calls == 12
    assert settings.max_retries == 3
    assert settings.dispatch_policy == DispatchPolicy.SEQUENTIAL
    assert settings.workspace == Path.cwd()
    assert settings.log_level == "INFO"


def test_reads_prefixed_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TACK_MODEL", "openai:gpt-4o-mini")
    monkeypatch.setenv("TACK_MAX_MODEL_CALLS", "5")
    monkeypatch.setenv("TACK_DISPATCH_POLICY", "parallel")
    monkeypatch.setenv("TACK_LOG_LEVEL", "debug")
    monkeypatch.setenv("TACK_WORKSPACE", str(tmp_path))

    settings = Settings(_env_file=None)

    assert settings.require_model() == "openai:gpt-4o-mini"
    assert settings.max_model_calls == 5
    assert settings.dispatch_policy == DispatchPolicy.PARALLEL
    assert settings.log_level == "DEBUG"
    assert settings.workspace == tmp_path


def test_reads_env_file(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("TACK_MODEL=anthropic:claude\nTACK_MAX_RETRIES=0\nUNRELATED=1\n", encoding="utf-8")

    settings = Settings(_env_file=env_file)

    assert settings.model == "anthropic:claude"
    assert settings.max_retries == 0


def test_require_model_errors() -> None:
    with pytest.raises(ModelNotConfiguredError):
        Settings(_env_file=None).require_model()
    with pytest.raises(InvalidModelFormatError):
        Settings(_env_file=None, model="gpt-4o").require_model()


def test_limits_follow_settings() -> None:
    settings = Settings(_env_file=None, max_model_calls=3, max_retries=1, continue_batch_on_error=False)

    limits = settings.limits()

    assert limits.max_model_calls == 3
    assert limits.max_retries == 1
    assert limits.continue_batch_on_error is False
    assert limits.model_timeout_seconds == 120.0
