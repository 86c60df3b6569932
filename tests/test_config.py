from pathlib import Path

import pytest
from pydantic import ValidationError

from multichat.config import PROJECT_ROOT, Settings


def test_defaults() -> None:
    settings = Settings()

    assert settings.base_url == "http://localhost:3001/v1"
    assert settings.default_model == "openai::gpt-4o-mini"
    assert settings.reasoning_effort == "unset"
    assert settings.api_token is None
    assert settings.ui_flush_interval == 0.05


def test_environment_aliases(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MULTICHAT_API_BASE", "https://chat.example.com/api/")
    monkeypatch.setenv("MULTICHAT_DEFAULT_MODEL", "anthropic::claude")
    monkeypatch.setenv("MULTICHAT_TIMEOUT", "30")
    monkeypatch.setenv("MULTICHAT_TOOLS", '["search", "calendar"]')
    monkeypatch.setenv("MULTICHAT_API_TOKEN", "token-123")

    settings = Settings()

    assert settings.base_url == "https://chat.example.com/api"
    assert settings.default_model == "anthropic::claude"
    assert settings.request_timeout == 30
    assert settings.enabled_tools == ["search", "calendar"]
    assert settings.api_token is not None
    assert settings.api_token.get_secret_value() == "token-123"


def test_invalid_values_are_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MULTICHAT_REASONING_EFFORT", "extreme")

    with pytest.raises(ValidationError):
        Settings()


def test_resolve_path_anchors_relative_paths() -> None:
    settings = Settings()

    assert settings.resolve_path(Path("logs/app")) == (PROJECT_ROOT / "logs/app").resolve()
    assert settings.resolve_path(Path("/tmp/x")) == Path("/tmp/x")
