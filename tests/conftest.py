import pathlib
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer environment variables out of Settings()."""

    for name in (
        "MULTICHAT_API_BASE",
        "MULTICHAT_API_TOKEN",
        "MULTICHAT_DEFAULT_MODEL",
        "MULTICHAT_DEFAULT_PROVIDER",
        "MULTICHAT_TIMEOUT",
        "MULTICHAT_STREAM",
        "MULTICHAT_TOOLS_ENABLED",
        "MULTICHAT_TOOLS",
        "MULTICHAT_REASONING_EFFORT",
        "MULTICHAT_SYSTEM_PROMPT",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
