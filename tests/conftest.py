"""Pytest configuration and shared fixtures."""

import shlex
import shutil
import sys
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from droid_acp.config import BridgeSettings  # noqa: E402

FAKE_DROID = Path(__file__).parent / "fake_droid.py"


class RecordingClient:
    """Stand-in for the ACP client connection that records session updates."""

    def __init__(self) -> None:
        self.updates: list[tuple[str, Any]] = []

    async def session_update(self, session_id: str, update: Any, **kwargs: Any) -> None:
        self.updates.append((session_id, update))

    def updates_of(self, cls: type) -> list[Any]:
        return [u for _, u in self.updates if isinstance(u, cls)]


# --- Fixtures ---


@pytest.fixture
def temp_dir(tmp_path):
    """Create a temporary directory for tests."""
    return tmp_path


@pytest.fixture
def fake_droid_command() -> list[str]:
    """Command prefix that runs the scripted fake droid."""
    return [sys.executable, str(FAKE_DROID)]


@pytest.fixture
def scenario(monkeypatch):
    """Select the fake droid's behaviour for the test."""

    def _set(name: str) -> None:
        monkeypatch.setenv("FAKE_DROID_SCENARIO", name)

    _set("hello")
    return _set


@pytest.fixture
def fake_settings(fake_droid_command) -> BridgeSettings:
    """Bridge settings pointing at the fake droid, with short timeouts."""
    return BridgeSettings(
        droid_executable=shlex.join(fake_droid_command),
        init_timeout=10.0,
        prompt_timeout=10.0,
    )


@pytest.fixture
def recording_client() -> RecordingClient:
    return RecordingClient()


@pytest.fixture
def sample_mcp_servers():
    """Sample MCP server descriptors as an ACP client sends them."""
    return [
        {
            "name": "files",
            "command": "npx",
            "args": ["-y", "@modelcontextprotocol/server-filesystem"],
            "env": [{"name": "ROOT", "value": "/tmp"}],
        },
        {
            "type": "http",
            "name": "docs",
            "url": "https://example.com/mcp",
            "headers": [{"name": "Authorization", "value": "Bearer x"}],
        },
    ]


# --- Markers ---


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, no external dependencies)")
    config.addinivalue_line("markers", "integration: Integration tests (require droid CLI)")
    config.addinivalue_line("markers", "slow: Slow tests")


# --- Skip conditions ---


def is_droid_cli_available() -> bool:
    """Check if the droid CLI is on PATH."""
    return shutil.which("droid") is not None


requires_droid_cli = pytest.mark.skipif(
    not is_droid_cli_available(),
    reason="droid CLI not available",
)
