"""
Pytest configuration for Ticket Worker tests.

This module provides:
1. A controllable clock for recency-dependent tests
2. Store/config fixtures rooted in tmp_path
3. Test session configuration
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from ticket_worker.config import AppConfig, ConfigStore, Settings
from ticket_worker.models import ActiveKeys
from ticket_worker.workspace_store import WorkspaceStore


# -----------------------------------------------------------------------------
# Clock
# -----------------------------------------------------------------------------
class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def workspaces_dir(tmp_path) -> Path:
    return tmp_path / "workspaces"


@pytest.fixture
def claude_home(tmp_path) -> Path:
    return tmp_path / "claude-home"


@pytest.fixture
def store(workspaces_dir, claude_home, clock) -> WorkspaceStore:
    """WorkspaceStore on tmp_path driven by the fake clock."""
    return WorkspaceStore(workspaces_dir, claude_home, clock=clock)


@pytest.fixture
def config_store(tmp_path) -> ConfigStore:
    return ConfigStore(tmp_path / "config.yaml")


@pytest.fixture
def small_config() -> ConfigStore:
    """In-memory config with a cap of two sessions."""
    return ConfigStore(initial=AppConfig(max_sessions=2))


@pytest.fixture
def active() -> ActiveKeys:
    return ActiveKeys()


@pytest.fixture
def settings(tmp_path, workspaces_dir, claude_home) -> Settings:
    """Settings whose CLI command is the running interpreter."""
    return Settings(
        workspaces_dir=workspaces_dir,
        claude_home=claude_home,
        config_file=tmp_path / "config.yaml",
        claude_command=sys.executable,
        timeout_ms=5000,
        kill_grace_ms=500,
    )


def create_session_data(store: WorkspaceStore, key: str) -> Path:
    """Simulate the CLI having left continuation data for key."""
    data_dir = store.session_data_dir(store.workspace_path(key))
    data_dir.mkdir(parents=True)
    (data_dir / "conversation.jsonl").write_text('{"role": "user"}\n')
    return data_dir


# -----------------------------------------------------------------------------
# Session Configuration
# -----------------------------------------------------------------------------
def pytest_configure(config):
    """Configure pytest session."""
    config.addinivalue_line(
        "markers", "slow: test spawns real subprocesses with timeouts"
    )
