"""Shared pytest fixtures for record-sync tests."""

import pytest
from dotenv import load_dotenv

from record_sync.config import Config

load_dotenv()


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require a live remote record store",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "live: mark test as requiring a live remote record store"
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


@pytest.fixture
def mock_config():
    """Create a Config instance for testing."""
    return Config(
        remote_url="https://records.example.com/api",
        username="testuser",
        password="testpass",
        zone="notes",
        insecure=False,
    )


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every RECORD_SYNC_* variable from the environment."""
    import os

    for key in list(os.environ):
        if key.startswith("RECORD_SYNC_") or key in ("LOG_LEVEL", "LOG_FILE"):
            monkeypatch.delenv(key, raising=False)
    return monkeypatch
