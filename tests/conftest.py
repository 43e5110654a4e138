"""Shared pytest configuration and fixtures."""

from collections.abc import Generator
from typing import Any
from unittest.mock import patch

import pytest

from linkwatch.config import Settings, get_settings


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run e2e tests that need a running recorder backend",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if config.getoption("--run-e2e"):
        return
    skip_e2e = pytest.mark.skip(reason="Need --run-e2e flag to run")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


@pytest.fixture(autouse=True)
def _no_dotenv(request: pytest.FixtureRequest) -> Generator[None]:
    """Block .env loading so a developer's local settings never leak into tests."""
    if "e2e" in request.keywords:
        yield
        return

    get_settings.cache_clear()
    original = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    try:
        yield
    finally:
        Settings.model_config["env_file"] = original
        get_settings.cache_clear()


@pytest.fixture
def mock_settings() -> Generator[Any]:
    """Provide fake settings backed by an in-memory database.

    Patches get_settings at every import site so cached references are overridden.
    Periodic jobs are disabled so the scheduler never fires during a test.
    """
    fake_settings = type(
        "FakeSettings",
        (),
        {
            "db_path": ":memory:",
            "sessions_dir": "sessions-test",
            "codegen_command": "npx playwright codegen",
            "replay_command": "npx playwright test",
            "backend_url": "http://linkwatch.test:4000",
            "poll_interval_seconds": 0.01,
            "status_timeout_seconds": 0.5,
            "reconnect_timeout_seconds": 0.5,
            "event_timeout_seconds": 0.5,
            "warning_after_failures": 3,
            "max_poll_failures": 5,
            "max_reconnect_attempts": 3,
            "alert_quality_score": 60,
            "alert_disconnection_count": 3,
            "alert_reconnection_fail_rate": 25.0,
            "alert_downtime_threshold": 30000,
            "evaluation_interval_seconds": 0,
            "history_refresh_minutes": 0,
            "process_retention_minutes": 0,
            "log_level": "DEBUG",
        },
    )()
    with (
        patch("linkwatch.config.get_settings", return_value=fake_settings),
        patch("linkwatch.store.get_settings", return_value=fake_settings),
        patch("linkwatch.scheduler.get_settings", return_value=fake_settings),
        patch("linkwatch.api.main.get_settings", return_value=fake_settings),
        patch("linkwatch.cli.get_settings", return_value=fake_settings),
    ):
        yield fake_settings
