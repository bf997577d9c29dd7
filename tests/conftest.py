import os

import pytest
from typing import Any, Dict, Optional
from unittest.mock import MagicMock
from typer.testing import CliRunner

from asynccaller.infrastructure.config import settings


class FakeResponse:
    """Minimal response-like object: status_code, headers and a JSON body."""

    def __init__(self, status_code: int = 200, headers: Optional[Dict[str, str]] = None, body: Any = None):
        self.status_code = status_code
        self.headers = headers or {}
        self._body = body

    def json(self):
        if self._body is None:
            raise ValueError("No JSON body")
        return self._body


class FakeStatusError(Exception):
    """Exception carrying its status the way HTTP client errors do."""

    def __init__(self, message: str, status: Optional[int] = None, response: Any = None, headers: Any = None):
        super().__init__(message)
        if status is not None:
            self.status = status
        if headers is not None:
            self.headers = headers
        self.response = response


@pytest.fixture
def make_response():
    """Factory for FakeResponse objects."""
    return FakeResponse


@pytest.fixture
def make_status_error():
    """Factory for FakeStatusError exceptions."""
    return FakeStatusError


@pytest.fixture(scope="session")
def runner():
    """Provides a Typer CliRunner instance."""
    return CliRunner()


@pytest.fixture
def mock_console_display(mocker):
    """Patches the ConsoleDisplay used by the CLI commands."""
    display = MagicMock()
    mocker.patch("asynccaller.main.ConsoleDisplay", return_value=display)
    return display


@pytest.fixture
def quiet_logging(mocker):
    """Keeps CLI invocations from installing real log handlers."""
    return mocker.patch("asynccaller.main.setup_logging")


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keeps tests independent of the developer's config files and environment."""
    for key in list(os.environ):
        if key.startswith(settings.ENV_PREFIX):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    settings.load_configuration(config_file=tmp_path / "missing.yaml", force=True)
    settings.clear_test_config()
    yield
    settings.clear_test_config()
