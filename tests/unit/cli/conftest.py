"""CLI test fixtures."""

from __future__ import annotations

from collections.abc import Generator

import pytest
import structlog
from click.testing import CliRunner


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def reset_logging() -> Generator[None, None, None]:
    """The root group configures structlog against the runner's stderr."""
    yield
    structlog.reset_defaults()
