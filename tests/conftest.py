"""Pytest configuration and shared fixtures."""

from pathlib import Path

import pytest
import structlog
from click.testing import CliRunner

from fakes import FakeChat, FakeHypothesis
from marginalia.config import Config
from marginalia.database import create_tables, get_engine
from marginalia.store import MappingStore


@pytest.fixture(autouse=True)
def reset_structlog():
    """Drop logging config bound to a CliRunner stream once the test ends."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def cli_runner() -> CliRunner:
    """Provide a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Create a test configuration with temp database."""
    return Config(
        data_dir=tmp_path,
        log_level="DEBUG",
    )


@pytest.fixture
def engine(test_config: Config):
    """Create a test database engine with all tables."""
    eng = get_engine(test_config)
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine) -> MappingStore:
    """Mapping store over the test database."""
    return MappingStore(engine)


@pytest.fixture
def hypothesis() -> FakeHypothesis:
    """Empty fake Hypothesis service."""
    return FakeHypothesis()


@pytest.fixture
def chat() -> FakeChat:
    """Fake Discord sender recording sent messages."""
    return FakeChat()
