# tests/conftest.py
"""Shared test fixtures.

Database fixtures:
- checkpoint_db: in-memory SQLite, for single-threaded tests
- file_db: file-backed SQLite under tmp_path, for tests that run the
  orchestrator on a worker thread

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/
"""

import os
from collections.abc import Iterator
from pathlib import Path

import pytest
from hypothesis import Phase, Verbosity, settings

from formrunner.contracts import Credentials
from formrunner.core.checkpoint import CheckpointDB, CheckpointStore
from formrunner.engine.retry import RetryConfig
from formrunner.progress import ProgressPublisher

# =============================================================================
# Shared fixtures
# =============================================================================


@pytest.fixture
def checkpoint_db() -> Iterator[CheckpointDB]:
    db = CheckpointDB.in_memory()
    yield db
    db.close()


@pytest.fixture
def file_db(tmp_path: Path) -> Iterator[CheckpointDB]:
    db = CheckpointDB(f"sqlite:///{tmp_path}/checkpoint.db")
    yield db
    db.close()


@pytest.fixture
def store(checkpoint_db: CheckpointDB) -> CheckpointStore:
    return CheckpointStore(checkpoint_db)


@pytest.fixture
def file_store(file_db: CheckpointDB) -> CheckpointStore:
    return CheckpointStore(file_db)


@pytest.fixture
def publisher() -> ProgressPublisher:
    return ProgressPublisher(log_buffer_size=100, subscriber_queue_size=1000)


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(username="operator", password="s3cret")


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Two attempts, no backoff."""
    return RetryConfig(max_attempts=2, backoff_seconds=0.0)


# =============================================================================
# Hypothesis Configuration
# =============================================================================

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Timing varies on CI
)

# Nightly profile: Thorough testing for scheduled runs
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Debug profile: Minimal examples with verbose output for debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))
