from __future__ import annotations

import logging
from collections.abc import Iterator
from datetime import datetime

import pytest
from coga.config import CalibrationConfig, CogaSettings
from coga.core.engine import StressEngine
from coga.persistence.state_store import InMemoryStateStore

from tests.fakes import T0, FlakyStateStore, RecordingPresenter


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def settings() -> CogaSettings:
    return CogaSettings(calibration=CalibrationConfig(duration_seconds=10))


@pytest.fixture
def memory_store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def flaky_store() -> FlakyStateStore:
    return FlakyStateStore()


@pytest.fixture
def presenter() -> RecordingPresenter:
    return RecordingPresenter()


@pytest.fixture
def engine(
    settings: CogaSettings,
    memory_store: InMemoryStateStore,
    presenter: RecordingPresenter,
) -> StressEngine:
    return StressEngine(settings, memory_store, presenter=presenter)


@pytest.fixture
def restore_root_logging() -> Iterator[logging.Logger]:
    root = logging.getLogger()
    handlers, filters, level = list(root.handlers), list(root.filters), root.level
    yield root
    root.handlers[:] = handlers
    root.filters[:] = filters
    root.setLevel(level)
