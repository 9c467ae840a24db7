"""Shared test fixtures."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from fakes import RecordingSleep, StubRenderer
from gba.config import GbaConfig, PhaseDefinition
from gba.models import FeatureState
from gba.orchestrator import PhaseRunner
from gba.store import StateStore


@pytest.fixture(autouse=True)
def reset_gba_logger():
    """Drop handlers bound to a previous test's captured stdout."""
    logger = logging.getLogger("gba")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    yield


@pytest.fixture
def config(tmp_path: Path) -> GbaConfig:
    """Config for a repo in tmp_path with three phases A, B, C."""
    (tmp_path / ".gba" / "features").mkdir(parents=True)
    return GbaConfig(
        repo_path=tmp_path,
        phases=[
            PhaseDefinition(name="A", description="first"),
            PhaseDefinition(name="B", description="second"),
            PhaseDefinition(name="C", description="third"),
        ],
        max_attempts=3,
        timeout_seconds=5.0,
        structured_log=False,
    )


@pytest.fixture
def store(config: GbaConfig) -> StateStore:
    return StateStore(config.gba_path)


@pytest.fixture
def planned(store: StateStore, config: GbaConfig) -> FeatureState:
    return store.create("demo", config.phase_names, "A demo feature")


@pytest.fixture
def make_runner(config: GbaConfig, store: StateStore):
    """Build a PhaseRunner wired to fakes; keyword args override."""

    def _make(invoker, **kwargs) -> PhaseRunner:
        kwargs.setdefault("renderer", StubRenderer())
        kwargs.setdefault("commit_lookup", lambda: None)
        kwargs.setdefault("sleep", RecordingSleep())
        kwargs.setdefault("store", store)
        return PhaseRunner(config, invoker=invoker, **kwargs)

    return _make
