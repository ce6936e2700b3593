"""Shared fixtures for Conclave tests.

Tests run against real components: real files under tmp_path, real
pydantic models, scripted actors standing in for models. Time is injected
through fake clocks so TTL, backoff and breaker tests never sleep. Tests
requiring external services use skip markers when unavailable.
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest
from dotenv import load_dotenv

# Load .env from project root so API keys are available to live tests
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

from src.core.config import (
    AppConfig,
    ContextConfig,
    ModelRegistry,
    OrchestratorConfig,
    RetryConfig,
    load_config,
    load_model_registry,
)
from src.core.models import ActorRequest, Phase


# ---------------------------------------------------------------------------
# Service availability checks
# ---------------------------------------------------------------------------

def _openrouter_key_set() -> bool:
    return bool(os.getenv("OPENROUTER_API_KEY"))


requires_openrouter = pytest.mark.skipif(
    not _openrouter_key_set(),
    reason="OPENROUTER_API_KEY not set",
)


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------

class FakeClock:
    """Manually advanced clock; also records sleeps so backoff is observable."""

    def __init__(self, start: float = 1_000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------

ROSTER = ["Alex", "Sam", "Morgan", "Jordan", "Pierre"]


@pytest.fixture
def config_dir() -> Path:
    return Path(__file__).parent.parent / "config"


@pytest.fixture
def app_config(config_dir: Path) -> AppConfig:
    return load_config(config_dir=config_dir)


@pytest.fixture
def model_registry(config_dir: Path) -> ModelRegistry:
    return load_model_registry(config_dir=config_dir)


@pytest.fixture
def roster() -> list[str]:
    return list(ROSTER)


@pytest.fixture
def state_config(tmp_path: Path) -> ContextConfig:
    return ContextConfig(state_dir=str(tmp_path / "state"))


@pytest.fixture
def test_config(tmp_path: Path, roster: list[str]) -> AppConfig:
    """Defaults with state under tmp_path and retries that never wait."""
    return AppConfig(
        orchestrator=OrchestratorConfig(roster=roster),
        retry=RetryConfig(initial_delay_seconds=0.0, max_delay_seconds=0.0, rate_limit_pause_seconds=0.0),
        context=ContextConfig(state_dir=str(tmp_path / "state")),
    )


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    (root / "src").mkdir(parents=True)
    (root / "notes").mkdir()
    return root


def make_request(actor: str = "Alex", phase: Phase = Phase.DISCUSSION, **kwargs) -> ActorRequest:
    roster = kwargs.pop("roster", list(ROSTER))
    return ActorRequest(
        actor=actor,
        roster=roster,
        available_targets=kwargs.pop("available_targets", [*roster, "orchestrator-complete"]),
        phase=phase,
        **kwargs,
    )
