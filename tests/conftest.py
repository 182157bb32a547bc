"""Shared fixtures for cdflow tests.

Engines are wired to the in-memory port fakes from ``tests.fakes``.
"""

import asyncio

import pytest
import yaml

from cdflow.core.builder import StageGraphBuilder
from cdflow.core.config import EngineConfig
from cdflow.core.declaration import PipelineDecl
from cdflow.core.engine import PipelineEngine
from cdflow.core.models import PipelineRun, RunBindings
from cdflow.core.state import Database
from tests.fakes import (
    FakeApprovalChannel,
    FakeDeploymentTarget,
    FakeInvoker,
    FakeNotifier,
    FakeProvider,
    FakeQualityGate,
)

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path):
    """Create a test database."""
    return Database(tmp_path / "test.db")


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def fake_invoker():
    return FakeInvoker()


@pytest.fixture
def fake_quality_gate():
    return FakeQualityGate()


@pytest.fixture
def fake_target():
    return FakeDeploymentTarget()


@pytest.fixture
def fake_approvals():
    return FakeApprovalChannel()


@pytest.fixture
def fake_notifier():
    return FakeNotifier()


@pytest.fixture
def build_tree():
    """Expand pipeline YAML text into a stage tree."""

    def _build(text):
        return StageGraphBuilder().build(PipelineDecl.model_validate(yaml.safe_load(text)))

    return _build


@pytest.fixture
def make_engine(
    fake_provider, fake_invoker, test_db, fake_quality_gate, fake_target, fake_approvals,
    fake_notifier,
):
    """Engine factory wired to the fakes; keyword arguments override single ports."""

    def _make(config=None, **overrides):
        ports = {
            "provider": fake_provider,
            "invoker": fake_invoker,
            "db": test_db,
            "config": config or EngineConfig(run_timeout=None),
            "quality_gate": fake_quality_gate,
            "deployment_target": fake_target,
            "approval_channel": fake_approvals,
            "notifier": fake_notifier,
        }
        ports.update(overrides)
        return PipelineEngine(**ports)

    return _make


@pytest.fixture
def execute(make_engine, build_tree):
    """Run pipeline YAML to completion and return the finished PipelineRun."""

    def _execute(text, engine=None, bindings=None):
        engine = engine or make_engine()
        run = PipelineRun.create(
            bindings
            or RunBindings(
                build_number=42,
                branch="main",
                registry="registry.example.com",
                image="web",
                namespace="staging",
                app="web",
            ),
            build_tree(text),
        )
        asyncio.run(engine.run(run))
        return run

    return _execute


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "docker: marks tests requiring Docker")
    config.addinivalue_line("markers", "integration: marks integration tests")
