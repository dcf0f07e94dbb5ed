"""
Pytest configuration and fixtures for the treasury reconciler tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from infra.metrics import MetricsRecorder
from infra.position_ledger import InMemoryPositionLedger, JsonFilePositionLedger, SQLitePositionLedger


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture(params=["memory", "json", "sqlite"])
def ledger(request, tmp_path):
    """Every ledger backend, fresh per test."""
    if request.param == "memory":
        yield InMemoryPositionLedger()
    elif request.param == "json":
        yield JsonFilePositionLedger(str(tmp_path / "positions.json"))
    else:
        backend = SQLitePositionLedger(str(tmp_path / "positions.db"))
        yield backend
        backend.close_connection()


@pytest.fixture
def memory_ledger():
    return InMemoryPositionLedger()
