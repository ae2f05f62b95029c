"""
Pytest configuration and fixtures for cowtrader tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import shutil

import pytest

from tests.helpers import CONFIG_DIR, make_pair


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def pair():
    return make_pair()


@pytest.fixture
def config_dir(tmp_path):
    """Copy of the shipped config files in a scratch directory."""
    for name in ("app.yaml", "policy.yaml"):
        shutil.copy(CONFIG_DIR / name, tmp_path / name)
    return tmp_path
