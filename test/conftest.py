"""
Pytest Configuration for Kobuki Factory Test
============================================

Provides fixtures and configuration for the test suite.
"""

import pytest
import sys
import os

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from kobuki_factory_test.core.config import Config


def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "hardware: mark test as requiring hardware"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


@pytest.fixture
def fresh_config():
    """Default configuration, reset for each test."""
    Config.reset()
    config = Config()
    yield config
    Config.reset()


@pytest.fixture
def bench(fresh_config):
    """Sequencer wired to fakes, no robot connected."""
    from test.utils import Bench
    return Bench(config=fresh_config)


@pytest.fixture
def connected_bench(bench):
    """Bench with an identified robot waiting at the DC adapter step."""
    bench.connect()
    return bench
