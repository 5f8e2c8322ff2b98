"""
Pytest configuration and shared fixtures.
"""

# Import fixtures
from tests.fixtures.deployment_fixtures import (
    settings,
    clock,
    web_definition,
    repository,
    config_cache,
    config_store,
    cluster,
    orchestrator,
)

__all__ = [
    "settings",
    "clock",
    "web_definition",
    "repository",
    "config_cache",
    "config_store",
    "cluster",
    "orchestrator",
]


def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
