"""
Root pytest configuration.

Registers the gateway's test markers, marks tests by location and name, and
exposes the shared fixtures from ``tests.fixtures``.
"""

import os

import pytest

from tests.fixtures import *

MARKERS = {
    "unit": "Tests of a single component in isolation",
    "integration": "Tests that drive the full application through TestClient",
    "config": "Settings, YAML and logging configuration tests",
    "auth": "Token validation, login and session revocation tests",
    "rbac": "Role and policy tests",
    "ratelimit": "Rate limiting tests",
}


def pytest_configure(config):
    for name, description in MARKERS.items():
        config.addinivalue_line("markers", f"{name}: {description}")


def pytest_collection_modifyitems(config, items):
    """Mark tests by directory and by keywords in their names."""
    for item in items:
        location = str(item.fspath)
        if f"{os.sep}unit{os.sep}" in location:
            item.add_marker(pytest.mark.unit)
        elif f"{os.sep}integration{os.sep}" in location:
            item.add_marker(pytest.mark.integration)

        name = item.name
        if "config" in name or "settings" in name:
            item.add_marker(pytest.mark.config)
        if "auth" in name or "token" in name or "login" in name:
            item.add_marker(pytest.mark.auth)
        if "role" in name or "polic" in name or "rbac" in location:
            item.add_marker(pytest.mark.rbac)
        if "rate" in name or "limit" in name:
            item.add_marker(pytest.mark.ratelimit)


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Run every test with ENVIRONMENT=test so config/test.yaml is layered in."""
    os.environ["ENVIRONMENT"] = "test"
    os.environ["TESTING"] = "true"

    yield

    os.environ.pop("ENVIRONMENT", None)
    os.environ.pop("TESTING", None)
