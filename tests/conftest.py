"""Root conftest for test suite.

Auto-skips integration and slow tests that require running services.
Run explicitly with: pytest tests/integration -m integration
                  or: pytest -m slow
"""

import pytest


def pytest_collection_modifyitems(config, items):
    """Skip integration and slow tests unless explicitly requested.

    Integration tests need live PostgreSQL/Redis and should not run in CI
    unless explicitly invoked.
    """
    # Check if user explicitly requested integration or slow tests
    # via -m marker or by specifying the test path directly
    markexpr = config.getoption("-m", default="")
    explicit_integration = "integration" in markexpr
    explicit_slow = "slow" in markexpr

    # Check if running specific test paths
    args = config.args
    running_integration_path = any("tests/integration" in str(arg) for arg in args)

    skip_integration = pytest.mark.skip(
        reason="integration tests require PostgreSQL/Redis. "
        "Run with: pytest tests/integration -m integration"
    )
    skip_slow = pytest.mark.skip(
        reason="slow tests skipped by default. Run with: pytest -m slow"
    )

    for item in items:
        # Skip integration tests unless explicitly requested
        if (
            "integration" in item.keywords
            and not explicit_integration
            and not running_integration_path
        ):
            item.add_marker(skip_integration)

        # Skip slow tests unless explicitly requested
        if "slow" in item.keywords and not explicit_slow:
            item.add_marker(skip_slow)
