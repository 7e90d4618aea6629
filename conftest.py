from __future__ import annotations

import os

import pytest

# Keep the module-level engine off the developer database during test runs.
os.environ.setdefault("CONTRACTSIGN_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("CONTRACTSIGN_ENVIRONMENT", "test")


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: marks tests that generate several key pairs or spin up file-backed databases",
    )
