"""
Pytest configuration and fixtures for SecureChat tests.

Provides common fixtures and test utilities for unit and integration tests.
"""

import asyncio
import shutil
import tempfile
import time
from pathlib import Path
from typing import Callable, Generator

import pytest

from securechat.config import SessionSettings
from securechat.identity import Identity


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp(prefix="securechat_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def identity() -> Identity:
    """Provide an identity with a generated key pair."""
    return Identity.create()


@pytest.fixture
def peer_identity() -> Identity:
    """Provide a second, independent identity."""
    return Identity.create()


@pytest.fixture
def fast_settings() -> SessionSettings:
    """
    Provide session settings with short timeouts.

    Returns:
        SessionSettings: Connect timeout 0.5s, key exchange timeout 0.3s
    """
    return SessionSettings(connect_timeout=0.5, handshake_timeout=0.3)


@pytest.fixture
def wait_until() -> Callable:
    """
    Provide an async helper that polls a condition until it holds.

    Usage:
        assert await wait_until(lambda: session.encrypted)
    """

    async def _wait_until(condition: Callable[[], bool], timeout: float = 2.0) -> bool:
        deadline = time.monotonic() + timeout
        while not condition():
            if time.monotonic() > deadline:
                return False
            await asyncio.sleep(0.005)
        return True

    return _wait_until


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        # Add unit marker to tests in unit/ directory
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        # Add integration marker to tests in integration/ directory
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
