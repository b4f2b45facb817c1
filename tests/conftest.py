"""
Pytest configuration and fixtures for Homepost tests.

Provides common fixtures and test utilities for unit and integration tests.
"""

import secrets
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from homepost.config import Config
from homepost.identity import Identity
from homepost.key_agreement import derive_for_identities
from homepost.storage import MemoryHomeservers, MemoryStorage

# Smallest Argon2id costs the library accepts; keeps recovery tests fast
FAST_TIME_COST = 1
FAST_MEMORY_COST = 8


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp(prefix="homepost_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def alice() -> Identity:
    return Identity.from_seed(bytes(range(32)))


@pytest.fixture
def bob() -> Identity:
    return Identity.from_seed(bytes(range(100, 132)))


@pytest.fixture
def carol() -> Identity:
    return Identity.generate()


@pytest.fixture
def alice_bob_key(alice, bob):
    """Conversation key as derived by Alice."""
    return derive_for_identities(alice, bob.public_key())


@pytest.fixture
def device_key() -> bytes:
    return secrets.token_bytes(32)


@pytest.fixture
def homeservers() -> MemoryHomeservers:
    """Shared homeserver state; every MemoryStorage built on it sees the same data."""
    return MemoryHomeservers()


@pytest.fixture
def storage(homeservers) -> MemoryStorage:
    return MemoryStorage(homeservers)


@pytest.fixture
def fast_config(temp_dir: Path) -> Config:
    """Configuration with cheap Argon2 parameters and a short fetch timeout."""
    config = Config(temp_dir / "config.toml")
    config.set("crypto", "argon2_time_cost", FAST_TIME_COST)
    config.set("crypto", "argon2_memory_cost", FAST_MEMORY_COST)
    config.set("storage", "fetch_timeout", 0.5)
    return config


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

        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
