"""
Pytest configuration and fixtures for Parley tests.

Provides common fixtures and test utilities for unit and integration tests.
"""

import asyncio
import json
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Generator, List

import pytest
import pytest_asyncio

from parley import crypto
from parley.attachment import AttachmentStore
from parley.group import GroupManager
from parley.identity import AccountStore
from parley.message import MessageStore
from parley.registry import ConnectionRegistry
from parley.router import MessageRouter

# Cheap Argon2 parameters; the defaults cost seconds per signup
FAST_KDF = crypto.KdfParams(time_cost=1, memory_cost=1024, parallelism=1)


class FakeWriter:
    """Stands in for an asyncio.StreamWriter and records written frames."""

    def __init__(self, fail: bool = False):
        self.frames: List[bytes] = []
        self.fail = fail
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.fail:
            raise ConnectionResetError("peer reset")
        self.frames.append(data)

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        pass

    def events(self, name: str = None) -> list:
        """Decoded event frames, optionally filtered by event name."""
        decoded = [json.loads(f) for f in self.frames]
        return [
            f for f in decoded if f.get("type") == "event" and (name is None or f["event"] == name)
        ]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path
    """
    tmp = Path(tempfile.mkdtemp(prefix="parley_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture(scope="session")
def alice_keys() -> crypto.KeyPair:
    return crypto.KeyPair()


@pytest.fixture(scope="session")
def bob_keys() -> crypto.KeyPair:
    return crypto.KeyPair()


@pytest.fixture
def kdf_params() -> crypto.KdfParams:
    return FAST_KDF


@pytest_asyncio.fixture
async def stores(temp_dir: Path):
    """Accounts, groups, messages and a registry wired together."""
    accounts = AccountStore(temp_dir / "users.json", kdf_params=FAST_KDF)
    groups = GroupManager(temp_dir / "groups.json")
    messages = MessageStore(temp_dir / "messages.json")
    registry = ConnectionRegistry(groups)
    router = MessageRouter(accounts, groups, messages, registry)
    attachments = AttachmentStore(temp_dir / "uploads")
    return {
        "accounts": accounts,
        "groups": groups,
        "messages": messages,
        "registry": registry,
        "router": router,
        "attachments": attachments,
    }


@pytest.fixture
def fake_writer() -> Callable[..., FakeWriter]:
    return FakeWriter


async def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll until ``predicate()`` holds or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("Condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def wait_until():
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

        # Add integration marker to integration test modules
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
