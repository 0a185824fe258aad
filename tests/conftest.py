import asyncio
from typing import Iterable, List, Optional

import pytest

from username_index.schemas import IndexConfig
from username_index.utils import normalize_username

class FakeStore:
    """In-memory registry recording every call the index makes."""

    def __init__(self, usernames: Iterable[str] = ()):
        self.usernames = {normalize_username(u) for u in usernames}
        self.exists_calls: List[str] = []
        self.stream_calls = 0
        self.exists_delay = 0.0
        self.exists_error: Optional[Exception] = None
        self.fail_streams = 0
        self.stream_gate: Optional[asyncio.Event] = None

    def commit(self, username: str):
        self.usernames.add(normalize_username(username))

    async def stream_all_usernames(self):
        self.stream_calls += 1
        if self.fail_streams > 0:
            self.fail_streams -= 1
            raise ConnectionError("registry offline")
        snapshot = sorted(self.usernames)
        for i, username in enumerate(snapshot):
            # Pause mid-scan so tests can commit usernames the snapshot misses
            if self.stream_gate is not None and i == len(snapshot) // 2:
                await self.stream_gate.wait()
            yield username

    async def exists(self, username: str) -> bool:
        self.exists_calls.append(username)
        if self.exists_error:
            raise self.exists_error
        if self.exists_delay:
            await asyncio.sleep(self.exists_delay)
        return username in self.usernames

    async def count_usernames(self) -> int:
        return len(self.usernames)

@pytest.fixture
def make_store():
    return FakeStore

@pytest.fixture
def fake_store():
    return FakeStore()

@pytest.fixture
def small_config():
    """Tiny filter with instant retries so rebuilds are quick to trigger."""
    return IndexConfig(
        minimum_capacity=100,
        target_load_factor=0.5,
        rebuild_threshold=0.75,
        rebuild_max_attempts=3,
        rebuild_backoff_min=0,
        rebuild_backoff_max=0,
        fallback_timeout=1.0,
    )
