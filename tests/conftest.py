"""Shared pytest fixtures for all tests."""

import asyncio
import random
from collections import Counter
from pathlib import Path

import pytest

from distore.errors import RateLimited, TransportError
from distore.store import ObjectStore
from distore.transfer.retry import RetryPolicy
from distore.transport.base import BackendLimits
from distore.transport.memory import MemoryTransport

CHANNEL = "900000000000000001"

# Chunk size the store fixtures use, so small files still span many chunks
CHUNK_SIZE = 1024


class FlakyTransport(MemoryTransport):
    """
    MemoryTransport with scripted failures.

    Args:
        rate_limits: RateLimited on the first N publish attempts per attachment
        rate_limited: filename -> number of extra RateLimited attempts
        errors: filename -> number of TransportErrors before success (-1: always)
        delay: callable filename -> seconds to wait inside publish
        fetch_errors: number of TransportErrors raised by fetch before success
    """

    def __init__(self, limits=None, rate_limits=0, retry_after=0.25, errors=None,
                 delay=None, fetch_errors=0, rate_limited=None):
        super().__init__(limits)
        self.rate_limits = rate_limits
        self.rate_limited = rate_limited or {}
        self.retry_after = retry_after
        self.errors = errors or {}
        self.delay = delay
        self.fetch_errors = fetch_errors
        self.attempts = Counter()
        self.in_flight = 0
        self.max_in_flight = 0

    async def publish(self, channel, blob, filename, content=""):
        self.attempts[filename] += 1
        attempt = self.attempts[filename]
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay(filename) if self.delay else 0)
            limited = self.rate_limits + self.rate_limited.get(filename, 0)
            if attempt <= limited:
                raise RateLimited(self.retry_after)
            failures = self.errors.get(filename, 0)
            if failures == -1 or attempt - limited <= failures:
                raise TransportError(f"simulated failure publishing {filename}")
            return await super().publish(channel, blob, filename, content)
        finally:
            self.in_flight -= 1

    async def fetch(self, reference):
        if self.fetch_errors:
            self.fetch_errors -= 1
            raise TransportError(f"simulated failure fetching {reference}")
        return await super().fetch(reference)


@pytest.fixture
def limits():
    """
    Small backend limits; uploads pass CHUNK_SIZE to get many chunks.

    Returns:
        BackendLimits with a 64 KiB maximum chunk (and manifest) size
    """
    return BackendLimits(
        max_attachment_size=64 * 1024 + 256,
        framing_overhead=256,
    )


@pytest.fixture
def sleeps():
    """Delays requested by the retry policy, in order."""
    return []


@pytest.fixture
def retry_policy(sleeps):
    """
    Retry policy that records its delays instead of sleeping.

    Returns:
        RetryPolicy with a fake sleep
    """
    async def fake_sleep(delay):
        sleeps.append(delay)
        await asyncio.sleep(0)

    return RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=4.0,
                       max_rate_limit_retries=5, jitter=0, sleep=fake_sleep)


@pytest.fixture
def transport(limits):
    return MemoryTransport(limits)


@pytest.fixture
def store(transport, limits, retry_policy):
    """ObjectStore over the memory transport."""
    return ObjectStore(transport, CHANNEL, limits=limits, retry_policy=retry_policy,
                       concurrency=4, chunk_size=CHUNK_SIZE)


@pytest.fixture
def make_file(tmp_path):
    """
    Factory for files with deterministic pseudo-random content.

    Returns:
        Callable (name, size, seed=0) -> Path
    """
    def _make(name: str, size: int, seed: int = 0) -> Path:
        path = tmp_path / name
        path.write_bytes(random.Random(seed).randbytes(size))
        return path
    return _make


@pytest.fixture
def temp_config_dir(tmp_path):
    """
    Create temporary config directory.

    Returns:
        Path to an empty config directory
    """
    config_dir = tmp_path / 'config'
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def clean_env(monkeypatch):
    """Remove DISTORE_* variables so the host environment cannot leak in."""
    for name in ('DISTORE_TOKEN', 'DISTORE_CHANNEL', 'DISTORE_CHUNK_SIZE',
                 'DISTORE_CONCURRENCY', 'DISTORE_LOG_LEVEL', 'DISTORE_MAX_ATTEMPTS'):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
