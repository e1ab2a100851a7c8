"""Pytest configuration and fixtures for cas-semaphore tests."""

from __future__ import annotations

import os
import threading
import time
from collections.abc import Generator
from typing import TYPE_CHECKING

import pytest

from cas_semaphore import Versioned

if TYPE_CHECKING:
    from redis import Redis


def is_docker_available() -> bool:
    """Check if Docker is available."""
    import shutil
    import subprocess

    if not shutil.which("docker"):
        return False
    try:
        result = subprocess.run(
            ["docker", "info"],
            capture_output=True,
            timeout=5,
        )
        return result.returncode == 0
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return False


# Skip integration tests if Docker is not available
requires_docker = pytest.mark.skipif(
    not is_docker_available(),
    reason="Docker is not available",
)


class MemoryStore:
    """In-process CAS store with memcached-like semantics.

    Every successful write is appended to ``writes`` so tests can inspect
    each document state that landed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, Versioned] = {}
        self._next_token = 1
        self.writes: list[tuple[str, str]] = []
        self.get_calls = 0
        self.cas_calls = 0

    def _write(self, key: str, value: str) -> None:
        self._data[key] = Versioned(value=value.encode(), token=self._next_token)
        self._next_token += 1
        self.writes.append((key, value))

    def add(self, key: str, value: str) -> bool:
        with self._lock:
            if key in self._data:
                return False
            self._write(key, value)
            return True

    def get(self, key: str) -> Versioned | None:
        with self._lock:
            self.get_calls += 1
            return self._data.get(key)

    def cas(self, key: str, value: str, token: int) -> bool:
        with self._lock:
            self.cas_calls += 1
            current = self._data.get(key)
            if current is None or current.token != token:
                return False
            self._write(key, value)
            return True

    def put(self, key: str, value: str) -> None:
        """Blind overwrite, standing in for another client's write."""
        with self._lock:
            self._write(key, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def raw(self, key: str) -> str:
        return self._data[key].value.decode()


class RacingStore(MemoryStore):
    """Store where another client rewrites the key just before each CAS.

    The first ``races`` CAS calls lose; later ones go through normally.
    """

    def __init__(self, races: int) -> None:
        super().__init__()
        self.races = races

    def cas(self, key: str, value: str, token: int) -> bool:
        if self.races > 0:
            self.races -= 1
            current = self._data[key]
            self.put(key, current.value.decode())
        return super().cas(key, value, token)


class FakeClock:
    """Manually advanced replacement for ``time.time``."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def memory_store() -> MemoryStore:
    """Create an empty in-process store."""
    return MemoryStore()


@pytest.fixture
def clock() -> FakeClock:
    """Create a clock frozen at a fixed unix time."""
    return FakeClock()


@pytest.fixture(scope="session")
def docker_compose_file() -> str:
    """Return path to docker-compose file for Redis."""
    return os.path.join(os.path.dirname(__file__), "docker-compose.yml")


@pytest.fixture(scope="session")
def redis_port() -> int:
    """Return the Redis port for tests."""
    return 6399  # Use non-standard port to avoid conflicts


@pytest.fixture(scope="session")
def docker_redis(docker_compose_file: str, redis_port: int) -> Generator[str, None, None]:
    """Start Redis in Docker for integration tests.

    Returns the Redis URL.
    """
    import subprocess

    compose_content = f"""
services:
  redis:
    image: redis:7-alpine
    ports:
      - "{redis_port}:6379"
    healthcheck:
      test: ["CMD", "redis-cli", "ping"]
      interval: 1s
      timeout: 3s
      retries: 30
"""
    with open(docker_compose_file, "w") as f:
        f.write(compose_content)

    subprocess.run(
        ["docker", "compose", "-f", docker_compose_file, "up", "-d", "--wait"],
        check=True,
        capture_output=True,
    )

    redis_url = f"redis://localhost:{redis_port}/0"
    _wait_for_redis(redis_url)

    yield redis_url

    subprocess.run(
        ["docker", "compose", "-f", docker_compose_file, "down", "-v"],
        capture_output=True,
    )
    os.remove(docker_compose_file)


def _wait_for_redis(url: str, timeout: float = 30) -> None:
    """Wait for Redis to be ready."""
    from redis import Redis
    from redis.exceptions import ConnectionError

    start = time.time()
    while time.time() - start < timeout:
        try:
            r = Redis.from_url(url)
            r.ping()
            r.close()
            return
        except ConnectionError:
            time.sleep(0.5)
    raise TimeoutError(f"Redis at {url} did not become ready in {timeout}s")


@pytest.fixture
def redis_client(docker_redis: str) -> Generator[Redis, None, None]:
    """Create a Redis client connected to Docker Redis."""
    from redis import Redis

    client = Redis.from_url(docker_redis)
    client.flushdb()
    yield client
    try:
        client.flushdb()
    except Exception:
        pass  # Ignore errors during cleanup
    client.close()


@pytest.fixture
def unique_key() -> Generator[str, None, None]:
    """Generate a unique lock name for each test."""
    import uuid

    yield f"test-{uuid.uuid4().hex[:8]}"
