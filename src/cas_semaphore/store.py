"""Key-value store boundary: add-if-absent, versioned get and CAS replace.

Redis has no native CAS, so each key is a hash holding the document in
``value`` and a version counter in ``cas``. Lua scripts compare and write in
one server-side step.
"""

from __future__ import annotations

import logging
import re
import zlib
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Final, NamedTuple, Protocol

from redis import Redis
from redis.exceptions import RedisError

from .exceptions import StoreError

if TYPE_CHECKING:
    from redis.commands.core import Script

_logger: Final[logging.Logger] = logging.getLogger(__name__)

_SERVER_RE: Final[re.Pattern[str]] = re.compile(r"^(.+):(\d+)$")

_ADD_SCRIPT: Final[str] = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return 0
end
redis.call('HSET', KEYS[1], 'value', ARGV[1], 'cas', 1)
return 1
"""

_CAS_SCRIPT: Final[str] = """
local current = redis.call('HGET', KEYS[1], 'cas')
if not current or current ~= ARGV[1] then
    return 0
end
redis.call('HSET', KEYS[1], 'value', ARGV[2])
redis.call('HINCRBY', KEYS[1], 'cas', 1)
return 1
"""


class Versioned(NamedTuple):
    """A stored value and the version token it was read at."""

    value: bytes | str
    token: int


class CASStore(Protocol):
    """What the semaphore needs from a key-value store."""

    def add(self, key: str, value: str) -> bool:
        """Store ``value`` only if ``key`` does not exist yet."""
        ...

    def get(self, key: str) -> Versioned | None:
        """Return the value and its version token, or None if absent."""
        ...

    def cas(self, key: str, value: str, token: int) -> bool:
        """Replace ``key`` only if nothing was written since ``token``."""
        ...


def parse_server(server: str) -> tuple[str, int] | None:
    """Split a ``host:port`` string, returning None if it doesn't parse."""
    match = _SERVER_RE.match(server)
    if match is None:
        return None
    return match.group(1), int(match.group(2))


class RedisCASStore:
    """CAS-capable store over one or more Redis servers.

    Keys are spread over the servers by ``crc32(key) % len(servers)``, so
    every client configured with the same ordered server list talks to the
    same node for a given lock name.

    Usage:
        >>> store = RedisCASStore.from_servers(['localhost:6379'])
        >>> store.add('my-lock', '{}')
        True
        >>> current = store.get('my-lock')
        >>> store.cas('my-lock', '{"a":1}', current.token)
        True
        >>> store.cas('my-lock', '{"a":2}', current.token)
        False
    """

    _DEFAULT_SERVER = "localhost:6379"

    def __init__(self, clients: Iterable[Redis]) -> None:
        self._clients: tuple[Redis, ...] = tuple(clients)
        if not self._clients:
            raise ValueError("At least one Redis client is required")

        self._add_scripts: tuple[Script, ...] = tuple(
            client.register_script(_ADD_SCRIPT) for client in self._clients
        )
        self._cas_scripts: tuple[Script, ...] = tuple(
            client.register_script(_CAS_SCRIPT) for client in self._clients
        )

    @classmethod
    def from_servers(cls, servers: Sequence[str] = ()) -> RedisCASStore:
        """Build a store from ``host:port`` strings, skipping bad entries.

        Raises:
            ValueError: If no entry parses
        """
        clients = []
        for server in servers or (cls._DEFAULT_SERVER,):
            address = parse_server(server)
            if address is None:
                _logger.warning("Ignoring unparsable server %r", server)
                continue
            host, port = address
            clients.append(Redis(host=host, port=port))

        if not clients:
            raise ValueError(f"No usable host:port entry in {list(servers)!r}")
        return cls(clients)

    def _index(self, key: str) -> int:
        return zlib.crc32(key.encode()) % len(self._clients)

    def add(self, key: str, value: str) -> bool:
        index = self._index(key)
        try:
            return bool(self._add_scripts[index](keys=[key], args=[value]))
        except RedisError as exc:
            raise StoreError(f"add {key!r} failed: {exc}") from exc

    def get(self, key: str) -> Versioned | None:
        client = self._clients[self._index(key)]
        try:
            value, token = client.hmget(key, ["value", "cas"])
        except RedisError as exc:
            raise StoreError(f"get {key!r} failed: {exc}") from exc

        if value is None or token is None:
            return None
        return Versioned(value=value, token=int(token))

    def cas(self, key: str, value: str, token: int) -> bool:
        index = self._index(key)
        try:
            return bool(self._cas_scripts[index](keys=[key], args=[str(token), value]))
        except RedisError as exc:
            raise StoreError(f"cas {key!r} failed: {exc}") from exc

    def close(self) -> None:
        """Close every underlying Redis connection pool."""
        for client in self._clients:
            client.close()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} servers={len(self._clients)}>"
