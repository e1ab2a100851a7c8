"""The slots document shared by every client of one semaphore.

The document is stored as JSON under the lock name::

    {"holdtime": 600, "max": 10, "slots": {"pid123": 1700000000}}

``max`` is the capacity, ``holdtime`` the lease in seconds and ``slots`` maps
client ids to the unix time they took their slot.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Final

from .exceptions import MalformedDocumentError

_logger: Final[logging.Logger] = logging.getLogger(__name__)


def _is_int(value: Any) -> bool:
    # bool is an int subclass, but never a valid count or timestamp
    return isinstance(value, int) and not isinstance(value, bool)


class SlotsDocument:
    """Capacity, lease duration and current holders of a semaphore.

    Usage:
        >>> slots = SlotsDocument(capacity=2, lease_seconds=600)
        >>> slots.try_acquire_slot('pid1', now=1000)
        True
        >>> slots.occupant_count()
        1
        >>> SlotsDocument.deserialize(slots.serialize(), now=1000) == slots
        True
    """

    def __init__(
        self,
        capacity: int,
        lease_seconds: int,
        holders: dict[str, int] | None = None,
    ) -> None:
        self._capacity = capacity
        self._lease_seconds = lease_seconds
        self._holders: dict[str, int] = dict(holders or {})

    @property
    def capacity(self) -> int:
        """Return the maximum number of simultaneous holders."""
        return self._capacity

    @property
    def lease_seconds(self) -> int:
        """Return how long a holder may keep a slot."""
        return self._lease_seconds

    @property
    def holders(self) -> dict[str, int]:
        """Return a copy of the client id to acquisition time mapping."""
        return dict(self._holders)

    @classmethod
    def deserialize(
        cls, raw: str | bytes | None, now: float | None = None
    ) -> SlotsDocument | None:
        """Parse a stored document, or return None if the key was never written.

        Raises:
            MalformedDocumentError: If ``raw`` is not a valid slots document
        """
        if raw is None:
            return None
        return cls.parse(raw, now=now)

    @classmethod
    def parse(cls, raw: str | bytes, now: float | None = None) -> SlotsDocument:
        """Parse a stored document and drop holders whose lease has run out.

        Raises:
            MalformedDocumentError: If ``raw`` is not a valid slots document
        """
        if isinstance(raw, bytes):
            try:
                raw = raw.decode()
            except UnicodeDecodeError as exc:
                raise MalformedDocumentError(f"not UTF-8: {exc}") from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MalformedDocumentError(f"invalid JSON: {exc}") from exc

        if not isinstance(data, dict):
            raise MalformedDocumentError("document is not a JSON object")
        for field in ("max", "holdtime"):
            if not _is_int(data.get(field)) or data[field] < 0:
                raise MalformedDocumentError(
                    f"field {field!r} must be a non-negative integer"
                )
        if not isinstance(data.get("slots"), dict):
            raise MalformedDocumentError("field 'slots' must be an object")
        holders = data["slots"]
        for client_id, acquired_at in holders.items():
            if not _is_int(acquired_at) or acquired_at < 0:
                raise MalformedDocumentError(
                    f"slot timestamp for {client_id!r} must be a non-negative integer"
                )

        slots = cls(
            capacity=data["max"],
            lease_seconds=data["holdtime"],
            holders=holders,
        )
        slots.expire_holders(time.time() if now is None else now)
        return slots

    def serialize(self) -> str:
        """Return the canonical JSON form of the document."""
        data = {
            "max": self._capacity,
            "holdtime": self._lease_seconds,
            "slots": self._holders,
        }
        return json.dumps(data, sort_keys=True, separators=(",", ":"))

    def expire_holders(self, now: float) -> list[str]:
        """Remove holders acquired more than ``lease_seconds`` before ``now``.

        Returns the ids of the removed holders.
        """
        cutoff = now - self._lease_seconds
        expired = [
            client_id
            for client_id, acquired_at in self._holders.items()
            if acquired_at < cutoff
        ]
        for client_id in expired:
            del self._holders[client_id]
        if expired:
            _logger.debug("Expired %d holder(s): %s", len(expired), expired)
        return expired

    def occupant_count(self) -> int:
        """Return the number of live holders."""
        return len(self._holders)

    def holds(self, client_id: str) -> bool:
        """Return True if ``client_id`` currently occupies a slot."""
        return client_id in self._holders

    def try_acquire_slot(self, client_id: str, now: float) -> bool:
        """Record ``client_id`` as a holder if a slot is free.

        A client already holding a slot is overwritten in place, so it never
        counts twice. When the document is full nothing changes.
        """
        if self.occupant_count() < self._capacity:
            self._holders[client_id] = int(now)
            return True
        return False

    def release_slot(self, client_id: str) -> None:
        """Remove ``client_id`` from the holders; a no-op if it holds nothing."""
        self._holders.pop(client_id, None)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SlotsDocument):
            return NotImplemented
        return (
            self._capacity == other._capacity
            and self._lease_seconds == other._lease_seconds
            and self._holders == other._holders
        )

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"occupants={self.occupant_count()}/{self._capacity} "
            f"holdtime={self._lease_seconds}>"
        )
