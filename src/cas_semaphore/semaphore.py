"""Cluster semaphore kept in a single CAS-replaced store document.

Every client reads the slots document, changes it locally and writes it back
with a compare-and-swap against the version it read. A lost race means some
other client wrote first, so the whole read-modify-write round starts over.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from typing import Final

from pottery import ContextTimer

from .exceptions import (
    AcquireError,
    DocumentMissingError,
    InitializationError,
    MalformedDocumentError,
    ReleaseError,
    StoreError,
)
from .slots import SlotsDocument
from .store import CASStore, RedisCASStore

_logger: Final[logging.Logger] = logging.getLogger(__name__)


class Semaphore:
    """Counting semaphore shared by cooperating processes through a store.

    The first client to touch a lock name creates its document and fixes
    ``count`` and ``holdtime``; later clients adopt the stored values whatever
    they asked for. A holder that never calls ``up()`` keeps its slot until
    ``holdtime`` seconds have passed.

    Usage:
        >>> sem = Semaphore(
        ...     servers=['localhost:6379'],
        ...     clientid=f'pid{os.getpid()}',
        ...     lockname='test',
        ...     count=10,
        ...     holdtime=600,
        ... )
        >>> if sem.down():
        ...     try:
        ...         # At most 10 clients in here
        ...         pass
        ...     finally:
        ...         sem.up()

    Args:
        servers: Ordered ``host:port`` store endpoints
        clientid: Identity of this holder, unique among cooperating clients
        lockname: Store key of the slots document
        count: Capacity to create the document with
        holdtime: Lease in seconds to create the document with
        store: Pre-built store to use instead of connecting to ``servers``
        retries: Maximum CAS rounds per ``down()``/``up()`` call
        clock: Returns the current unix time
        raise_on_release_failure: Raise ReleaseError instead of returning
            False when ``up()`` runs out of retries

    Raises:
        InitializationError: If the document can neither be created nor read
    """

    _DEFAULT_RETRIES = 10

    def __init__(
        self,
        *,
        servers: Sequence[str] = (),
        clientid: str,
        lockname: str,
        count: int,
        holdtime: int,
        store: CASStore | None = None,
        retries: int = _DEFAULT_RETRIES,
        clock: Callable[[], float] = time.time,
        raise_on_release_failure: bool = False,
    ) -> None:
        if not clientid:
            raise ValueError("clientid must be a non-empty string")
        if not lockname:
            raise ValueError("lockname must be a non-empty string")
        if count < 0:
            raise ValueError("Semaphore count must be non-negative")
        if holdtime < 0:
            raise ValueError("Semaphore holdtime must be non-negative")
        if retries < 1:
            raise ValueError("retries must be >= 1")

        self._clientid = clientid
        self._lockname = lockname
        self._count = count
        self._holdtime = holdtime
        self._retries = retries
        self._clock = clock
        self._raise_on_release_failure = raise_on_release_failure
        self._store: CASStore = (
            store if store is not None else RedisCASStore.from_servers(servers)
        )

        self._init_document()

    def _init_document(self) -> None:
        """Create the slots document, or adopt the parameters of an existing one."""
        slots = SlotsDocument(capacity=self._count, lease_seconds=self._holdtime)
        try:
            if self._store.add(self._lockname, slots.serialize()):
                _logger.debug(
                    "Created semaphore %r with count=%d holdtime=%d",
                    self._lockname,
                    self._count,
                    self._holdtime,
                )
                return

            current = self._store.get(self._lockname)
            if current is None:
                raise InitializationError(
                    self._lockname, "document exists but could not be read"
                )
            existing = SlotsDocument.parse(current.value, now=self._clock())
        except (StoreError, MalformedDocumentError) as exc:
            raise InitializationError(self._lockname, str(exc)) from exc

        if (existing.capacity, existing.lease_seconds) != (self._count, self._holdtime):
            _logger.debug(
                "Semaphore %r exists; adopting count=%d holdtime=%d "
                "over requested count=%d holdtime=%d",
                self._lockname,
                existing.capacity,
                existing.lease_seconds,
                self._count,
                self._holdtime,
            )
        self._count = existing.capacity
        self._holdtime = existing.lease_seconds

    @property
    def clientid(self) -> str:
        """Return the identity this client holds slots under."""
        return self._clientid

    @property
    def lockname(self) -> str:
        """Return the store key of the slots document."""
        return self._lockname

    @property
    def count(self) -> int:
        """Return the effective capacity, as stored in the document."""
        return self._count

    @property
    def holdtime(self) -> int:
        """Return the effective lease in seconds, as stored in the document."""
        return self._holdtime

    @property
    def retries(self) -> int:
        """Return the maximum CAS rounds per down() or up() call."""
        return self._retries

    def _read(self, now: float) -> tuple[SlotsDocument, int]:
        current = self._store.get(self._lockname)
        if current is None:
            raise DocumentMissingError(self._lockname)
        slots = SlotsDocument.parse(current.value, now=now)
        return slots, current.token

    def down(self, wait: bool = False) -> bool:
        """Try to take a slot.

        Returns False straight away when the semaphore is full, and also when
        every CAS round was lost to other clients. Never blocks; ``wait`` is
        reserved and currently ignored.

        Raises:
            DocumentMissingError: If the document no longer exists
            MalformedDocumentError: If the stored document doesn't parse
            StoreError: If the store can't be reached
        """
        with ContextTimer() as timer:
            for attempt in range(1, self._retries + 1):
                now = self._clock()
                slots, token = self._read(now)

                if not slots.try_acquire_slot(self._clientid, now):
                    _logger.debug(
                        "Semaphore %r full (%d/%d); %r not admitted",
                        self._lockname,
                        slots.occupant_count(),
                        slots.capacity,
                        self._clientid,
                    )
                    return False

                if self._store.cas(self._lockname, slots.serialize(), token):
                    _logger.debug(
                        "%r acquired %r on attempt %d in %d ms",
                        self._clientid,
                        self._lockname,
                        attempt,
                        timer.elapsed(),
                    )
                    return True

                _logger.debug(
                    "%r lost CAS race on %r (attempt %d/%d)",
                    self._clientid,
                    self._lockname,
                    attempt,
                    self._retries,
                )

            _logger.warning(
                "%r gave up acquiring %r after %d contended attempts (%d ms)",
                self._clientid,
                self._lockname,
                self._retries,
                timer.elapsed(),
            )
        return False

    def up(self) -> bool:
        """Give back this client's slot.

        Releasing a slot that isn't held is a no-op and still succeeds. If
        every CAS round is lost the slot stays taken until its lease expires;
        that returns False, or raises ReleaseError when the semaphore was
        built with ``raise_on_release_failure=True``.

        Raises:
            DocumentMissingError: If the document no longer exists
            MalformedDocumentError: If the stored document doesn't parse
            StoreError: If the store can't be reached
        """
        with ContextTimer() as timer:
            for attempt in range(1, self._retries + 1):
                slots, token = self._read(self._clock())
                slots.release_slot(self._clientid)

                if self._store.cas(self._lockname, slots.serialize(), token):
                    _logger.debug(
                        "%r released %r on attempt %d in %d ms",
                        self._clientid,
                        self._lockname,
                        attempt,
                        timer.elapsed(),
                    )
                    return True

                _logger.debug(
                    "%r lost CAS race releasing %r (attempt %d/%d)",
                    self._clientid,
                    self._lockname,
                    attempt,
                    self._retries,
                )

        _logger.warning(
            "%r failed to release %r after %d attempts; slot held for up to %ds",
            self._clientid,
            self._lockname,
            self._retries,
            self._holdtime,
        )
        if self._raise_on_release_failure:
            raise ReleaseError(self._lockname, self._clientid, self._holdtime)
        return False

    def _snapshot(self) -> SlotsDocument:
        slots, _ = self._read(self._clock())
        return slots

    def occupants(self) -> int:
        """Return the number of live holders right now."""
        return self._snapshot().occupant_count()

    def holders(self) -> dict[str, int]:
        """Return live holders mapped to the unix time they took their slot."""
        return self._snapshot().holders

    def held(self) -> bool:
        """Return True if this client currently occupies a slot."""
        return self._snapshot().holds(self._clientid)

    def locked(self) -> bool:
        """Return True if no slot is free."""
        return self.occupants() >= self._count

    def __enter__(self) -> Semaphore:
        """Enter context manager, taking a slot or raising AcquireError."""
        if not self.down():
            raise AcquireError(self._lockname, self._clientid)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context manager, releasing the slot."""
        if not self.up():
            raise ReleaseError(self._lockname, self._clientid, self._holdtime)

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"lockname={self._lockname!r} "
            f"clientid={self._clientid!r} "
            f"occupants={self.occupants()}/{self._count} "
            f"holdtime={self._holdtime}>"
        )
