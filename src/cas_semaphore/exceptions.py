"""Exceptions for cas-semaphore."""

from __future__ import annotations


class SemaphoreError(Exception):
    """Base exception for semaphore errors."""

    pass


class StoreError(SemaphoreError):
    """Raised when the key-value store cannot be reached or errors out."""

    pass


class InitializationError(SemaphoreError):
    """Raised when the shared document can neither be created nor read."""

    def __init__(self, lockname: str, reason: str) -> None:
        self.lockname = lockname
        self.reason = reason
        super().__init__(f"Can't initialise semaphore '{lockname}': {reason}")


class MalformedDocumentError(SemaphoreError, ValueError):
    """Raised when a stored slots document fails to parse."""

    pass


class DocumentMissingError(SemaphoreError):
    """Raised when the slots document disappears after initialisation."""

    def __init__(self, lockname: str) -> None:
        self.lockname = lockname
        super().__init__(f"Semaphore document '{lockname}' is missing")


class AcquireError(SemaphoreError):
    """Raised when a slot can't be taken on entering a ``with`` block."""

    def __init__(self, lockname: str, clientid: str) -> None:
        self.lockname = lockname
        self.clientid = clientid
        super().__init__(f"Client '{clientid}' could not acquire '{lockname}'")


class ReleaseError(SemaphoreError):
    """Raised when releasing a slot runs out of CAS attempts.

    The slot stays occupied until its lease expires, which reduces the
    semaphore's effective capacity for every client until then.
    """

    def __init__(self, lockname: str, clientid: str, holdtime: int) -> None:
        self.lockname = lockname
        self.clientid = clientid
        self.holdtime = holdtime
        super().__init__(
            f"Client '{clientid}' failed to release '{lockname}'; "
            f"slot held until lease expiry ({holdtime}s)"
        )
