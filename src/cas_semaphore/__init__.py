"""Cluster semaphore stored as one CAS-replaced document in a key-value store.

Cooperating processes share a JSON document listing the current holders of
a semaphore. Each ``down()``/``up()`` reads the document, changes it and
writes it back with compare-and-swap, retrying when another client wrote in
between. Holders that crash are dropped once their lease (``holdtime``) runs
out.

Example usage:

    >>> import os
    >>> from cas_semaphore import Semaphore
    >>>
    >>> sem = Semaphore(
    ...     servers=['localhost:6379'],
    ...     clientid=f'pid{os.getpid()}',
    ...     lockname='my-resource',
    ...     count=3,
    ...     holdtime=600,
    ... )
    >>>
    >>> if sem.down():
    ...     try:
    ...         # At most 3 holders across the cluster
    ...         pass
    ...     finally:
    ...         sem.up()
    >>>
    >>> with sem:
    ...     # Same, raising AcquireError when no slot is free
    ...     pass
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version
from typing import Final

from .exceptions import (
    AcquireError,
    DocumentMissingError,
    InitializationError,
    MalformedDocumentError,
    ReleaseError,
    SemaphoreError,
    StoreError,
)
from .semaphore import Semaphore
from .slots import SlotsDocument
from .store import CASStore, RedisCASStore, Versioned

__all__: Final[tuple[str, ...]] = (
    "AcquireError",
    "CASStore",
    "DocumentMissingError",
    "InitializationError",
    "MalformedDocumentError",
    "RedisCASStore",
    "ReleaseError",
    "Semaphore",
    "SemaphoreError",
    "SlotsDocument",
    "StoreError",
    "Versioned",
)

try:
    __version__ = version("cas-semaphore")
except PackageNotFoundError:
    __version__ = "unknown"
