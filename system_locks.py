"""One lock per system ledger.

Writers of the same system run one at a time; different systems never share
a lock.  This covers threads in one process; ``Persistence.lock_system``
extends it across processes on Postgres.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional


class SystemLocks:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def get(self, system_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(system_id)
            if lock is None:
                lock = self._locks[system_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, system_id: str, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold a system's lock for the block.

        A caller that wants to give up waiting passes *timeout*; once the
        lock is held the block runs to completion.
        """
        lock = self.get(system_id)
        acquired = lock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            raise TimeoutError(f"Timed out waiting for the ledger lock of system {system_id!r}")
        try:
            yield
        finally:
            lock.release()


# Process-wide locks used by every Ledger and Reconciler not given their own.
DEFAULT_LOCKS = SystemLocks()
