"""Per-project shared/exclusive locking.

Readers may hold a project lock together; a writer holds it alone. Waiting
writers block new readers so long-running reads cannot starve mutations.
"""

from __future__ import annotations

from contextlib import contextmanager
from threading import Condition, Lock
from typing import Iterator


class ReadWriteLock:
    """Writer-preferring shared/exclusive lock built on a condition variable."""

    def __init__(self) -> None:
        self._condition = Condition(Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def acquire_shared(self) -> None:
        with self._condition:
            while self._writer or self._waiting_writers:
                self._condition.wait()
            self._readers += 1

    def release_shared(self) -> None:
        with self._condition:
            if self._readers <= 0:
                raise RuntimeError("release_shared called without a shared holder")
            self._readers -= 1
            if self._readers == 0:
                self._condition.notify_all()

    def acquire_exclusive(self) -> None:
        with self._condition:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    self._condition.wait()
            finally:
                self._waiting_writers -= 1
            self._writer = True

    def release_exclusive(self) -> None:
        with self._condition:
            if not self._writer:
                raise RuntimeError("release_exclusive called without the exclusive holder")
            self._writer = False
            self._condition.notify_all()

    @contextmanager
    def shared(self) -> Iterator[None]:
        self.acquire_shared()
        try:
            yield
        finally:
            self.release_shared()

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        self.acquire_exclusive()
        try:
            yield
        finally:
            self.release_exclusive()

    @property
    def readers(self) -> int:
        with self._condition:
            return self._readers

    @property
    def locked_exclusive(self) -> bool:
        with self._condition:
            return self._writer


class LockTable:
    """Lazily created locks keyed by project id."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[str, ReadWriteLock] = {}

    def get(self, key: str) -> ReadWriteLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = ReadWriteLock()
                self._locks[key] = lock
            return lock

    def discard(self, key: str) -> None:
        with self._guard:
            self._locks.pop(key, None)
