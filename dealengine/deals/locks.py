from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass


@dataclass
class _LockEntry:
    lock: threading.Lock
    holders: int = 0


class KeyedLocks:
    """Per-key mutexes for writers in this process.

    Row locks taken through ``SELECT ... FOR UPDATE`` cover writers in other
    processes; these locks keep same-process writers to one deal (or one
    account during deal creation) in line before they reach the database.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, _LockEntry] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _LockEntry(lock=threading.Lock())
                self._entries[key] = entry
            entry.holders += 1

        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    self._entries.pop(key, None)

    def active_keys(self) -> list[str]:
        with self._guard:
            return sorted(self._entries)
