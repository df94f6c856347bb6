"""
In-flight set — message ids with a delivery attempt currently running.

Stores hand out fresh copies of messages on every poll, so the guard is
keyed by id. One set belongs to one scheduler instance; pass the same set
to two schedulers only if they must never dispatch the same id twice.
"""
from __future__ import annotations

import threading


class InFlightSet:

    def __init__(self):
        self._ids: set[str] = set()
        self._lock = threading.Lock()

    def add(self, message_id: str) -> bool:
        """Mark as in flight. False if it already was."""
        with self._lock:
            if message_id in self._ids:
                return False
            self._ids.add(message_id)
            return True

    def discard(self, message_id: str) -> bool:
        with self._lock:
            if message_id not in self._ids:
                return False
            self._ids.remove(message_id)
            return True

    def snapshot(self) -> list[str]:
        with self._lock:
            return sorted(self._ids)

    def clear(self) -> None:
        with self._lock:
            self._ids.clear()

    def __contains__(self, message_id: object) -> bool:
        with self._lock:
            return message_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)
