"""Process-local single-flight guard for combination execution."""

from __future__ import annotations

import threading


class ExecutionLockRegistry:
    def __init__(self) -> None:
        self._held: set[int] = set()
        self._guard = threading.Lock()

    def acquire(self, combination_id: int) -> bool:
        """Claim ``combination_id``; False means another execution already holds it."""
        with self._guard:
            if combination_id in self._held:
                return False
            self._held.add(combination_id)
            return True

    def release(self, combination_id: int) -> None:
        with self._guard:
            self._held.discard(combination_id)

    def is_locked(self, combination_id: int) -> bool:
        with self._guard:
            return combination_id in self._held

    def active_count(self) -> int:
        with self._guard:
            return len(self._held)

    def clear_all(self) -> None:
        with self._guard:
            self._held.clear()


execution_locks = ExecutionLockRegistry()


def reset_execution_locks_for_tests() -> None:
    execution_locks.clear_all()
