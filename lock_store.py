# lock_store.py

"""
Key-value store contract used by the distributed lock, plus an in-memory
reference store.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Sequence, Union

logger = logging.getLogger(__name__)

# get_expiration() results that are not a number of seconds
NO_EXPIRATION = -1
KEY_MISSING = -2


class TransactionConflictError(Exception):
    """A watched key changed between watch() and commit()."""

    def __init__(self, key: str):
        super().__init__(f"Watched key '{key}' changed before commit")
        self.key = key


@dataclass(frozen=True)
class Delete:
    key: str


@dataclass(frozen=True)
class Expire:
    key: str
    seconds: int


Operation = Union[Delete, Expire]


class LockStore(Protocol):
    """
    Store boundary for the lock protocol.

    Guarantees expected from implementations:
    - set_if_absent is atomic
    - every write to a key (including lease lapse) invalidates a watch on it,
      whoever performed the write
    - commit applies all operations or none
    """

    def set_if_absent(self, key: str, value: str) -> bool:
        ...

    def get(self, key: str) -> Optional[str]:
        ...

    def set_expiration(self, key: str, seconds: int) -> bool:
        ...

    def get_expiration(self, key: str) -> int:
        ...

    def delete(self, key: str) -> bool:
        ...

    def watch(self, key: str) -> None:
        ...

    def unwatch(self, key: str) -> None:
        ...

    def commit(self, operations: Sequence[Operation]) -> None:
        """
        Apply `operations` atomically.

        Raises:
            TransactionConflictError if a watched key was modified since watch().
        """
        ...


class InMemoryLockStore:
    """
    In-memory reference implementation.

    Used for:
    - Tests
    - Local experiments

    NOT for production: state lives in one process.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._mutex = threading.RLock()
        self._values: Dict[str, str] = {}
        self._deadlines: Dict[str, float] = {}
        # bumped on every write, survives deletion so a re-created key never
        # matches an old watch
        self._versions: Dict[str, int] = {}
        self._local = threading.local()

    # ---------- helpers ----------

    def _watched(self) -> Dict[str, int]:
        watched = getattr(self._local, "watched", None)
        if watched is None:
            watched = self._local.watched = {}
        return watched

    def _touch(self, key: str) -> None:
        self._versions[key] = self._versions.get(key, 0) + 1

    def _purge(self, key: str) -> None:
        deadline = self._deadlines.get(key)
        if deadline is not None and self._clock() >= deadline:
            logger.debug("Lease on key %s lapsed", key)
            self._values.pop(key, None)
            self._deadlines.pop(key, None)
            self._touch(key)

    def _expire(self, key: str, seconds: int) -> bool:
        if key not in self._values:
            return False
        self._deadlines[key] = self._clock() + seconds
        self._touch(key)
        return True

    def _delete(self, key: str) -> bool:
        if key not in self._values:
            return False
        del self._values[key]
        self._deadlines.pop(key, None)
        self._touch(key)
        return True

    # ---------- LockStore ----------

    def set_if_absent(self, key: str, value: str) -> bool:
        with self._mutex:
            self._purge(key)
            if key in self._values:
                return False
            self._values[key] = value
            self._touch(key)
            return True

    def set(self, key: str, value: str) -> None:
        """Unconditional write; drops any lease, as a plain SET would."""
        with self._mutex:
            self._values[key] = value
            self._deadlines.pop(key, None)
            self._touch(key)

    def get(self, key: str) -> Optional[str]:
        with self._mutex:
            self._purge(key)
            return self._values.get(key)

    def set_expiration(self, key: str, seconds: int) -> bool:
        with self._mutex:
            self._purge(key)
            return self._expire(key, seconds)

    def get_expiration(self, key: str) -> int:
        with self._mutex:
            self._purge(key)
            if key not in self._values:
                return KEY_MISSING
            deadline = self._deadlines.get(key)
            if deadline is None:
                return NO_EXPIRATION
            return math.ceil(deadline - self._clock())

    def delete(self, key: str) -> bool:
        with self._mutex:
            self._purge(key)
            return self._delete(key)

    def watch(self, key: str) -> None:
        with self._mutex:
            self._purge(key)
            self._watched()[key] = self._versions.get(key, 0)

    def unwatch(self, key: str) -> None:
        self._watched().pop(key, None)

    def commit(self, operations: Sequence[Operation]) -> None:
        for op in operations:
            if not isinstance(op, (Delete, Expire)):
                raise TypeError(f"Unsupported operation: {op!r}")

        watched = self._watched()
        with self._mutex:
            try:
                for key, version in watched.items():
                    self._purge(key)
                    if self._versions.get(key, 0) != version:
                        raise TransactionConflictError(key)
                for op in operations:
                    if isinstance(op, Delete):
                        self._delete(op.key)
                    else:
                        self._expire(op.key, op.seconds)
            finally:
                watched.clear()
