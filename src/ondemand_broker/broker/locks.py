"""In-process mutual exclusion for operations on the same key."""

from __future__ import annotations

import logging
import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager

from ondemand_broker.broker.errors import OperationInProgressError

logger = logging.getLogger(__name__)


class InstanceLockRegistry:
    """Set of keys currently held by an in-flight call.

    A second caller for a held key fails immediately instead of waiting.
    """

    def __init__(self, name: str = "instance") -> None:
        self._name = name
        self._held: set[Hashable] = set()
        self._mutex = threading.Lock()

    def acquire(self, key: Hashable) -> bool:
        with self._mutex:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def release(self, key: Hashable) -> None:
        with self._mutex:
            self._held.discard(key)

    def is_held(self, key: Hashable) -> bool:
        with self._mutex:
            return key in self._held

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Hold ``key`` for the duration of the block."""

        if not self.acquire(key):
            logger.info("Rejecting call, %s %s is already locked", self._name, key)
            raise OperationInProgressError(f"{self._name} {key} is already processing an operation")
        try:
            yield
        finally:
            self.release(key)
