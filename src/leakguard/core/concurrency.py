"""
Concurrency Gate - Fixed-capacity, non-blocking scan slots.

Scans are never queued: when every slot is taken, ``acquire()`` fails at once
with ConcurrencyExceededError and the caller tells the user to retry later.

Always hold a slot through the scoped form so it is returned on every exit
path (success, scanner error, timeout, cancellation):

    >>> gate = ConcurrencyGate(max_concurrent=3)
    >>> with gate.slot():
    ...     await scanner.scan(target)

The gate runs on a single event loop, so plain counters are enough; what has
to hold is that every acquire is matched by exactly one release.
"""

import itertools
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator

import structlog

from ..errors import ConcurrencyExceededError


@dataclass(eq=False)
class Permit:
    """Right to occupy one scan slot"""
    permit_id: int
    released: bool = field(default=False)


class ConcurrencyGate:
    """
    Non-blocking counting gate.

    Example:
        >>> gate = ConcurrencyGate(max_concurrent=1)
        >>> permit = gate.acquire()
        >>> gate.acquire()
        Traceback (most recent call last):
        ConcurrencyExceededError: ...
        >>> gate.release(permit)
    """

    def __init__(self, max_concurrent: int):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")

        self.max_concurrent = max_concurrent
        self._active = 0
        self._ids = itertools.count(1)

        # Statistics
        self.total_acquired = 0
        self.total_rejected = 0

        self.logger = structlog.get_logger(__name__)

    @property
    def active(self) -> int:
        """Permits currently held"""
        return self._active

    @property
    def available(self) -> int:
        return self.max_concurrent - self._active

    def acquire(self) -> Permit:
        """
        Take a slot without waiting.

        Raises:
            ConcurrencyExceededError: If all slots are in use
        """
        if self._active >= self.max_concurrent:
            self.total_rejected += 1
            self.logger.warning(
                "concurrency_limit_reached",
                active=self._active,
                max_concurrent=self.max_concurrent,
            )
            raise ConcurrencyExceededError()

        self._active += 1
        self.total_acquired += 1
        permit = Permit(permit_id=next(self._ids))

        self.logger.debug("permit_acquired", permit_id=permit.permit_id, active=self._active)
        return permit

    def release(self, permit: Permit) -> None:
        """
        Return a slot. Releasing the same permit twice is a logged no-op.
        """
        if permit.released:
            self.logger.warning("permit_double_release", permit_id=permit.permit_id)
            return

        permit.released = True
        self._active -= 1
        self.logger.debug("permit_released", permit_id=permit.permit_id, active=self._active)

    @contextmanager
    def slot(self) -> Iterator[Permit]:
        """Hold one permit for the duration of the block"""
        permit = self.acquire()
        try:
            yield permit
        finally:
            self.release(permit)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "current_scans": self._active,
            "max_concurrent_scans": self.max_concurrent,
            "available_slots": self.available,
            "total_acquired": self.total_acquired,
            "total_rejected": self.total_rejected,
        }

    def __repr__(self) -> str:
        return f"ConcurrencyGate(active={self._active}, max={self.max_concurrent})"
