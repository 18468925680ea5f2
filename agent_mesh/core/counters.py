"""
core/counters.py

Reference counts for relationships.

Add and remove notifications arrive repeated and out of order.
Counting them, instead of flipping flags, keeps negotiation idempotent.
"""

from __future__ import annotations
from typing import Dict, Hashable, List
import logging

from .errors import CounterUnderflowError

logger = logging.getLogger(__name__)


class ReferenceCounters:
    """
    Per-relationship integer counters that never go negative.

    A decrement below zero is a protocol-consistency violation:
    it is logged, recorded in `underflows`, and the counter stays at zero.
    """

    def __init__(self):
        self._counts: Dict[Hashable, int] = {}
        self.underflows: List[CounterUnderflowError] = []

    def increment(self, key: Hashable) -> int:
        count = self._counts.get(key, 0) + 1
        self._counts[key] = count
        return count

    def decrement(self, key: Hashable) -> int:
        count = self._counts.get(key, 0)
        if count <= 0:
            error = CounterUnderflowError(key)
            self.underflows.append(error)
            logger.error(f"Protocol violation: {error}")
            self._counts.pop(key, None)
            return 0

        count -= 1
        if count:
            self._counts[key] = count
        else:
            del self._counts[key]
        return count

    def get(self, key: Hashable) -> int:
        return self._counts.get(key, 0)

    def reset(self, key: Hashable) -> None:
        """Forget a counter without reporting."""
        self._counts.pop(key, None)

    def keys(self) -> List[Hashable]:
        return list(self._counts)

    def __contains__(self, key: Hashable) -> bool:
        return self._counts.get(key, 0) > 0

    def __repr__(self) -> str:
        return f"ReferenceCounters(active={len(self._counts)}, underflows={len(self.underflows)})"
