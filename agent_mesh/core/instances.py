"""
core/instances.py

The lifecycle of instances.

An instance is one entity's slot in a signal group. It is born on the
first value that mentions it, and it dies on the first null. Death is
entity-wide: every field of every group that speaks for the same entity
goes with it, and the release is announced outward so peers can follow.

Inspired by:
- Cell lifecycles (one signal to divide, one signal to die)
- Reference-counted handles
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional
import logging
import numpy as np

from .errors import InstanceExhaustedError, MissingFieldError, StaleIndexError
from .signals import Outbox, SignalGroup

logger = logging.getLogger(__name__)


class InstanceEventKind(Enum):
    """What happened to an instance."""
    CREATED = "created"
    RELEASED = "released"


@dataclass
class InstanceEvent:
    """A transition of one instance slot."""
    kind: InstanceEventKind
    group: str
    index: int
    origin: Optional[str] = None


class InstanceManager:
    """
    Owns the active/released state of every local instance slot.

    Active state is kept per group, never per field, so a group can not
    have position active for instance 5 while velocity is not.
    Active indices are kept in activation order.
    """

    def __init__(
        self,
        groups: Iterable[SignalGroup],
        capacity: int,
        rng: Optional[np.random.Generator] = None,
        outbox: Optional[Outbox] = None
    ):
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")

        self.groups: Dict[str, SignalGroup] = {g.name: g for g in groups}
        self.capacity = capacity
        self.rng = rng if rng is not None else np.random.default_rng()
        self.outbox = outbox if outbox is not None else Outbox()

        # group -> index -> field -> value, in activation order
        self._active: Dict[str, Dict[int, Dict[str, np.ndarray]]] = {
            name: {} for name in self.groups
        }
        # group -> index -> peer whose value created the instance
        self._origins: Dict[str, Dict[int, Optional[str]]] = {
            name: {} for name in self.groups
        }
        self._mirrors: Dict[str, List[str]] = {}
        self._events: deque = deque()

    # ==================== Mirroring ====================

    def add_mirror(self, source: str, target: str) -> None:
        """Activating an index in `source` also activates it in `target`."""
        self._group(source)
        self._group(target)
        targets = self._mirrors.setdefault(source, [])
        if target not in targets:
            targets.append(target)

    def mirror_activation(self, source: str, target: str, index: int) -> bool:
        """
        Force `index` active in `target` because it is active in `source`.

        Idempotent: returns False when the target was already active.
        """
        origin = self._origins[source].get(index)
        return self.ensure_active(target, index, origin=origin)

    def _entity_groups(self, group: str) -> List[str]:
        """All groups that speak for the same entity, following mirrors both ways."""
        related = [group]
        frontier = [group]
        while frontier:
            current = frontier.pop()
            neighbors = list(self._mirrors.get(current, []))
            neighbors += [s for s, targets in self._mirrors.items() if current in targets]
            for name in neighbors:
                if name not in related:
                    related.append(name)
                    frontier.append(name)
        return related

    # ==================== Lifecycle ====================

    def ensure_active(self, group: str, index: int, origin: Optional[str] = None) -> bool:
        """
        Activate a released slot with default field values.

        Returns True only on an actual released -> active transition.
        """
        spec = self._group(group)
        self._check_index(group, index)

        slots = self._active[group]
        if index in slots:
            return False

        slots[index] = {
            name: field_spec.initial_value(self.rng)
            for name, field_spec in spec.fields.items()
        }
        self._origins[group][index] = origin
        self._events.append(InstanceEvent(InstanceEventKind.CREATED, group, index, origin))
        logger.debug(f"Instance {index} of '{group}' created (origin={origin})")

        for target in self._mirrors.get(group, []):
            self.mirror_activation(group, target, index)

        return True

    def allocate(self, group: str, origin: Optional[str] = None) -> int:
        """Activate the lowest released index. Raises InstanceExhaustedError when full."""
        slots = self._active[self._group(group).name]
        for index in range(self.capacity):
            if index not in slots:
                self.ensure_active(group, index, origin=origin)
                return index
        raise InstanceExhaustedError(group, self.capacity)

    def release(self, group: str, index: int) -> bool:
        """
        Release an entity everywhere it is represented.

        Pushes a release notification for every output field of every
        affected group. Releasing a released slot is a no-op.
        """
        self._group(group)
        self._check_index(group, index)

        released = False
        for name in self._entity_groups(group):
            if self._active[name].pop(index, None) is None:
                continue
            origin = self._origins[name].pop(index, None)
            self._events.append(InstanceEvent(InstanceEventKind.RELEASED, name, index, origin))
            for field_spec in self.groups[name].outputs():
                self.outbox.push(field_spec.name, index, None)
            released = True

        if released:
            logger.debug(f"Instance {index} released (entity of '{group}')")
        return released

    def release_all(self) -> int:
        """Release every active instance of every group. Returns entities released."""
        count = 0
        for group in self.groups:
            for index in list(self._active[group]):
                if self.release(group, index):
                    count += 1
        return count

    # ==================== Values ====================

    def is_active(self, group: str, index: int) -> bool:
        return index in self._active[self._group(group).name]

    def active_indices(self, group: str) -> List[int]:
        """Active indices in activation order (not sorted)."""
        return list(self._active[self._group(group).name])

    def value(self, group: str, field_name: str, index: int) -> Optional[np.ndarray]:
        slot = self._active[self._group(group).name].get(index)
        if slot is None:
            return None
        return slot.get(field_name)

    def require(self, group: str, field_name: str, index: int) -> np.ndarray:
        """Like value(), but a missing value raises MissingFieldError."""
        value = self.value(group, field_name, index)
        if value is None:
            raise MissingFieldError(group, field_name, index)
        return value

    def update(self, group: str, field_name: str, index: int, value) -> None:
        """Overwrite a field value of an active instance."""
        spec = self._group(group)
        if field_name not in spec:
            raise KeyError(f"Group '{group}' has no field '{field_name}'")
        slot = self._active[group].get(index)
        if slot is None:
            raise MissingFieldError(group, field_name, index)
        slot[field_name] = np.array(value, dtype=np.float64)

    def origin_of(self, group: str, index: int) -> Optional[str]:
        return self._origins[self._group(group).name].get(index)

    def indices_from(self, group: str, origin: str) -> List[int]:
        """Active indices created by values from `origin`."""
        origins = self._origins[self._group(group).name]
        return [index for index, peer in origins.items() if peer == origin]

    def drain_events(self) -> List[InstanceEvent]:
        events = list(self._events)
        self._events.clear()
        return events

    # ==================== Internals ====================

    def _group(self, name: str) -> SignalGroup:
        try:
            return self.groups[name]
        except KeyError:
            raise KeyError(f"Unknown signal group: {name}") from None

    def _check_index(self, group: str, index: int) -> None:
        if not 0 <= index < self.capacity:
            raise StaleIndexError(group, index, self.capacity)

    def __repr__(self) -> str:
        active = {name: len(slots) for name, slots in self._active.items()}
        return f"InstanceManager(capacity={self.capacity}, active={active})"
