"""
core/signals.py

Signals are the only thing peers ever see of each other.

A signal group bundles the fields that describe one kind of entity.
Position, velocity, acceleration and force of a body move together:
if one of them has instance 5, all of them do.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import numpy as np

INPUT = "input"
OUTPUT = "output"
BOTH = "both"

PHYSICS_GROUP = "physics"
OBSERVATION_GROUP = "observation"


def field_path(device: str, field_name: str) -> str:
    """Join a device name and a field name: ('/agent.1', 'force') -> '/agent.1/force'."""
    return f"{device}/{field_name.lstrip('/')}"


def split_field_path(path: str) -> Tuple[str, str]:
    """
    Split a field path back into (device, field name).

    Device names carry a single leading slash and no further slashes,
    so everything after the second slash is the field name.
    """
    head, sep, tail = path.lstrip("/").partition("/")
    if not sep:
        raise ValueError(f"Not a field path: {path}")
    return f"/{head}", tail


@dataclass(frozen=True)
class FieldSpec:
    """One field of a signal group."""
    name: str
    arity: int = 2                     # Vector length
    minimum: float = -1.0              # Declared value range
    maximum: float = 1.0
    direction: str = BOTH              # input, output or both
    initializer: str = "zero"          # zero or uniform

    @property
    def is_output(self) -> bool:
        return self.direction in (OUTPUT, BOTH)

    @property
    def is_input(self) -> bool:
        return self.direction in (INPUT, BOTH)

    def initial_value(self, rng: np.random.Generator) -> np.ndarray:
        """Default value for a freshly activated instance."""
        if self.initializer == "uniform":
            return rng.uniform(self.minimum, self.maximum, size=self.arity)
        return np.zeros(self.arity)


@dataclass
class SignalGroup:
    """
    A named bundle of logically correlated fields.

    The group, not the field, owns instance state.
    """
    name: str
    fields: Dict[str, FieldSpec] = field(default_factory=dict)

    def __post_init__(self):
        # Accept a plain list of FieldSpec for convenience
        if isinstance(self.fields, (list, tuple)):
            self.fields = {spec.name: spec for spec in self.fields}

    def outputs(self) -> List[FieldSpec]:
        return [spec for spec in self.fields.values() if spec.is_output]

    def inputs(self) -> List[FieldSpec]:
        return [spec for spec in self.fields.values() if spec.is_input]

    def __contains__(self, field_name: str) -> bool:
        return field_name in self.fields


def physics_group(bounds: Tuple[float, float] = (-1.0, 1.0), arity: int = 2) -> SignalGroup:
    """The body of an agent: position, velocity, acceleration, force."""
    lo, hi = bounds
    return SignalGroup(PHYSICS_GROUP, [
        FieldSpec("position", arity, lo, hi, BOTH, "uniform"),
        FieldSpec("velocity", arity, lo, hi, BOTH),
        FieldSpec("acceleration", arity, lo, hi, BOTH),
        FieldSpec("force", arity, lo, hi, INPUT),
    ])


def observation_group(arity: int = 2) -> SignalGroup:
    """What an agent relays to its consumers."""
    return SignalGroup(OBSERVATION_GROUP, [
        FieldSpec("observation", arity, -1.0, 1.0, OUTPUT),
    ])


@dataclass
class OutboundUpdate:
    """
    One value leaving the process.

    value=None is the release notification for that instance.
    """
    field_name: str
    index: int
    value: Optional[np.ndarray]

    @property
    def is_release(self) -> bool:
        return self.value is None


class Outbox:
    """
    Updates waiting for the end of the tick.

    Everything pushed during one tick leaves together under one
    timetag, so receivers never see half of a tick.
    """

    def __init__(self):
        self._pending: List[OutboundUpdate] = []

    def push(self, field_name: str, index: int, value: Optional[np.ndarray]) -> None:
        if value is not None:
            value = np.array(value, dtype=np.float64)
        self._pending.append(OutboundUpdate(field_name, index, value))

    def drain(self) -> List[OutboundUpdate]:
        pending, self._pending = self._pending, []
        return pending

    def __len__(self) -> int:
        return len(self._pending)

    def __repr__(self) -> str:
        return f"Outbox(pending={len(self._pending)})"
