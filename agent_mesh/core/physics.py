"""
core/physics.py

A small integrator for a small world.

Acceleration decays, velocity follows, position follows velocity.
Walls reflect, and lose a little on every bounce.

Two writers touch acceleration: the tick (decay, then consumed) and
incoming forces (added as they arrive, at their own rate). They compose
additively; neither overwrites the other.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple
import logging
import numpy as np

from .errors import MissingFieldError
from .instances import InstanceManager
from .signals import PHYSICS_GROUP

logger = logging.getLogger(__name__)


@dataclass
class PhysicsConfig:
    """Constants of the world. Configuration, not derived values."""
    mass: float = 1.0                               # Inertia of a body
    gain: float = 0.0001                            # Force scaling
    damping: float = 0.9                            # Per-tick decay of accel and velocity
    restitution: float = 0.95                       # Energy kept on reflection
    bounds: Tuple[float, float] = (-1.0, 1.0)       # Per-axis world limits


def integrate(
    accel: np.ndarray,
    vel: np.ndarray,
    pos: np.ndarray,
    config: PhysicsConfig
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Advance one body by one tick.

    Returns (acceleration for the next tick, velocity, position).
    The acceleration is consumed by the tick, so the first element is zero.
    Pure: same inputs give bit-identical outputs.
    """
    lower, upper = config.bounds

    accel = np.asarray(accel, dtype=np.float64) * config.damping
    vel = np.asarray(vel, dtype=np.float64) * config.damping + accel
    pos = np.asarray(pos, dtype=np.float64) + vel

    # Inelastic reflection, lower wall first
    below = pos < lower
    pos = np.where(below, lower, pos)
    vel = np.where(below, vel * -config.restitution, vel)

    above = pos >= upper
    pos = np.where(above, upper, pos)
    vel = np.where(above, vel * -config.restitution, vel)

    return np.zeros_like(accel), vel, pos


def apply_force(accel: np.ndarray, force: np.ndarray, config: PhysicsConfig) -> np.ndarray:
    """Fold an incoming force into the stored acceleration."""
    force = np.asarray(force, dtype=np.float64)
    return np.asarray(accel, dtype=np.float64) + force / config.mass * config.gain


class PhysicsIntegrator:
    """
    Runs the integrator over the active instances of one group.

    Reads and writes the instance store, and pushes every output field
    it changes onto the store's outbox.
    """

    def __init__(
        self,
        instances: InstanceManager,
        config: Optional[PhysicsConfig] = None,
        group: str = PHYSICS_GROUP
    ):
        self.instances = instances
        self.config = config or PhysicsConfig()
        self.group = group
        self.ticks = 0
        self.skipped = 0

    def step(self, indices: Iterable[int]) -> int:
        """
        Integrate every instance in `indices` (a snapshot, taken by the caller).

        An instance with a missing field is skipped for this tick and logged,
        never defaulted. Returns the number of instances integrated.
        """
        self.ticks += 1
        integrated = 0

        for index in indices:
            try:
                accel = self.instances.require(self.group, "acceleration", index)
                vel = self.instances.require(self.group, "velocity", index)
                pos = self.instances.require(self.group, "position", index)
            except MissingFieldError as e:
                self.skipped += 1
                logger.warning(f"Skipping instance {index} this tick: {e}")
                continue

            accel, vel, pos = integrate(accel, vel, pos, self.config)

            self.instances.update(self.group, "acceleration", index, accel)
            self.instances.update(self.group, "velocity", index, vel)
            self.instances.update(self.group, "position", index, pos)

            outbox = self.instances.outbox
            outbox.push("acceleration", index, accel)
            outbox.push("velocity", index, vel)
            outbox.push("position", index, pos)
            integrated += 1

        return integrated

    def apply_force(self, index: int, force: np.ndarray) -> np.ndarray:
        """Add a force to an instance's acceleration. Returns the new acceleration."""
        accel = self.instances.require(self.group, "acceleration", index)
        accel = apply_force(accel, force, self.config)
        self.instances.update(self.group, "acceleration", index, accel)
        return accel

    def __repr__(self) -> str:
        return f"PhysicsIntegrator(group={self.group}, ticks={self.ticks}, skipped={self.skipped})"
