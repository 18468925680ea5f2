"""
environments/influence_field.py

The upstream peer, in process.

A field takes the positions of every agent linked to it and answers
each with an observation: a push back from the border, and a push
away from the nearest neighbor. Each position instance owns a matching
observation instance; they are born together and released together,
whichever side the release comes from.

Inspired by:
- Potential fields
- Reynolds boids separation
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
import logging
import numpy as np

from agent_mesh.core.errors import StaleIndexError
from agent_mesh.core.instances import InstanceManager
from agent_mesh.core.signals import (
    INPUT,
    OUTPUT,
    FieldSpec,
    OutboundUpdate,
    Outbox,
    SignalGroup,
    split_field_path,
)

logger = logging.getLogger(__name__)

POSITION_FIELD = "node/position"
OBSERVATION_FIELD = "node/observation"
BORDER_GAIN_FIELD = "border_gain"


@dataclass
class InfluenceConfig:
    """Configuration for the influence field."""
    name: str = "/influence.1"
    max_agents: int = 100                          # Reserved instance slots
    bounds: Tuple[float, float] = (-1.0, 1.0)      # Field extent per axis
    border_gain: float = 0.5                       # Push back from the border, [0, 1]
    repulsion: float = 0.01                        # Push away from the nearest neighbor


class InfluenceField:
    """
    Upstream peer that turns positions into observations.

    Features:
    - Position instances mirrored onto observation instances
    - Release from either side (null position, downstream release)
    - One batch of observations per step
    """

    def __init__(
        self,
        config: Optional[InfluenceConfig] = None,
        rng: Optional[np.random.Generator] = None
    ):
        self.config = config or InfluenceConfig()
        self.border_gain = self.config.border_gain
        self.time = 0

        lo, hi = self.config.bounds
        self.outbox = Outbox()
        self.instances = InstanceManager(
            [
                SignalGroup("position", [FieldSpec(POSITION_FIELD, 2, lo, hi, INPUT)]),
                SignalGroup("observation", [FieldSpec(OBSERVATION_FIELD, 2, -1.0, 1.0, OUTPUT)]),
            ],
            capacity=self.config.max_agents,
            rng=rng,
            outbox=self.outbox,
        )
        self.instances.add_mirror("position", "observation")

    @property
    def name(self) -> str:
        return self.config.name

    # ==================== Inputs ====================

    def on_position(self, index: int, value: Optional[List[float]], origin: Optional[str] = None) -> None:
        """A position arrived for an agent instance; None releases it."""
        if value is None:
            self.instances.release("position", index)
            return
        self.instances.ensure_active("position", index, origin=origin)
        self.instances.update("position", POSITION_FIELD, index, value)

    def on_border_gain(self, value: Optional[List[float]]) -> None:
        if value is None:
            return
        self.border_gain = float(np.clip(value[0], 0.0, 1.0))

    def on_downstream_release(self, index: int) -> None:
        """A receiver of our observations released its instance."""
        logger.debug(f"Downstream release of instance {index}")
        self.instances.release("observation", index)

    def handle(self, event) -> None:
        """Route one inbound ValueUpdate by destination field."""
        _, field_name = split_field_path(event.dst_path)
        origin = split_field_path(event.src_path)[0] if event.src_path else None
        try:
            if field_name == POSITION_FIELD:
                self.on_position(event.index, event.value, origin=origin)
            elif field_name == OBSERVATION_FIELD and event.is_release:
                self.on_downstream_release(event.index)
            elif field_name == BORDER_GAIN_FIELD:
                self.on_border_gain(event.value)
            else:
                logger.debug(f"Ignoring value for unknown field {field_name}")
        except StaleIndexError as e:
            logger.warning(f"Dropped update: {e}")

    # ==================== Simulation ====================

    def step(self) -> List[OutboundUpdate]:
        """
        Compute one observation per active instance.

        Returns everything queued this step (observations and releases),
        to be sent as one batch.
        """
        self.time += 1
        positions = self.get_positions()

        for index, pos in positions.items():
            observation = self._observe(index, pos, positions)
            self.instances.update("observation", OBSERVATION_FIELD, index, observation)
            self.outbox.push(OBSERVATION_FIELD, index, observation)

        return self.outbox.drain()

    def release_all(self) -> List[OutboundUpdate]:
        """Release every agent instance on shutdown. Returns the release batch."""
        released = self.instances.release_all()
        logger.info(f"Field {self.name} released {released} agents")
        return self.outbox.drain()

    def _observe(self, index: int, pos: np.ndarray, positions: Dict[int, np.ndarray]) -> np.ndarray:
        lo, hi = self.config.bounds
        center = (lo + hi) / 2
        half_extent = (hi - lo) / 2

        # Border: grows linearly from the center towards the walls
        push = -self.border_gain * (pos - center) / half_extent

        # Separation from the nearest neighbor
        nearest = None
        nearest_distance = np.inf
        for other, other_pos in positions.items():
            if other == index:
                continue
            distance = np.linalg.norm(pos - other_pos)
            if distance < nearest_distance:
                nearest, nearest_distance = other_pos, distance

        if nearest is not None and nearest_distance > 1e-9:
            push = push + self.config.repulsion * (pos - nearest) / nearest_distance ** 2

        return np.clip(push, -1.0, 1.0)

    def get_positions(self) -> Dict[int, np.ndarray]:
        """Positions of all active instances, in activation order."""
        return {
            index: self.instances.value("position", POSITION_FIELD, index)
            for index in self.instances.active_indices("position")
        }

    def __repr__(self) -> str:
        return (
            f"InfluenceField(name={self.name}, "
            f"agents={len(self.instances.active_indices('position'))}, "
            f"time={self.time})"
        )
