"""
Core components of the mesh agent.

- signals: Fields, signal groups, outbound updates
- instances: Instance lifecycle, mirroring, entity-wide release
- counters: Reference counts that never go negative
- physics: Damped integrator with reflecting walls
- session: Peers, links, connections, and the state of one process
"""

from .counters import ReferenceCounters
from .instances import InstanceManager
from .physics import PhysicsConfig, PhysicsIntegrator
from .session import Session

__all__ = [
    "ReferenceCounters",
    "InstanceManager",
    "PhysicsConfig",
    "PhysicsIntegrator",
    "Session",
]
