"""
core/session.py

Everything one process knows, in one place.

The session is owned, not ambient. Each component receives it
explicitly and touches only the parts it needs:
- PeerDirectory: a read-only mirror of who is out there
- LinkTable: which links and connections exist
- ReferenceCounters: how many times each relationship was confirmed
- InstanceManager: which entities are alive here
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
import logging
import numpy as np

from .counters import ReferenceCounters
from .errors import ProtocolError
from .instances import InstanceManager
from .signals import (
    OBSERVATION_GROUP,
    PHYSICS_GROUP,
    Outbox,
    SignalGroup,
    field_path,
    observation_group,
    physics_group,
)

logger = logging.getLogger(__name__)

SCOPE_ALL = ("all",)


def device_class_of(name: str) -> str:
    """'/agent.3' -> '/agent'. Names without an ordinal are their own class."""
    return name.split(".", 1)[0]


@dataclass(frozen=True)
class PeerRecord:
    """A peer as announced by the directory."""
    name: str
    host: str = ""
    port: int = 0
    device_class: str = ""

    def __post_init__(self):
        if not self.device_class:
            object.__setattr__(self, "device_class", device_class_of(self.name))


@dataclass(frozen=True)
class LinkRecord:
    """
    An authorized directed data path between two peers.

    scope=None is the default scope, SCOPE_ALL accepts instances from
    anyone, otherwise a tuple of instance-owning peer names.
    """
    src: str
    dst: str
    scope: Optional[Tuple[str, ...]] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.src, self.dst)

    def involves(self, name: str) -> bool:
        return name in (self.src, self.dst)


@dataclass(frozen=True)
class ConnectionRecord:
    """A field-to-field data path nested under a link."""
    src_path: str
    dst_path: str
    instance_preserving: bool = True


class PeerDirectory:
    """Mirror of the directory's peer set. Written only from notifications."""

    def __init__(self):
        self._peers: Dict[str, PeerRecord] = {}

    def add(self, peer: PeerRecord) -> None:
        self._peers[peer.name] = peer

    def remove(self, name: str) -> Optional[PeerRecord]:
        return self._peers.pop(name, None)

    def lookup(self, name: str) -> Optional[PeerRecord]:
        return self._peers.get(name)

    def all_matching_class(self, device_class: str) -> List[PeerRecord]:
        return [p for p in self._peers.values() if p.device_class == device_class]

    def names(self) -> List[str]:
        return list(self._peers)

    def __contains__(self, name: str) -> bool:
        return name in self._peers

    def __len__(self) -> int:
        return len(self._peers)


class LinkTable:
    """Links and the connections nested under them."""

    def __init__(self):
        self._links: Dict[Tuple[str, str], LinkRecord] = {}
        self._connections: Dict[Tuple[str, str], List[ConnectionRecord]] = {}

    def add_link(self, link: LinkRecord) -> None:
        self._links[link.key] = link
        self._connections.setdefault(link.key, [])

    def remove_link(self, src: str, dst: str) -> List[ConnectionRecord]:
        """Drop a link. Returns the connections that went with it."""
        self._links.pop((src, dst), None)
        return self._connections.pop((src, dst), [])

    def get_link(self, src: str, dst: str) -> Optional[LinkRecord]:
        return self._links.get((src, dst))

    def has_link(self, src: str, dst: str) -> bool:
        return (src, dst) in self._links

    def add_connection(self, link_key: Tuple[str, str], connection: ConnectionRecord) -> bool:
        """
        Record a connection under its link.

        Returns False if it already exists. A connection can not precede its link.
        """
        if link_key not in self._links:
            raise ProtocolError(
                f"Connection {connection.src_path} -> {connection.dst_path} "
                f"requested before link {link_key[0]} -> {link_key[1]}"
            )
        connections = self._connections[link_key]
        if connection in connections:
            return False
        connections.append(connection)
        return True

    def remove_connection(self, link_key: Tuple[str, str], connection: ConnectionRecord) -> bool:
        connections = self._connections.get(link_key, [])
        if connection not in connections:
            return False
        connections.remove(connection)
        return True

    def connections(self, link_key: Optional[Tuple[str, str]] = None) -> List[ConnectionRecord]:
        if link_key is not None:
            return list(self._connections.get(link_key, []))
        return [c for conns in self._connections.values() for c in conns]

    def links(self) -> List[LinkRecord]:
        return list(self._links.values())

    def __len__(self) -> int:
        return len(self._links)


class Session:
    """
    The aggregate state of one process.

    Mutated only from the tick thread; no locks.
    """

    def __init__(
        self,
        name: str,
        groups: List[SignalGroup],
        capacity: int,
        rng: Optional[np.random.Generator] = None
    ):
        self.name = name
        self.directory = PeerDirectory()
        self.links = LinkTable()
        self.counters = ReferenceCounters()
        self.outbox = Outbox()
        self.instances = InstanceManager(groups, capacity, rng=rng, outbox=self.outbox)

    @classmethod
    def create(
        cls,
        name: str,
        capacity: int,
        bounds: Tuple[float, float] = (-1.0, 1.0),
        rng: Optional[np.random.Generator] = None
    ) -> Session:
        """
        The standard agent session: a physics group mirrored onto an
        observation group, so every body has a relayed observation slot.
        """
        session = cls(
            name,
            [physics_group(bounds), observation_group()],
            capacity,
            rng=rng,
        )
        session.instances.add_mirror(PHYSICS_GROUP, OBSERVATION_GROUP)
        return session

    def field_path(self, field_name: str) -> str:
        return field_path(self.name, field_name)

    def __repr__(self) -> str:
        return (
            f"Session(name={self.name}, peers={len(self.directory)}, "
            f"links={len(self.links)}, instances={self.instances})"
        )
