"""
agent_mesh/services/transport.py

Outbound side of a mesh agent.

A transport carries two kinds of traffic:
1. Requests to the directory: link, unlink, connect, disconnect
2. Values: batches of instance updates sharing one timetag, routed
   along known connections, plus out-of-band direct sends

A request aimed at a peer that is already gone raises TransportError.
Value delivery is best effort.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple
import json
import logging
import numpy as np

from agent_mesh.core.errors import TransportError
from agent_mesh.core.session import ConnectionRecord, LinkRecord, PeerRecord
from agent_mesh.core.signals import OutboundUpdate, field_path, split_field_path

from .events import (
    INBOX_PREFIX,
    REDIS_KEY_PREFIX,
    EventQueue,
    LinkAdded,
    LinkRemoved,
    ValueUpdate,
    event_to_json,
)

logger = logging.getLogger(__name__)

DIRECTORY_REQUESTS_KEY = f"{REDIS_KEY_PREFIX}directory:requests"
PEER_PRESENCE_PREFIX = f"{REDIS_KEY_PREFIX}peers:"


@dataclass
class SentBatch:
    """One tick's worth of outbound values."""
    source: str
    timetag: float
    updates: List[OutboundUpdate] = field(default_factory=list)


class RoutingTable:
    """Known connections, indexed by source field path."""

    def __init__(self):
        self._routes: Dict[str, List[ConnectionRecord]] = {}

    def add(self, connection: ConnectionRecord) -> None:
        routes = self._routes.setdefault(connection.src_path, [])
        if connection not in routes:
            routes.append(connection)

    def remove(self, connection: ConnectionRecord) -> None:
        routes = self._routes.get(connection.src_path, [])
        if connection in routes:
            routes.remove(connection)

    def remove_device(self, device: str) -> None:
        """Forget every connection touching a device."""
        for src_path in list(self._routes):
            self._routes[src_path] = [
                c for c in self._routes[src_path]
                if split_field_path(c.src_path)[0] != device
                and split_field_path(c.dst_path)[0] != device
            ]

    def deliveries(
        self,
        source: str,
        updates: List[OutboundUpdate],
        timetag: float
    ) -> List[Tuple[str, ValueUpdate]]:
        """Fan a batch out into (destination device, event) pairs."""
        deliveries = []
        for update in updates:
            src_path = field_path(source, update.field_name)
            for connection in self._routes.get(src_path, []):
                device, _ = split_field_path(connection.dst_path)
                value = None if update.value is None else update.value.tolist()
                # Instance-preserving connections keep the index; others collapse to 0
                index = update.index if connection.instance_preserving else 0
                deliveries.append((device, ValueUpdate(
                    src_path=src_path,
                    dst_path=connection.dst_path,
                    index=index,
                    value=value,
                    timetag=timetag,
                )))
        return deliveries


class Transport(ABC):
    """
    Abstract base for transports.

    Requests raise TransportError when the peer is unreachable.
    """

    @abstractmethod
    def link(self, link: LinkRecord) -> None:
        """Request a link between two peers."""
        pass

    @abstractmethod
    def unlink(self, src: str, dst: str) -> None:
        """Request removal of a link."""
        pass

    @abstractmethod
    def connect(self, connection: ConnectionRecord) -> None:
        """Request a field-to-field connection."""
        pass

    @abstractmethod
    def disconnect(self, connection: ConnectionRecord) -> None:
        """Request removal of a connection."""
        pass

    @abstractmethod
    def send_batch(self, source: str, updates: List[OutboundUpdate], timetag: float) -> None:
        """Send a batch of updates from `source` under one timetag."""
        pass

    @abstractmethod
    def send_direct(self, peer: PeerRecord, path: str, value: np.ndarray) -> None:
        """Send one value straight to a peer's field, bypassing connections."""
        pass

    def close(self) -> None:
        """Release transport resources."""
        pass


class InMemoryTransport(Transport):
    """
    In-process transport for tests and single-machine meshes.

    Records every request and batch. Peers registered with
    `register_peer` receive routed values in their event queues.
    With `acknowledge` set, link requests are echoed back as
    LinkAdded/LinkRemoved events, standing in for the directory.
    """

    def __init__(self, acknowledge: Optional[EventQueue] = None):
        self.acknowledge = acknowledge
        self.requests: List[Tuple] = []
        self.batches: List[SentBatch] = []
        self.direct: List[Tuple[str, str, List[float]]] = []
        self.unreachable: Set[str] = set()
        self.closed = False
        self.routes = RoutingTable()
        self._peers: Dict[str, EventQueue] = {}

    def register_peer(self, name: str, queue: EventQueue) -> None:
        self._peers[name] = queue

    def unregister_peer(self, name: str) -> None:
        self._peers.pop(name, None)
        self.routes.remove_device(name)

    def _check(self, *names: str) -> None:
        for name in names:
            if name in self.unreachable:
                raise TransportError(name)

    def link(self, link: LinkRecord) -> None:
        self._check(link.src, link.dst)
        self.requests.append(("link", link.src, link.dst, link.scope))
        if self.acknowledge is not None:
            self.acknowledge.push(LinkAdded(link.src, link.dst, link.scope))

    def unlink(self, src: str, dst: str) -> None:
        self.requests.append(("unlink", src, dst))
        if self.acknowledge is not None:
            self.acknowledge.push(LinkRemoved(src, dst))

    def connect(self, connection: ConnectionRecord) -> None:
        self._check(
            split_field_path(connection.src_path)[0],
            split_field_path(connection.dst_path)[0],
        )
        self.requests.append((
            "connect",
            connection.src_path,
            connection.dst_path,
            connection.instance_preserving,
        ))
        self.routes.add(connection)

    def disconnect(self, connection: ConnectionRecord) -> None:
        self.requests.append(("disconnect", connection.src_path, connection.dst_path))
        self.routes.remove(connection)

    def send_batch(self, source: str, updates: List[OutboundUpdate], timetag: float) -> None:
        self.batches.append(SentBatch(source, timetag, list(updates)))
        for device, event in self.routes.deliveries(source, updates, timetag):
            queue = self._peers.get(device)
            if queue is not None:
                queue.push(event)

    def send_direct(self, peer: PeerRecord, path: str, value: np.ndarray) -> None:
        self._check(peer.name)
        payload = np.asarray(value, dtype=np.float64).tolist()
        self.direct.append((peer.name, path, payload))
        queue = self._peers.get(peer.name)
        if queue is not None:
            queue.push(ValueUpdate(src_path="", dst_path=path, index=0, value=payload))

    def requests_of(self, kind: str) -> List[Tuple]:
        return [r for r in self.requests if r[0] == kind]

    def close(self) -> None:
        self.closed = True


class RedisTransport(Transport):
    """
    Redis-backed transport for distributed meshes.

    - Directory requests go onto one shared list
    - Values go straight into each destination agent's inbox list
    - A peer counts as present while its presence key exists
    """

    def __init__(
        self,
        name: str,
        redis_url: str = "redis://localhost:6379",
        requests_key: str = DIRECTORY_REQUESTS_KEY,
        presence_prefix: str = PEER_PRESENCE_PREFIX,
        inbox_prefix: str = INBOX_PREFIX,
    ):
        self.name = name
        self.redis_url = redis_url
        self.requests_key = requests_key
        self.presence_prefix = presence_prefix
        self.inbox_prefix = inbox_prefix
        self.routes = RoutingTable()
        self._redis = None

    def _get_redis(self):
        """Lazy connection to Redis."""
        if self._redis is None:
            try:
                import redis
                self._redis = redis.from_url(self.redis_url)
                self._redis.ping()
                logger.info(f"Transport connected to Redis at {self.redis_url}")
            except ImportError:
                raise ImportError(
                    "redis package required for RedisTransport. "
                    "Install with: pip install redis"
                )
            except Exception as e:
                logger.error(f"Failed to connect to Redis: {e}")
                raise
        return self._redis

    def _request(self, payload: Dict, *peers: str) -> None:
        """Push a directory request, after checking every peer is still present."""
        try:
            r = self._get_redis()
            for peer in peers:
                if peer != self.name and not r.exists(f"{self.presence_prefix}{peer}"):
                    raise TransportError(peer, "not present in directory")
            r.rpush(self.requests_key, json.dumps({"requester": self.name, **payload}))
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(peers[0] if peers else self.name, str(e)) from e

    def link(self, link: LinkRecord) -> None:
        scope = list(link.scope) if link.scope is not None else None
        self._request(
            {"op": "link", "src": link.src, "dst": link.dst, "scope": scope},
            link.src, link.dst,
        )

    def unlink(self, src: str, dst: str) -> None:
        # Unlinking a departed peer is still worth announcing; skip presence checks
        self._request({"op": "unlink", "src": src, "dst": dst})

    def connect(self, connection: ConnectionRecord) -> None:
        self._request(
            {
                "op": "connect",
                "src": connection.src_path,
                "dst": connection.dst_path,
                "instance_preserving": connection.instance_preserving,
            },
            split_field_path(connection.src_path)[0],
            split_field_path(connection.dst_path)[0],
        )
        self.routes.add(connection)

    def disconnect(self, connection: ConnectionRecord) -> None:
        self.routes.remove(connection)
        self._request({
            "op": "disconnect",
            "src": connection.src_path,
            "dst": connection.dst_path,
        })

    def send_batch(self, source: str, updates: List[OutboundUpdate], timetag: float) -> None:
        deliveries = self.routes.deliveries(source, updates, timetag)
        if not deliveries:
            return
        try:
            r = self._get_redis()
            for device, event in deliveries:
                r.rpush(f"{self.inbox_prefix}{device}", event_to_json(event))
        except Exception as e:
            logger.warning(f"Failed to send batch of {len(deliveries)} values: {e}")

    def send_direct(self, peer: PeerRecord, path: str, value: np.ndarray) -> None:
        event = ValueUpdate(
            src_path="",
            dst_path=path,
            index=0,
            value=np.asarray(value, dtype=np.float64).tolist(),
        )
        try:
            self._get_redis().rpush(f"{self.inbox_prefix}{peer.name}", event_to_json(event))
        except Exception as e:
            raise TransportError(peer.name, str(e)) from e

    def close(self) -> None:
        if self._redis is not None:
            self._redis.close()
            self._redis = None


def create_transport(
    backend: str = "memory",
    name: str = "",
    redis_url: str = "redis://localhost:6379",
    **kwargs
) -> Transport:
    """
    Factory function to create a transport.

    Args:
        backend: "memory" or "redis"
        name: Name of the agent that owns the transport
        redis_url: Redis connection URL (for redis backend)

    Returns:
        Transport instance
    """
    if backend == "memory":
        return InMemoryTransport(**kwargs)
    elif backend == "redis":
        return RedisTransport(name, redis_url=redis_url, **kwargs)
    else:
        raise ValueError(f"Unknown backend: {backend}")
