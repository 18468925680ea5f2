"""
agent_mesh/services/events.py

Inbound event queue for mesh agents.

Everything that happens to a process arrives here, in order:
- Directory notifications (peers appearing and disappearing)
- Link notifications (data paths authorized or revoked)
- Value updates (instance values, or null releases)

The queue is drained once per tick. Negotiation logic never sees
the transport's calling convention, only these events.

Backends:
- In-memory, for tests and single-machine meshes
- Redis lists, one inbox per agent, for distributed meshes
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union
import json
import time
import logging

from agent_mesh.core.session import LinkRecord, PeerRecord

logger = logging.getLogger(__name__)

REDIS_KEY_PREFIX = "agent_mesh:"
INBOX_PREFIX = f"{REDIS_KEY_PREFIX}inbox:"


@dataclass
class PeerAdded:
    """The directory announced a peer."""
    name: str
    host: str = ""
    port: int = 0
    device_class: str = ""

    type = "peer_added"

    def to_record(self) -> PeerRecord:
        return PeerRecord(self.name, self.host, self.port, self.device_class)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "device_class": self.device_class,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PeerAdded":
        return cls(
            name=d["name"],
            host=d.get("host", ""),
            port=d.get("port", 0),
            device_class=d.get("device_class", ""),
        )


@dataclass
class PeerRemoved:
    """The directory lost a peer."""
    name: str

    type = "peer_removed"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "name": self.name}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PeerRemoved":
        return cls(name=d["name"])


@dataclass
class LinkAdded:
    """A link between two peers now exists."""
    src: str
    dst: str
    scope: Optional[Tuple[str, ...]] = None

    type = "link_added"

    def to_record(self) -> LinkRecord:
        return LinkRecord(self.src, self.dst, self.scope)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "src": self.src,
            "dst": self.dst,
            "scope": list(self.scope) if self.scope is not None else None,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LinkAdded":
        scope = d.get("scope")
        return cls(
            src=d["src"],
            dst=d["dst"],
            scope=tuple(scope) if scope is not None else None,
        )


@dataclass
class LinkRemoved:
    """A link between two peers is gone, solicited or not."""
    src: str
    dst: str

    type = "link_removed"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "src": self.src, "dst": self.dst}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LinkRemoved":
        return cls(src=d["src"], dst=d["dst"])


@dataclass
class ValueUpdate:
    """
    One instance value arriving on a local input field.

    value=None is a release notification for that instance.
    """
    src_path: str
    dst_path: str
    index: int
    value: Optional[List[float]]
    timetag: float = field(default_factory=time.time)

    type = "value"

    @property
    def is_release(self) -> bool:
        return self.value is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "src_path": self.src_path,
            "dst_path": self.dst_path,
            "index": self.index,
            "value": self.value,
            "timetag": self.timetag,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ValueUpdate":
        return cls(
            src_path=d.get("src_path", ""),
            dst_path=d["dst_path"],
            index=d["index"],
            value=d.get("value"),
            timetag=d.get("timetag", time.time()),
        )


MeshEvent = Union[PeerAdded, PeerRemoved, LinkAdded, LinkRemoved, ValueUpdate]

TOPOLOGY_EVENTS = (PeerAdded, PeerRemoved, LinkAdded, LinkRemoved)

_EVENT_TYPES = {
    cls.type: cls
    for cls in (PeerAdded, PeerRemoved, LinkAdded, LinkRemoved, ValueUpdate)
}


def event_to_json(event: MeshEvent) -> str:
    """Serialize any mesh event to JSON."""
    return json.dumps(event.to_dict())


def event_from_json(data: str) -> MeshEvent:
    """Deserialize a mesh event from JSON, dispatching on its type."""
    d = json.loads(data)
    try:
        cls = _EVENT_TYPES[d["type"]]
    except KeyError:
        raise ValueError(f"Unknown event type: {d.get('type')}") from None
    return cls.from_dict(d)


class EventQueue(ABC):
    """
    Abstract base for inbound event queues.

    Delivery order is preserved; delivery itself is not guaranteed.
    """

    @abstractmethod
    def push(self, event: MeshEvent) -> bool:
        """Push an event. Returns True if successful."""
        pass

    @abstractmethod
    def pop(self, timeout: float = 0.0) -> Optional[MeshEvent]:
        """Pop the oldest event. Returns None if the queue is empty."""
        pass

    @abstractmethod
    def get_length(self) -> int:
        """Get number of pending events."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Drop all pending events."""
        pass

    def drain(self, limit: Optional[int] = None) -> List[MeshEvent]:
        """Pop everything pending right now, without blocking."""
        events = []
        while limit is None or len(events) < limit:
            event = self.pop(timeout=0.0)
            if event is None:
                break
            events.append(event)
        return events


class RedisEventQueue(EventQueue):
    """
    Redis-backed inbox for distributed meshes.

    One Redis list per agent; the directory service and peers push
    JSON events onto it, the agent pops them every tick.
    """

    def __init__(
        self,
        name: str,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = INBOX_PREFIX,
    ):
        self.name = name
        self.redis_url = redis_url
        self.inbox_key = f"{key_prefix}{name}"
        self._redis = None

    def _get_redis(self):
        """Lazy connection to Redis."""
        if self._redis is None:
            try:
                import redis
                self._redis = redis.from_url(self.redis_url)
                self._redis.ping()  # Test connection
                logger.info(f"Connected to Redis at {self.redis_url}")
            except ImportError:
                raise ImportError(
                    "redis package required for RedisEventQueue. "
                    "Install with: pip install redis"
                )
            except Exception as e:
                logger.error(f"Failed to connect to Redis: {e}")
                raise
        return self._redis

    def push(self, event: MeshEvent) -> bool:
        """Push event onto the inbox list."""
        try:
            r = self._get_redis()
            r.rpush(self.inbox_key, event_to_json(event))
            return True
        except Exception as e:
            logger.error(f"Failed to push event: {e}")
            return False

    def pop(self, timeout: float = 0.0) -> Optional[MeshEvent]:
        """Pop event from the inbox list. Blocks only when timeout > 0."""
        try:
            r = self._get_redis()
            if timeout > 0:
                result = r.blpop(self.inbox_key, timeout=timeout)
                if result is None:
                    return None
                _, data = result
            else:
                data = r.lpop(self.inbox_key)
                if data is None:
                    return None
            return event_from_json(data.decode("utf-8"))
        except Exception as e:
            logger.error(f"Failed to pop event: {e}")
            return None

    def get_length(self) -> int:
        """Get number of pending events."""
        try:
            r = self._get_redis()
            return r.llen(self.inbox_key)
        except Exception:
            return 0

    def clear(self) -> None:
        """Drop all pending events."""
        try:
            r = self._get_redis()
            r.delete(self.inbox_key)
        except Exception as e:
            logger.error(f"Failed to clear inbox: {e}")


class InMemoryEventQueue(EventQueue):
    """
    In-memory event queue for testing and single-machine meshes.

    Thread-safe, so a transport thread may push while the tick drains.
    """

    def __init__(self):
        import queue
        self._queue: queue.Queue = queue.Queue()

    def push(self, event: MeshEvent) -> bool:
        """Push event to in-memory queue."""
        try:
            self._queue.put(event)
            return True
        except Exception:
            return False

    def pop(self, timeout: float = 0.0) -> Optional[MeshEvent]:
        """Pop event from in-memory queue."""
        import queue
        try:
            if timeout > 0:
                return self._queue.get(timeout=timeout)
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def get_length(self) -> int:
        """Get number of pending events."""
        return self._queue.qsize()

    def clear(self) -> None:
        """Drop all pending events."""
        while self.pop() is not None:
            pass


def create_event_queue(
    backend: str = "memory",
    name: str = "",
    redis_url: str = "redis://localhost:6379",
    **kwargs
) -> EventQueue:
    """
    Factory function to create an event queue.

    Args:
        backend: "memory" or "redis"
        name: Agent name (the Redis inbox is keyed by it)
        redis_url: Redis connection URL (for redis backend)
        **kwargs: Additional backend-specific options

    Returns:
        EventQueue instance
    """
    if backend == "memory":
        return InMemoryEventQueue()
    elif backend == "redis":
        return RedisEventQueue(name, redis_url=redis_url, **kwargs)
    else:
        raise ValueError(f"Unknown backend: {backend}")
